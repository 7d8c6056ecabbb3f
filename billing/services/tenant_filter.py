"""Tenant filter — does a gateway event belong to this app?

The Razorpay account is shared with other apps, so every webhook is checked
against the identifiers this tenant stamps on its orders and subscriptions.
Checks run in order and the first one that finds identifying data decides:

1. app / package keys in the entity notes
2. package ids in the payment description
3. the amount against this tenant's price points

Identifiers that are present and foreign always win. Only an event with no
identifying data at all is processed on trust.
"""

import logging
import re
from dataclasses import dataclass

from billing.config import Settings
from billing.schemas.webhook import GatewayEvent

logger = logging.getLogger(__name__)

APP_NAME_KEYS = ("AppName", "appName", "app_name")
PACKAGE_KEYS = ("packageName", "package_name", "packageId", "package_id")

# Dotted application ids such as com.gumbo.learning
_PACKAGE_TOKEN = re.compile(r"\b[a-z][a-z0-9_]*(?:\.[a-z0-9_]+){2,}\b", re.IGNORECASE)


@dataclass(frozen=True)
class TenantConfig:
    package_id: str
    app_names: frozenset[str]
    package_markers: tuple[str, ...]
    allowed_amounts: frozenset[int]

    @classmethod
    def from_settings(cls, settings: Settings) -> "TenantConfig":
        return cls(
            package_id=settings.package_id.lower(),
            app_names=frozenset(name.lower() for name in settings.tenant_app_names),
            package_markers=tuple(marker.lower() for marker in settings.tenant_package_markers),
            allowed_amounts=frozenset(settings.allowed_amounts),
        )


@dataclass(frozen=True)
class TenantDecision:
    ignore: bool
    reason: str


def _first_note(notes: dict, keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = notes.get(key)
        if value not in (None, ""):
            return str(value)
    return None


def _package_is_ours(value: str, tenant: TenantConfig) -> bool:
    value = value.lower()
    return value == tenant.package_id or any(marker in value for marker in tenant.package_markers)


def _check_notes(notes: dict, tenant: TenantConfig) -> TenantDecision | None:
    app_name = _first_note(notes, APP_NAME_KEYS)
    package = _first_note(notes, PACKAGE_KEYS)
    if app_name is None and package is None:
        return None

    if app_name is not None and app_name.lower() not in tenant.app_names:
        return TenantDecision(True, f"different app: {app_name}")
    if package is not None and not _package_is_ours(package, tenant):
        return TenantDecision(True, f"different package: {package}")
    return TenantDecision(False, "notes identify this app")


def _check_description(description: str | None, tenant: TenantConfig) -> TenantDecision | None:
    if not description:
        return None
    tokens = [token.lower() for token in _PACKAGE_TOKEN.findall(description)]
    if not tokens:
        return None
    ours = tenant.package_id.lower()
    if any(token == ours or token.startswith(ours + ".") for token in tokens):
        return TenantDecision(False, "description names this package")
    return TenantDecision(True, f"description names a different package: {tokens[0]}")


def _check_amount(amount: int | None, tenant: TenantConfig) -> TenantDecision | None:
    if amount is None:
        return None
    if amount in tenant.allowed_amounts:
        return TenantDecision(False, f"amount {amount} is a known price point")
    return TenantDecision(True, f"amount {amount} is not a price point of this app")


def should_ignore(event: GatewayEvent, tenant: TenantConfig) -> TenantDecision:
    for decision in (
        _check_notes(event.notes, tenant),
        _check_description(event.description, tenant),
        _check_amount(event.amount, tenant),
    ):
        if decision is not None:
            if decision.ignore:
                logger.warning(f"Ignoring {event.event_name} for another tenant: {decision.reason}")
            return decision
    return TenantDecision(False, "no tenant identifiers present")


def is_foreign_package(package_header: str | None, tenant: TenantConfig) -> bool:
    """True when a request explicitly names a package other than ours."""
    if not package_header:
        return False
    return package_header.strip().lower() != tenant.package_id
