"""Tests for checkout, verification, cancel, reactivate and trial conversion."""

import asyncio
import random
from datetime import timedelta

import pytest
from sqlalchemy import func, select, update

from billing.config import get_settings
from billing.constants import REASON_ORPHANED_PAYMENT, REASON_SUPERSEDED
from billing.db.session import async_session_factory
from billing.lifecycle import BillingMode, Plan
from billing.models import Subscription
from billing.outcome import OutcomeKind
from billing.schemas.subscription import CustomerProfile, VerifyPaymentRequest
from billing.services import subscription_service
from billing.services import subscription_store as store
from billing.services.auth_service import create_jwt
from billing.services.gateway_client import GatewayRejectedError, GatewayUnavailableError
from tests.conftest import PACKAGE_ID, make_subscription


async def rows_for(db, user_id: str = "user-1") -> list[Subscription]:
    result = await db.execute(
        select(Subscription)
        .where(Subscription.user_id == user_id)
        .order_by(Subscription.id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


class TestPlans:
    @pytest.mark.asyncio
    async def test_lists_all_plans(self, client):
        response = await client.get("/subscriptions/plans")
        assert response.status_code == 200
        plans = {item["plan"]: item for item in response.json()}
        assert plans["trial"]["amount"] == 100
        assert plans["trial"]["duration_days"] == 5
        assert plans["trial"]["billing_modes"] == ["one-time"]
        assert plans["monthly"]["billing_modes"] == ["one-time", "recurring"]
        assert plans["yearly"]["duration_days"] == 365


class TestAuth:
    @pytest.mark.asyncio
    async def test_requires_token(self, client):
        response = await client.get("/subscriptions/status")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_invalid_token(self, client):
        response = await client.get("/subscriptions/status", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_foreign_package_header(self, client, user_headers):
        headers = {**user_headers, "X-Package-ID": "com.other.app"}
        response = await client.get("/subscriptions/status", headers=headers)
        assert response.status_code == 400


class TestTrialCheckout:
    @pytest.mark.asyncio
    async def test_trial_order_then_verify_activates_for_five_days(self, client, db, gateway, user_headers):
        response = await client.post("/subscriptions/orders", json={"plan": "trial"}, headers=user_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["kind"] == "applied"
        assert data["data"]["amount"] == 100
        assert data["subscription"]["status"] == "pending"
        order_id = data["data"]["order_id"]
        assert gateway.orders[order_id]["notes"]["packageName"] == PACKAGE_ID

        payment_id, signature = gateway.pay_order(order_id)
        response = await client.post(
            "/subscriptions/verify",
            json={"payment_id": payment_id, "signature": signature, "order_id": order_id},
            headers=user_headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["kind"] == "applied"
        assert body["subscription"]["status"] == "active"
        assert body["subscription"]["is_trial_subscription"] is True

        [sub] = await rows_for(db)
        assert sub.end_date - sub.start_date == timedelta(days=5)
        assert sub.original_trial_end_date == sub.end_date
        assert sub.payment_id == payment_id

        status = (await client.get("/subscriptions/status", headers=user_headers)).json()
        assert status["has_access"] is True
        assert status["is_trial"] is True
        assert status["days_remaining"] == 5

    @pytest.mark.asyncio
    async def test_verifying_twice_is_noop(self, client, gateway, user_headers):
        order_id = (await client.post("/subscriptions/orders", json={"plan": "trial"}, headers=user_headers)).json()[
            "data"
        ]["order_id"]
        payment_id, signature = gateway.pay_order(order_id)
        payload = {"payment_id": payment_id, "signature": signature, "order_id": order_id}

        await client.post("/subscriptions/verify", json=payload, headers=user_headers)
        response = await client.post("/subscriptions/verify", json=payload, headers=user_headers)

        assert response.status_code == 200
        assert response.json()["kind"] == "noop"

    @pytest.mark.asyncio
    async def test_used_trial_is_refused(self, client, db, user_headers):
        await make_subscription(db, plan="trial", billing_mode="one-time", status="expired", days_left=-1)
        response = await client.post("/subscriptions/orders", json={"plan": "trial"}, headers=user_headers)
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_recurring_trial_is_invalid(self, client, user_headers):
        response = await client.post(
            "/subscriptions/orders", json={"plan": "trial", "billing_mode": "recurring"}, headers=user_headers
        )
        assert response.status_code == 422


class TestVerification:
    @pytest.mark.asyncio
    async def test_bad_signature(self, client, gateway, user_headers):
        order_id = (await client.post("/subscriptions/orders", json={"plan": "monthly"}, headers=user_headers)).json()[
            "data"
        ]["order_id"]
        payment_id, _ = gateway.pay_order(order_id)
        response = await client.post(
            "/subscriptions/verify",
            json={"payment_id": payment_id, "signature": "f" * 64, "order_id": order_id},
            headers=user_headers,
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_needs_exactly_one_reference(self, client, user_headers):
        response = await client.post(
            "/subscriptions/verify", json={"payment_id": "pay_1", "signature": "x"}, headers=user_headers
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_other_users_order_is_refused(self, client, db, gateway, user_headers):
        order_id = (await client.post("/subscriptions/orders", json={"plan": "monthly"}, headers=user_headers)).json()[
            "data"
        ]["order_id"]
        payment_id, signature = gateway.pay_order(order_id)
        other = {"Authorization": f"Bearer {create_jwt('user-2')}"}

        response = await client.post(
            "/subscriptions/verify",
            json={"payment_id": payment_id, "signature": signature, "order_id": order_id},
            headers=other,
        )

        assert response.status_code == 409
        [sub] = await rows_for(db)
        assert sub.status == "pending"

    @pytest.mark.asyncio
    async def test_authorized_payment_is_retryable(self, client, gateway, user_headers):
        order_id = (await client.post("/subscriptions/orders", json={"plan": "monthly"}, headers=user_headers)).json()[
            "data"
        ]["order_id"]
        payment_id, signature = gateway.pay_order(order_id, status="authorized")
        response = await client.post(
            "/subscriptions/verify",
            json={"payment_id": payment_id, "signature": signature, "order_id": order_id},
            headers=user_headers,
        )
        assert response.status_code == 503

    @pytest.mark.asyncio
    async def test_failed_payment_is_rejected(self, client, gateway, user_headers):
        order_id = (await client.post("/subscriptions/orders", json={"plan": "monthly"}, headers=user_headers)).json()[
            "data"
        ]["order_id"]
        payment_id, signature = gateway.pay_order(order_id, status="failed")
        response = await client.post(
            "/subscriptions/verify",
            json={"payment_id": payment_id, "signature": signature, "order_id": order_id},
            headers=user_headers,
        )
        assert response.status_code == 409


class TestRecurringCheckout:
    @pytest.mark.asyncio
    async def test_recurring_monthly_checkout(self, client, db, gateway, user_headers):
        response = await client.post(
            "/subscriptions/orders",
            json={"plan": "monthly", "billing_mode": "recurring", "name": "Asha", "email": "asha@example.com"},
            headers=user_headers,
        )
        assert response.status_code == 200
        data = response.json()["data"]
        gateway_subscription_id = data["gateway_subscription_id"]
        assert data["short_url"].endswith(gateway_subscription_id)
        assert gateway.subscriptions[gateway_subscription_id]["plan_id"] == "plan_monthly"

        payment_id, signature = gateway.pay_subscription(gateway_subscription_id)
        response = await client.post(
            "/subscriptions/verify",
            json={
                "payment_id": payment_id,
                "signature": signature,
                "gateway_subscription_id": gateway_subscription_id,
            },
            headers=user_headers,
        )

        assert response.status_code == 200
        [sub] = await rows_for(db)
        assert sub.status == "active"
        assert sub.auto_renew is True
        assert sub.paid_count == 1
        assert sub.next_billing_date == sub.end_date
        assert sub.end_date - sub.start_date == timedelta(days=30)


class TestSupersede:
    @pytest.mark.asyncio
    async def test_new_checkout_abandons_pending_one(self, client, db, user_headers):
        await client.post("/subscriptions/orders", json={"plan": "monthly"}, headers=user_headers)
        response = await client.post("/subscriptions/orders", json={"plan": "yearly"}, headers=user_headers)

        assert response.status_code == 200
        first, second = await rows_for(db)
        assert first.status == "expired"
        assert first.expiry_reason == REASON_SUPERSEDED
        assert second.status == "pending"
        assert second.plan == "yearly"

    @pytest.mark.asyncio
    async def test_recurring_pending_is_cancelled_at_gateway(self, client, db, gateway, user_headers):
        first = await client.post(
            "/subscriptions/orders", json={"plan": "monthly", "billing_mode": "recurring"}, headers=user_headers
        )
        gateway_subscription_id = first.json()["data"]["gateway_subscription_id"]

        await client.post("/subscriptions/orders", json={"plan": "yearly"}, headers=user_headers)

        assert gateway.cancelled == [(gateway_subscription_id, False)]

    @pytest.mark.asyncio
    async def test_active_subscription_blocks_new_checkout(self, client, db, user_headers):
        await make_subscription(db)
        response = await client.post("/subscriptions/orders", json={"plan": "yearly"}, headers=user_headers)
        assert response.status_code == 409
        assert len(await rows_for(db)) == 1

    @pytest.mark.asyncio
    async def test_paying_a_superseded_order_is_refused(self, client, db, gateway, user_headers):
        first = await client.post("/subscriptions/orders", json={"plan": "monthly"}, headers=user_headers)
        await client.post("/subscriptions/orders", json={"plan": "yearly"}, headers=user_headers)
        order_id = first.json()["data"]["order_id"]
        payment_id, signature = gateway.pay_order(order_id)

        response = await client.post(
            "/subscriptions/verify",
            json={"payment_id": payment_id, "signature": signature, "order_id": order_id},
            headers=user_headers,
        )

        assert response.status_code == 409
        body = response.json()
        assert body["kind"] == "rejected"
        assert body["reason"] == REASON_ORPHANED_PAYMENT
        assert body["data"] == {}
        superseded, current = await rows_for(db)
        assert (superseded.status, superseded.payment_id) == ("expired", None)
        assert current.status == "pending"
        status = (await client.get("/subscriptions/status", headers=user_headers)).json()
        assert status["has_access"] is False


class TestGatewayOutage:
    @pytest.mark.asyncio
    async def test_order_creation_outage_leaves_no_row(self, client, db, gateway, user_headers):
        gateway.fail_with = GatewayUnavailableError("connection reset")
        response = await client.post("/subscriptions/orders", json={"plan": "monthly"}, headers=user_headers)

        assert response.status_code == 503
        assert await rows_for(db) == []

    @pytest.mark.asyncio
    async def test_gateway_refusal_is_rejected(self, client, gateway, user_headers):
        gateway.fail_with = GatewayRejectedError("bad amount")
        response = await client.post("/subscriptions/orders", json={"plan": "monthly"}, headers=user_headers)
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_cancel_during_outage_keeps_row_active(self, client, db, gateway, user_headers):
        sub = await make_subscription(db, gateway_subscription_id="sub_A")
        gateway.fail_with = GatewayUnavailableError("timeout")

        response = await client.post("/subscriptions/cancel", headers=user_headers)

        assert response.status_code == 503
        sub = await store.get_subscription(db, sub.id, fresh=True)
        assert sub.status == "active"
        assert sub.version == 1


class TestCancelAndReactivate:
    @pytest.mark.asyncio
    async def test_cancel_mid_period_keeps_access(self, client, db, gateway, user_headers):
        sub = await make_subscription(db, gateway_subscription_id="sub_A", days_left=20)

        response = await client.post("/subscriptions/cancel", json={"reason": "not using it"}, headers=user_headers)

        assert response.status_code == 200
        assert response.json()["subscription"]["status"] == "cancelled"
        assert gateway.cancelled == [("sub_A", True)]
        sub = await store.get_subscription(db, sub.id, fresh=True)
        assert sub.cancel_reason == "not using it"
        assert sub.auto_renew is False

        status = (await client.get("/subscriptions/status", headers=user_headers)).json()
        assert status["has_access"] is True
        assert status["status"] == "cancelled"
        assert status["days_remaining"] == 20

    @pytest.mark.asyncio
    async def test_gateway_already_cancelled_still_cancels_locally(self, client, db, gateway, user_headers):
        sub = await make_subscription(db, gateway_subscription_id="sub_A")
        gateway.fail_with = GatewayRejectedError("already cancelled")

        response = await client.post("/subscriptions/cancel", headers=user_headers)

        assert response.status_code == 200
        assert (await store.get_subscription(db, sub.id, fresh=True)).status == "cancelled"

    @pytest.mark.asyncio
    async def test_cancel_without_active_subscription(self, client, user_headers):
        response = await client.post("/subscriptions/cancel", headers=user_headers)
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_reactivate_restores_renewals(self, client, db, user_headers):
        sub = await make_subscription(db, gateway_subscription_id="sub_A")
        await client.post("/subscriptions/cancel", headers=user_headers)

        response = await client.post("/subscriptions/reactivate", headers=user_headers)

        assert response.status_code == 200
        sub = await store.get_subscription(db, sub.id, fresh=True)
        assert sub.status == "active"
        assert sub.auto_renew is True
        assert sub.cancelled_at is None

    @pytest.mark.asyncio
    async def test_reactivate_after_period_end(self, client, db, user_headers):
        await make_subscription(db, status="cancelled", days_left=-1)
        response = await client.post("/subscriptions/reactivate", headers=user_headers)
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_reactivate_with_newer_open_row(self, client, db, user_headers):
        await make_subscription(db, plan="yearly", billing_mode="one-time", status="cancelled", days_left=200)
        await make_subscription(db, days_left=20)
        response = await client.post("/subscriptions/reactivate", headers=user_headers)
        assert response.status_code == 409


class TestTrialConversion:
    async def _convert(self, client, gateway, user_headers) -> str:
        response = await client.post("/subscriptions/convert", json={}, headers=user_headers)
        assert response.status_code == 200
        return response.json()["data"]["gateway_subscription_id"]

    async def _pay(self, client, gateway, user_headers, gateway_subscription_id):
        payment_id, signature = gateway.pay_subscription(gateway_subscription_id)
        return await client.post(
            "/subscriptions/verify",
            json={"payment_id": payment_id, "signature": signature, "gateway_subscription_id": gateway_subscription_id},
            headers=user_headers,
        )

    @pytest.mark.asyncio
    async def test_paid_conversion_closes_trial_atomically(self, client, db, gateway, user_headers):
        trial = await make_subscription(db, plan="trial", billing_mode="one-time", days_left=3)
        gateway_subscription_id = await self._convert(client, gateway, user_headers)

        trial_row, paid_row = await rows_for(db)
        assert trial_row.status == "active"
        assert paid_row.status == "pending"
        assert paid_row.converted_from_id == trial.id
        assert paid_row.plan == "monthly"

        response = await self._pay(client, gateway, user_headers, gateway_subscription_id)

        assert response.status_code == 200
        trial_row, paid_row = await rows_for(db)
        assert paid_row.status == "active"
        assert trial_row.status == "expired"
        assert trial_row.expiry_reason == "converted"
        assert trial_row.converted_at is not None

    @pytest.mark.asyncio
    async def test_trial_that_ended_meanwhile_does_not_block_activation(self, client, db, gateway, user_headers):
        trial = await make_subscription(db, plan="trial", billing_mode="one-time", days_left=3)
        gateway_subscription_id = await self._convert(client, gateway, user_headers)
        await db.execute(
            update(Subscription)
            .where(Subscription.id == trial.id)
            .values(status="expired", expiry_reason="trial ended", version=Subscription.version + 1)
        )
        await db.commit()

        response = await self._pay(client, gateway, user_headers, gateway_subscription_id)

        assert response.status_code == 200
        trial_row, paid_row = await rows_for(db)
        assert paid_row.status == "active"
        assert trial_row.expiry_reason == "trial ended"

    @pytest.mark.asyncio
    async def test_convert_without_trial(self, client, db, user_headers):
        await make_subscription(db)
        response = await client.post("/subscriptions/convert", json={}, headers=user_headers)
        assert response.status_code == 409


class TestHistory:
    @pytest.mark.asyncio
    async def test_history_is_paginated(self, client, db, user_headers):
        for _ in range(3):
            await make_subscription(db, status="expired", days_left=-10)
        await make_subscription(db, user_id="user-2")

        response = await client.get("/subscriptions/history?limit=2", headers=user_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 3
        assert len(body["items"]) == 2

    @pytest.mark.asyncio
    async def test_page_out_of_range(self, client, db, user_headers):
        await make_subscription(db)
        response = await client.get("/subscriptions/history?page=3", headers=user_headers)
        assert response.status_code == 404


class TestSingleActiveSubscription:
    @pytest.mark.asyncio
    async def test_random_action_sequences_never_double_activate(self, db, gateway):
        settings = get_settings()
        rng = random.Random(20261017)
        user_id = "user-r"
        customer = CustomerProfile(name="R")

        async def pay_latest_pending():
            pending = [row for row in await rows_for(db, user_id) if row.status == "pending"]
            if not pending:
                return
            row = pending[-1]
            if row.billing_mode == BillingMode.RECURRING:
                payment_id, signature = gateway.pay_subscription(row.gateway_subscription_id)
                request = VerifyPaymentRequest(
                    payment_id=payment_id, signature=signature, gateway_subscription_id=row.gateway_subscription_id
                )
            else:
                payment_id, signature = gateway.pay_order(row.order_id)
                request = VerifyPaymentRequest(payment_id=payment_id, signature=signature, order_id=row.order_id)
            await subscription_service.verify_payment(db, gateway, settings, user_id, request)

        for _ in range(40):
            action = rng.choice(["order", "order", "pay", "cancel", "reactivate", "convert"])
            if action == "order":
                plan = rng.choice(list(Plan))
                mode = BillingMode.ONE_TIME if plan is Plan.TRIAL else rng.choice(list(BillingMode))
                outcome = await subscription_service.create_order(
                    db, gateway, settings, user_id, PACKAGE_ID, plan, mode, customer
                )
                assert outcome.kind in (OutcomeKind.APPLIED, OutcomeKind.REJECTED)
            elif action == "pay":
                await pay_latest_pending()
            elif action == "cancel":
                await subscription_service.cancel_subscription(db, gateway, settings, user_id, PACKAGE_ID)
            elif action == "reactivate":
                await subscription_service.reactivate_subscription(db, settings, user_id, PACKAGE_ID)
            else:
                await subscription_service.start_trial_conversion(
                    db, gateway, settings, user_id, PACKAGE_ID, BillingMode.RECURRING, customer
                )

            active = await db.scalar(
                select(func.count(Subscription.id)).where(
                    Subscription.user_id == user_id, Subscription.status == "active"
                )
            )
            assert active <= 1


async def assert_single_open_subscription(user_id: str) -> None:
    """At most one active row, and a pending row next to it only for a trial conversion."""
    async with async_session_factory() as session:
        rows = await rows_for(session, user_id)
    active = [row for row in rows if row.status == "active"]
    pending = [row for row in rows if row.status == "pending"]
    assert len(active) <= 1
    assert len(pending) <= 1
    if active and pending:
        assert active[0].is_trial_subscription
        assert pending[0].converted_from_id == active[0].id


class TestConcurrentRequests:
    @pytest.mark.asyncio
    async def test_payment_racing_a_new_checkout(self, db, gateway):
        settings = get_settings()
        customer = CustomerProfile(name="C")
        created = await subscription_service.create_order(
            db, gateway, settings, "user-c", PACKAGE_ID, Plan.MONTHLY, BillingMode.ONE_TIME, customer
        )
        order_id = created.data["order_id"]
        payment_id, signature = gateway.pay_order(order_id)
        request = VerifyPaymentRequest(payment_id=payment_id, signature=signature, order_id=order_id)

        async def verify():
            async with async_session_factory() as session:
                return await subscription_service.verify_payment(session, gateway, settings, "user-c", request)

        async def new_checkout():
            async with async_session_factory() as session:
                return await subscription_service.create_order(
                    session, gateway, settings, "user-c", PACKAGE_ID, Plan.YEARLY, BillingMode.ONE_TIME, customer
                )

        verified, checkout = await asyncio.gather(verify(), new_checkout())

        assert [verified.ok, checkout.ok].count(True) == 1
        if not verified.ok:
            assert verified.kind is OutcomeKind.REJECTED
            assert verified.reason == REASON_ORPHANED_PAYMENT
        await assert_single_open_subscription("user-c")

    @pytest.mark.asyncio
    async def test_parallel_actions_never_open_two_subscriptions(self, db, gateway):
        settings = get_settings()
        rng = random.Random(1017)
        user_id = "user-p"
        customer = CustomerProfile(name="P")
        await make_subscription(db, user_id=user_id, plan="trial", billing_mode="one-time", days_left=3)

        async def order():
            plan = rng.choice([Plan.MONTHLY, Plan.YEARLY])
            async with async_session_factory() as session:
                return await subscription_service.create_order(
                    session, gateway, settings, user_id, PACKAGE_ID, plan, BillingMode.ONE_TIME, customer
                )

        async def convert():
            async with async_session_factory() as session:
                return await subscription_service.start_trial_conversion(
                    session, gateway, settings, user_id, PACKAGE_ID, BillingMode.RECURRING, customer
                )

        async def cancel():
            async with async_session_factory() as session:
                return await subscription_service.cancel_subscription(session, gateway, settings, user_id, PACKAGE_ID)

        async def reactivate():
            async with async_session_factory() as session:
                return await subscription_service.reactivate_subscription(session, settings, user_id, PACKAGE_ID)

        def verifier(request):
            async def verify():
                async with async_session_factory() as session:
                    return await subscription_service.verify_payment(session, gateway, settings, user_id, request)
            return verify

        for _ in range(12):
            verifies = []
            for row in await rows_for(db, user_id):
                if row.status != "pending":
                    continue
                if row.billing_mode == BillingMode.RECURRING:
                    payment_id, signature = gateway.pay_subscription(row.gateway_subscription_id)
                    request = VerifyPaymentRequest(
                        payment_id=payment_id, signature=signature, gateway_subscription_id=row.gateway_subscription_id
                    )
                else:
                    payment_id, signature = gateway.pay_order(row.order_id)
                    request = VerifyPaymentRequest(payment_id=payment_id, signature=signature, order_id=row.order_id)
                # the same callback submitted twice
                verifies += [verifier(request), verifier(request)]

            actions = [order, order, convert, convert, cancel, reactivate] + verifies
            outcomes = await asyncio.gather(*(action() for action in rng.sample(actions, k=min(4, len(actions)))))

            assert all(outcome.kind is not OutcomeKind.NOT_SUPPORTED for outcome in outcomes)
            await assert_single_open_subscription(user_id)
