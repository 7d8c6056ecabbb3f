"""Centralized application constants — single source of truth for hardcoded values."""

# --- Plans ---
MONTHLY_PERIOD_DAYS = 30
YEARLY_PERIOD_DAYS = 365
DEFAULT_TRIAL_DAYS = 5
DEFAULT_CURRENCY = "INR"
RECEIPT_PREFIX = "sub"

# --- Lifecycle ---
MAX_FAILED_PAYMENTS = 3  # hard cutoff, never retried further
CAS_MAX_ATTEMPTS = 3

# --- Reasons (persisted on the row) ---
REASON_GATEWAY_CANCELLED = "Cancelled by payment gateway"
REASON_PAYMENT_CUTOFF = "Payment failed multiple times"
REASON_GATEWAY_COMPLETED = "Billing cycles completed"
REASON_PERIOD_ENDED = "Subscription period ended"
REASON_TRIAL_ENDED = "trial ended"
REASON_CONVERTED = "converted"
REASON_ABANDONED = "abandoned checkout"
REASON_SUPERSEDED = "superseded by a new checkout"
REASON_ORPHANED_PAYMENT = "Payment received for an abandoned checkout"

# --- Leases ---
RECONCILIATION_LEASE = "reconciliation"
USER_LEASE_SECONDS = 30  # seconds

# --- Gateway ---
GATEWAY_TIMEOUT_SECONDS = 15  # seconds
WEBHOOK_PROVIDER = "razorpay"
SIGNATURE_HEADER = "x-razorpay-signature"
EVENT_ID_HEADER = "x-razorpay-event-id"

# --- Worker ---
ARQ_MAX_JOBS = 4
ARQ_JOB_TIMEOUT = 1800  # seconds (30 min)

# --- Pagination ---
HISTORY_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100
