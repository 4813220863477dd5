"""Billing webhook reconciliation: provider events in, user entitlements out."""

from .authenticator import EventAuthenticator
from .config import BillingConfig, DatabaseConfig, load_billing_config
from .exceptions import (
    AuthenticationFailure,
    BillingWebhookError,
    PermanentLookupFailure,
    TransientLookupFailure,
    UnresolvableIdentity,
)
from .models import (
    CANCELED_PLAN_NAME,
    UNLIMITED_CREDITS,
    BillingAuditEvent,
    BillingAuditEventType,
    CheckoutLineItem,
    CreditGrant,
    EntitlementDelta,
    EntitlementOverwrite,
    PaymentLedgerEntry,
    PaymentStatus,
    ProductEntitlement,
    ProviderCheckoutSession,
    ProviderEvent,
    ProviderEventType,
    ProviderPrice,
    ProviderProduct,
    ProviderSubscription,
    StatusChange,
    UserEntitlementRecord,
    WebhookDisposition,
    WebhookOutcome,
)
from .reconciler import IdempotentReconciler
from .resolver import EntitlementResolver, parse_product_entitlement
from .service import (
    BillingEventLogger,
    EntitlementStore,
    EventRouter,
    PaymentProvider,
    WebhookEngine,
)
from .store import InMemoryEntitlementStore

__all__ = [
    "AuthenticationFailure",
    "BillingAuditEvent",
    "BillingAuditEventType",
    "BillingConfig",
    "BillingEventLogger",
    "BillingWebhookError",
    "CANCELED_PLAN_NAME",
    "CheckoutLineItem",
    "CreditGrant",
    "DatabaseConfig",
    "EntitlementDelta",
    "EntitlementOverwrite",
    "EntitlementResolver",
    "EntitlementStore",
    "EventAuthenticator",
    "EventRouter",
    "IdempotentReconciler",
    "InMemoryEntitlementStore",
    "PaymentLedgerEntry",
    "PaymentProvider",
    "PaymentStatus",
    "PermanentLookupFailure",
    "ProductEntitlement",
    "ProviderCheckoutSession",
    "ProviderEvent",
    "ProviderEventType",
    "ProviderPrice",
    "ProviderProduct",
    "ProviderSubscription",
    "StatusChange",
    "TransientLookupFailure",
    "UNLIMITED_CREDITS",
    "UnresolvableIdentity",
    "UserEntitlementRecord",
    "WebhookDisposition",
    "WebhookEngine",
    "WebhookOutcome",
    "load_billing_config",
]
