"""Application wiring for the billing webhook engine."""
from __future__ import annotations

import logging
from functools import lru_cache
from typing import Optional

from ..billing import (
    BillingAuditEvent,
    BillingConfig,
    BillingEventLogger,
    EntitlementResolver,
    EntitlementStore,
    EventAuthenticator,
    EventRouter,
    IdempotentReconciler,
    InMemoryEntitlementStore,
    PaymentProvider,
    WebhookEngine,
    load_billing_config,
)


logger = logging.getLogger("billing.audit")


class LoggingBillingEventLogger(BillingEventLogger):
    """Simple event logger forwarding billing audit events to logging."""

    def log(self, event: BillingAuditEvent) -> None:
        logger.info(
            "Billing event %s provider_event=%s user=%s metadata=%s",
            event.event_type.value,
            event.provider_event_id,
            event.user_id,
            event.metadata,
        )


def create_entitlement_store(config: BillingConfig) -> EntitlementStore:
    if config.store_backend == "memory":
        logger.warning("Using in-memory entitlement store; balances are lost on restart")
        return InMemoryEntitlementStore()
    if config.store_backend == "postgres":
        from ..billing.repository import PostgresEntitlementStore

        return PostgresEntitlementStore.from_config(config.database)
    from ..billing.firestore import FirestoreEntitlementStore

    return FirestoreEntitlementStore.from_config(config)


def create_payment_provider(config: BillingConfig) -> PaymentProvider:
    from ..billing.stripe_provider import StripePaymentProvider

    return StripePaymentProvider.from_config(config)


def build_webhook_engine(
    config: BillingConfig,
    *,
    provider: Optional[PaymentProvider] = None,
    store: Optional[EntitlementStore] = None,
    event_logger: Optional[BillingEventLogger] = None,
) -> WebhookEngine:
    if not config.stripe_webhook_secret:
        raise RuntimeError("STRIPE_WEBHOOK_SECRET is not configured")

    authenticator = EventAuthenticator(
        config.stripe_webhook_secret,
        tolerance_seconds=config.signature_tolerance_seconds,
    )
    resolver = EntitlementResolver(
        provider or create_payment_provider(config),
        user_id_metadata_key=config.user_id_metadata_key,
    )
    reconciler = IdempotentReconciler(store or create_entitlement_store(config))
    router = EventRouter(
        resolver,
        reconciler,
        event_logger=event_logger or LoggingBillingEventLogger(),
    )
    return WebhookEngine(authenticator, router)


@lru_cache(maxsize=1)
def get_webhook_engine() -> WebhookEngine:
    return build_webhook_engine(load_billing_config())


__all__ = [
    "LoggingBillingEventLogger",
    "build_webhook_engine",
    "create_entitlement_store",
    "create_payment_provider",
    "get_webhook_engine",
]
