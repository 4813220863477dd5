"""Core service routing authenticated provider events to reconciliation."""
from __future__ import annotations

import logging
from typing import Awaitable, Callable, Dict, Optional, Protocol

from fastapi import status

from .authenticator import EventAuthenticator
from .exceptions import (
    AuthenticationFailure,
    PermanentLookupFailure,
    TransientLookupFailure,
    UnresolvableIdentity,
)
from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    CreditGrant,
    EntitlementDelta,
    EntitlementOverwrite,
    ProviderCheckoutSession,
    ProviderEvent,
    ProviderEventType,
    ProviderPrice,
    ProviderProduct,
    ProviderSubscription,
    UserEntitlementRecord,
    WebhookDisposition,
    WebhookOutcome,
)
from .reconciler import IdempotentReconciler
from .resolver import EntitlementResolver

logger = logging.getLogger("billing.webhook")


class PaymentProvider(Protocol):
    """Read-only lookups against the payment provider's object graph."""

    async def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        ...

    async def retrieve_price(self, price_id: str) -> ProviderPrice:
        ...

    async def retrieve_product(self, product_id: str) -> ProviderProduct:
        ...

    async def retrieve_checkout_session(self, session_id: str) -> ProviderCheckoutSession:
        """Return the session with its line items expanded."""


class EntitlementStore(Protocol):
    """Document store holding one entitlement record per user."""

    async def get_user(self, user_id: str) -> Optional[UserEntitlementRecord]:
        ...

    async def apply_grant(self, grant: CreditGrant) -> bool:
        """Atomically credit and append the ledger entry unless its source id is present.

        Returns ``False`` when the ledger already held the source id.
        """

    async def overwrite(self, update: EntitlementOverwrite) -> None:
        """Merge-write the given fields, creating the record if needed."""


class BillingEventLogger(Protocol):
    """Captures structured billing audit events."""

    def log(self, event: BillingAuditEvent) -> None:
        ...


Handler = Callable[[ProviderEvent], Awaitable[WebhookDisposition]]


class EventRouter:
    """Dispatches decoded events and maps failures onto the response contract.

    Every event is acknowledged unless a retryable failure means the
    entitlement write may not have happened, in which case the provider is
    asked to redeliver.
    """

    def __init__(
        self,
        resolver: EntitlementResolver,
        reconciler: IdempotentReconciler,
        *,
        event_logger: Optional[BillingEventLogger] = None,
    ) -> None:
        self._resolver = resolver
        self._reconciler = reconciler
        self._event_logger = event_logger
        self._handlers: Dict[ProviderEventType, Handler] = {
            ProviderEventType.CHECKOUT_SESSION_COMPLETED: self._handle_purchase,
            ProviderEventType.CHECKOUT_ASYNC_PAYMENT_SUCCEEDED: self._handle_purchase,
            ProviderEventType.INVOICE_PAID: self._handle_invoice_paid,
            ProviderEventType.INVOICE_PAYMENT_FAILED: self._handle_payment_failed,
            ProviderEventType.SUBSCRIPTION_DELETED: self._handle_subscription_deleted,
        }

    async def dispatch(self, event: ProviderEvent) -> WebhookOutcome:
        event_type = event.event_type
        handler = self._handlers.get(event_type) if event_type else None
        if handler is None:
            logger.debug("Ignoring unhandled event %s type=%s", event.id, event.type)
            return self._outcome(event, WebhookDisposition.IGNORED, status.HTTP_200_OK)

        try:
            disposition = await handler(event)
        except UnresolvableIdentity as exc:
            logger.error("Event %s (%s) needs manual reconciliation: %s", event.id, event.type, exc.message)
            self._audit(BillingAuditEventType.IDENTITY_UNRESOLVED, event, reason=exc.message)
            return self._outcome(event, WebhookDisposition.UNRESOLVABLE, exc.status_code, exc.message)
        except PermanentLookupFailure as exc:
            logger.error("Event %s (%s) references unusable provider data: %s", event.id, event.type, exc.message)
            self._audit(BillingAuditEventType.LOOKUP_REJECTED, event, reason=exc.message)
            return self._outcome(event, WebhookDisposition.UNRESOLVABLE, exc.status_code, exc.message)
        except TransientLookupFailure as exc:
            logger.warning("Event %s (%s) failed transiently, requesting redelivery: %s", event.id, event.type, exc.message)
            return self._outcome(event, WebhookDisposition.RETRY, exc.status_code, exc.message)

        return self._outcome(event, disposition, status.HTTP_200_OK)

    async def _handle_purchase(self, event: ProviderEvent) -> WebhookDisposition:
        delta = await self._resolver.resolve_purchase(event)
        if delta is None:
            return WebhookDisposition.IGNORED
        return await self._apply(event, delta)

    async def _handle_invoice_paid(self, event: ProviderEvent) -> WebhookDisposition:
        delta = await self._resolver.resolve_renewal(event)
        if delta is None:
            return WebhookDisposition.IGNORED
        return await self._apply(event, delta)

    async def _handle_payment_failed(self, event: ProviderEvent) -> WebhookDisposition:
        change = await self._resolver.resolve_payment_failure(event)
        if change is None:
            return WebhookDisposition.IGNORED
        disposition = await self._reconciler.record_status(change)
        self._audit(
            BillingAuditEventType.PAYMENT_FAILED,
            event,
            user_id=change.user_id,
            invoice_id=str(event.payload.get("id") or ""),
        )
        return disposition

    async def _handle_subscription_deleted(self, event: ProviderEvent) -> WebhookDisposition:
        delta = self._resolver.resolve_cancellation(event)
        disposition = await self._reconciler.cancel(delta)
        self._audit(
            BillingAuditEventType.SUBSCRIPTION_CANCELED,
            event,
            user_id=delta.user_id,
            subscription_id=delta.subscription_id or "",
        )
        return disposition

    async def _apply(self, event: ProviderEvent, delta: EntitlementDelta) -> WebhookDisposition:
        disposition = await self._reconciler.apply(delta)
        audit_type = (
            BillingAuditEventType.CREDITS_APPLIED
            if disposition == WebhookDisposition.APPLIED
            else BillingAuditEventType.DUPLICATE_SKIPPED
        )
        self._audit(
            audit_type,
            event,
            user_id=delta.user_id,
            source_id=delta.source_id,
            credits="unlimited" if delta.is_unlimited else str(delta.credits_to_add),
            plan=delta.plan_name,
        )
        return disposition

    def _audit(
        self,
        event_type: BillingAuditEventType,
        event: ProviderEvent,
        *,
        user_id: Optional[str] = None,
        **metadata: str,
    ) -> None:
        if self._event_logger is None:
            return
        try:
            self._event_logger.log(
                BillingAuditEvent(
                    event_type=event_type,
                    provider_event_id=event.id,
                    user_id=user_id,
                    metadata={"event_type": event.type, **metadata},
                )
            )
        except Exception:
            # Audit output is not part of the entitlement write.
            logger.exception("Failed to record audit event %s for %s", event_type.value, event.id)

    @staticmethod
    def _outcome(
        event: ProviderEvent,
        disposition: WebhookDisposition,
        status_code: int,
        detail: Optional[str] = None,
    ) -> WebhookOutcome:
        return WebhookOutcome(
            disposition=disposition,
            status_code=status_code,
            event_id=event.id,
            event_type=event.type,
            detail=detail,
        )


class WebhookEngine:
    """Entry point for the transport: raw bytes and signature in, outcome out."""

    def __init__(self, authenticator: EventAuthenticator, router: EventRouter) -> None:
        self._authenticator = authenticator
        self._router = router

    async def handle(self, raw_body: bytes, signature_header: Optional[str]) -> WebhookOutcome:
        try:
            event = self._authenticator.authenticate(raw_body, signature_header)
        except AuthenticationFailure as exc:
            logger.warning("Rejected webhook delivery: %s", exc.message)
            return WebhookOutcome(
                disposition=WebhookDisposition.REJECTED,
                status_code=exc.status_code,
                detail=exc.message,
            )
        return await self._router.dispatch(event)


__all__ = [
    "BillingEventLogger",
    "EntitlementStore",
    "EventRouter",
    "PaymentProvider",
    "WebhookEngine",
]
