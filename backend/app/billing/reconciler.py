"""Applies entitlement deltas to user records exactly once per source id."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Optional

from .models import (
    CreditGrant,
    EntitlementDelta,
    EntitlementOverwrite,
    PaymentLedgerEntry,
    StatusChange,
    WebhookDisposition,
)

if TYPE_CHECKING:  # pragma: no cover
    from .service import EntitlementStore

logger = logging.getLogger("billing.reconciler")


class IdempotentReconciler:
    """Mutates durable entitlement state through the store's atomic primitives.

    Crediting reads the record first and skips when the ledger already holds
    the delta's source id. The store's grant primitive repeats that check
    inside its own atomic write, so two deliveries racing past the read still
    credit once.
    """

    def __init__(
        self,
        store: "EntitlementStore",
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def apply(self, delta: EntitlementDelta) -> WebhookDisposition:
        record = await self._store.get_user(delta.user_id)
        if record is not None and record.has_payment(delta.source_id):
            logger.info(
                "Source %s already applied for user %s; skipping",
                delta.source_id,
                delta.user_id,
            )
            return WebhookDisposition.DUPLICATE

        grant = CreditGrant(
            user_id=delta.user_id,
            credits_to_add=0 if delta.is_unlimited else delta.credits_to_add,
            is_unlimited=delta.is_unlimited,
            plan=delta.plan_name or None,
            status=delta.status,
            subscription_id=delta.subscription_id,
            customer_id=delta.customer_id,
            billing_date=delta.occurred_at,
            entry=PaymentLedgerEntry(
                source_id=delta.source_id,
                credits_applied=0 if delta.is_unlimited else delta.credits_to_add,
                applied_at=self._clock(),
            ),
        )
        applied = await self._store.apply_grant(grant)
        if not applied:
            logger.info(
                "Source %s for user %s was applied by a concurrent delivery",
                delta.source_id,
                delta.user_id,
            )
            return WebhookDisposition.DUPLICATE

        logger.info(
            "User %s: %s credits applied (%s) from %s",
            delta.user_id,
            "unlimited" if delta.is_unlimited else delta.credits_to_add,
            delta.plan_name,
            delta.source_id,
        )
        return WebhookDisposition.APPLIED

    async def cancel(self, delta: EntitlementDelta) -> WebhookDisposition:
        """Reset the record to the canceled state; safe to repeat."""

        await self._store.overwrite(
            EntitlementOverwrite(
                user_id=delta.user_id,
                status=delta.status,
                credits=0,
                is_unlimited=False,
                plan=delta.plan_name,
                subscription_id=delta.subscription_id,
                customer_id=delta.customer_id,
            )
        )
        logger.info("Subscription ended for user %s; credits reset to 0", delta.user_id)
        return WebhookDisposition.APPLIED

    async def record_status(self, change: StatusChange) -> WebhookDisposition:
        await self._store.overwrite(
            EntitlementOverwrite(
                user_id=change.user_id,
                status=change.status,
                subscription_id=change.subscription_id,
                customer_id=change.customer_id,
            )
        )
        logger.info("User %s payment status set to %s", change.user_id, change.status.value)
        return WebhookDisposition.RECORDED


__all__ = ["IdempotentReconciler"]
