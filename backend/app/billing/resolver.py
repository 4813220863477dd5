"""Derives entitlement changes from provider events and catalog metadata."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Dict, List, Mapping, Optional

from .exceptions import UnresolvableIdentity
from .models import (
    CANCELED_PLAN_NAME,
    EntitlementDelta,
    PaymentStatus,
    ProductEntitlement,
    ProviderCheckoutSession,
    ProviderEvent,
    ProviderProduct,
    ProviderSubscription,
    StatusChange,
    object_id,
    string_metadata,
)

if TYPE_CHECKING:  # pragma: no cover
    from .service import PaymentProvider

logger = logging.getLogger("billing.resolver")

CREDITS_KEY = "credits"
UNLIMITED_KEY = "isUnlimited"
PLAN_NAME_KEY = "planName"


def parse_product_entitlement(product: ProviderProduct) -> ProductEntitlement:
    """Read ``credits``/``isUnlimited``/``planName`` from product metadata.

    Malformed values never fail the event; they default and are reported in
    ``defects`` so the caller can log them.
    """

    metadata = product.metadata
    defects: List[str] = []
    is_unlimited = metadata.get(UNLIMITED_KEY) == "true"

    raw_credits = metadata.get(CREDITS_KEY)
    credits = 0
    if raw_credits is None:
        if not is_unlimited:
            defects.append("credits missing")
    else:
        try:
            credits = int(raw_credits.strip())
        except ValueError:
            defects.append(f"credits not an integer: {raw_credits!r}")
            credits = 0
        if credits < 0:
            defects.append(f"credits negative: {raw_credits!r}")
            credits = 0

    plan_name = (metadata.get(PLAN_NAME_KEY) or "").strip() or product.name
    return ProductEntitlement(
        product_id=product.id,
        credits=credits,
        is_unlimited=is_unlimited,
        plan_name=plan_name,
        defects=tuple(defects),
    )


def user_id_from_session(session: Mapping[str, object]) -> Optional[str]:
    """Purchases: the caller-supplied checkout reference is the only source."""

    value = session.get("client_reference_id")
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def user_id_from_subscription(metadata: Mapping[str, str], key: str = "uid") -> Optional[str]:
    """Invoice and cancellation events: subscription metadata is the only source."""

    value = metadata.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def subscription_id_from_invoice(invoice: Mapping[str, object]) -> Optional[str]:
    subscription_id = object_id(invoice.get("subscription"))
    if subscription_id:
        return subscription_id
    parent = invoice.get("parent")
    if isinstance(parent, Mapping):
        details = parent.get("subscription_details")
        if isinstance(details, Mapping):
            return object_id(details.get("subscription"))
    return None


def dedup_key_for_session(session: ProviderCheckoutSession) -> str:
    """Ledger key for a completed checkout.

    A session that produced an invoice (first cycle of a subscription) is
    keyed by that invoice id so the matching ``invoice.paid`` delivery
    collapses onto the same ledger entry.
    """

    return session.invoice_id or session.id


class EntitlementResolver:
    """Walks event -> subscription/session -> price -> product to build deltas."""

    def __init__(self, provider: "PaymentProvider", *, user_id_metadata_key: str = "uid") -> None:
        self._provider = provider
        self._user_id_key = user_id_metadata_key

    async def resolve_purchase(self, event: ProviderEvent) -> Optional[EntitlementDelta]:
        """Delta for a completed checkout, or ``None`` while payment is still pending."""

        user_id = user_id_from_session(event.payload)
        if user_id is None:
            raise UnresolvableIdentity(
                f"checkout session {event.payload.get('id')} has no client_reference_id",
                event_id=event.id,
            )

        summary = ProviderCheckoutSession.from_provider(event.payload)
        if summary.payment_status == "unpaid":
            logger.info("Checkout session %s awaiting asynchronous payment", summary.id)
            return None

        session = await self._provider.retrieve_checkout_session(summary.id)
        credits = 0
        is_unlimited = False
        plan_name = ""
        products: Dict[str, ProductEntitlement] = {}
        for item in session.line_items:
            entitlement = products.get(item.product_id)
            if entitlement is None:
                product = await self._provider.retrieve_product(item.product_id)
                entitlement = self._product_entitlement(product, event)
                products[item.product_id] = entitlement
            credits += entitlement.credits * item.quantity
            is_unlimited = is_unlimited or entitlement.is_unlimited
            plan_name = plan_name or entitlement.plan_name

        if not session.line_items:
            logger.warning("Checkout session %s has no resolvable line items", session.id)

        return EntitlementDelta(
            user_id=user_id,
            credits_to_add=credits,
            is_unlimited=is_unlimited,
            plan_name=plan_name,
            status=PaymentStatus.ACTIVE,
            source_id=dedup_key_for_session(session),
            occurred_at=event.created,
            event_id=event.id,
            subscription_id=session.subscription_id,
            customer_id=session.customer_id,
        )

    async def resolve_renewal(self, event: ProviderEvent) -> Optional[EntitlementDelta]:
        """Delta for a paid invoice, or ``None`` for invoices outside any subscription."""

        invoice = event.payload
        subscription_id = subscription_id_from_invoice(invoice)
        if subscription_id is None:
            logger.info("Invoice %s is not attached to a subscription", invoice.get("id"))
            return None

        subscription = await self._provider.retrieve_subscription(subscription_id)
        user_id = self._subscription_user_id(subscription.metadata, subscription.id, event)
        if not subscription.price_ids:
            logger.warning("Subscription %s has no price items", subscription.id)
            entitlement = ProductEntitlement(product_id="")
        else:
            price = await self._provider.retrieve_price(subscription.price_ids[0])
            product = await self._provider.retrieve_product(price.product_id)
            entitlement = self._product_entitlement(product, event)

        return EntitlementDelta(
            user_id=user_id,
            credits_to_add=entitlement.credits,
            is_unlimited=entitlement.is_unlimited,
            plan_name=entitlement.plan_name,
            status=PaymentStatus.ACTIVE,
            source_id=str(invoice.get("id") or event.id),
            occurred_at=event.created,
            event_id=event.id,
            subscription_id=subscription.id,
            customer_id=object_id(invoice.get("customer")) or subscription.customer_id,
        )

    async def resolve_payment_failure(self, event: ProviderEvent) -> Optional[StatusChange]:
        invoice = event.payload
        subscription_id = subscription_id_from_invoice(invoice)
        if subscription_id is None:
            logger.info("Failed invoice %s is not attached to a subscription", invoice.get("id"))
            return None

        subscription = await self._provider.retrieve_subscription(subscription_id)
        user_id = self._subscription_user_id(subscription.metadata, subscription.id, event)
        return StatusChange(
            user_id=user_id,
            status=PaymentStatus.PAYMENT_FAILED,
            occurred_at=event.created,
            event_id=event.id,
            subscription_id=subscription.id,
            customer_id=object_id(invoice.get("customer")) or subscription.customer_id,
        )

    def resolve_cancellation(self, event: ProviderEvent) -> EntitlementDelta:
        """Cancellation needs no lookups: the payload is the subscription itself."""

        subscription = ProviderSubscription.from_provider(event.payload)
        metadata = string_metadata(event.payload.get("metadata"))
        user_id = self._subscription_user_id(metadata, subscription.id, event)
        return EntitlementDelta(
            user_id=user_id,
            credits_to_add=0,
            is_unlimited=False,
            plan_name=CANCELED_PLAN_NAME,
            status=PaymentStatus.CANCELED,
            source_id=subscription.id or event.id,
            occurred_at=event.created,
            event_id=event.id,
            subscription_id=subscription.id or None,
            customer_id=subscription.customer_id,
        )

    def _subscription_user_id(
        self,
        metadata: Mapping[str, str],
        subscription_id: str,
        event: ProviderEvent,
    ) -> str:
        user_id = user_id_from_subscription(metadata, self._user_id_key)
        if user_id is None:
            raise UnresolvableIdentity(
                f"subscription {subscription_id} has no {self._user_id_key!r} metadata",
                event_id=event.id,
            )
        return user_id

    def _product_entitlement(self, product: ProviderProduct, event: ProviderEvent) -> ProductEntitlement:
        entitlement = parse_product_entitlement(product)
        for defect in entitlement.defects:
            logger.warning(
                "Product %s metadata defect (%s) while handling event %s; treating as zero credits",
                product.id,
                defect,
                event.id,
            )
        return entitlement


__all__ = [
    "EntitlementResolver",
    "dedup_key_for_session",
    "parse_product_entitlement",
    "subscription_id_from_invoice",
    "user_id_from_session",
    "user_id_from_subscription",
]
