"""Domain models for billing event reconciliation."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger("billing.models")

UNLIMITED_CREDITS = 999999
"""Store-level literal standing in for an uncapped credit balance."""

CANCELED_PLAN_NAME = "expired"


class ProviderEventType(str, Enum):
    """Provider event types the router reacts to."""

    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    CHECKOUT_ASYNC_PAYMENT_SUCCEEDED = "checkout.session.async_payment_succeeded"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"


class PaymentStatus(str, Enum):
    """Last known payment state stored on a user record."""

    ACTIVE = "active"
    CANCELED = "canceled"
    PAYMENT_FAILED = "payment_failed"


class WebhookDisposition(str, Enum):
    """How a single delivery was handled."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    RECORDED = "recorded"
    IGNORED = "ignored"
    UNRESOLVABLE = "unresolvable"
    REJECTED = "rejected"
    RETRY = "retry"


def _from_epoch(value: object) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return datetime.now(timezone.utc)


def object_id(value: object) -> Optional[str]:
    """Return an object id whether the field is a bare id or an expanded object."""

    if isinstance(value, str):
        return value or None
    if isinstance(value, Mapping):
        inner = value.get("id")
        return str(inner) if inner else None
    return None


def string_metadata(value: object) -> Dict[str, str]:
    if isinstance(value, Mapping):
        return {str(k): str(v) for k, v in value.items() if v is not None}
    return {}


def _list_data(value: object) -> List[Mapping[str, Any]]:
    if isinstance(value, Mapping):
        value = value.get("data")
    if isinstance(value, list):
        return [item for item in value if isinstance(item, Mapping)]
    return []


class ProviderEvent(BaseModel):
    """A decoded, signature-verified provider notification."""

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)
    created: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    livemode: bool = False

    model_config = ConfigDict(frozen=True)

    @property
    def event_type(self) -> Optional[ProviderEventType]:
        try:
            return ProviderEventType(self.type)
        except ValueError:
            return None

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "ProviderEvent":
        """Build an event from the provider's JSON envelope."""

        envelope = data.get("data")
        obj = envelope.get("object") if isinstance(envelope, Mapping) else None
        if not isinstance(obj, Mapping):
            raise ValueError("event is missing data.object")
        return cls(
            id=str(data.get("id") or ""),
            type=str(data.get("type") or ""),
            payload=dict(obj),
            created=_from_epoch(data.get("created")),
            livemode=bool(data.get("livemode", False)),
        )


class ProviderSubscription(BaseModel):
    """Read-only view of a provider subscription."""

    id: str
    customer_id: Optional[str] = None
    status: Optional[str] = None
    price_ids: Tuple[str, ...] = ()
    metadata: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_provider(cls, obj: Mapping[str, Any]) -> "ProviderSubscription":
        price_ids = []
        for item in _list_data(obj.get("items")):
            price_id = object_id(item.get("price"))
            if price_id:
                price_ids.append(price_id)
        return cls(
            id=str(obj.get("id") or ""),
            customer_id=object_id(obj.get("customer")),
            status=obj.get("status"),
            price_ids=tuple(price_ids),
            metadata=string_metadata(obj.get("metadata")),
        )


class ProviderPrice(BaseModel):
    """Read-only view of a provider price."""

    id: str
    product_id: str
    unit_amount: Optional[int] = None
    currency: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_provider(cls, obj: Mapping[str, Any]) -> "ProviderPrice":
        return cls(
            id=str(obj.get("id") or ""),
            product_id=object_id(obj.get("product")) or "",
            unit_amount=obj.get("unit_amount"),
            currency=obj.get("currency"),
        )


class ProviderProduct(BaseModel):
    """Read-only view of a provider product and its operator metadata."""

    id: str
    name: str = ""
    metadata: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_provider(cls, obj: Mapping[str, Any]) -> "ProviderProduct":
        return cls(
            id=str(obj.get("id") or ""),
            name=str(obj.get("name") or ""),
            metadata=string_metadata(obj.get("metadata")),
        )


class CheckoutLineItem(BaseModel):
    price_id: str
    product_id: str
    quantity: int = Field(default=1, ge=0)

    model_config = ConfigDict(frozen=True)


class ProviderCheckoutSession(BaseModel):
    """Read-only view of a checkout session with its line items."""

    id: str
    mode: Optional[str] = None
    payment_status: Optional[str] = None
    client_reference_id: Optional[str] = None
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    invoice_id: Optional[str] = None
    line_items: Tuple[CheckoutLineItem, ...] = ()

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_provider(cls, obj: Mapping[str, Any]) -> "ProviderCheckoutSession":
        items = []
        for item in _list_data(obj.get("line_items")):
            price = item.get("price")
            price_id = object_id(price)
            product_id = object_id(price.get("product")) if isinstance(price, Mapping) else None
            if not price_id or not product_id:
                continue
            quantity = item.get("quantity")
            items.append(
                CheckoutLineItem(
                    price_id=price_id,
                    product_id=product_id,
                    quantity=quantity if isinstance(quantity, int) and quantity >= 0 else 1,
                )
            )
        return cls(
            id=str(obj.get("id") or ""),
            mode=obj.get("mode"),
            payment_status=obj.get("payment_status"),
            client_reference_id=obj.get("client_reference_id") or None,
            customer_id=object_id(obj.get("customer")),
            subscription_id=object_id(obj.get("subscription")),
            invoice_id=object_id(obj.get("invoice")),
            line_items=tuple(items),
        )


class ProductEntitlement(BaseModel):
    """Entitlement fields parsed from a product's operator metadata."""

    product_id: str
    credits: int = Field(default=0, ge=0)
    is_unlimited: bool = False
    plan_name: str = ""
    defects: Tuple[str, ...] = ()

    model_config = ConfigDict(frozen=True)


class EntitlementDelta(BaseModel):
    """Change to apply to one user's entitlement record."""

    user_id: str = Field(min_length=1)
    credits_to_add: int = Field(default=0, ge=0)
    is_unlimited: bool = False
    plan_name: str
    status: PaymentStatus
    source_id: str = Field(alias="sourceInvoiceOrSessionId", min_length=1)
    occurred_at: datetime
    event_id: Optional[str] = None
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class StatusChange(BaseModel):
    """Record-only update of a user's payment status."""

    user_id: str = Field(min_length=1)
    status: PaymentStatus
    occurred_at: datetime
    event_id: Optional[str] = None
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class PaymentLedgerEntry(BaseModel):
    """One applied credit, keyed by the provider invoice or session id."""

    source_id: str = Field(alias="sourceId")
    credits_applied: int = Field(alias="creditsApplied", ge=0)
    applied_at: datetime = Field(alias="appliedAt")

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class CreditGrant(BaseModel):
    """Atomic store mutation: credit or set unlimited, plus one ledger append."""

    user_id: str
    credits_to_add: int = Field(ge=0)
    is_unlimited: bool
    plan: Optional[str] = None
    status: PaymentStatus
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    billing_date: datetime
    entry: PaymentLedgerEntry

    model_config = ConfigDict(frozen=True)

    @property
    def source_id(self) -> str:
        return self.entry.source_id


class EntitlementOverwrite(BaseModel):
    """Plain merge-write of entitlement fields; ``None`` fields are left untouched."""

    user_id: str
    status: PaymentStatus
    credits: Optional[int] = Field(default=None, ge=0)
    is_unlimited: Optional[bool] = None
    plan: Optional[str] = None
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    def to_document(self) -> Dict[str, Any]:
        fields: Dict[str, Any] = {"lastPaymentStatus": self.status.value}
        optional = {
            "credits": self.credits,
            "isUnlimited": self.is_unlimited,
            "plan": self.plan,
            "subscriptionId": self.subscription_id,
            "stripeCustomerId": self.customer_id,
        }
        fields.update({key: value for key, value in optional.items() if value is not None})
        return fields


class UserEntitlementRecord(BaseModel):
    """Durable per-user entitlement state as held by the document store."""

    user_id: str
    credits: int = Field(default=0, ge=0)
    is_unlimited: bool = Field(default=False, alias="isUnlimited")
    plan: Optional[str] = None
    last_payment_status: Optional[PaymentStatus] = Field(default=None, alias="lastPaymentStatus")
    subscription_id: Optional[str] = Field(default=None, alias="subscriptionId")
    stripe_customer_id: Optional[str] = Field(default=None, alias="stripeCustomerId")
    last_billing_date: Optional[datetime] = Field(default=None, alias="lastBillingDate")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")
    payments: List[PaymentLedgerEntry] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("last_payment_status", mode="before")
    @classmethod
    def _known_status(cls, value: object) -> object:
        if value is None or isinstance(value, PaymentStatus):
            return value
        try:
            return PaymentStatus(str(value))
        except ValueError:
            return None

    @field_validator("payments", mode="before")
    @classmethod
    def _ledger_entries(cls, value: object) -> object:
        if value is None:
            return []
        if not isinstance(value, list):
            return value
        entries: List[PaymentLedgerEntry] = []
        for entry in value:
            if isinstance(entry, PaymentLedgerEntry):
                entries.append(entry)
                continue
            try:
                entries.append(PaymentLedgerEntry.model_validate(entry))
            except ValidationError:
                # The stores still match the raw sourceId, so dedup holds.
                logger.warning("Ignoring malformed ledger entry %r", entry)
        return entries

    @classmethod
    def from_document(cls, user_id: str, data: Mapping[str, Any]) -> "UserEntitlementRecord":
        fields = {key: value for key, value in data.items() if value is not None}
        fields.pop("user_id", None)
        credits = fields.get("credits")
        if not isinstance(credits, int) or isinstance(credits, bool) or credits < 0:
            fields["credits"] = 0
        return cls(user_id=user_id, **fields)

    def has_payment(self, source_id: str) -> bool:
        return any(entry.source_id == source_id for entry in self.payments)


class WebhookOutcome(BaseModel):
    """Result of handling one delivery, relayed by the transport."""

    disposition: WebhookDisposition
    status_code: int
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    detail: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @property
    def accepted(self) -> bool:
        return 200 <= self.status_code < 300


class BillingAuditEventType(str, Enum):
    """Audit event categories emitted by the webhook engine."""

    CREDITS_APPLIED = "credits_applied"
    DUPLICATE_SKIPPED = "duplicate_skipped"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    PAYMENT_FAILED = "payment_failed"
    IDENTITY_UNRESOLVED = "identity_unresolved"
    LOOKUP_REJECTED = "lookup_rejected"


class BillingAuditEvent(BaseModel):
    """Structured audit event for operators and analytics."""

    event_type: BillingAuditEventType
    provider_event_id: Optional[str] = None
    user_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)
