from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import time
from typing import Dict, List, Optional, Tuple

import pytest

from backend.app.billing import (
    BillingAuditEvent,
    CreditGrant,
    EntitlementOverwrite,
    EntitlementResolver,
    EventAuthenticator,
    EventRouter,
    IdempotentReconciler,
    InMemoryEntitlementStore,
    PermanentLookupFailure,
    ProviderCheckoutSession,
    ProviderPrice,
    ProviderProduct,
    ProviderSubscription,
    TransientLookupFailure,
    UserEntitlementRecord,
    WebhookEngine,
)

WEBHOOK_SECRET = "whsec_test_secret"


def sign_payload(payload: bytes, *, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def event_body(event_id: str, event_type: str, obj: Dict[str, object], *, created: int = 1_700_000_000) -> bytes:
    envelope = {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": created,
        "livemode": False,
        "data": {"object": obj},
    }
    return json.dumps(envelope).encode("utf-8")


class FakePaymentProvider:
    def __init__(self) -> None:
        self.subscriptions: Dict[str, ProviderSubscription] = {}
        self.prices: Dict[str, ProviderPrice] = {}
        self.products: Dict[str, ProviderProduct] = {}
        self.sessions: Dict[str, ProviderCheckoutSession] = {}
        self.failures: Dict[str, Exception] = {}
        self.calls: List[Tuple[str, str]] = []

    def add_plan(
        self,
        *,
        subscription_id: str = "sub_1",
        price_id: str = "price_1",
        product_id: str = "prod_1",
        uid: Optional[str] = "user-1",
        metadata: Optional[Dict[str, str]] = None,
        name: str = "Pro Monthly",
    ) -> None:
        self.subscriptions[subscription_id] = ProviderSubscription(
            id=subscription_id,
            customer_id="cus_1",
            status="active",
            price_ids=(price_id,),
            metadata={"uid": uid} if uid else {},
        )
        self.prices[price_id] = ProviderPrice(id=price_id, product_id=product_id)
        self.products[product_id] = ProviderProduct(id=product_id, name=name, metadata=metadata or {})

    async def _lookup(self, kind: str, object_id: str, table: Dict[str, object]):
        self.calls.append((kind, object_id))
        await asyncio.sleep(0)
        failure = self.failures.get(object_id)
        if failure is not None:
            raise failure
        if object_id not in table:
            raise PermanentLookupFailure(f"{kind} {object_id} not found")
        return table[object_id]

    async def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        return await self._lookup("subscription", subscription_id, self.subscriptions)

    async def retrieve_price(self, price_id: str) -> ProviderPrice:
        return await self._lookup("price", price_id, self.prices)

    async def retrieve_product(self, product_id: str) -> ProviderProduct:
        return await self._lookup("product", product_id, self.products)

    async def retrieve_checkout_session(self, session_id: str) -> ProviderCheckoutSession:
        return await self._lookup("checkout_session", session_id, self.sessions)


class RecordingStore(InMemoryEntitlementStore):
    def __init__(self) -> None:
        super().__init__()
        self.calls: List[str] = []
        self.unavailable = False

    def _check(self, name: str) -> None:
        self.calls.append(name)
        if self.unavailable:
            raise TransientLookupFailure("store unavailable")

    async def get_user(self, user_id: str) -> Optional[UserEntitlementRecord]:
        self._check("get_user")
        await asyncio.sleep(0)
        return await super().get_user(user_id)

    async def apply_grant(self, grant: CreditGrant) -> bool:
        self._check("apply_grant")
        await asyncio.sleep(0)
        return await super().apply_grant(grant)

    async def overwrite(self, update: EntitlementOverwrite) -> None:
        self._check("overwrite")
        await super().overwrite(update)


class FakeEventLogger:
    def __init__(self) -> None:
        self.events: List[BillingAuditEvent] = []

    def log(self, event: BillingAuditEvent) -> None:
        self.events.append(event)


@pytest.fixture
def provider() -> FakePaymentProvider:
    return FakePaymentProvider()


@pytest.fixture
def store() -> RecordingStore:
    return RecordingStore()


@pytest.fixture
def event_logger() -> FakeEventLogger:
    return FakeEventLogger()


@pytest.fixture
def engine(provider, store, event_logger) -> WebhookEngine:
    router = EventRouter(
        EntitlementResolver(provider),
        IdempotentReconciler(store),
        event_logger=event_logger,
    )
    return WebhookEngine(EventAuthenticator(WEBHOOK_SECRET, tolerance_seconds=300), router)
