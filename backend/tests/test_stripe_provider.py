"""Tests for the Stripe-backed payment provider adapter."""
from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any, Dict, List, Tuple

import pytest
import stripe

from backend.app.billing import PermanentLookupFailure, TransientLookupFailure
from backend.app.billing.config import load_billing_config
from backend.app.billing.stripe_provider import StripePaymentProvider


class FakeResource:
    def __init__(self, objects: Dict[str, Any]) -> None:
        self.objects = objects
        self.calls: List[Tuple[str, Dict[str, Any]]] = []

    def retrieve(self, object_id: str, params: Dict[str, Any] = None) -> Any:
        self.calls.append((object_id, params or {}))
        result = self.objects[object_id]
        if isinstance(result, Exception):
            raise result
        return result


def _client(**resources: FakeResource) -> SimpleNamespace:
    empty = FakeResource({})
    return SimpleNamespace(
        subscriptions=resources.get("subscriptions", empty),
        prices=resources.get("prices", empty),
        products=resources.get("products", empty),
        checkout=SimpleNamespace(sessions=resources.get("sessions", empty)),
    )


def test_subscription_is_mapped_from_expanded_object() -> None:
    subscriptions = FakeResource(
        {
            "sub_1": {
                "id": "sub_1",
                "customer": "cus_1",
                "status": "active",
                "metadata": {"uid": "user-1"},
                "items": {"data": [{"price": {"id": "price_1", "product": "prod_1"}}]},
            }
        }
    )
    provider = StripePaymentProvider(_client(subscriptions=subscriptions))

    subscription = asyncio.run(provider.retrieve_subscription("sub_1"))

    assert subscription.price_ids == ("price_1",)
    assert subscription.metadata == {"uid": "user-1"}
    assert subscription.customer_id == "cus_1"


def test_checkout_session_is_retrieved_with_line_items() -> None:
    sessions = FakeResource(
        {
            "cs_1": {
                "id": "cs_1",
                "payment_status": "paid",
                "invoice": "in_1",
                "line_items": {
                    "data": [
                        {"quantity": 3, "price": {"id": "price_1", "product": "prod_1"}},
                        {"quantity": 1, "price": {"id": "price_2"}},
                    ]
                },
            }
        }
    )
    provider = StripePaymentProvider(_client(sessions=sessions))

    session = asyncio.run(provider.retrieve_checkout_session("cs_1"))

    assert sessions.calls == [("cs_1", {"expand": ["line_items"]})]
    assert session.invoice_id == "in_1"
    assert len(session.line_items) == 1
    assert session.line_items[0].quantity == 3


def test_price_product_reference_accepts_expanded_product() -> None:
    prices = FakeResource({"price_1": {"id": "price_1", "product": {"id": "prod_1"}, "unit_amount": 900}})
    provider = StripePaymentProvider(_client(prices=prices))

    price = asyncio.run(provider.retrieve_price("price_1"))

    assert price.product_id == "prod_1"
    assert price.unit_amount == 900


def test_invalid_request_is_permanent() -> None:
    products = FakeResource({"prod_x": stripe.InvalidRequestError("No such product: prod_x", "id")})
    provider = StripePaymentProvider(_client(products=products))

    with pytest.raises(PermanentLookupFailure) as excinfo:
        asyncio.run(provider.retrieve_product("prod_x"))

    assert excinfo.value.status_code == 200


@pytest.mark.parametrize(
    "error",
    [
        stripe.APIConnectionError("connection reset"),
        stripe.RateLimitError("too many requests"),
        stripe.APIError("upstream 503"),
    ],
)
def test_network_and_server_errors_are_transient(error: stripe.StripeError) -> None:
    products = FakeResource({"prod_1": error})
    provider = StripePaymentProvider(_client(products=products))

    with pytest.raises(TransientLookupFailure) as excinfo:
        asyncio.run(provider.retrieve_product("prod_1"))

    assert excinfo.value.status_code == 500


def test_from_config_requires_secret_key() -> None:
    with pytest.raises(RuntimeError):
        StripePaymentProvider.from_config(load_billing_config({"ENTITLEMENT_STORE": "memory"}))


def test_from_config_builds_client() -> None:
    config = load_billing_config({"STRIPE_SECRET_KEY": "sk_test_123", "STRIPE_API_TIMEOUT_SEC": "3"})

    provider = StripePaymentProvider.from_config(config)

    assert isinstance(provider._client, stripe.StripeClient)
