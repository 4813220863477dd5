"""Payment provider lookups backed by the Stripe API."""
from __future__ import annotations

import logging
from typing import Any, Callable, Mapping

import stripe
from fastapi.concurrency import run_in_threadpool

from .config import BillingConfig
from .exceptions import PermanentLookupFailure, TransientLookupFailure
from .models import (
    ProviderCheckoutSession,
    ProviderPrice,
    ProviderProduct,
    ProviderSubscription,
)

logger = logging.getLogger("billing.provider")


class StripePaymentProvider:
    """Read-only access to subscriptions, prices, products and checkout sessions.

    ``InvalidRequestError`` (unknown id, bad parameters) is permanent; every
    other Stripe error is treated as transient so the webhook is redelivered.
    """

    def __init__(self, client: stripe.StripeClient) -> None:
        self._client = client

    @classmethod
    def from_config(cls, config: BillingConfig) -> "StripePaymentProvider":
        if not config.stripe_secret_key:
            raise RuntimeError("STRIPE_SECRET_KEY is not configured")
        client = stripe.StripeClient(
            config.stripe_secret_key,
            max_network_retries=config.provider_max_retries,
            http_client=stripe.RequestsClient(timeout=config.provider_timeout_seconds),
        )
        return cls(client)

    async def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        obj = await self._call("subscription", subscription_id, self._client.subscriptions.retrieve)
        return ProviderSubscription.from_provider(obj)

    async def retrieve_price(self, price_id: str) -> ProviderPrice:
        obj = await self._call("price", price_id, self._client.prices.retrieve)
        return ProviderPrice.from_provider(obj)

    async def retrieve_product(self, product_id: str) -> ProviderProduct:
        obj = await self._call("product", product_id, self._client.products.retrieve)
        return ProviderProduct.from_provider(obj)

    async def retrieve_checkout_session(self, session_id: str) -> ProviderCheckoutSession:
        obj = await self._call(
            "checkout session",
            session_id,
            self._client.checkout.sessions.retrieve,
            params={"expand": ["line_items"]},
        )
        return ProviderCheckoutSession.from_provider(obj)

    async def _call(
        self,
        kind: str,
        object_id: str,
        fetch: Callable[..., Mapping[str, Any]],
        **kwargs: Any,
    ) -> Mapping[str, Any]:
        try:
            return await run_in_threadpool(fetch, object_id, **kwargs)
        except stripe.InvalidRequestError as exc:
            raise PermanentLookupFailure(f"{kind} {object_id} lookup rejected: {exc.user_message or exc}") from exc
        except stripe.StripeError as exc:
            logger.warning("Stripe %s lookup for %s failed: %s", kind, object_id, exc)
            raise TransientLookupFailure(f"{kind} {object_id} lookup failed: {exc.user_message or exc}") from exc


__all__ = ["StripePaymentProvider"]
