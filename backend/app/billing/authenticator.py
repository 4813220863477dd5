"""Signature verification and decoding of inbound provider events."""
from __future__ import annotations

import json
import logging
from typing import Optional

import stripe
from pydantic import ValidationError

from .exceptions import AuthenticationFailure
from .models import ProviderEvent

logger = logging.getLogger("billing.webhook")


class EventAuthenticator:
    """Verifies the provider signature over the exact request bytes.

    Fails closed: a missing or malformed header, a timestamp outside the
    tolerance window, an HMAC mismatch or an undecodable body all raise
    :class:`AuthenticationFailure`.
    """

    def __init__(self, signing_secret: str, *, tolerance_seconds: int = 300) -> None:
        if not signing_secret:
            raise ValueError("signing_secret must be provided")
        if tolerance_seconds <= 0:
            raise ValueError("tolerance_seconds must be positive")
        self._secret = signing_secret
        self._tolerance = tolerance_seconds

    def authenticate(self, raw_body: bytes, signature_header: Optional[str]) -> ProviderEvent:
        if not signature_header:
            raise AuthenticationFailure("missing signature header")

        try:
            body = raw_body.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise AuthenticationFailure("request body is not valid UTF-8") from exc

        try:
            stripe.WebhookSignature.verify_header(
                body,
                signature_header,
                self._secret,
                tolerance=self._tolerance,
            )
        except stripe.SignatureVerificationError as exc:
            raise AuthenticationFailure(f"signature verification failed: {exc.user_message or exc}") from exc

        try:
            data = json.loads(body)
        except ValueError as exc:
            raise AuthenticationFailure("request body is not valid JSON") from exc
        if not isinstance(data, dict):
            raise AuthenticationFailure("event envelope must be a JSON object")

        try:
            event = ProviderEvent.from_payload(data)
        except (ValueError, ValidationError) as exc:
            raise AuthenticationFailure(f"malformed event: {exc}") from exc

        logger.debug("Verified event %s type=%s", event.id, event.type)
        return event


__all__ = ["EventAuthenticator"]
