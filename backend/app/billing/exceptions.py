"""Errors raised while authenticating and reconciling billing webhooks."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import status


@dataclass
class BillingWebhookError(Exception):
    """Base error carrying the HTTP status the transport should relay."""

    code: str
    message: str
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    event_id: Optional[str] = None

    def __post_init__(self) -> None:
        super().__init__(self.message)

    @property
    def payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.event_id:
            payload["eventId"] = self.event_id
        return payload


class AuthenticationFailure(BillingWebhookError):
    """Signature, timestamp or body could not be verified."""

    def __init__(self, message: str) -> None:
        super().__init__(
            code="authentication_failed",
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
        )


class UnresolvableIdentity(BillingWebhookError):
    """The event does not carry a user id at its canonical location.

    Redelivery cannot fix this, so the event is acknowledged and left for
    manual reconciliation.
    """

    def __init__(self, message: str, *, event_id: Optional[str] = None) -> None:
        super().__init__(
            code="identity_unresolved",
            message=message,
            status_code=status.HTTP_200_OK,
            event_id=event_id,
        )


class TransientLookupFailure(BillingWebhookError):
    """Network, timeout or availability failure talking to the provider or store."""

    def __init__(self, message: str, *, event_id: Optional[str] = None) -> None:
        super().__init__(
            code="transient_failure",
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            event_id=event_id,
        )


class PermanentLookupFailure(BillingWebhookError):
    """The provider rejected a lookup in a way redelivery will not change."""

    def __init__(self, message: str, *, event_id: Optional[str] = None) -> None:
        super().__init__(
            code="lookup_rejected",
            message=message,
            status_code=status.HTTP_200_OK,
            event_id=event_id,
        )


__all__ = [
    "AuthenticationFailure",
    "BillingWebhookError",
    "PermanentLookupFailure",
    "TransientLookupFailure",
    "UnresolvableIdentity",
]
