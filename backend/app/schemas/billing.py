"""API schemas for billing endpoints."""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..billing import WebhookDisposition, WebhookOutcome


class WebhookAcknowledgement(BaseModel):
    received: bool
    disposition: WebhookDisposition
    event_id: Optional[str] = Field(alias="eventId", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_outcome(cls, outcome: WebhookOutcome) -> "WebhookAcknowledgement":
        return cls(
            received=outcome.accepted,
            disposition=outcome.disposition,
            event_id=outcome.event_id,
        )
