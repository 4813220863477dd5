"""In-process entitlement store for local development and tests."""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .models import (
    UNLIMITED_CREDITS,
    CreditGrant,
    EntitlementOverwrite,
    UserEntitlementRecord,
)


class InMemoryEntitlementStore:
    """Keeps user documents in a dict; each write holds a lock for its full read-modify-write."""

    def __init__(self) -> None:
        self._documents: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def get_user(self, user_id: str) -> Optional[UserEntitlementRecord]:
        document = self._documents.get(user_id)
        if document is None:
            return None
        return UserEntitlementRecord.from_document(user_id, _copy_document(document))

    async def apply_grant(self, grant: CreditGrant) -> bool:
        async with self._lock:
            document = self._documents.setdefault(grant.user_id, {"credits": 0, "payments": []})
            payments = document.setdefault("payments", [])
            if any(entry.get("sourceId") == grant.source_id for entry in payments):
                return False

            if grant.is_unlimited or document.get("isUnlimited") is True:
                document["credits"] = UNLIMITED_CREDITS
                document["isUnlimited"] = True
            else:
                document["credits"] = int(document.get("credits") or 0) + grant.credits_to_add
                document["isUnlimited"] = False

            if grant.plan:
                document["plan"] = grant.plan
            document["lastPaymentStatus"] = grant.status.value
            if grant.subscription_id:
                document["subscriptionId"] = grant.subscription_id
            if grant.customer_id:
                document["stripeCustomerId"] = grant.customer_id
            document["lastBillingDate"] = grant.billing_date
            document["updatedAt"] = datetime.now(timezone.utc)
            payments.append(grant.entry.to_document())
            return True

    async def overwrite(self, update: EntitlementOverwrite) -> None:
        async with self._lock:
            document = self._documents.setdefault(update.user_id, {"credits": 0, "payments": []})
            document.update(update.to_document())
            document["updatedAt"] = datetime.now(timezone.utc)

    def clear(self) -> None:
        self._documents.clear()


def _copy_document(document: Dict[str, Any]) -> Dict[str, Any]:
    copied = dict(document)
    copied["payments"] = [dict(entry) for entry in document.get("payments", [])]
    return copied


__all__ = ["InMemoryEntitlementStore"]
