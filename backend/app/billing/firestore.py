"""Cloud Firestore entitlement store."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import firebase_admin
from fastapi.concurrency import run_in_threadpool
from firebase_admin import credentials
from firebase_admin import firestore as firebase_firestore
from google.api_core import exceptions as google_exceptions
from google.cloud import firestore

from .config import BillingConfig
from .exceptions import TransientLookupFailure
from .models import (
    UNLIMITED_CREDITS,
    CreditGrant,
    EntitlementOverwrite,
    UserEntitlementRecord,
)

logger = logging.getLogger("billing.store")

_STORE_ERRORS = (google_exceptions.GoogleAPICallError, google_exceptions.RetryError)


def get_firebase_app(config: BillingConfig) -> firebase_admin.App:
    """Return the default Firebase app, initialising it from config on first use."""

    try:
        return firebase_admin.get_app()
    except ValueError:
        pass

    if config.firebase_service_account:
        cred = credentials.Certificate(json.loads(config.firebase_service_account))
    elif config.google_credentials_path:
        cred = credentials.Certificate(config.google_credentials_path)
    else:
        cred = credentials.ApplicationDefault()
    app = firebase_admin.initialize_app(cred)
    logger.info("Firebase Admin initialized")
    return app


def create_firestore_client(config: BillingConfig) -> firestore.Client:
    return firebase_firestore.client(app=get_firebase_app(config))


class FirestoreEntitlementStore:
    """Stores one document per user under ``users/{uid}``.

    Grants run in a Firestore transaction that re-reads the ledger, and the
    write itself is a merge using ``Increment`` and ``ArrayUnion`` so the
    numeric field is never rewritten from a client-side read.
    """

    def __init__(
        self,
        client: firestore.Client,
        *,
        collection: str = "users",
        timeout_seconds: float = 10.0,
        transaction_attempts: int = 5,
    ) -> None:
        self._client = client
        self._collection = collection
        self._timeout = timeout_seconds
        self._attempts = max(1, transaction_attempts)

    @classmethod
    def from_config(cls, config: BillingConfig) -> "FirestoreEntitlementStore":
        return cls(
            create_firestore_client(config),
            collection=config.users_collection,
            timeout_seconds=config.firestore_timeout_seconds,
            transaction_attempts=config.firestore_transaction_attempts,
        )

    def _doc(self, user_id: str) -> firestore.DocumentReference:
        return self._client.collection(self._collection).document(user_id)

    async def get_user(self, user_id: str) -> Optional[UserEntitlementRecord]:
        return await run_in_threadpool(self._get_user, user_id)

    async def apply_grant(self, grant: CreditGrant) -> bool:
        return await run_in_threadpool(self._apply_grant, grant)

    async def overwrite(self, update: EntitlementOverwrite) -> None:
        await run_in_threadpool(self._overwrite, update)

    def _get_user(self, user_id: str) -> Optional[UserEntitlementRecord]:
        try:
            snap = self._doc(user_id).get(timeout=self._timeout)
        except _STORE_ERRORS as exc:
            raise TransientLookupFailure(f"reading user {user_id} failed: {exc}") from exc
        if not snap.exists:
            return None
        return UserEntitlementRecord.from_document(user_id, snap.to_dict() or {})

    def _apply_grant(self, grant: CreditGrant) -> bool:
        doc_ref = self._doc(grant.user_id)
        timeout = self._timeout

        @firestore.transactional
        def apply(transaction) -> bool:
            snap = doc_ref.get(transaction=transaction, timeout=timeout)
            existing = snap.to_dict() if snap.exists else {}
            ledger = existing.get("payments") or []
            if any(isinstance(entry, dict) and entry.get("sourceId") == grant.source_id for entry in ledger):
                return False

            payload: Dict[str, Any] = {
                "lastPaymentStatus": grant.status.value,
                "lastBillingDate": grant.billing_date,
                "payments": firestore.ArrayUnion([grant.entry.to_document()]),
                "updatedAt": firestore.SERVER_TIMESTAMP,
            }
            if grant.is_unlimited or existing.get("isUnlimited") is True:
                payload["credits"] = UNLIMITED_CREDITS
                payload["isUnlimited"] = True
            else:
                payload["credits"] = firestore.Increment(grant.credits_to_add)
                payload["isUnlimited"] = False
            if grant.plan:
                payload["plan"] = grant.plan
            if grant.subscription_id:
                payload["subscriptionId"] = grant.subscription_id
            if grant.customer_id:
                payload["stripeCustomerId"] = grant.customer_id

            transaction.set(doc_ref, payload, merge=True)
            return True

        try:
            return apply(self._client.transaction(max_attempts=self._attempts))
        except _STORE_ERRORS as exc:
            raise TransientLookupFailure(
                f"crediting user {grant.user_id} for {grant.source_id} failed: {exc}"
            ) from exc
        except ValueError as exc:
            # Raised by the transactional wrapper once every attempt ended in Aborted.
            logger.warning("Transaction for user %s did not commit: %s", grant.user_id, exc)
            raise TransientLookupFailure(
                f"crediting user {grant.user_id} for {grant.source_id} contended: {exc}"
            ) from exc

    def _overwrite(self, update: EntitlementOverwrite) -> None:
        fields = update.to_document()
        fields["updatedAt"] = firestore.SERVER_TIMESTAMP
        try:
            self._doc(update.user_id).set(fields, merge=True, timeout=self._timeout)
        except _STORE_ERRORS as exc:
            raise TransientLookupFailure(f"updating user {update.user_id} failed: {exc}") from exc


__all__ = ["FirestoreEntitlementStore", "create_firestore_client", "get_firebase_app"]
