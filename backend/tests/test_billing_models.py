"""Tests for billing model mapping helpers."""
from __future__ import annotations

import pytest

from backend.app.billing import (
    EntitlementOverwrite,
    PaymentStatus,
    ProviderEvent,
    ProviderEventType,
    UserEntitlementRecord,
)


def test_record_from_document_tolerates_unexpected_values() -> None:
    record = UserEntitlementRecord.from_document(
        "user-1",
        {
            "credits": "lots",
            "lastPaymentStatus": "past_due",
            "plan": None,
            "payments": [{"sourceId": "in_1", "creditsApplied": 5, "appliedAt": "2024-05-01T00:00:00Z"}, "junk"],
        },
    )

    assert record.credits == 0
    assert record.last_payment_status is None
    assert record.plan is None
    assert [entry.source_id for entry in record.payments] == ["in_1"]


def test_overwrite_document_omits_unset_fields() -> None:
    document = EntitlementOverwrite(user_id="user-1", status=PaymentStatus.PAYMENT_FAILED).to_document()

    assert document == {"lastPaymentStatus": "payment_failed"}


def test_event_type_is_none_for_unhandled_types() -> None:
    event = ProviderEvent.from_payload({"id": "evt_1", "type": "charge.refunded", "data": {"object": {"id": "ch_1"}}})

    assert event.event_type is None
    assert ProviderEvent(id="evt_2", type="invoice.paid").event_type == ProviderEventType.INVOICE_PAID


def test_event_requires_data_object() -> None:
    with pytest.raises(ValueError):
        ProviderEvent.from_payload({"id": "evt_1", "type": "invoice.paid"})


def test_incomplete_ledger_entries_do_not_block_reads() -> None:
    record = UserEntitlementRecord.from_document(
        "user-1",
        {
            "credits": 10,
            "payments": [
                {"sourceId": "in_legacy"},
                {"sourceId": "in_bad", "creditsApplied": "ten", "appliedAt": "2024-05-01T00:00:00Z"},
                {"sourceId": "in_1", "creditsApplied": 10, "appliedAt": "2024-05-01T00:00:00Z"},
            ],
        },
    )

    assert record.credits == 10
    assert [entry.source_id for entry in record.payments] == ["in_1"]
