import json
from datetime import datetime, timezone

import pytest

from travelops.finance.ledger import Direction
from travelops.finance.models import (
    EscrowAccount,
    EscrowStatus,
    EscrowSummary,
    PaginatedTransactions,
    ReconciliationItem,
    ReconciliationReport,
    RefundRequest,
    RefundStatus,
    TenderType,
    TransactionResponse,
    Wallet,
    WalletType,
    WithdrawalRequest,
    WithdrawalStatus,
    to_json,
)

WHEN = datetime(2026, 7, 14, 18, 30, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "enum_cls, members",
    [
        (RefundStatus, ["approved", "pending", "rejected"]),
        (WithdrawalStatus, ["requested", "approved", "rejected", "settled"]),
        (WalletType, ["customer", "supplier", "courier", "system"]),
        (EscrowStatus, ["held", "partially_released", "released", "refunded"]),
    ],
)
def test_status_values_parse_back(enum_cls, members):
    parsed = [enum_cls(value) for value in members]
    assert [str(p) for p in parsed] == members
    assert all(p for p in parsed)


def test_direction_values_round_trip():
    assert Direction("debit") is Direction.DEBIT
    assert Direction("credit") is Direction.CREDIT


def test_wallet_to_json_uses_camel_case_and_rfc3339():
    wallet = Wallet(
        id="w1",
        owner_id=None,
        wallet_type=WalletType.COURIER,
        balance=12.5,
        currency="USD",
        created_at=WHEN,
        updated_at=WHEN,
    )
    data = json.loads(to_json(wallet))
    assert data["ownerId"] is None
    assert data["walletType"] == "courier"
    assert data["createdAt"] == "2026-07-14T18:30:00Z"
    assert data["balance"] == 12.5


def test_paginated_transactions_nested_encoding():
    tx = TransactionResponse(
        id="t1",
        wallet_id="w1",
        amount=5.0,
        direction=Direction.CREDIT,
        reference_type="refund",
        reference_id="r1",
        description="d",
        created_at=WHEN,
    )
    page = PaginatedTransactions(items=[tx], total=1, page=1, page_size=20, total_pages=1)
    data = json.loads(to_json(page))
    assert data["pageSize"] == 20
    assert data["totalPages"] == 1
    assert data["items"][0]["direction"] == "credit"
    assert data["items"][0]["walletId"] == "w1"


def test_reconciliation_report_defaults_serialise_empty_list():
    data = json.loads(to_json(ReconciliationReport()))
    assert data["unreconciledItems"] == []
    assert data["netPayable"] == 0.0
    assert data["heldInEscrow"] == 0.0


def test_reconciliation_report_items_encoded():
    item = ReconciliationItem(
        id="i1",
        run_id="run",
        item_type="payment",
        reference_id="p1",
        expected_amount=10.0,
        actual_amount=8.0,
        difference=2.0,
        status="unreconciled",
    )
    data = json.loads(to_json(ReconciliationReport(unreconciled_items=[item])))
    assert data["unreconciledItems"][0]["runId"] == "run"
    assert data["unreconciledItems"][0]["expectedAmount"] == 10.0


def test_withdrawal_request_defaults():
    req = WithdrawalRequest(courier_id="c1", request_amount=100.0)
    assert req.status is WithdrawalStatus.REQUESTED
    assert req.settled_at is None
    data = json.loads(to_json(req))
    assert data["status"] == "requested"
    assert data["courierId"] == "c1"


def test_refund_request_items_are_independent():
    a = RefundRequest()
    b = RefundRequest()
    a.items.append("x")
    assert b.items == []


def test_escrow_remaining_balance():
    escrow = EscrowAccount(
        id="e1",
        order_type="booking",
        order_id="o1",
        amount_held=100.0,
        amount_released=30.0,
        amount_refunded=20.0,
        status=EscrowStatus.PARTIAL,
        created_at=WHEN,
        updated_at=WHEN,
    )
    assert escrow.remaining == 50.0
    assert json.loads(to_json(escrow))["status"] == "partially_released"


def test_list_of_summaries_to_json():
    summary = EscrowSummary(
        id="e1",
        order_type="procurement",
        order_id="o1",
        amount_held=1.0,
        amount_released=0.0,
        status="held",
        created_at="2026-07-14T18:30:00Z",
    )
    data = json.loads(to_json([summary]))
    assert data == [
        {
            "id": "e1",
            "orderType": "procurement",
            "orderId": "o1",
            "amountHeld": 1.0,
            "amountReleased": 0.0,
            "status": "held",
            "createdAt": "2026-07-14T18:30:00Z",
        }
    ]


def test_tender_type_values():
    assert TenderType("bank_transfer") is TenderType.BANK
    assert TenderType("mobile_money") is TenderType.MOBILE