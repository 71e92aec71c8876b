import json
import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from travelops.errors import NotFoundError
from travelops.finance.ledger import Direction
from travelops.finance.models import (
    EscrowStatus,
    PaymentRecord,
    ReconciliationRun,
    ReconciliationStatus,
    Refund,
    RefundItem,
    RefundStatus,
    TenderType,
    WalletType,
    WithdrawalRequest,
    WithdrawalStatus,
)
from travelops.finance.repository import Repository, create_schema

STAMP = "2024-01-01T00:00:00.000000+00:00"


@pytest.fixture
def repo():
    conn = sqlite3.connect(":memory:")
    create_schema(conn)
    return Repository(conn)


def add_wallet(repo, wallet_id="w1", owner="u1", wallet_type="customer", balance=50.0):
    repo.conn.execute(
        "INSERT INTO wallets VALUES (?, ?, ?, ?, ?, ?, ?)",
        (wallet_id, owner, wallet_type, balance, "USD", STAMP, STAMP),
    )


def add_escrow(repo, escrow_id, order_type, order_id, held=100.0, status="held", created=STAMP):
    repo.conn.execute(
        "INSERT INTO escrow_accounts VALUES (?, ?, ?, ?, 0, 0, ?, ?, ?)",
        (escrow_id, order_type, order_id, held, status, created, created),
    )


def test_get_wallet_round_trip(repo):
    add_wallet(repo)
    wallet = repo.get_wallet("u1", WalletType.CUSTOMER)
    assert wallet.id == "w1"
    assert wallet.wallet_type is WalletType.CUSTOMER
    assert wallet.balance == 50.0
    assert repo.get_wallet_by_id("w1") == wallet


def test_get_wallet_missing(repo):
    with pytest.raises(NotFoundError) as info:
        repo.get_wallet("nobody", WalletType.COURIER)
    assert info.value.resource == "wallet"
    with pytest.raises(NotFoundError):
        repo.get_wallet_by_id("missing")


def test_wallet_transactions_paging(repo):
    add_wallet(repo)
    for n in range(3):
        repo.create_wallet_transaction("w1", n + 1.0, Direction.CREDIT, "ref", f"r{n}", "d")
    first, total = repo.get_wallet_transactions("w1", 1, 2)
    assert total == 3
    assert [t.reference_id for t in first] == ["r2", "r1"]
    second, _ = repo.get_wallet_transactions("w1", 2, 2)
    assert [t.reference_id for t in second] == ["r0"]
    clamped, _ = repo.get_wallet_transactions("w1", 0, 500)
    assert len(clamped) == 3
    assert clamped[0].direction is Direction.CREDIT


def test_update_wallet_balance(repo):
    add_wallet(repo)
    repo.update_wallet_balance("w1", -20.0)
    assert repo.get_wallet_by_id("w1").balance == 30.0
    with pytest.raises(NotFoundError):
        repo.update_wallet_balance("missing", 1.0)


def test_transaction_rolls_back_on_error(repo):
    add_wallet(repo)
    with pytest.raises(RuntimeError):
        with repo.transaction():
            repo.update_wallet_balance("w1", 10.0)
            raise RuntimeError("boom")
    assert repo.get_wallet_by_id("w1").balance == 50.0


def test_transaction_commits(repo):
    add_wallet(repo)
    with repo.transaction() as conn:
        assert conn is repo.conn
        repo.update_wallet_balance("w1", 10.0)
        with repo.transaction():
            repo.update_wallet_balance("w1", 5.0)
    assert repo.get_wallet_by_id("w1").balance == 65.0


def test_escrow_updates(repo):
    add_escrow(repo, "e1", "booking", "b1", held=100.0)
    repo.update_escrow_released("e1", 30.0)
    repo.update_escrow_refunded("e1", 10.0)
    escrow = repo.get_escrow("booking", "b1")
    assert escrow.amount_released == 30.0
    assert escrow.amount_refunded == 10.0
    assert escrow.status is EscrowStatus.PARTIAL
    assert escrow.remaining == escrow.amount_held - 40.0


def test_escrow_missing(repo):
    with pytest.raises(NotFoundError):
        repo.get_escrow("booking", "none")
    with pytest.raises(NotFoundError):
        repo.update_escrow_released("none", 1.0)
    with pytest.raises(NotFoundError):
        repo.update_escrow_refunded("none", 1.0)


def test_active_escrows_by_owner(repo):
    repo.conn.execute("INSERT INTO bookings VALUES ('b1', 'owner')")
    repo.conn.execute("INSERT INTO bookings VALUES ('b2', 'owner')")
    repo.conn.execute("INSERT INTO bookings VALUES ('b3', 'someone')")
    repo.conn.execute("INSERT INTO purchase_orders VALUES ('p1', 'owner')")
    add_escrow(repo, "e1", "booking", "b1")
    add_escrow(repo, "e2", "booking", "b2", status="released")
    add_escrow(repo, "e3", "booking", "b3")
    add_escrow(repo, "e4", "procurement", "p1", status="partially_released",
               created="2024-02-01T00:00:00.000000+00:00")
    result = repo.get_active_escrows_by_owner("owner")
    assert [e.id for e in result] == ["e4", "e1"]
    assert result[1].created_at == "2024-01-01T00:00:00Z"
    assert repo.get_active_escrows_by_owner("stranger") == []


def test_create_payment_record(repo):
    record = PaymentRecord(order_type="booking", order_id="b1", tender_type=TenderType.CASH,
                           amount=75.0, currency="USD", recorded_by="acct")
    payment_id = repo.create_payment_record(record)
    row = repo.conn.execute(
        "SELECT tender_type, amount, recorded_by FROM payment_records WHERE id = ?", (payment_id,)
    ).fetchone()
    assert tuple(row) == ("cash", 75.0, "acct")


def test_refund_round_trip(repo):
    refund_id = repo.create_refund(Refund(order_type="booking", order_id="b1", refund_amount=5.0,
                                          refund_reason="late", created_by="acct",
                                          status=RefundStatus.APPROVED))
    refund = repo.get_refund(refund_id)
    assert refund.status is RefundStatus.APPROVED
    assert refund.refund_reason == "late"
    assert refund.approved_by is None
    repo.create_refund_item(RefundItem(refund_id=refund_id, item_id="i1", item_type="seat", amount=5.0))
    (count,) = repo.conn.execute(
        "SELECT COUNT(*) FROM refund_items WHERE refund_id = ?", (refund_id,)
    ).fetchone()
    assert count == 1
    with pytest.raises(NotFoundError):
        repo.get_refund("missing")


def test_daily_withdrawal_total(repo):
    now = datetime.now(timezone.utc)
    assert repo.get_daily_withdrawal_total("c1", now) == 0.0
    repo.create_withdrawal_request(WithdrawalRequest(courier_id="c1", request_amount=100.0))
    rejected = repo.create_withdrawal_request(WithdrawalRequest(courier_id="c1", request_amount=300.0))
    repo.update_withdrawal_rejection(rejected, "acct", "duplicate")
    yesterday = (now - timedelta(days=2)).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")
    repo.conn.execute(
        "INSERT INTO withdrawal_requests (id, courier_id, request_amount, status, requested_at,"
        " created_at, updated_at) VALUES ('old', 'c1', 900, 'requested', ?, ?, ?)",
        (yesterday, yesterday, yesterday),
    )
    assert repo.get_daily_withdrawal_total("c1", now) == 100.0
    assert repo.get_daily_withdrawal_total("c2", now) == 0.0


def test_withdrawal_lifecycle(repo):
    wid = repo.create_withdrawal_request(WithdrawalRequest(courier_id="c1", request_amount=40.0))
    created = repo.get_withdrawal_request(wid)
    assert created.status is WithdrawalStatus.REQUESTED
    assert created.settled_at is None
    repo.update_withdrawal_approval(wid, "acct", WithdrawalStatus.SETTLED)
    settled = repo.get_withdrawal_request(wid)
    assert settled.status is WithdrawalStatus.SETTLED
    assert (settled.approved_by, settled.reviewed_by) == ("acct", "acct")
    assert settled.settled_at is not None and settled.settled_at.tzinfo is not None


def test_withdrawal_rejection_and_status(repo):
    wid = repo.create_withdrawal_request(WithdrawalRequest(courier_id="c1", request_amount=40.0))
    repo.update_withdrawal_rejection(wid, "acct", "no funds")
    rejected = repo.get_withdrawal_request(wid)
    assert rejected.status is WithdrawalStatus.REJECTED
    assert rejected.rejected_reason == "no funds"
    repo.update_withdrawal_status(wid, WithdrawalStatus.APPROVED)
    assert repo.get_withdrawal_request(wid).status is WithdrawalStatus.APPROVED
    with pytest.raises(NotFoundError):
        repo.update_withdrawal_status("missing", WithdrawalStatus.APPROVED)
    with pytest.raises(NotFoundError):
        repo.get_withdrawal_request("missing")


def test_reconciliation_summary(repo):
    repo.create_payment_record(PaymentRecord(order_type="booking", order_id="b1",
                                             tender_type=TenderType.BANK, amount=200.0))
    add_escrow(repo, "e1", "booking", "b1", held=150.0)
    repo.update_escrow_released("e1", 50.0)
    repo.update_escrow_refunded("e1", 25.0)
    wid = repo.create_withdrawal_request(WithdrawalRequest(courier_id="c1", request_amount=30.0))
    repo.create_withdrawal_disbursement(wid, 30.0)
    for item_id, kind, status in [("x", "payment", "unreconciled"), ("y", "escrow", "unreconciled"),
                                  ("z", "escrow", "matched")]:
        repo.conn.execute(
            "INSERT INTO reconciliation_items VALUES (?, 'run', ?, 'ref', 1, 2, -1, ?, '')",
            (item_id, kind, status),
        )
    report = repo.get_reconciliation_summary()
    assert report.inflows == 200.0
    assert report.outflows == 30.0
    assert report.held_in_escrow == 150.0
    assert report.released == 50.0
    assert report.refunded == 25.0
    assert report.opening_balance == 0.0
    assert report.net_payable == report.inflows - report.outflows - report.refunded
    assert [i.id for i in report.unreconciled_items] == ["y", "x"]


def test_reconciliation_summary_empty(repo):
    report = repo.get_reconciliation_summary()
    assert report.net_payable == 0.0
    assert report.unreconciled_items == []


def test_create_reconciliation_run(repo):
    summary = {"inflows": 10, "items": ["a"]}
    run_id = repo.create_reconciliation_run(ReconciliationRun(
        run_date=datetime(2024, 3, 1, tzinfo=timezone.utc),
        status=ReconciliationStatus.COMPLETED, summary_json=summary, created_by="acct"))
    row = repo.conn.execute(
        "SELECT status, summary_json, created_by FROM reconciliation_runs WHERE id = ?", (run_id,)
    ).fetchone()
    assert row["status"] == "completed"
    assert json.loads(row["summary_json"]) == summary
    assert row["created_by"] == "acct"