"""SQLite persistence for wallets, escrows, payments, refunds and withdrawals."""

from __future__ import annotations

import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, time, timedelta, timezone
from typing import Any, Iterator

from travelops.errors import NotFoundError
from travelops.finance.ledger import Direction, create_ledger_schema
from travelops.finance.models import (
    EscrowAccount,
    EscrowStatus,
    EscrowSummary,
    PaymentRecord,
    ReconciliationItem,
    ReconciliationReport,
    ReconciliationRun,
    Refund,
    RefundItem,
    RefundStatus,
    Wallet,
    WalletTransaction,
    WalletType,
    WithdrawalRequest,
    WithdrawalStatus,
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS wallets (
    id TEXT PRIMARY KEY,
    owner_id TEXT,
    wallet_type TEXT NOT NULL,
    balance REAL NOT NULL DEFAULT 0,
    currency TEXT NOT NULL DEFAULT 'USD',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (owner_id, wallet_type)
);
CREATE TABLE IF NOT EXISTS wallet_transactions (
    id TEXT PRIMARY KEY,
    wallet_id TEXT NOT NULL REFERENCES wallets(id),
    amount REAL NOT NULL,
    direction TEXT NOT NULL,
    reference_type TEXT NOT NULL,
    reference_id TEXT NOT NULL,
    description TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS bookings (
    id TEXT PRIMARY KEY,
    organizer_id TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS purchase_orders (
    id TEXT PRIMARY KEY,
    created_by TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS escrow_accounts (
    id TEXT PRIMARY KEY,
    order_type TEXT NOT NULL,
    order_id TEXT NOT NULL,
    amount_held REAL NOT NULL DEFAULT 0,
    amount_released REAL NOT NULL DEFAULT 0,
    amount_refunded REAL NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'held',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (order_type, order_id)
);
CREATE TABLE IF NOT EXISTS payment_records (
    id TEXT PRIMARY KEY,
    order_type TEXT NOT NULL,
    order_id TEXT NOT NULL,
    tender_type TEXT NOT NULL,
    amount REAL NOT NULL,
    currency TEXT NOT NULL,
    reference_text TEXT NOT NULL,
    recorded_by TEXT NOT NULL,
    recorded_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS refunds (
    id TEXT PRIMARY KEY,
    order_type TEXT NOT NULL,
    order_id TEXT NOT NULL,
    refund_amount REAL NOT NULL,
    refund_reason TEXT NOT NULL,
    created_by TEXT NOT NULL,
    approved_by TEXT,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS refund_items (
    id TEXT PRIMARY KEY,
    refund_id TEXT NOT NULL REFERENCES refunds(id),
    item_id TEXT NOT NULL,
    item_type TEXT NOT NULL,
    amount REAL NOT NULL,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS withdrawal_requests (
    id TEXT PRIMARY KEY,
    courier_id TEXT NOT NULL,
    request_amount REAL NOT NULL,
    status TEXT NOT NULL,
    requested_at TEXT NOT NULL,
    reviewed_by TEXT,
    approved_by TEXT,
    rejected_reason TEXT,
    settled_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS withdrawal_disbursements (
    id TEXT PRIMARY KEY,
    withdrawal_id TEXT NOT NULL REFERENCES withdrawal_requests(id),
    amount REAL NOT NULL,
    disbursed_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS reconciliation_runs (
    id TEXT PRIMARY KEY,
    run_date TEXT NOT NULL,
    status TEXT NOT NULL,
    summary_json TEXT,
    created_by TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS reconciliation_items (
    id TEXT PRIMARY KEY,
    run_id TEXT NOT NULL,
    item_type TEXT NOT NULL,
    reference_id TEXT NOT NULL,
    expected_amount REAL NOT NULL,
    actual_amount REAL NOT NULL,
    difference REAL NOT NULL,
    status TEXT NOT NULL,
    notes TEXT NOT NULL DEFAULT ''
);
"""

_MAX_PAGE_SIZE = 100
_DEFAULT_PAGE_SIZE = 20
_UNRECONCILED_LIMIT = 100


def create_schema(conn: sqlite3.Connection) -> None:
    """Create the finance tables, journal tables included, if they do not exist."""
    conn.executescript(_SCHEMA)
    create_ledger_schema(conn)


def _ts(value: datetime) -> str:
    """Store a time as a fixed-width UTC string so that text order is time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _now() -> str:
    return _ts(datetime.now(timezone.utc))


def _parse(text: str | None) -> datetime | None:
    return datetime.fromisoformat(text) if text is not None else None


def _new_id() -> str:
    return str(uuid.uuid4())


def _wallet(row: sqlite3.Row) -> Wallet:
    return Wallet(
        id=row["id"],
        owner_id=row["owner_id"],
        wallet_type=WalletType(row["wallet_type"]),
        balance=row["balance"],
        currency=row["currency"],
        created_at=_parse(row["created_at"]),
        updated_at=_parse(row["updated_at"]),
    )


def _withdrawal(row: sqlite3.Row) -> WithdrawalRequest:
    return WithdrawalRequest(
        id=row["id"],
        courier_id=row["courier_id"],
        request_amount=row["request_amount"],
        status=WithdrawalStatus(row["status"]),
        requested_at=_parse(row["requested_at"]),
        reviewed_by=row["reviewed_by"],
        approved_by=row["approved_by"],
        rejected_reason=row["rejected_reason"],
        settled_at=_parse(row["settled_at"]),
        created_at=_parse(row["created_at"]),
        updated_at=_parse(row["updated_at"]),
    )


class Repository:
    """Finance data access over one SQLite connection.

    The repository takes over transaction control of the connection: statements
    outside :meth:`transaction` are committed immediately.
    """

    def __init__(self, conn: sqlite3.Connection):
        conn.isolation_level = None
        conn.row_factory = sqlite3.Row
        self.conn = conn
        self._depth = 0

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the enclosed statements atomically; roll back if an exception escapes."""
        if self._depth:
            self._depth += 1
            try:
                yield self.conn
            finally:
                self._depth -= 1
            return
        self.conn.execute("BEGIN")
        self._depth = 1
        try:
            yield self.conn
        except BaseException:
            self.conn.execute("ROLLBACK")
            raise
        else:
            self.conn.execute("COMMIT")
        finally:
            self._depth = 0

    # Wallets

    def get_wallet(self, owner_id: str, wallet_type: WalletType | str) -> Wallet:
        row = self.conn.execute(
            "SELECT id, owner_id, wallet_type, balance, currency, created_at, updated_at"
            " FROM wallets WHERE owner_id = ? AND wallet_type = ?",
            (owner_id, str(wallet_type)),
        ).fetchone()
        if row is None:
            raise NotFoundError("wallet")
        return _wallet(row)

    def get_wallet_by_id(self, wallet_id: str) -> Wallet:
        row = self.conn.execute(
            "SELECT id, owner_id, wallet_type, balance, currency, created_at, updated_at"
            " FROM wallets WHERE id = ?",
            (wallet_id,),
        ).fetchone()
        if row is None:
            raise NotFoundError("wallet")
        return _wallet(row)

    def get_wallet_transactions(
        self, wallet_id: str, page: int, page_size: int
    ) -> tuple[list[WalletTransaction], int]:
        """Return one page of a wallet's transactions, newest first, and the total count."""
        page = max(page, 1)
        if page_size < 1 or page_size > _MAX_PAGE_SIZE:
            page_size = _DEFAULT_PAGE_SIZE
        offset = (page - 1) * page_size

        (total,) = self.conn.execute(
            "SELECT COUNT(*) FROM wallet_transactions WHERE wallet_id = ?", (wallet_id,)
        ).fetchone()
        rows = self.conn.execute(
            "SELECT id, wallet_id, amount, direction, reference_type, reference_id,"
            " description, created_at FROM wallet_transactions WHERE wallet_id = ?"
            " ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
            (wallet_id, page_size, offset),
        ).fetchall()
        items = [
            WalletTransaction(
                id=row["id"],
                wallet_id=row["wallet_id"],
                amount=row["amount"],
                direction=Direction(row["direction"]),
                reference_type=row["reference_type"],
                reference_id=row["reference_id"],
                description=row["description"],
                created_at=_parse(row["created_at"]),
            )
            for row in rows
        ]
        return items, total

    def create_wallet_transaction(
        self,
        wallet_id: str,
        amount: float,
        direction: Direction | str,
        ref_type: str,
        ref_id: str,
        description: str,
    ) -> None:
        self.conn.execute(
            "INSERT INTO wallet_transactions (id, wallet_id, amount, direction,"
            " reference_type, reference_id, description, created_at)"
            " VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (_new_id(), wallet_id, amount, str(Direction(direction)), ref_type, ref_id,
             description, _now()),
        )

    def update_wallet_balance(self, wallet_id: str, delta: float) -> None:
        cur = self.conn.execute(
            "UPDATE wallets SET balance = balance + ?, updated_at = ? WHERE id = ?",
            (delta, _now(), wallet_id),
        )
        if cur.rowcount == 0:
            raise NotFoundError("wallet")

    # Escrows

    def get_escrow(self, order_type: str, order_id: str) -> EscrowAccount:
        row = self.conn.execute(
            "SELECT id, order_type, order_id, amount_held, amount_released, amount_refunded,"
            " status, created_at, updated_at FROM escrow_accounts"
            " WHERE order_type = ? AND order_id = ?",
            (order_type, order_id),
        ).fetchone()
        if row is None:
            raise NotFoundError("escrow account")
        return EscrowAccount(
            id=row["id"],
            order_type=row["order_type"],
            order_id=row["order_id"],
            amount_held=row["amount_held"],
            amount_released=row["amount_released"],
            amount_refunded=row["amount_refunded"],
            status=EscrowStatus(row["status"]),
            created_at=_parse(row["created_at"]),
            updated_at=_parse(row["updated_at"]),
        )

    def update_escrow_released(self, escrow_id: str, amount: float) -> None:
        cur = self.conn.execute(
            "UPDATE escrow_accounts SET amount_released = amount_released + ?,"
            " status = ?, updated_at = ? WHERE id = ?",
            (amount, str(EscrowStatus.PARTIAL), _now(), escrow_id),
        )
        if cur.rowcount == 0:
            raise NotFoundError("escrow account")

    def update_escrow_refunded(self, escrow_id: str, amount: float) -> None:
        cur = self.conn.execute(
            "UPDATE escrow_accounts SET amount_refunded = amount_refunded + ?,"
            " updated_at = ? WHERE id = ?",
            (amount, _now(), escrow_id),
        )
        if cur.rowcount == 0:
            raise NotFoundError("escrow account")

    def get_active_escrows_by_owner(self, owner_id: str) -> list[EscrowSummary]:
        """Escrows still holding money for bookings or purchase orders the owner made."""
        rows = self.conn.execute(
            "SELECT e.id, e.order_type, e.order_id, e.amount_held, e.amount_released,"
            " e.status, e.created_at FROM escrow_accounts e"
            " LEFT JOIN bookings b ON e.order_type = 'booking' AND e.order_id = b.id"
            " LEFT JOIN purchase_orders p ON e.order_type = 'procurement' AND e.order_id = p.id"
            " WHERE (b.organizer_id = ? OR p.created_by = ?)"
            " AND e.status IN ('held', 'partially_released')"
            " ORDER BY e.created_at DESC",
            (owner_id, owner_id),
        ).fetchall()
        return [
            EscrowSummary(
                id=row["id"],
                order_type=row["order_type"],
                order_id=row["order_id"],
                amount_held=row["amount_held"],
                amount_released=row["amount_released"],
                status=row["status"],
                created_at=_parse(row["created_at"])
                .astimezone(timezone.utc)
                .strftime("%Y-%m-%dT%H:%M:%SZ"),
            )
            for row in rows
        ]

    # Payments

    def create_payment_record(self, record: PaymentRecord) -> str:
        payment_id = _new_id()
        self.conn.execute(
            "INSERT INTO payment_records (id, order_type, order_id, tender_type, amount,"
            " currency, reference_text, recorded_by, recorded_at)"
            " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (payment_id, record.order_type, record.order_id, str(record.tender_type),
             record.amount, record.currency, record.reference_text, record.recorded_by,
             _now()),
        )
        return payment_id

    # Refunds

    def create_refund(self, refund: Refund) -> str:
        refund_id = _new_id()
        now = _now()
        self.conn.execute(
            "INSERT INTO refunds (id, order_type, order_id, refund_amount, refund_reason,"
            " created_by, status, created_at, updated_at)"
            " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (refund_id, refund.order_type, refund.order_id, refund.refund_amount,
             refund.refund_reason, refund.created_by, str(refund.status), now, now),
        )
        return refund_id

    def create_refund_item(self, item: RefundItem) -> None:
        self.conn.execute(
            "INSERT INTO refund_items (id, refund_id, item_id, item_type, amount, created_at)"
            " VALUES (?, ?, ?, ?, ?, ?)",
            (_new_id(), item.refund_id, item.item_id, item.item_type, item.amount, _now()),
        )

    def get_refund(self, refund_id: str) -> Refund:
        row = self.conn.execute(
            "SELECT id, order_type, order_id, refund_amount, refund_reason, created_by,"
            " approved_by, status, created_at, updated_at FROM refunds WHERE id = ?",
            (refund_id,),
        ).fetchone()
        if row is None:
            raise NotFoundError("refund")
        return Refund(
            id=row["id"],
            order_type=row["order_type"],
            order_id=row["order_id"],
            refund_amount=row["refund_amount"],
            refund_reason=row["refund_reason"],
            created_by=row["created_by"],
            approved_by=row["approved_by"],
            status=RefundStatus(row["status"]),
            created_at=_parse(row["created_at"]),
            updated_at=_parse(row["updated_at"]),
        )

    # Withdrawals

    def get_daily_withdrawal_total(self, courier_id: str, date: datetime) -> float:
        """Sum of a courier's non-rejected requests on the calendar day of ``date``."""
        tz = date.tzinfo or timezone.utc
        start = datetime.combine(date.date(), time(), tzinfo=tz)
        end = start + timedelta(hours=24)
        (total,) = self.conn.execute(
            "SELECT COALESCE(SUM(request_amount), 0) FROM withdrawal_requests"
            " WHERE courier_id = ? AND status != 'rejected'"
            " AND requested_at >= ? AND requested_at < ?",
            (courier_id, _ts(start), _ts(end)),
        ).fetchone()
        return float(total)

    def create_withdrawal_request(self, request: WithdrawalRequest) -> str:
        withdrawal_id = _new_id()
        now = _now()
        self.conn.execute(
            "INSERT INTO withdrawal_requests (id, courier_id, request_amount, status,"
            " requested_at, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (withdrawal_id, request.courier_id, request.request_amount, str(request.status),
             now, now, now),
        )
        return withdrawal_id

    def get_withdrawal_request(self, withdrawal_id: str) -> WithdrawalRequest:
        row = self.conn.execute(
            "SELECT id, courier_id, request_amount, status, requested_at, reviewed_by,"
            " approved_by, rejected_reason, settled_at, created_at, updated_at"
            " FROM withdrawal_requests WHERE id = ?",
            (withdrawal_id,),
        ).fetchone()
        if row is None:
            raise NotFoundError("withdrawal request")
        return _withdrawal(row)

    def update_withdrawal_status(self, withdrawal_id: str, status: WithdrawalStatus | str) -> None:
        cur = self.conn.execute(
            "UPDATE withdrawal_requests SET status = ?, updated_at = ? WHERE id = ?",
            (str(status), _now(), withdrawal_id),
        )
        if cur.rowcount == 0:
            raise NotFoundError("withdrawal request")

    def update_withdrawal_approval(
        self, withdrawal_id: str, approver_id: str, status: WithdrawalStatus | str
    ) -> None:
        now = _now()
        self.conn.execute(
            "UPDATE withdrawal_requests SET status = ?, approved_by = ?, reviewed_by = ?,"
            " settled_at = ?, updated_at = ? WHERE id = ?",
            (str(status), approver_id, approver_id, now, now, withdrawal_id),
        )

    def update_withdrawal_rejection(self, withdrawal_id: str, rejecter_id: str, reason: str) -> None:
        self.conn.execute(
            "UPDATE withdrawal_requests SET status = 'rejected', reviewed_by = ?,"
            " rejected_reason = ?, updated_at = ? WHERE id = ?",
            (rejecter_id, reason, _now(), withdrawal_id),
        )

    def create_withdrawal_disbursement(self, withdrawal_id: str, amount: float) -> None:
        self.conn.execute(
            "INSERT INTO withdrawal_disbursements (id, withdrawal_id, amount, disbursed_at)"
            " VALUES (?, ?, ?, ?)",
            (_new_id(), withdrawal_id, amount, _now()),
        )

    # Reconciliation

    def create_reconciliation_run(self, run: ReconciliationRun) -> str:
        run_id = _new_id()
        summary: Any = run.summary_json
        if isinstance(summary, bytes):
            summary = summary.decode()
        elif summary is not None and not isinstance(summary, str):
            summary = json.dumps(summary)
        self.conn.execute(
            "INSERT INTO reconciliation_runs (id, run_date, status, summary_json,"
            " created_by, created_at) VALUES (?, ?, ?, ?, ?, ?)",
            (run_id, _ts(run.run_date), str(run.status), summary, run.created_by, _now()),
        )
        return run_id

    def _sum(self, query: str) -> float:
        (value,) = self.conn.execute(query).fetchone()
        return float(value)

    def get_reconciliation_summary(self) -> ReconciliationReport:
        """Totals across payments, escrows and disbursements, with open discrepancies."""
        report = ReconciliationReport(
            inflows=self._sum("SELECT COALESCE(SUM(amount), 0) FROM payment_records"),
            held_in_escrow=self._sum(
                "SELECT COALESCE(SUM(amount_held), 0) FROM escrow_accounts"
            ),
            released=self._sum(
                "SELECT COALESCE(SUM(amount_released), 0) FROM escrow_accounts"
            ),
            refunded=self._sum(
                "SELECT COALESCE(SUM(amount_refunded), 0) FROM escrow_accounts"
            ),
            outflows=self._sum(
                "SELECT COALESCE(SUM(amount), 0) FROM withdrawal_disbursements"
            ),
            opening_balance=0.0,
        )
        report.net_payable = report.inflows - report.outflows - report.refunded

        rows = self.conn.execute(
            "SELECT id, run_id, item_type, reference_id, expected_amount, actual_amount,"
            " difference, status, notes FROM reconciliation_items"
            " WHERE status = 'unreconciled' ORDER BY item_type LIMIT ?",
            (_UNRECONCILED_LIMIT,),
        ).fetchall()
        report.unreconciled_items = [
            ReconciliationItem(
                id=row["id"],
                run_id=row["run_id"],
                item_type=row["item_type"],
                reference_id=row["reference_id"],
                expected_amount=row["expected_amount"],
                actual_amount=row["actual_amount"],
                difference=row["difference"],
                status=row["status"],
                notes=row["notes"],
            )
            for row in rows
        ]
        return report