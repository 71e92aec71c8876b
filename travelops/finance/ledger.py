"""Double-entry journal posting against a SQLite connection."""

from __future__ import annotations

import math
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import StrEnum
from typing import Iterable


class Account(StrEnum):
    """Chart of accounts codes."""

    CASH_ON_HAND = "1000"
    MANUAL_TENDER_CLEARING = "1100"
    ESCROW_LIABILITY = "2000"
    SUPPLIER_PAYABLE = "2100"
    COURIER_PAYABLE = "2200"
    CUSTOMER_WALLET_LIABILITY = "2300"
    REFUND_LIABILITY = "2400"
    SETTLEMENT_ADJUSTMENT_RESERVE = "2500"
    REVENUE = "4000"
    FEE_REVENUE = "4100"
    ADJUSTMENT_EXPENSE = "5000"


class Direction(StrEnum):
    DEBIT = "debit"
    CREDIT = "credit"


@dataclass(frozen=True)
class JournalLine:
    account_code: str
    direction: Direction | str
    amount: float
    counterparty_id: str | None = None


class LedgerError(ValueError):
    """A journal entry was rejected."""


_SCHEMA = """
CREATE TABLE IF NOT EXISTS journal_entries (
    id TEXT PRIMARY KEY,
    entry_type TEXT NOT NULL,
    reference_type TEXT NOT NULL,
    reference_id TEXT NOT NULL,
    description TEXT NOT NULL,
    effective_at TEXT NOT NULL,
    created_by TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS journal_lines (
    id TEXT PRIMARY KEY,
    journal_entry_id TEXT NOT NULL REFERENCES journal_entries(id),
    account_code TEXT NOT NULL,
    direction TEXT NOT NULL CHECK (direction IN ('debit', 'credit')),
    amount REAL NOT NULL,
    counterparty_id TEXT
);
"""


def create_ledger_schema(conn: sqlite3.Connection) -> None:
    """Create the journal tables if they do not exist."""
    conn.executescript(_SCHEMA)


def _round_cents(value: float) -> float:
    # Half away from zero, matching conventional monetary rounding.
    return math.copysign(math.floor(abs(value) * 100 + 0.5), value) / 100


def validate_lines(lines: Iterable[JournalLine]) -> float:
    """Check that lines are positive, well-directed and balanced; return the total."""
    lines = list(lines)
    if not lines:
        raise LedgerError("journal entry must have at least one line")

    debits = credits = 0.0
    for line in lines:
        if line.amount <= 0:
            raise LedgerError(f"journal line amount must be positive, got {line.amount:.2f}")
        try:
            direction = Direction(line.direction)
        except ValueError:
            raise LedgerError(
                f'invalid direction "{line.direction}", must be debit or credit'
            ) from None
        if direction is Direction.DEBIT:
            debits += line.amount
        else:
            credits += line.amount

    debits = _round_cents(debits)
    credits = _round_cents(credits)
    if debits != credits:
        raise LedgerError(
            f"journal entry is unbalanced: debits={debits:.2f} credits={credits:.2f}"
        )
    return debits


def post_journal_entry(
    conn: sqlite3.Connection,
    entry_type: str,
    ref_type: str,
    ref_id: uuid.UUID | str,
    description: str,
    created_by: str,
    lines: Iterable[JournalLine],
) -> str:
    """Validate and insert a journal entry with its lines; return the entry id.

    The caller owns the surrounding transaction.
    """
    lines = list(lines)
    validate_lines(lines)

    entry_id = str(uuid.uuid4())
    now = datetime.now(timezone.utc).isoformat()
    conn.execute(
        "INSERT INTO journal_entries (id, entry_type, reference_type, reference_id,"
        " description, effective_at, created_by, created_at)"
        " VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
        (entry_id, entry_type, ref_type, str(ref_id), description, now, created_by, now),
    )
    conn.executemany(
        "INSERT INTO journal_lines (id, journal_entry_id, account_code, direction,"
        " amount, counterparty_id) VALUES (?, ?, ?, ?, ?, ?)",
        [
            (
                str(uuid.uuid4()),
                entry_id,
                str(line.account_code),
                str(Direction(line.direction)),
                line.amount,
                line.counterparty_id,
            )
            for line in lines
        ],
    )
    return entry_id