"""Finance records, request and response objects, and their JSON form."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import datetime, timezone
from enum import Enum, StrEnum
from typing import Any

from travelops.finance.ledger import Direction


class WalletType(StrEnum):
    CUSTOMER = "customer"
    COURIER = "courier"
    SUPPLIER = "supplier"
    SYSTEM = "system"


class EscrowStatus(StrEnum):
    HELD = "held"
    PARTIAL = "partially_released"
    RELEASED = "released"
    REFUNDED = "refunded"


class TenderType(StrEnum):
    CASH = "cash"
    BANK = "bank_transfer"
    MOBILE = "mobile_money"
    INTERNAL = "internal"


class RefundStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class WithdrawalStatus(StrEnum):
    REQUESTED = "requested"
    APPROVED = "approved"
    REJECTED = "rejected"
    SETTLED = "settled"


class ReconciliationStatus(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"


@dataclass(kw_only=True)
class Wallet:
    id: str
    owner_id: str | None
    wallet_type: WalletType
    balance: float
    currency: str
    created_at: datetime
    updated_at: datetime


@dataclass(kw_only=True)
class WalletTransaction:
    id: str
    wallet_id: str
    amount: float
    direction: Direction
    reference_type: str
    reference_id: str
    description: str
    created_at: datetime


@dataclass(kw_only=True)
class EscrowAccount:
    id: str
    order_type: str
    order_id: str
    amount_held: float
    amount_released: float
    amount_refunded: float
    status: EscrowStatus
    created_at: datetime
    updated_at: datetime

    @property
    def remaining(self) -> float:
        """Amount still held: neither released nor refunded."""
        return self.amount_held - self.amount_released - self.amount_refunded


@dataclass(kw_only=True)
class PaymentRecord:
    order_type: str
    order_id: str
    tender_type: TenderType | str
    amount: float
    currency: str = ""
    reference_text: str = ""
    recorded_by: str = ""
    id: str = ""
    recorded_at: datetime | None = None


@dataclass(kw_only=True)
class Refund:
    order_type: str
    order_id: str
    refund_amount: float
    refund_reason: str = ""
    created_by: str = ""
    approved_by: str | None = None
    status: RefundStatus = RefundStatus.PENDING
    id: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(kw_only=True)
class RefundItem:
    refund_id: str
    item_id: str
    item_type: str
    amount: float
    id: str = ""
    created_at: datetime | None = None


@dataclass(kw_only=True)
class WithdrawalRequest:
    courier_id: str
    request_amount: float
    status: WithdrawalStatus = WithdrawalStatus.REQUESTED
    reviewed_by: str | None = None
    approved_by: str | None = None
    rejected_reason: str | None = None
    settled_at: datetime | None = None
    id: str = ""
    requested_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(kw_only=True)
class WithdrawalDisbursement:
    id: str
    withdrawal_id: str
    amount: float
    disbursed_at: datetime


@dataclass(kw_only=True)
class ReconciliationRun:
    run_date: datetime
    status: ReconciliationStatus
    summary_json: Any = None
    created_by: str = ""
    id: str = ""
    created_at: datetime | None = None


@dataclass(kw_only=True)
class ReconciliationItem:
    id: str
    run_id: str
    item_type: str
    reference_id: str
    expected_amount: float
    actual_amount: float
    difference: float
    status: str
    notes: str = ""


@dataclass(kw_only=True)
class WalletResponse:
    id: str
    owner_id: str | None
    wallet_type: WalletType
    balance: float
    currency: str
    created_at: datetime
    updated_at: datetime


@dataclass(kw_only=True)
class TransactionResponse:
    id: str
    wallet_id: str
    amount: float
    direction: Direction
    reference_type: str
    reference_id: str
    description: str
    created_at: datetime


@dataclass(kw_only=True)
class PaginatedTransactions:
    items: list[TransactionResponse]
    total: int
    page: int
    page_size: int
    total_pages: int


@dataclass(kw_only=True)
class RecordTenderRequest:
    order_type: str = ""
    order_id: str = ""
    tender_type: TenderType | str = ""
    amount: float = 0.0
    currency: str = ""
    reference_text: str = ""


@dataclass(kw_only=True)
class RefundItemRequest:
    item_id: str = ""
    item_type: str = ""
    amount: float = 0.0


@dataclass(kw_only=True)
class RefundRequest:
    order_type: str = ""
    order_id: str = ""
    amount: float = 0.0
    reason: str = ""
    items: list[RefundItemRequest] = field(default_factory=list)


@dataclass(kw_only=True)
class WithdrawalCreateRequest:
    amount: float = 0.0


@dataclass(kw_only=True)
class WithdrawalRequestDTO:
    id: str
    courier_id: str
    request_amount: float
    status: WithdrawalStatus
    requested_at: datetime | None
    created_at: datetime | None
    reviewed_by: str | None = None
    approved_by: str | None = None
    rejected_reason: str | None = None
    settled_at: datetime | None = None


@dataclass(kw_only=True)
class ReconciliationReport:
    opening_balance: float = 0.0
    inflows: float = 0.0
    outflows: float = 0.0
    held_in_escrow: float = 0.0
    released: float = 0.0
    refunded: float = 0.0
    net_payable: float = 0.0
    unreconciled_items: list[ReconciliationItem] = field(default_factory=list)


@dataclass(kw_only=True)
class EscrowSummary:
    id: str
    order_type: str
    order_id: str
    amount_held: float
    amount_released: float
    status: str
    created_at: str


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _format_time(value: datetime) -> str:
    text = value.isoformat()
    if value.tzinfo is not None and value.utcoffset() == timezone.utc.utcoffset(None):
        text = text.removesuffix("+00:00") + "Z"
    return text


def _encode(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return {_camel(f.name): _encode(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return _format_time(value)
    if isinstance(value, (list, tuple)):
        return [_encode(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _encode(v) for k, v in value.items()}
    return value


def to_json(obj: Any) -> str:
    """Serialise a finance object (or list of them) to JSON with camelCase keys."""
    return json.dumps(_encode(obj))