"""Finance business rules: wallets, tenders, refunds, withdrawals, escrows, reconciliation."""

from __future__ import annotations

import logging
import math
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Iterator, Protocol

from travelops.errors import BadRequestError, ConflictError, ForbiddenError, InternalError
from travelops.finance.ledger import Account, Direction, JournalLine, post_journal_entry
from travelops.finance.models import (
    EscrowSummary,
    PaginatedTransactions,
    PaymentRecord,
    ReconciliationReport,
    RecordTenderRequest,
    Refund,
    RefundItem,
    RefundRequest,
    RefundStatus,
    TransactionResponse,
    WalletResponse,
    WalletType,
    WithdrawalCreateRequest,
    WithdrawalRequest,
    WithdrawalRequestDTO,
    WithdrawalStatus,
)
from travelops.finance.repository import Repository

MAX_DAILY_WITHDRAWAL = 2500.00
MIN_REFUND_AMOUNT = 1.00

_DEFAULT_PAGE_SIZE = 20


class RiskAction(StrEnum):
    """Actions the risk engine is asked about."""

    PROCESS_REFUND = "process_refund"
    REQUEST_WITHDRAWAL = "request_withdrawal"


@dataclass(frozen=True)
class RiskDecision:
    allowed: bool
    reason: str = ""


class _RiskEvaluator(Protocol):
    def evaluate_action(self, user_id: str, action: RiskAction) -> RiskDecision: ...


@contextmanager
def _internal(message: str) -> Iterator[None]:
    """Turn any failure in the block into an InternalError carrying ``message``."""
    try:
        yield
    except Exception as exc:
        raise InternalError(message, exc) from exc


def _as_uuid(text: str) -> uuid.UUID:
    try:
        return uuid.UUID(text)
    except (ValueError, TypeError, AttributeError):
        return uuid.UUID(int=0)


class FinanceService:
    """Finance operations over a :class:`Repository`, with an optional risk engine."""

    def __init__(
        self,
        repo: Repository,
        risk: _RiskEvaluator | None = None,
        logger: logging.Logger | None = None,
    ):
        self.repo = repo
        self.risk = risk
        self.logger = logger or logging.getLogger(__name__)

    def _check_risk(self, user_id: str, action: RiskAction) -> None:
        if self.risk is None:
            return
        try:
            decision = self.risk.evaluate_action(user_id, action)
        except Exception:
            return
        if not decision.allowed:
            raise ForbiddenError("action blocked by risk engine: " + decision.reason)

    # Wallets

    def get_wallet(
        self, owner_id: str, wallet_type: WalletType | str, requesting_user_id: str
    ) -> WalletResponse:
        if owner_id != requesting_user_id:
            raise ForbiddenError("you can only view your own wallet")
        wallet = self.repo.get_wallet(owner_id, wallet_type)
        return WalletResponse(
            id=wallet.id,
            owner_id=wallet.owner_id,
            wallet_type=wallet.wallet_type,
            balance=wallet.balance,
            currency=wallet.currency,
            created_at=wallet.created_at,
            updated_at=wallet.updated_at,
        )

    def get_transactions(
        self, wallet_id: str, user_id: str, page: int, page_size: int
    ) -> PaginatedTransactions:
        wallet = self.repo.get_wallet_by_id(wallet_id)
        if wallet.owner_id is not None and wallet.owner_id != user_id:
            raise ForbiddenError("you can only view your own transactions")

        with _internal("failed to fetch transactions"):
            txns, total = self.repo.get_wallet_transactions(wallet_id, page, page_size)

        items = [
            TransactionResponse(
                id=t.id,
                wallet_id=t.wallet_id,
                amount=t.amount,
                direction=t.direction,
                reference_type=t.reference_type,
                reference_id=t.reference_id,
                description=t.description,
                created_at=t.created_at,
            )
            for t in txns
        ]
        total_pages = -(-total // page_size) if page_size > 0 else 0
        return PaginatedTransactions(
            items=items,
            total=total,
            page=page,
            page_size=page_size,
            total_pages=total_pages,
        )

    def get_owner_transactions(
        self,
        owner_id: str,
        wallet_type: WalletType | str | None,
        user_id: str,
        page: int,
        page_size: int,
    ) -> PaginatedTransactions:
        """Transactions of the wallet an owner holds, with request-level defaults applied."""
        page = page if page >= 1 else 1
        page_size = page_size if page_size >= 1 else _DEFAULT_PAGE_SIZE
        wallet = self.repo.get_wallet(owner_id, wallet_type or WalletType.CUSTOMER)
        return self.get_transactions(wallet.id, user_id, page, page_size)

    # Tenders

    def record_tender(self, user_id: str, request: RecordTenderRequest) -> str:
        """Record a manually received payment and post it to the ledger; return its id."""
        if request.amount <= 0:
            raise BadRequestError("amount must be positive")
        if not request.order_id or not request.order_type:
            raise BadRequestError("orderType and orderId are required")

        record = PaymentRecord(
            order_type=request.order_type,
            order_id=request.order_id,
            tender_type=request.tender_type,
            amount=request.amount,
            currency=request.currency,
            reference_text=request.reference_text,
            recorded_by=user_id,
        )
        with _internal("failed to record payment"):
            payment_id = self.repo.create_payment_record(record)

        with self.repo.transaction() as conn, _internal("failed to post journal entry"):
            post_journal_entry(
                conn,
                "tender_recording",
                "payment_record",
                _as_uuid(payment_id),
                f"Tender recorded for {request.order_type} {request.order_id}",
                user_id,
                [
                    JournalLine(Account.MANUAL_TENDER_CLEARING, Direction.DEBIT, request.amount),
                    JournalLine(Account.CASH_ON_HAND, Direction.CREDIT, request.amount),
                ],
            )
        return payment_id

    # Refunds

    def process_refund(self, user_id: str, request: RefundRequest) -> str:
        """Create an approved refund, post it and reduce the order's escrow; return its id."""
        self._check_risk(user_id, RiskAction.PROCESS_REFUND)

        if request.amount < MIN_REFUND_AMOUNT:
            raise BadRequestError(f"refund amount must be at least ${MIN_REFUND_AMOUNT:.2f}")
        if math.fmod(request.amount * 100, 100) != 0:
            raise BadRequestError("refund amount must be in whole dollars (multiples of 1.00)")
        if not request.order_id or not request.order_type:
            raise BadRequestError("orderType and orderId are required")

        refund = Refund(
            order_type=request.order_type,
            order_id=request.order_id,
            refund_amount=request.amount,
            refund_reason=request.reason,
            created_by=user_id,
            status=RefundStatus.APPROVED,
        )
        with _internal("failed to create refund"):
            refund_id = self.repo.create_refund(refund)

        for item in request.items:
            try:
                self.repo.create_refund_item(
                    RefundItem(
                        refund_id=refund_id,
                        item_id=item.item_id,
                        item_type=item.item_type,
                        amount=item.amount,
                    )
                )
            except Exception as exc:
                self.logger.error("failed to create refund item: %s", exc)

        with self.repo.transaction() as conn:
            with _internal("failed to post refund journal entry"):
                post_journal_entry(
                    conn,
                    "refund",
                    "refund",
                    _as_uuid(refund_id),
                    f"Refund for {request.order_type} {request.order_id}: {request.reason}",
                    user_id,
                    [
                        JournalLine(Account.ESCROW_LIABILITY, Direction.DEBIT, request.amount),
                        JournalLine(Account.CASH_ON_HAND, Direction.CREDIT, request.amount),
                    ],
                )
            try:
                escrow = self.repo.get_escrow(request.order_type, request.order_id)
            except Exception:
                escrow = None
            if escrow is not None:
                try:
                    self.repo.update_escrow_refunded(escrow.id, request.amount)
                except Exception as exc:
                    self.logger.error("failed to update escrow refunded: %s", exc)
        return refund_id

    # Withdrawals

    def request_withdrawal(
        self, courier_id: str, request: WithdrawalCreateRequest
    ) -> WithdrawalRequestDTO:
        self._check_risk(courier_id, RiskAction.REQUEST_WITHDRAWAL)

        if request.amount <= 0:
            raise BadRequestError("withdrawal amount must be positive")

        with _internal("failed to check daily withdrawal total"):
            daily_total = self.repo.get_daily_withdrawal_total(
                courier_id, datetime.now().astimezone()
            )
        if daily_total + request.amount > MAX_DAILY_WITHDRAWAL:
            remaining = MAX_DAILY_WITHDRAWAL - daily_total
            raise BadRequestError(
                f"daily withdrawal cap exceeded; remaining allowance: ${remaining:.2f}"
            )

        with _internal("failed to create withdrawal request"):
            withdrawal_id = self.repo.create_withdrawal_request(
                WithdrawalRequest(
                    courier_id=courier_id,
                    request_amount=request.amount,
                    status=WithdrawalStatus.REQUESTED,
                )
            )
        with _internal("failed to fetch withdrawal request"):
            created = self.repo.get_withdrawal_request(withdrawal_id)

        return WithdrawalRequestDTO(
            id=created.id,
            courier_id=created.courier_id,
            request_amount=created.request_amount,
            status=created.status,
            requested_at=created.requested_at,
            created_at=created.created_at,
        )

    def approve_withdrawal(self, withdrawal_id: str, approver_id: str) -> None:
        """Disburse a requested withdrawal and mark it settled."""
        request = self.repo.get_withdrawal_request(withdrawal_id)
        if request.status != WithdrawalStatus.REQUESTED:
            raise ConflictError("withdrawal request is not in a requestable state")

        with _internal("failed to check daily withdrawal total"):
            daily_total = self.repo.get_daily_withdrawal_total(
                request.courier_id, datetime.now().astimezone()
            )
        if daily_total > MAX_DAILY_WITHDRAWAL:
            raise BadRequestError("daily withdrawal cap would be exceeded at approval time")

        with self.repo.transaction() as conn, _internal(
            "failed to post withdrawal journal entry"
        ):
            post_journal_entry(
                conn,
                "withdrawal_disbursement",
                "withdrawal_request",
                _as_uuid(withdrawal_id),
                f"Withdrawal disbursement for courier {request.courier_id}",
                approver_id,
                [
                    JournalLine(Account.COURIER_PAYABLE, Direction.DEBIT, request.request_amount),
                    JournalLine(Account.CASH_ON_HAND, Direction.CREDIT, request.request_amount),
                ],
            )

        try:
            self.repo.create_withdrawal_disbursement(withdrawal_id, request.request_amount)
        except Exception as exc:
            self.logger.error("failed to create disbursement record: %s", exc)

        with _internal("failed to update withdrawal status"):
            self.repo.update_withdrawal_approval(
                withdrawal_id, approver_id, WithdrawalStatus.SETTLED
            )

    def reject_withdrawal(self, withdrawal_id: str, approver_id: str, reason: str) -> None:
        request = self.repo.get_withdrawal_request(withdrawal_id)
        if request.status != WithdrawalStatus.REQUESTED:
            raise ConflictError("withdrawal request is not in a requestable state")
        if not reason:
            raise BadRequestError("rejection reason is required")
        self.repo.update_withdrawal_rejection(withdrawal_id, approver_id, reason)

    # Escrows

    def get_active_escrows(self, owner_id: str) -> list[EscrowSummary]:
        return self.repo.get_active_escrows_by_owner(owner_id)

    def release_escrow(
        self, order_type: str, order_id: str, amount: float, created_by: str
    ) -> None:
        """Release part of an order's escrow to the supplier payable account."""
        if amount <= 0:
            raise BadRequestError("release amount must be positive")

        escrow = self.repo.get_escrow(order_type, order_id)
        remaining = escrow.remaining
        if amount > remaining:
            raise BadRequestError(
                f"release amount exceeds remaining escrow balance of ${remaining:.2f}"
            )

        with self.repo.transaction() as conn:
            with _internal("failed to update escrow"):
                self.repo.update_escrow_released(escrow.id, amount)
            with _internal("failed to post escrow release journal entry"):
                post_journal_entry(
                    conn,
                    "escrow_release",
                    order_type,
                    _as_uuid(order_id),
                    f"Escrow release for {order_type} {order_id}",
                    created_by,
                    [
                        JournalLine(Account.ESCROW_LIABILITY, Direction.DEBIT, amount),
                        JournalLine(Account.SUPPLIER_PAYABLE, Direction.CREDIT, amount),
                    ],
                )

    # Reconciliation

    def get_reconciliation(self) -> ReconciliationReport:
        with _internal("failed to generate reconciliation report"):
            return self.repo.get_reconciliation_summary()