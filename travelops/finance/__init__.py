"""Wallets, escrow, tenders, refunds, withdrawals, reconciliation and the double-entry ledger."""

__all__ = ["ledger", "models", "repository", "service"]