"""Wallet ledger — append-only per-party transaction log."""

from beautybook.ledger.wallet_ledger import WalletLedger

__all__ = ["WalletLedger"]
