"""Persistence helpers — atomic files and the audit ledger."""
