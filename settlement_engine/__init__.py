"""Reconciliation and settlement engine for fiat webhook and on-chain payment events."""

__version__ = "0.1.0"
