"""
Account Chain

Event-driven provisioning of a banking customer's account chain:
application -> customer record -> bank account -> ledger entry -> notification.
Every stage is an idempotent consumer on an at-least-once event bus, balances
are derived from an append-only ledger, and all monetary values use Decimal.
"""

__version__ = "1.0.0"
