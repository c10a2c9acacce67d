"""
Account Service

Customer account management with a balance-consistency core: unique
account numbers, referential integrity to customers, bounded balances and
lost-update-safe concurrent mutation. Monetary values use Decimal throughout.
"""

__version__ = "1.0.0"
