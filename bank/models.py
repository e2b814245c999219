"""
bank/models.py -- Account and transaction records.

Money is held as Decimal in the domain and as integer cents in the database,
so balances never pick up float rounding.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

ACCOUNT_TYPES = ("checking", "savings")
TRANSACTION_TYPES = ("deposit", "withdrawal", "transfer")


@dataclass
class Account:
    user_id: int
    account_number: str
    id: int | None = None
    username: str = ""  # denormalized for the admin search
    account_type: str = "checking"
    balance: Decimal = Decimal("0.00")
    status: str = "active"
    created_at: str | None = None


@dataclass
class Transaction:
    account_id: int
    transaction_type: str  # deposit | withdrawal | transfer
    amount: Decimal  # signed: credits positive, debits negative
    id: int | None = None
    description: str = ""
    reference: str = ""
    created_at: str | None = None
    # Populated by joined queries only.
    account_number: str | None = None
    username: str | None = None

    @property
    def is_credit(self) -> bool:
        return self.amount > 0
