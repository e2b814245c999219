"""
bank/sample_data.py -- Demo customers, accounts and transactions.

Loaded by the setup wizard when "include sample data" is ticked, and by
`python main.py seed`. Safe to re-run: customers that already exist are skipped.
"""

from __future__ import annotations

import logging
from decimal import Decimal

from auth.models import User
from auth.passwords import hash_password
from auth.store import UserStore
from bank.models import Account
from bank.store import BankStore

logger = logging.getLogger("bankdvwa.bank")

# All sample customers share this password so the demos have something to guess.
SAMPLE_PASSWORD = "password"

_CUSTOMERS = [
    ("gordonb", "gordon.brown@example.com", "Gordon", "Brown"),
    ("pablo", "pablo.picasso@example.com", "Pablo", "Picasso"),
    ("smithy", "bob.smith@example.com", "Bob", "Smith"),
    ("1337", "hack.me@example.com", "Hack", "Me"),
]


def seed_sample_data(user_store: UserStore, bank_store: BankStore) -> int:
    """Create the sample customers with a checking and a savings account each.

    Returns the number of customers created.
    """
    created = 0
    checking_ids: list[int] = []
    for username, email, first, last in _CUSTOMERS:
        if user_store.username_exists(username):
            continue
        user_id = user_store.create_user(
            User(
                username=username,
                role="user",
                email=email,
                password_hash=hash_password(SAMPLE_PASSWORD),
                first_name=first,
                last_name=last,
            )
        )
        checking = bank_store.create_account(
            Account(user_id=user_id, username=username, account_number="", account_type="checking")
        )
        savings = bank_store.create_account(
            Account(user_id=user_id, username=username, account_number="", account_type="savings")
        )
        bank_store.deposit(checking, Decimal("2500.00"), "Opening deposit")
        bank_store.deposit(savings, Decimal("10000.00"), "Opening deposit")
        bank_store.withdraw(checking, Decimal("120.45"), "ATM withdrawal")
        checking_ids.append(checking)
        created += 1

    # A few transfers between the new customers so the admin listing has variety.
    for source, target in zip(checking_ids, checking_ids[1:]):
        bank_store.transfer(source, target, Decimal("75.00"), "Dinner split")

    logger.info("Seeded %d sample customers", created)
    return created
