"""
bank/store.py -- SQLAlchemy-backed persistence for accounts and transactions.

Pattern: Repository + Data Mapper, same as auth/store.py. BankStore is the
repository; the _row_to_* functions are the mappers. Route handlers never
touch SQL directly.

Money:
  Balances and amounts are stored as integer cents. The domain types carry
  Decimal. Every balance change and its transaction row are written in one
  engine.begin() block, and debits use a conditional UPDATE
  (balance_cents >= amount) so two concurrent withdrawals cannot overdraw.

Security: all queries use bound parameters. No f-strings in SQL.

Usage:
    store = BankStore(db_url)
    account_id = store.create_account(Account(user_id=1, username="alice", account_number=""))
    store.deposit(account_id, Decimal("100.00"), "Paycheck")
    store.transfer(account_id, other_id, Decimal("25.00"))
    store.close()
"""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

from sqlalchemy import Column, Integer, MetaData, String, Table, create_engine, event, func, or_, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from bank.models import ACCOUNT_TYPES, Account, Transaction
from core.config import now_iso

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("username", String(50), nullable=False, server_default=""),
    Column("account_number", String(20), nullable=False, unique=True),
    Column("account_type", String(20), nullable=False, server_default="checking"),
    Column("balance_cents", Integer, nullable=False, server_default="0"),
    Column("status", String(20), nullable=False, server_default="active"),
    Column("created_at", String(32), nullable=False),
)

_transactions = Table(
    "transactions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, nullable=False, index=True),
    Column("transaction_type", String(20), nullable=False),
    Column("amount_cents", Integer, nullable=False),  # signed
    Column("description", String(255), nullable=False, server_default=""),
    Column("reference", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
)

# Filters accepted by list_transactions(). Time windows are relative to now.
TRANSACTION_FILTERS = ("deposits", "withdrawals", "transfers", "last24h", "lastweek")

_CENT = Decimal("0.01")

# Largest value SQLite stores in an INTEGER column. Amounts and balances stay below it.
MAX_CENTS = 2**63 - 1


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _to_cents(amount) -> int:
    """Convert a positive amount to cents. Raises ValueError otherwise."""
    try:
        value = Decimal(str(amount)).quantize(_CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {amount!r}") from None
    if not value.is_finite() or value <= 0:
        raise ValueError("Amount must be greater than zero.")
    cents = int(value * 100)
    if cents > MAX_CENTS:
        raise ValueError("Amount is too large.")
    return cents


def _from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(_CENT)


def _new_reference() -> str:
    return f"TXN{secrets.token_hex(6).upper()}"


def _new_account_number() -> str:
    return f"{secrets.randbelow(10**10):010d}"


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class BankStore:
    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite") and ":memory:" not in db_url and "mode=memory" not in db_url:
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def create_account(self, account: Account) -> int:
        """Insert a new account and return its ID.

        An empty account_number is replaced with a random 10-digit one.
        An opening balance on the dataclass is written as is, without a
        transaction row; use deposit() for anything the customer should see.
        """
        if account.account_type not in ACCOUNT_TYPES:
            raise ValueError(f"Unknown account type: {account.account_type!r}")
        cents = int(Decimal(account.balance).quantize(_CENT) * 100)
        if not 0 <= cents <= MAX_CENTS:
            raise ValueError(f"Opening balance out of range: {account.balance!r}")
        for _ in range(5):
            number = account.account_number or _new_account_number()
            try:
                with self.engine.begin() as conn:
                    result = conn.execute(
                        _accounts.insert().values(
                            user_id=account.user_id,
                            username=account.username,
                            account_number=number,
                            account_type=account.account_type,
                            balance_cents=cents,
                            status=account.status,
                            created_at=now_iso(),
                        )
                    )
                    return result.inserted_primary_key[0]
            except IntegrityError:
                if account.account_number:
                    raise
        raise RuntimeError("Could not allocate a unique account number")

    def get_account(self, account_id: int) -> Optional[Account]:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_account_by_number(self, account_number: str) -> Optional[Account]:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.account_number == account_number)).fetchone()
        return _row_to_account(row) if row is not None else None

    def list_accounts(self, user_id: int) -> list[Account]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _accounts.select().where(_accounts.c.user_id == user_id).order_by(_accounts.c.id)
            ).fetchall()
        return [_row_to_account(r) for r in rows]

    def count_accounts(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(_accounts)).scalar() or 0

    def count_transactions(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(_transactions)).scalar() or 0

    # ------------------------------------------------------------------
    # Money movement
    # ------------------------------------------------------------------

    def deposit(self, account_id: int, amount, description: str = "Deposit") -> Transaction:
        cents = _to_cents(amount)
        with self.engine.begin() as conn:
            self._credit(conn, account_id, cents)
            return self._insert_txn(conn, account_id, "deposit", cents, description)

    def withdraw(self, account_id: int, amount, description: str = "Withdrawal") -> Transaction:
        cents = _to_cents(amount)
        with self.engine.begin() as conn:
            self._debit(conn, account_id, cents)
            return self._insert_txn(conn, account_id, "withdrawal", -cents, description)

    def transfer(self, from_id: int, to_id: int, amount, description: str = "") -> tuple[Transaction, Transaction]:
        """Move money between two accounts. Both legs commit or neither does.

        Returns (debit, credit). Both rows share one reference.
        """
        if from_id == to_id:
            raise ValueError("Cannot transfer to the same account.")
        cents = _to_cents(amount)
        reference = _new_reference()
        with self.engine.begin() as conn:
            self._debit(conn, from_id, cents)
            self._credit(conn, to_id, cents)
            debit = self._insert_txn(conn, from_id, "transfer", -cents, description or "Transfer out", reference)
            credit = self._insert_txn(conn, to_id, "transfer", cents, description or "Transfer in", reference)
        return debit, credit

    def _credit(self, conn, account_id: int, cents: int) -> None:
        result = conn.execute(
            _accounts.update()
            .where(
                (_accounts.c.id == account_id)
                & (_accounts.c.status == "active")
                & (_accounts.c.balance_cents <= MAX_CENTS - cents)
            )
            .values(balance_cents=_accounts.c.balance_cents + cents)
        )
        if result.rowcount == 0:
            status = self._account_status(conn, account_id)
            if status != "active":
                raise ValueError("Account not found or not active.")
            raise ValueError("Balance limit exceeded.")

    def _debit(self, conn, account_id: int, cents: int) -> None:
        result = conn.execute(
            _accounts.update()
            .where(
                (_accounts.c.id == account_id)
                & (_accounts.c.status == "active")
                & (_accounts.c.balance_cents >= cents)
            )
            .values(balance_cents=_accounts.c.balance_cents - cents)
        )
        if result.rowcount == 0:
            if self._account_status(conn, account_id) != "active":
                raise ValueError("Account not found or not active.")
            raise ValueError("Insufficient funds.")

    def _account_status(self, conn, account_id: int) -> Optional[str]:
        return conn.execute(select(_accounts.c.status).where(_accounts.c.id == account_id)).scalar()

    def _insert_txn(
        self,
        conn,
        account_id: int,
        transaction_type: str,
        cents: int,
        description: str,
        reference: str | None = None,
    ) -> Transaction:
        txn = Transaction(
            account_id=account_id,
            transaction_type=transaction_type,
            amount=_from_cents(cents),
            description=description,
            reference=reference or _new_reference(),
            created_at=now_iso(),
        )
        result = conn.execute(
            _transactions.insert().values(
                account_id=account_id,
                transaction_type=transaction_type,
                amount_cents=cents,
                description=description,
                reference=txn.reference,
                created_at=txn.created_at,
            )
        )
        txn.id = result.inserted_primary_key[0]
        return txn

    # ------------------------------------------------------------------
    # Transaction queries
    # ------------------------------------------------------------------

    def _joined(self):
        return select(
            _transactions,
            _accounts.c.account_number,
            _accounts.c.username,
        ).select_from(_transactions.join(_accounts, _transactions.c.account_id == _accounts.c.id))

    def recent_transactions(self, limit: int = 10) -> list[Transaction]:
        query = self._joined().order_by(_transactions.c.id.desc()).limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_transaction(r) for r in rows]

    def history(self, user_id: int, limit: int = 50) -> list[Transaction]:
        """Newest-first transactions across every account the user owns."""
        query = self._joined().where(_accounts.c.user_id == user_id).order_by(_transactions.c.id.desc()).limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_transaction(r) for r in rows]

    def list_transactions(
        self,
        search: str = "",
        filter: str = "",
        page: int = 1,
        per_page: int = 10,
    ) -> tuple[list[Transaction], int]:
        """Admin listing: one page of transactions (newest first) plus the total.

        search matches reference, account number or account owner's username.
        Unknown filter values are ignored.
        """
        conditions = []
        if search:
            pattern = f"%{search}%"
            conditions.append(
                or_(
                    _transactions.c.reference.like(pattern),
                    _accounts.c.account_number.like(pattern),
                    _accounts.c.username.like(pattern),
                )
            )
        if filter == "deposits":
            conditions.append(_transactions.c.transaction_type == "deposit")
        elif filter == "withdrawals":
            conditions.append(_transactions.c.transaction_type == "withdrawal")
        elif filter == "transfers":
            conditions.append(_transactions.c.transaction_type == "transfer")
        elif filter in ("last24h", "lastweek"):
            delta = timedelta(days=1) if filter == "last24h" else timedelta(days=7)
            cutoff = (datetime.now(timezone.utc) - delta).isoformat()
            conditions.append(_transactions.c.created_at >= cutoff)

        page = max(1, page)
        query = self._joined()
        count_query = (
            select(func.count())
            .select_from(_transactions.join(_accounts, _transactions.c.account_id == _accounts.c.id))
        )
        for condition in conditions:
            query = query.where(condition)
            count_query = count_query.where(condition)
        query = query.order_by(_transactions.c.id.desc()).limit(per_page).offset((page - 1) * per_page)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
            total = conn.execute(count_query).scalar() or 0
        return [_row_to_transaction(r) for r in rows], total

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        user_id=row.user_id,
        username=row.username,
        account_number=row.account_number,
        account_type=row.account_type,
        balance=_from_cents(row.balance_cents),
        status=row.status,
        created_at=row.created_at,
    )


def _row_to_transaction(row) -> Transaction:
    mapping = row._mapping
    return Transaction(
        id=row.id,
        account_id=row.account_id,
        transaction_type=row.transaction_type,
        amount=_from_cents(row.amount_cents),
        description=row.description,
        reference=row.reference,
        created_at=row.created_at,
        account_number=mapping.get("account_number"),
        username=mapping.get("username"),
    )
