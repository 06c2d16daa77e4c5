"""DB helpers for tests: bootstrap a temporary SQLite DB and seed ledger rows."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Any

from ledger_db import Base
from ledger_db.client import get_engine
from ledger_db.models.ledger import (
    CategoryMapping,
    LedgerAccount,
    LedgerContact,
    LedgerTransaction,
    LedgerUser,
)
from sqlalchemy import event
from sqlalchemy.orm import Session


def bootstrap_sqlite_db(db_file: Path) -> str:
    """Create a SQLite database file with the full schema and return its URL.

    A file-backed database lets every session (and worker thread) see the same
    state; in-memory SQLite databases are per-connection.
    """

    url = f"sqlite+pysqlite:///{db_file}"
    db_file.parent.mkdir(parents=True, exist_ok=True)
    engine = get_engine(database_url=url)

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_conn, _):  # pragma: no cover - tiny bridge
        dbapi_conn.execute("PRAGMA foreign_keys = ON")

    Base.metadata.create_all(bind=engine)
    return url


def add_user(session: Session, user_id: str, *, auto_sync: bool = False) -> LedgerUser:
    user = LedgerUser(id=user_id, auto_sync=auto_sync)
    session.add(user)
    session.commit()
    return user


def add_account(
    session: Session,
    user_id: str,
    account_id: str,
    *,
    item_id: str | None = "item-1",
    access_token: str | None = "access-sandbox-1",
    cursor: str | None = None,
) -> LedgerAccount:
    account = LedgerAccount(
        id=account_id,
        user_id=user_id,
        item_id=item_id,
        access_token=access_token,
        sync_cursor=cursor,
    )
    session.add(account)
    session.commit()
    return account


def add_transaction(
    session: Session,
    user_id: str,
    txn_id: str,
    *,
    account_id: str,
    amount: str | Decimal,
    description: str,
    on: date = date(2024, 1, 1),
    **fields: Any,
) -> None:
    session.add(
        LedgerTransaction(
            user_id=user_id,
            id=txn_id,
            account_id=account_id,
            amount=Decimal(str(amount)),
            description=description,
            date=on,
            **fields,
        )
    )
    session.commit()


def add_contact(session: Session, user_id: str, name: str, kind: str, **defaults: str) -> None:
    session.add(LedgerContact(user_id=user_id, name=name, kind=kind, **defaults))
    session.commit()


def add_mapping(session: Session, legacy_key: str, l0: str, l1: str, l2: str = "", l3: str = "") -> None:
    session.add(CategoryMapping(legacy_key=legacy_key, l0=l0, l1=l1, l2=l2, l3=l3))
    session.commit()


def get_transaction(session: Session, user_id: str, txn_id: str) -> LedgerTransaction | None:
    session.expire_all()
    return session.get(LedgerTransaction, (user_id, txn_id))
