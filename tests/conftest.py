from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

from penny.db import add_account, get_connection, init_db, insert_transaction
from penny.models import CanonicalTransaction

FIXTURES = Path(__file__).parent / "fixtures"


@pytest.fixture
def db(tmp_path):
    """Provide an initialized temp DB connection."""
    db_path = tmp_path / "test.db"
    conn = get_connection(db_path)
    init_db(conn)
    yield conn
    conn.close()


@pytest.fixture
def account_id(db):
    return add_account(db, "Checking", "checking", "Test Bank", "1234")


@pytest.fixture
def add_txn(db, account_id):
    """Insert a transaction directly and return its id."""

    def _add(day: str, amount: str, description: str, **kwargs) -> int:
        txn = CanonicalTransaction(
            account_id=kwargs.pop("account", account_id),
            date=date.fromisoformat(day),
            amount=Decimal(amount),
            description=description,
            **kwargs,
        )
        txn_id = insert_transaction(db, txn)
        db.commit()
        return txn_id

    return _add
