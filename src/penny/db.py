import json
import sqlite3
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path

from penny.models import (
    Account, CanonicalTransaction, Check, ImportProfile, ImportSession,
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS accounts (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    account_type TEXT NOT NULL,
    institution TEXT,
    last_four TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS import_profiles (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    file_type TEXT NOT NULL,
    column_mapping TEXT NOT NULL,
    header_fingerprint TEXT NOT NULL,
    date_format TEXT,
    default_account_id INTEGER,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now')),
    FOREIGN KEY (default_account_id) REFERENCES accounts(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS import_sessions (
    id INTEGER PRIMARY KEY,
    file_name TEXT NOT NULL,
    file_type TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'importing', 'completed', 'failed')),
    account_id INTEGER,
    profile_id INTEGER,
    total_rows INTEGER DEFAULT 0,
    transactions_created INTEGER DEFAULT 0,
    duplicates_skipped INTEGER DEFAULT 0,
    errors_count INTEGER DEFAULT 0,
    error_message TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    completed_at TEXT,
    FOREIGN KEY (account_id) REFERENCES accounts(id),
    FOREIGN KEY (profile_id) REFERENCES import_profiles(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS transactions (
    id INTEGER PRIMARY KEY,
    account_id INTEGER NOT NULL,
    date TEXT NOT NULL,
    description TEXT NOT NULL,
    amount TEXT NOT NULL,
    merchant_name TEXT,
    check_number TEXT,
    external_id TEXT,
    memo TEXT,
    category TEXT,
    notes TEXT,
    import_session_id INTEGER,
    created_at TEXT DEFAULT (datetime('now')),
    FOREIGN KEY (account_id) REFERENCES accounts(id),
    FOREIGN KEY (import_session_id) REFERENCES import_sessions(id)
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_transactions_external_id
    ON transactions(account_id, external_id) WHERE external_id IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_transactions_account_date ON transactions(account_id, date);
CREATE INDEX IF NOT EXISTS idx_transactions_check_number
    ON transactions(check_number) WHERE check_number IS NOT NULL;

CREATE TABLE IF NOT EXISTS checks (
    id INTEGER PRIMARY KEY,
    account_id INTEGER NOT NULL,
    check_number TEXT NOT NULL,
    payee TEXT NOT NULL,
    amount TEXT NOT NULL,
    date_written TEXT NOT NULL,
    date_cleared TEXT,
    memo TEXT,
    status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'cleared', 'void')),
    matched_transaction_id INTEGER,
    created_at TEXT DEFAULT (datetime('now')),
    FOREIGN KEY (account_id) REFERENCES accounts(id),
    FOREIGN KEY (matched_transaction_id) REFERENCES transactions(id) ON DELETE SET NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_checks_matched_transaction
    ON checks(matched_transaction_id) WHERE matched_transaction_id IS NOT NULL;

CREATE TABLE IF NOT EXISTS recurring_transactions (
    id INTEGER PRIMARY KEY,
    account_id INTEGER,
    name TEXT NOT NULL,
    merchant_name TEXT,
    amount TEXT NOT NULL,
    frequency TEXT NOT NULL
        CHECK (frequency IN ('weekly', 'biweekly', 'monthly', 'quarterly', 'yearly')),
    last_date TEXT,
    next_expected_date TEXT,
    confidence REAL,
    is_subscription INTEGER DEFAULT 0,
    is_essential INTEGER DEFAULT 0,
    is_active INTEGER DEFAULT 1,
    created_at TEXT DEFAULT (datetime('now')),
    FOREIGN KEY (account_id) REFERENCES accounts(id)
);
"""

CENT = Decimal("0.01")


def money(value) -> Decimal:
    """Quantize to cents. Accepts Decimal, int, str; floats go through str()."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def get_connection(db_path: Path, timeout: float = 60.0) -> sqlite3.Connection:
    """Open a SQLite connection with WAL mode and foreign keys enabled."""
    conn = sqlite3.connect(str(db_path), timeout=timeout)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.row_factory = sqlite3.Row
    return conn


def init_db(conn: sqlite3.Connection) -> None:
    """Create tables and indexes. Idempotent."""
    conn.executescript(SCHEMA)
    conn.commit()


# --- Accounts ---


def add_account(
    conn: sqlite3.Connection,
    name: str,
    account_type: str,
    institution: str | None = None,
    last_four: str | None = None,
) -> int:
    cursor = conn.execute(
        "INSERT INTO accounts (name, account_type, institution, last_four) VALUES (?, ?, ?, ?)",
        (name, account_type, institution, last_four),
    )
    conn.commit()
    return cursor.lastrowid


def _row_to_account(row: sqlite3.Row) -> Account:
    return Account(
        id=row["id"], name=row["name"], account_type=row["account_type"],
        institution=row["institution"], last_four=row["last_four"],
    )


def get_account_by_name(conn: sqlite3.Connection, name: str) -> Account | None:
    row = conn.execute("SELECT * FROM accounts WHERE name = ?", (name,)).fetchone()
    return _row_to_account(row) if row else None


def list_accounts(conn: sqlite3.Connection) -> list[Account]:
    return [_row_to_account(r) for r in conn.execute("SELECT * FROM accounts ORDER BY id")]


# --- Transactions ---


def _row_to_transaction(row: sqlite3.Row) -> CanonicalTransaction:
    return CanonicalTransaction(
        id=row["id"],
        account_id=row["account_id"],
        date=date.fromisoformat(row["date"]),
        amount=Decimal(row["amount"]),
        description=row["description"],
        merchant_name=row["merchant_name"],
        check_number=row["check_number"],
        external_id=row["external_id"],
        memo=row["memo"],
    )


def insert_transaction(
    conn: sqlite3.Connection, txn: CanonicalTransaction, session_id: int | None = None,
) -> int:
    """Insert without committing. Raises sqlite3.IntegrityError on a repeated external id."""
    cursor = conn.execute(
        "INSERT INTO transactions (account_id, date, description, amount, merchant_name, "
        "check_number, external_id, memo, import_session_id) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (
            txn.account_id, txn.date.isoformat(), txn.description, str(money(txn.amount)),
            txn.merchant_name, txn.check_number, txn.external_id, txn.memo, session_id,
        ),
    )
    return cursor.lastrowid


def get_transaction(conn: sqlite3.Connection, transaction_id: int) -> CanonicalTransaction | None:
    row = conn.execute("SELECT * FROM transactions WHERE id = ?", (transaction_id,)).fetchone()
    return _row_to_transaction(row) if row else None


def list_transactions(
    conn: sqlite3.Connection,
    account_id: int | None = None,
    since: date | None = None,
) -> list[CanonicalTransaction]:
    sql = "SELECT * FROM transactions WHERE 1 = 1"
    params: list = []
    if account_id is not None:
        sql += " AND account_id = ?"
        params.append(account_id)
    if since is not None:
        sql += " AND date >= ?"
        params.append(since.isoformat())
    sql += " ORDER BY date, id"
    return [_row_to_transaction(r) for r in conn.execute(sql, params)]


def count_transactions(conn: sqlite3.Connection, account_id: int | None = None) -> int:
    if account_id is None:
        return conn.execute("SELECT count(*) FROM transactions").fetchone()[0]
    return conn.execute(
        "SELECT count(*) FROM transactions WHERE account_id = ?", (account_id,)
    ).fetchone()[0]


# --- Import profiles ---


def _row_to_profile(row: sqlite3.Row) -> ImportProfile:
    return ImportProfile(
        id=row["id"],
        name=row["name"],
        file_type=row["file_type"],
        column_mapping=json.loads(row["column_mapping"]),
        header_fingerprint=row["header_fingerprint"],
        date_format=row["date_format"],
        default_account_id=row["default_account_id"],
    )


def list_profiles(conn: sqlite3.Connection, file_type: str | None = None) -> list[ImportProfile]:
    if file_type is None:
        rows = conn.execute("SELECT * FROM import_profiles ORDER BY name")
    else:
        rows = conn.execute(
            "SELECT * FROM import_profiles WHERE file_type = ? ORDER BY name", (file_type,)
        )
    return [_row_to_profile(r) for r in rows]


def get_profile_by_name(conn: sqlite3.Connection, name: str) -> ImportProfile | None:
    row = conn.execute("SELECT * FROM import_profiles WHERE name = ?", (name,)).fetchone()
    return _row_to_profile(row) if row else None


def save_profile(conn: sqlite3.Connection, profile: ImportProfile) -> int:
    """Insert or replace a profile by name. Returns its id."""
    existing = get_profile_by_name(conn, profile.name)
    mapping_json = json.dumps(profile.column_mapping, sort_keys=True)
    if existing is None:
        cursor = conn.execute(
            "INSERT INTO import_profiles (name, file_type, column_mapping, header_fingerprint, "
            "date_format, default_account_id) VALUES (?, ?, ?, ?, ?, ?)",
            (
                profile.name, profile.file_type, mapping_json, profile.header_fingerprint,
                profile.date_format, profile.default_account_id,
            ),
        )
        profile_id = cursor.lastrowid
    else:
        conn.execute(
            "UPDATE import_profiles SET file_type = ?, column_mapping = ?, header_fingerprint = ?, "
            "date_format = ?, default_account_id = ?, updated_at = datetime('now') WHERE id = ?",
            (
                profile.file_type, mapping_json, profile.header_fingerprint,
                profile.date_format, profile.default_account_id, existing.id,
            ),
        )
        profile_id = existing.id
    conn.commit()
    profile.id = profile_id
    return profile_id


def delete_profile(conn: sqlite3.Connection, name: str) -> bool:
    cursor = conn.execute("DELETE FROM import_profiles WHERE name = ?", (name,))
    conn.commit()
    return cursor.rowcount > 0


# --- Import sessions ---


def _parse_ts(raw: str | None) -> datetime | None:
    return datetime.fromisoformat(raw) if raw else None


def _row_to_session(row: sqlite3.Row) -> ImportSession:
    return ImportSession(
        id=row["id"],
        file_name=row["file_name"],
        file_type=row["file_type"],
        status=row["status"],
        account_id=row["account_id"],
        profile_id=row["profile_id"],
        total_rows=row["total_rows"],
        transactions_created=row["transactions_created"],
        duplicates_skipped=row["duplicates_skipped"],
        errors_count=row["errors_count"],
        error_message=row["error_message"],
        created_at=_parse_ts(row["created_at"]),
        completed_at=_parse_ts(row["completed_at"]),
    )


def create_session(conn: sqlite3.Connection, session: ImportSession) -> int:
    cursor = conn.execute(
        "INSERT INTO import_sessions (file_name, file_type, status, account_id) VALUES (?, ?, ?, ?)",
        (session.file_name, session.file_type, session.status, session.account_id),
    )
    conn.commit()
    session.id = cursor.lastrowid
    session.created_at = _parse_ts(
        conn.execute("SELECT created_at FROM import_sessions WHERE id = ?", (session.id,)).fetchone()[0]
    )
    return session.id


def save_session(conn: sqlite3.Connection, session: ImportSession) -> None:
    """Write the session's status and counters. Commits."""
    conn.execute(
        "UPDATE import_sessions SET file_type = ?, status = ?, profile_id = ?, total_rows = ?, "
        "transactions_created = ?, duplicates_skipped = ?, errors_count = ?, error_message = ?, "
        "completed_at = ? WHERE id = ?",
        (
            session.file_type, session.status, session.profile_id, session.total_rows,
            session.transactions_created, session.duplicates_skipped, session.errors_count,
            session.error_message,
            session.completed_at.isoformat(sep=" ", timespec="seconds") if session.completed_at else None,
            session.id,
        ),
    )
    conn.commit()


def get_session(conn: sqlite3.Connection, session_id: int) -> ImportSession | None:
    row = conn.execute("SELECT * FROM import_sessions WHERE id = ?", (session_id,)).fetchone()
    return _row_to_session(row) if row else None


def list_sessions(conn: sqlite3.Connection, limit: int = 50) -> list[ImportSession]:
    rows = conn.execute("SELECT * FROM import_sessions ORDER BY id DESC LIMIT ?", (limit,))
    return [_row_to_session(r) for r in rows]


# --- Checks ---


def _row_to_check(row: sqlite3.Row) -> Check:
    return Check(
        id=row["id"],
        account_id=row["account_id"],
        check_number=row["check_number"],
        payee=row["payee"],
        amount=Decimal(row["amount"]),
        date_written=date.fromisoformat(row["date_written"]),
        status=row["status"],
        matched_transaction_id=row["matched_transaction_id"],
        memo=row["memo"],
    )


def insert_check(conn: sqlite3.Connection, check: Check) -> int:
    cursor = conn.execute(
        "INSERT INTO checks (account_id, check_number, payee, amount, date_written, memo, status) "
        "VALUES (?, ?, ?, ?, ?, ?, ?)",
        (
            check.account_id, check.check_number, check.payee, str(money(check.amount)),
            check.date_written.isoformat(), check.memo, check.status,
        ),
    )
    conn.commit()
    check.id = cursor.lastrowid
    return check.id


def get_check(conn: sqlite3.Connection, check_id: int) -> Check | None:
    row = conn.execute("SELECT * FROM checks WHERE id = ?", (check_id,)).fetchone()
    return _row_to_check(row) if row else None


def list_checks(
    conn: sqlite3.Connection, status: str | None = None, account_id: int | None = None,
) -> list[Check]:
    sql = "SELECT * FROM checks WHERE 1 = 1"
    params: list = []
    if status is not None:
        sql += " AND status = ?"
        params.append(status)
    if account_id is not None:
        sql += " AND account_id = ?"
        params.append(account_id)
    sql += " ORDER BY date_written, id"
    return [_row_to_check(r) for r in conn.execute(sql, params)]


def check_matched_to(conn: sqlite3.Connection, transaction_id: int) -> Check | None:
    row = conn.execute(
        "SELECT * FROM checks WHERE matched_transaction_id = ?", (transaction_id,)
    ).fetchone()
    return _row_to_check(row) if row else None


def matched_transaction_ids(conn: sqlite3.Connection) -> set[int]:
    rows = conn.execute(
        "SELECT matched_transaction_id FROM checks WHERE matched_transaction_id IS NOT NULL"
    )
    return {r[0] for r in rows}


def mark_check_cleared(
    conn: sqlite3.Connection, check_id: int, transaction_id: int, date_cleared: date,
) -> None:
    """Raises sqlite3.IntegrityError when the transaction is already matched elsewhere."""
    conn.execute(
        "UPDATE checks SET status = 'cleared', matched_transaction_id = ?, date_cleared = ? "
        "WHERE id = ?",
        (transaction_id, date_cleared.isoformat(), check_id),
    )
    conn.commit()


def set_check_status(conn: sqlite3.Connection, check_id: int, status: str) -> None:
    conn.execute("UPDATE checks SET status = ? WHERE id = ?", (status, check_id))
    conn.commit()


# --- Recurring transactions ---


def list_recurring(conn: sqlite3.Connection, active_only: bool = True) -> list[sqlite3.Row]:
    sql = "SELECT * FROM recurring_transactions"
    if active_only:
        sql += " WHERE is_active = 1"
    return conn.execute(sql + " ORDER BY name").fetchall()


def insert_recurring(
    conn: sqlite3.Connection,
    *,
    name: str,
    amount: Decimal,
    frequency: str,
    account_id: int | None = None,
    merchant_name: str | None = None,
    last_date: date | None = None,
    next_expected_date: date | None = None,
    confidence: float | None = None,
    is_subscription: bool = False,
    is_essential: bool = False,
) -> int:
    cursor = conn.execute(
        "INSERT INTO recurring_transactions (account_id, name, merchant_name, amount, frequency, "
        "last_date, next_expected_date, confidence, is_subscription, is_essential) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (
            account_id, name, merchant_name, str(money(amount)), frequency,
            last_date.isoformat() if last_date else None,
            next_expected_date.isoformat() if next_expected_date else None,
            confidence, 1 if is_subscription else 0, 1 if is_essential else 0,
        ),
    )
    conn.commit()
    return cursor.lastrowid
