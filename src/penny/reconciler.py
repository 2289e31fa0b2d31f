import re
import sqlite3
from datetime import date
from decimal import Decimal

from penny import db
from penny.errors import CheckMatchError, PennyError
from penny.logging_setup import get_logger
from penny.models import CanonicalTransaction, Check

logger = get_logger("penny.reconciler")


def normalize_check_number(value: str | None) -> str:
    """Digits only, leading zeros dropped: '#001042' and 'CHK 1042' both give '1042'."""
    digits = re.sub(r"\D", "", value or "")
    return digits.lstrip("0") or ("0" if digits else "")


def find_candidates(check: Check, transactions: list[CanonicalTransaction]) -> list[CanonicalTransaction]:
    """Transactions whose check number and absolute amount both equal the check's."""
    number = normalize_check_number(check.check_number)
    if not number:
        return []
    return [
        t for t in transactions
        if t.check_number
        and normalize_check_number(t.check_number) == number
        and abs(t.amount) == check.amount
    ]


def _require_check(conn: sqlite3.Connection, check_id: int) -> Check:
    check = db.get_check(conn, check_id)
    if check is None:
        raise PennyError(f"Unknown check: {check_id}")
    return check


def add_check(
    conn: sqlite3.Connection,
    account_name: str,
    check_number: str,
    payee: str,
    amount: Decimal,
    date_written: date,
    memo: str | None = None,
) -> Check:
    account = db.get_account_by_name(conn, account_name)
    if account is None:
        raise PennyError(f"Unknown account: {account_name}")
    number = normalize_check_number(check_number)
    if not number:
        raise PennyError(f"Check number must contain digits: {check_number!r}")
    amount = db.money(amount)
    if amount <= 0:
        raise PennyError("Check amount must be positive")
    check = Check(
        id=None, account_id=account.id, check_number=number, payee=payee,
        amount=amount, date_written=date_written, memo=memo,
    )
    db.insert_check(conn, check)
    return check


def candidates_for(conn: sqlite3.Connection, check_id: int) -> list[CanonicalTransaction]:
    """Unmatched transactions in the check's own account that could have cleared it."""
    check = _require_check(conn, check_id)
    taken = db.matched_transaction_ids(conn) - {check.matched_transaction_id}
    pool = [t for t in db.list_transactions(conn, account_id=check.account_id) if t.id not in taken]
    return find_candidates(check, pool)


def match(conn: sqlite3.Connection, check_id: int, transaction_id: int) -> Check:
    """Mark a check cleared by a transaction. Re-matching the same pair is a no-op."""
    check = _require_check(conn, check_id)
    if check.matched_transaction_id == transaction_id and check.status == "cleared":
        return check
    if check.status == "void":
        raise CheckMatchError(f"Check #{check.check_number} is void")
    if check.status == "cleared":
        raise CheckMatchError(
            f"Check #{check.check_number} is already matched to transaction {check.matched_transaction_id}"
        )

    txn = db.get_transaction(conn, transaction_id)
    if txn is None:
        raise PennyError(f"Unknown transaction: {transaction_id}")
    other = db.check_matched_to(conn, transaction_id)
    if other is not None:
        raise CheckMatchError(
            f"Transaction {transaction_id} is already matched to check #{other.check_number}"
        )

    try:
        db.mark_check_cleared(conn, check_id, transaction_id, txn.date)
    except sqlite3.IntegrityError as e:
        conn.rollback()
        raise CheckMatchError(f"Transaction {transaction_id} is already matched to another check") from e

    logger.info("check #%s matched to transaction %d", check.check_number, transaction_id)
    check.status = "cleared"
    check.matched_transaction_id = transaction_id
    return check


def void_check(conn: sqlite3.Connection, check_id: int) -> Check:
    check = _require_check(conn, check_id)
    if check.status == "cleared":
        raise CheckMatchError(f"Check #{check.check_number} has cleared and cannot be voided")
    if check.status != "void":
        db.set_check_status(conn, check_id, "void")
        check.status = "void"
    return check


def auto_match(conn: sqlite3.Connection, account_id: int | None = None) -> dict:
    """Match every pending check that has exactly one candidate.

    Returns ``{"matched": [(check, txn_id)], "ambiguous": [check], "unmatched": [check]}``.
    """
    matched, ambiguous, unmatched = [], [], []
    for check in db.list_checks(conn, status="pending", account_id=account_id):
        candidates = candidates_for(conn, check.id)
        if len(candidates) == 1:
            matched.append((match(conn, check.id, candidates[0].id), candidates[0].id))
        elif candidates:
            ambiguous.append(check)
        else:
            unmatched.append(check)
    logger.info(
        "auto-match: %d matched, %d ambiguous, %d unmatched",
        len(matched), len(ambiguous), len(unmatched),
    )
    return {"matched": matched, "ambiguous": ambiguous, "unmatched": unmatched}
