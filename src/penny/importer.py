"""Import session orchestration: parse -> map -> normalize -> dedupe -> persist."""

import sqlite3
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path

from penny import db
from penny.classifier import Classifier
from penny.dedup import dedupe
from penny.errors import FormatError, ImportCancelled, MappingError, PennyError, PersistenceError
from penny.logging_setup import get_logger
from penny.mapping import (
    header_fingerprint, identity_mapping, parse_mapping_overrides, resolve, validate_mapping,
)
from penny.models import (
    Account, CanonicalTransaction, ColumnMapping, ImportProfile, ImportSession, MappingResolution,
    ParseResult,
)
from penny.normalizer import normalize
from penny.parsers import EXTENSION_TYPES, parse_content
from penny.settings import DEFAULTS

logger = get_logger("penny.importer")

OFX_DATE_FORMAT = "%Y%m%d"

_account_locks: dict[int, threading.Lock] = {}
_account_locks_guard = threading.Lock()


def account_lock(account_id: int) -> threading.Lock:
    """Per-account lock serializing imports within this process.

    The unique (account_id, external_id) index is what actually prevents
    duplicates across processes.
    """
    with _account_locks_guard:
        return _account_locks.setdefault(account_id, threading.Lock())


def _require_account(conn: sqlite3.Connection, account_name: str) -> Account:
    account = db.get_account_by_name(conn, account_name)
    if account is None:
        raise PennyError(f"Unknown account: {account_name}")
    return account


def _is_external_id_conflict(error: sqlite3.IntegrityError) -> bool:
    """True when idx_transactions_external_id rejected the insert."""
    message = str(error)
    return message.startswith("UNIQUE constraint failed") and "transactions.external_id" in message


def _check_cancel(cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise ImportCancelled("Import cancelled")


def resolve_file_mapping(
    conn: sqlite3.Connection,
    parsed: ParseResult,
    classifier: Classifier | None = None,
    mapping_overrides: list[str] | None = None,
    date_format: str | None = None,
    profile_name: str | None = None,
    cancel: threading.Event | None = None,
) -> MappingResolution:
    """Pick the mapping for a parsed file; explicit choices beat automatic resolution."""
    if parsed.identity_mapping:
        resolution = MappingResolution(
            identity_mapping(parsed.headers, OFX_DATE_FORMAT), confidence=1.0, source="identity",
        )
    elif mapping_overrides:
        fields = parse_mapping_overrides(mapping_overrides, parsed.headers)
        resolution = MappingResolution(ColumnMapping(fields), confidence=1.0, source="manual")
    elif profile_name:
        profile = db.get_profile_by_name(conn, profile_name)
        if profile is None:
            raise MappingError(f"Unknown import profile: {profile_name}")
        resolution = MappingResolution(
            ColumnMapping(dict(profile.column_mapping), profile.date_format),
            confidence=1.0, source="profile", profile_id=profile.id,
        )
    else:
        resolution = resolve(
            parsed.headers,
            parsed.rows,
            db.list_profiles(conn, parsed.file_type),
            file_type=parsed.file_type,
            classifier=classifier,
            cancel=cancel,
        )
        if resolution.needs_manual_mapping:
            raise MappingError(
                "Could not work out which columns hold the date and amount. "
                "Pass --map HEADER=FIELD for each column or --profile NAME."
            )

    if date_format and not parsed.identity_mapping:
        resolution.mapping.date_format = date_format
    validate_mapping(resolution.mapping, parsed.headers)
    return resolution


def _persist(
    conn: sqlite3.Connection,
    session: ImportSession,
    transactions: list[CanonicalTransaction],
    settings: dict,
    cancel: threading.Event | None,
) -> None:
    """Dedupe against the account's history and insert the rest. Commits."""
    with account_lock(session.account_id):
        _check_cancel(cancel)
        existing = db.list_transactions(conn, account_id=session.account_id)
        result = dedupe(
            transactions,
            existing,
            tolerance_days=int(settings["dedup_date_tolerance_days"]),
            threshold=float(settings["dedup_similarity_threshold"]),
        )
        duplicates = len(result.duplicates)
        created = 0
        for txn in result.to_insert:
            try:
                txn.id = db.insert_transaction(conn, txn, session.id)
            except sqlite3.IntegrityError as e:
                if not _is_external_id_conflict(e):
                    raise
                # Another import got this external id in first.
                duplicates += 1
                continue
            created += 1
        conn.commit()
        # Only committed rows count.
        session.duplicates_skipped += duplicates
        session.transactions_created += created


def _finish(conn: sqlite3.Connection, session: ImportSession, status: str, message: str | None = None) -> None:
    session.status = status
    session.error_message = message
    session.completed_at = datetime.now()
    db.save_session(conn, session)
    logger.info(
        "session %d %s: total=%d created=%d duplicates=%d errors=%d",
        session.id, status, session.total_rows, session.transactions_created,
        session.duplicates_skipped, session.errors_count,
    )


def _fail(conn: sqlite3.Connection, session: ImportSession, error: PennyError) -> None:
    conn.rollback()
    message = str(error)
    if error.remediation:
        message = f"{message} {error.remediation}"
    _finish(conn, session, "failed", message)


def _run_session(conn: sqlite3.Connection, session: ImportSession, body) -> ImportSession:
    """Run ``body(session)`` with the session-level error policy applied.

    Format, mapping and cancellation problems mark the session failed and
    return it; store failures mark it failed and raise PersistenceError.
    Anything else also marks it failed before propagating.
    """
    session.status = "importing"
    db.save_session(conn, session)
    logger.info("session %d started: %s (%s)", session.id, session.file_name, session.file_type)
    try:
        body(session)
    except (FormatError, MappingError, ImportCancelled) as e:
        logger.warning("session %d aborted: %s", session.id, e)
        _fail(conn, session, e)
        return session
    except sqlite3.Error as e:
        logger.error("session %d persistence failure: %s", session.id, e)
        error = PersistenceError(f"Could not save transactions: {e}")
        try:
            _fail(conn, session, error)
        except sqlite3.Error:
            logger.exception("session %d could not be marked failed", session.id)
        raise error from e
    except Exception as e:
        logger.exception("session %d crashed", session.id)
        try:
            _fail(conn, session, PennyError(f"Unexpected error: {e}"))
        except sqlite3.Error:
            logger.exception("session %d could not be marked failed", session.id)
        raise
    _finish(conn, session, "completed")
    return session


def import_file(
    conn: sqlite3.Connection,
    file_path: Path,
    account_name: str,
    classifier: Classifier | None = None,
    mapping_overrides: list[str] | None = None,
    date_format: str | None = None,
    profile_name: str | None = None,
    save_profile_as: str | None = None,
    has_header_row: bool = True,
    skip_rows: int = 0,
    headers: list[str] | None = None,
    settings: dict | None = None,
    cancel: threading.Event | None = None,
) -> ImportSession:
    """Import one bank export into an account and return its session.

    Rows that fail validation are counted and reported in
    ``session.row_errors`` without stopping the import. On completion
    ``total_rows == transactions_created + duplicates_skipped + errors_count``.
    """
    settings = {**DEFAULTS, **(settings or {})}
    account = _require_account(conn, account_name)
    session = ImportSession(
        id=None,
        file_name=file_path.name,
        file_type=EXTENSION_TYPES.get(file_path.suffix.lower(), "unknown"),
        account_id=account.id,
    )
    db.create_session(conn, session)

    def body(session: ImportSession) -> None:
        try:
            data = file_path.read_bytes()
        except OSError as e:
            raise FormatError("UnsupportedFormat", f"Cannot read {file_path}: {e}") from e
        parsed = parse_content(
            file_path.name, data, has_header_row=has_header_row, skip_rows=skip_rows, headers=headers,
        )
        session.file_type = parsed.file_type
        for warning in parsed.warnings:
            logger.info("%s: %s", file_path.name, warning)

        resolution = resolve_file_mapping(
            conn, parsed, classifier, mapping_overrides, date_format, profile_name, cancel,
        )
        session.profile_id = resolution.profile_id
        logger.info(
            "mapping from %s (confidence %.2f): %s",
            resolution.source, resolution.confidence, resolution.mapping.fields,
        )

        transactions, errors = normalize(parsed.rows, resolution.mapping, account.id)
        session.row_errors = errors
        session.errors_count = len(errors)
        session.total_rows = len(transactions) + len(errors)

        _persist(conn, session, transactions, settings, cancel)

        if save_profile_as and not parsed.identity_mapping:
            profile = ImportProfile(
                id=None,
                name=save_profile_as,
                file_type=parsed.file_type,
                column_mapping=dict(resolution.mapping.fields),
                header_fingerprint=header_fingerprint(parsed.headers, parsed.file_type),
                date_format=resolution.mapping.date_format,
                default_account_id=account.id,
            )
            session.profile_id = db.save_profile(conn, profile)
            logger.info("saved import profile %r", save_profile_as)

    return _run_session(conn, session, body)


def ingest_linked_transactions(
    conn: sqlite3.Connection,
    account_name: str,
    transactions: list[CanonicalTransaction],
    settings: dict | None = None,
    cancel: threading.Event | None = None,
) -> ImportSession:
    """Persist already-normalized transactions delivered by a bank link."""
    settings = {**DEFAULTS, **(settings or {})}
    account = _require_account(conn, account_name)
    session = ImportSession(id=None, file_name="bank-link", file_type="bank_link", account_id=account.id)
    db.create_session(conn, session)

    def body(session: ImportSession) -> None:
        owned = [replace(txn, account_id=account.id, amount=db.money(txn.amount)) for txn in transactions]
        session.total_rows = len(owned)
        _persist(conn, session, owned, settings, cancel)

    return _run_session(conn, session, body)
