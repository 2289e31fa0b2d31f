import sqlite3
import threading
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest
from openpyxl import Workbook

import penny.db as store
from helpers.openai_stub import OpenAIStub, request_items
from penny.classifier import OpenAIClassifier
from penny.db import count_transactions, get_connection, get_session, list_sessions, list_transactions
from penny.errors import PennyError, PersistenceError
from penny.importer import import_file, ingest_linked_transactions
from penny.models import CanonicalTransaction

FIXTURES = Path(__file__).parent / "fixtures"

CHECKING_MAP = ["Date=date", "Description=description", "Amount=amount", "Balance=balance"]
SPLIT_MAP = [
    "Posted Date=date", "Payee=description", "Debit=debit", "Credit=credit", "Check Number=checkNumber",
]


def _write(tmp_path, name, text):
    path = tmp_path / name
    path.write_text(text)
    return path


def test_import_csv_with_explicit_mapping(db, account_id):
    session = import_file(db, FIXTURES / "checking.csv", "Checking", mapping_overrides=CHECKING_MAP)

    assert session.status == "completed"
    assert session.file_type == "csv"
    assert session.total_rows == 4
    assert session.transactions_created == 4
    assert session.duplicates_skipped == 0
    assert session.is_balanced

    txns = list_transactions(db, account_id=account_id)
    assert [t.amount for t in txns] == [
        Decimal("-15.99"), Decimal("2500.00"), Decimal("-250.00"), Decimal("-6.75"),
    ]
    assert txns[0].date == date(2024, 1, 15)
    assert txns[2].check_number == "1042"
    assert txns[3].merchant_name == "Blue Bottle Coffee"


def test_reimport_skips_everything(db, account_id):
    import_file(db, FIXTURES / "checking.csv", "Checking", mapping_overrides=CHECKING_MAP)
    second = import_file(db, FIXTURES / "checking.csv", "Checking", mapping_overrides=CHECKING_MAP)

    assert second.status == "completed"
    assert second.transactions_created == 0
    assert second.duplicates_skipped == second.total_rows == 4
    assert count_transactions(db, account_id) == 4


def test_debit_credit_columns_produce_signed_amounts(db, account_id):
    session = import_file(db, FIXTURES / "debit_credit.csv", "Checking", mapping_overrides=SPLIT_MAP)
    assert session.transactions_created == 4

    by_description = {t.description: t for t in list_transactions(db, account_id=account_id)}
    assert by_description["Electric Company"].amount == Decimal("-120.50")
    assert by_description["Client Deposit"].amount == Decimal("1500.00")
    assert by_description["Landlord"].amount == Decimal("-1800.00")
    assert by_description["Landlord"].check_number == "2001"
    assert by_description["Refund"].amount == Decimal("25.00")


def test_qfx_uses_fitid_for_dedup(db, account_id, add_txn):
    add_txn("2024-02-05", "-42.17", "Whole Foods", external_id="2024020501")

    session = import_file(db, FIXTURES / "statement.qfx", "Checking")

    assert session.status == "completed"
    assert session.file_type == "qfx"
    assert session.total_rows == 3
    assert session.duplicates_skipped == 1
    assert session.transactions_created == 2
    ids = {t.external_id for t in list_transactions(db, account_id=account_id)}
    assert ids == {"2024020501", "2024021002", "2024021503"}


def test_repeated_fitid_in_one_file_is_inserted_once(db, account_id, tmp_path):
    block = (
        "<STMTTRN><TRNTYPE>DEBIT<DTPOSTED>20240301<TRNAMT>-9.99"
        "<FITID>SAME<NAME>SPOTIFY</STMTTRN>"
    )
    path = _write(tmp_path, "dupes.ofx", f"OFXHEADER:100\n<OFX><BANKTRANLIST>{block}{block}</BANKTRANLIST></OFX>")

    session = import_file(db, path, "Checking")
    assert session.transactions_created == 1
    assert session.duplicates_skipped == 1
    assert session.is_balanced


def test_blocks_sharing_a_known_fitid_are_all_skipped(db, account_id, add_txn, tmp_path):
    add_txn("2024-03-01", "-9.99", "Spotify", external_id="SAME")
    block = (
        "<STMTTRN><TRNTYPE>DEBIT<DTPOSTED>20240301<TRNAMT>-9.99"
        "<FITID>SAME<NAME>SPOTIFY</STMTTRN>"
    )
    path = _write(tmp_path, "again.ofx", f"OFXHEADER:100\n<OFX><BANKTRANLIST>{block}{block}</BANKTRANLIST></OFX>")

    session = import_file(db, path, "Checking")
    assert session.duplicates_skipped == 2
    assert session.transactions_created == 0
    assert count_transactions(db, account_id) == 1


def test_row_errors_are_counted_and_balanced(db, account_id, tmp_path):
    path = _write(tmp_path, "mixed.csv", (
        "Date,Description,Amount\n"
        "01/02/2024,Coffee,-4.00\n"
        "not a date,Broken,-1.00\n"
        "01/03/2024,Bad amount,lots\n"
        "01/04/2024,Lunch,-12.00\n"
    ))
    session = import_file(
        db, path, "Checking", mapping_overrides=["Date=date", "Description=description", "Amount=amount"],
    )

    assert session.status == "completed"
    assert session.transactions_created == 2
    assert session.errors_count == 2
    assert [(e.row_index, e.kind) for e in session.row_errors] == [(3, "InvalidDate"), (4, "InvalidAmount")]
    assert session.is_balanced


def test_date_format_override(db, account_id, tmp_path):
    path = _write(tmp_path, "eu.csv", "Date,Description,Amount\n15/01/2024,Bakery,-3.50\n")
    session = import_file(
        db, path, "Checking",
        mapping_overrides=["Date=date", "Description=description", "Amount=amount"],
        date_format="DD/MM/YYYY",
    )
    assert session.transactions_created == 1
    assert list_transactions(db, account_id=account_id)[0].date == date(2024, 1, 15)


def test_unmapped_file_without_classifier_fails_session(db, account_id):
    session = import_file(db, FIXTURES / "checking.csv", "Checking")

    assert session.status == "failed"
    assert "--map" in session.error_message
    assert session.transactions_created == 0
    assert count_transactions(db, account_id) == 0
    stored = get_session(db, session.id)
    assert stored.status == "failed"
    assert stored.error_message == session.error_message
    assert stored.completed_at is not None


def test_binary_spreadsheet_fails_with_reexport_hint(db, account_id, tmp_path):
    path = tmp_path / "export.xlsx"
    wb = Workbook()
    wb.active.append(["Date", "Description", "Amount"])
    wb.save(path)

    session = import_file(db, path, "Checking")
    assert session.status == "failed"
    assert "CSV" in session.error_message


def test_classifier_resolves_mapping(db, account_id):
    def reply(kwargs):
        item = request_items(kwargs)[0]
        return {"results": [{
            "index": item["index"],
            "assignments": [
                {"header": "Date", "field": "date"},
                {"header": "Description", "field": "description"},
                {"header": "Amount", "field": "amount"},
                {"header": "Balance", "field": "balance"},
            ],
            "date_format": "%m/%d/%Y",
            "confidence": 0.95,
        }]}

    stub = OpenAIStub(reply)
    session = import_file(db, FIXTURES / "checking.csv", "Checking", classifier=OpenAIClassifier(client=stub))

    assert session.status == "completed"
    assert session.transactions_created == 4
    assert len(stub.calls) == 1


def test_classifier_failure_falls_back_to_manual_mapping(db, account_id):
    stub = OpenAIStub(lambda kwargs: "not json")
    session = import_file(db, FIXTURES / "checking.csv", "Checking", classifier=OpenAIClassifier(client=stub))
    assert session.status == "failed"
    assert "--map" in session.error_message


def test_saved_profile_is_reused_for_matching_headers(db, account_id, tmp_path):
    first = import_file(
        db, FIXTURES / "checking.csv", "Checking", mapping_overrides=CHECKING_MAP, save_profile_as="My Bank",
    )
    assert first.profile_id is not None

    path = _write(tmp_path, "february.csv", "Balance,Amount,Date,Description\n100.00,-9.99,02/15/2024,Spotify\n")
    second = import_file(db, path, "Checking")

    assert second.status == "completed"
    assert second.transactions_created == 1
    assert second.profile_id == first.profile_id


def test_named_profile_must_exist(db, account_id):
    session = import_file(db, FIXTURES / "checking.csv", "Checking", profile_name="Nope")
    assert session.status == "failed"
    assert "Unknown import profile" in session.error_message


def test_unknown_account_raises(db):
    with pytest.raises(PennyError):
        import_file(db, FIXTURES / "checking.csv", "Nowhere", mapping_overrides=CHECKING_MAP)


def test_store_failure_raises_and_marks_session_failed(db, account_id, monkeypatch):
    real_insert = store.insert_transaction
    calls = []

    def fail_second(*args, **kwargs):
        calls.append(1)
        if len(calls) == 2:
            raise sqlite3.OperationalError("disk I/O error")
        return real_insert(*args, **kwargs)

    monkeypatch.setattr(store, "insert_transaction", fail_second)

    with pytest.raises(PersistenceError):
        import_file(db, FIXTURES / "checking.csv", "Checking", mapping_overrides=CHECKING_MAP)

    session = list_sessions(db)[0]
    assert session.status == "failed"
    assert "disk I/O error" in session.error_message
    assert count_transactions(db, account_id) == 0
    assert session.transactions_created == 0


def test_constraint_failure_other_than_external_id_is_not_a_duplicate(db, account_id, monkeypatch):
    def not_null(*args, **kwargs):
        raise sqlite3.IntegrityError("NOT NULL constraint failed: transactions.date")

    monkeypatch.setattr(store, "insert_transaction", not_null)

    with pytest.raises(PersistenceError):
        import_file(db, FIXTURES / "checking.csv", "Checking", mapping_overrides=CHECKING_MAP)
    assert list_sessions(db)[0].status == "failed"


def test_external_id_conflict_at_insert_counts_as_duplicate(db, account_id, monkeypatch):
    def taken(*args, **kwargs):
        raise sqlite3.IntegrityError("UNIQUE constraint failed: transactions.account_id, transactions.external_id")

    monkeypatch.setattr(store, "insert_transaction", taken)

    session = import_file(db, FIXTURES / "statement.qfx", "Checking")
    assert session.status == "completed"
    assert session.transactions_created == 0
    assert session.duplicates_skipped == 3
    assert session.is_balanced


def test_oversized_amount_is_row_error_not_crash(db, account_id, tmp_path):
    path = _write(tmp_path, "huge.csv", (
        "Date,Description,Amount\n"
        f"01/02/2024,Huge,{'1' * 30}\n"
        "01/03/2024,Lunch,-12.00\n"
    ))
    session = import_file(
        db, path, "Checking", mapping_overrides=["Date=date", "Description=description", "Amount=amount"],
    )
    assert session.status == "completed"
    assert session.transactions_created == 1
    assert [(e.row_index, e.kind) for e in session.row_errors] == [(2, "InvalidAmount")]
    assert session.is_balanced


def test_oversized_field_fails_session(db, account_id, tmp_path):
    path = _write(tmp_path, "wide.csv", "Date,Description,Amount\n01/02/2024," + "x" * 200_000 + ",-1.00\n")
    session = import_file(
        db, path, "Checking", mapping_overrides=["Date=date", "Description=description", "Amount=amount"],
    )
    assert session.status == "failed"
    assert "Unreadable delimited text" in session.error_message
    assert get_session(db, session.id).status == "failed"


def test_unexpected_error_still_ends_session(db, account_id, monkeypatch):
    def explode(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr("penny.importer.normalize", explode)

    with pytest.raises(RuntimeError):
        import_file(db, FIXTURES / "checking.csv", "Checking", mapping_overrides=CHECKING_MAP)

    session = list_sessions(db)[0]
    assert session.status == "failed"
    assert "boom" in session.error_message
    assert session.completed_at is not None


def test_header_override_replaces_file_header(db, account_id):
    session = import_file(
        db, FIXTURES / "checking.csv", "Checking",
        headers=["When", "What", "How Much", "Left"],
        mapping_overrides=["When=date", "What=description", "How Much=amount"],
    )
    assert session.status == "completed"
    assert session.transactions_created == 4


def test_cancelled_import_writes_nothing(db, account_id):
    cancel = threading.Event()
    cancel.set()
    session = import_file(
        db, FIXTURES / "checking.csv", "Checking", mapping_overrides=CHECKING_MAP, cancel=cancel,
    )
    assert session.status == "failed"
    assert "cancelled" in session.error_message
    assert count_transactions(db, account_id) == 0


def test_concurrent_imports_of_same_file_insert_once(db, account_id, tmp_path):
    sessions = []

    def run():
        conn = get_connection(tmp_path / "test.db")
        try:
            sessions.append(import_file(conn, FIXTURES / "statement.qfx", "Checking"))
        finally:
            conn.close()

    threads = [threading.Thread(target=run) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(s.transactions_created for s in sessions) == [0, 3]
    assert count_transactions(db, account_id) == 3


def test_linked_transactions_are_deduplicated(db, account_id):
    def feed():
        return [
            CanonicalTransaction(account_id=0, date=date(2024, 3, 1), amount=Decimal("-9.99"),
                                 description="Spotify", external_id="plaid-1"),
            CanonicalTransaction(account_id=0, date=date(2024, 3, 2), amount=Decimal("-4.5"),
                                 description="Coffee", external_id="plaid-2"),
        ]

    delivered = feed()
    first = ingest_linked_transactions(db, "Checking", delivered)
    assert first.file_type == "bank_link"
    assert first.transactions_created == 2
    assert delivered[1].account_id == 0
    assert delivered[1].amount == Decimal("-4.5")
    assert delivered[1].id is None

    second = ingest_linked_transactions(db, "Checking", feed())
    assert second.transactions_created == 0
    assert second.duplicates_skipped == 2
    assert list_transactions(db, account_id=account_id)[1].amount == Decimal("-4.50")
