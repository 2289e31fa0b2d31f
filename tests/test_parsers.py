from pathlib import Path

import pytest
from openpyxl import Workbook

from penny.errors import FormatError
from penny.parsers import (
    OFX_FIELDS, decode_content, detect_file_type, parse_content, parse_delimited, parse_file,
    parse_ofx,
)

FIXTURES = Path(__file__).parent / "fixtures"


def test_parse_delimited_aligns_rows_by_header():
    result = parse_delimited("Date,Description,Amount\n01/15/2024,Netflix,-15.99\n")
    assert result.headers == ["Date", "Description", "Amount"]
    assert len(result.rows) == 1
    row = result.rows[0]
    assert row.values == {"Date": "01/15/2024", "Description": "Netflix", "Amount": "-15.99"}
    assert row.index == 2


def test_parse_delimited_pads_short_rows_and_drops_blank_lines():
    result = parse_delimited("A,B,C\n1,2\n\n4,5,6\n")
    assert [r.values for r in result.rows] == [
        {"A": "1", "B": "2", "C": ""},
        {"A": "4", "B": "5", "C": "6"},
    ]
    assert [r.index for r in result.rows] == [2, 4]


def test_parse_delimited_sniffs_semicolons():
    result = parse_delimited("Date;Amount;Description\n2024-01-02;-3,50;Bakery\n2024-01-03;-4,00;Cafe\n")
    assert result.headers == ["Date", "Amount", "Description"]
    assert result.rows[0].get("Amount") == "-3,50"


def test_parse_delimited_skip_rows_and_no_header():
    text = "Account Statement\nGenerated today\n01/02/2024,Coffee,-4.00\n"
    result = parse_delimited(text, has_header_row=False, skip_rows=2)
    assert result.headers == ["Column 1", "Column 2", "Column 3"]
    assert result.rows[0].get("Column 2") == "Coffee"
    assert result.rows[0].index == 3


def test_parse_delimited_renames_duplicate_headers():
    result = parse_delimited("Date,Amount,Amount\n01/01/2024,1,2\n")
    assert result.headers == ["Date", "Amount", "Amount (2)"]


def test_parse_delimited_header_override():
    text = "Date,Desc,Amt\n01/02/2024,Coffee,-4.00\n"
    replaced = parse_delimited(text, headers=["When", "What", "How Much"])
    assert replaced.headers == ["When", "What", "How Much"]
    assert [r.values for r in replaced.rows] == [{"When": "01/02/2024", "What": "Coffee", "How Much": "-4.00"}]

    headerless = parse_delimited("01/02/2024,Coffee,-4.00\n", has_header_row=False, headers=["When", "What", "Amt"])
    assert headerless.rows[0].get("Amt") == "-4.00"
    assert headerless.rows[0].index == 1


def test_oversized_field_is_format_error():
    with pytest.raises(FormatError) as exc:
        parse_delimited("Date,Description\n01/02/2024," + "x" * 200_000 + "\n")
    assert exc.value.kind == "UnsupportedFormat"


def test_empty_file_is_format_error():
    with pytest.raises(FormatError) as exc:
        parse_delimited("   \n")
    assert exc.value.kind == "EmptyFile"


def test_parse_ofx_reads_transaction_blocks():
    result = parse_file(FIXTURES / "statement.qfx")
    assert result.file_type == "qfx"
    assert result.identity_mapping is True
    assert result.headers == OFX_FIELDS
    assert result.currency == "USD"
    assert result.detected_account["account_id"] == "000123456789"
    assert result.detected_account["account_type"] == "CHECKING"
    assert len(result.rows) == 3

    first, check, deposit = result.rows
    assert first.get("date") == "20240205"
    assert first.get("amount") == "-42.17"
    assert first.get("referenceId") == "2024020501"
    assert first.get("description") == "WHOLE FOODS MARKET - POS PURCHASE"
    assert first.get("memo") == "POS PURCHASE"
    assert check.get("checkNumber") == "1042"
    assert deposit.get("skip") == "CREDIT"


def test_parse_ofx_without_transactions():
    with pytest.raises(FormatError) as exc:
        parse_ofx("OFXHEADER:100\n<OFX><BANKTRANLIST></BANKTRANLIST></OFX>")
    assert exc.value.kind == "NoTransactions"


def test_parse_ofx_name_falls_back_to_payee_and_dtuser():
    text = (
        "<OFX><BANKTRANLIST><STMTTRN><TRNTYPE>DEBIT<DTUSER>20240301<TRNAMT>-9.99"
        "<FITID>A1<PAYEE>SPOTIFY</STMTTRN></BANKTRANLIST></OFX>"
    )
    row = parse_ofx(text).rows[0]
    assert row.get("description") == "SPOTIFY"
    assert row.get("date") == "20240301"


def test_flavour_from_intuit_marker():
    text = "OFXHEADER:100\n<OFX><INTU.BID>3000<BANKTRANLIST><STMTTRN><DTPOSTED>20240101<TRNAMT>-1.00<NAME>X</STMTTRN>"
    assert parse_content("export.dat", text.encode()).file_type == "qbo"


def test_detect_file_type():
    assert detect_file_type("a.csv", "x,y\n1,2") == "csv"
    assert detect_file_type("a.QFX", "") == "qfx"
    assert detect_file_type("download", "OFXHEADER:100\nDATA:OFXSGML\n<OFX>") == "ofx"
    with pytest.raises(FormatError):
        detect_file_type("notes", "hello")


def test_binary_xlsx_is_rejected_with_remediation(tmp_path):
    path = tmp_path / "export.xlsx"
    wb = Workbook()
    wb.active.append(["Date", "Description", "Amount"])
    wb.active.append(["01/15/2024", "Netflix", -15.99])
    wb.save(path)

    with pytest.raises(FormatError) as exc:
        parse_file(path)
    assert exc.value.kind == "UnsupportedFormat"
    assert "CSV" in exc.value.remediation


def test_text_saved_as_xls_is_parsed_as_csv():
    result = parse_content("statement.xls", b"Date,Description,Amount\n01/15/2024,Netflix,-15.99\n")
    assert result.file_type == "csv"
    assert len(result.rows) == 1
    assert any("plain text" in w for w in result.warnings)


def test_decode_content_strips_bom_and_tolerates_latin1():
    assert decode_content("\ufeffDate,Amount".encode("utf-8")) == "Date,Amount"
    assert decode_content("Caf\xe9,1".encode("cp1252")) == "Café,1"
