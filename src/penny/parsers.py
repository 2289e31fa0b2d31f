"""Format parsers: raw file content -> headers + RawRows.

Two families are supported: delimited text (CSV and friends, including
spreadsheets that were saved as text) and the SGML-style structured bank
export shared by OFX, QFX and QBO files. Binary spreadsheets are rejected
with a remediation hint rather than parsed.
"""

import csv
import io
import re
from pathlib import Path

from penny.errors import REEXPORT_HINT, FormatError
from penny.logging_setup import get_logger
from penny.models import ParseResult, ParserInfo, RawRow
from penny.registry import registry

logger = get_logger("penny.parsers")

EXTENSION_TYPES = {
    ".csv": "csv",
    ".txt": "csv",
    ".tsv": "csv",
    ".xlsx": "xlsx",
    ".xls": "xls",
    ".ofx": "ofx",
    ".qfx": "qfx",
    ".qbo": "qbo",
}

OFX_MARKERS = (
    "OFXHEADER", "<OFX>", "<BANKMSGSRSV1>", "<CREDITCARDMSGSRSV1>", "<STMTTRN>",
    "<BANKTRANLIST>", "DATA:OFXSGML", "INTU.BID", "<SONRS>", "<STMTRS>",
)

_BINARY_MAGIC = (
    b"PK\x03\x04",  # xlsx / zip container
    b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1",  # legacy xls (OLE2)
    b"%PDF",
)

# Field names produced by the structured-export parser; these double as the
# identity column mapping.
OFX_FIELDS = ["date", "amount", "referenceId", "description", "memo", "checkNumber", "skip"]


# --- Content decoding ---


def decode_content(data: bytes) -> str:
    """Decode file bytes as text, refusing binary spreadsheet containers."""
    head = data[:2048]
    if any(head.startswith(magic) for magic in _BINARY_MAGIC) or b"\x00" in head:
        raise FormatError(
            "UnsupportedFormat",
            "This looks like a binary spreadsheet or document, which cannot be read directly.",
            REEXPORT_HINT,
        )
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError:
        logger.debug("content is not UTF-8, falling back to cp1252")
        return data.decode("cp1252", errors="replace")


def is_ofx(text: str) -> bool:
    upper = text[:4096].upper()
    return any(marker in upper for marker in OFX_MARKERS)


def is_delimited(text: str) -> bool:
    return "\n" in text.strip() or any(d in text for d in ",;\t|")


def detect_file_type(file_name: str, text: str) -> str:
    """Return csv, ofx, qfx or qbo for already-decoded content."""
    ext = Path(file_name).suffix.lower()
    declared = EXTENSION_TYPES.get(ext)
    if declared in ("ofx", "qfx", "qbo"):
        return declared
    sniffed = registry.detect(text)
    if sniffed is not None and sniffed.key == "ofx":
        return ofx_flavour(text)
    if declared in ("csv", "xlsx", "xls") or sniffed is not None:
        return "csv"
    raise FormatError(
        "UnsupportedFormat",
        f"Unsupported file type: {file_name}",
        "Use a CSV file or a bank export (.ofx, .qfx, .qbo).",
    )


# --- Delimited text ---


def _sniff_delimiter(sample: str) -> str:
    try:
        return csv.Sniffer().sniff(sample, delimiters=",;\t|").delimiter
    except csv.Error:
        return ","


def _unique_headers(raw: list[str]) -> list[str]:
    headers: list[str] = []
    seen: dict[str, int] = {}
    for i, cell in enumerate(raw):
        name = cell.strip() or f"Column {i + 1}"
        if name in seen:
            seen[name] += 1
            name = f"{name} ({seen[name]})"
        else:
            seen[name] = 1
        headers.append(name)
    return headers


def parse_delimited(
    text: str,
    has_header_row: bool = True,
    skip_rows: int = 0,
    headers: list[str] | None = None,
) -> ParseResult:
    """Parse delimited text. The first kept row is the header unless overridden.

    ``headers`` names the columns explicitly; with ``has_header_row`` the
    file's own header row is then skipped, otherwise every row is data.
    """
    if not text.strip():
        raise FormatError("EmptyFile", "File is empty", REEXPORT_HINT)

    delimiter = _sniff_delimiter(text[:4096])
    reader = csv.reader(io.StringIO(text), delimiter=delimiter)

    records: list[tuple[int, list[str]]] = []
    try:
        for i, line in enumerate(reader):
            if i < skip_rows:
                continue
            if not any(cell.strip() for cell in line):
                continue
            records.append((reader.line_num, line))
    except csv.Error as e:
        raise FormatError(
            "UnsupportedFormat", f"Unreadable delimited text near line {reader.line_num}: {e}", REEXPORT_HINT,
        ) from e

    if not records:
        raise FormatError("EmptyFile", "File has no rows after the skipped preamble", REEXPORT_HINT)

    if headers:
        header_row = _unique_headers(headers)
        data = records[1:] if has_header_row else records
    elif has_header_row:
        header_row = _unique_headers(records[0][1])
        data = records[1:]
    else:
        width = max(len(line) for _, line in records)
        header_row = [f"Column {i + 1}" for i in range(width)]
        data = records

    rows: list[RawRow] = []
    warnings: list[str] = []
    for line_num, line in data:
        cells = [cell.strip() for cell in line]
        if len(cells) > len(header_row):
            warnings.append(f"Row {line_num}: {len(cells) - len(header_row)} extra cell(s) ignored")
        cells += [""] * (len(header_row) - len(cells))
        rows.append(RawRow(index=line_num, values=dict(zip(header_row, cells))))

    return ParseResult(file_type="csv", headers=header_row, rows=rows, warnings=warnings)


# --- Structured bank export (OFX / QFX / QBO) ---


def ofx_flavour(text: str) -> str:
    upper = text.upper()
    if "INTU.BID" in upper or "INTUIT" in upper:
        return "qbo"
    if "QUICKEN" in upper:
        return "qfx"
    return "ofx"


def _tag_value(content: str, tag: str) -> str | None:
    """Value of an SGML tag: runs to the next tag; closing tags are optional."""
    match = re.search(rf"<{tag}>\s*([^<]+?)\s*(?:<|$)", content, re.IGNORECASE)
    if match is None:
        return None
    value = re.sub(r"\s+", " ", match.group(1)).strip()
    return value or None


def _ofx_date(raw: str | None) -> str:
    """Reduce YYYYMMDD[HHMMSS[.XXX]][[tz]] to YYYYMMDD; anything else passes through."""
    if not raw:
        return ""
    cleaned = re.sub(r"\[.*\]", "", raw).strip()
    match = re.match(r"(\d{8})", cleaned)
    return match.group(1) if match else cleaned


def _account_info(text: str) -> dict | None:
    bank = re.search(
        r"<BANKACCTFROM>(.*?)(?:</BANKACCTFROM>|<BANKTRANLIST>)", text, re.IGNORECASE | re.DOTALL
    )
    if bank:
        return {
            "account_id": _tag_value(bank.group(1), "ACCTID"),
            "account_type": _tag_value(bank.group(1), "ACCTTYPE"),
            "bank_id": _tag_value(bank.group(1), "BANKID"),
        }
    card = re.search(
        r"<CCACCTFROM>(.*?)(?:</CCACCTFROM>|<BANKTRANLIST>)", text, re.IGNORECASE | re.DOTALL
    )
    if card:
        return {
            "account_id": _tag_value(card.group(1), "ACCTID"),
            "account_type": "CREDITCARD",
            "bank_id": None,
        }
    return None


def _transaction_blocks(text: str) -> list[str]:
    content = text.replace("\r\n", "\n").replace("\r", "\n")
    section = re.search(
        r"<BANKTRANLIST>(.*?)(?:</BANKTRANLIST>|</STMTRS>|</CCSTMTRS>|\Z)",
        content, re.IGNORECASE | re.DOTALL,
    )
    if section:
        content = section.group(1)
    blocks = []
    for part in re.split(r"<STMTTRN>", content, flags=re.IGNORECASE)[1:]:
        end = re.search(r"</STMTTRN>|</BANKTRANLIST>", part, re.IGNORECASE)
        blocks.append(part[: end.start()] if end else part)
    return blocks


def parse_ofx(text: str) -> ParseResult:
    """Parse an OFX/QFX/QBO export. Each STMTTRN block becomes one RawRow."""
    flavour = ofx_flavour(text)
    rows: list[RawRow] = []
    for i, block in enumerate(_transaction_blocks(text), start=1):
        name = _tag_value(block, "NAME") or _tag_value(block, "PAYEE") or _tag_value(block, "MEMO")
        memo = _tag_value(block, "MEMO")
        posted = _tag_value(block, "DTPOSTED") or _tag_value(block, "DTUSER")
        amount = _tag_value(block, "TRNAMT")
        if not (posted or amount or name):
            continue
        description = name or ""
        if memo and memo != name:
            description = f"{description} - {memo}" if description else memo
        rows.append(RawRow(index=i, values={
            "date": _ofx_date(posted),
            "amount": amount or "",
            "referenceId": _tag_value(block, "FITID") or "",
            "description": description,
            "memo": memo or "",
            "checkNumber": _tag_value(block, "CHECKNUM") or _tag_value(block, "CHKNUM") or "",
            "skip": _tag_value(block, "TRNTYPE") or "",
        }))

    if not rows:
        raise FormatError(
            "NoTransactions", "No transactions found in file",
            "Check that the export covers a date range with activity.",
        )

    account = _account_info(text)
    warnings = []
    if account and account.get("account_id"):
        warnings.append(
            f"Detected account: {account.get('account_type') or 'Unknown'} "
            f"ending in ...{account['account_id'][-4:]}"
        )
    return ParseResult(
        file_type=flavour,
        headers=list(OFX_FIELDS),
        rows=rows,
        identity_mapping=True,
        currency=_tag_value(text, "CURDEF") or "USD",
        detected_account=account,
        warnings=warnings,
    )


registry.register(ParserInfo(
    key="ofx", name="OFX / QFX / QBO bank export",
    file_types=["ofx", "qfx", "qbo"],
    parse=parse_ofx, detect=is_ofx,
))
registry.register(ParserInfo(
    key="delimited", name="Delimited text (CSV)",
    file_types=["csv"],
    parse=parse_delimited, detect=is_delimited,
))


def parse_content(
    file_name: str,
    data: bytes,
    has_header_row: bool = True,
    skip_rows: int = 0,
    headers: list[str] | None = None,
) -> ParseResult:
    """Decode, detect and parse raw file content."""
    text = decode_content(data)
    file_type = detect_file_type(file_name, text)
    info = registry.get_for_file_type(file_type)
    if info is None:
        raise FormatError("UnsupportedFormat", f"No parser for file type: {file_type}", REEXPORT_HINT)
    if info.key == "delimited":
        result = info.parse(text, has_header_row=has_header_row, skip_rows=skip_rows, headers=headers)
    else:
        result = info.parse(text)
    if Path(file_name).suffix.lower() in (".xls", ".xlsx") and result.file_type == "csv":
        result.warnings.append("Spreadsheet file contained plain text; parsed as CSV.")
    logger.debug("parsed %s as %s: %d rows", file_name, result.file_type, len(result.rows))
    return result


def parse_file(
    file_path: Path, has_header_row: bool = True, skip_rows: int = 0, headers: list[str] | None = None,
) -> ParseResult:
    return parse_content(file_path.name, file_path.read_bytes(), has_header_row, skip_rows, headers)
