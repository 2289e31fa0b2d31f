"""Apply a column mapping to raw rows, producing canonical transactions.

Sign convention: outflows negative, inflows positive, whatever the source
layout. A single signed amount column is taken as-is; debit/credit columns
are read as magnitudes, debit negated.
"""

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

from penny.db import money
from penny.errors import ValidationError
from penny.logging_setup import get_logger
from penny.models import CanonicalTransaction, ColumnMapping, RawRow, RowError

logger = get_logger("penny.normalizer")

DATE_FORMATS = [
    "%m/%d/%Y",
    "%m/%d/%y",
    "%Y-%m-%d",
    "%d-%m-%Y",
    "%d-%b-%y",
    "%d-%b-%Y",
    "%b %d, %Y",
    "%b %d %Y",
    "%Y%m%d",
]

# Display-style tokens, longest first.
_FORMAT_TOKENS = [
    ("YYYY", "%Y"), ("MMMM", "%B"), ("MMM", "%b"), ("DD", "%d"), ("MM", "%m"), ("YY", "%y"),
]

MERCHANT_ALIASES = [
    ("AMZN MKTP", "Amazon"),
    ("AMAZON.COM", "Amazon"),
    ("AMZN", "Amazon"),
    ("WM SUPERCENTER", "Walmart"),
    ("WAL-MART", "Walmart"),
    ("WALGREENS", "Walgreens"),
    ("MCDONALD'S", "McDonald's"),
    ("STARBUCKS", "Starbucks"),
    ("TARGET", "Target"),
    ("COSTCO", "Costco"),
    ("UBER EATS", "Uber Eats"),
    ("UBER", "Uber"),
    ("LYFT", "Lyft"),
    ("DOORDASH", "DoorDash"),
    ("GRUBHUB", "Grubhub"),
    ("NETFLIX", "Netflix"),
    ("SPOTIFY", "Spotify"),
    ("APPLE.COM", "Apple"),
    ("GOOGLE", "Google"),
]

CHECK_PATTERNS = [
    re.compile(r"\bCHECK\s*(?:NO\.?|NUMBER|#)?\s*#?\s*(\d{3,8})\b", re.IGNORECASE),
    re.compile(r"\bCHK\s*#?\s*(\d{3,8})\b", re.IGNORECASE),
    re.compile(r"\bCK\s*#?\s*(\d{3,8})\b", re.IGNORECASE),
    re.compile(r"^\s*(\d{3,8})\s+CHECK\b", re.IGNORECASE),
]

_AMOUNT = re.compile(r"^-?(\d{1,15}(\.\d*)?|\.\d+)$")

# 1.234,56 / -3,50: comma as decimal separator, dots (if any) as thousands.
_DECIMAL_COMMA = re.compile(r"^[-+(]?\d{1,3}(\.\d{3})*,\d{2}\)?-?(CR|DR)?$", re.IGNORECASE)


# --- Field parsers ---


def parse_amount(value: str, column: str | None = None) -> Decimal:
    """Parse bank-formatted money text into a cent-quantized Decimal.

    Handles currency symbols, thousands separators, decimal commas
    (``-3,50``), ``(12.50)``, ``12.50-`` and ``CR``/``DR`` suffixes.
    Raises ValidationError(InvalidAmount).
    """
    raw = value or ""
    cleaned = re.sub(r"[$€£¥\s]", "", raw)
    if _DECIMAL_COMMA.match(cleaned):
        cleaned = cleaned.replace(".", "").replace(",", ".")
    else:
        cleaned = cleaned.replace(",", "")
    negative = False

    suffix = cleaned[-2:].upper()
    if suffix in ("CR", "DR"):
        cleaned = cleaned[:-2]
        negative = suffix == "DR"
    if cleaned.startswith("(") and cleaned.endswith(")"):
        cleaned = cleaned[1:-1]
        negative = True
    if cleaned.endswith("-"):
        cleaned = cleaned[:-1]
        negative = True
    if cleaned.startswith("+"):
        cleaned = cleaned[1:]

    if not _AMOUNT.match(cleaned):
        raise ValidationError("InvalidAmount", f"Invalid amount: {raw!r}", column)
    try:
        amount = money(Decimal(cleaned))
    except InvalidOperation as e:
        raise ValidationError("InvalidAmount", f"Invalid amount: {raw!r}", column) from e
    return -abs(amount) if negative else amount


def to_strptime(fmt: str) -> str:
    """Translate MM/DD/YYYY-style formats to strptime; strptime patterns pass through."""
    if "%" in fmt:
        return fmt
    out = fmt
    for token, directive in _FORMAT_TOKENS:
        out = out.replace(token, directive)
    return out


def parse_date(value: str, date_format: str | None = None, column: str | None = None) -> date:
    """Parse with the resolved format, or the first matching common format."""
    text = (value or "").strip()
    formats = [to_strptime(date_format)] if date_format else DATE_FORMATS
    for fmt in formats:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise ValidationError("InvalidDate", f"Invalid date: {value!r}", column)


def clean_merchant_name(raw: str) -> str:
    cleaned = (raw or "").strip()
    cleaned = re.sub(r"\s*(#\d+|x{4,}\d+|\*{4,}\d+).*$", "", cleaned, flags=re.IGNORECASE)
    cleaned = re.sub(r"\s+[A-Z]{2}\s*\d{5}(-\d{4})?$", "", cleaned, flags=re.IGNORECASE)
    cleaned = re.sub(r"\s+[A-Za-z]+,?\s+[A-Z]{2}$", "", cleaned)
    cleaned = re.sub(r"\s+\d{6,}$", "", cleaned)
    cleaned = re.sub(r"^(SQ\s*\*|TST\s*\*|SP\s|POS\s|CHECKCARD\s|DEBIT\s)", "", cleaned, flags=re.IGNORECASE)
    cleaned = cleaned.strip()

    upper = cleaned.upper()
    for pattern, alias in MERCHANT_ALIASES:
        if pattern in upper:
            return alias

    if cleaned == upper and len(cleaned) > 3:
        cleaned = re.sub(r"\b\w", lambda m: m.group(0).upper(), cleaned.lower())
    return cleaned


def detect_check_number(column_value: str = "", description: str = "") -> str | None:
    """Check number from its own column (3-8 digits), else from the description."""
    digits = re.sub(r"\D", "", column_value or "")
    if 3 <= len(digits) <= 8:
        return digits
    for pattern in CHECK_PATTERNS:
        match = pattern.search(description or "")
        if match:
            return match.group(1)
    return None


# --- Row normalization ---


def _row_amount(row: RawRow, mapping: ColumnMapping) -> Decimal:
    amount_col = mapping.header_for("amount")
    if amount_col is not None:
        raw = row.get(amount_col)
        if not raw.strip():
            raise ValidationError("MissingField", "Amount is blank", amount_col)
        return parse_amount(raw, amount_col)

    debit_col = mapping.header_for("debit")
    credit_col = mapping.header_for("credit")
    debit_raw = row.get(debit_col).strip()
    credit_raw = row.get(credit_col).strip()
    debit = parse_amount(debit_raw, debit_col) if debit_raw else None
    credit = parse_amount(credit_raw, credit_col) if credit_raw else None
    if debit:
        return -abs(debit)
    if credit is not None:
        return abs(credit)
    if debit is not None:
        return debit
    raise ValidationError("MissingField", "Both debit and credit are blank", debit_col or credit_col)


def _is_blank(row: RawRow, mapping: ColumnMapping) -> bool:
    keys = ("date", "amount", "debit", "credit", "description")
    return not any(row.get(mapping.header_for(k)).strip() for k in keys)


def normalize_row(row: RawRow, mapping: ColumnMapping, account_id: int) -> CanonicalTransaction:
    """Normalize one row. Raises ValidationError."""
    date_col = mapping.header_for("date")
    raw_date = row.get(date_col)
    if not raw_date.strip():
        raise ValidationError("MissingField", "Date is blank", date_col)
    txn_date = parse_date(raw_date, mapping.date_format, date_col)
    amount = _row_amount(row, mapping)

    memo = row.get(mapping.header_for("memo")).strip() or None
    description = row.get(mapping.header_for("description")).strip() or memo or "Unknown"
    external_id = row.get(mapping.header_for("referenceId")).strip() or None
    check_number = detect_check_number(row.get(mapping.header_for("checkNumber")), description)

    return CanonicalTransaction(
        account_id=account_id,
        date=txn_date,
        amount=amount,
        description=description,
        merchant_name=clean_merchant_name(description) or None,
        check_number=check_number,
        external_id=external_id,
        memo=memo,
        row_index=row.index,
    )


def normalize(
    rows: list[RawRow], mapping: ColumnMapping, account_id: int,
) -> tuple[list[CanonicalTransaction], list[RowError]]:
    """Normalize every row in order. Never raises; failures become RowErrors.

    Rows with nothing in any of the date, amount or description columns are
    dropped silently and appear in neither list.
    """
    transactions: list[CanonicalTransaction] = []
    errors: list[RowError] = []
    for row in rows:
        if _is_blank(row, mapping):
            continue
        try:
            transactions.append(normalize_row(row, mapping, account_id))
        except ValidationError as e:
            logger.debug("row %d rejected: %s", row.index, e)
            errors.append(RowError(row_index=row.index, kind=e.kind, message=str(e), column=e.column))
    return transactions, errors
