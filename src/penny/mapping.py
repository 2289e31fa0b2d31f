"""Column mapping resolution: headers + sample rows -> ColumnMapping.

Resolution order is profile, then classifier, then nothing. A saved profile
matches only when its header fingerprint (and so its header set) is identical.
"""

import hashlib
import re
import threading

from penny.classifier import Classifier, ClassifierSuccess, classify_safely
from penny.errors import MappingError
from penny.logging_setup import get_logger
from penny.models import MAPPING_FIELDS, ColumnMapping, ImportProfile, MappingResolution, RawRow

logger = get_logger("penny.mapping")

MAX_SAMPLE_ROWS = 3

# Checked in order; the first field whose keyword matches wins.
COLUMN_KEYWORDS = {
    "date": ["date", "trans date", "transaction date", "posted", "posting date", "post date",
             "effective date", "value date", "dt"],
    "checkNumber": ["check", "check #", "check number", "cheque", "check no", "ck #", "chk"],
    "balance": ["balance", "running balance", "available", "ledger balance", "current balance"],
    "debit": ["debit", "withdrawal", "withdrawals", "dr", "money out", "out", "payment",
              "charge", "spent"],
    "credit": ["credit", "deposit", "deposits", "cr", "money in", "in", "received"],
    "amount": ["amount", "amt", "sum", "total", "value", "transaction amount"],
    "referenceId": ["transaction id", "trans id", "id", "confirmation", "fitid", "reference id"],
    "memo": ["memo", "note", "notes", "reference", "ref", "additional info"],
    "description": ["description", "desc", "narrative", "details", "transaction", "particulars",
                    "payee", "name", "merchant"],
}

_DATE_VALUE = re.compile(r"^\d{1,4}[/\-.]\d{1,2}[/\-.]\d{1,4}$|^\d{8}$")


def header_fingerprint(headers: list[str], file_type: str) -> str:
    """Stable hash of the header set (order and case insensitive) and file type."""
    names = sorted(h.strip().lower() for h in headers)
    payload = file_type.lower() + "\x1f" + "\x1f".join(names)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def identity_mapping(headers: list[str], date_format: str | None = None) -> ColumnMapping:
    """Mapping for formats whose parser already names fields semantically."""
    return ColumnMapping(
        fields={h: h for h in headers if h in MAPPING_FIELDS},
        date_format=date_format,
    )


def find_profile(
    headers: list[str], file_type: str, profiles: list[ImportProfile],
) -> ImportProfile | None:
    fingerprint = header_fingerprint(headers, file_type)
    for profile in profiles:
        if profile.file_type == file_type and profile.header_fingerprint == fingerprint:
            return profile
    return None


def validate_mapping(mapping: ColumnMapping, headers: list[str] | None = None) -> None:
    """Raise MappingError unless date and amount (or debit + credit) are mapped."""
    if headers is not None:
        unknown = [h for h in mapping.fields if h not in headers]
        if unknown:
            raise MappingError(f"Mapping names unknown column(s): {', '.join(unknown)}")
    bad = [f for f in mapping.fields.values() if f not in MAPPING_FIELDS]
    if bad:
        raise MappingError(f"Unknown field(s) in mapping: {', '.join(sorted(set(bad)))}")

    missing = []
    if mapping.header_for("date") is None:
        missing.append("date")
    has_amount = mapping.header_for("amount") is not None
    has_split = mapping.header_for("debit") is not None and mapping.header_for("credit") is not None
    if not (has_amount or has_split):
        missing.append("amount")
    if missing:
        raise MappingError(f"Required field(s) not mapped: {', '.join(missing)}", missing=missing)


def parse_mapping_overrides(pairs: list[str], headers: list[str]) -> dict[str, str]:
    """Turn ``HEADER=FIELD`` strings into a header -> field dict."""
    lookup = {h.lower(): h for h in headers}
    fields: dict[str, str] = {}
    for pair in pairs:
        if "=" not in pair:
            raise MappingError(f"Expected HEADER=FIELD, got: {pair}")
        header, target = (part.strip() for part in pair.rsplit("=", 1))
        actual = lookup.get(header.lower())
        if actual is None:
            raise MappingError(f"No column named '{header}' in this file")
        if target not in MAPPING_FIELDS:
            raise MappingError(
                f"Unknown field '{target}'. Choose one of: {', '.join(MAPPING_FIELDS)}"
            )
        fields[actual] = target
    return fields


def _keyword_field(header: str) -> str | None:
    name = header.lower().strip()
    for target, keywords in COLUMN_KEYWORDS.items():
        if name in keywords:
            return target
    for target, keywords in COLUMN_KEYWORDS.items():
        # Short keywords like "in" or "dr" only count as whole words.
        for kw in keywords:
            if len(kw) <= 3:
                if re.search(rf"\b{re.escape(kw)}\b", name):
                    return target
            elif kw in name:
                return target
    return None


def suggest_mapping(headers: list[str], sample_rows: list[RawRow]) -> ColumnMapping:
    """Keyword guess at a mapping. Used for previews, never as a resolution source."""
    fields: dict[str, str] = {}
    taken: set[str] = set()
    for header in headers:
        target = _keyword_field(header)
        if target is None or (target in taken and target not in ("skip", "memo")):
            continue
        fields[header] = target
        taken.add(target)

    if "date" not in taken:
        for header in headers:
            if header in fields:
                continue
            values = [r.get(header) for r in sample_rows if r.get(header)]
            if values and all(_DATE_VALUE.match(v) for v in values):
                fields[header] = "date"
                break

    # A lone debit or credit column is really a signed amount.
    if "amount" not in taken and ("debit" in taken) != ("credit" in taken):
        for header, target in fields.items():
            if target in ("debit", "credit"):
                fields[header] = "amount"
    return ColumnMapping(fields=fields)


def _mapping_items(headers: list[str], sample_rows: list[RawRow], file_type: str) -> list[dict]:
    samples = [
        [row.get(h) for h in headers] for row in sample_rows[:MAX_SAMPLE_ROWS]
    ]
    return [{
        "index": 0,
        "file_type": file_type,
        "headers": headers,
        "sample_rows": samples,
        "allowed_fields": list(MAPPING_FIELDS),
    }]


def resolve(
    headers: list[str],
    sample_rows: list[RawRow],
    profiles: list[ImportProfile],
    file_type: str = "csv",
    classifier: Classifier | None = None,
    cancel: threading.Event | None = None,
) -> MappingResolution:
    """Resolve a column mapping for a delimited file.

    Returns a resolution with ``source="none"`` and confidence 0 when neither a
    profile nor the classifier produced a usable mapping; the caller decides
    whether that is a MappingError.
    """
    profile = find_profile(headers, file_type, profiles)
    if profile is not None:
        logger.info("using import profile %r", profile.name)
        return MappingResolution(
            mapping=ColumnMapping(dict(profile.column_mapping), profile.date_format),
            confidence=1.0,
            source="profile",
            profile_id=profile.id,
        )

    result = classify_safely(
        classifier, "mapping", _mapping_items(headers, sample_rows, file_type), cancel=cancel,
    )
    if isinstance(result, ClassifierSuccess) and 0 in result.results:
        suggestion = result.results[0]
        fields = {a.header: a.field for a in suggestion.assignments}
        unknown = [h for h in fields if h not in headers]
        if unknown:
            logger.warning("classifier mapping named unknown column(s) %s; ignoring it", unknown)
        elif fields:
            return MappingResolution(
                mapping=ColumnMapping(fields, suggestion.date_format),
                confidence=suggestion.confidence,
                source="classifier",
            )
    elif not isinstance(result, ClassifierSuccess):
        logger.warning("mapping classifier unavailable (%s); manual mapping required", result.reason)

    return MappingResolution(mapping=ColumnMapping(), confidence=0.0, source="none")
