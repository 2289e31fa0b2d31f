"""Duplicate filtering of normalized transactions against an account's history.

An external id match is exact and authoritative. Without one, a candidate is a
duplicate when an existing transaction shares its date (within the tolerance),
its exact amount and a similar normalized description. Fuzzy matching only
looks at persisted transactions: two identical rows in one file are both kept,
since a statement can legitimately repeat a charge.
"""

import re
from dataclasses import dataclass, field
from datetime import timedelta

from rapidfuzz import fuzz

from penny.models import CanonicalTransaction

DEFAULT_DATE_TOLERANCE_DAYS = 0
DEFAULT_SIMILARITY_THRESHOLD = 0.8


@dataclass
class DedupResult:
    to_insert: list[CanonicalTransaction] = field(default_factory=list)
    duplicates: list[CanonicalTransaction] = field(default_factory=list)


def normalize_description(text: str) -> str:
    cleaned = re.sub(r"[^a-z0-9]+", " ", (text or "").lower())
    return " ".join(cleaned.split())


def description_similarity(a: str, b: str) -> float:
    """Similarity in [0, 1] between two descriptions after normalization."""
    left, right = normalize_description(a), normalize_description(b)
    if left == right:
        return 1.0
    return fuzz.ratio(left, right) / 100.0


def is_fuzzy_duplicate(
    candidate: CanonicalTransaction,
    existing: CanonicalTransaction,
    tolerance_days: int = DEFAULT_DATE_TOLERANCE_DAYS,
    threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
) -> bool:
    if candidate.account_id != existing.account_id:
        return False
    if candidate.amount != existing.amount:
        return False
    if abs(candidate.date - existing.date) > timedelta(days=tolerance_days):
        return False
    return description_similarity(candidate.description, existing.description) >= threshold


def dedupe(
    candidates: list[CanonicalTransaction],
    existing: list[CanonicalTransaction],
    tolerance_days: int = DEFAULT_DATE_TOLERANCE_DAYS,
    threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
) -> DedupResult:
    """Split candidates into new and duplicate transactions, preserving order."""
    result = DedupResult()
    seen_ids = {(t.account_id, t.external_id) for t in existing if t.external_id}

    by_amount: dict[tuple, list[CanonicalTransaction]] = {}
    for txn in existing:
        by_amount.setdefault((txn.account_id, txn.amount), []).append(txn)

    for candidate in candidates:
        if candidate.external_id:
            key = (candidate.account_id, candidate.external_id)
            if key in seen_ids:
                result.duplicates.append(candidate)
                continue
            seen_ids.add(key)
            result.to_insert.append(candidate)
            continue

        pool = by_amount.get((candidate.account_id, candidate.amount), [])
        if any(is_fuzzy_duplicate(candidate, e, tolerance_days, threshold) for e in pool):
            result.duplicates.append(candidate)
        else:
            result.to_insert.append(candidate)
    return result
