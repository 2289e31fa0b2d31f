"""Recurring charge detection over persisted transaction history."""

import calendar
import sqlite3
import threading
from datetime import date, timedelta
from decimal import Decimal

from penny import db
from penny.classifier import Classifier, ClassifierSuccess, classify_safely
from penny.logging_setup import get_logger
from penny.models import (
    CanonicalTransaction, DetectedSubscription, DetectionResult, Occurrence, RecurringCandidate,
)

logger = get_logger("penny.recurring")

MONTHLY_MULTIPLIERS = {
    "weekly": Decimal("4.33"),
    "biweekly": Decimal("2.17"),
    "monthly": Decimal("1"),
    "quarterly": Decimal("0.33"),
    "yearly": Decimal("0.083"),
}

AMOUNT_VARIANCE = Decimal("0.20")
MIN_CONFIDENCE = 0.5
FALLBACK_CONFIDENCE = 0.6
FALLBACK_MIN_OCCURRENCES = 3
FALLBACK_NOTE = "AI classification was unavailable; only charges seen 3 or more times are listed, assumed monthly."


def merchant_key(txn: CanonicalTransaction) -> str:
    return (txn.merchant_name or txn.description or "").strip().lower()


def group_by_merchant(transactions: list[CanonicalTransaction]) -> dict[str, list[Occurrence]]:
    """Groups of two or more occurrences keyed by normalized merchant, in first-seen order."""
    groups: dict[str, list[Occurrence]] = {}
    for txn in transactions:
        key = merchant_key(txn)
        if len(key) < 2:
            continue
        name = (txn.merchant_name or txn.description).strip()
        groups.setdefault(key, []).append(Occurrence(amount=abs(txn.amount), date=txn.date, name=name))
    return {k: sorted(v, key=lambda o: o.date) for k, v in groups.items() if len(v) >= 2}


def _is_consistent(amounts: list[Decimal], mean: Decimal) -> bool:
    return all(abs(a - mean) <= mean * AMOUNT_VARIANCE for a in amounts)


def find_candidates(transactions: list[CanonicalTransaction]) -> list[RecurringCandidate]:
    """Merchant groups whose amounts are steady (within 20% of the mean) or that repeat 3+ times."""
    candidates = []
    for key, occurrences in group_by_merchant(transactions).items():
        amounts = [o.amount for o in occurrences]
        mean = sum(amounts, Decimal("0")) / len(amounts)
        if _is_consistent(amounts, mean) or len(occurrences) >= 3:
            candidates.append(RecurringCandidate(
                merchant_key=key,
                occurrences=occurrences,
                avg_amount=db.money(mean),
                occurrence_count=len(occurrences),
            ))
    return candidates


def monthly_equivalent(amount: Decimal, frequency: str) -> Decimal:
    return db.money(amount * MONTHLY_MULTIPLIERS[frequency])


def _subscription(candidate: RecurringCandidate, name: str, frequency: str,
                  confidence: float, is_essential: bool) -> DetectedSubscription:
    return DetectedSubscription(
        merchant_name=name,
        amount=candidate.avg_amount,
        frequency=frequency,
        confidence=confidence,
        is_essential=is_essential,
        last_date=candidate.occurrences[-1].date,
        transaction_count=candidate.occurrence_count,
        monthly_equivalent=monthly_equivalent(candidate.avg_amount, frequency),
    )


def _classifier_items(candidates: list[RecurringCandidate]) -> list[dict]:
    return [
        {
            "index": i,
            "merchant": c.merchant_key,
            "names": sorted({o.name for o in c.occurrences})[:3],
            "charges": [{"date": o.date.isoformat(), "amount": str(o.amount)} for o in c.occurrences],
            "occurrence_count": c.occurrence_count,
            "average_amount": str(c.avg_amount),
        }
        for i, c in enumerate(candidates)
    ]


def fallback_subscriptions(candidates: list[RecurringCandidate]) -> list[DetectedSubscription]:
    return [
        _subscription(c, c.occurrences[-1].name, "monthly", FALLBACK_CONFIDENCE, False)
        for c in candidates
        if c.occurrence_count >= FALLBACK_MIN_OCCURRENCES
    ]


def summarize(subscriptions: list[DetectedSubscription], total: Decimal, used_classifier: bool) -> str:
    noun = "subscription" if len(subscriptions) == 1 else "subscriptions"
    summary = f"Found {len(subscriptions)} {noun} costing about ${total:,.2f}/month"
    if not used_classifier:
        summary += f". {FALLBACK_NOTE}"
    return summary


def detect(
    transactions: list[CanonicalTransaction],
    classifier: Classifier | None = None,
    cancel: threading.Event | None = None,
) -> DetectionResult:
    """Find recurring charges. Never raises for classifier trouble; falls back instead."""
    candidates = find_candidates(transactions)
    used_classifier = False
    subscriptions: list[DetectedSubscription] = []

    if candidates:
        result = classify_safely(classifier, "subscriptions", _classifier_items(candidates), cancel=cancel)
        if isinstance(result, ClassifierSuccess):
            used_classifier = True
            for index, candidate in enumerate(candidates):
                verdict = result.results.get(index)
                if verdict is None or verdict.confidence <= MIN_CONFIDENCE:
                    continue
                subscriptions.append(_subscription(
                    candidate,
                    verdict.merchant_name.strip() or candidate.occurrences[-1].name,
                    verdict.frequency,
                    verdict.confidence,
                    verdict.is_essential,
                ))
        else:
            logger.warning("subscription classifier unavailable (%s); using fallback", result.reason)
            subscriptions = fallback_subscriptions(candidates)
    else:
        used_classifier = classifier is not None

    subscriptions.sort(key=lambda s: (-s.monthly_equivalent, s.merchant_name.lower()))
    total = sum((s.monthly_equivalent for s in subscriptions), Decimal("0.00"))
    logger.info("detected %d subscriptions from %d candidates", len(subscriptions), len(candidates))
    return DetectionResult(
        subscriptions=subscriptions,
        total_monthly_cost=total,
        summary=summarize(subscriptions, total, used_classifier),
        used_classifier=used_classifier,
    )


def _add_months(day: date, months: int) -> date:
    month_index = day.month - 1 + months
    year, month = day.year + month_index // 12, month_index % 12 + 1
    return date(year, month, min(day.day, calendar.monthrange(year, month)[1]))


def next_expected_date(last: date, frequency: str) -> date:
    if frequency == "weekly":
        return last + timedelta(days=7)
    if frequency == "biweekly":
        return last + timedelta(days=14)
    months = {"monthly": 1, "quarterly": 3, "yearly": 12}[frequency]
    return _add_months(last, months)


def save_subscriptions(
    conn: sqlite3.Connection,
    subscriptions: list[DetectedSubscription],
    account_id: int | None = None,
) -> int:
    """Persist detected subscriptions, skipping names already tracked. Returns the count saved."""
    tracked = {row["name"].lower() for row in db.list_recurring(conn, active_only=False)}
    saved = 0
    for sub in subscriptions:
        if sub.merchant_name.lower() in tracked:
            continue
        db.insert_recurring(
            conn,
            account_id=account_id,
            name=sub.merchant_name,
            merchant_name=sub.merchant_name,
            amount=sub.amount,
            frequency=sub.frequency,
            last_date=sub.last_date,
            next_expected_date=next_expected_date(sub.last_date, sub.frequency),
            confidence=sub.confidence,
            is_subscription=True,
            is_essential=sub.is_essential,
        )
        tracked.add(sub.merchant_name.lower())
        saved += 1
    return saved
