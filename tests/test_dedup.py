from datetime import date
from decimal import Decimal

from penny.dedup import dedupe, description_similarity, is_fuzzy_duplicate
from penny.models import CanonicalTransaction


def _txn(day="2024-01-15", amount="-15.99", description="Netflix", external_id=None, account_id=1):
    return CanonicalTransaction(
        account_id=account_id, date=date.fromisoformat(day), amount=Decimal(amount),
        description=description, external_id=external_id,
    )


def test_external_id_match_is_duplicate_regardless_of_other_fields():
    existing = [_txn(external_id="FIT1")]
    result = dedupe([_txn("2024-03-01", "-99.00", "Something else", external_id="FIT1")], existing)
    assert result.to_insert == []
    assert len(result.duplicates) == 1


def test_external_id_differs_means_new_even_if_identical_otherwise():
    existing = [_txn(external_id="FIT1")]
    result = dedupe([_txn(external_id="FIT2")], existing)
    assert len(result.to_insert) == 1


def test_repeated_external_id_within_batch_kept_once():
    batch = [_txn(external_id="FIT9"), _txn(external_id="FIT9")]
    result = dedupe(batch, [])
    assert len(result.to_insert) == 1
    assert len(result.duplicates) == 1


def test_external_ids_are_scoped_to_account():
    existing = [_txn(external_id="FIT1", account_id=2)]
    result = dedupe([_txn(external_id="FIT1", account_id=1)], existing)
    assert len(result.to_insert) == 1


def test_fuzzy_match_same_date_amount_similar_description():
    existing = [_txn(description="NETFLIX.COM 866-579-7172")]
    result = dedupe([_txn(description="Netflix.com 866-579-7172 CA")], existing)
    assert len(result.duplicates) == 1


def test_fuzzy_requires_exact_amount():
    existing = [_txn(amount="-15.99")]
    result = dedupe([_txn(amount="-16.00")], existing)
    assert len(result.to_insert) == 1


def test_fuzzy_requires_same_date_by_default():
    existing = [_txn(day="2024-01-15")]
    assert len(dedupe([_txn(day="2024-01-16")], existing).to_insert) == 1
    assert len(dedupe([_txn(day="2024-01-16")], existing, tolerance_days=1).duplicates) == 1


def test_fuzzy_rejects_dissimilar_descriptions():
    existing = [_txn(description="Spotify")]
    result = dedupe([_txn(description="Grocery Outlet")], existing)
    assert len(result.to_insert) == 1


def test_identical_rows_in_one_batch_are_both_kept():
    result = dedupe([_txn(), _txn()], [])
    assert len(result.to_insert) == 2


def test_order_is_preserved_and_deterministic():
    batch = [_txn(description=f"Item {i}", amount=f"-{i}.00") for i in range(1, 6)]
    existing = [_txn(description="Item 3", amount="-3.00")]
    first = dedupe(batch, existing)
    second = dedupe(batch, existing)
    assert [t.description for t in first.to_insert] == ["Item 1", "Item 2", "Item 4", "Item 5"]
    assert first == second


def test_description_similarity_normalizes_case_and_punctuation():
    assert description_similarity("AMAZON.COM*MK1", "amazon com mk1") == 1.0
    assert description_similarity("abc", "xyz") < 0.8


def test_is_fuzzy_duplicate_threshold():
    a = _txn(description="Coffee Shop Downtown")
    b = _txn(description="Coffee Shop Uptown")
    assert is_fuzzy_duplicate(a, b, threshold=0.7)
    assert not is_fuzzy_duplicate(a, b, threshold=0.99)
