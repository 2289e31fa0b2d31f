from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Callable

MAPPING_FIELDS = (
    "date", "amount", "debit", "credit", "description", "memo",
    "checkNumber", "referenceId", "balance", "skip",
)

FREQUENCIES = ("weekly", "biweekly", "monthly", "quarterly", "yearly")


@dataclass
class Account:
    id: int
    name: str
    account_type: str  # checking, savings, credit_card, line_of_credit, other
    institution: str | None = None
    last_four: str | None = None


@dataclass
class RawRow:
    """One record from a source file, keyed by header name."""
    index: int  # 1-based line/block number for error reporting
    values: dict[str, str]

    def get(self, header: str | None) -> str:
        if not header:
            return ""
        return self.values.get(header) or ""


@dataclass
class ParseResult:
    file_type: str  # csv, ofx, qfx, qbo
    headers: list[str]
    rows: list[RawRow]
    identity_mapping: bool = False  # structured exports name their own fields
    currency: str | None = None
    detected_account: dict | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass
class ColumnMapping:
    """Header name -> semantic field."""
    fields: dict[str, str] = field(default_factory=dict)
    date_format: str | None = None

    def header_for(self, semantic: str) -> str | None:
        for header, target in self.fields.items():
            if target == semantic:
                return header
        return None

    def is_empty(self) -> bool:
        return not any(target != "skip" for target in self.fields.values())


@dataclass
class MappingResolution:
    mapping: ColumnMapping
    confidence: float
    source: str  # profile, classifier, manual, identity, none
    profile_id: int | None = None

    @property
    def needs_manual_mapping(self) -> bool:
        return self.source == "none"


@dataclass
class ImportProfile:
    id: int | None
    name: str
    file_type: str
    column_mapping: dict[str, str]
    header_fingerprint: str
    date_format: str | None = None
    default_account_id: int | None = None


@dataclass
class CanonicalTransaction:
    account_id: int
    date: date
    amount: Decimal  # negative = outflow, positive = inflow
    description: str
    merchant_name: str | None = None
    check_number: str | None = None
    external_id: str | None = None
    memo: str | None = None
    id: int | None = None
    row_index: int | None = None


@dataclass
class RowError:
    row_index: int
    kind: str  # InvalidDate, InvalidAmount, MissingField
    message: str
    column: str | None = None


@dataclass
class ImportSession:
    id: int | None
    file_name: str
    file_type: str
    status: str = "pending"  # pending, importing, completed, failed
    account_id: int | None = None
    profile_id: int | None = None
    total_rows: int = 0
    transactions_created: int = 0
    duplicates_skipped: int = 0
    errors_count: int = 0
    error_message: str | None = None
    created_at: datetime | None = None
    completed_at: datetime | None = None
    row_errors: list[RowError] = field(default_factory=list)

    @property
    def is_balanced(self) -> bool:
        return self.total_rows == self.transactions_created + self.duplicates_skipped + self.errors_count


@dataclass
class Check:
    id: int | None
    account_id: int
    check_number: str
    payee: str
    amount: Decimal  # always positive; the clearing transaction is negative
    date_written: date
    status: str = "pending"  # pending, cleared, void
    matched_transaction_id: int | None = None
    memo: str | None = None


@dataclass
class Occurrence:
    amount: Decimal
    date: date
    name: str


@dataclass
class RecurringCandidate:
    merchant_key: str
    occurrences: list[Occurrence]
    avg_amount: Decimal
    occurrence_count: int


@dataclass
class DetectedSubscription:
    merchant_name: str
    amount: Decimal
    frequency: str
    confidence: float
    is_essential: bool
    last_date: date
    transaction_count: int
    monthly_equivalent: Decimal = Decimal("0")


@dataclass
class DetectionResult:
    subscriptions: list[DetectedSubscription]
    total_monthly_cost: Decimal
    summary: str
    used_classifier: bool = True


@dataclass
class ParserInfo:
    """Metadata and parse function for a file format family."""
    key: str
    name: str
    file_types: list[str]
    parse: Callable
    detect: Callable | None = None
