"""External classifier contract and its OpenAI-backed implementation.

Requests carry ``{"task": ..., "items": [{"index": i, ...}]}``; responses must
be ``{"results": [{"index": i, ..., "confidence": c}]}``. Items are sent in
batches and results are merged back by the echoed ``index``, never by matching
returned text. Anything that fails schema validation, times out or errors is
reported as a ``ClassifierFailure``; callers take their own fallback path.
"""

import json
import os
import threading
from dataclasses import dataclass, field
from typing import Literal

import openai
from pydantic import BaseModel, Field, ValidationError as SchemaError

from penny.errors import ExternalServiceError
from penny.logging_setup import get_logger
from penny.models import FREQUENCIES, MAPPING_FIELDS

logger = get_logger("penny.classifier")

TASKS = ("mapping", "categorize", "subscriptions")

DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_TIMEOUT = 60.0
DEFAULT_BATCH_SIZE = 50


# --- Response schemas ---


class FieldAssignment(BaseModel):
    header: str
    field: Literal[
        "date", "amount", "debit", "credit", "description", "memo",
        "checkNumber", "referenceId", "balance", "skip",
    ]


class MappingResult(BaseModel):
    index: int
    assignments: list[FieldAssignment]
    date_format: str | None
    confidence: float = Field(ge=0.0, le=1.0)


class CategoryResult(BaseModel):
    index: int
    category: str
    merchant_name: str | None
    confidence: float = Field(ge=0.0, le=1.0)


class SubscriptionResult(BaseModel):
    index: int
    merchant_name: str
    frequency: Literal["weekly", "biweekly", "monthly", "quarterly", "yearly"]
    is_essential: bool
    confidence: float = Field(ge=0.0, le=1.0)


class MappingResponse(BaseModel):
    results: list[MappingResult]


class CategoryResponse(BaseModel):
    results: list[CategoryResult]


class SubscriptionResponse(BaseModel):
    results: list[SubscriptionResult]


RESPONSE_MODELS = {
    "mapping": MappingResponse,
    "categorize": CategoryResponse,
    "subscriptions": SubscriptionResponse,
}


# --- Tagged results ---


@dataclass
class ClassifierSuccess:
    results: dict[int, BaseModel] = field(default_factory=dict)
    ok: bool = True


@dataclass
class ClassifierFailure:
    reason: str
    ok: bool = False


ClassifierResult = ClassifierSuccess | ClassifierFailure


# --- Prompts and JSON schemas ---


INSTRUCTIONS = {
    "mapping": (
        "You map bank-export CSV columns to transaction fields. For the single item, assign "
        "every header exactly one field from the allowed list (use 'skip' for irrelevant "
        "columns and 'balance' for running balances). Use 'amount' for one signed amount "
        "column, or 'debit' and 'credit' when money out and money in are separate columns. "
        "Report the date format as a strptime pattern such as %m/%d/%Y, or null if unsure. "
        "Echo the item index. Output JSON only."
    ),
    "categorize": (
        "You categorize personal and small-business bank transactions. For each item choose "
        "a short spending category (e.g. 'Food & Dining', 'Shopping', 'Transportation', "
        "'Bills & Utilities', 'Entertainment', 'Health & Medical', 'Travel', 'Income', "
        "'Transfer') and a cleaned merchant name. Echo each item's index. Output JSON only."
    ),
    "subscriptions": (
        "You review groups of repeated charges from one person's bank history. For each "
        "item decide how often it recurs (weekly, biweekly, monthly, quarterly or yearly), "
        "whether it is essential (housing, utilities, insurance, loans) or discretionary, a "
        "clean merchant name, and your confidence that it is a genuine recurring charge. "
        "Echo each item's index. Output JSON only."
    ),
}


def _nullable(schema: dict) -> dict:
    return {**schema, "type": [schema["type"], "null"]}


_CONFIDENCE = {"type": "number"}

_RESULT_SCHEMAS = {
    "mapping": {
        "type": "object",
        "additionalProperties": False,
        "required": ["index", "assignments", "date_format", "confidence"],
        "properties": {
            "index": {"type": "integer"},
            "assignments": {
                "type": "array",
                "items": {
                    "type": "object",
                    "additionalProperties": False,
                    "required": ["header", "field"],
                    "properties": {
                        "header": {"type": "string"},
                        "field": {"type": "string", "enum": list(MAPPING_FIELDS)},
                    },
                },
            },
            "date_format": _nullable({"type": "string"}),
            "confidence": _CONFIDENCE,
        },
    },
    "categorize": {
        "type": "object",
        "additionalProperties": False,
        "required": ["index", "category", "merchant_name", "confidence"],
        "properties": {
            "index": {"type": "integer"},
            "category": {"type": "string"},
            "merchant_name": _nullable({"type": "string"}),
            "confidence": _CONFIDENCE,
        },
    },
    "subscriptions": {
        "type": "object",
        "additionalProperties": False,
        "required": ["index", "merchant_name", "frequency", "is_essential", "confidence"],
        "properties": {
            "index": {"type": "integer"},
            "merchant_name": {"type": "string"},
            "frequency": {"type": "string", "enum": list(FREQUENCIES)},
            "is_essential": {"type": "boolean"},
            "confidence": _CONFIDENCE,
        },
    },
}


def build_response_format(task: str) -> dict:
    """Strict JSON-schema text format for the Responses API."""
    return {
        "format": {
            "type": "json_schema",
            "name": f"penny_{task}",
            "strict": True,
            "schema": {
                "type": "object",
                "additionalProperties": False,
                "required": ["results"],
                "properties": {"results": {"type": "array", "items": _RESULT_SCHEMAS[task]}},
            },
        }
    }


def build_request(task: str, items: list[dict]) -> str:
    return json.dumps({"task": task, "items": items}, ensure_ascii=False, default=str)


def parse_response(task: str, text: str, expected: set[int]) -> dict[int, BaseModel]:
    """Validate response text and index the results.

    Raises ValueError on malformed JSON, schema violations, unknown or repeated
    indices. Missing indices are allowed; callers treat them as unclassified.
    """
    try:
        response = RESPONSE_MODELS[task].model_validate_json(text)
    except SchemaError as e:
        raise ValueError(f"classifier response failed schema validation: {e.error_count()} error(s)") from e
    by_index: dict[int, BaseModel] = {}
    for result in response.results:
        if result.index not in expected:
            raise ValueError(f"classifier returned unknown index {result.index}")
        if result.index in by_index:
            raise ValueError(f"classifier returned index {result.index} twice")
        by_index[result.index] = result
    return by_index


# --- Classifiers ---


class Classifier:
    """Request/response contract every classifier implements."""

    def classify(
        self, task: str, items: list[dict], cancel: threading.Event | None = None,
    ) -> ClassifierResult:
        raise NotImplementedError


class OpenAIClassifier(Classifier):
    def __init__(
        self,
        client=None,
        model: str = DEFAULT_MODEL,
        timeout: float = DEFAULT_TIMEOUT,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        self._client = client
        self.model = model
        self.timeout = timeout
        self.batch_size = max(1, batch_size)

    @property
    def client(self):
        if self._client is None:
            self._client = openai.OpenAI(timeout=self.timeout, max_retries=2)
        return self._client

    def _call(self, task: str, batch: list[dict]) -> str:
        resp = self.client.responses.create(
            model=self.model,
            instructions=INSTRUCTIONS[task],
            input=build_request(task, batch),
            text=build_response_format(task),
            timeout=self.timeout,
        )
        text = getattr(resp, "output_text", None)
        if not text or not isinstance(text, str):
            raise ExternalServiceError("classifier response had no text output")
        return text

    def classify(
        self, task: str, items: list[dict], cancel: threading.Event | None = None,
    ) -> ClassifierResult:
        if task not in TASKS:
            raise ValueError(f"Unknown classifier task: {task}")
        merged: dict[int, BaseModel] = {}
        for start in range(0, len(items), self.batch_size):
            if cancel is not None and cancel.is_set():
                return ClassifierFailure("cancelled")
            batch = items[start:start + self.batch_size]
            expected = {item["index"] for item in batch}
            try:
                text = self._call(task, batch)
                merged.update(parse_response(task, text, expected))
            except (openai.OpenAIError, ValueError) as e:
                logger.warning(
                    "classifier %s failed on batch starting at %d (%d items): %s",
                    task, start, len(batch), e,
                )
                return ClassifierFailure(f"{e.__class__.__name__}: {e}")
        logger.info("classifier %s: %d/%d items classified", task, len(merged), len(items))
        return ClassifierSuccess(results=merged)


def build_classifier(settings: dict) -> Classifier | None:
    """Return the configured classifier, or None when it is disabled or has no API key."""
    if not settings.get("use_classifier", True):
        return None
    if not os.environ.get("OPENAI_API_KEY"):
        logger.info("OPENAI_API_KEY not set; classifier unavailable")
        return None
    return OpenAIClassifier(
        model=settings.get("classifier_model", DEFAULT_MODEL),
        timeout=float(settings.get("classifier_timeout", DEFAULT_TIMEOUT)),
        batch_size=int(settings.get("classifier_batch_size", DEFAULT_BATCH_SIZE)),
    )


def classify_safely(
    classifier: Classifier | None,
    task: str,
    items: list[dict],
    cancel: threading.Event | None = None,
) -> ClassifierResult:
    """Run a classifier call, turning absence and unexpected errors into failures."""
    if classifier is None:
        return ClassifierFailure("classifier unavailable")
    if not items:
        return ClassifierSuccess()
    try:
        return classifier.classify(task, items, cancel=cancel)
    except Exception as e:  # noqa: BLE001
        logger.warning("classifier %s raised %s: %s", task, e.__class__.__name__, e)
        return ClassifierFailure(f"{e.__class__.__name__}: {e}")
