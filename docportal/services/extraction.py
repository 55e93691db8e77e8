"""Extraction adapters: turn uploaded files into transactions or invoice documents.

The pipeline treats an adapter as a black box that lazily yields one result per source
item (spreadsheet row or invoice file). A result is either extracted data or an
``ItemFailure`` describing why that one item could not be read. Errors that make the whole
file unreadable are raised as ``ExtractionError``.
"""

from __future__ import annotations

import base64
import hashlib
import io
import json
import re
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, NamedTuple, Protocol
from uuid import UUID

import pandas as pd
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from docportal.config import settings
from docportal.logger import get_logger, log_timing
from docportal.models import JobType
from docportal.prompts import get_invoice_prompt
from docportal.services.errors import ExtractionError, JobErrorCode
from docportal.services.openrouter_streaming import (
    OpenRouterStreamError,
    accumulate_stream,
    stream_openrouter_json,
)
from docportal.services.reconciliation import normalize_text

logger = get_logger(__name__)

CENT = Decimal("0.01")
EXCEL_EPOCH = date(1899, 12, 30)

SPREADSHEET_EXTENSIONS = frozenset({"csv", "xlsx", "xls"})
INVOICE_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "pdf"})

MIME_TYPES = {
    "csv": "text/csv",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "xls": "application/vnd.ms-excel",
    "pdf": "application/pdf",
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
}


@dataclass(frozen=True)
class UploadedFile:
    """Raw bytes of one uploaded file plus where it was stored."""

    filename: str
    content: bytes
    content_type: str | None = None
    storage_key: str | None = None

    @property
    def extension(self) -> str:
        return self.filename.rsplit(".", 1)[-1].lower() if "." in self.filename else ""

    @property
    def size(self) -> int:
        return len(self.content)

    @property
    def mime_type(self) -> str:
        return self.content_type or MIME_TYPES.get(self.extension, "application/octet-stream")

    def content_hash(self) -> str:
        return hashlib.sha256(self.content).hexdigest()


# =============================================================================
# Result types
# =============================================================================


class ExtractedTransaction(BaseModel):
    """One bank-statement row."""

    txn_date: date
    description: str = Field(min_length=1)
    amount: Decimal
    is_debit: bool | None = None
    category: str | None = None
    subcategory: str | None = None
    confidence_score: float = Field(default=0.0, ge=0.0, le=1.0)
    invoice_number: str | None = None
    supplier_id: UUID | None = None
    row_number: int | None = None


class ExtractedLineItem(BaseModel):
    description: str
    quantity: Decimal | None = None
    unit_price: Decimal | None = None
    total: Decimal


class ExtractedDocument(BaseModel):
    """One invoice or receipt with its ordered line items."""

    filename: str
    content_hash: str | None = None
    storage_key: str | None = None
    mime_type: str | None = None
    vendor_name: str | None = None
    invoice_number: str | None = None
    po_number: str | None = None
    order_number: str | None = None
    document_date: date | None = None
    total_amount: Decimal | None = None
    subtotal_amount: Decimal | None = None
    tax_amount: Decimal | None = None
    fee_amount: Decimal | None = None
    shipping_amount: Decimal | None = None
    currency: str | None = None
    line_items: list[ExtractedLineItem] = Field(default_factory=list)
    field_confidence: dict[str, float] = Field(default_factory=dict)
    extraction_methods: dict[str, str] = Field(default_factory=dict)
    category: str | None = None
    subcategory: str | None = None
    confidence_score: float = Field(default=0.0, ge=0.0, le=1.0)

    def transaction_lines(self) -> list[ExtractedLineItem]:
        """Line items to persist as transactions; a header-only document yields its total."""
        if self.line_items:
            return list(self.line_items)
        if self.total_amount is None:
            return []
        return [
            ExtractedLineItem(
                description=self.vendor_name or self.filename,
                quantity=Decimal("1"),
                unit_price=self.total_amount,
                total=self.total_amount,
            )
        ]


class ItemFailure(BaseModel):
    """An item the adapter could not turn into data; counted as a failed item."""

    reference: str
    reason: str


ExtractionResult = ExtractedTransaction | ExtractedDocument | ItemFailure


class ExtractionAdapter(Protocol):
    async def estimate_total(self, files: Sequence[UploadedFile]) -> int | None: ...

    async def preview(self, files: Sequence[UploadedFile]) -> list[ExtractedTransaction]: ...

    def extract(self, files: Sequence[UploadedFile]) -> AsyncIterator[ExtractionResult]: ...


AdapterFactory = Callable[[JobType], ExtractionAdapter]


# =============================================================================
# Value parsing
# =============================================================================


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def parse_amount(value: Any) -> Decimal:
    """Parse a money cell: currency symbols, thousands separators, (negatives), CR/DR suffixes."""
    if is_blank(value):
        raise ValueError("Missing amount")
    if isinstance(value, bool):
        raise ValueError(f"Invalid amount: {value!r}")
    if isinstance(value, int | float | Decimal):
        return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)

    text = str(value).strip()
    negative = False
    if text.startswith("(") and text.endswith(")"):
        negative = True
        text = text[1:-1]
    upper = text.upper()
    if upper.endswith("DR"):
        negative = True
        text = text[:-2]
    elif upper.endswith("CR"):
        text = text[:-2]

    cleaned = re.sub(r"[£$€¥\s,]", "", text)
    if cleaned.startswith("+"):
        cleaned = cleaned[1:]
    try:
        amount = Decimal(cleaned)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    if negative:
        amount = -abs(amount)
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def parse_optional_amount(value: Any) -> Decimal | None:
    if is_blank(value):
        return None
    return parse_amount(value)


_DATE_FORMATS = (
    "%d/%m/%Y",
    "%d/%m/%y",
    "%m/%d/%Y",
    "%d-%m-%Y",
    "%d.%m.%Y",
    "%Y/%m/%d",
    "%d %b %Y",
    "%d %B %Y",
    "%b %d, %Y",
    "%d-%b-%Y",
)


def _from_excel_serial(serial: float) -> date:
    if not 1 <= serial < 100000:
        raise ValueError(f"Invalid Excel date serial: {serial}")
    return EXCEL_EPOCH + timedelta(days=int(serial))


def parse_date(value: Any) -> date:
    """Parse a date cell: datetime objects, Excel serials, ISO and common day-first formats."""
    if is_blank(value):
        raise ValueError("Missing date")
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, bool):
        raise ValueError(f"Invalid date: {value!r}")
    if isinstance(value, int | float):
        return _from_excel_serial(float(value))

    text = str(value).strip()
    if re.fullmatch(r"\d{4,5}(\.\d+)?", text):
        return _from_excel_serial(float(text))
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Unrecognized date: {value!r}")


def parse_optional_date(value: Any) -> date | None:
    if is_blank(value):
        return None
    return parse_date(value)


# =============================================================================
# Categorization
# =============================================================================


class Categorization(NamedTuple):
    category: str
    subcategory: str | None
    confidence: float


Categorizer = Callable[[str, Decimal], Categorization]


@dataclass(frozen=True)
class CategoryRule:
    keywords: tuple[str, ...]
    category: str
    subcategory: str | None = None
    confidence: float = 0.9


DEFAULT_CATEGORY_RULES: tuple[CategoryRule, ...] = (
    CategoryRule(("salary", "payroll", "wages"), "Income", "Salary", 0.95),
    CategoryRule(("interest paid", "dividend"), "Income", "Interest", 0.9),
    CategoryRule(("tesco", "sainsbury", "asda", "aldi", "lidl", "waitrose", "grocery", "supermarket"), "Groceries"),
    CategoryRule(("shell", "esso", "texaco", "petrol", "fuel"), "Motor Expenses", "Fuel"),
    CategoryRule(("uber", "trainline", "tfl", "taxi", "rail", "airline", "easyjet", "ryanair"), "Travel"),
    CategoryRule(("aws", "github", "google cloud", "microsoft", "adobe", "slack", "zoom"), "Software", "Subscriptions"),
    CategoryRule(("starbucks", "pret", "costa", "restaurant", "cafe", "coffee"), "Meals & Entertainment"),
    CategoryRule(("staples", "stationery", "office supplies"), "Office Supplies"),
    CategoryRule(("british gas", "octopus energy", "electric", "water", "broadband", "vodafone"), "Utilities"),
    CategoryRule(("rent", "lease"), "Rent"),
    CategoryRule(("insurance", "aviva", "axa"), "Insurance"),
    CategoryRule(("hmrc", "vat payment", "corporation tax"), "Taxes"),
    CategoryRule(("stripe", "paypal", "booking com"), "Sales", "Processor Payout", 0.85),
    CategoryRule(("bank charge", "account fee", "overdraft", "monthly fee"), "Bank Charges", None, 0.9),
    CategoryRule(("transfer", "tfr"), "Transfers", None, 0.8),
)

UNCATEGORIZED = Categorization("Uncategorized", None, 0.3)


class KeywordCategorizer:
    """Assign a category by keyword; unknown descriptions get a low-confidence fallback."""

    def __init__(self, rules: Sequence[CategoryRule] = DEFAULT_CATEGORY_RULES) -> None:
        self.rules = tuple(rules)

    def __call__(self, description: str, amount: Decimal) -> Categorization:
        text = f" {normalize_text(description)} "
        for rule in self.rules:
            if any(f" {keyword} " in text for keyword in rule.keywords):
                return Categorization(rule.category, rule.subcategory, rule.confidence)
        return UNCATEGORIZED


# =============================================================================
# Spreadsheet adapter
# =============================================================================

DATE_KEYS = ("date", "transaction_date", "posted_date", "date_posted", "value_date")
DESCRIPTION_KEYS = ("description", "memo", "details", "transaction", "merchant", "payee", "narrative")
AMOUNT_KEYS = ("amount", "transaction_amount", "value")
DEBIT_KEYS = ("debit", "paid_out", "money_out", "withdrawal", "withdrawals")
CREDIT_KEYS = ("credit", "paid_in", "money_in", "deposit", "deposits")


def normalize_header(value: Any) -> str:
    return re.sub(r"[^a-z0-9]+", "_", str(value).strip().lower()).strip("_")


@dataclass(frozen=True)
class ColumnMapping:
    date: str
    description: str
    amount: str | None = None
    debit: str | None = None
    credit: str | None = None


def detect_columns(headers: Sequence[str]) -> ColumnMapping:
    """Pick date/description/amount columns by name, falling back to column position."""
    if not headers:
        raise ExtractionError("Spreadsheet has no columns", code=JobErrorCode.PARSING_ERROR)

    by_name = {normalize_header(header): header for header in headers}

    def find(keys: Sequence[str]) -> str | None:
        for key in keys:
            if key in by_name:
                return by_name[key]
        return None

    date_col = find(DATE_KEYS) or headers[0]
    description_col = find(DESCRIPTION_KEYS) or (headers[1] if len(headers) > 1 else headers[0])
    amount_col = find(AMOUNT_KEYS)
    debit_col = find(DEBIT_KEYS)
    credit_col = find(CREDIT_KEYS)
    if amount_col is None and debit_col is None and credit_col is None:
        amount_col = headers[-1]
    return ColumnMapping(
        date=date_col,
        description=description_col,
        amount=amount_col,
        debit=debit_col,
        credit=credit_col,
    )


@dataclass(frozen=True)
class SheetRows:
    headers: list[str]
    rows: list[dict[str, Any]]


class SpreadsheetExtractionAdapter:
    """CSV/XLSX/XLS bank statement reader."""

    def __init__(self, categorizer: Categorizer | None = None) -> None:
        self.categorizer = categorizer or KeywordCategorizer()
        self._cache: dict[str, SheetRows] = {}

    def read_sheet(self, file: UploadedFile) -> SheetRows:
        """Read all non-blank rows of the first sheet. Blocking."""
        extension = file.extension
        if extension not in SPREADSHEET_EXTENSIONS:
            raise ExtractionError(f"Unsupported spreadsheet type: .{extension}", code=JobErrorCode.INVALID_FILE_TYPE)

        buffer = io.BytesIO(file.content)
        with log_timing("read_spreadsheet", logger=logger, filename=file.filename) as timing:
            try:
                if extension == "csv":
                    frame = pd.read_csv(buffer, dtype=str, keep_default_na=False, encoding="utf-8-sig")
                else:
                    frame = pd.read_excel(
                        buffer,
                        dtype=object,
                        engine="openpyxl" if extension == "xlsx" else "xlrd",
                    )
            except Exception as exc:
                raise ExtractionError(
                    f"Could not read spreadsheet {file.filename}: {exc}",
                    code=JobErrorCode.PARSING_ERROR,
                ) from exc

            headers = [str(column) for column in frame.columns]
            rows = [
                {str(key): value for key, value in record.items()}
                for record in frame.to_dict(orient="records")
                if not all(is_blank(value) for value in record.values())
            ]
            timing["rows"] = len(rows)
        return SheetRows(headers=headers, rows=rows)

    async def _load(self, file: UploadedFile) -> SheetRows:
        key = file.content_hash()
        if key not in self._cache:
            self._cache[key] = await run_in_threadpool(self.read_sheet, file)
        return self._cache[key]

    def parse_row(self, row: dict[str, Any], mapping: ColumnMapping, row_number: int) -> ExtractedTransaction:
        txn_date = parse_date(row.get(mapping.date))
        raw_description = row.get(mapping.description)
        description = "" if is_blank(raw_description) else str(raw_description).strip()
        if not description:
            raise ValueError("Missing description")

        is_debit: bool | None = None
        if mapping.amount is not None and not is_blank(row.get(mapping.amount)):
            amount = parse_amount(row.get(mapping.amount))
        else:
            debit = parse_optional_amount(row.get(mapping.debit)) if mapping.debit else None
            credit = parse_optional_amount(row.get(mapping.credit)) if mapping.credit else None
            if debit is None and credit is None:
                raise ValueError("Missing amount")
            amount = abs(credit or Decimal("0")) - abs(debit or Decimal("0"))
            is_debit = bool(debit)

        category = self.categorizer(description, amount)
        return ExtractedTransaction(
            txn_date=txn_date,
            description=description,
            amount=amount,
            is_debit=is_debit,
            category=category.category,
            subcategory=category.subcategory,
            confidence_score=category.confidence,
            row_number=row_number,
        )

    async def estimate_total(self, files: Sequence[UploadedFile]) -> int | None:
        total = 0
        for file in files:
            total += len((await self._load(file)).rows)
        return total

    async def preview(self, files: Sequence[UploadedFile]) -> list[ExtractedTransaction]:
        """Best-effort parse used by the duplicate gate; unreadable rows are skipped."""
        preview: list[ExtractedTransaction] = []
        for file in files:
            sheet = await self._load(file)
            mapping = detect_columns(sheet.headers)
            for index, row in enumerate(sheet.rows, start=2):
                try:
                    preview.append(self.parse_row(row, mapping, index))
                except (ValueError, ArithmeticError):
                    continue
        return preview

    async def extract(self, files: Sequence[UploadedFile]) -> AsyncIterator[ExtractionResult]:
        for file in files:
            sheet = await self._load(file)
            mapping = detect_columns(sheet.headers)
            # Row 1 is the header line
            for index, row in enumerate(sheet.rows, start=2):
                try:
                    yield self.parse_row(row, mapping, index)
                except (ValueError, ArithmeticError) as exc:
                    yield ItemFailure(reference=f"{file.filename}:row {index}", reason=str(exc))


# =============================================================================
# Invoice adapter (OpenRouter vision)
# =============================================================================


def _parse_json_payload(content: str) -> dict[str, Any]:
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError as exc:
        match = re.search(r"```json\s*(.*?)\s*```", content, re.DOTALL)
        if not match:
            raise ExtractionError(f"Failed to parse JSON response: {exc}", code=JobErrorCode.OCR_FAILED) from exc
        parsed = json.loads(match.group(1))
    if not isinstance(parsed, dict):
        raise ExtractionError("Model returned a non-object JSON payload", code=JobErrorCode.OCR_FAILED)
    return parsed


class OpenRouterInvoiceAdapter:
    """Invoice/receipt extraction through OpenRouter vision models."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        primary_model: str | None = None,
        fallback_models: Sequence[str] | None = None,
        categorizer: Categorizer | None = None,
    ) -> None:
        self.api_key = settings.openrouter_api_key if api_key is None else api_key
        self.base_url = base_url or settings.openrouter_base_url
        self.primary_model = primary_model or settings.primary_model
        self.fallback_models = list(settings.fallback_models if fallback_models is None else fallback_models)
        self.categorizer = categorizer or KeywordCategorizer()

    async def estimate_total(self, files: Sequence[UploadedFile]) -> int | None:
        return len(files)

    async def preview(self, files: Sequence[UploadedFile]) -> list[ExtractedTransaction]:
        return []

    async def request_extraction(self, file: UploadedFile) -> dict[str, Any]:
        """Call the vision model, trying fallback models in order."""
        b64_content = base64.b64encode(file.content).decode("utf-8")
        messages = [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": get_invoice_prompt(file.filename)},
                    {"type": "image_url", "image_url": {"url": f"data:{file.mime_type};base64,{b64_content}"}},
                ],
            }
        ]

        models = [model for model in [self.primary_model, *self.fallback_models] if model]
        last_error: Exception | None = None
        for attempt, model in enumerate(models, start=1):
            logger.info("Attempting invoice extraction", model=model, attempt=attempt, total=len(models))
            try:
                content = await accumulate_stream(
                    stream_openrouter_json(
                        messages=messages,
                        model=model,
                        api_key=self.api_key,
                        base_url=self.base_url,
                    )
                )
            except OpenRouterStreamError as exc:
                logger.warning("Invoice extraction model failed", model=model, error=str(exc), retryable=exc.retryable)
                last_error = exc
                continue
            if not content.strip():
                last_error = ExtractionError(f"Model {model} returned empty response", code=JobErrorCode.OCR_FAILED)
                continue
            try:
                return _parse_json_payload(content)
            except (ExtractionError, json.JSONDecodeError) as exc:
                logger.warning("Invoice extraction returned unparseable JSON", model=model, error=str(exc))
                last_error = exc
                continue

        raise ExtractionError(
            f"All {len(models)} models failed for {file.filename}. Last: {last_error}",
            code=JobErrorCode.OCR_FAILED,
        )

    def build_document(self, file: UploadedFile, payload: dict[str, Any]) -> ExtractedDocument:
        line_items: list[ExtractedLineItem] = []
        for index, raw in enumerate(payload.get("line_items") or [], start=1):
            if not isinstance(raw, dict):
                raise ValueError(f"Line item {index} is not an object")
            quantity = parse_optional_amount(raw.get("quantity"))
            unit_price = parse_optional_amount(raw.get("unit_price"))
            total = parse_optional_amount(raw.get("total"))
            if total is None and quantity is not None and unit_price is not None:
                total = (quantity * unit_price).quantize(CENT, rounding=ROUND_HALF_UP)
            if total is None:
                raise ValueError(f"Line item {index} has no total")
            line_items.append(
                ExtractedLineItem(
                    description=str(raw.get("description") or f"Line item {index}"),
                    quantity=quantity,
                    unit_price=unit_price,
                    total=total,
                )
            )

        raw_confidence = payload.get("field_confidence") or {}
        if not isinstance(raw_confidence, dict):
            raise ValueError("field_confidence is not an object")
        field_confidence = {
            str(key): min(max(float(value), 0.0), 1.0) for key, value in raw_confidence.items() if value is not None
        }
        header = {
            "vendor_name": payload.get("vendor_name"),
            "invoice_number": payload.get("invoice_number"),
            "po_number": payload.get("po_number"),
            "order_number": payload.get("order_number"),
            "document_date": parse_optional_date(payload.get("document_date")),
            "total_amount": parse_optional_amount(payload.get("total")),
            "subtotal_amount": parse_optional_amount(payload.get("subtotal")),
            "tax_amount": parse_optional_amount(payload.get("tax")),
            "fee_amount": parse_optional_amount(payload.get("fee")),
            "shipping_amount": parse_optional_amount(payload.get("shipping")),
            "currency": payload.get("currency"),
        }
        extraction_methods = {field: "ai_vision" for field, value in header.items() if value is not None}

        vendor = header["vendor_name"] or file.filename
        if payload.get("category"):
            categorization = Categorization(
                payload["category"], payload.get("subcategory"), field_confidence.get("category", 0.7)
            )
        else:
            categorization = self.categorizer(vendor, header["total_amount"] or Decimal("0"))
        confidence = (
            sum(field_confidence.values()) / len(field_confidence) if field_confidence else categorization.confidence
        )

        return ExtractedDocument(
            filename=file.filename,
            content_hash=file.content_hash(),
            storage_key=file.storage_key,
            mime_type=file.mime_type,
            line_items=line_items,
            field_confidence=field_confidence,
            extraction_methods=extraction_methods,
            category=categorization.category,
            subcategory=categorization.subcategory,
            confidence_score=round(confidence, 4),
            **header,
        )

    async def extract(self, files: Sequence[UploadedFile]) -> AsyncIterator[ExtractionResult]:
        if not self.api_key:
            raise ExtractionError(
                "OpenRouter API key not configured; invoice extraction unavailable",
                code=JobErrorCode.OCR_FAILED,
            )
        for file in files:
            try:
                payload = await self.request_extraction(file)
                yield self.build_document(file, payload)
            except (ExtractionError, ValueError, ArithmeticError) as exc:
                logger.warning("Invoice file could not be extracted", filename=file.filename, error=str(exc))
                yield ItemFailure(reference=file.filename, reason=str(exc))


def build_adapter(job_type: JobType) -> ExtractionAdapter:
    """Default adapter for a job type."""
    if job_type == JobType.SPREADSHEET:
        return SpreadsheetExtractionAdapter()
    return OpenRouterInvoiceAdapter()
