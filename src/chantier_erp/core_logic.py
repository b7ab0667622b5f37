"""Business logic layer for the chantier ERP.

This module orchestrates quotes and invoices on top of the workbook data layer.
Totals always flow through :mod:`chantier_erp.totals`, writes through
:class:`~chantier_erp.persistence.PersistenceAdapter`, and every listing through
the runtime context's :class:`~chantier_erp.cache.CacheConsistencyManager`, so
a document deleted in this process never reappears, whatever the persisted
workbook still contains.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple
from uuid import uuid4

from openpyxl.workbook import Workbook

from . import data_manager, log
from .assembler import AssemblyOverrides, assemble
from .cache import CacheConsistencyManager
from .constants import (
    COLLECTIONS,
    DEFAULT_CURRENCY,
    EXPECTED_SCHEMA_VERSION,
    NUMBER_PREFIXES,
    DocumentKind,
    InvoiceStatus,
    QuoteStatus,
    WarningCode,
)
from .data_manager import DocumentRow, LineRow
from .errors import SourceNotFound
from .persistence import PersistenceAdapter, SaveResult
from .totals import compute_document, price_document_lines, price_line, sanitize_vat_rate, validate_line, waives_vat


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced quote, invoice or line is unknown."""


UUID_PATTERN = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE)


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, workbook and cache used by the BLL."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    cache: CacheConsistencyManager = field(default_factory=CacheConsistencyManager, repr=False, compare=False)


@dataclass(frozen=True)
class LineCommand:
    """User intent for one billable line."""

    label: str
    unit_price_ht: Decimal
    quantity: Decimal = Decimal("1")
    vat_rate: Optional[Decimal] = None
    category: Optional[str] = None
    unit: Optional[str] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class QuoteCommand:
    """User intent for creating a quote."""

    client_ref: str
    lines: Sequence[LineCommand] = ()
    description: Optional[str] = None
    vat_rate: Optional[Decimal] = None
    vat_exempt: Optional[bool] = None
    estimated_amount: Optional[Decimal] = None
    ttc_override: Optional[Decimal] = None
    currency: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class InvoiceCommand:
    """User intent for creating an invoice without a source quote."""

    client_ref: str
    lines: Sequence[LineCommand] = ()
    amount_ht: Optional[Decimal] = None
    ttc_override: Optional[Decimal] = None
    description: Optional[str] = None
    vat_rate: Optional[Decimal] = None
    vat_exempt: Optional[bool] = None
    due_date: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class DocumentResult:
    """A saved document, its lines and the warnings raised on the way."""

    document: DocumentRow
    lines: Tuple[LineRow, ...]
    warnings: Tuple[WarningCode, ...] = ()
    save: Optional[SaveResult] = None


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    return candidate if candidate is not None else datetime.now(UTC)


def _merge(*groups: Iterable[WarningCode]) -> Tuple[WarningCode, ...]:
    merged: List[WarningCode] = []
    for group in groups:
        merged.extend(code for code in group if code not in merged)
    return tuple(merged)


def load_runtime_context(
    config_path: Optional[Path] = None,
    *,
    cache: Optional[CacheConsistencyManager] = None,
) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.
        cache (CacheConsistencyManager | None): Cache to attach. A new one is
            created when omitted.

    Returns:
        RuntimeContext: Context ready for orchestration functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """

    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook, cache=cache or CacheConsistencyManager())


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """

    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Write the in-memory workbook back to the configured data file.

    Once saved, the cached local changes are acknowledged: later polls of the
    file are authoritative for them.
    """

    data_manager.save_workbook(context.workbook, context.settings.data_file)
    context.cache.acknowledge()
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reopen the workbook from disk, keeping the cache and its tombstones."""

    workbook = data_manager.refresh_workbook(context.settings.data_file)
    return replace(context, workbook=workbook)


def normalize_document_id(raw_id: str) -> str:
    """Extract the UUID from an identifier that may carry a link suffix.

    Signing links append a suffix to the document UUID
    (``<uuid>-<suffix>``). Identifiers without a UUID are returned stripped.

    Raises:
        ValueError: If ``raw_id`` is empty.
    """

    if raw_id is None or not str(raw_id).strip():
        raise ValueError("Document id is required")
    candidate = str(raw_id).strip()
    match = UUID_PATTERN.search(candidate)
    if match is None:
        return candidate
    if len(candidate) > len(match.group(0)):
        log.warning("Stripped suffix from document id '%s'", candidate)
    return match.group(0)


def next_document_number(context: RuntimeContext, kind: DocumentKind, *, year: Optional[int] = None) -> str:
    """Return the next ``PREFIX-YYYY-NNN`` number for ``kind``.

    The sequence restarts every year and continues from the highest number
    already stored for that year.
    """

    year = year if year is not None else datetime.now(UTC).year
    prefix = f"{NUMBER_PREFIXES[kind]}-{year}-"
    pattern = re.compile(rf"^{re.escape(prefix)}(\d+)$")
    highest = 0
    for document in data_manager.iter_documents(context.workbook, kind):
        match = pattern.match(document.number or "")
        if match:
            highest = max(highest, int(match.group(1)))
    return f"{prefix}{highest + 1:03d}"


def _adapter(context: RuntimeContext, kind: DocumentKind) -> PersistenceAdapter:
    return PersistenceAdapter(context.workbook, kind)


def _ensure_loaded(context: RuntimeContext, kind: DocumentKind) -> None:
    collection = COLLECTIONS[kind]
    if not context.cache.is_loaded(collection):
        context.cache.reconcile_with_server(collection, data_manager.iter_documents(context.workbook, kind))


def list_documents(context: RuntimeContext, kind: DocumentKind) -> List[DocumentRow]:
    """Return the visible documents of ``kind``; deleted ones never appear."""

    _ensure_loaded(context, kind)
    return context.cache.view(COLLECTIONS[kind])


def get_document(context: RuntimeContext, kind: DocumentKind, document_id: str) -> DocumentRow:
    """Resolve a visible document by its identifier.

    Raises:
        MissingReferenceError: If the document is unknown or was deleted.
    """

    _ensure_loaded(context, kind)
    document_id = normalize_document_id(document_id)
    found = context.cache.get(COLLECTIONS[kind], document_id)
    if found is None:
        log.warning("%s lookup failed for id '%s'", kind.value.capitalize(), document_id)
        raise MissingReferenceError(f"Unknown {kind.value} id: {document_id}")
    return found


def get_lines(context: RuntimeContext, kind: DocumentKind, document_id: str) -> List[LineRow]:
    """Return the stored lines of a visible document, ordered by position."""

    document = get_document(context, kind, document_id)
    return data_manager.iter_lines(context.workbook, kind, document.document_id)


def poll_collection(context: RuntimeContext, kind: DocumentKind) -> List[DocumentRow]:
    """Re-read the persisted workbook and reconcile the cached view with it.

    The file on disk may lag behind the in-memory workbook; whatever it still
    holds for a deleted document is filtered out by the tombstones.
    """

    fresh_workbook = data_manager.refresh_workbook(context.settings.data_file)
    fresh = list(data_manager.iter_documents(fresh_workbook, kind))
    log.debug("Polled %d %s row(s) from '%s'", len(fresh), kind.value, context.settings.data_file)
    return context.cache.reconcile_with_server(COLLECTIONS[kind], fresh)


def _build_lines(document_id: str, commands: Sequence[LineCommand], *, vat_rate: Decimal, vat_exempt: bool, start: int = 1) -> List[LineRow]:
    lines = []
    for position, command in enumerate(commands, start=start):
        rate = command.vat_rate if command.vat_rate is not None else vat_rate
        validate_line(command.label, command.quantity, command.unit_price_ht, rate)
        line = LineRow(
            line_id=str(uuid4()),
            document_id=document_id,
            position=position,
            label=command.label.strip(),
            quantity=Decimal(str(command.quantity)),
            unit_price_ht=Decimal(str(command.unit_price_ht)),
            vat_rate=Decimal(str(rate)),
            category=command.category,
            unit=command.unit,
            description=command.description,
        )
        lines.append(price_line(line, vat_exempt=waives_vat(vat_exempt, vat_rate)))
    return lines


def _with_totals(
    document: DocumentRow,
    lines: Sequence[LineRow],
    *,
    carried_subtotal: Optional[Decimal] = None,
    timestamp: Optional[datetime] = None,
) -> Tuple[DocumentRow, Tuple[LineRow, ...], Tuple[WarningCode, ...]]:
    rate, warnings = sanitize_vat_rate(document.vat_rate)
    priced = price_document_lines(lines, vat_rate=rate, vat_exempt=document.vat_exempt)
    totals = compute_document(
        priced,
        vat_rate=rate,
        vat_exempt=document.vat_exempt,
        ttc_override=document.ttc_override,
        carried_subtotal=carried_subtotal,
        estimated_amount=document.estimated_amount,
    )
    updated = replace(
        document,
        vat_rate=rate,
        subtotal_ht=totals.subtotal_ht,
        total_vat=totals.total_vat,
        total_ttc=totals.total_ttc,
        updated_at=_resolve_timestamp(timestamp).isoformat(),
    )
    return updated, priced, _merge(warnings, totals.warnings)


def _save_new(context: RuntimeContext, document: DocumentRow, lines: Sequence[LineRow]) -> SaveResult:
    collection = COLLECTIONS[document.kind]
    _ensure_loaded(context, document.kind)
    with context.cache.transaction(collection) as cache:
        temp_id = cache.add_placeholder(collection, document)
        result = _adapter(context, document.kind).save(document, lines)
        cache.confirm(collection, temp_id, document)
    return result


def _save_existing(context: RuntimeContext, document: DocumentRow, lines: Sequence[LineRow]) -> SaveResult:
    collection = COLLECTIONS[document.kind]
    with context.cache.transaction(collection) as cache:
        cache.update(collection, document)
        result = _adapter(context, document.kind).save(document, lines)
    return result


def _guard_totals_mutation(document: DocumentRow) -> None:
    if document.is_terminal:
        log.error("Refusing to change totals of %s %s in status '%s'", document.kind.value, document.document_id, document.status)
        raise BusinessRuleViolation(
            f"{document.kind.value.capitalize()} {document.document_id} is {document.status}; its totals are frozen"
        )


def _delete(context: RuntimeContext, kind: DocumentKind, document_ids: Sequence[str]) -> List[str]:
    resolved = {}
    for document_id in document_ids:
        document = get_document(context, kind, document_id)
        resolved.setdefault(document.document_id, document)
    documents = list(resolved.values())
    collection = COLLECTIONS[kind]
    adapter = _adapter(context, kind)
    with context.cache.transaction(collection) as cache:
        for document in documents:
            cache.delete(collection, document.document_id)
            adapter.delete(document.document_id)
    return [document.document_id for document in documents]


def create_quote(context: RuntimeContext, command: QuoteCommand) -> DocumentResult:
    """Create a draft quote from structured lines or a single amount.

    Raises:
        ValueError: If the client reference is blank or a line is invalid.
    """

    if not command.client_ref or not command.client_ref.strip():
        raise ValueError("Client reference is required")

    settings = context.settings
    raw_rate = command.vat_rate if command.vat_rate is not None else settings.default_vat_rate
    rate, rate_warnings = sanitize_vat_rate(raw_rate, default=settings.default_vat_rate)
    vat_exempt = command.vat_exempt if command.vat_exempt is not None else settings.default_vat_exempt
    timestamp = _resolve_timestamp(command.timestamp)

    document_id = str(uuid4())
    lines = _build_lines(document_id, command.lines, vat_rate=rate, vat_exempt=vat_exempt)
    draft = DocumentRow(
        document_id=document_id,
        kind=DocumentKind.QUOTE,
        number=next_document_number(context, DocumentKind.QUOTE, year=timestamp.year),
        client_ref=command.client_ref.strip(),
        status=QuoteStatus.DRAFT.value,
        vat_rate=rate,
        subtotal_ht=Decimal("0.00"),
        total_vat=Decimal("0.00"),
        total_ttc=Decimal("0.00"),
        created_at=timestamp.isoformat(),
        vat_exempt=vat_exempt,
        description=command.description,
        estimated_amount=command.estimated_amount,
        ttc_override=command.ttc_override,
        currency=command.currency or DEFAULT_CURRENCY,
    )
    document, priced, total_warnings = _with_totals(draft, lines, timestamp=timestamp)
    result = _save_new(context, document, priced)
    log.info("Created quote %s (%s) for '%s': %s TTC", document.number, document.document_id, document.client_ref, document.total_ttc)
    return DocumentResult(document, priced, _merge(rate_warnings, total_warnings, result.warnings), result)


def add_quote_line(context: RuntimeContext, quote_id: str, command: LineCommand) -> DocumentResult:
    """Append a line to a quote and recompute its totals.

    Raises:
        MissingReferenceError: If the quote is unknown.
        BusinessRuleViolation: If the quote's totals are frozen.
        ValueError: If the line is invalid.
    """

    quote = get_document(context, DocumentKind.QUOTE, quote_id)
    _guard_totals_mutation(quote)
    existing = data_manager.iter_lines(context.workbook, DocumentKind.QUOTE, quote.document_id)
    start = max((line.position for line in existing), default=0) + 1
    added = _build_lines(quote.document_id, [command], vat_rate=quote.vat_rate, vat_exempt=quote.vat_exempt, start=start)
    document, priced, warnings = _with_totals(quote, [*existing, *added])
    result = _save_existing(context, document, priced)
    log.info("Added line '%s' to quote %s", command.label, document.document_id)
    return DocumentResult(document, priced, _merge(warnings, result.warnings), result)


def remove_quote_line(context: RuntimeContext, quote_id: str, line_id: str) -> DocumentResult:
    """Remove one line from a quote and recompute its totals.

    Raises:
        MissingReferenceError: If the quote or the line is unknown.
        BusinessRuleViolation: If the quote's totals are frozen.
    """

    quote = get_document(context, DocumentKind.QUOTE, quote_id)
    _guard_totals_mutation(quote)
    existing = data_manager.iter_lines(context.workbook, DocumentKind.QUOTE, quote.document_id)
    remaining = [line for line in existing if line.line_id != line_id]
    if len(remaining) == len(existing):
        log.warning("Line lookup failed for id '%s' on quote %s", line_id, quote.document_id)
        raise MissingReferenceError(f"Unknown line id: {line_id}")
    remaining = [replace(line, position=index) for index, line in enumerate(remaining, start=1)]
    document, priced, warnings = _with_totals(quote, remaining)
    result = _save_existing(context, document, priced)
    log.info("Removed line %s from quote %s", line_id, document.document_id)
    return DocumentResult(document, priced, _merge(warnings, result.warnings), result)


def update_quote(
    context: RuntimeContext,
    quote_id: str,
    *,
    status: Optional[str] = None,
    description: Optional[str] = None,
    vat_rate: Optional[Decimal] = None,
    vat_exempt: Optional[bool] = None,
    estimated_amount: Optional[Decimal] = None,
    ttc_override: Optional[Decimal] = None,
) -> DocumentResult:
    """Update a quote's status or settings and recompute its totals.

    Changing the status or the description is always allowed. Changing
    anything that affects the totals is rejected once the quote reached a
    terminal status.

    Raises:
        MissingReferenceError: If the quote is unknown.
        BusinessRuleViolation: If a totals change targets a frozen quote.
        ValueError: If ``status`` is not a quote status.
    """

    quote = get_document(context, DocumentKind.QUOTE, quote_id)
    if any(value is not None for value in (vat_rate, vat_exempt, estimated_amount, ttc_override)):
        _guard_totals_mutation(quote)

    changes = {}
    if status is not None:
        changes["status"] = QuoteStatus(status).value
    if description is not None:
        changes["description"] = description
    if vat_rate is not None:
        changes["vat_rate"] = vat_rate
    if vat_exempt is not None:
        changes["vat_exempt"] = vat_exempt
    if estimated_amount is not None:
        changes["estimated_amount"] = estimated_amount
    if ttc_override is not None:
        changes["ttc_override"] = ttc_override

    lines = data_manager.iter_lines(context.workbook, DocumentKind.QUOTE, quote.document_id)
    document, priced, warnings = _with_totals(replace(quote, **changes), lines)
    result = _save_existing(context, document, priced)
    log.info("Updated quote %s (%s)", document.document_id, ", ".join(sorted(changes)) or "no changes")
    return DocumentResult(document, priced, _merge(warnings, result.warnings), result)


def delete_quote(context: RuntimeContext, quote_id: str) -> str:
    """Delete a quote and its lines; it disappears from every listing at once.

    Raises:
        MissingReferenceError: If the quote is unknown or already deleted.
    """

    return _delete(context, DocumentKind.QUOTE, [quote_id])[0]


def delete_quotes_bulk(context: RuntimeContext, quote_ids: Sequence[str]) -> List[str]:
    """Delete several quotes. Unknown ids abort the operation before any change."""

    deleted = _delete(context, DocumentKind.QUOTE, list(quote_ids))
    log.info("Deleted %d quote(s)", len(deleted))
    return deleted


def _default_due_date(context: RuntimeContext, created: datetime) -> str:
    return (created + timedelta(days=context.settings.payment_terms_days)).date().isoformat()


def convert_quote_to_invoice(
    context: RuntimeContext,
    quote_id: str,
    overrides: Optional[AssemblyOverrides] = None,
    *,
    allow_empty: bool = False,
    timestamp: Optional[datetime] = None,
) -> DocumentResult:
    """Create and save a draft invoice from a quote.

    Args:
        context (RuntimeContext): Active runtime context.
        quote_id (str): Identifier of the source quote, suffix allowed.
        overrides (AssemblyOverrides | None): Caller-imposed VAT settings,
            TTC, description or due date.
        allow_empty (bool): Save a zero-valued invoice instead of raising when
            the quote carries no usable amount.
        timestamp (datetime | None): Creation time of the invoice.

    Returns:
        DocumentResult: The saved invoice, its lines and every warning.

    Raises:
        SourceNotFound: If the quote is unknown or was deleted.
        NoMonetaryData: If no amount could be derived and ``allow_empty`` is
            ``False``.
    """

    quote_id = normalize_document_id(quote_id)
    _ensure_loaded(context, DocumentKind.QUOTE)
    quotes = COLLECTIONS[DocumentKind.QUOTE]
    adapter = _adapter(context, DocumentKind.QUOTE)

    def load_source(source_id: str) -> Tuple[DocumentRow, List[LineRow]]:
        if context.cache.get(quotes, source_id) is None:
            raise SourceNotFound(quotes.value, source_id)
        return adapter.load(source_id)

    created = _resolve_timestamp(timestamp)
    assembled = assemble(
        load_source,
        quote_id,
        overrides,
        strict=not allow_empty,
        default_vat_rate=context.settings.default_vat_rate,
        now=created,
    )
    invoice = assembled.document
    if invoice.number is None:
        invoice = replace(invoice, number=next_document_number(context, DocumentKind.INVOICE, year=created.year))
    if invoice.due_date is None:
        invoice = replace(invoice, due_date=_default_due_date(context, created))

    result = _save_new(context, invoice, assembled.lines)
    log.info("Converted quote %s into invoice %s", quote_id, invoice.document_id)
    return DocumentResult(invoice, assembled.lines, _merge(assembled.warnings, result.warnings), result)


def create_invoice(context: RuntimeContext, command: InvoiceCommand) -> DocumentResult:
    """Create a draft invoice from lines, an HT amount or a TTC figure.

    Raises:
        ValueError: If the client reference is blank or a line is invalid.
    """

    if not command.client_ref or not command.client_ref.strip():
        raise ValueError("Client reference is required")

    settings = context.settings
    raw_rate = command.vat_rate if command.vat_rate is not None else settings.default_vat_rate
    rate, rate_warnings = sanitize_vat_rate(raw_rate, default=settings.default_vat_rate)
    vat_exempt = command.vat_exempt if command.vat_exempt is not None else settings.default_vat_exempt
    timestamp = _resolve_timestamp(command.timestamp)

    document_id = str(uuid4())
    lines = _build_lines(document_id, command.lines, vat_rate=rate, vat_exempt=vat_exempt)
    draft = DocumentRow(
        document_id=document_id,
        kind=DocumentKind.INVOICE,
        number=next_document_number(context, DocumentKind.INVOICE, year=timestamp.year),
        client_ref=command.client_ref.strip(),
        status=InvoiceStatus.DRAFT.value,
        vat_rate=rate,
        subtotal_ht=Decimal("0.00"),
        total_vat=Decimal("0.00"),
        total_ttc=Decimal("0.00"),
        created_at=timestamp.isoformat(),
        vat_exempt=vat_exempt,
        description=command.description,
        ttc_override=command.ttc_override,
        currency=DEFAULT_CURRENCY,
        due_date=command.due_date or _default_due_date(context, timestamp),
    )
    document, priced, total_warnings = _with_totals(
        draft, lines, carried_subtotal=command.amount_ht, timestamp=timestamp
    )
    result = _save_new(context, document, priced)
    log.info("Created invoice %s (%s) for '%s': %s TTC", document.number, document.document_id, document.client_ref, document.total_ttc)
    return DocumentResult(document, priced, _merge(rate_warnings, total_warnings, result.warnings), result)


def update_invoice(
    context: RuntimeContext,
    invoice_id: str,
    *,
    amount_ht: Optional[Decimal] = None,
    ttc_override: Optional[Decimal] = None,
    vat_rate: Optional[Decimal] = None,
    vat_exempt: Optional[bool] = None,
    description: Optional[str] = None,
    due_date: Optional[str] = None,
) -> DocumentResult:
    """Update an invoice and recompute its totals.

    An invoice without lines keeps its stored HT amount as carried subtotal,
    so a rate change recomputes VAT from it. A new ``amount_ht`` replaces that
    amount and clears any earlier TTC override.

    Raises:
        MissingReferenceError: If the invoice is unknown.
        BusinessRuleViolation: If a totals change targets a paid or cancelled
            invoice.
    """

    invoice = get_document(context, DocumentKind.INVOICE, invoice_id)
    if any(value is not None for value in (amount_ht, ttc_override, vat_rate, vat_exempt)):
        _guard_totals_mutation(invoice)

    changes = {}
    if ttc_override is not None:
        changes["ttc_override"] = ttc_override
    elif amount_ht is not None:
        changes["ttc_override"] = None
    if vat_rate is not None:
        changes["vat_rate"] = vat_rate
    if vat_exempt is not None:
        changes["vat_exempt"] = vat_exempt
    if description is not None:
        changes["description"] = description
    if due_date is not None:
        changes["due_date"] = due_date

    lines = data_manager.iter_lines(context.workbook, DocumentKind.INVOICE, invoice.document_id)
    carried = amount_ht if amount_ht is not None else invoice.subtotal_ht
    document, priced, warnings = _with_totals(replace(invoice, **changes), lines, carried_subtotal=carried)
    result = _save_existing(context, document, priced)
    log.info("Updated invoice %s", document.document_id)
    return DocumentResult(document, priced, _merge(warnings, result.warnings), result)


def set_invoice_status(
    context: RuntimeContext,
    invoice_id: str,
    status: str,
    *,
    timestamp: Optional[datetime] = None,
) -> DocumentRow:
    """Move an invoice to ``status``; ``paid`` stamps the payment time.

    Raises:
        ValueError: If ``status`` is not an invoice status.
        MissingReferenceError: If the invoice is unknown.
        BusinessRuleViolation: If the invoice is already paid or cancelled.
    """

    new_status = InvoiceStatus(status)
    invoice = get_document(context, DocumentKind.INVOICE, invoice_id)
    if invoice.is_terminal and invoice.status != new_status.value:
        log.error("Invoice %s is %s and cannot become %s", invoice.document_id, invoice.status, new_status.value)
        raise BusinessRuleViolation(f"Invoice {invoice.document_id} is {invoice.status}")

    moment = _resolve_timestamp(timestamp).isoformat()
    changes = {"status": new_status.value, "updated_at": moment}
    if new_status is InvoiceStatus.PAID and invoice.paid_at is None:
        changes["paid_at"] = moment
    document = replace(invoice, **changes)
    lines = data_manager.iter_lines(context.workbook, DocumentKind.INVOICE, invoice.document_id)
    _save_existing(context, document, lines)
    log.info("Invoice %s is now %s", document.document_id, document.status)
    return document


def delete_invoice(context: RuntimeContext, invoice_id: str) -> str:
    """Delete an invoice and its lines; it disappears from every listing at once.

    Raises:
        MissingReferenceError: If the invoice is unknown or already deleted.
    """

    return _delete(context, DocumentKind.INVOICE, [invoice_id])[0]
