"""Assemble an invoice from a quote.

The assembler loads the source quote with its lines, settles the VAT rate and
exemption, projects the lines, computes the totals and returns an unpersisted
draft invoice. Data-quality anomalies met along the way are attached to the
result as warnings; only a missing source, or a missing amount in strict mode,
is raised.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import UTC, datetime
from decimal import Decimal
from typing import Callable, List, Optional, Sequence, Tuple
from uuid import uuid4

from . import log
from .constants import DEFAULT_CURRENCY, DEFAULT_VAT_RATE, DocumentKind, InvoiceStatus, TotalsSource, WarningCode
from .data_manager import DocumentRow, LineRow
from .errors import NoMonetaryData
from .line_projector import project
from .totals import DocumentTotals, compute_document, sanitize_vat_rate, waives_vat


SourceLoader = Callable[[str], Tuple[DocumentRow, Sequence[LineRow]]]


@dataclass(frozen=True)
class AssemblyOverrides:
    """Caller-imposed settings that take precedence over the source document."""

    vat_rate: Optional[Decimal] = None
    vat_exempt: Optional[bool] = None
    ttc_override: Optional[Decimal] = None
    description: Optional[str] = None
    due_date: Optional[str] = None


@dataclass(frozen=True)
class AssembledDocument:
    """An unpersisted target document, its lines and the warnings raised."""

    document: DocumentRow
    lines: Tuple[LineRow, ...]
    totals: DocumentTotals
    warnings: Tuple[WarningCode, ...] = ()

    @property
    def has_monetary_data(self) -> bool:
        return WarningCode.NO_MONETARY_DATA not in self.warnings


def _merge_warnings(*groups: Sequence[WarningCode]) -> Tuple[WarningCode, ...]:
    merged: List[WarningCode] = []
    for group in groups:
        for code in group:
            if code not in merged:
                merged.append(code)
    return tuple(merged)


def resolve_vat(
    source: DocumentRow,
    overrides: AssemblyOverrides,
    *,
    default_vat_rate: Decimal = DEFAULT_VAT_RATE,
) -> Tuple[Decimal, bool, Tuple[WarningCode, ...]]:
    """Settle the VAT rate and exemption flag of the target document.

    An explicit override beats the source document's own setting, which beats
    the default rate. The winning rate is sanitized.

    Returns:
        tuple[Decimal, bool, tuple[WarningCode, ...]]: Rate, exemption flag and
            the warnings raised while sanitizing the rate.
    """

    raw_rate = overrides.vat_rate if overrides.vat_rate is not None else source.vat_rate
    rate, warnings = sanitize_vat_rate(raw_rate, default=default_vat_rate)
    vat_exempt = overrides.vat_exempt if overrides.vat_exempt is not None else source.vat_exempt
    return rate, vat_exempt, warnings


def assemble(
    load_source: SourceLoader,
    source_id: str,
    overrides: Optional[AssemblyOverrides] = None,
    *,
    strict: bool = False,
    default_vat_rate: Decimal = DEFAULT_VAT_RATE,
    now: Optional[datetime] = None,
    id_factory: Callable[[], str] = lambda: str(uuid4()),
) -> AssembledDocument:
    """Build a draft invoice from the quote identified by ``source_id``.

    Steps:
        1. Load the quote and its lines through ``load_source``; a quote
           without lines is fine.
        2. Resolve the VAT rate and exemption (override, then quote, then
           default).
        3. Project the lines, synthesizing one from the quote aggregate when
           the quote has none.
        4. Compute the totals. A caller-supplied TTC drives the totals of a
           quote without structured lines, and the synthesized line then
           carries the back-computed HT.

    Args:
        load_source (SourceLoader): Callable returning ``(quote, lines)`` or
            raising :class:`~chantier_erp.errors.SourceNotFound`.
        source_id (str): Identifier of the quote.
        overrides (AssemblyOverrides | None): Settings imposed by the caller.
        strict (bool): Raise :class:`~chantier_erp.errors.NoMonetaryData`
            instead of returning a zero-valued invoice with a warning.
        default_vat_rate (Decimal): Rate used when neither the caller nor the
            quote provides a usable one.
        now (datetime | None): Creation timestamp; defaults to the current UTC
            time.
        id_factory (Callable[[], str]): Generator of the invoice identifier.

    Returns:
        AssembledDocument: Unpersisted invoice with lines, totals and warnings.

    Raises:
        SourceNotFound: If ``source_id`` does not resolve.
        NoMonetaryData: In strict mode, when no amount could be derived.
    """

    overrides = overrides or AssemblyOverrides()
    source, source_lines = load_source(source_id)
    source_lines = list(source_lines)

    rate, vat_exempt, rate_warnings = resolve_vat(source, overrides, default_vat_rate=default_vat_rate)
    rate_override = rate if overrides.vat_rate is not None else None
    waived = waives_vat(vat_exempt, rate)
    invoice_id = id_factory()

    driven_by_ttc = overrides.ttc_override is not None and overrides.ttc_override != 0 and not source_lines
    if driven_by_ttc:
        totals = compute_document((), vat_rate=rate, vat_exempt=vat_exempt, ttc_override=overrides.ttc_override)
        carrier = replace(source, subtotal_ht=totals.subtotal_ht, total_ttc=totals.total_ttc)
        projection = project((), carrier, vat_exempt=waived, rate_override=rate, target_document_id=invoice_id)
    else:
        projection = project(
            source_lines,
            source,
            vat_exempt=waived,
            rate_override=rate_override,
            target_document_id=invoice_id,
        )
        totals = compute_document(
            projection.lines,
            vat_rate=rate,
            vat_exempt=vat_exempt,
            ttc_override=overrides.ttc_override,
            carried_subtotal=source.subtotal_ht,
            estimated_amount=source.estimated_amount,
        )

    warnings = _merge_warnings(rate_warnings, projection.warnings, totals.warnings)
    if totals.source is TotalsSource.NONE and not source_lines:
        if strict:
            log.error("Quote %s carries no usable amount", source.document_id)
            raise NoMonetaryData(source.document_id)
        warnings = _merge_warnings(warnings, (WarningCode.NO_MONETARY_DATA,))

    created = now if now is not None else datetime.now(UTC)
    invoice = DocumentRow(
        document_id=invoice_id,
        kind=DocumentKind.INVOICE,
        number=source.number,
        client_ref=source.client_ref,
        status=InvoiceStatus.DRAFT.value,
        vat_rate=rate,
        subtotal_ht=totals.subtotal_ht,
        total_vat=totals.total_vat,
        total_ttc=totals.total_ttc,
        created_at=created.isoformat(),
        vat_exempt=vat_exempt,
        description=overrides.description if overrides.description is not None else source.description,
        ttc_override=overrides.ttc_override,
        currency=source.currency or DEFAULT_CURRENCY,
        source_id=source.document_id,
        due_date=overrides.due_date,
        updated_at=created.isoformat(),
    )
    log.info(
        "Assembled invoice %s from quote %s: %s HT / %s TTC (%s)",
        invoice.document_id,
        source.document_id,
        invoice.subtotal_ht,
        invoice.total_ttc,
        totals.source.value,
    )
    return AssembledDocument(document=invoice, lines=projection.lines, totals=totals, warnings=warnings)


__all__ = ["SourceLoader", "AssemblyOverrides", "AssembledDocument", "resolve_vat", "assemble"]
