"""Project the lines of a source document onto a target document.

Structured source lines are mapped one to one. A source without lines but with
a usable aggregate amount yields exactly one synthesized line carrying that
amount. A source with neither yields no line at all and a warning, never a
zero-valued placeholder line.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional, Sequence, Tuple
from uuid import uuid4

from . import log
from .constants import WarningCode
from .data_manager import DocumentRow, LineRow
from .totals import price_line, round_money, sanitize_vat_rate


SYNTHESIZED_LABEL = "Prestations selon devis {number}"


@dataclass(frozen=True)
class Projection:
    """Lines produced for the target document and the anomalies met."""

    lines: Tuple[LineRow, ...]
    warnings: Tuple[WarningCode, ...] = ()


def _new_line_id() -> str:
    return str(uuid4())


def aggregate_amount(source: DocumentRow, *, vat_exempt: bool) -> Optional[Decimal]:
    """Return the first usable tax-exclusive aggregate carried by ``source``.

    Under VAT exemption the tax-inclusive total equals the tax-exclusive one,
    so it is tried first. ``None`` and zero count as missing.
    """

    candidates = []
    if vat_exempt:
        candidates.append(source.total_ttc)
    candidates.extend((source.subtotal_ht, source.estimated_amount))
    for candidate in candidates:
        if candidate is not None and candidate != 0:
            return round_money(candidate)
    return None


def project(
    source_lines: Sequence[LineRow],
    aggregate: DocumentRow,
    *,
    vat_exempt: bool,
    rate_override: Optional[Decimal] = None,
    target_document_id: Optional[str] = None,
    line_id_factory: Callable[[], str] = _new_line_id,
) -> Projection:
    """Build the target lines for a document derived from ``aggregate``.

    Args:
        source_lines (Sequence[LineRow]): Structured lines of the source
            document, possibly empty.
        aggregate (DocumentRow): Source document, used for its aggregate
            amounts, description, number and VAT rate when no lines exist.
        vat_exempt (bool): Exemption flag of the target document.
        rate_override (Decimal | None): VAT rate imposed by the caller. When
            ``None`` each mapped line keeps its own rate.
        target_document_id (str | None): Identifier the new lines belong to.
            Defaults to the source document identifier.
        line_id_factory (Callable[[], str]): Generator of new line ids.

    Returns:
        Projection: Priced target lines plus any warning raised.
    """

    document_id = target_document_id or aggregate.document_id

    if source_lines:
        projected = []
        line_warnings: list[WarningCode] = []
        for index, line in enumerate(sorted(source_lines, key=lambda item: item.position), start=1):
            if rate_override is not None:
                rate = rate_override
            else:
                rate, flagged = sanitize_vat_rate(line.vat_rate)
                line_warnings.extend(code for code in flagged if code not in line_warnings)
            projected.append(
                price_line(
                    LineRow(
                        line_id=line_id_factory(),
                        document_id=document_id,
                        position=index,
                        label=line.label,
                        quantity=line.quantity,
                        unit_price_ht=line.unit_price_ht,
                        vat_rate=rate,
                        category=line.category,
                        unit=line.unit,
                        description=line.description,
                    ),
                    vat_exempt=vat_exempt,
                )
            )
        log.debug("Projected %d line(s) from document %s", len(projected), aggregate.document_id)
        return Projection(lines=tuple(projected), warnings=tuple(line_warnings))

    amount = aggregate_amount(aggregate, vat_exempt=vat_exempt)
    if amount is None:
        log.warning("Document %s has neither lines nor an aggregate amount", aggregate.document_id)
        return Projection(lines=(), warnings=(WarningCode.NO_MONETARY_DATA,))

    warnings: Tuple[WarningCode, ...] = ()
    if rate_override is not None:
        rate = rate_override
    else:
        rate, warnings = sanitize_vat_rate(aggregate.vat_rate)

    label = aggregate.description or SYNTHESIZED_LABEL.format(number=aggregate.number or aggregate.document_id)
    line = price_line(
        LineRow(
            line_id=line_id_factory(),
            document_id=document_id,
            position=1,
            label=label,
            quantity=Decimal("1"),
            unit_price_ht=amount,
            vat_rate=rate,
        ),
        vat_exempt=vat_exempt,
    )
    log.info("Synthesized one line of %s HT for document %s", amount, aggregate.document_id)
    return Projection(lines=(line,), warnings=warnings + (WarningCode.LINES_SYNTHESIZED,))


__all__ = ["SYNTHESIZED_LABEL", "Projection", "aggregate_amount", "project"]
