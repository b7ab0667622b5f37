"""Monetary totals for lines and documents.

All amounts are :class:`~decimal.Decimal` values rounded to the cent with
``ROUND_HALF_UP`` at the point they are computed. Line totals are derived from
quantity, unit price and VAT rate; document totals are derived from the first
usable input in :data:`DOCUMENT_RESOLVERS`.

VAT exemption (or a resolved document rate of exactly zero) forces the VAT
amount to zero and the tax-inclusive total to the tax-exclusive one, whatever
else the inputs say. Lines of such a document are priced without VAT as well,
so document totals stay equal to the sum of their line totals.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Callable, Optional, Sequence, Tuple

from . import log
from .constants import DEFAULT_VAT_RATE, TotalsSource, WarningCode
from .data_manager import LineRow
from .errors import InvalidVatRate


CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def round_money(value: object) -> Decimal:
    """Round ``value`` to two decimal places using half-up rounding."""

    amount = value if isinstance(value, Decimal) else Decimal(str(value))
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def _as_decimal(value: object) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _is_empty(value: Optional[object]) -> bool:
    return value is None or _as_decimal(value) == 0


@dataclass(frozen=True)
class LineTotals:
    """Derived amounts of a single line."""

    total_ht: Decimal
    total_vat: Decimal
    total_ttc: Decimal


@dataclass(frozen=True)
class Resolution:
    """Amounts produced by one document resolver."""

    subtotal_ht: Decimal
    total_vat: Decimal
    total_ttc: Decimal
    source: TotalsSource


@dataclass(frozen=True)
class DocumentTotals:
    """Document amounts together with where they came from."""

    subtotal_ht: Decimal
    total_vat: Decimal
    total_ttc: Decimal
    source: TotalsSource
    warnings: Tuple[WarningCode, ...] = ()

    @property
    def is_zero(self) -> bool:
        return self.subtotal_ht == 0 and self.total_vat == 0 and self.total_ttc == 0


@dataclass(frozen=True)
class TotalsInputs:
    """Possibly-missing inputs a document's totals may be derived from."""

    lines: Sequence[LineRow]
    vat_rate: Decimal
    vat_exempt: bool = False
    ttc_override: Optional[Decimal] = None
    carried_subtotal: Optional[Decimal] = None
    estimated_amount: Optional[Decimal] = None

    @property
    def charges_vat(self) -> bool:
        return not waives_vat(self.vat_exempt, self.vat_rate)


def validate_line(label: str, quantity: object, unit_price_ht: object, vat_rate: object) -> None:
    """Validate user-supplied line values.

    Raises:
        ValueError: If the label is blank, the quantity or unit price is
            negative, or the VAT rate lies outside ``[0, 1]``.
    """

    if not label or not str(label).strip():
        raise ValueError("Line label is required")
    if _as_decimal(quantity) < 0:
        raise ValueError(f"Quantity must be positive or zero, got {quantity}")
    if _as_decimal(unit_price_ht) < 0:
        raise ValueError(f"Unit price must be positive or zero, got {unit_price_ht}")
    rate = _as_decimal(vat_rate)
    if rate < 0 or rate > 1:
        raise ValueError(f"VAT rate must be between 0 and 1, got {vat_rate}")


def compute_line(quantity: object, unit_price_ht: object, vat_rate: object, vat_exempt: bool = False) -> LineTotals:
    """Compute the HT, VAT and TTC amounts of one line.

    HT is rounded first, VAT is computed from the rounded HT and rounded in
    turn, and TTC is their exact sum so that ``TTC == HT + VAT`` always holds
    to the cent.

    Args:
        quantity: Number of units, zero or more.
        unit_price_ht: Tax-exclusive price of one unit, zero or more.
        vat_rate: VAT rate as a fraction in ``[0, 1]``.
        vat_exempt (bool): When ``True`` no VAT is charged.

    Returns:
        LineTotals: Rounded line amounts.

    Raises:
        ValueError: If any numeric input is out of range.
    """

    quantity = _as_decimal(quantity)
    unit_price_ht = _as_decimal(unit_price_ht)
    rate = _as_decimal(vat_rate)
    if quantity < 0 or unit_price_ht < 0:
        raise ValueError("Quantity and unit price must be positive or zero")
    if rate < 0 or rate > 1:
        raise ValueError(f"VAT rate must be between 0 and 1, got {vat_rate}")

    total_ht = round_money(quantity * unit_price_ht)
    if vat_exempt or rate == 0:
        total_vat = ZERO
    else:
        total_vat = round_money(total_ht * rate)
    return LineTotals(total_ht=total_ht, total_vat=total_vat, total_ttc=total_ht + total_vat)


def price_line(line: LineRow, *, vat_exempt: bool = False) -> LineRow:
    """Return ``line`` with its derived totals recomputed."""

    totals = compute_line(line.quantity, line.unit_price_ht, line.vat_rate, vat_exempt)
    return replace(line, total_ht=totals.total_ht, total_vat=totals.total_vat, total_ttc=totals.total_ttc)


def waives_vat(vat_exempt: bool, vat_rate: object) -> bool:
    """Whether a document charges no VAT: exempt, or rated exactly zero."""

    return bool(vat_exempt) or _as_decimal(vat_rate) == 0


def price_document_lines(lines: Sequence[LineRow], *, vat_rate: object, vat_exempt: bool) -> Tuple[LineRow, ...]:
    """Price the lines of a document rated ``vat_rate``.

    Lines keep their own rate unless the document waives VAT altogether, in
    which case every line is priced without VAT.
    """

    waived = waives_vat(vat_exempt, vat_rate)
    return tuple(price_line(line, vat_exempt=waived) for line in lines)


def _from_ht(amount: object, inputs: TotalsInputs, source: TotalsSource) -> Resolution:
    subtotal_ht = round_money(amount)
    total_vat = round_money(subtotal_ht * inputs.vat_rate) if inputs.charges_vat else ZERO
    return Resolution(subtotal_ht, total_vat, subtotal_ht + total_vat, source)


def resolve_from_lines(inputs: TotalsInputs) -> Optional[Resolution]:
    """Sum the recomputed line totals; already-rounded sums are not re-rounded.

    A document that charges no VAT (see :func:`waives_vat`) zeroes the VAT of
    every line, which is how :func:`price_document_lines` prices them too.
    """

    if not inputs.lines:
        return None
    exempt = not inputs.charges_vat
    subtotal_ht = ZERO
    total_vat = ZERO
    for line in inputs.lines:
        totals = compute_line(line.quantity, line.unit_price_ht, line.vat_rate, exempt)
        subtotal_ht += totals.total_ht
        total_vat += totals.total_vat
    return Resolution(subtotal_ht, total_vat, subtotal_ht + total_vat, TotalsSource.LINES)


def resolve_from_ttc_override(inputs: TotalsInputs) -> Optional[Resolution]:
    """Back-compute HT and VAT from a user-entered tax-inclusive total.

    VAT is the difference ``TTC - HT`` rather than ``HT * rate`` so that the
    figure the user typed is reproduced exactly.
    """

    if _is_empty(inputs.ttc_override):
        return None
    total_ttc = round_money(inputs.ttc_override)
    if not inputs.charges_vat:
        return Resolution(total_ttc, ZERO, total_ttc, TotalsSource.TTC_OVERRIDE)
    subtotal_ht = round_money(total_ttc / (1 + inputs.vat_rate))
    return Resolution(subtotal_ht, total_ttc - subtotal_ht, total_ttc, TotalsSource.TTC_OVERRIDE)


def resolve_from_carried_subtotal(inputs: TotalsInputs) -> Optional[Resolution]:
    """Use a subtotal carried over from an upstream document."""

    if _is_empty(inputs.carried_subtotal):
        return None
    return _from_ht(inputs.carried_subtotal, inputs, TotalsSource.CARRIED_SUBTOTAL)


def resolve_from_estimated_amount(inputs: TotalsInputs) -> Optional[Resolution]:
    """Use the legacy single estimated amount."""

    if _is_empty(inputs.estimated_amount):
        return None
    return _from_ht(inputs.estimated_amount, inputs, TotalsSource.ESTIMATED_AMOUNT)


Resolver = Callable[[TotalsInputs], Optional[Resolution]]

# Evaluated in order; the first resolver returning a value wins.
DOCUMENT_RESOLVERS: Tuple[Resolver, ...] = (
    resolve_from_lines,
    resolve_from_ttc_override,
    resolve_from_carried_subtotal,
    resolve_from_estimated_amount,
)


def compute_document(
    lines: Sequence[LineRow],
    *,
    vat_rate: object,
    vat_exempt: bool = False,
    ttc_override: Optional[object] = None,
    carried_subtotal: Optional[object] = None,
    estimated_amount: Optional[object] = None,
) -> DocumentTotals:
    """Derive a document's totals from the first usable input.

    Inputs are tried in the order of :data:`DOCUMENT_RESOLVERS`: structured
    lines, a user-entered TTC, a carried-over subtotal and finally the legacy
    estimated amount. ``None`` and zero both count as missing. When nothing is
    usable the totals are zero and the result carries
    :attr:`WarningCode.NO_MONETARY_DATA`; no amount is ever invented.

    Args:
        lines (Sequence[LineRow]): Structured lines; may be empty.
        vat_rate: Document VAT rate as a fraction.
        vat_exempt (bool): VAT exemption flag of the document.
        ttc_override: Optional tax-inclusive total entered by the user.
        carried_subtotal: Optional HT amount carried from an upstream
            document.
        estimated_amount: Optional legacy HT amount.

    Returns:
        DocumentTotals: Rounded totals and the input they were derived from.
    """

    inputs = TotalsInputs(
        lines=tuple(lines),
        vat_rate=_as_decimal(vat_rate),
        vat_exempt=vat_exempt,
        ttc_override=None if ttc_override is None else _as_decimal(ttc_override),
        carried_subtotal=None if carried_subtotal is None else _as_decimal(carried_subtotal),
        estimated_amount=None if estimated_amount is None else _as_decimal(estimated_amount),
    )
    for resolver in DOCUMENT_RESOLVERS:
        resolution = resolver(inputs)
        if resolution is not None:
            return DocumentTotals(
                subtotal_ht=resolution.subtotal_ht,
                total_vat=resolution.total_vat,
                total_ttc=resolution.total_ttc,
                source=resolution.source,
            )

    log.debug("No monetary input available; document totals default to zero")
    return DocumentTotals(
        subtotal_ht=ZERO,
        total_vat=ZERO,
        total_ttc=ZERO,
        source=TotalsSource.NONE,
        warnings=(WarningCode.NO_MONETARY_DATA,),
    )


def _parse_rate(raw: object) -> Decimal:
    if isinstance(raw, bool):
        raise InvalidVatRate(raw)
    try:
        rate = _as_decimal(str(raw).strip().rstrip("%") if isinstance(raw, str) else raw)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise InvalidVatRate(raw) from exc
    if not rate.is_finite() or rate < 0 or rate > 100:
        raise InvalidVatRate(raw)
    return rate


def sanitize_vat_rate(
    raw: object,
    *,
    default: Decimal = DEFAULT_VAT_RATE,
) -> Tuple[Decimal, Tuple[WarningCode, ...]]:
    """Turn an upstream VAT rate into a usable fraction.

    ``None`` yields ``default``. A value above 1 (and at most 100) was stored
    as a percentage and is divided by 100. A positive fraction whose
    percentage is below 1 is a unit mix-up and is replaced by ``default``.
    Zero is a legitimate rate. Anything unparseable or out of range is logged
    and replaced by ``default``; this function never raises.

    Returns:
        tuple[Decimal, tuple[WarningCode, ...]]: The rate to use and any
            anomaly detected while sanitizing it.
    """

    if raw is None or raw == "":
        return default, ()
    try:
        rate = _parse_rate(raw)
    except InvalidVatRate as exc:
        log.warning("%s; using default rate %s", exc, default)
        return default, (WarningCode.VAT_RATE_DEFAULTED,)

    if rate == 0:
        return Decimal("0"), ()
    if rate > 1:
        normalized = rate / 100
        log.warning("VAT rate %s looks like a percentage; using %s", raw, normalized)
        return normalized, (WarningCode.VAT_RATE_NORMALIZED,)
    if rate * 100 < 1:
        log.warning("VAT rate %s is implausibly low; using default rate %s", raw, default)
        return default, (WarningCode.VAT_RATE_DEFAULTED,)
    return rate, ()


__all__ = [
    "CENT",
    "ZERO",
    "round_money",
    "LineTotals",
    "Resolution",
    "DocumentTotals",
    "TotalsInputs",
    "validate_line",
    "compute_line",
    "price_line",
    "waives_vat",
    "price_document_lines",
    "resolve_from_lines",
    "resolve_from_ttc_override",
    "resolve_from_carried_subtotal",
    "resolve_from_estimated_amount",
    "DOCUMENT_RESOLVERS",
    "compute_document",
    "sanitize_vat_rate",
]
