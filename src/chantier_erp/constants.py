"""Enumerations and defaults shared across the chantier ERP modules.

Collections, document statuses and warning codes live here so that the data
access layer, the totals engine, the cache and the CLI agree on a single set of
identifiers.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

DEFAULT_VAT_RATE = Decimal("0.20")
DEFAULT_PAYMENT_TERMS_DAYS = 30
DEFAULT_CURRENCY = "EUR"


class DocumentKind(str, Enum):
    """Enumerate the financial document families handled by the core."""

    QUOTE = "quote"
    INVOICE = "invoice"


class Collection(str, Enum):
    """Enumerate the cached entity collections."""

    QUOTES = "quotes"
    INVOICES = "invoices"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    QUOTES = "Quotes"
    QUOTE_LINES = "QuoteLines"
    INVOICES = "Invoices"
    INVOICE_LINES = "InvoiceLines"


class QuoteStatus(str, Enum):
    """Lifecycle states of a quote."""

    DRAFT = "draft"
    SENT = "sent"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"
    SIGNED = "signed"
    PAID = "paid"


class InvoiceStatus(str, Enum):
    """Lifecycle states of an invoice."""

    DRAFT = "draft"
    SENT = "sent"
    SIGNED = "signed"
    PAID = "paid"
    CANCELLED = "cancelled"


class LineCategory(str, Enum):
    """Nature of a billable line."""

    LABOR = "labor"
    MATERIAL = "material"
    SERVICE = "service"
    OTHER = "other"


class TotalsSource(str, Enum):
    """Which input a document's totals were derived from."""

    LINES = "lines"
    TTC_OVERRIDE = "ttc_override"
    CARRIED_SUBTOTAL = "carried_subtotal"
    ESTIMATED_AMOUNT = "estimated_amount"
    NONE = "none"


class WarningCode(str, Enum):
    """Data-quality anomalies reported alongside results instead of raised."""

    NO_MONETARY_DATA = "no_monetary_data"
    VAT_RATE_DEFAULTED = "vat_rate_defaulted"
    VAT_RATE_NORMALIZED = "vat_rate_normalized"
    LINES_SYNTHESIZED = "lines_synthesized"
    PARTIAL_PERSISTENCE = "partial_persistence"
    SCHEMA_DRIFT = "schema_drift"


TERMINAL_STATUSES: dict[DocumentKind, frozenset[str]] = {
    DocumentKind.QUOTE: frozenset(
        {QuoteStatus.SIGNED.value, QuoteStatus.PAID.value, QuoteStatus.REJECTED.value}
    ),
    DocumentKind.INVOICE: frozenset({InvoiceStatus.PAID.value, InvoiceStatus.CANCELLED.value}),
}

DOCUMENT_SHEETS: dict[DocumentKind, SheetName] = {
    DocumentKind.QUOTE: SheetName.QUOTES,
    DocumentKind.INVOICE: SheetName.INVOICES,
}

LINE_SHEETS: dict[DocumentKind, SheetName] = {
    DocumentKind.QUOTE: SheetName.QUOTE_LINES,
    DocumentKind.INVOICE: SheetName.INVOICE_LINES,
}

COLLECTIONS: dict[DocumentKind, Collection] = {
    DocumentKind.QUOTE: Collection.QUOTES,
    DocumentKind.INVOICE: Collection.INVOICES,
}

NUMBER_PREFIXES: dict[DocumentKind, str] = {
    DocumentKind.QUOTE: "DEVIS",
    DocumentKind.INVOICE: "FACTURE",
}


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_VAT_RATE",
    "DEFAULT_PAYMENT_TERMS_DAYS",
    "DEFAULT_CURRENCY",
    "DocumentKind",
    "Collection",
    "SheetName",
    "QuoteStatus",
    "InvoiceStatus",
    "LineCategory",
    "TotalsSource",
    "WarningCode",
    "TERMINAL_STATUSES",
    "DOCUMENT_SHEETS",
    "LINE_SHEETS",
    "COLLECTIONS",
    "NUMBER_PREFIXES",
]
