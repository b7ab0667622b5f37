"""Workbook-backed store for quotes, invoices and their lines.

The master workbook (``chantier_master.xlsx`` by default) holds one sheet per
collection: ``Quotes``, ``QuoteLines``, ``Invoices`` and ``InvoiceLines``. This
module owns everything that touches it directly: locating and parsing
``config.ini``, opening and saving the file, and reading or writing rows by
header name. Business rules live in :mod:`chantier_erp.core_logic`.

Every write is mapped through the header row of the target sheet. A workbook
created by an older release may lack optional columns; writing a value for such
a column raises :class:`~chantier_erp.errors.SchemaDrift` instead of silently
dropping it, so that callers can negotiate a reduced payload.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet
import openpyxl

from . import log
from .constants import (
    DEFAULT_PAYMENT_TERMS_DAYS,
    DEFAULT_VAT_RATE,
    DOCUMENT_SHEETS,
    LINE_SHEETS,
    TERMINAL_STATUSES,
    DocumentKind,
    SheetName,
)
from .errors import SchemaDrift, SourceNotFound


CONFIG_FILE_NAME = "config.ini"

# (attribute, column header) pairs in worksheet order.
DOCUMENT_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("document_id", "DocumentID"),
    ("number", "Number"),
    ("client_ref", "ClientRef"),
    ("status", "Status"),
    ("vat_rate", "VatRate"),
    ("subtotal_ht", "SubtotalHT"),
    ("total_vat", "TotalVAT"),
    ("total_ttc", "TotalTTC"),
    ("created_at", "CreatedAt"),
    ("vat_exempt", "VatExempt"),
    ("description", "Description"),
    ("estimated_amount", "EstimatedAmount"),
    ("ttc_override", "TtcOverride"),
    ("currency", "Currency"),
    ("source_id", "SourceID"),
    ("due_date", "DueDate"),
    ("paid_at", "PaidAt"),
    ("updated_at", "UpdatedAt"),
)

LINE_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("line_id", "LineID"),
    ("document_id", "DocumentID"),
    ("position", "Position"),
    ("label", "Label"),
    ("quantity", "Quantity"),
    ("unit_price_ht", "UnitPriceHT"),
    ("vat_rate", "VatRate"),
    ("total_ht", "TotalHT"),
    ("total_vat", "TotalVAT"),
    ("total_ttc", "TotalTTC"),
    ("category", "Category"),
    ("unit", "Unit"),
    ("description", "Description"),
)

# Columns every release of the workbook has carried.
MANDATORY_DOCUMENT_COLUMNS: Tuple[str, ...] = tuple(column for _, column in DOCUMENT_FIELDS[:9])
OPTIONAL_DOCUMENT_COLUMNS: Tuple[str, ...] = tuple(column for _, column in DOCUMENT_FIELDS[9:])
MANDATORY_LINE_COLUMNS: Tuple[str, ...] = tuple(column for _, column in LINE_FIELDS[:10])
OPTIONAL_LINE_COLUMNS: Tuple[str, ...] = tuple(column for _, column in LINE_FIELDS[10:])

DOCUMENT_KEY_COLUMN = "DocumentID"
LINE_KEY_COLUMN = "LineID"


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    company_name: str
    schema_version: str
    default_vat_rate: Decimal = DEFAULT_VAT_RATE
    default_vat_exempt: bool = False
    payment_terms_days: int = DEFAULT_PAYMENT_TERMS_DAYS


@dataclass(frozen=True)
class DocumentRow:
    """In-memory view of a row from the ``Quotes`` or ``Invoices`` sheet."""

    document_id: str
    kind: DocumentKind
    number: Optional[str]
    client_ref: str
    status: str
    vat_rate: Decimal
    subtotal_ht: Decimal
    total_vat: Decimal
    total_ttc: Decimal
    created_at: str
    vat_exempt: bool = False
    description: Optional[str] = None
    estimated_amount: Optional[Decimal] = None
    ttc_override: Optional[Decimal] = None
    currency: Optional[str] = None
    source_id: Optional[str] = None
    due_date: Optional[str] = None
    paid_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        """Whether the document reached a status that freezes its totals."""
        return self.status in TERMINAL_STATUSES[self.kind]


@dataclass(frozen=True)
class LineRow:
    """In-memory view of a row from a ``QuoteLines`` or ``InvoiceLines`` sheet."""

    line_id: str
    document_id: str
    position: int
    label: str
    quantity: Decimal
    unit_price_ht: Decimal
    vat_rate: Decimal
    total_ht: Decimal = Decimal("0.00")
    total_vat: Decimal = Decimal("0.00")
    total_ttc: Decimal = Decimal("0.00")
    category: Optional[str] = None
    unit: Optional[str] = None
    description: Optional[str] = None


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``. The first match that exists on disk wins.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` entries are mandatory. ``[Defaults]`` entries are optional and
    fall back to the package defaults (20 % VAT, no exemption, 30 day terms).
    Relative ``DataFile`` paths are anchored to ``base_path`` (or the current
    working directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing.
        ValueError: If an optional default cannot be parsed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        company_name = parser.get("System", "CompanyName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    vat_rate_raw = parser.get("Defaults", "VatRate", fallback=None)
    try:
        default_vat_rate = Decimal(vat_rate_raw) if vat_rate_raw else DEFAULT_VAT_RATE
    except InvalidOperation as exc:
        raise ValueError(f"Invalid Defaults.VatRate: {vat_rate_raw!r}") from exc
    default_vat_exempt = parser.getboolean("Defaults", "VatExempt", fallback=False)
    payment_terms_days = parser.getint("Defaults", "PaymentTermsDays", fallback=DEFAULT_PAYMENT_TERMS_DAYS)

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        company_name=company_name,
        schema_version=schema_version,
        default_vat_rate=default_vat_rate,
        default_vat_exempt=default_vat_exempt,
        payment_terms_days=payment_terms_days,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the master workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk at an explicitly provided destination.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the serialized
            workbook. Parent directories are created on demand.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes.

    This is the server-authoritative re-read: whatever was persisted last is
    what comes back, regardless of pending writes on other workbook handles.
    """

    return open_workbook(data_file)


def header_map(sheet: Worksheet) -> Dict[str, int]:
    """Map header titles of ``sheet`` to their 1-based column index."""

    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1]) if cell.value is not None}


def sheet_columns(workbook: Workbook, sheet_name: str) -> frozenset[str]:
    """Return the set of column headers currently present on ``sheet_name``."""

    return frozenset(header_map(workbook[sheet_name]))


def iter_records(workbook: Workbook, sheet_name: str) -> Iterator[Dict[str, Any]]:
    """Yield every populated row of ``sheet_name`` as a header-keyed mapping.

    Header and fully empty rows are skipped. Columns the sheet does not carry
    are simply absent from the mapping.
    """

    sheet = workbook[sheet_name]
    columns = header_map(sheet)
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if not any(cell is not None for cell in raw):
            continue
        yield {name: raw[index - 1] if index - 1 < len(raw) else None for name, index in columns.items()}


def iter_documents(workbook: Workbook, kind: DocumentKind) -> Iterable[DocumentRow]:
    """Iterate over the document rows stored for ``kind``, in sheet order."""

    for record in iter_records(workbook, DOCUMENT_SHEETS[kind].value):
        yield deserialize_document(record, kind)


def iter_lines(workbook: Workbook, kind: DocumentKind, document_id: Optional[str] = None) -> List[LineRow]:
    """Return the line rows of ``kind`` documents, ordered by position.

    When ``document_id`` is given only the lines of that document are returned.
    """

    lines = [
        deserialize_line(record)
        for record in iter_records(workbook, LINE_SHEETS[kind].value)
        if document_id is None or str(record.get("DocumentID")) == str(document_id)
    ]
    return sorted(lines, key=lambda line: (line.document_id, line.position))


def read_document(workbook: Workbook, kind: DocumentKind, document_id: str) -> Tuple[DocumentRow, List[LineRow]]:
    """Load one document and its line items.

    A document without line items is not an error; its line list is empty.

    Raises:
        SourceNotFound: If no row carries ``document_id``.
    """

    for document in iter_documents(workbook, kind):
        if document.document_id == str(document_id):
            return document, iter_lines(workbook, kind, document.document_id)
    log.warning("Lookup failed for %s id '%s'", kind.value, document_id)
    raise SourceNotFound(kind.value, document_id)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title of the lookup column.
        key_value (str): Value to match, compared as text.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    columns = header_map(sheet)
    if key_column not in columns:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = columns[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        if cell_value is not None and str(cell_value) == str(key_value):
            return row_idx

    return None


def _require_columns(sheet_name: str, columns: Mapping[str, int], values: Mapping[str, Any]) -> None:
    missing = [field for field in values if field not in columns]
    if missing:
        log.debug("Sheet '%s' rejected columns: %s", sheet_name, ", ".join(missing))
        raise SchemaDrift(sheet_name, missing)


def insert_row(workbook: Workbook, sheet_name: str, values: Mapping[str, Any]) -> int:
    """Append a row built from a header-keyed mapping.

    Columns absent from ``values`` are left blank.

    Returns:
        int: 1-based index of the appended row.

    Raises:
        SchemaDrift: If ``values`` names a column the sheet does not have. The
            sheet is left untouched in that case.
    """

    sheet = workbook[sheet_name]
    columns = header_map(sheet)
    _require_columns(sheet_name, columns, values)

    width = max(columns.values(), default=0)
    row: List[object] = [None] * width
    for field, value in values.items():
        row[columns[field] - 1] = value
    sheet.append(row)
    return sheet.max_row


def update_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str, values: Mapping[str, Any]) -> None:
    """Update selected columns of the row whose ``key_column`` equals ``key_value``.

    Raises:
        KeyError: If no row matches.
        SchemaDrift: If ``values`` names a column the sheet does not have. No
            cell is written in that case.
    """

    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"Row not found in '{sheet_name}': {key_value}")

    sheet = workbook[sheet_name]
    columns = header_map(sheet)
    _require_columns(sheet_name, columns, values)

    for field, value in values.items():
        sheet.cell(row=row_index, column=columns[field], value=value)


def delete_rows(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> int:
    """Hard-delete every row whose ``key_column`` equals ``key_value``.

    Returns:
        int: Number of rows removed.
    """

    sheet = workbook[sheet_name]
    columns = header_map(sheet)
    if key_column not in columns:
        raise KeyError(f"Unknown column: {key_column}")
    key_col_index = columns[key_column]

    matches = [
        row_idx
        for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2)
        if row[key_col_index - 1] is not None and str(row[key_col_index - 1]) == str(key_value)
    ]
    # Bottom-up so earlier indices stay valid.
    for row_idx in reversed(matches):
        sheet.delete_rows(row_idx, 1)
    return len(matches)


def _to_decimal(raw: object, default: Optional[Decimal] = None) -> Optional[Decimal]:
    if raw is None or raw == "":
        return default
    return Decimal(str(raw))


def _to_bool(raw: object) -> bool:
    if isinstance(raw, str):
        return raw.strip().lower() in {"1", "true", "yes", "oui"}
    return bool(raw)


def _to_text(raw: object) -> Optional[str]:
    return str(raw) if raw is not None else None


def serialize_document(record: DocumentRow) -> Dict[str, object]:
    """Convert a document dataclass into a header-keyed worksheet mapping.

    Every known column is present, including optional ones that are ``None``;
    reducing the payload for an older sheet is the caller's decision.
    """

    return {column: getattr(record, attribute) for attribute, column in DOCUMENT_FIELDS}


def serialize_line(record: LineRow) -> Dict[str, object]:
    """Convert a line dataclass into a header-keyed worksheet mapping."""

    return {column: getattr(record, attribute) for attribute, column in LINE_FIELDS}


def deserialize_document(values: Mapping[str, object], kind: DocumentKind) -> DocumentRow:
    """Convert a header-keyed worksheet mapping into a document record.

    Amount columns become :class:`~decimal.Decimal` instances, identifiers are
    coerced to ``str`` and optional columns missing from an older sheet take
    their defaults.
    """

    return DocumentRow(
        document_id=str(values.get("DocumentID")),
        kind=kind,
        number=_to_text(values.get("Number")),
        client_ref=str(values.get("ClientRef") or ""),
        status=str(values.get("Status") or "draft"),
        vat_rate=_to_decimal(values.get("VatRate"), DEFAULT_VAT_RATE),
        subtotal_ht=_to_decimal(values.get("SubtotalHT"), Decimal("0.00")),
        total_vat=_to_decimal(values.get("TotalVAT"), Decimal("0.00")),
        total_ttc=_to_decimal(values.get("TotalTTC"), Decimal("0.00")),
        created_at=str(values.get("CreatedAt") or ""),
        vat_exempt=_to_bool(values.get("VatExempt")),
        description=_to_text(values.get("Description")),
        estimated_amount=_to_decimal(values.get("EstimatedAmount")),
        ttc_override=_to_decimal(values.get("TtcOverride")),
        currency=_to_text(values.get("Currency")),
        source_id=_to_text(values.get("SourceID")),
        due_date=_to_text(values.get("DueDate")),
        paid_at=_to_text(values.get("PaidAt")),
        updated_at=_to_text(values.get("UpdatedAt")),
    )


def deserialize_line(values: Mapping[str, object]) -> LineRow:
    """Convert a header-keyed worksheet mapping into a line record."""

    position_raw = values.get("Position")
    return LineRow(
        line_id=str(values.get("LineID")),
        document_id=str(values.get("DocumentID")),
        position=int(position_raw) if position_raw is not None else 0,
        label=str(values.get("Label") or ""),
        quantity=_to_decimal(values.get("Quantity"), Decimal("1")),
        unit_price_ht=_to_decimal(values.get("UnitPriceHT"), Decimal("0.00")),
        vat_rate=_to_decimal(values.get("VatRate"), DEFAULT_VAT_RATE),
        total_ht=_to_decimal(values.get("TotalHT"), Decimal("0.00")),
        total_vat=_to_decimal(values.get("TotalVAT"), Decimal("0.00")),
        total_ttc=_to_decimal(values.get("TotalTTC"), Decimal("0.00")),
        category=_to_text(values.get("Category")),
        unit=_to_text(values.get("Unit")),
        description=_to_text(values.get("Description")),
    )


def all_sheet_columns() -> Dict[str, Sequence[str]]:
    """Return the full column layout of every sheet, in worksheet order."""

    document_columns = [column for _, column in DOCUMENT_FIELDS]
    line_columns = [column for _, column in LINE_FIELDS]
    return {
        SheetName.QUOTES.value: document_columns,
        SheetName.QUOTE_LINES.value: line_columns,
        SheetName.INVOICES.value: document_columns,
        SheetName.INVOICE_LINES.value: line_columns,
    }
