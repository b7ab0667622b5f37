"""Create or upgrade the chantier ERP master workbook.

``chantier-setup`` reads ``DataFile`` from ``config.ini`` and writes a workbook
with one sheet per collection. ``--legacy`` reproduces the reduced layout of
earlier releases (mandatory columns only), mostly for tests of the schema drift
fallback. ``--upgrade`` appends every missing optional column to an existing
workbook without touching its rows.
"""

from __future__ import annotations

import argparse
import configparser
import sys
from pathlib import Path
from typing import Dict, List, Mapping, Sequence

import openpyxl
from openpyxl.styles import Font

from . import log
from .constants import SheetName
from .data_manager import (
    CONFIG_FILE_NAME,
    MANDATORY_DOCUMENT_COLUMNS,
    MANDATORY_LINE_COLUMNS,
    all_sheet_columns,
    header_map,
)


SHEET_COLUMNS: Mapping[str, Sequence[str]] = all_sheet_columns()

LEGACY_SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.QUOTES.value: MANDATORY_DOCUMENT_COLUMNS,
    SheetName.QUOTE_LINES.value: MANDATORY_LINE_COLUMNS,
    SheetName.INVOICES.value: MANDATORY_DOCUMENT_COLUMNS,
    SheetName.INVOICE_LINES.value: MANDATORY_LINE_COLUMNS,
}

HEADER_FONT = Font(bold=True)


def data_file_from_config(config_path: Path) -> Path:
    """Return the workbook path declared in ``config_path``.

    Raises:
        FileNotFoundError: If the configuration file does not exist.
        KeyError: If ``[System] DataFile`` is missing.
    """

    if not config_path.is_file():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    raw = parser.get("System", "DataFile", fallback=None)
    if not raw:
        raise KeyError("Missing required configuration entry: [System] DataFile")

    data_file = Path(raw).expanduser()
    if not data_file.is_absolute():
        data_file = config_path.parent / data_file
    return data_file.resolve()


def _write_header(worksheet, columns: Sequence[str], *, start: int = 1) -> None:
    for offset, name in enumerate(columns):
        worksheet.cell(row=1, column=start + offset, value=name).font = HEADER_FONT


def create_master_workbook(
    destination: Path,
    *,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Write an empty workbook with one header row per sheet.

    Raises:
        FileExistsError: If ``destination`` exists and ``overwrite`` is not set.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"Master workbook already exists: {destination}")

    workbook = openpyxl.Workbook()
    workbook.remove(workbook.active)
    for sheet_name, columns in sheet_columns.items():
        _write_header(workbook.create_sheet(title=sheet_name), columns)

    destination.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(destination)
    log.info("Created master workbook '%s' with %d sheet(s)", destination, len(sheet_columns))
    return destination


def upgrade_workbook(path: Path, *, sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS) -> Dict[str, List[str]]:
    """Append missing columns (and missing sheets) to an existing workbook.

    Existing columns keep their position, so rows already stored stay valid.

    Returns:
        dict[str, list[str]]: The columns added, per sheet. Empty when the
            workbook was already current.
    """

    path = path.expanduser().resolve()
    workbook = openpyxl.load_workbook(path)
    added: Dict[str, List[str]] = {}
    for sheet_name, columns in sheet_columns.items():
        if sheet_name not in workbook.sheetnames:
            _write_header(workbook.create_sheet(title=sheet_name), columns)
            added[sheet_name] = list(columns)
            continue
        worksheet = workbook[sheet_name]
        present = header_map(worksheet)
        missing = [name for name in columns if name not in present]
        if missing:
            _write_header(worksheet, missing, start=len(present) + 1)
            added[sheet_name] = missing

    if added:
        workbook.save(path)
        log.info("Upgraded workbook '%s': %s", path, ", ".join(f"{name} (+{len(cols)})" for name, cols in added.items()))
    return added


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="chantier-setup", description="Initialize the chantier ERP data file")
    parser.add_argument("--config", default=CONFIG_FILE_NAME, help="Path to config.ini (default: ./config.ini)")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--force", action="store_true", help="Replace an existing workbook.")
    mode.add_argument("--upgrade", action="store_true", help="Add missing columns to an existing workbook.")
    parser.add_argument("--legacy", action="store_true", help="Write mandatory columns only.")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for ``chantier-setup``."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()
    layout = LEGACY_SHEET_COLUMNS if args.legacy else SHEET_COLUMNS

    try:
        data_file = data_file_from_config(config_path)
        if args.upgrade:
            added = upgrade_workbook(data_file, sheet_columns=layout)
            summary = "already up to date" if not added else f"added columns to {', '.join(added)}"
            print(f"[SUCCESS] {data_file}: {summary}.")
        else:
            create_master_workbook(data_file, sheet_columns=layout, overwrite=args.force)
            print(f"[SUCCESS] Created master workbook at '{data_file}'.")
    except FileExistsError as exc:
        print(f"[ERROR] {exc}. Use --force to replace it or --upgrade to add missing columns.")
        return 1
    except (FileNotFoundError, KeyError) as exc:
        print(f"[ERROR] {exc}")
        return 1
    except OSError as exc:
        print(f"[ERROR] Unable to write workbook: {exc}")
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
