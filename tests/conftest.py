"""Shared pytest fixtures for the chantier ERP test-suite.

Fixtures come in three groups: files on disk (workbooks and ``config.ini``
bundles in ``tmp_path``), in-memory rows and workbooks, and CLI command-table
stand-ins.
"""

from __future__ import annotations

import argparse
import configparser
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator, Mapping, Sequence
from unittest.mock import Mock

import openpyxl
import pytest

SRC_DIR = Path(__file__).resolve().parents[1] / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from chantier_erp import cli, constants, core_logic, data_manager  # noqa: E402
from chantier_erp.setup_excel import LEGACY_SHEET_COLUMNS, SHEET_COLUMNS, create_master_workbook  # noqa: E402


@dataclass(frozen=True)
class ConfigBundle:
    """A ``config.ini`` and the workbook it points at."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    company_name: str


@pytest.fixture(scope="session", autouse=True)
def _isolated_sys_path() -> Iterator[None]:
    saved = list(sys.path)
    yield
    sys.path[:] = saved


# ---------------------------------------------------------------------------
# Files on disk
# ---------------------------------------------------------------------------


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Build master workbooks under ``tmp_path``; ``legacy`` drops optional columns."""

    def _build(*, subdir: str | None = None, legacy: bool = False, filename: str = "chantier_master.xlsx") -> Path:
        folder = tmp_path / subdir if subdir else tmp_path
        return create_master_workbook(
            folder / filename,
            sheet_columns=LEGACY_SHEET_COLUMNS if legacy else SHEET_COLUMNS,
            overwrite=True,
        )

    return _build


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    return workbook_factory(subdir=f"full-{uuid.uuid4().hex[:8]}")


@pytest.fixture
def legacy_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    return workbook_factory(subdir=f"legacy-{uuid.uuid4().hex[:8]}", legacy=True)


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Write a ``config.ini`` next to a fresh workbook and describe both."""

    def _write(
        *,
        make_relative: bool = False,
        legacy: bool = False,
        company_name: str = "Batiment Test",
        schema_version: str = constants.EXPECTED_SCHEMA_VERSION,
        vat_rate: str = "0.20",
        vat_exempt: str = "false",
    ) -> ConfigBundle:
        name = f"site-{uuid.uuid4().hex[:8]}"
        workbook_path = workbook_factory(subdir=name, legacy=legacy)

        parser = configparser.ConfigParser()
        parser.optionxform = str
        parser["System"] = {
            "DataFile": workbook_path.name if make_relative else str(workbook_path),
            "CompanyName": company_name,
            "SchemaVersion": schema_version,
        }
        parser["Defaults"] = {"VatRate": vat_rate, "VatExempt": vat_exempt, "PaymentTermsDays": "30"}
        config_path = workbook_path.parent / data_manager.CONFIG_FILE_NAME
        with config_path.open("w", encoding="utf-8") as handle:
            parser.write(handle)

        return ConfigBundle(workbook_path.parent, config_path, workbook_path, schema_version, company_name)

    return _write


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """A context loaded through the public API, schema already checked."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# In-memory rows and workbooks
# ---------------------------------------------------------------------------


@pytest.fixture
def memory_workbook_factory() -> Callable[..., openpyxl.Workbook]:
    """Unsaved workbooks with the given ``{sheet: columns}`` layout."""

    def _build(sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS) -> openpyxl.Workbook:
        workbook = openpyxl.Workbook()
        workbook.remove(workbook.active)
        for sheet_name, columns in sheet_columns.items():
            workbook.create_sheet(title=sheet_name).append(list(columns))
        return workbook

    return _build


@pytest.fixture
def document_factory() -> Callable[..., data_manager.DocumentRow]:
    """A draft quote of ``Dupont SARL`` at 20 % VAT; keyword arguments override."""

    def _make(**overrides: object) -> data_manager.DocumentRow:
        fields = dict(
            document_id=str(uuid.uuid4()),
            kind=constants.DocumentKind.QUOTE,
            number="DEVIS-2026-001",
            client_ref="Dupont SARL",
            status="draft",
            vat_rate=Decimal("0.20"),
            subtotal_ht=Decimal("0.00"),
            total_vat=Decimal("0.00"),
            total_ttc=Decimal("0.00"),
            created_at="2026-03-02T09:00:00+00:00",
        )
        fields.update(overrides)
        return data_manager.DocumentRow(**fields)

    return _make


@pytest.fixture
def line_factory() -> Callable[..., data_manager.LineRow]:
    """Ten units of tiling at 25.00 HT; keyword arguments override."""

    def _make(**overrides: object) -> data_manager.LineRow:
        fields = dict(
            line_id=str(uuid.uuid4()),
            document_id="doc-1",
            position=1,
            label="Pose carrelage",
            quantity=Decimal("10"),
            unit_price_ht=Decimal("25.00"),
            vat_rate=Decimal("0.20"),
        )
        fields.update(overrides)
        return data_manager.LineRow(**fields)

    return _make


@pytest.fixture
def fixed_moment() -> datetime:
    return datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# CLI stand-ins
# ---------------------------------------------------------------------------


@pytest.fixture
def command_table_entry() -> tuple[str, cli.CommandSpec]:
    """A ``(name, spec)`` pair whose executor is a Mock returning 0."""

    name = "noop"
    spec = cli.CommandSpec(
        name=name,
        help_text="Do nothing.",
        register=lambda subparsers: subparsers.add_parser(name),
        execute=Mock(return_value=0),
        mutating=False,
    )
    return name, spec


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    def _spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(name, f"{name} help", lambda subparsers: subparsers.add_parser(name), lambda *_: 0)

    return [_spec(name) for name in ("alpha", "beta", "gamma")]
