"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from decimal import Decimal
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from chantier_erp import constants, data_manager
from chantier_erp.constants import DocumentKind, SheetName
from chantier_erp.errors import SchemaDrift, SourceNotFound


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    result = data_manager.find_config_file(config_file)
    assert result == config_file


def test_find_config_file_discovers_in_parent(tmp_path, monkeypatch):
    """Auto-discovery should walk up from the working directory."""

    config_file = tmp_path / "config.ini"
    config_file.write_text("[System]\nDataFile=chantier_master.xlsx")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    result = data_manager.find_config_file()
    assert result == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    """read_config should return a populated ConfigParser."""

    parser = data_manager.read_config(config_file)
    assert parser.get("System", "CompanyName") == "Batiment Test"
    assert parser.get("Defaults", "VatRate") == "0.20"


def test_read_config_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    parser = configparser.ConfigParser()
    bundle = config_factory(make_relative=True, vat_rate="0.10", vat_exempt="true")
    parser.read(bundle.config_path)
    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)
    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()
    assert settings.company_name == "Batiment Test"
    assert settings.default_vat_rate == Decimal("0.10")
    assert settings.default_vat_exempt is True
    assert settings.payment_terms_days == 30


def test_parse_settings_defaults_are_optional(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile=/tmp/x.xlsx\nCompanyName=ACME\nSchemaVersion=1.0.0\n")

    settings = data_manager.parse_settings(parser, base_path=tmp_path)

    assert settings.default_vat_rate == constants.DEFAULT_VAT_RATE
    assert settings.default_vat_exempt is False
    assert settings.payment_terms_days == constants.DEFAULT_PAYMENT_TERMS_DAYS


def test_parse_settings_requires_expected_sections(tmp_path):
    """Missing keys should result in a descriptive KeyError."""

    parser = configparser.ConfigParser()
    parser.read_string("[Other]\nvalue=1")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_parse_settings_rejects_bad_vat_rate(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile=x.xlsx\nCompanyName=ACME\nSchemaVersion=1.0.0\n[Defaults]\nVatRate=twenty\n"
    )
    with pytest.raises(ValueError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_open_workbook_returns_openpyxl_instance(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    assert isinstance(workbook, OpenpyxlWorkbook)
    assert set(workbook.sheetnames) == {member.value for member in SheetName}


def test_open_workbook_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_refresh_workbook_ignores_unsaved_changes(master_workbook_path, document_factory):
    """A refresh re-reads the file, so unsaved in-memory rows are not there."""

    workbook = data_manager.open_workbook(master_workbook_path)
    document = document_factory()
    data_manager.insert_row(workbook, SheetName.QUOTES.value, data_manager.serialize_document(document))

    refreshed = data_manager.refresh_workbook(master_workbook_path)
    assert refreshed is not workbook
    assert list(data_manager.iter_documents(refreshed, DocumentKind.QUOTE)) == []

    data_manager.save_workbook(workbook, master_workbook_path)
    refreshed = data_manager.refresh_workbook(master_workbook_path)
    assert [row.document_id for row in data_manager.iter_documents(refreshed, DocumentKind.QUOTE)] == [
        document.document_id
    ]


def test_document_survives_disk_round_trip(master_workbook_path, document_factory):
    workbook = data_manager.open_workbook(master_workbook_path)
    document = document_factory(
        subtotal_ht=Decimal("250.00"),
        total_vat=Decimal("50.00"),
        total_ttc=Decimal("300.00"),
        vat_exempt=True,
        description="Terrasse",
        currency="EUR",
    )
    data_manager.insert_row(workbook, SheetName.QUOTES.value, data_manager.serialize_document(document))
    data_manager.save_workbook(workbook, master_workbook_path)

    reloaded = data_manager.open_workbook(master_workbook_path)
    [row] = list(data_manager.iter_documents(reloaded, DocumentKind.QUOTE))

    assert row.document_id == document.document_id
    assert row.total_ttc == Decimal("300.00")
    assert row.vat_rate == Decimal("0.20")
    assert row.vat_exempt is True
    assert row.description == "Terrasse"
    assert row.estimated_amount is None


def test_insert_row_rejects_unknown_columns(memory_workbook_factory):
    workbook = memory_workbook_factory({"Quotes": ["DocumentID", "Number"]})

    with pytest.raises(SchemaDrift) as excinfo:
        data_manager.insert_row(workbook, "Quotes", {"DocumentID": "q1", "Currency": "EUR"})

    assert excinfo.value.sheet == "Quotes"
    assert excinfo.value.columns == ("Currency",)
    assert workbook["Quotes"].max_row == 1


def test_update_row_writes_selected_columns(memory_workbook_factory):
    workbook = memory_workbook_factory({"Quotes": ["DocumentID", "Number", "Status"]})
    data_manager.insert_row(workbook, "Quotes", {"DocumentID": "q1", "Number": "DEVIS-2026-001", "Status": "draft"})

    data_manager.update_row(workbook, "Quotes", "DocumentID", "q1", {"Status": "sent"})

    assert list(workbook["Quotes"].iter_rows(min_row=2, values_only=True)) == [("q1", "DEVIS-2026-001", "sent")]


def test_update_row_missing_raises(memory_workbook_factory):
    workbook = memory_workbook_factory({"Quotes": ["DocumentID", "Status"]})

    with pytest.raises(KeyError):
        data_manager.update_row(workbook, "Quotes", "DocumentID", "nope", {"Status": "sent"})


def test_update_row_unknown_column_leaves_row_untouched(memory_workbook_factory):
    workbook = memory_workbook_factory({"Quotes": ["DocumentID", "Status"]})
    data_manager.insert_row(workbook, "Quotes", {"DocumentID": "q1", "Status": "draft"})

    with pytest.raises(SchemaDrift):
        data_manager.update_row(workbook, "Quotes", "DocumentID", "q1", {"Status": "sent", "PaidAt": "now"})

    assert workbook["Quotes"]["B2"].value == "draft"


def test_locate_row_returns_row_index(memory_workbook_factory):
    workbook = memory_workbook_factory({"Quotes": ["DocumentID"]})
    for key in ("a", "b", "c"):
        data_manager.insert_row(workbook, "Quotes", {"DocumentID": key})

    assert data_manager.locate_row(workbook, "Quotes", "DocumentID", "b") == 3
    assert data_manager.locate_row(workbook, "Quotes", "DocumentID", "z") is None
    with pytest.raises(KeyError):
        data_manager.locate_row(workbook, "Quotes", "Missing", "a")


def test_delete_rows_removes_every_match(memory_workbook_factory):
    workbook = memory_workbook_factory({"QuoteLines": ["LineID", "DocumentID"]})
    for line_id, document_id in (("l1", "q1"), ("l2", "q2"), ("l3", "q1"), ("l4", "q1")):
        data_manager.insert_row(workbook, "QuoteLines", {"LineID": line_id, "DocumentID": document_id})

    removed = data_manager.delete_rows(workbook, "QuoteLines", "DocumentID", "q1")

    assert removed == 3
    assert list(workbook["QuoteLines"].iter_rows(min_row=2, values_only=True)) == [("l2", "q2")]


def test_iter_lines_filters_and_orders(memory_workbook_factory, line_factory):
    workbook = memory_workbook_factory()
    for line in (
        line_factory(document_id="q1", position=2, label="B"),
        line_factory(document_id="q2", position=1, label="X"),
        line_factory(document_id="q1", position=1, label="A"),
    ):
        data_manager.insert_row(workbook, SheetName.QUOTE_LINES.value, data_manager.serialize_line(line))

    lines = data_manager.iter_lines(workbook, DocumentKind.QUOTE, "q1")

    assert [line.label for line in lines] == ["A", "B"]


def test_read_document_returns_lines_or_empty(memory_workbook_factory, document_factory):
    workbook = memory_workbook_factory()
    document = document_factory()
    data_manager.insert_row(workbook, SheetName.QUOTES.value, data_manager.serialize_document(document))

    loaded, lines = data_manager.read_document(workbook, DocumentKind.QUOTE, document.document_id)

    assert loaded == document
    assert lines == []


def test_read_document_unknown_raises(memory_workbook_factory):
    with pytest.raises(SourceNotFound):
        data_manager.read_document(memory_workbook_factory(), DocumentKind.INVOICE, "missing")


def test_deserialize_document_tolerates_legacy_sheet():
    values = {
        "DocumentID": "q1",
        "Number": "DEVIS-2026-001",
        "ClientRef": "Martin",
        "Status": "sent",
        "VatRate": 20,
        "SubtotalHT": 100.0,
        "TotalVAT": 20,
        "TotalTTC": 120,
        "CreatedAt": "2026-01-01",
    }

    row = data_manager.deserialize_document(values, DocumentKind.INVOICE)

    assert row.kind is DocumentKind.INVOICE
    assert row.vat_rate == Decimal("20")
    assert row.subtotal_ht == Decimal("100.0")
    assert row.vat_exempt is False
    assert row.currency is None


def test_deserialize_document_reads_text_booleans():
    row = data_manager.deserialize_document({"DocumentID": "q1", "VatExempt": "TRUE"}, DocumentKind.QUOTE)
    assert row.vat_exempt is True


def test_document_is_terminal(document_factory):
    assert document_factory(status="signed").is_terminal
    assert not document_factory(status="sent").is_terminal
    assert document_factory(kind=DocumentKind.INVOICE, status="cancelled").is_terminal
    assert not document_factory(kind=DocumentKind.INVOICE, status="signed").is_terminal


def test_serialize_document_covers_every_column(document_factory):
    serialized = data_manager.serialize_document(document_factory())

    assert list(serialized) == [column for _, column in data_manager.DOCUMENT_FIELDS]


def test_legacy_workbook_lacks_optional_columns(legacy_workbook_path):
    workbook = openpyxl.load_workbook(legacy_workbook_path)

    columns = data_manager.sheet_columns(workbook, SheetName.INVOICES.value)

    assert columns == frozenset(data_manager.MANDATORY_DOCUMENT_COLUMNS)
    assert not columns & set(data_manager.OPTIONAL_DOCUMENT_COLUMNS)
