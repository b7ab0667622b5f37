"""Write documents and their lines to the workbook store.

Saves are upserts keyed on ``DocumentID`` (and ``LineID`` for lines), so
repeating a save never duplicates a row. A sheet created by an older release
may lack optional columns; the adapter then falls back from a
:class:`FullPayload` to a :class:`MinimalPayload` holding only the mandatory
columns, and writes the deferred optional values one by one, skipping those
the sheet cannot hold.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import DOCUMENT_SHEETS, LINE_SHEETS, DocumentKind, WarningCode
from .data_manager import DocumentRow, LineRow
from .errors import ChantierError, PersistencePartialFailure, SchemaDrift


@dataclass(frozen=True)
class FullPayload:
    """Every known column of a record."""

    values: Mapping[str, object]


@dataclass(frozen=True)
class MinimalPayload:
    """Mandatory columns only, with the optional values set aside."""

    values: Mapping[str, object]
    deferred: Mapping[str, object]


Payload = Union[FullPayload, MinimalPayload]


def minimal_payload(payload: FullPayload, mandatory: Sequence[str]) -> MinimalPayload:
    """Split ``payload`` into its mandatory part and the deferred remainder."""

    values = {field: value for field, value in payload.values.items() if field in mandatory}
    deferred = {field: value for field, value in payload.values.items() if field not in mandatory}
    return MinimalPayload(values=values, deferred=deferred)


@dataclass(frozen=True)
class SaveResult:
    """Outcome of :meth:`PersistenceAdapter.save`."""

    document_id: str
    schema_drift: bool = False
    skipped_fields: Tuple[str, ...] = ()
    partial_failure: Optional[PersistencePartialFailure] = None

    @property
    def warnings(self) -> Tuple[WarningCode, ...]:
        codes: List[WarningCode] = []
        if self.schema_drift:
            codes.append(WarningCode.SCHEMA_DRIFT)
        if self.partial_failure is not None:
            codes.append(WarningCode.PARTIAL_PERSISTENCE)
        return tuple(codes)

    @property
    def complete(self) -> bool:
        return self.partial_failure is None


class PersistenceAdapter:
    """Store documents of one kind, with their lines, in a workbook."""

    def __init__(self, workbook: Workbook, kind: DocumentKind) -> None:
        self.workbook = workbook
        self.kind = kind
        self.document_sheet = DOCUMENT_SHEETS[kind].value
        self.line_sheet = LINE_SHEETS[kind].value

    def load(self, document_id: str) -> Tuple[DocumentRow, List[LineRow]]:
        """Read one document and its lines; raises ``SourceNotFound``."""

        return data_manager.read_document(self.workbook, self.kind, document_id)

    def save(self, document: DocumentRow, lines: Iterable[LineRow] = ()) -> SaveResult:
        """Persist ``document`` then replace its lines.

        A failure of the parent write propagates. A failure while writing the
        lines leaves the parent in place and is reported on the result.

        Args:
            document (DocumentRow): Document to upsert.
            lines (Iterable[LineRow]): Complete set of lines for the document.

        Returns:
            SaveResult: Identifier of the saved document plus drift and
                partial-failure details.

        Raises:
            ValueError: If ``document`` belongs to another kind.
            SchemaDrift: If even the mandatory columns cannot be written.
        """

        if document.kind is not self.kind:
            raise ValueError(f"Cannot save a {document.kind.value} with the {self.kind.value} adapter")

        drift, skipped = self._write(
            self.document_sheet,
            data_manager.DOCUMENT_KEY_COLUMN,
            document.document_id,
            FullPayload(data_manager.serialize_document(document)),
            data_manager.MANDATORY_DOCUMENT_COLUMNS,
        )

        partial: Optional[PersistencePartialFailure] = None
        try:
            line_drift, line_skipped = self._replace_lines(document.document_id, lines)
        except (ChantierError, KeyError, TypeError, ValueError) as exc:
            partial = PersistencePartialFailure(document.document_id, exc)
            log.error("%s", partial)
        else:
            drift = drift or line_drift
            skipped = skipped + tuple(field for field in line_skipped if field not in skipped)

        log.info("Saved %s %s in '%s'", self.kind.value, document.document_id, self.document_sheet)
        return SaveResult(
            document_id=document.document_id,
            schema_drift=drift,
            skipped_fields=skipped,
            partial_failure=partial,
        )

    def delete(self, document_id: str) -> bool:
        """Hard-delete a document and its lines. Returns ``False`` if absent."""

        removed = data_manager.delete_rows(
            self.workbook, self.document_sheet, data_manager.DOCUMENT_KEY_COLUMN, document_id
        )
        data_manager.delete_rows(self.workbook, self.line_sheet, data_manager.DOCUMENT_KEY_COLUMN, document_id)
        if removed:
            log.info("Deleted %s %s", self.kind.value, document_id)
        else:
            log.warning("Delete requested for unknown %s %s", self.kind.value, document_id)
        return bool(removed)

    def _replace_lines(self, document_id: str, lines: Iterable[LineRow]) -> Tuple[bool, Tuple[str, ...]]:
        data_manager.delete_rows(self.workbook, self.line_sheet, data_manager.DOCUMENT_KEY_COLUMN, document_id)
        drift = False
        skipped: List[str] = []
        for line in lines:
            line_drift, line_skipped = self._write(
                self.line_sheet,
                data_manager.LINE_KEY_COLUMN,
                line.line_id,
                FullPayload(data_manager.serialize_line(line)),
                data_manager.MANDATORY_LINE_COLUMNS,
            )
            drift = drift or line_drift
            skipped.extend(field for field in line_skipped if field not in skipped)
        return drift, tuple(skipped)

    def _upsert(self, sheet_name: str, key_column: str, key: str, values: Mapping[str, object]) -> None:
        if data_manager.locate_row(self.workbook, sheet_name, key_column, key) is None:
            data_manager.insert_row(self.workbook, sheet_name, values)
        else:
            data_manager.update_row(self.workbook, sheet_name, key_column, key, values)

    def _write(
        self,
        sheet_name: str,
        key_column: str,
        key: str,
        payload: FullPayload,
        mandatory: Sequence[str],
    ) -> Tuple[bool, Tuple[str, ...]]:
        try:
            self._upsert(sheet_name, key_column, key, payload.values)
            return False, ()
        except SchemaDrift as exc:
            log.warning(
                "Sheet '%s' lacks column(s) %s; retrying %s with mandatory columns only",
                sheet_name,
                ", ".join(exc.columns),
                key,
            )

        reduced = minimal_payload(payload, mandatory)
        self._upsert(sheet_name, key_column, key, reduced.values)
        return True, self._apply_deferred(sheet_name, key_column, key, reduced.deferred)

    def _apply_deferred(
        self,
        sheet_name: str,
        key_column: str,
        key: str,
        deferred: Mapping[str, object],
    ) -> Tuple[str, ...]:
        skipped: Dict[str, object] = {}
        for field, value in deferred.items():
            try:
                data_manager.update_row(self.workbook, sheet_name, key_column, key, {field: value})
            except SchemaDrift:
                skipped[field] = value
        if skipped:
            log.debug("Skipped optional column(s) on '%s' for %s: %s", sheet_name, key, ", ".join(skipped))
        return tuple(skipped)


__all__ = ["FullPayload", "MinimalPayload", "Payload", "minimal_payload", "SaveResult", "PersistenceAdapter"]
