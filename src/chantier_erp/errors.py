"""Exception taxonomy for the financial-document core.

Structural and storage failures (``SourceNotFound``, an unrecoverable write)
propagate to callers. ``SchemaDrift`` and ``InvalidVatRate`` are recovered
inside the core; ``PersistencePartialFailure`` is attached to save results
rather than raised; ``NoMonetaryData`` only blocks when the caller asks for
strict assembly.
"""

from __future__ import annotations

from typing import Iterable, Optional


class ChantierError(Exception):
    """Base class for every error raised by the core."""


class SourceNotFound(ChantierError):
    """Raised when a source document identifier does not resolve."""

    def __init__(self, collection: str, document_id: str) -> None:
        super().__init__(f"Unknown {collection} id: {document_id}")
        self.collection = collection
        self.document_id = document_id


class NoMonetaryData(ChantierError):
    """Raised when no usable amount can be derived from a source document."""

    def __init__(self, document_id: Optional[str] = None) -> None:
        detail = f" for document {document_id}" if document_id else ""
        super().__init__(f"No valid amount found{detail}")
        self.document_id = document_id


class SchemaDrift(ChantierError):
    """Raised by the store when a write references columns it does not have."""

    def __init__(self, sheet: str, columns: Iterable[str]) -> None:
        self.sheet = sheet
        self.columns = tuple(sorted(columns))
        super().__init__(f"Sheet '{sheet}' has no column(s): {', '.join(self.columns)}")


class PersistencePartialFailure(ChantierError):
    """The parent document was saved but some of its lines were not."""

    def __init__(self, document_id: str, cause: BaseException) -> None:
        super().__init__(f"Lines of document {document_id} were not saved: {cause}")
        self.document_id = document_id
        self.cause = cause


class InvalidVatRate(ChantierError):
    """A VAT rate is outside any plausible range."""

    def __init__(self, raw: object) -> None:
        super().__init__(f"Invalid VAT rate: {raw!r}")
        self.raw = raw


__all__ = [
    "ChantierError",
    "SourceNotFound",
    "NoMonetaryData",
    "SchemaDrift",
    "PersistencePartialFailure",
    "InvalidVatRate",
]
