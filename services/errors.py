"""
Ingestion error hierarchy.

Validation errors abort a run before any row is read, row errors are collected
and never escape the transform loop, persistence errors abort the transaction.
"""
from typing import Iterable, Optional


class IngestionError(Exception):
    """Base class for ingestion failures."""


class UploadValidationError(IngestionError):
    status_code = 400

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class TemplateNotFoundError(UploadValidationError):
    status_code = 404


class TemplateConfigError(UploadValidationError):
    pass


class UnsupportedFileTypeError(UploadValidationError):
    pass


class UnreadableWorkbookError(UploadValidationError):
    pass


class MissingWorksheetError(UploadValidationError):
    pass


class HeaderMismatchError(UploadValidationError):
    def __init__(self, missing: Iterable[str]):
        self.missing = list(missing)
        super().__init__(f"파일 양식이 일치하지 않아요. 누락된 열: {', '.join(self.missing)}")


class RowParseError(IngestionError):
    def __init__(self, row: int, field: Optional[str], message: str):
        super().__init__(message)
        self.row = row
        self.field = field
        self.message = message


class PersistenceError(IngestionError):
    def __init__(self, upload_id: Optional[str], original: BaseException):
        super().__init__(f"{type(original).__name__}: {original}")
        self.upload_id = upload_id
        self.original = original


class UploadNotFoundError(UploadValidationError):
    status_code = 404


class ExportUnavailableError(UploadValidationError):
    """The upload exists but cannot be re-exported (wrong kind, or nothing was kept)."""


class SnapshotFormatError(UploadValidationError):
    status_code = 500
