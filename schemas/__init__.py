"""
Ingestion Schemas Package
Provides the data structures shared across the ingestion pipeline.
"""

from .upload_schemas import (
    # Payload shapes
    UploadErrorDict,
    ManufacturerBreakdownDict,
    UploadSummaryDict,
    UploadMetaDict,

    # Template
    ExportColumn,
    ExportConfig,
    Template,

    # Rows & aggregates
    CanonicalRow,
    UploadError,
    ProductAggregate,
    OptionCandidate,

    # Result
    UploadResult,
    build_upload_meta,
    UPLOAD_META_VERSION,
    UPLOAD_META_KIND,
)
