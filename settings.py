"""
Centralized configuration for order ingestion.
"""
from __future__ import annotations

import os
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


# Batch sizes for bulk persistence. Each updated row expands into several CASE
# branches, so the update chunk stays smaller than the insert chunk.
INSERT_CHUNK_SIZE: int = _env_int("INGEST_INSERT_CHUNK_SIZE", 1500)
UPDATE_CHUNK_SIZE: int = _env_int("INGEST_UPDATE_CHUNK_SIZE", 500)

# PostgreSQL caps a statement at 32767 bound parameters.
MAX_BIND_PARAMS: int = 30000

ERROR_SAMPLE_LIMIT: int = _env_int("INGEST_ERROR_SAMPLE_LIMIT", 50)
MAX_UPLOAD_BYTES: int = _env_int("INGEST_MAX_UPLOAD_MB", 50) * 1024 * 1024
ASYNC_THRESHOLD_BYTES: int = _env_int("INGEST_ASYNC_THRESHOLD_MB", 10) * 1024 * 1024

VALID_EXTENSIONS: tuple[str, ...] = (".xlsx", ".xls")

# Lookup maps are read once per ingestion run and never re-queried per row.
# Writes from concurrent uploads are not visible to a run that already took
# its snapshot; the persistence stage tolerates that through conflict-free
# inserts and fill-only updates.
LOOKUP_SNAPSHOT_POLICY: str = "once_per_run"

# Manufacturer names that mean "not specified" rather than a real supplier.
UNSPECIFIED_MANUFACTURER_NAMES: frozenset[str] = frozenset({
    "미지정",
    "미등록",
    "없음",
    "n/a",
    "na",
})

UNASSIGNED_MANUFACTURER_LABEL: str = "미지정"

EXCLUSION_ENABLED_SETTING_KEY: str = "exclusion_enabled"


def parse_bool_setting(value: Optional[str], default: bool = True) -> bool:
    """Settings rows store booleans as 'true'/'false'; anything else is the default."""
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized == "true":
        return True
    if normalized == "false":
        return False
    return default
