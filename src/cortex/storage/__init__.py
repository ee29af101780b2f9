"""Columnar archive storage."""

from cortex.storage.archive import (
    AppendConflict,
    ArchiveFormat,
    ArchiveStore,
    ColumnarArchive,
    IngestError,
    detect_format,
    read_function_sql,
)

__all__ = [
    "AppendConflict",
    "ArchiveFormat",
    "ArchiveStore",
    "ColumnarArchive",
    "IngestError",
    "detect_format",
    "read_function_sql",
]
