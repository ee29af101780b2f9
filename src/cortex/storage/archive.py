"""Columnar archives.

An archive is an immutable file holding one sync/upload's rows. It is never
edited in place: ingest writes a new parquet file, and append writes the
union of old and new rows to a hidden temp file in the same directory and
renames it over the original, so readers see either the old or the new
archive and never a partial one.

Usage:
    store = ArchiveStore(engine)
    archive = store.ingest_to_archive(Path("exports/orders.csv"))
    store.append(archive, [{"order_id": "o-9", "revenue": "$12.00"}])
    store.sample(archive, 5)
"""

from __future__ import annotations

import os
import threading
import time
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any
from uuid import uuid4

import duckdb
import pandas as pd
from pydantic import BaseModel

from cortex.core.config import Settings, get_settings
from cortex.core.logging import get_logger
from cortex.query.normalize import quote_literal

if TYPE_CHECKING:
    from cortex.core.connections import EngineHandle

logger = get_logger(__name__)

TEMP_SUFFIX = ".tmp"


class IngestError(Exception):
    """A source could not be turned into an archive."""

    def __init__(self, path: Path, message: str):
        self.path = path
        self.message = message
        super().__init__(f"{path}: {message}")


class AppendConflict(Exception):
    """Another append on the same archive got in the way."""

    def __init__(self, path: Path, message: str):
        self.path = path
        self.message = message
        super().__init__(f"{path}: {message}")


class ArchiveFormat(str, Enum):
    """On-disk layouts an archive can have."""

    DELIMITED = "delimited"
    JSON_LINES = "json_lines"
    PARQUET = "parquet"


_EXTENSIONS: dict[str, ArchiveFormat] = {
    ".csv": ArchiveFormat.DELIMITED,
    ".tsv": ArchiveFormat.DELIMITED,
    ".txt": ArchiveFormat.DELIMITED,
    ".json": ArchiveFormat.JSON_LINES,
    ".jsonl": ArchiveFormat.JSON_LINES,
    ".ndjson": ArchiveFormat.JSON_LINES,
    ".parquet": ArchiveFormat.PARQUET,
    ".pq": ArchiveFormat.PARQUET,
}


def detect_format(path: Path) -> ArchiveFormat:
    """Archive format from the file extension.

    Raises:
        ValueError: If the extension is not a known archive format
    """
    fmt = _EXTENSIONS.get(Path(path).suffix.lower())
    if fmt is None:
        raise ValueError(
            f"Unknown archive format for {path} (expected one of {sorted(_EXTENSIONS)})"
        )
    return fmt


def read_function_sql(path: Path, fmt: ArchiveFormat | None = None) -> str:
    """DuckDB table function reading `path`, usable in a FROM clause."""
    fmt = fmt or detect_format(path)
    literal = quote_literal(str(path))
    if fmt == ArchiveFormat.DELIMITED:
        return f"read_csv_auto({literal}, header = true)"
    if fmt == ArchiveFormat.JSON_LINES:
        return f"read_json_auto({literal})"
    return f"read_parquet({literal})"


def _copy_options(path: Path, fmt: ArchiveFormat) -> str:
    if fmt == ArchiveFormat.DELIMITED:
        if path.suffix.lower() == ".tsv":
            return "FORMAT CSV, HEADER, DELIMITER '\t'"
        return "FORMAT CSV, HEADER"
    if fmt == ArchiveFormat.JSON_LINES:
        return "FORMAT JSON"
    return "FORMAT PARQUET"


def _stat_signature(path: Path) -> tuple[int, int, int]:
    stat = path.stat()
    return (stat.st_mtime_ns, stat.st_size, stat.st_ino)


class ColumnarArchive(BaseModel):
    """Handle to one archive file."""

    path: Path
    format: ArchiveFormat
    row_count: int | None = None  # filled by ArchiveStore.row_count


# One lock per archive path, shared by every store in the process
_append_locks: dict[Path, threading.Lock] = {}
_append_locks_guard = threading.Lock()


def _append_lock(path: Path) -> threading.Lock:
    key = path.resolve()
    with _append_locks_guard:
        return _append_locks.setdefault(key, threading.Lock())


class ArchiveStore:
    """Creates, extends and reads columnar archives through one engine handle."""

    def __init__(self, engine: EngineHandle, settings: Settings | None = None):
        self.engine = engine
        self.settings = settings or get_settings()

    def open_archive(self, path: Path) -> ColumnarArchive:
        path = Path(path)
        return ColumnarArchive(path=path, format=detect_format(path))

    def ingest_to_archive(
        self,
        raw_path: Path,
        fmt: ArchiveFormat | str | None = None,
        archive_dir: Path | None = None,
    ) -> Path:
        """Convert a delimited or JSON-lines file into a parquet archive.

        Args:
            raw_path: Source file
            fmt: Source format; detected from the extension when omitted
            archive_dir: Output directory; defaults to settings.storage_path

        Returns:
            Path of the new archive, `<stem>_<utc timestamp>.parquet`

        Raises:
            IngestError: If the source is missing, unreadable, or has zero rows
        """
        raw_path = Path(raw_path)
        if not raw_path.is_file():
            raise IngestError(raw_path, "source file not found")
        try:
            source_format = ArchiveFormat(fmt) if fmt else detect_format(raw_path)
        except ValueError as e:
            raise IngestError(raw_path, str(e)) from e

        out_dir = Path(archive_dir or self.settings.storage_path)
        out_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S%fZ")
        out_path = out_dir / f"{raw_path.stem}_{stamp}.parquet"
        source_sql = read_function_sql(raw_path, source_format)

        start = time.perf_counter()
        try:
            with self.engine.duckdb_write() as cursor:
                row = cursor.execute(f"SELECT COUNT(*) FROM {source_sql}").fetchone()
                count = row[0] if row else 0
                if count == 0:
                    raise IngestError(raw_path, "source has no rows")
                cursor.execute(
                    f"COPY (SELECT * FROM {source_sql}) TO {quote_literal(str(out_path))} "
                    "(FORMAT PARQUET)"
                )
        except duckdb.Error as e:
            out_path.unlink(missing_ok=True)
            raise IngestError(raw_path, f"unreadable source: {e}") from e

        logger.info(
            "archive_ingested",
            source=str(raw_path),
            archive=str(out_path),
            rows=count,
            duration_seconds=round(time.perf_counter() - start, 3),
        )
        return out_path

    def append(self, archive_path: Path, new_rows: Sequence[Mapping[str, Any]]) -> Path:
        """Append rows by writing old + new to a temp file and renaming it over the archive.

        Columns are matched by name; columns missing on either side are NULL.
        The temp file is removed on every exit path and the original is only
        replaced once the union has been fully written.

        Raises:
            FileNotFoundError: If the archive does not exist
            AppendConflict: If another append on this path is in flight, or the
                archive changed on disk while the union was being written
            IngestError: If the union could not be written
        """
        path = Path(archive_path)
        if not new_rows:
            return path
        fmt = detect_format(path)

        lock = _append_lock(path)
        if not lock.acquire(blocking=False):
            raise AppendConflict(path, "another append on this archive is in progress")
        try:
            before = _stat_signature(path)
            frame = pd.DataFrame.from_records([dict(row) for row in new_rows])
            tmp_path = path.with_name(f".{path.name}.{uuid4().hex[:8]}{TEMP_SUFFIX}")
            try:
                try:
                    self._write_union(path, fmt, frame, tmp_path)
                except duckdb.Error as e:
                    raise IngestError(path, f"append failed: {e}") from e
                if _stat_signature(path) != before:
                    raise AppendConflict(path, "archive changed on disk during append")
                os.replace(tmp_path, path)
            finally:
                tmp_path.unlink(missing_ok=True)
        finally:
            lock.release()

        logger.info("archive_appended", archive=str(path), rows=len(frame))
        return path

    def _write_union(
        self, path: Path, fmt: ArchiveFormat, frame: pd.DataFrame, tmp_path: Path
    ) -> None:
        with self.engine.duckdb_write() as cursor:
            cursor.register("new_rows", frame)
            cursor.execute(
                f"COPY (SELECT * FROM {read_function_sql(path, fmt)} "
                "UNION ALL BY NAME SELECT * FROM new_rows) "
                f"TO {quote_literal(str(tmp_path))} ({_copy_options(path, fmt)})"
            )

    def sample(self, archive_path: Path, n: int = 10) -> list[dict[str, Any]]:
        """First `n` rows of the archive."""
        with self.engine.duckdb_cursor() as cursor:
            cursor.execute(f"SELECT * FROM {read_function_sql(Path(archive_path))} LIMIT {int(n)}")
            columns = [d[0] for d in cursor.description or []]
            return [dict(zip(columns, row, strict=False)) for row in cursor.fetchall()]

    def describe_schema(self, archive_path: Path) -> list[tuple[str, str]]:
        """(column name, inferred DuckDB type) pairs."""
        with self.engine.duckdb_cursor() as cursor:
            rows = cursor.execute(
                f"DESCRIBE SELECT * FROM {read_function_sql(Path(archive_path))}"
            ).fetchall()
        return [(str(row[0]), str(row[1])) for row in rows]

    def row_count(self, archive: Path | ColumnarArchive) -> int:
        """Number of rows; cached on the archive handle when one is given."""
        path = archive.path if isinstance(archive, ColumnarArchive) else Path(archive)
        with self.engine.duckdb_cursor() as cursor:
            row = cursor.execute(f"SELECT COUNT(*) FROM {read_function_sql(path)}").fetchone()
        count = int(row[0]) if row else 0
        if isinstance(archive, ColumnarArchive):
            archive.row_count = count
        return count

    def collect_orphans(
        self, directory: Path | None = None, older_than_seconds: float = 0
    ) -> list[Path]:
        """Delete temp files left behind by interrupted appends.

        Files belonging to an append that is still running in this process
        are left alone.

        Returns:
            Paths that were removed
        """
        directory = Path(directory or self.settings.storage_path)
        if not directory.is_dir():
            return []

        now = time.time()
        removed: list[Path] = []
        for tmp_path in sorted(directory.glob(f".*{TEMP_SUFFIX}")):
            # .<archive name>.<token>.tmp
            target = directory / tmp_path.name[1:].rsplit(".", 2)[0]
            lock = _append_locks.get(target.resolve())
            if lock is not None and lock.locked():
                continue
            try:
                if now - tmp_path.stat().st_mtime < older_than_seconds:
                    continue
                tmp_path.unlink()
            except FileNotFoundError:
                continue
            removed.append(tmp_path)

        if removed:
            logger.info("archive_orphans_removed", directory=str(directory), count=len(removed))
        return removed
