"""Engine handle for the shared DuckDB analytical engine.

One `EngineHandle` owns one DuckDB connection. It is passed explicitly into
every storage and query call instead of living in a module global:
- Reads go through per-call cursors (concurrent-safe for reads)
- Writes are serialized through a mutex

Usage:
    from cortex.core.connections import EngineConfig, EngineHandle

    engine = EngineHandle(EngineConfig.in_memory())
    engine.initialize()

    # Read (cursor per call)
    with engine.duckdb_cursor() as cursor:
        rows = cursor.execute("SELECT 42").fetchall()

    # Write (serialized via mutex)
    with engine.duckdb_write() as conn:
        conn.execute("COPY (...) TO 'out.parquet' (FORMAT PARQUET)")

    engine.close()
"""

from __future__ import annotations

import threading
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import duckdb

from cortex.core.logging import get_logger

if TYPE_CHECKING:
    from cortex.core.config import Settings

logger = get_logger(__name__)


@dataclass
class EngineConfig:
    """DuckDB engine configuration.

    Attributes:
        duckdb_path: Path to DuckDB database file, or :memory:
        memory_limit: DuckDB memory limit (e.g., "2GB")
        threads: DuckDB worker threads
    """

    duckdb_path: Path
    memory_limit: str = "2GB"
    threads: int = 4

    @classmethod
    def in_memory(cls, **kwargs: Any) -> EngineConfig:
        """Create config for an in-memory engine (archives are read from files)."""
        return cls(duckdb_path=Path(":memory:"), **kwargs)

    @classmethod
    def from_settings(cls, settings: Settings) -> EngineConfig:
        """Create an in-memory config sized from application settings."""
        return cls.in_memory(
            memory_limit=settings.duckdb_memory_limit,
            threads=settings.duckdb_threads,
        )


@dataclass
class EngineHandle:
    """Shared analytical engine handle.

    Thread Safety:
    - Reads: use duckdb_cursor(); each cursor is independent, but the engine
      still executes queries one at a time, so callers should not expect a
      parallel speed-up
    - Writes: serialized via _write_lock
    """

    config: EngineConfig
    _conn: duckdb.DuckDBPyConnection | None = field(default=None, init=False, repr=False)
    _write_lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)
    _init_lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)
    _initialized: bool = field(default=False, init=False, repr=False)

    @classmethod
    def in_memory(cls, **kwargs: Any) -> EngineHandle:
        """Create and initialize an in-memory engine handle."""
        handle = cls(EngineConfig.in_memory(**kwargs))
        handle.initialize()
        return handle

    def initialize(self) -> None:
        """Open the DuckDB connection.

        Safe to call multiple times (idempotent).

        Raises:
            RuntimeError: If initialization fails
        """
        with self._init_lock:
            if self._initialized:
                return

            try:
                if self.config.duckdb_path == Path(":memory:"):
                    self._conn = duckdb.connect(":memory:")
                else:
                    self.config.duckdb_path.parent.mkdir(parents=True, exist_ok=True)
                    self._conn = duckdb.connect(str(self.config.duckdb_path))

                self._conn.execute(f"SET memory_limit='{self.config.memory_limit}'")
                self._conn.execute(f"SET threads={int(self.config.threads)}")
                self._initialized = True
                logger.debug("engine_initialized", path=str(self.config.duckdb_path))
            except Exception as e:
                self.close()
                raise RuntimeError(f"Failed to initialize engine: {e}") from e

    def _ensure_initialized(self) -> None:
        """Raise if not initialized."""
        if not self._initialized:
            raise RuntimeError("EngineHandle not initialized. Call engine.initialize() first.")

    @contextmanager
    def duckdb_cursor(self) -> Generator[duckdb.DuckDBPyConnection]:
        """Get a DuckDB cursor for read operations.

        Yields:
            DuckDB cursor for read operations

        Raises:
            RuntimeError: If handle not initialized
        """
        self._ensure_initialized()
        assert self._conn is not None

        cursor = self._conn.cursor()
        try:
            yield cursor
        finally:
            cursor.close()

    @contextmanager
    def duckdb_write(self) -> Generator[duckdb.DuckDBPyConnection]:
        """Get exclusive write access to DuckDB.

        Yields a fresh cursor while holding the write mutex, so relations
        registered during the write stay local to it.

        Raises:
            RuntimeError: If handle not initialized
        """
        self._ensure_initialized()
        assert self._conn is not None

        with self._write_lock:
            cursor = self._conn.cursor()
            try:
                yield cursor
            finally:
                cursor.close()

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def close(self) -> None:
        """Close the connection. Safe to call multiple times."""
        if self._conn is not None:
            try:
                self._conn.close()
            except duckdb.Error as e:
                logger.warning("engine_close_failed", error=str(e))
            self._conn = None
        self._initialized = False

    def __enter__(self) -> EngineHandle:
        self.initialize()
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


__all__ = [
    "EngineConfig",
    "EngineHandle",
]
