# src/hubflow/core/dead_letter/database.py
"""Engine and transaction handling for the record error store."""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Self

from sqlalchemy import Connection, Engine, create_engine, event
from sqlalchemy.pool import StaticPool

from hubflow.core.dead_letter.schema import metadata

_MEMORY_URLS = ("sqlite://", "sqlite:///:memory:")

# retry_audits references record_errors; SQLite ignores foreign keys unless asked
_SQLITE_PRAGMAS = (
    "PRAGMA foreign_keys=ON",
    "PRAGMA busy_timeout=5000",
)
_SQLITE_FILE_PRAGMAS = ("PRAGMA journal_mode=WAL",)


def _sqlite_pragmas(statements: tuple[str, ...]) -> Any:
    def on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        cursor = dbapi_connection.cursor()
        for statement in statements:
            cursor.execute(statement)
        cursor.close()

    return on_connect


class DeadLetterDB:
    """Owns the SQLAlchemy engine behind a DeadLetterStore.

    ``sqlite://`` (the default) is a single shared in-memory connection, so
    run workers, consumers and operator calls all see the same rows. Any
    other SQLAlchemy URL gets a normal connection pool.

    Example:
        with DeadLetterDB("sqlite:///./state/dead_letters.db") as db:
            store = DeadLetterStore(db)
    """

    def __init__(self, url: str, *, create_tables: bool = True) -> None:
        self.url = url
        memory = url in _MEMORY_URLS or url.startswith("sqlite:///:memory:?")
        if memory:
            engine = create_engine("sqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False})
        else:
            engine = create_engine(url)
        if url.startswith("sqlite"):
            pragmas = _SQLITE_PRAGMAS if memory else _SQLITE_PRAGMAS + _SQLITE_FILE_PRAGMAS
            event.listen(engine, "connect", _sqlite_pragmas(pragmas))
        self._engine: Engine | None = engine
        if create_tables:
            metadata.create_all(engine)

    @classmethod
    def in_memory(cls) -> Self:
        return cls("sqlite://")

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError(f"Dead letter database {self.url!r} is closed")
        return self._engine

    @contextmanager
    def connection(self) -> Iterator[Connection]:
        """One transaction: committed when the block exits, rolled back on error."""
        with self.engine.begin() as conn:
            yield conn

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
