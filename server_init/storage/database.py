"""SQLite database layer for registrar state, via SQLAlchemy."""

from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional, Union

import structlog
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Connection, Engine

logger = structlog.get_logger(__name__)

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS tokens (
        code TEXT PRIMARY KEY,
        expires_at INTEGER NOT NULL,
        uses_remaining INTEGER NOT NULL CHECK (uses_remaining >= 0)
    )
    """,
)


class Database:
    """Manages the SQLite engine and schema lifecycle.

    Provides:
    - Engine creation with a busy timeout so concurrent writers queue
      instead of failing
    - Schema creation on connect
    - Transaction scopes for callers

    Attributes:
        path: SQLite file path (``":memory:"`` for a private in-memory db)
        busy_timeout: Seconds a writer waits for the database lock
        engine: SQLAlchemy engine, set by ``connect()``
    """

    def __init__(
        self,
        path: Union[str, Path] = "otps.sqlite",
        busy_timeout: float = 30.0,
        echo: bool = False,
    ) -> None:
        """Initialize database settings.

        Args:
            path: SQLite database file.
            busy_timeout: Seconds to wait on a locked database.
            echo: If True, log all SQL statements.
        """
        self.path = str(path)
        self.busy_timeout = busy_timeout
        self.echo = echo
        self.engine: Optional[Engine] = None

    @property
    def url(self) -> str:
        return f"sqlite:///{self.path}"

    def connect(self) -> None:
        """Create the engine and make sure the schema exists.

        Raises:
            sqlalchemy.exc.SQLAlchemyError: If the file cannot be opened.
        """
        if self.engine is not None:
            return

        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)

        self.engine = create_engine(
            self.url,
            echo=self.echo,
            connect_args={
                "check_same_thread": False,
                "timeout": self.busy_timeout,
            },
        )

        # Let SQLAlchemy own transaction boundaries and take the write lock
        # up front, so read-then-write sequences cannot interleave.
        @event.listens_for(self.engine, "connect")
        def _disable_pysqlite_autobegin(dbapi_connection: Any, _record: Any) -> None:
            dbapi_connection.isolation_level = None

        @event.listens_for(self.engine, "begin")
        def _begin(conn: Connection) -> None:
            if conn.get_execution_options().get("read_only"):
                conn.exec_driver_sql("BEGIN DEFERRED")
            else:
                conn.exec_driver_sql("BEGIN IMMEDIATE")

        try:
            with self.engine.begin() as conn:
                for statement in SCHEMA:
                    conn.execute(text(statement))
        except Exception as exc:
            logger.error("database_connection_failed", error=str(exc), path=self.path)
            self.engine.dispose()
            self.engine = None
            raise

        logger.info("database_connected", path=self.path)

    def disconnect(self) -> None:
        """Dispose of the engine and its pooled connections."""
        if self.engine is None:
            return
        self.engine.dispose()
        self.engine = None
        logger.info("database_disconnected", path=self.path)

    @contextmanager
    def begin(self) -> Iterator[Connection]:
        """Open a connection inside a write transaction.

        Commits on normal exit and rolls back if the block raises.

        Raises:
            RuntimeError: If ``connect()`` was not called.
        """
        if self.engine is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        with self.engine.begin() as conn:
            yield conn

    @contextmanager
    def read(self) -> Iterator[Connection]:
        """Open a connection for lookups.

        Takes no write lock, so reads do not queue behind writers.

        Raises:
            RuntimeError: If ``connect()`` was not called.
        """
        if self.engine is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        with self.engine.connect() as conn:
            conn.execution_options(read_only=True)
            yield conn

    def health_check(self) -> bool:
        """Check that a trivial query succeeds."""
        if self.engine is None:
            return False
        try:
            with self.read() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception as exc:
            logger.warning("database_health_check_failed", error=str(exc))
            return False

    def is_connected(self) -> bool:
        return self.engine is not None
