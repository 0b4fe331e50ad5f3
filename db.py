"""Database access for the assistant.

Connections are opened with pyodbc in autocommit mode. Transaction boundaries
are explicit statements issued through :class:`Database`, so the preview engine
decides exactly when a transaction starts and ends.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


class DatabaseError(RuntimeError):
    """Raised when database configuration or execution fails."""

    def __init__(self, message: str, sql: str | None = None) -> None:
        super().__init__(message)
        self.sql = sql


class DriverError(DatabaseError):
    """A raw driver failure, before it is classified as execution or connection trouble."""


class ExecutionError(DatabaseError):
    """The database rejected a statement. Any preview transaction was rolled back."""


class ConnectionLost(DatabaseError):
    """The connection died. The server has already rolled back any open transaction."""


@dataclass(frozen=True)
class Dialect:
    """What the assistant needs to know about one database flavour."""

    name: str
    label: str
    begin_statement: str
    supports_returning: bool
    transactional_ddl: bool
    system_schemas: tuple[str, ...] = ()
    ping_statement: str = "SELECT 1"
    # statements the server commits on its own, even inside a transaction
    implicit_commit_verbs: frozenset[str] = frozenset()
    savepoint_statement: str = "SAVEPOINT {name}"
    rollback_to_statement: str = "ROLLBACK TO SAVEPOINT {name}"
    release_statement: str | None = "RELEASE SAVEPOINT {name}"


DIALECTS: dict[str, Dialect] = {
    "mssql": Dialect(
        name="mssql",
        label="SQL Server",
        begin_statement="BEGIN TRANSACTION",
        supports_returning=False,
        transactional_ddl=True,
        system_schemas=("INFORMATION_SCHEMA", "sys"),
        savepoint_statement="SAVE TRANSACTION {name}",
        rollback_to_statement="ROLLBACK TRANSACTION {name}",
        release_statement=None,
    ),
    "postgresql": Dialect(
        name="postgresql",
        label="PostgreSQL",
        begin_statement="BEGIN",
        supports_returning=True,
        transactional_ddl=True,
        system_schemas=("pg_catalog", "information_schema", "pg_toast"),
    ),
    "mysql": Dialect(
        name="mysql",
        label="MySQL",
        begin_statement="START TRANSACTION",
        supports_returning=False,
        transactional_ddl=False,
        system_schemas=("mysql", "information_schema", "performance_schema", "sys"),
        implicit_commit_verbs=frozenset(
            {
                "TRUNCATE", "LOCK", "UNLOCK", "ANALYZE", "OPTIMIZE", "REPAIR", "CHECK",
                "FLUSH", "RESET", "CACHE", "LOAD", "INSTALL", "UNINSTALL",
            }
        ),
    ),
    "sqlite": Dialect(
        name="sqlite",
        label="SQLite",
        begin_statement="BEGIN",
        supports_returning=True,
        transactional_ddl=True,
    ),
}

_DIALECT_ALIASES = {
    "postgres": "postgresql",
    "sqlserver": "mssql",
    "mariadb": "mysql",
    "sqlite3": "sqlite",
}


def get_dialect(name: str | None = None) -> Dialect:
    """Look up a dialect by name, defaulting to `DB_DIALECT` (then mssql)."""
    key = (name or os.getenv("DB_DIALECT", "mssql")).strip().lower()
    key = _DIALECT_ALIASES.get(key, key)
    try:
        return DIALECTS[key]
    except KeyError:
        raise DatabaseError(
            f"Unknown dialect {key!r}. Choose one of: {', '.join(sorted(DIALECTS))}."
        ) from None


@dataclass
class QueryResult:
    """Rows produced by one executed statement."""

    columns: list[str] = field(default_factory=list)
    rows: list[tuple[Any, ...]] = field(default_factory=list)
    rowcount: int = -1
    messages: list[str] = field(default_factory=list)
    truncated: bool = False

    @property
    def row_count(self) -> int:
        if self.columns:
            return len(self.rows)
        return max(self.rowcount, 0)

    def mappings(self) -> list[dict[str, Any]]:
        return [dict(zip(self.columns, row)) for row in self.rows]


class Database:
    """A single DB-API connection plus the dialect facts needed to drive it.

    The connection must be in autocommit mode; `begin`, `commit` and `rollback`
    issue explicit transaction statements.
    """

    def __init__(self, connection: Any, dialect: Dialect, driver_error: type[BaseException]) -> None:
        self._conn = connection
        self.dialect = dialect
        self._driver_error = driver_error
        self._closed = False

    def execute(self, sql: str, max_rows: int | None = None) -> QueryResult:
        """Run one statement. Driver failures surface as :class:`DriverError`."""
        logger.debug("Executing: %s", sql)
        try:
            cur = self._conn.cursor()
            try:
                cur.execute(sql)
                columns = [col[0] for col in cur.description] if cur.description else []
                truncated = False
                if not columns:
                    rows = []
                elif max_rows is None:
                    rows = cur.fetchall()
                else:
                    rows = cur.fetchmany(max_rows + 1)
                    truncated = len(rows) > max_rows
                    rows = rows[:max_rows]
                # pyodbc exposes SQL Server PRINT/info output here
                messages = [str(m[1]) for m in (getattr(cur, "messages", None) or [])]
                rowcount = cur.rowcount
            finally:
                cur.close()
        except self._driver_error as exc:
            raise DriverError(str(exc), sql=sql) from exc

        return QueryResult(
            columns=columns,
            rows=[tuple(row) for row in rows],
            rowcount=rowcount,
            messages=messages,
            truncated=truncated,
        )

    def begin(self) -> None:
        self.execute(self.dialect.begin_statement)

    def commit(self) -> None:
        self.execute("COMMIT")

    def rollback(self) -> None:
        self.execute("ROLLBACK")

    def savepoint(self, name: str) -> None:
        self.execute(self.dialect.savepoint_statement.format(name=name))

    def rollback_to(self, name: str) -> None:
        self.execute(self.dialect.rollback_to_statement.format(name=name))

    def release(self, name: str) -> None:
        if self.dialect.release_statement:
            self.execute(self.dialect.release_statement.format(name=name))

    def is_alive(self) -> bool:
        """Round-trip a trivial query; False when the connection is gone."""
        if self._closed:
            return False
        try:
            self.execute(self.dialect.ping_statement)
        except DriverError as exc:
            logger.error("Connection liveness check failed: %s", exc)
            return False
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._conn.close()
        except self._driver_error as exc:
            logger.debug("Ignoring error while closing a dead connection: %s", exc)


def _build_conn_str_from_parts() -> str | None:
    """Build an ODBC connection string from individual env vars when provided."""
    driver = os.getenv("DB_ODBC_DRIVER")
    server = os.getenv("DB_SERVER")
    database = os.getenv("DB_DATABASE")

    if not (driver and server and database):
        return None

    parts = [f"DRIVER={{{driver}}}", f"SERVER={server}", f"DATABASE={database}"]
    if os.getenv("DB_PORT"):
        parts.append(f"PORT={os.getenv('DB_PORT')}")

    if os.getenv("DB_TRUSTED_CONNECTION", "no").lower() in {"yes", "true", "1"}:
        parts.append("Trusted_Connection=yes")
    else:
        uid = os.getenv("DB_UID")
        pwd = os.getenv("DB_PWD")
        if not (uid and pwd):
            raise DatabaseError(
                "Using split DB settings requires DB_UID and DB_PWD, "
                "unless DB_TRUSTED_CONNECTION=yes."
            )
        parts.append(f"UID={uid}")
        parts.append(f"PWD={pwd}")

    return ";".join(parts) + ";"


def get_connection(conn_str: str | None = None) -> Any:
    """Create and return an autocommit pyodbc connection using env configuration.

    Supported config styles:
      1) DB_ODBC_CONN_STR (single full connection string)
      2) Split env vars (DB_ODBC_DRIVER, DB_SERVER, DB_DATABASE, ...)

    Optional:
      - DB_LOGIN_TIMEOUT_SECONDS (default: 30)
      - DB_QUERY_TIMEOUT_SECONDS (default: 30)
    """
    # pyodbc needs the system ODBC manager, so it is only loaded when connecting.
    import pyodbc

    conn_str = conn_str or os.getenv("DB_ODBC_CONN_STR") or _build_conn_str_from_parts()
    if not conn_str:
        raise DatabaseError(
            "Set either DB_ODBC_CONN_STR, or split vars: "
            "DB_ODBC_DRIVER, DB_SERVER, DB_DATABASE, "
            "plus DB_UID/DB_PWD (or DB_TRUSTED_CONNECTION=yes)."
        )

    login_timeout = int(os.getenv("DB_LOGIN_TIMEOUT_SECONDS", "30"))
    try:
        conn = pyodbc.connect(conn_str, timeout=login_timeout, autocommit=True)
    except pyodbc.Error as exc:
        raise DatabaseError(f"Could not connect to the database: {exc}") from exc

    conn.timeout = int(os.getenv("DB_QUERY_TIMEOUT_SECONDS", "30"))
    return conn


def connect(conn_str: str | None = None, dialect: str | None = None) -> Database:
    """Open the session connection."""
    import pyodbc

    resolved = get_dialect(dialect)
    conn = get_connection(conn_str)
    logger.info("Connected (%s)", resolved.label)
    return Database(conn, resolved, driver_error=pyodbc.Error)
