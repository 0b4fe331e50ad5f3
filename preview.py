"""Preview-then-commit transaction engine.

A write statement runs inside a transaction that stays open, uncommitted,
until the caller hands back a :class:`Decision`. The engine is a two-state
machine (IDLE, PREVIEW_OPEN) and owns every transaction on the session
connection: reads are refused while a preview waits for its decision.
"""

from __future__ import annotations

import logging
import os
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from classifier import CandidateStatement, Statement, StatementKind
from db import ConnectionLost, Database, DatabaseError, DriverError, ExecutionError, QueryResult
from schema import Schema, introspect_schema

logger = logging.getLogger(__name__)

RETURNING_VERBS = frozenset({"INSERT", "UPDATE", "DELETE"})
REMOVING_VERBS = frozenset({"DELETE", "TRUNCATE"})

_PROBE_SAVEPOINT = "nlsql_preview_probe"


class PreviewPendingError(RuntimeError):
    """An operation was attempted while a preview is still waiting for its decision."""


class NoPreviewError(RuntimeError):
    """`finalize` was called before any preview was started."""


class TransactionState(Enum):
    IDLE = "idle"
    PREVIEW_OPEN = "preview_open"


class Decision(Enum):
    COMMIT = "commit"
    DISCARD = "discard"


class CaptureMethod(str, Enum):
    RETURNING = "returning"
    DIFF = "diff"
    SCHEMA = "schema"
    QUERY = "query"
    ROWCOUNT = "rowcount"


@dataclass(frozen=True)
class StatementEffect:
    """What one statement of a previewed batch did inside the open transaction."""

    statement: Statement
    method: CaptureMethod
    columns: tuple[str, ...] = ()
    rows: tuple[dict[str, Any], ...] = ()
    # None when the driver did not report how many rows changed
    row_count: int | None = 0
    schema_changes: tuple[str, ...] = ()
    notices: tuple[str, ...] = ()


@dataclass(frozen=True)
class PreviewResult:
    candidate: CandidateStatement
    effects: tuple[StatementEffect, ...] = field(default_factory=tuple)

    @property
    def rows(self) -> tuple[dict[str, Any], ...]:
        return tuple(
            row
            for effect in self.effects
            if effect.method is not CaptureMethod.QUERY
            for row in effect.rows
        )

    @property
    def row_count(self) -> int | None:
        counts = [e.row_count for e in self.effects if e.method is not CaptureMethod.QUERY]
        if any(c is None for c in counts):
            return None
        return sum(counts)

    @property
    def notices(self) -> tuple[str, ...]:
        return tuple(notice for effect in self.effects for notice in effect.notices)


@dataclass(frozen=True)
class CommitOutcome:
    candidate: CandidateStatement
    row_count: int | None


@dataclass(frozen=True)
class RollbackOutcome:
    candidate: CandidateStatement
    reason: str


Outcome = Union[CommitOutcome, RollbackOutcome]


def _freeze(value: Any) -> Any:
    if isinstance(value, (bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, list):
        return tuple(_freeze(v) for v in value)
    if isinstance(value, dict):
        return tuple(sorted((k, _freeze(v)) for k, v in value.items()))
    return value


def _multiset_minus(rows: list[tuple], other: list[tuple]) -> list[tuple]:
    """Rows of `rows` not matched one-for-one in `other`, in original order."""
    remaining = Counter(tuple(_freeze(v) for v in row) for row in rows)
    remaining.subtract(tuple(_freeze(v) for v in row) for row in other)
    out = []
    for row in rows:
        key = tuple(_freeze(v) for v in row)
        if remaining[key] > 0:
            remaining[key] -= 1
            out.append(row)
    return out


class PreviewEngine:
    def __init__(self, database: Database, diff_row_limit: int | None = None) -> None:
        self._db = database
        if diff_row_limit is None:
            diff_row_limit = int(os.getenv("PREVIEW_DIFF_ROW_LIMIT", "10000"))
        self._diff_row_limit = diff_row_limit
        self._state = TransactionState.IDLE
        self._pending: PreviewResult | None = None
        self._last_outcome: Outcome | None = None
        self._lost = False

    @property
    def state(self) -> TransactionState:
        return self._state

    @property
    def pending(self) -> PreviewResult | None:
        return self._pending

    @property
    def connection_lost(self) -> bool:
        return self._lost

    # -- state transitions -------------------------------------------------

    def _ensure_usable(self) -> None:
        if self._lost:
            raise ConnectionLost("The database connection was lost; start a new session.")

    def _open_preview(self) -> PreviewResult:
        if self._pending is None:
            raise NoPreviewError("There is no open preview.")
        return self._pending

    def _to_idle(self, outcome: Outcome | None) -> None:
        self._state = TransactionState.IDLE
        self._pending = None
        self._last_outcome = outcome

    def _mark_lost(self, sql: str | None) -> ConnectionLost:
        had_preview = self._state is TransactionState.PREVIEW_OPEN
        self._lost = True
        self._to_idle(None)
        if had_preview:
            logger.error("Connection lost with a preview open; the server rolled it back")
            return ConnectionLost(
                "Connection lost. The pending preview was rolled back by the database; "
                "nothing was committed.",
                sql=sql,
            )
        logger.error("Connection lost")
        return ConnectionLost("Connection lost.", sql=sql)

    def _failure(self, exc: DatabaseError, sql: str | None) -> DatabaseError:
        """Map a driver failure to ExecutionError, or ConnectionLost if the link is gone."""
        if not self._db.is_alive():
            return self._mark_lost(sql)
        return ExecutionError(str(exc), sql=sql)

    def _abort(self, exc: DatabaseError, sql: str | None, reason: str) -> DatabaseError:
        """Roll back after a failed statement or commit, then classify the failure.

        The rollback comes first: an aborted transaction rejects every other
        statement, including the liveness probe.
        """
        candidate = self._open_preview().candidate
        try:
            self._db.rollback()
        except DatabaseError:
            if not self._db.is_alive():
                return self._mark_lost(sql)
            logger.warning("Rollback after %s failed", reason, exc_info=True)
        self._to_idle(RollbackOutcome(candidate, reason))
        logger.info("Preview transaction rolled back (%s)", reason)
        return ExecutionError(str(exc), sql=sql)

    def _rollback_open(self, reason: str) -> RollbackOutcome:
        candidate = self._open_preview().candidate
        try:
            self._db.rollback()
        except DatabaseError as exc:
            error = self._failure(exc, candidate.text)
            if not isinstance(error, ConnectionLost):
                self._to_idle(RollbackOutcome(candidate, reason))
            raise error from exc
        outcome = RollbackOutcome(candidate, reason)
        self._to_idle(outcome)
        logger.info("Preview transaction rolled back (%s)", reason)
        return outcome

    # -- public operations -------------------------------------------------

    def run_read(self, candidate: CandidateStatement, max_rows: int | None = None) -> list[QueryResult]:
        """Execute a read-only batch directly; no transaction is opened."""
        self._ensure_usable()
        if self._state is TransactionState.PREVIEW_OPEN:
            raise PreviewPendingError("A preview is waiting for a commit/discard decision.")
        if candidate.requires_preview:
            raise ValueError("Write statements must go through begin_preview().")

        results = []
        for statement in candidate.statements:
            try:
                results.append(self._db.execute(statement.text, max_rows=max_rows))
            except DatabaseError as exc:
                raise self._failure(exc, statement.text) from exc
        return results

    def begin_preview(self, candidate: CandidateStatement) -> PreviewResult:
        """Run a write batch inside a new transaction and leave it open.

        On any execution error the transaction is rolled back before the error
        is raised.
        """
        self._ensure_usable()
        if self._state is TransactionState.PREVIEW_OPEN:
            raise PreviewPendingError("A preview is already open; finalize or abandon it first.")
        if not candidate.requires_preview:
            raise ValueError("Read-only statements run directly with run_read().")
        dialect = self._db.dialect
        for statement in candidate.statements:
            if statement.is_ddl and not dialect.transactional_ddl:
                raise ExecutionError(
                    f"{dialect.label} commits DDL implicitly, so it cannot be previewed.",
                    sql=statement.text,
                )
            if statement.verb in dialect.implicit_commit_verbs:
                raise ExecutionError(
                    f"{dialect.label} commits {statement.verb} implicitly, so it cannot be previewed.",
                    sql=statement.text,
                )

        try:
            self._db.begin()
        except DatabaseError as exc:
            raise self._failure(exc, self._db.dialect.begin_statement) from exc

        self._state = TransactionState.PREVIEW_OPEN
        self._pending = PreviewResult(candidate)
        self._last_outcome = None
        logger.info("Preview transaction opened for %d statement(s)", len(candidate.statements))

        effects: list[StatementEffect] = []
        for statement in candidate.statements:
            try:
                effects.append(self._capture(statement))
            except DatabaseError as exc:
                raise self._abort(exc, statement.text, "execution error") from exc

        self._pending = PreviewResult(candidate, tuple(effects))
        return self._pending

    def finalize(self, decision: Decision) -> Outcome:
        """Commit or roll back the open preview. Repeated calls return the first outcome."""
        if self._state is TransactionState.IDLE:
            if self._last_outcome is not None:
                logger.info("Preview already finalized; returning the previous outcome")
                return self._last_outcome
            self._ensure_usable()
            raise NoPreviewError("There is no preview to finalize.")

        preview = self._open_preview()
        if not self._db.is_alive():
            raise self._mark_lost(preview.candidate.text)

        if decision is Decision.DISCARD:
            return self._rollback_open("discarded")

        try:
            self._db.commit()
        except DatabaseError as exc:
            raise self._abort(exc, preview.candidate.text, "commit failed") from exc

        outcome = CommitOutcome(preview.candidate, preview.row_count)
        self._to_idle(outcome)
        logger.info("Preview transaction committed (%s rows)", preview.row_count)
        return outcome

    def abandon(self) -> RollbackOutcome | None:
        """Roll back any open preview. Returns None when there was nothing to roll back."""
        if self._state is TransactionState.IDLE:
            return None
        preview = self._open_preview()
        if not self._db.is_alive():
            raise self._mark_lost(preview.candidate.text)
        return self._rollback_open("abandoned")

    def snapshot_schema(self) -> Schema:
        """Introspect the schema on the session connection while idle."""
        self._ensure_usable()
        if self._state is TransactionState.PREVIEW_OPEN:
            raise PreviewPendingError("A preview is waiting for a commit/discard decision.")
        try:
            return introspect_schema(self._db)
        except DatabaseError as exc:
            raise self._failure(exc, exc.sql) from exc

    # -- affected-row capture ----------------------------------------------

    def _capture(self, statement: Statement) -> StatementEffect:
        if statement.kind is StatementKind.READ:
            result = self._db.execute(statement.text)
            return StatementEffect(
                statement,
                CaptureMethod.QUERY,
                columns=tuple(result.columns),
                rows=tuple(result.mappings()),
                row_count=result.row_count,
                notices=tuple(result.messages),
            )
        if statement.is_ddl:
            return self._capture_schema(statement)
        if (
            statement.kind is StatementKind.WRITE
            and statement.verb in RETURNING_VERBS
            and not statement.wrapped
            and self._db.dialect.supports_returning
        ):
            return self._capture_returning(statement)
        if statement.target is not None:
            return self._capture_diff(statement)
        return self._capture_rowcount(statement, "affected rows cannot be shown for this statement")

    def _capture_returning(self, statement: Statement) -> StatementEffect:
        sql = statement.text
        if not statement.has_returning:
            # newline ends any trailing line comment
            sql = f"{sql}\nRETURNING *"
        result = self._db.execute(sql)
        return StatementEffect(
            statement,
            CaptureMethod.RETURNING,
            columns=tuple(result.columns),
            rows=tuple(result.mappings()),
            row_count=len(result.rows),
            notices=tuple(result.messages),
        )

    def _count_target(self, target: str) -> int | None:
        """Row count of the diff target, or None when it cannot be read.

        The read runs under a savepoint so a failure leaves the preview
        transaction usable.
        """
        self._db.savepoint(_PROBE_SAVEPOINT)
        try:
            count = self._db.execute(f"SELECT COUNT(*) FROM {target}").rows[0][0]
        except DriverError as exc:
            logger.warning("Cannot read %s for the row diff: %s", target, exc)
            self._db.rollback_to(_PROBE_SAVEPOINT)
            self._db.release(_PROBE_SAVEPOINT)
            return None
        self._db.release(_PROBE_SAVEPOINT)
        return count

    def _capture_diff(self, statement: Statement) -> StatementEffect:
        target = statement.target
        count = self._count_target(target)
        if count is None:
            return self._capture_rowcount(
                statement, f"could not read {target}; affected rows are not listed"
            )
        if count > self._diff_row_limit:
            logger.warning("Skipping row diff for %s: %d rows exceeds limit", target, count)
            return self._capture_rowcount(
                statement,
                f"{target} has {count} rows, more than PREVIEW_DIFF_ROW_LIMIT={self._diff_row_limit}; "
                "affected rows are not listed",
                # TRUNCATE removes every row just counted
                known_count=count if statement.verb == "TRUNCATE" else None,
            )

        before = self._db.execute(f"SELECT * FROM {target}")
        result = self._db.execute(statement.text)
        after = self._db.execute(f"SELECT * FROM {target}")

        removed = _multiset_minus(before.rows, after.rows)
        added = _multiset_minus(after.rows, before.rows)
        if statement.verb in REMOVING_VERBS or not added:
            changed, columns = removed, before.columns
        else:
            changed, columns = added, after.columns

        row_count = result.rowcount if result.rowcount >= 0 else len(changed)
        return StatementEffect(
            statement,
            CaptureMethod.DIFF,
            columns=tuple(columns),
            rows=tuple(dict(zip(columns, row)) for row in changed),
            row_count=row_count,
            notices=tuple(result.messages),
        )

    def _capture_schema(self, statement: Statement) -> StatementEffect:
        before = introspect_schema(self._db)
        result = self._db.execute(statement.text)
        after = introspect_schema(self._db)
        changes = before.diff(after)
        notices = list(result.messages)
        if not changes:
            notices.append("no change to tables, columns or keys was detected")
        return StatementEffect(
            statement,
            CaptureMethod.SCHEMA,
            row_count=max(result.rowcount, 0),
            schema_changes=tuple(changes),
            notices=tuple(notices),
        )

    def _capture_rowcount(
        self, statement: Statement, reason: str, known_count: int | None = None
    ) -> StatementEffect:
        logger.warning("Preview without row capture: %s", reason)
        result = self._db.execute(statement.text)
        if known_count is not None:
            row_count = known_count
        elif result.columns:
            row_count = len(result.rows)
        elif result.rowcount >= 0:
            row_count = result.rowcount
        else:
            row_count = None
        return StatementEffect(
            statement,
            CaptureMethod.ROWCOUNT,
            columns=tuple(result.columns),
            rows=tuple(result.mappings()),
            row_count=row_count,
            notices=(reason, *result.messages),
        )
