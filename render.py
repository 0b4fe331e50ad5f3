"""Plain-text output for results, previews and outcomes."""

from __future__ import annotations

from typing import Any, Sequence

from db import QueryResult
from preview import CaptureMethod, CommitOutcome, Outcome, PreviewResult


def _cell(value: Any) -> str:
    if value is None:
        return "NULL"
    return str(value)


def format_table(columns: Sequence[str], rows: Sequence[Sequence[Any]], max_rows: int | None = None) -> str:
    """Align rows under their column headers, psql style."""
    shown = list(rows if max_rows is None else rows[:max_rows])
    cells = [[_cell(v) for v in row] for row in shown]
    widths = [len(c) for c in columns]
    for row in cells:
        for i, value in enumerate(row):
            widths[i] = max(widths[i], len(value))

    lines = [
        " " + " | ".join(c.ljust(w) for c, w in zip(columns, widths)),
        "-" + "-+-".join("-" * w for w in widths) + "-",
    ]
    lines.extend(" " + " | ".join(v.ljust(w) for v, w in zip(row, widths)) for row in cells)
    hidden = len(rows) - len(shown)
    if hidden > 0:
        lines.append(f" ... {hidden} more row(s) not shown")
    return "\n".join(lines)


def _plural(n: int) -> str:
    return f"({n} row)" if n == 1 else f"({n} rows)"


def affected(n: int | None) -> str:
    if n is None:
        return "row count not reported by the database"
    return f"{n} row(s) affected"


def render_query_result(result: QueryResult) -> str:
    if not result.columns:
        return f"OK, {result.row_count} row(s) affected."
    text = format_table(result.columns, result.rows)
    suffix = " - more rows available, output truncated" if result.truncated else ""
    return f"{text}\n{_plural(len(result.rows))}{suffix}"


def render_preview(preview: PreviewResult, max_rows: int | None = None) -> str:
    lines = ["This is a WRITE operation. Preview (transaction still open, nothing committed):"]
    for effect in preview.effects:
        lines.append("")
        lines.append(f"-- {effect.statement.text}")
        if effect.method is CaptureMethod.SCHEMA:
            lines.extend(effect.schema_changes)
        elif effect.columns:
            rows = [[row.get(c) for c in effect.columns] for row in effect.rows]
            lines.append(format_table(effect.columns, rows, max_rows))
        if effect.method is CaptureMethod.QUERY:
            lines.append(_plural(effect.row_count))
        elif effect.method is not CaptureMethod.SCHEMA:
            lines.append(affected(effect.row_count))
        lines.extend(f"NOTICE: {notice}" for notice in effect.notices)
    lines.append("")
    total = preview.row_count
    lines.append(f"Total affected rows: {'unknown' if total is None else total}")
    return "\n".join(lines)


def render_outcome(outcome: Outcome) -> str:
    if isinstance(outcome, CommitOutcome):
        return f"Transaction committed ({affected(outcome.row_count)})."
    return f"Transaction rolled back ({outcome.reason}); nothing was changed."


def render_error(kind: str, error: Exception, sql: str | None = None) -> str:
    sql = sql or getattr(error, "sql", None)
    text = f"{kind}: {error}"
    if sql:
        text += f"\nSQL:\n{sql}"
    return text


def summarize(results: Sequence[QueryResult], limit: int = 20) -> str:
    """Short text form of read results, kept in translator history."""
    parts = []
    for result in results:
        if result.columns:
            parts.append(format_table(result.columns, result.rows, limit))
        else:
            parts.append(f"{result.row_count} row(s) affected")
    return "\n".join(parts)

