"""Statement classification: does a SQL text read data, or change it?

Anything that cannot be positively identified as a read is treated as a write,
so it always goes through a preview transaction.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum


class ClassificationError(ValueError):
    """Raised when SQL cannot be split or contains a statement that must not run."""


class StatementKind(str, Enum):
    READ = "read"
    WRITE = "write"
    UNKNOWN = "unknown"


READ_VERBS = frozenset({"SELECT", "SHOW", "DESCRIBE", "DESC", "VALUES", "TABLE"})
DML_VERBS = frozenset({"INSERT", "UPDATE", "DELETE", "MERGE", "UPSERT", "REPLACE", "TRUNCATE"})
DDL_VERBS = frozenset({"CREATE", "ALTER", "DROP", "RENAME", "COMMENT", "GRANT", "REVOKE"})
TRANSACTION_VERBS = frozenset(
    {"BEGIN", "START", "COMMIT", "END", "ROLLBACK", "SAVEPOINT", "RELEASE", "ABORT"}
)

# Leading keywords that make a REPL line look like SQL rather than a question.
SQL_STARTERS = READ_VERBS | DML_VERBS | DDL_VERBS | {"WITH", "EXPLAIN"}

_WORD_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_DOLLAR_TAG_RE = re.compile(r"\$(?:[A-Za-z_][A-Za-z0-9_]*)?\$")
_RETURNING_RE = re.compile(r"\bRETURNING\b", re.IGNORECASE)

_IDENT = r'(?:"[^"]+"|\[[^\]]+\]|`[^`]+`|[A-Za-z_][A-Za-z0-9_$#@]*)'
_QUALIFIED_IDENT_RE = re.compile(rf"{_IDENT}(?:\s*\.\s*{_IDENT}){{0,2}}")
_TARGET_RE = re.compile(
    r"\b(?:DELETE\s+(?:FROM\s+)?|UPDATE\s+(?:OR\s+\w+\s+)?|INSERT\s+(?:OR\s+\w+\s+)?(?:INTO\s+)?"
    r"|MERGE\s+(?:INTO\s+)?|REPLACE\s+(?:INTO\s+)?|UPSERT\s+(?:INTO\s+)?|TRUNCATE\s+(?:TABLE\s+)?)"
    r"(?:ONLY\s+)?",
    re.IGNORECASE,
)
_NOT_A_TABLE = frozenset({"TOP", "ONLY", "LOW_PRIORITY", "IGNORE", "QUICK", "DELAYED"})
_SOURCE_RE = re.compile(r"\b(?:FROM|JOIN|USING)\s+", re.IGNORECASE)
_ALIAS_RE = re.compile(rf"\s+(?:AS\s+)?({_IDENT})", re.IGNORECASE)


@dataclass(frozen=True)
class Statement:
    """One terminator-delimited statement of a batch."""

    text: str
    kind: StatementKind
    verb: str
    target: str | None = None
    is_ddl: bool = False
    has_returning: bool = False
    wrapped: bool = False


@dataclass(frozen=True)
class CandidateStatement:
    """SQL proposed for execution, classified as a single unit."""

    text: str
    kind: StatementKind
    statements: tuple[Statement, ...]
    question: str | None = None

    @property
    def requires_preview(self) -> bool:
        return self.kind is not StatementKind.READ


def _closing_quote(sql: str, start: int, quote: str) -> int:
    i = start + 1
    while True:
        j = sql.find(quote, i)
        if j == -1:
            raise ClassificationError(f"Unterminated {quote} quote starting at offset {start}.")
        if sql.startswith(quote * 2, j):
            i = j + 2
            continue
        return j + 1


def mask(sql: str) -> str:
    """Blank out comments, string literals and quoted identifiers, keeping offsets.

    Literal and identifier bodies are replaced so keywords and terminators inside
    them are not seen; their delimiters stay in place.
    """
    out: list[str] = []
    i, n = 0, len(sql)
    while i < n:
        ch = sql[i]
        nxt = sql[i + 1] if i + 1 < n else ""
        if ch == "-" and nxt == "-":
            end = sql.find("\n", i)
            end = n if end == -1 else end
            out.append(" " * (end - i))
        elif ch == "/" and nxt == "*":
            end = sql.find("*/", i + 2)
            if end == -1:
                raise ClassificationError(f"Unterminated block comment starting at offset {i}.")
            end += 2
            out.append(" " * (end - i))
        elif ch == "'":
            end = _closing_quote(sql, i, ch)
            out.append("'" + " " * (end - i - 2) + "'")
        elif ch in '"`':
            end = _closing_quote(sql, i, ch)
            out.append(ch + "_" * (end - i - 2) + ch)
        elif ch == "[":
            end = sql.find("]", i + 1)
            if end == -1:
                raise ClassificationError(f"Unterminated [ identifier starting at offset {i}.")
            end += 1
            out.append("[" + "_" * (end - i - 2) + "]")
        elif ch == "$" and (m := _DOLLAR_TAG_RE.match(sql, i)):
            tag = m.group(0)
            close = sql.find(tag, m.end())
            if close == -1:
                raise ClassificationError(f"Unterminated {tag} quoted body starting at offset {i}.")
            end = close + len(tag)
            out.append("$" * len(tag) + " " * (close - m.end()) + "$" * len(tag))
        else:
            out.append(ch)
            i += 1
            continue
        i = end
    return "".join(out)


def _split_masked(sql: str) -> list[tuple[str, str]]:
    masked = mask(sql)
    pieces: list[tuple[str, str]] = []
    start = 0
    for pos in [m.start() for m in re.finditer(";", masked)] + [len(sql)]:
        raw, hidden = sql[start:pos], masked[start:pos]
        start = pos + 1
        if not hidden.strip():
            continue
        offset = len(raw) - len(raw.lstrip())
        pieces.append((raw.strip(), hidden[offset:offset + len(raw.strip())]))
    return pieces


def split_statements(sql: str) -> list[str]:
    """Split on `;` terminators that are outside literals, identifiers and comments."""
    return [text for text, _ in _split_masked(sql)]


def _bare(ident: str) -> str:
    return ident.strip('"[]`').upper()


def _resolve_alias(text: str, masked: str, name: str) -> str | None:
    """Table named `name` as an alias in a FROM/JOIN/USING clause, if any."""
    for m in _SOURCE_RE.finditer(masked):
        table = _QUALIFIED_IDENT_RE.match(text, m.end())
        if table is None:
            continue
        alias = _ALIAS_RE.match(text, table.end())
        if alias is not None and _bare(alias.group(1)) == _bare(name):
            return table.group(0)
    return None


def _find_target(text: str, masked: str) -> str | None:
    m = _TARGET_RE.search(masked)
    if m is None:
        return None
    ident = _QUALIFIED_IDENT_RE.match(text, m.end())
    if ident is None or ident.group(0).upper() in _NOT_A_TABLE:
        return None
    target = ident.group(0)
    # UPDATE u SET ... FROM users u / DELETE u FROM users u
    if "." not in target:
        return _resolve_alias(text, masked, target) or target
    return target


def _classify_masked(text: str, masked: str) -> Statement:
    words = [w.upper() for w in _WORD_RE.findall(masked)]
    if not words:
        raise ClassificationError(f"No SQL keyword found in statement: {text!r}")
    verb = words[0]
    word_set = set(words)

    if verb in TRANSACTION_VERBS or (verb == "SET" and "TRANSACTION" in words[1:3]):
        raise ClassificationError(
            f"Transaction control ({verb}) is not allowed; the assistant manages transactions itself."
        )

    if verb == "EXPLAIN":
        analyze = bool(word_set & {"ANALYZE", "ANALYSE"})
        inner = next((w for w in words[1:] if w in DML_VERBS | DDL_VERBS), None)
        if analyze and inner in DML_VERBS:
            return Statement(
                text, StatementKind.WRITE, inner, target=_find_target(text, masked), wrapped=True
            )
        if analyze and inner in DDL_VERBS:
            return Statement(text, StatementKind.WRITE, inner, is_ddl=True)
        return Statement(text, StatementKind.READ, verb)

    if verb == "WITH":
        inner = next((w for w in words if w in DML_VERBS), None)
        if inner is None:
            return Statement(text, StatementKind.READ, verb)
        return Statement(
            text,
            StatementKind.WRITE,
            inner,
            target=_find_target(text, masked),
            has_returning=bool(_RETURNING_RE.search(masked)),
            wrapped=True,
        )

    if verb in READ_VERBS:
        if verb == "SELECT" and "INTO" in word_set:
            # SELECT ... INTO creates a table (or writes a file)
            return Statement(text, StatementKind.WRITE, "SELECT INTO", is_ddl=True)
        return Statement(text, StatementKind.READ, verb)

    if verb in DML_VERBS:
        return Statement(
            text,
            StatementKind.WRITE,
            verb,
            target=_find_target(text, masked),
            has_returning=bool(_RETURNING_RE.search(masked)),
        )

    if verb in DDL_VERBS:
        return Statement(text, StatementKind.WRITE, verb, is_ddl=True)

    return Statement(text, StatementKind.UNKNOWN, verb)


def classify_statement(text: str) -> Statement:
    """Classify a single statement (no terminators inside)."""
    pieces = _split_masked(text)
    if len(pieces) != 1:
        raise ClassificationError(f"Expected exactly one statement, found {len(pieces)}.")
    return _classify_masked(*pieces[0])


def classify(sql: str, question: str | None = None) -> CandidateStatement:
    """Classify a whole batch. Any failing sub-statement fails the batch."""
    pieces = _split_masked(sql)
    if not pieces:
        raise ClassificationError("No SQL statement to run.")

    statements = tuple(_classify_masked(text, hidden) for text, hidden in pieces)
    kinds = {st.kind for st in statements}
    if kinds == {StatementKind.READ}:
        kind = StatementKind.READ
    elif StatementKind.UNKNOWN in kinds:
        kind = StatementKind.UNKNOWN
    else:
        kind = StatementKind.WRITE

    return CandidateStatement(text=sql.strip(), kind=kind, statements=statements, question=question)


def looks_like_sql(line: str) -> bool:
    """Guess whether a REPL line is SQL typed by the user rather than a question."""
    stripped = line.strip()
    m = _WORD_RE.match(stripped)
    if m is None or m.group(0).upper() not in SQL_STARTERS:
        return False
    following = stripped[m.end():m.end() + 1]
    if following and not (following.isspace() or following in "(;"):
        return False
    try:
        pieces = _split_masked(stripped)
    except ClassificationError:
        return False
    # a trailing terminator is what separates SQL from a question that starts with "select"
    return bool(pieces) and stripped.endswith(";")
