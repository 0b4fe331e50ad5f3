"""LLM helpers for natural-language-to-SQL translation."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass

from openai import OpenAI, OpenAIError

logger = logging.getLogger(__name__)

MAX_HISTORY = 10

_FENCE_RE = re.compile(r"^```[A-Za-z]*\s*\n?(.*?)\n?```$", re.DOTALL)


class TranslationError(RuntimeError):
    """Raised when the model call fails or returns unusable output."""


@dataclass
class Turn:
    question: str
    sql: str
    result: str | None = None


def _client() -> OpenAI:
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        raise TranslationError("OPENAI_API_KEY is not set. Add it to your .env file first.")
    return OpenAI(api_key=api_key)


def clean_sql(text: str | None) -> str:
    """Strip markdown fences and a leading language tag from model output."""
    sql = (text or "").strip()
    fenced = _FENCE_RE.match(sql)
    if fenced:
        sql = fenced.group(1).strip()
    sql = sql.strip("`").strip()

    first_line, _, rest = sql.partition("\n")
    if first_line.strip().lower() in {"sql", "tsql", "mysql", "postgresql", "postgres", "sqlite"}:
        sql = rest.strip()

    if not sql:
        raise TranslationError("Model returned empty SQL.")
    return sql


def system_prompt(dialect_label: str, schema_context: str) -> str:
    return (
        f"You are a {dialect_label} expert assistant. Convert natural-language questions "
        "into SQL for the schema below.\n"
        "Rules:\n"
        "- Return ONLY the SQL, with no explanation, markdown or code fences.\n"
        "- The SQL must be ready to execute directly.\n"
        "- Write data-modifying or DDL statements only when the user explicitly asks for a change.\n"
        "- Never include transaction control (BEGIN, COMMIT, ROLLBACK); the client manages transactions.\n"
        f"\nDatabase schema:\n{schema_context}\n"
    )


class Translator:
    """Turns questions into SQL, remembering recent turns for follow-up questions."""

    def __init__(
        self,
        dialect_label: str,
        client: OpenAI | None = None,
        model: str | None = None,
        max_history: int = MAX_HISTORY,
    ) -> None:
        self.dialect_label = dialect_label
        self._client = client
        self.model = model or os.getenv("OPENAI_MODEL", "gpt-4o-mini")
        self.max_history = max_history
        self.history: list[Turn] = []

    def remember(self, question: str, sql: str, result: str | None = None) -> None:
        self.history.append(Turn(question, sql, result))
        del self.history[: -self.max_history]

    def _complete(self, schema_context: str, messages: list[dict[str, str]]) -> str:
        if self._client is None:
            self._client = _client()
        try:
            response = self._client.responses.create(
                model=self.model,
                input=[
                    {"role": "system", "content": system_prompt(self.dialect_label, schema_context)},
                    *messages,
                ],
            )
        except OpenAIError as exc:
            raise TranslationError(f"Model call failed: {exc}") from exc
        return clean_sql(response.output_text)

    def translate(self, question: str, schema_context: str) -> str:
        """Generate SQL for a question, with earlier turns as conversation context."""
        messages: list[dict[str, str]] = []
        for turn in self.history:
            messages.append({"role": "user", "content": turn.question})
            answer = turn.sql if turn.result is None else f"{turn.sql}\n\n-- Result:\n{turn.result}"
            messages.append({"role": "assistant", "content": answer})
        messages.append({"role": "user", "content": question})

        sql = self._complete(schema_context, messages)
        logger.info("Translated question into %d chars of SQL", len(sql))
        return sql

    def fix(self, question: str, sql: str, error: str, schema_context: str) -> str:
        """Ask for a corrected statement after the database rejected `sql`."""
        messages = [
            {"role": "user", "content": question},
            {"role": "assistant", "content": sql},
            {
                "role": "user",
                "content": (
                    f"The query failed with this error:\n{error}\n\n"
                    "Please fix the SQL query. Return ONLY the corrected SQL, nothing else."
                ),
            },
        ]
        return self._complete(schema_context, messages)
