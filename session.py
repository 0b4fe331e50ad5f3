"""The interactive session: question -> SQL -> classify -> run or preview -> decide."""

from __future__ import annotations

import logging
import os
import readline
from enum import Enum
from typing import Callable, TypeVar

from classifier import CandidateStatement, ClassificationError, classify, looks_like_sql
from db import ConnectionLost, Database, DatabaseError, ExecutionError, QueryResult
from llm import TranslationError, Translator
from preview import Decision, Outcome, PreviewEngine, PreviewResult
from render import affected, render_error, render_outcome, render_preview, render_query_result, summarize
from schema import Schema

logger = logging.getLogger(__name__)

HISTORY_LENGTH = 1000

HELP = """Type your question in natural language, or SQL ending with ';', or a command:
  \\q            quit
  \\schema       refresh and show the schema
  \\mode [m]     show/set execution mode (auto/confirm/show)
  \\help         show this help
Writes always run in a preview transaction and are only committed when you say so."""

RUN_PROMPT = "Run this SQL? [y]es, [n]o, [e]dit SQL, edit [p]rompt, [a]lways run:"
COMMIT_PROMPT = "Commit these changes? [y]es, [n]o, [e]dit SQL and retry:"
ERROR_PROMPT = "What next? [f]ix with the assistant, [e]dit SQL, [r]etry with a new prompt, [c]ancel:"

T = TypeVar("T")


class ExecutionMode(str, Enum):
    AUTO = "auto"
    CONFIRM = "confirm"
    SHOW = "show"

    @classmethod
    def from_env(cls) -> ExecutionMode:
        value = os.getenv("EXECUTION_MODE", cls.CONFIRM.value).strip().lower()
        try:
            return cls(value)
        except ValueError:
            logger.warning("Unknown EXECUTION_MODE %r, using confirm", value)
            return cls.CONFIRM


class RunChoice(Enum):
    RUN = "run"
    EDIT_SQL = "edit_sql"
    EDIT_PROMPT = "edit_prompt"
    ALWAYS = "always"
    CANCEL = "cancel"


class CommitChoice(Enum):
    COMMIT = "commit"
    DISCARD = "discard"
    EDIT_SQL = "edit_sql"


class ErrorChoice(Enum):
    FIX = "fix"
    EDIT_SQL = "edit_sql"
    RETRY = "retry"
    CANCEL = "cancel"


_RUN_KEYS = {
    "y": RunChoice.RUN,
    "n": RunChoice.CANCEL,
    "e": RunChoice.EDIT_SQL,
    "p": RunChoice.EDIT_PROMPT,
    "a": RunChoice.ALWAYS,
}
_COMMIT_KEYS = {"y": CommitChoice.COMMIT, "n": CommitChoice.DISCARD, "e": CommitChoice.EDIT_SQL}
_ERROR_KEYS = {
    "f": ErrorChoice.FIX,
    "e": ErrorChoice.EDIT_SQL,
    "r": ErrorChoice.RETRY,
    "c": ErrorChoice.CANCEL,
}


class Session:
    def __init__(
        self,
        database: Database,
        translator: Translator,
        schema: Schema | None = None,
        mode: ExecutionMode | None = None,
        max_rows: int | None = None,
        diff_row_limit: int | None = None,
        prompt: Callable[[str], str] = input,
        history_file: str | None = None,
    ) -> None:
        self.database = database
        self.translator = translator
        self.engine = PreviewEngine(database, diff_row_limit=diff_row_limit)
        self.schema = schema if schema is not None else Schema()
        self.mode = mode or ExecutionMode.from_env()
        self.max_rows = max_rows if max_rows is not None else int(os.getenv("DB_MAX_ROWS", "100"))
        self.history_file = history_file
        self._prompt = prompt

    @classmethod
    def open(cls, database: Database, translator: Translator, **kwargs) -> Session:
        """Create a session and take the startup schema snapshot."""
        session = cls(database, translator, **kwargs)
        session.schema = session.engine.snapshot_schema()
        return session

    # -- protocol entry points ---------------------------------------------

    def submit(self, sql: str, question: str | None = None) -> PreviewResult | list[QueryResult]:
        """Classify and execute SQL. Writes come back as an open preview awaiting `decide`.

        Any undecided earlier preview is discarded first.
        """
        self.discard_pending()
        candidate = classify(sql, question)
        if candidate.requires_preview:
            return self.engine.begin_preview(candidate)
        return self.engine.run_read(candidate, max_rows=self.max_rows)

    def decide(self, decision: Decision) -> Outcome:
        return self.engine.finalize(decision)

    def discard_pending(self) -> None:
        outcome = self.engine.abandon()
        if outcome is not None:
            print("Pending preview discarded; nothing was committed.")

    # -- REPL --------------------------------------------------------------

    def run(self) -> None:
        print(HELP)
        print()
        self._load_history()
        try:
            while True:
                try:
                    line = self._prompt("nlsql> ")
                except KeyboardInterrupt:
                    print("^C")
                    continue
                except EOFError:
                    print()
                    break
                try:
                    if not self.handle_line(line):
                        break
                except KeyboardInterrupt:
                    print("^C")
                    self.discard_pending()
        finally:
            self._save_history()
            self.close()

    def _load_history(self) -> None:
        if not self.history_file:
            return
        try:
            readline.read_history_file(self.history_file)
        except FileNotFoundError:
            pass
        readline.set_history_length(HISTORY_LENGTH)

    def _save_history(self) -> None:
        if not self.history_file:
            return
        try:
            readline.write_history_file(self.history_file)
        except OSError as exc:
            logger.debug("Failed to save history: %s", exc)

    def close(self) -> None:
        """Roll back anything still open, then release the connection."""
        try:
            self.discard_pending()
        except ConnectionLost as exc:
            logger.error("Connection lost during shutdown: %s", exc)
        finally:
            self.database.close()

    def handle_line(self, line: str) -> bool:
        """Handle one REPL line. Returns False when the user asked to quit."""
        line = line.strip()
        if not line:
            return True
        self.discard_pending()
        if line.startswith("\\"):
            return self._command(line)
        self.ask(line)
        return True

    def _command(self, line: str) -> bool:
        parts = line.split()
        cmd = parts[0]
        if cmd in ("\\q", "\\quit"):
            return False
        if cmd == "\\schema":
            print("Refreshing schema...")
            self.schema = self.engine.snapshot_schema()
            print(f"Schema loaded ({len(self.schema.tables)} tables):\n")
            print(self.schema.to_prompt_string())
        elif cmd == "\\mode":
            if len(parts) > 1:
                try:
                    self.mode = ExecutionMode(parts[1].lower())
                    print(f"Execution mode: {self.mode.value}")
                except ValueError:
                    print("Unknown mode. Use: auto, confirm, or show")
            else:
                print(f"Current mode: {self.mode.value}")
        elif cmd == "\\help":
            print(HELP)
        else:
            print(f"Unknown command: {cmd}")
        return True

    # -- prompts -----------------------------------------------------------

    def _choose(self, question: str, keys: dict[str, T], default: T) -> T:
        """Ask a one-letter menu question. End of input picks the default."""
        try:
            answer = self._prompt(f"{question} ").strip().lower()
        except EOFError:
            print()
            return default
        return keys.get(answer[:1], default)

    def _ask_run(self) -> RunChoice:
        choice = self._choose(RUN_PROMPT, _RUN_KEYS, RunChoice.CANCEL)
        if choice is RunChoice.ALWAYS:
            self.mode = ExecutionMode.AUTO
            print("Auto-run enabled. Use \\mode confirm to disable.\n")
        return choice

    def _read_question(self) -> str | None:
        try:
            question = self._prompt("Enter new prompt: ").strip()
        except EOFError:
            question = ""
        if not question:
            print("Cancelled.\n")
            return None
        return question

    def _edit_sql(self, sql: str) -> str | None:
        """Let the user edit SQL on one pre-filled line. An empty line cancels."""
        print("Edit the SQL and press Enter (an empty line cancels):")
        readline.set_startup_hook(lambda: readline.insert_text(sql.replace("\n", " ")))
        try:
            edited = self._prompt("SQL> ").strip()
        except EOFError:
            edited = ""
        finally:
            readline.set_startup_hook()
        if not edited:
            print("Cancelled.\n")
            return None
        return edited

    def _translate(self, question: str) -> str | None:
        try:
            sql = self.translator.translate(question, self.schema.to_prompt_string())
        except TranslationError as exc:
            print(render_error("Translation error", exc))
            return None
        print(f"\nGenerated SQL:\n{sql}\n")
        return sql

    def _approve(self, sql: str) -> str | None:
        """Confirm SQL proposed during recovery. AUTO mode runs it as is."""
        while self.mode is not ExecutionMode.AUTO:
            choice = self._ask_run()
            if choice in (RunChoice.RUN, RunChoice.ALWAYS):
                break
            if choice is not RunChoice.EDIT_SQL:
                print("Cancelled.\n")
                return None
            sql = self._edit_sql(sql)
            if sql is None:
                return None
        return sql

    # -- questions ---------------------------------------------------------

    def ask(self, text: str) -> None:
        """Answer one REPL line: raw SQL is used as typed, anything else is translated."""
        if looks_like_sql(text):
            self._execute(text, question=None)
            return

        question = text
        sql = self._translate(question)
        while sql is not None:
            if self.mode is ExecutionMode.SHOW:
                return
            if self.mode is ExecutionMode.CONFIRM:
                choice = self._ask_run()
                if choice is RunChoice.CANCEL:
                    print("Cancelled.\n")
                    return
                if choice is RunChoice.EDIT_SQL:
                    sql = self._edit_sql(sql)
                    continue
                if choice is RunChoice.EDIT_PROMPT:
                    new_question = self._read_question()
                    if new_question is None:
                        return
                    question = new_question
                    sql = self._translate(question)
                    continue
            self._execute(sql, question)
            return

    def _execute(self, sql: str, question: str | None) -> None:
        while sql:
            try:
                candidate = classify(sql, question)
            except ClassificationError as exc:
                print(render_error("Could not classify SQL", exc, sql))
                print()
                sql, question = self._recover(question, sql, exc)
                continue
            try:
                if candidate.requires_preview:
                    sql = self._preview_and_decide(candidate)
                else:
                    self._read(candidate)
                    sql = None
            except ExecutionError as exc:
                print(render_error("Database error", exc, exc.sql or sql))
                print("The transaction was rolled back; nothing was changed.\n")
                sql, question = self._recover(question, sql, exc)

    def _read(self, candidate: CandidateStatement) -> None:
        results = self.engine.run_read(candidate, max_rows=self.max_rows)
        for result in results:
            print(render_query_result(result))
        print()
        if candidate.question:
            self.translator.remember(candidate.question, candidate.text, summarize(results))

    def _preview_and_decide(self, candidate: CandidateStatement) -> str | None:
        """Preview a write and apply the user's decision. Returns edited SQL to retry, if any."""
        preview = self.engine.begin_preview(candidate)
        print(render_preview(preview, self.max_rows))
        print()
        try:
            choice = self._choose(COMMIT_PROMPT, _COMMIT_KEYS, CommitChoice.DISCARD)
        except KeyboardInterrupt:
            print()
            self.engine.abandon()
            print("Preview discarded; nothing was committed.\n")
            return None

        if choice is CommitChoice.EDIT_SQL:
            self.engine.finalize(Decision.DISCARD)
            print("Preview discarded; nothing was committed.\n")
            return self._edit_sql(candidate.text)

        outcome = self.engine.finalize(
            Decision.COMMIT if choice is CommitChoice.COMMIT else Decision.DISCARD
        )
        print(render_outcome(outcome))
        print()
        if choice is CommitChoice.COMMIT and candidate.question:
            self.translator.remember(candidate.question, candidate.text, affected(preview.row_count))
        return None

    def _recover(
        self, question: str | None, sql: str, error: DatabaseError | ClassificationError
    ) -> tuple[str | None, str | None]:
        """Offer the ways out of a failed statement. Returns the next SQL to try and its question."""
        choice = self._choose(ERROR_PROMPT, _ERROR_KEYS, ErrorChoice.CANCEL)
        if choice is ErrorChoice.FIX:
            try:
                fixed = self.translator.fix(
                    question or sql, sql, str(error), self.schema.to_prompt_string()
                )
            except TranslationError as exc:
                print(render_error("Translation error", exc))
                return None, question
            print(f"\nFixed SQL:\n{fixed}\n")
            return self._approve(fixed), question
        if choice is ErrorChoice.EDIT_SQL:
            return self._edit_sql(sql), question
        if choice is ErrorChoice.RETRY:
            new_question = self._read_question()
            if new_question is None:
                return None, question
            new_sql = self._translate(new_question)
            if new_sql is None:
                return None, new_question
            return self._approve(new_sql), new_question
        print("Cancelled.\n")
        return None, question
