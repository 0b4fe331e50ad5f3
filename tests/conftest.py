import sqlite3
from dataclasses import replace

import pytest

from db import DIALECTS, Database

USERS = [
    (1, "Alice", 34),
    (2, "Bob", 25),
    (3, "Carol", 41),
    (4, "Dave", 29),
    (5, "Erin", 52),
]

# RETURNING arrived in SQLite 3.35
requires_returning = pytest.mark.skipif(
    sqlite3.sqlite_version_info < (3, 35, 0),
    reason="SQLite too old for RETURNING",
)


class CountingDatabase(Database):
    """Database that records how many transaction-control statements really ran."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.begins = 0
        self.commits = 0
        self.rollbacks = 0

    def begin(self):
        super().begin()
        self.begins += 1

    def commit(self):
        super().commit()
        self.commits += 1

    def rollback(self):
        super().rollback()
        self.rollbacks += 1


class FakeTranslator:
    """Stands in for the OpenAI-backed translator."""

    def __init__(self, answers=None, fixes=None):
        self.answers = dict(answers or {})
        self.fixes = dict(fixes or {})
        self.history = []
        self.calls = []

    def translate(self, question, schema_context):
        self.calls.append(("translate", question))
        return self.answers[question]

    def fix(self, question, sql, error, schema_context):
        self.calls.append(("fix", sql))
        return self.fixes[sql]

    def remember(self, question, sql, result=None):
        self.history.append((question, sql, result))


class ScriptedPrompt:
    """Replays canned answers to input() prompts and records what was asked."""

    def __init__(self, *answers):
        self.answers = list(answers)
        self.asked = []

    def __call__(self, message):
        self.asked.append(message)
        if not self.answers:
            raise EOFError
        answer = self.answers.pop(0)
        if isinstance(answer, BaseException):
            raise answer
        return answer


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "shop.db"
    conn = sqlite3.connect(path)
    conn.execute("CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT NOT NULL, age INTEGER)")
    conn.execute(
        "CREATE TABLE orders (id INTEGER PRIMARY KEY, "
        "user_id INTEGER REFERENCES users(id), total REAL, placed_on TEXT)"
    )
    conn.executemany("INSERT INTO users VALUES (?, ?, ?)", USERS)
    conn.executemany(
        "INSERT INTO orders VALUES (?, ?, ?, ?)",
        [(1, 1, 19.5, "2026-10-19"), (2, 3, 5.0, "2026-10-18"), (3, 3, 12.25, "2026-10-19")],
    )
    conn.commit()
    conn.close()
    return path


@pytest.fixture
def raw_connection(db_path):
    conn = sqlite3.connect(db_path, isolation_level=None)
    yield conn
    conn.close()


@pytest.fixture
def database(raw_connection):
    return CountingDatabase(raw_connection, DIALECTS["sqlite"], driver_error=sqlite3.Error)


@pytest.fixture
def diff_database(raw_connection):
    """SQLite driven as if it had no RETURNING, so previews use the row diff."""
    dialect = replace(DIALECTS["sqlite"], supports_returning=False)
    return CountingDatabase(raw_connection, dialect, driver_error=sqlite3.Error)


@pytest.fixture
def observer(db_path):
    """A second connection, used to check what other sessions can see."""
    conn = sqlite3.connect(db_path, isolation_level=None)
    yield conn
    conn.close()


def scalar(conn, sql):
    return conn.execute(sql).fetchall()[0][0]


def table_rows(conn, table):
    return conn.execute(f"SELECT * FROM {table} ORDER BY id").fetchall()
