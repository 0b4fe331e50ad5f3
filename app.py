"""CLI app: ask natural-language questions against a database, previewing every write."""

from __future__ import annotations

import argparse
import logging
import os
import sys

from dotenv import load_dotenv

from db import ConnectionLost, DatabaseError, connect
from llm import Translator
from session import ExecutionMode, Session


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="nlsql", description="A natural language interface to your database."
    )
    parser.add_argument("--conn-str", help="ODBC connection string (default: DB_ODBC_CONN_STR)")
    parser.add_argument("--dialect", help="postgresql, mssql, mysql or sqlite (default: DB_DIALECT)")
    parser.add_argument(
        "--mode",
        choices=[m.value for m in ExecutionMode],
        help="auto, confirm or show (default: EXECUTION_MODE)",
    )
    return parser.parse_args(argv)


def open_session(args: argparse.Namespace) -> Session:
    database = connect(args.conn_str, args.dialect)
    print(f"Connected ({database.dialect.label}). Loading schema...")
    try:
        session = Session.open(
            database,
            Translator(database.dialect.label),
            mode=ExecutionMode(args.mode) if args.mode else None,
            history_file=os.path.expanduser(os.getenv("NLSQL_HISTORY_FILE", "~/.nlsql_history")),
        )
    except DatabaseError:
        database.close()
        raise
    print(f"Schema loaded ({len(session.schema.tables)} tables)\n")
    return session


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "WARNING").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    args = parse_args(argv)
    print("Natural Language SQL Assistant")

    try:
        session = open_session(args)
    except DatabaseError as exc:
        print(f"Database setup error: {exc}")
        return 1

    while True:
        try:
            session.run()
            print("Goodbye!")
            return 0
        except ConnectionLost as exc:
            print(f"\n{exc}")
            try:
                again = input("Reconnect with a new session? [y/N]: ").strip().lower()
            except (KeyboardInterrupt, EOFError):
                again = ""
            if again not in {"y", "yes"}:
                return 1
            try:
                session = open_session(args)
            except DatabaseError as exc:
                print(f"Database setup error: {exc}")
                return 1


if __name__ == "__main__":
    sys.exit(main())
