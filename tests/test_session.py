import readline
import sqlite3

import pytest

from conftest import FakeTranslator, ScriptedPrompt, scalar
from db import ConnectionLost
from preview import Decision, PreviewResult, RollbackOutcome, TransactionState
from session import ExecutionMode, Session

DELETE_OLDER = "delete all users older than 30"
ORDERS_TODAY = "how many orders today"


def make_session(database, prompt, mode=ExecutionMode.AUTO, **translator_kwargs):
    translator = FakeTranslator(
        translator_kwargs.pop("answers", None) or {
            DELETE_OLDER: "DELETE FROM users WHERE age > 30",
            ORDERS_TODAY: "SELECT count(*) AS n FROM orders WHERE placed_on = '2026-10-19'",
        },
        **translator_kwargs,
    )
    return Session(database, translator, mode=mode, prompt=prompt)


def test_declined_delete_leaves_the_table_alone(diff_database, observer, capsys):
    prompt = ScriptedPrompt("n")
    session = make_session(diff_database, prompt)

    session.ask(DELETE_OLDER)

    out = capsys.readouterr().out
    assert "DELETE FROM users WHERE age > 30" in out
    for name in ("Alice", "Carol", "Erin"):
        assert name in out
    assert "Total affected rows: 3" in out
    assert "Transaction rolled back (discarded)" in out
    assert prompt.asked == ["Commit these changes? [y]es, [n]o, [e]dit SQL and retry: "]
    assert scalar(observer, "SELECT count(*) FROM users WHERE age > 30") == 3
    assert session.engine.state is TransactionState.IDLE
    assert diff_database.commits == 0
    assert session.translator.history == []


def test_accepted_delete_commits_and_is_remembered(diff_database, observer, capsys):
    session = make_session(diff_database, ScriptedPrompt("y"))

    session.ask(DELETE_OLDER)

    assert "Transaction committed (3 row(s) affected)." in capsys.readouterr().out
    assert scalar(observer, "SELECT count(*) FROM users") == 2
    assert session.translator.history == [
        (DELETE_OLDER, "DELETE FROM users WHERE age > 30", "3 row(s) affected")
    ]


def test_read_question_never_asks_to_commit(database, capsys):
    prompt = ScriptedPrompt()
    session = make_session(database, prompt)

    session.ask(ORDERS_TODAY)

    out = capsys.readouterr().out
    assert "(1 row)" in out
    assert prompt.asked == []
    assert database.begins == 0
    question, _, result = session.translator.history[0]
    assert question == ORDERS_TODAY
    assert "2" in result


def test_raw_sql_skips_translation(database, capsys):
    session = make_session(database, ScriptedPrompt(), mode=ExecutionMode.CONFIRM)

    session.ask("SELECT name FROM users WHERE id = 1;")

    assert "Alice" in capsys.readouterr().out
    assert session.translator.calls == []


def test_confirm_mode_can_cancel_before_anything_runs(database, capsys):
    prompt = ScriptedPrompt("n")
    session = make_session(database, prompt, mode=ExecutionMode.CONFIRM)

    session.ask(DELETE_OLDER)

    assert prompt.asked == ["Run this SQL? [y]es, [n]o, [e]dit SQL, edit [p]rompt, [a]lways run: "]
    assert "Cancelled." in capsys.readouterr().out
    assert database.begins == 0


def test_show_mode_only_prints_the_sql(database, capsys):
    prompt = ScriptedPrompt()
    session = make_session(database, prompt, mode=ExecutionMode.SHOW)

    session.ask(DELETE_OLDER)

    assert "Generated SQL:\nDELETE FROM users WHERE age > 30" in capsys.readouterr().out
    assert prompt.asked == []
    assert database.begins == 0


def test_new_line_discards_the_pending_preview(diff_database, observer, capsys):
    session = make_session(diff_database, ScriptedPrompt())

    preview = session.submit("DELETE FROM users WHERE age > 30", question=DELETE_OLDER)
    assert isinstance(preview, PreviewResult)
    assert session.engine.state is TransactionState.PREVIEW_OPEN

    session.handle_line(ORDERS_TODAY)

    out = capsys.readouterr().out
    assert "Pending preview discarded; nothing was committed." in out
    assert session.engine.state is TransactionState.IDLE
    assert diff_database.rollbacks == 1
    assert diff_database.commits == 0
    assert scalar(observer, "SELECT count(*) FROM users WHERE age > 30") == 3


def test_submit_then_decide(diff_database, observer):
    session = make_session(diff_database, ScriptedPrompt())

    session.submit("UPDATE users SET age = 30 WHERE id = 4")
    session.decide(Decision.COMMIT)

    assert scalar(observer, "SELECT age FROM users WHERE id = 4") == 30


def test_submit_read_returns_results(database):
    session = make_session(database, ScriptedPrompt())
    (result,) = session.submit("SELECT name FROM users WHERE age < 26")
    assert result.rows == [("Bob",)]


def test_interrupt_at_the_commit_prompt_discards(diff_database, observer, capsys):
    session = make_session(diff_database, ScriptedPrompt(KeyboardInterrupt()))

    session.ask(DELETE_OLDER)

    assert "Preview discarded; nothing was committed." in capsys.readouterr().out
    assert session.engine.state is TransactionState.IDLE
    assert isinstance(session.engine.finalize(Decision.COMMIT), RollbackOutcome)
    assert scalar(observer, "SELECT count(*) FROM users WHERE age > 30") == 3


def test_unclassifiable_sql_never_reaches_the_database(database, capsys):
    session = make_session(database, ScriptedPrompt(), answers={"wrap it up": "DELETE FROM users; COMMIT"})

    session.ask("wrap it up")

    out = capsys.readouterr().out
    assert "Could not classify SQL" in out
    assert "DELETE FROM users; COMMIT" in out
    assert database.begins == 0


def test_failed_statement_can_be_fixed_and_retried(diff_database, observer, capsys):
    session = make_session(
        diff_database,
        ScriptedPrompt("f", "y"),
        answers={"remove bob": "DELETE FROM ghosts WHERE name = 'Bob'"},
        fixes={"DELETE FROM ghosts WHERE name = 'Bob'": "DELETE FROM users WHERE name = 'Bob'"},
    )

    session.ask("remove bob")

    out = capsys.readouterr().out
    assert "Database error" in out
    assert "The transaction was rolled back; nothing was changed." in out
    assert "Fixed SQL:\nDELETE FROM users WHERE name = 'Bob'" in out
    assert session.translator.calls[-1] == ("fix", "DELETE FROM ghosts WHERE name = 'Bob'")
    assert scalar(observer, "SELECT count(*) FROM users") == 4
    assert diff_database.commits == 1


def test_declining_the_fix_stops(diff_database, capsys):
    prompt = ScriptedPrompt("c")
    session = make_session(diff_database, prompt, answers={"remove bob": "DELETE FROM ghosts"})

    session.ask("remove bob")

    assert prompt.asked == [
        "What next? [f]ix with the assistant, [e]dit SQL, [r]etry with a new prompt, [c]ancel: "
    ]
    assert diff_database.commits == 0


def test_commands(database, capsys):
    session = make_session(database, ScriptedPrompt(), mode=ExecutionMode.CONFIRM)

    assert session.handle_line("\\mode show")
    assert session.mode is ExecutionMode.SHOW
    assert session.handle_line("\\mode nonsense")
    assert session.mode is ExecutionMode.SHOW
    assert session.handle_line("\\schema")
    assert not session.handle_line("\\q")

    out = capsys.readouterr().out
    assert "Execution mode: show" in out
    assert "Unknown mode" in out
    assert "Table: users" in out
    assert "Table: orders" in out


def test_run_loop_closes_the_connection(database, raw_connection):
    session = make_session(database, ScriptedPrompt("\\mode auto", "\\q"))

    session.run()

    assert session.mode is ExecutionMode.AUTO
    with pytest.raises(sqlite3.ProgrammingError):
        raw_connection.execute("SELECT 1")


def test_end_of_input_rolls_back_an_open_preview(diff_database, observer):
    session = make_session(diff_database, ScriptedPrompt())
    session.submit("DELETE FROM users")

    session.run()

    assert diff_database.rollbacks == 1
    assert scalar(observer, "SELECT count(*) FROM users") == 5


def test_lost_connection_propagates_to_the_caller(diff_database, raw_connection):
    session = make_session(diff_database, ScriptedPrompt())
    session.submit("DELETE FROM users WHERE id = 1")
    raw_connection.close()

    with pytest.raises(ConnectionLost):
        session.handle_line("\\help")


def test_open_loads_the_schema(database):
    session = Session.open(database, FakeTranslator(), mode=ExecutionMode.AUTO)

    tables = session.schema.table_map()
    assert set(tables) == {"users", "orders"}
    assert tables["orders"].foreign_keys[0].references_table == "users"


def test_mode_from_env(monkeypatch):
    monkeypatch.setenv("EXECUTION_MODE", "Show")
    assert ExecutionMode.from_env() is ExecutionMode.SHOW
    monkeypatch.setenv("EXECUTION_MODE", "yolo")
    assert ExecutionMode.from_env() is ExecutionMode.CONFIRM


def test_end_of_input_at_the_run_prompt_means_no(database, raw_connection, capsys):
    prompt = ScriptedPrompt("how many users")
    session = make_session(
        database, prompt, mode=ExecutionMode.CONFIRM,
        answers={"how many users": "SELECT count(*) FROM users"},
    )

    session.run()

    assert prompt.asked == [
        "nlsql> ",
        "Run this SQL? [y]es, [n]o, [e]dit SQL, edit [p]rompt, [a]lways run: ",
        "nlsql> ",
    ]
    assert "Cancelled." in capsys.readouterr().out
    assert database.begins == 0
    with pytest.raises(sqlite3.ProgrammingError):
        raw_connection.execute("SELECT 1")


def test_end_of_input_at_the_commit_prompt_discards(diff_database, observer, capsys):
    session = make_session(diff_database, ScriptedPrompt())

    session.ask(DELETE_OLDER)

    assert "Transaction rolled back (discarded)" in capsys.readouterr().out
    assert diff_database.commits == 0
    assert scalar(observer, "SELECT count(*) FROM users WHERE age > 30") == 3


def test_end_of_input_at_the_error_prompt_cancels(diff_database, capsys):
    session = make_session(diff_database, ScriptedPrompt(), answers={"remove bob": "DELETE FROM ghosts"})

    session.ask("remove bob")

    assert "Cancelled." in capsys.readouterr().out
    assert session.translator.calls == [("translate", "remove bob")]


def test_unrecognized_answer_does_not_run(database, capsys):
    session = make_session(database, ScriptedPrompt("maybe"), mode=ExecutionMode.CONFIRM)

    session.ask(DELETE_OLDER)

    assert "Cancelled." in capsys.readouterr().out
    assert database.begins == 0


def test_edit_sql_at_the_commit_prompt_previews_again(diff_database, observer, capsys):
    prompt = ScriptedPrompt("e", "DELETE FROM users WHERE age > 50", "y")
    session = make_session(diff_database, prompt)

    session.ask(DELETE_OLDER)

    assert prompt.asked[1] == "SQL> "
    assert "Transaction committed (1 row(s) affected)." in capsys.readouterr().out
    assert diff_database.rollbacks == 1
    assert diff_database.commits == 1
    assert scalar(observer, "SELECT count(*) FROM users") == 4
    assert scalar(observer, "SELECT count(*) FROM users WHERE name = 'Erin'") == 0


def test_empty_edit_cancels(diff_database, observer, capsys):
    session = make_session(diff_database, ScriptedPrompt("e", ""))

    session.ask(DELETE_OLDER)

    assert "Cancelled." in capsys.readouterr().out
    assert diff_database.commits == 0
    assert scalar(observer, "SELECT count(*) FROM users") == 5


def test_edit_sql_before_running(database, capsys):
    prompt = ScriptedPrompt("e", "SELECT name FROM users WHERE id = 2", "y")
    session = make_session(database, prompt, mode=ExecutionMode.CONFIRM)

    session.ask(DELETE_OLDER)

    assert "Bob" in capsys.readouterr().out
    assert len(prompt.asked) == 3
    assert database.begins == 0


def test_edit_prompt_translates_the_new_question(database, capsys):
    session = make_session(database, ScriptedPrompt("p", ORDERS_TODAY, "y"), mode=ExecutionMode.CONFIRM)

    session.ask(DELETE_OLDER)

    assert "(1 row)" in capsys.readouterr().out
    assert session.translator.calls == [("translate", DELETE_OLDER), ("translate", ORDERS_TODAY)]
    assert session.translator.history[0][0] == ORDERS_TODAY
    assert database.begins == 0


def test_always_run_switches_to_auto_mode(database, capsys):
    prompt = ScriptedPrompt("a")
    session = make_session(database, prompt, mode=ExecutionMode.CONFIRM)

    session.ask(ORDERS_TODAY)
    session.ask(ORDERS_TODAY)

    out = capsys.readouterr().out
    assert "Auto-run enabled." in out
    assert out.count("(1 row)") == 2
    assert session.mode is ExecutionMode.AUTO
    assert len(prompt.asked) == 1


def test_failed_statement_can_be_edited(diff_database, observer):
    session = make_session(
        diff_database,
        ScriptedPrompt("e", "DELETE FROM users WHERE name = 'Bob'", "y"),
        answers={"remove bob": "DELETE FROM ghosts WHERE name = 'Bob'"},
    )

    session.ask("remove bob")

    assert scalar(observer, "SELECT count(*) FROM users") == 4
    assert diff_database.commits == 1


def test_failed_statement_can_be_retried_with_a_new_question(diff_database, observer):
    prompt = ScriptedPrompt("r", "remove the user named bob", "y")
    session = make_session(
        diff_database,
        prompt,
        answers={
            "remove bob": "DELETE FROM ghosts WHERE name = 'Bob'",
            "remove the user named bob": "DELETE FROM users WHERE name = 'Bob'",
        },
    )

    session.ask("remove bob")

    assert prompt.asked[1] == "Enter new prompt: "
    assert scalar(observer, "SELECT count(*) FROM users") == 4
    assert session.translator.history == [
        ("remove the user named bob", "DELETE FROM users WHERE name = 'Bob'", "1 row(s) affected")
    ]


def test_history_file_is_loaded_and_saved(database, tmp_path):
    history = tmp_path / "history"
    history.write_text("how many users\n")
    readline.clear_history()
    session = Session(database, FakeTranslator(), mode=ExecutionMode.AUTO,
                      prompt=ScriptedPrompt("\\q"), history_file=str(history))

    session.run()

    assert readline.get_current_history_length() == 1
    assert readline.get_history_item(1) == "how many users"
    assert "how many users" in history.read_text()


def test_missing_history_file_is_created(database, tmp_path):
    history = tmp_path / "history"
    session = Session(database, FakeTranslator(), mode=ExecutionMode.AUTO,
                      prompt=ScriptedPrompt(), history_file=str(history))

    session.run()

    assert history.exists()
