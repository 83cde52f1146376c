from __future__ import annotations

from io import StringIO
import json
import os

from tripbrief import cli


NOW = "2026-10-17T09:00:00Z"


def test_turn_command_prints_last_response_as_json(monkeypatch, capsys) -> None:
    monkeypatch.delenv("TRIPBRIEF_LLM_FALLBACK", raising=False)
    exit_code = cli.main(["turn", "I want to go to Rome", "yes", "--now-ts", NOW, "--trip-id", "t-cli"])

    assert exit_code == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["trip_id"] == "t-cli"
    assert payload["turn"] == 2
    assert payload["phase"] == "collecting"
    assert payload["next_expected_slot"] == "date_range"


def test_turn_command_supports_text_format(monkeypatch, capsys) -> None:
    monkeypatch.delenv("TRIPBRIEF_LLM_FALLBACK", raising=False)
    exit_code = cli.main(["turn", "I want to go to Portland", "--format", "text", "--now-ts", NOW])

    assert exit_code == 0
    output = capsys.readouterr().out
    assert output.strip() == "Which Portland do you mean: Portland, Oregon or Portland, Maine?"
    assert "{" not in output


def test_demo_command_uses_run_demo(monkeypatch, capsys) -> None:
    def fake_run_demo(now_ts=None):  # type: ignore[no-untyped-def]
        assert now_ts == NOW
        return {"trip_id": "demo-trip", "phase": "plan_confirmed"}

    monkeypatch.setattr(cli, "run_demo", fake_run_demo)
    exit_code = cli.main(["demo", "--now-ts", NOW])

    assert exit_code == 0
    assert json.loads(capsys.readouterr().out)["phase"] == "plan_confirmed"


def test_trace_flag_enables_tracing_env(monkeypatch) -> None:
    monkeypatch.setenv("TRIPBRIEF_TRACING_ENABLED", "0")
    monkeypatch.setattr(cli, "run_demo", lambda now_ts=None: {"phase": "plan_confirmed"})

    cli.main(["--trace", "demo"])

    assert os.environ["TRIPBRIEF_TRACING_ENABLED"] == "1"


def test_chat_loop_stops_on_empty_line() -> None:
    processor = cli.make_processor(NOW)
    stdin = StringIO("I want to go to Rome\n\nignored\n")
    stdout = StringIO()

    try:
        assert cli.run_chat(processor, "t-chat", stdin, stdout) == 0
    finally:
        processor.close()

    lines = stdout.getvalue().splitlines()
    assert lines[0] == "Tell me about your trip (empty line to quit)."
    assert lines[1].startswith("Got it. destination: Rome")
    assert len(lines) == 2


def test_no_command_prints_help(capsys) -> None:
    assert cli.main([]) == 0
    assert "usage: tripbrief" in capsys.readouterr().out


def test_commands_close_the_processor(monkeypatch, capsys) -> None:
    closed: list[bool] = []
    real_make = cli.make_processor

    def tracking_make(now_ts=None):  # type: ignore[no-untyped-def]
        processor = real_make(now_ts)
        real_close = processor.close

        def close() -> None:
            closed.append(True)
            real_close()

        processor.close = close  # type: ignore[method-assign]
        return processor

    monkeypatch.setattr(cli, "make_processor", tracking_make)
    cli.main(["turn", "I want to go to Rome", "--now-ts", NOW])
    cli.run_demo(NOW)

    assert closed == [True, True]
