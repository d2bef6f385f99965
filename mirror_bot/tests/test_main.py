from __future__ import annotations

import json

from mirror_bot.kill_switch import DEFAULT_KILL_SWITCH_ENV_VAR
from mirror_bot.main import EXIT_CONFIG_ERROR, main, parse_args
from mirror_bot.sizing import DISTRIBUTION_TOTAL


def _isolate(monkeypatch, tmp_path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("MIRROR_BOT_STATE_DIR", str(tmp_path / "state"))
    monkeypatch.delenv(DEFAULT_KILL_SWITCH_ENV_VAR, raising=False)


def test_parse_args_loop_defaults() -> None:
    args = parse_args(
        ["autopilot", "--quote-file", "q.json", "--market-address", "0xm", "--side", "yes", "--amount-usdc", "5"]
    )
    assert args.command == "autopilot"
    assert args.mode == "once"
    assert args.interval_ms == 5000
    assert args.notify is False


def test_size_command(monkeypatch, tmp_path, capsys) -> None:
    _isolate(monkeypatch, tmp_path)
    code = main(["size", "--volume-24h", "100000", "--depth", "6000", "--probability-yes", "62"])
    assert code == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["recommendation"]["liquidityUsd"] == 50000
    hint = payload["distributionHint"]
    assert hint["probabilityYes"] == 0.62
    assert hint["distributionYes"] + hint["distributionNo"] == DISTRIBUTION_TOTAL


def test_scan_command(monkeypatch, tmp_path, capsys) -> None:
    _isolate(monkeypatch, tmp_path)
    legs = tmp_path / "legs.json"
    legs.write_text(
        json.dumps(
            [
                {
                    "venue": "pandora",
                    "id": "0xp1",
                    "question": "Will Arsenal win the Premier League?",
                    "reserveYes": 600,
                    "reserveNo": 400,
                    "marketCloseTimestamp": 1_800_000_000,
                },
                {"venue": "unknown", "id": "x"},
            ]
        ),
        encoding="utf-8",
    )
    code = main(["scan", "--legs", str(legs)])
    assert code == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["parameters"]["crossVenueOnly"] is True
    assert payload["opportunities"] == []


def test_autopilot_paper_run(monkeypatch, tmp_path, capsys) -> None:
    _isolate(monkeypatch, tmp_path)
    quote = tmp_path / "quote.json"
    quote.write_text(json.dumps({"yesPct": 10, "estimate": {"shares": 90}}), encoding="utf-8")
    argv = [
        "autopilot",
        "--quote-file",
        str(quote),
        "--market-address",
        "0xm",
        "--side",
        "yes",
        "--amount-usdc",
        "5",
        "--trigger-yes-below",
        "15",
    ]

    assert main(argv) == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["mode"] == "once"
    assert payload["executeLive"] is False
    assert payload["actions"][0]["status"] == "simulated"
    assert payload["stateFile"].startswith(str(tmp_path / "state" / "autopilot"))


def test_autopilot_config_error_exit_code(monkeypatch, tmp_path, capsys) -> None:
    _isolate(monkeypatch, tmp_path)
    argv = ["autopilot", "--quote-file", "q.json", "--market-address", "0xm", "--side", "yes", "--amount-usdc", "5"]
    assert main(argv) == EXIT_CONFIG_ERROR
    assert capsys.readouterr().out == ""
