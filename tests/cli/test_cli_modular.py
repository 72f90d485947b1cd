import argparse

import pytest

from src.cli import cli_modular


def _no_logging(level):
    return None


def test_no_command_prints_usage(capsys):
    exit_code = cli_modular.main([], setup_logging_func=_no_logging)

    assert exit_code == 1
    err = capsys.readouterr().err
    assert "Available commands:" in err
    for name in cli_modular.COMMAND_HELP:
        assert name in err


def test_unknown_command(capsys):
    exit_code = cli_modular.main(["explode"], setup_logging_func=_no_logging)

    assert exit_code == 1
    assert "Unknown command: explode" in capsys.readouterr().err


def test_log_level_reaches_setup_logging():
    levels = []

    cli_modular.main(["--log-level", "DEBUG"], setup_logging_func=levels.append)

    assert levels == ["DEBUG"]


def test_handler_override_runs_without_loading_module(monkeypatch):
    def fail_import(command):
        raise AssertionError("command module should not be loaded")

    monkeypatch.setattr(cli_modular, "_load_command_parser", fail_import)
    seen = []

    def handler(args):
        seen.append(args.command)
        return 7

    exit_code = cli_modular.main(
        ["discover", "org-1"],
        setup_logging_func=_no_logging,
        handler_overrides={"discover": handler},
    )

    assert exit_code == 7
    assert seen == ["discover"]


@pytest.mark.parametrize("command", sorted(cli_modular.COMMAND_MODULES))
def test_every_command_module_exposes_parser_and_handler(command):
    loaded = cli_modular._load_command_parser(command)

    assert loaded is not None
    add_parser, handler = loaded
    parser = argparse.ArgumentParser()
    subparsers = parser.add_subparsers(dest="command")
    add_parser(subparsers)
    assert callable(handler)


def test_loaded_handler_receives_parsed_arguments(monkeypatch):
    captured = {}

    def fake_handler(args):
        captured.update(vars(args))
        return 0

    original = cli_modular._load_command_parser

    def load(command):
        add_parser, _handler = original(command)
        return add_parser, fake_handler

    monkeypatch.setattr(cli_modular, "_load_command_parser", load)

    exit_code = cli_modular.main(
        [
            "--log-level",
            "WARNING",
            "bulk-scrape",
            "org-1",
            "https://paper.example.com/a",
            "--concurrency",
            "5",
        ],
        setup_logging_func=_no_logging,
    )

    assert exit_code == 0
    assert captured["command"] == "bulk-scrape"
    assert captured["organization_id"] == "org-1"
    assert captured["urls"] == ["https://paper.example.com/a"]
    assert captured["concurrency"] == 5
    assert captured["batch_delay"] == 2000
    assert captured["log_level"] == "WARNING"
