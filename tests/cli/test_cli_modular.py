from grinder.cli import cli_modular
from grinder.cli.cli_modular import COMMAND_MODULES, _load_command_parser, main


def no_logging(level):
    no_logging.level = level


def test_no_command_lists_commands(capsys):
    assert main([], setup_logging_func=no_logging) == 1
    err = capsys.readouterr().err
    assert "Available commands:" in err
    for name in COMMAND_MODULES:
        assert name in err


def test_unknown_command(capsys):
    assert main(["frobnicate"], setup_logging_func=no_logging) == 1
    assert "Unknown command: frobnicate" in capsys.readouterr().err


def test_every_command_module_loads():
    for command in COMMAND_MODULES:
        loaded = _load_command_parser(command)
        assert loaded is not None, command


def test_handler_override_receives_parsed_args():
    seen = {}

    def fake_acquire(args):
        seen["limit"] = args.limit
        seen["event_id"] = args.event_id
        seen["report"] = args.report
        return 0

    code = main(
        ["--log-level", "DEBUG", "acquire", "--limit", "5", "--report", "out/failures.json"],
        setup_logging_func=no_logging,
        handler_overrides={"acquire": fake_acquire},
    )

    assert code == 0
    assert seen == {"limit": 5, "event_id": None, "report": "out/failures.json"}
    assert no_logging.level == "DEBUG"


def test_exit_codes():
    assert (cli_modular.EXIT_OK, cli_modular.EXIT_ERROR, cli_modular.EXIT_FATAL) == (0, 1, 2)
