#!/usr/bin/env python
#
"""
Test the letterbox command line.
"""
# system imports
#
import argparse
import logging
import stat

# 3rd party imports
#
import pytest

# Project imports
#
from ..cli import main, parse_args, port_number, setup_logging
from ..config import DEFAULT_CONFIG, DEFAULT_MAILDIRS, DEFAULT_PORT


####################################################################
#
@pytest.fixture
def restore_logging():
    """
    `setup_logging()` replaces the root logger's handlers. Put them back
    afterwards so pytest's log capturing keeps working.
    """
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    mail_level = logging.getLogger("mail.log").level
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)
    logging.getLogger("mail.log").setLevel(mail_level)


####################################################################
#
@pytest.fixture
def mock_controller(mocker):
    """
    A LetterboxController that does not listen, and a main loop that is
    interrupted straight away.
    """
    mocker.patch("letterbox.cli.time.sleep", side_effect=KeyboardInterrupt)
    return mocker.patch("letterbox.cli.LetterboxController")


####################################################################
#
def test_parse_args_defaults():
    args = parse_args([])
    assert args.config == DEFAULT_CONFIG
    assert args.host == "0.0.0.0"
    assert args.port == DEFAULT_PORT
    assert args.maildirs == DEFAULT_MAILDIRS
    assert args.log is None
    assert args.debug is False


####################################################################
#
def test_parse_args(tmp_path):
    args = parse_args(
        [
            "--config",
            str(tmp_path / "c.toml"),
            "--host",
            "127.0.0.1",
            "--port",
            "25",
            "--maildirs",
            str(tmp_path),
            "--log",
            str(tmp_path / "letterbox.log"),
            "--debug",
        ]
    )
    assert args.config == str(tmp_path / "c.toml")
    assert args.host == "127.0.0.1"
    assert args.port == 25
    assert args.maildirs == str(tmp_path)
    assert args.debug is True


####################################################################
#
@pytest.mark.parametrize("value", ["0", "65536", "-1", "smtp", "25.5"])
def test_port_number_invalid(value):
    with pytest.raises(argparse.ArgumentTypeError):
        port_number(value)


####################################################################
#
def test_port_number_valid():
    assert port_number("1") == 1
    assert port_number("65535") == 65535


####################################################################
#
@pytest.mark.parametrize("debug", [True, False])
def test_setup_logging(tmp_path, restore_logging, debug):
    """
    Given a log file
    When logging is set up
    Then the log file is private and debug messages only appear with debug
    """
    logfile = tmp_path / "letterbox.log"
    setup_logging(str(logfile), debug)
    assert stat.S_IMODE(logfile.stat().st_mode) == 0o600

    logger = logging.getLogger("letterbox.test")
    logger.debug("a debug message")
    logger.info("an info message")
    for handler in logging.getLogger().handlers:
        handler.flush()

    text = logfile.read_text()
    assert "an info message" in text
    assert ("a debug message" in text) is debug


####################################################################
#
def test_main_bad_config(tmp_path, restore_logging, mock_controller):
    path = tmp_path / "letterbox.toml"
    path.write_text("hosts = [\n")
    assert main(["--config", str(path)]) == 1
    mock_controller.assert_not_called()


####################################################################
#
def test_main_missing_config(tmp_path, restore_logging, mock_controller):
    assert main(["--config", str(tmp_path / "nope.toml")]) == 1
    mock_controller.assert_not_called()


####################################################################
#
def test_main_unwritable_log(tmp_path, restore_logging, mock_controller):
    logfile = tmp_path / "missing" / "letterbox.log"
    assert main(["--log", str(logfile)]) == 1


####################################################################
#
def test_main(tmp_path, restore_logging, mock_controller, monkeypatch):
    """
    Given a valid config
    When main runs
    Then the controller is started on the requested address, and stopped
         when interrupted
    """
    monkeypatch.delenv("SENTRY_DSN", raising=False)
    path = tmp_path / "letterbox.toml"
    path.write_text(
        'hosts = ["127.0.0.1", "10.0.0.0/8"]\nemails = ["user@example.com"]\n'
    )
    maildirs = tmp_path / "maildirs"

    result = main(
        [
            "--config",
            str(path),
            "--host",
            "127.0.0.1",
            "--port",
            "2526",
            "--maildirs",
            str(maildirs),
        ]
    )

    assert result == 0
    mock_controller.assert_called_once()
    handler = mock_controller.call_args.args[0]
    kwargs = mock_controller.call_args.kwargs
    assert kwargs["hostname"] == "127.0.0.1"
    assert kwargs["port"] == 2526
    assert kwargs["sentry_dsn"] is None
    assert handler.maildirs == maildirs
    assert handler.allowlist.is_allowed("10.2.3.4")
    assert handler.whitelist.is_eligible("user@example.com")

    controller = mock_controller.return_value
    controller.start.assert_called_once()
    controller.stop.assert_called_once()
