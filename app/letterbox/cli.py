#!/usr/bin/env python
#
"""
letterbox - SMTP to Maildir delivery agent.

Accepts mail from the hosts in the allowlist for the whitelisted email
addresses and delivers each message to the maildir of every recipient under
the maildirs directory.
"""
# system imports
#
import argparse
import logging
import os
import sys
import time
from typing import List, Optional

# Project imports
#
from .allowlist import Allowlist
from .config import (
    DEFAULT_CONFIG,
    DEFAULT_HOST,
    DEFAULT_MAILDIRS,
    DEFAULT_PORT,
    ConfigError,
    load_config,
)
from .recipients import RecipientWhitelist
from .smtpd import LetterboxController, LetterboxHandler

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

logger = logging.getLogger("letterbox")


####################################################################
#
def port_number(value: str) -> int:
    try:
        port = int(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(
            f"Port must be an integer (1-65535), got '{value}'"
        ) from e
    if port < 1 or port > 65535:
        raise argparse.ArgumentTypeError(
            f"Port must be between 1-65535, got {port}"
        )
    return port


####################################################################
#
def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="letterbox",
        description="SMTP to Maildir delivery agent",
    )
    parser.add_argument(
        "--config",
        action="store",
        default=DEFAULT_CONFIG,
        help="Path to configuration file",
    )
    parser.add_argument(
        "--host",
        action="store",
        default=DEFAULT_HOST,
        help="Host IP or name to bind to",
    )
    parser.add_argument(
        "--port",
        type=port_number,
        action="store",
        default=DEFAULT_PORT,
        help="Port to bind to",
    )
    parser.add_argument(
        "--maildirs",
        action="store",
        default=DEFAULT_MAILDIRS,
        help="Path to the top level of the user Maildirs",
    )
    parser.add_argument(
        "--log",
        action="store",
        default=None,
        help="Path to logfile (default: stderr)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=False,
        help="Log debugging information",
    )
    return parser.parse_args(argv)


####################################################################
#
def setup_logging(logfile: Optional[str] = None, debug: bool = False) -> None:
    """
    Log to `logfile` if given, otherwise to stderr. Debug messages are only
    logged when `debug` is True.
    """
    handler: logging.Handler
    if logfile:
        # Make sure a new log file is only readable by us.
        #
        fd = os.open(logfile, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        os.close(fd)
        handler = logging.FileHandler(logfile, mode="a")
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger()
    for old_handler in list(root.handlers):
        root.removeHandler(old_handler)
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if debug else logging.INFO)

    # aiosmtpd logs every command of every session at INFO.
    #
    logging.getLogger("mail.log").setLevel(
        logging.DEBUG if debug else logging.WARNING
    )


####################################################################
#
def log_allowlist(allowlist: Allowlist) -> None:
    logger.info("Allowed Hosts")
    for host in allowlist.hosts:
        logger.info("    %s", host)
    logger.info("Allowed Networks")
    for network in allowlist.networks:
        logger.info("    %s", network)
    if not allowlist:
        logger.warning(
            "Allowlist is empty, every connection will be rejected"
        )


####################################################################
#
def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        setup_logging(args.log, args.debug)
    except OSError as exc:
        print(f"Error opening logfile: {exc}", file=sys.stderr)
        return 1

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        logger.critical("Error reading config file %s: %s", args.config, exc)
        return 1

    allowlist = Allowlist.from_config(config.hosts)
    whitelist = RecipientWhitelist(config.emails)
    if not whitelist:
        logger.warning(
            "No emails configured, every recipient will be rejected"
        )

    logger.info("letterbox: %s:%d", args.host, args.port)
    log_allowlist(allowlist)

    handler = LetterboxHandler(allowlist, whitelist, args.maildirs)
    controller = LetterboxController(
        handler,
        hostname=args.host,
        port=args.port,
        sentry_dsn=config.sentry_dsn,
        sentry_traces_sample_rate=config.sentry_traces_sample_rate,
        sentry_environment=config.sentry_environment,
    )
    logger.info("Starting controller")
    controller.start()
    try:
        while True:
            time.sleep(300)
    except KeyboardInterrupt:
        logger.warning("Keyboard interrupt, exiting")
    finally:
        logger.info("Stopping controller")
        controller.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
