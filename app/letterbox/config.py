#!/usr/bin/env python
#
"""
The letterbox configuration file.

It is a TOML file that lists the hosts that are allowed to connect and the
email addresses we accept mail for:

    hosts = ["192.168.101.0/24", "fozzy.example.com", "192.168.103.15"]
    emails = ["user@example.com", "root@example.com"]

Either list may be missing or empty. No hosts means every connection is
rejected, no emails means every recipient is rejected.

Sentry error reporting is enabled by setting `sentry_dsn` here, or via the
`SENTRY_DSN` environment variable.
"""
# system imports
#
import logging
import os
import tomllib
from typing import IO, TYPE_CHECKING, List, Optional

# 3rd party imports
#
from pydantic import BaseModel, ConfigDict, Field, ValidationError

# Project imports
#
from .exceptions import LetterboxError

if TYPE_CHECKING:
    from _typeshed import StrPath

DEFAULT_CONFIG = "letterbox.toml"
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 2525
DEFAULT_MAILDIRS = "/var/spool/maildirs"

logger = logging.getLogger("letterbox.config")


########################################################################
########################################################################
#
class ConfigError(LetterboxError):
    """
    The config file is missing, is not valid TOML, or has bad values.
    """


########################################################################
########################################################################
#
class LetterboxConfig(BaseModel):
    """
    The decoded contents of the config file.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    hosts: List[str] = Field(default_factory=list)
    emails: List[str] = Field(default_factory=list)
    sentry_dsn: Optional[str] = None
    sentry_traces_sample_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    sentry_environment: str = "production"


####################################################################
#
def read_config(fp: IO[bytes]) -> LetterboxConfig:
    """
    Decode a config file from a binary file object.

    Keyword Arguments:
    fp: IO[bytes] -- the open config file
    """
    try:
        data = tomllib.load(fp)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Not a valid TOML file: {exc}") from exc

    try:
        config = LetterboxConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc

    if config.sentry_dsn is None and os.environ.get("SENTRY_DSN"):
        config = config.model_copy(
            update={"sentry_dsn": os.environ["SENTRY_DSN"]}
        )
    return config


####################################################################
#
def load_config(path: "StrPath") -> LetterboxConfig:
    """
    Read and decode the config file at `path`.
    """
    try:
        with open(path, "rb") as fp:
            config = read_config(fp)
    except OSError as exc:
        raise ConfigError(f"Error reading config file {path}: {exc}") from exc
    logger.debug(
        "Read config %s: %d hosts, %d emails",
        path,
        len(config.hosts),
        len(config.emails),
    )
    return config
