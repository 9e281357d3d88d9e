#!/usr/bin/env python
#
"""
Maildir delivery.

A message is written in to a uniquely named file in the maildir's `tmp`
directory. When it is complete it is renamed in to `new`, which is atomic, so
a mail reader never sees a partially written message. An aborted delivery just
removes its file from `tmp`.

Unlike `mailbox.Maildir.add()` this lets us stream a message in to the
maildir line by line as it arrives, and to decide at the end whether to
commit or throw it away.
"""
# system imports
#
import itertools
import logging
import os
import socket
import time
from pathlib import Path
from typing import IO, TYPE_CHECKING, Optional, Union

if TYPE_CHECKING:
    from _typeshed import StrPath

logger = logging.getLogger("letterbox.maildir")

MAILDIR_SUBDIRS = ("tmp", "new", "cur")


########################################################################
########################################################################
#
class Maildir:
    """
    A maildir on the local file system.
    """

    # Number of deliveries started by this process. Part of the unique file
    # name of every delivery.
    #
    _deliveries = itertools.count(1)

    ####################################################################
    #
    def __init__(self, path: "StrPath"):
        self.path = Path(path)

    ####################################################################
    #
    def __repr__(self) -> str:
        return f"<Maildir {self.path}>"

    ####################################################################
    #
    def create(self) -> None:
        """
        Create the maildir and its `tmp`, `new`, and `cur` directories if
        they do not already exist.
        """
        self.path.mkdir(mode=0o700, parents=True, exist_ok=True)
        for subdir in MAILDIR_SUBDIRS:
            (self.path / subdir).mkdir(mode=0o700, exist_ok=True)

    ####################################################################
    #
    def unique_name(self) -> str:
        """
        Generate a file name that is unique to this delivery following the
        usual maildir convention:
        `<seconds>.M<microseconds>P<pid>Q<count>.<hostname>`
        """
        now = time.time()
        hostname = (
            socket.gethostname().replace("/", r"\057").replace(":", r"\072")
        )
        return "%d.M%06dP%dQ%d.%s" % (
            int(now),
            int((now % 1) * 1_000_000),
            os.getpid(),
            next(self._deliveries),
            hostname,
        )

    ####################################################################
    #
    def new_delivery(self) -> "MaildirDelivery":
        """
        Start a new delivery in this maildir. The maildir must already
        exist.
        """
        name = self.unique_name()
        tmp_path = self.path / "tmp" / name
        fp = open(tmp_path, "xb")
        logger.debug("Opened delivery %s", tmp_path)
        return MaildirDelivery(self, name, fp)


########################################################################
########################################################################
#
class MaildirDelivery:
    """
    One message being written to a maildir. It must be finished by exactly
    one call to either `commit()` or `abort()`.
    """

    ####################################################################
    #
    def __init__(self, maildir: Maildir, name: str, fp: IO[bytes]):
        self.maildir = maildir
        self.name = name
        self._fp: Optional[IO[bytes]] = fp

    ####################################################################
    #
    @property
    def tmp_path(self) -> Path:
        return self.maildir.path / "tmp" / self.name

    ####################################################################
    #
    @property
    def new_path(self) -> Path:
        return self.maildir.path / "new" / self.name

    ####################################################################
    #
    @property
    def closed(self) -> bool:
        return self._fp is None

    ####################################################################
    #
    def write(self, data: Union[bytes, bytearray, memoryview]) -> int:
        if self._fp is None:
            raise ValueError(f"Delivery {self.name} is already closed")
        return self._fp.write(data)

    ####################################################################
    #
    def commit(self) -> Path:
        """
        Flush the message to disk and move it from `tmp` to `new`. Returns
        the path of the delivered message.

        If the message can not be moved in to `new` its file in `tmp` is
        removed before the error is raised.
        """
        if self._fp is None:
            raise ValueError(f"Delivery {self.name} is already closed")
        fp, self._fp = self._fp, None
        try:
            try:
                fp.flush()
                os.fsync(fp.fileno())
            finally:
                fp.close()
            os.rename(self.tmp_path, self.new_path)
        except OSError:
            self.tmp_path.unlink(missing_ok=True)
            raise
        logger.debug("Delivered %s", self.new_path)
        return self.new_path

    ####################################################################
    #
    def abort(self) -> None:
        """
        Throw away the partially written message. Aborting a delivery that
        is already closed does nothing.
        """
        if self._fp is None:
            return
        fp, self._fp = self._fp, None
        try:
            fp.close()
        finally:
            self.tmp_path.unlink(missing_ok=True)
        logger.debug("Aborted delivery %s", self.tmp_path)
