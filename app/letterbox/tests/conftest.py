#!/usr/bin/env python
#
"""
pytest fixtures for our tests
"""
# system imports
#
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

# 3rd party imports
#
import pytest
from aiosmtpd.smtp import Envelope as SMTPEnvelope, Session as SMTPSession

# Project imports
#
from ..allowlist import Allowlist
from ..maildir import Maildir, MaildirDelivery
from ..recipients import RecipientWhitelist
from ..smtpd import LetterboxHandler


########################################################################
########################################################################
#
class FlakyMaildir(Maildir):
    """
    A Maildir whose creation, deliveries, writes, and commits can be told
    to fail. Failures are chosen by the name of the maildir (the local part
    of the recipient).
    """

    ####################################################################
    #
    def __init__(
        self,
        path: Path,
        fail_create: Set[str],
        fail_open: Set[str],
        fail_write: Dict[str, int],
        fail_commit: Set[str],
        opened: List[MaildirDelivery],
    ):
        super().__init__(path)
        self.fail_create = fail_create
        self.fail_open = fail_open
        self.fail_write = fail_write
        self.fail_commit = fail_commit
        self.opened = opened

    ####################################################################
    #
    def create(self) -> None:
        if self.path.name in self.fail_create:
            raise PermissionError(13, "Permission denied", str(self.path))
        super().create()

    ####################################################################
    #
    def new_delivery(self) -> MaildirDelivery:
        if self.path.name in self.fail_open:
            raise OSError(28, "No space left on device", str(self.path))
        delivery = super().new_delivery()
        name = self.path.name
        writes = {"count": 0}

        if name in self.fail_write:
            real_write = delivery.write

            def write(data):
                writes["count"] += 1
                if writes["count"] >= self.fail_write[name]:
                    raise OSError(5, "Input/output error")
                return real_write(data)

            delivery.write = write  # type: ignore[method-assign]

        if name in self.fail_commit:

            def commit():
                delivery.abort()
                raise OSError(5, "Input/output error")

            delivery.commit = commit  # type: ignore[method-assign]

        self.opened.append(delivery)
        return delivery


####################################################################
#
@pytest.fixture
def maildirs(tmp_path) -> Path:
    """
    The directory recipient maildirs are created in.
    """
    maildirs = tmp_path / "maildirs"
    maildirs.mkdir()
    return maildirs


####################################################################
#
@pytest.fixture
def flaky_maildir_factory():
    """
    Returns a function that makes a `maildir_factory` for a
    DeliverySession whose maildirs fail in the ways asked for. The
    deliveries opened through it are kept in the `opened` list of the
    returned factory.
    """

    def make_factory(
        fail_create: Optional[Set[str]] = None,
        fail_open: Optional[Set[str]] = None,
        fail_write: Optional[Dict[str, int]] = None,
        fail_commit: Optional[Set[str]] = None,
    ) -> Callable[[Path], FlakyMaildir]:
        opened: List[MaildirDelivery] = []

        def factory(path: Path) -> FlakyMaildir:
            return FlakyMaildir(
                path,
                fail_create or set(),
                fail_open or set(),
                fail_write or {},
                fail_commit or set(),
                opened,
            )

        factory.opened = opened  # type: ignore[attr-defined]
        return factory

    return make_factory


####################################################################
#
def maildir_messages(maildir: Path, subdir: str = "new") -> List[bytes]:
    """
    The contents of every message in one of the subdirectories of a
    maildir.
    """
    return [p.read_bytes() for p in sorted((maildir / subdir).iterdir())]


####################################################################
#
@pytest.fixture
def aiosmtp_session(faker) -> SMTPSession:
    """
    When testing handlers we need a aiosmtp.smtp.Session
    """
    sess = SMTPSession(None)
    sess.peer = (faker.ipv4_private(), faker.pyint(1024, 65535))
    return sess


####################################################################
#
@pytest.fixture
def aiosmtp_envelope():
    """
    Returns a function that makes an aiosmtpd Envelope carrying the given
    message content, the way aiosmtpd hands it to `handle_DATA`.
    """

    def make_envelope(content: bytes = b"Subject: x\r\n\r\nbody\r\n"):
        env = SMTPEnvelope()
        env.original_content = content
        env.content = content
        return env

    return make_envelope


####################################################################
#
@pytest.fixture
def email_addresses(faker) -> List[str]:
    """
    A handful of distinct email addresses with distinct local parts.
    """
    addrs: List[str] = []
    while len(addrs) < 3:
        addr = faker.unique.email()
        if addr.split("@")[0] not in [a.split("@")[0] for a in addrs]:
            addrs.append(addr)
    return addrs


####################################################################
#
@pytest.fixture
def letterbox_handler(aiosmtp_session, email_addresses, maildirs):
    """
    A handler that allows the peer of `aiosmtp_session` to connect and
    accepts mail for `email_addresses`.
    """
    allowlist = Allowlist.from_config([aiosmtp_session.peer[0]])
    whitelist = RecipientWhitelist(email_addresses)
    return LetterboxHandler(allowlist, whitelist, maildirs)
