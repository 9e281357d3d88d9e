#!/usr/bin/env python
#
"""
The delivery session: one SMTP mail transaction, from MAIL FROM until the
message is committed to every recipient's maildir, or thrown away.

    IDLE -> RECIPIENTS -> DATA_OPEN -> COMMITTED
      \\          \\            \\
       `----------`------------`-----> ABORTED

A session accumulates whitelisted recipients. When the message data begins a
maildir delivery is opened for each of them. Recipients whose delivery can not
be opened are dropped, the message still goes to everyone else. Every line of
the message is written to every open delivery. If writing to any one of them
fails the whole session is aborted and nothing is delivered to anyone: either
every recipient gets an identical copy of the message or none of them do.

Once all of the message has been written `close()` commits each delivery.
A delivery that fails to commit does not stop the others from committing.
"""
# system imports
#
import enum
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Callable, List, Optional

# Project imports
#
from .exceptions import (
    DeliveryWriteFailure,
    MailboxCommitFailure,
    MailboxUnavailable,
    MalformedAddress,
    NoValidRecipients,
    RecipientRejected,
    SessionClosed,
)
from .maildir import Maildir, MaildirDelivery
from .recipients import RecipientWhitelist, derive_local_name

if TYPE_CHECKING:
    from _typeshed import StrPath

logger = logging.getLogger("letterbox.session")


########################################################################
########################################################################
#
class SessionState(enum.Enum):
    IDLE = "idle"
    RECIPIENTS = "recipients"
    DATA_OPEN = "data_open"
    COMMITTED = "committed"
    ABORTED = "aborted"

    ####################################################################
    #
    @property
    def terminal(self) -> bool:
        return self in (SessionState.COMMITTED, SessionState.ABORTED)


########################################################################
########################################################################
#
class DeliverySession:
    """
    Owns the accepted recipients of one mail transaction and the maildir
    deliveries that were opened for them.

    Once data has begun `rcpts[i]` is the recipient that `deliveries[i]` is
    delivering to.
    """

    ####################################################################
    #
    def __init__(
        self,
        whitelist: RecipientWhitelist,
        maildir_root: "StrPath",
        mail_from: Optional[str] = None,
        client: Optional[str] = None,
        maildir_factory: Callable[[Path], Maildir] = Maildir,
    ):
        self.whitelist = whitelist
        self.maildir_root = Path(maildir_root)
        self.mail_from = mail_from
        self.client = client
        self.maildir_factory = maildir_factory

        self.state = SessionState.IDLE
        self.rcpts: List[str] = []
        self.deliveries: List[MaildirDelivery] = []
        self.delivered: List[str] = []

        # Set by the SMTP handler when it hands the session to a worker
        # thread to deliver. Only that worker may finish it after that.
        #
        self.delivering = False

    ####################################################################
    #
    def __repr__(self) -> str:
        return (
            f"<DeliverySession client={self.client} from={self.mail_from!r} "
            f"state={self.state.value} rcpts={self.rcpts!r}>"
        )

    ####################################################################
    #
    def add_recipient(self, rcpt: str) -> None:
        """
        Accept `rcpt` for this message if it is in the whitelist.

        Raises RecipientRejected if it is not. The session carries on, so
        the client can go on to name other recipients.
        """
        if self.state not in (SessionState.IDLE, SessionState.RECIPIENTS):
            raise SessionClosed(
                f"Can not add recipients in state '{self.state.value}'"
            )

        if not self.whitelist.is_eligible(rcpt):
            raise RecipientRejected(rcpt)

        self.rcpts.append(rcpt)
        self.state = SessionState.RECIPIENTS
        logger.debug("Accepted recipient <%s> from %s", rcpt, self.client)

    ####################################################################
    #
    def _open_delivery(self, rcpt: str) -> MaildirDelivery:
        """
        Create the recipient's maildir if it does not exist yet and open a
        new delivery in it.
        """
        local_name = derive_local_name(rcpt)
        maildir = self.maildir_factory(self.maildir_root / local_name)
        try:
            maildir.create()
        except OSError as exc:
            raise MailboxUnavailable(
                f"Error creating maildir for {local_name}: {exc}"
            ) from exc
        try:
            return maildir.new_delivery()
        except OSError as exc:
            raise MailboxUnavailable(
                f"Error creating delivery for {local_name}: {exc}"
            ) from exc

    ####################################################################
    #
    def begin_data(self) -> None:
        """
        Open a maildir delivery for each accepted recipient, in order.

        Recipients whose address is malformed, or whose maildir is
        unavailable, are dropped from the session.

        Raises NoValidRecipients, and aborts the session, if no recipients
        were accepted or none of their deliveries could be opened.
        """
        if self.state.terminal or self.state == SessionState.DATA_OPEN:
            raise SessionClosed(
                f"Can not begin data in state '{self.state.value}'"
            )

        if not self.rcpts:
            logger.info(
                "No valid recipients. Envelope from: %s", self.mail_from
            )
            self.state = SessionState.ABORTED
            raise NoValidRecipients()

        rcpts: List[str] = []
        deliveries: List[MaildirDelivery] = []
        try:
            for rcpt in self.rcpts:
                try:
                    delivery = self._open_delivery(rcpt)
                except MalformedAddress as exc:
                    logger.debug("Skipping recipient: %s", exc)
                    continue
                except MailboxUnavailable as exc:
                    logger.error("Skipping recipient <%s>: %s", rcpt, exc)
                    continue
                rcpts.append(rcpt)
                deliveries.append(delivery)
        except BaseException:
            for delivery in deliveries:
                delivery.abort()
            self.state = SessionState.ABORTED
            raise

        self.rcpts = rcpts
        self.deliveries = deliveries
        if not self.deliveries:
            logger.info(
                "No deliveries could be opened. Envelope from: %s",
                self.mail_from,
            )
            self.state = SessionState.ABORTED
            raise NoValidRecipients()

        self.state = SessionState.DATA_OPEN

    ####################################################################
    #
    def write(self, line: bytes) -> None:
        """
        Append `line` to every open delivery, in recipient order.

        If any delivery fails to write, every delivery is aborted and
        DeliveryWriteFailure is raised. Any further call to `write()` will
        raise SessionClosed.
        """
        if self.state != SessionState.DATA_OPEN:
            raise SessionClosed(
                f"Can not write message data in state '{self.state.value}'"
            )

        for rcpt, delivery in zip(self.rcpts, self.deliveries):
            try:
                delivery.write(line)
            except (OSError, ValueError) as exc:
                logger.error(
                    "Write to delivery for <%s> failed, aborting all "
                    "deliveries: %s",
                    rcpt,
                    exc,
                )
                self.abort()
                raise DeliveryWriteFailure(
                    f"Error writing message for <{rcpt}>: {exc}"
                ) from exc

    ####################################################################
    #
    def close(self) -> List[str]:
        """
        Finish the session.

        If the message data is open every delivery is committed, in
        recipient order, and the list of recipients the message was delivered
        to is returned. A delivery that fails to commit is logged and does
        not prevent committing the remaining ones. MailboxCommitFailure is
        raised afterwards if any of them failed.

        If the data was never opened the session is aborted instead. Calling
        `close()` on a finished session does nothing.
        """
        if self.state.terminal:
            return list(self.delivered)

        if self.state != SessionState.DATA_OPEN:
            self.abort()
            return []

        failed: List[str] = []
        for rcpt, delivery in zip(self.rcpts, self.deliveries):
            try:
                path = delivery.commit()
            except OSError as exc:
                logger.error(
                    "Error committing delivery for <%s>: %s", rcpt, exc
                )
                failed.append(rcpt)
                continue
            self.delivered.append(rcpt)
            logger.info(
                "Delivered message from %s to <%s>: %s",
                self.mail_from,
                rcpt,
                path,
            )

        self.state = SessionState.COMMITTED
        if failed:
            raise MailboxCommitFailure(failed, list(self.delivered))
        return list(self.delivered)

    ####################################################################
    #
    def abort(self) -> None:
        """
        Throw away the message: every open delivery is closed without being
        delivered. Safe to call in any state and more than once.
        """
        if self.state.terminal:
            return

        self.state = SessionState.ABORTED
        for rcpt, delivery in zip(self.rcpts, self.deliveries):
            try:
                delivery.abort()
            except OSError as exc:
                logger.error(
                    "Error aborting delivery for <%s>: %s", rcpt, exc
                )
        if self.deliveries:
            logger.info(
                "Aborted message from %s to %s", self.mail_from, self.rcpts
            )

    ####################################################################
    #
    def deliver(self, content: bytes) -> List[str]:
        """
        Deliver a complete message: begin the data, write `content` to every
        recipient one line at a time, and close the session.

        Returns the recipients the message was delivered to.
        """
        self.begin_data()
        try:
            for line in content.splitlines(keepends=True):
                self.write(line)
        except BaseException:
            self.abort()
            raise
        return self.close()

