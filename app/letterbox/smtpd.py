#!/usr/bin/env python
#
"""
The aiosmtpd side of letterbox.

- `LetterboxSMTP` checks every new connection against the allowlist before
  the greeting is sent and hangs up on clients that are not allowed.
- `LetterboxHandler` is the aiosmtpd event handler. It starts a
  `DeliverySession` on MAIL FROM, accepts whitelisted recipients on RCPT TO,
  and delivers the message to every recipient's maildir on DATA.
- `LetterboxController` runs the server in its own thread, with sentry hooked
  in to its event loop if it is configured.
"""
# system imports
#
import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional, Tuple, Union

# 3rd party imports
#
import sentry_sdk
from aiosmtpd.controller import Controller
from aiosmtpd.smtp import SMTP, Envelope as SMTPEnvelope, Session as SMTPSession
from sentry_sdk.integrations.asyncio import AsyncioIntegration

# Project imports
#
from .allowlist import Allowlist
from .exceptions import (
    AdmissionDenied,
    DeliveryWriteFailure,
    LetterboxError,
    MailboxCommitFailure,
    NoValidRecipients,
    RecipientRejected,
    SessionClosed,
)
from .recipients import RecipientWhitelist
from .session import DeliverySession

if TYPE_CHECKING:
    from _typeshed import StrPath

logger = logging.getLogger("letterbox.smtpd")

Peer = Union[Tuple[str, int], Tuple[str, int, int, int], str, None]


####################################################################
#
def peer_address(peer: Peer) -> Optional[str]:
    """
    The client address of an aiosmtpd session peer. aiosmtpd gives us the
    transport's `peername`, which for TCP is a tuple whose first element is
    the address.
    """
    if peer is None:
        return None
    if isinstance(peer, str):
        return peer
    return peer[0]


########################################################################
########################################################################
#
class LetterboxHandler:
    ####################################################################
    #
    def __init__(
        self,
        allowlist: Allowlist,
        whitelist: RecipientWhitelist,
        maildirs: "StrPath",
    ):
        """
        The allowlist and whitelist are shared, read only, by every
        connection this handler serves. `maildirs` is the directory the
        recipients' maildirs are created in.
        """
        self.allowlist = allowlist
        self.whitelist = whitelist
        self.maildirs = Path(maildirs)
        logger.debug("LetterboxHandler, init. Maildirs: '%s'", self.maildirs)

    ####################################################################
    #
    def on_connect(self, peer: Peer) -> Optional[str]:
        """
        Decide if the client at `peer` may talk to us. Returns None if it
        may, and the SMTP reply to send before hanging up if it may not.
        """
        client = peer_address(peer)
        logger.debug("Connection from %s", client)
        try:
            self.allowlist.check(client)
        except AdmissionDenied as exc:
            logger.info("Connection rejected: %s", exc)
            return exc.smtp_reply
        return None

    ####################################################################
    #
    def on_disconnect(self, envelope: SMTPEnvelope) -> None:
        """
        The client went away. Throw away its delivery session unless a
        `handle_DATA` call has taken it over, in which case that call
        commits or aborts it.
        """
        delivery_session: Optional[DeliverySession] = getattr(
            envelope, "delivery_session", None
        )
        if delivery_session is None or delivery_session.delivering:
            return
        logger.debug("Client %s disconnected", delivery_session.client)
        delivery_session.abort()

    ####################################################################
    #
    def new_session(
        self, mail_from: str, client: Optional[str] = None
    ) -> DeliverySession:
        logger.debug("New mail from %r (client %s)", mail_from, client)
        return DeliverySession(
            self.whitelist, self.maildirs, mail_from=mail_from, client=client
        )

    ####################################################################
    #
    async def handle_MAIL(
        self,
        server: SMTP,
        session: SMTPSession,
        envelope: SMTPEnvelope,
        address: str,
        mail_options: List[str],
    ) -> str:
        """
        Any sender is accepted. Every MAIL FROM starts a new delivery
        session, kept on the envelope for the RCPT and DATA commands.
        """
        envelope.mail_from = address
        envelope.mail_options.extend(mail_options)

        previous = getattr(envelope, "delivery_session", None)
        if previous is not None:
            previous.abort()

        envelope.delivery_session = self.new_session(
            address, peer_address(session.peer)
        )
        return "250 OK"

    ####################################################################
    #
    async def handle_RCPT(
        self,
        server: SMTP,
        session: SMTPSession,
        envelope: SMTPEnvelope,
        address: str,
        rcpt_options: List[str],
    ) -> str:
        """
        Accept the recipient only if it is in the whitelist. A rejected
        recipient does not end the mail transaction.
        """
        delivery_session: Optional[DeliverySession] = getattr(
            envelope, "delivery_session", None
        )
        if delivery_session is None:
            return "503 5.5.1 Error: need MAIL command"

        try:
            delivery_session.add_recipient(address)
        except RecipientRejected as exc:
            logger.info("%s (client %s)", exc, delivery_session.client)
            return exc.smtp_reply
        except SessionClosed as exc:
            logger.info("RCPT for <%s> refused: %s", address, exc)
            return "503 5.5.1 Error: bad sequence of commands"

        envelope.rcpt_tos.append(address)
        envelope.rcpt_options.extend(rcpt_options)
        return "250 OK"

    ####################################################################
    #
    async def handle_RSET(
        self, server: SMTP, session: SMTPSession, envelope: SMTPEnvelope
    ) -> str:
        delivery_session = getattr(envelope, "delivery_session", None)
        if delivery_session is not None:
            delivery_session.abort()
        return "250 OK"

    ####################################################################
    #
    async def handle_DATA(
        self, server: SMTP, session: SMTPSession, envelope: SMTPEnvelope
    ) -> str:
        """
        Write the message to the maildir of every accepted recipient.

        Writing to the maildirs is blocking file system work so it is done
        in a worker thread.
        """
        delivery_session: Optional[DeliverySession] = getattr(
            envelope, "delivery_session", None
        )
        if delivery_session is None:
            return NoValidRecipients.smtp_reply

        content = envelope.original_content or b""

        # From here on the session belongs to this call, not to the
        # connection. It must be set before the worker thread starts.
        #
        delivery_session.delivering = True
        try:
            delivered = await asyncio.to_thread(
                delivery_session.deliver, content
            )
        except NoValidRecipients as exc:
            logger.info(
                "Error: No valid recipients. Envelope from: %s",
                envelope.mail_from,
            )
            return exc.smtp_reply
        except DeliveryWriteFailure as exc:
            logger.error(
                "Message from %s not delivered: %s", envelope.mail_from, exc
            )
            return exc.smtp_reply
        except MailboxCommitFailure as exc:
            if not exc.delivered:
                logger.error(
                    "Message from %s not delivered: %s",
                    envelope.mail_from,
                    exc,
                )
                return exc.smtp_reply
            logger.warning(
                "Message from %s only delivered to %s: %s",
                envelope.mail_from,
                exc.delivered,
                exc,
            )
            delivered = exc.delivered
        except Exception:
            logger.exception(
                "Failed to deliver message from %s, closing connection",
                envelope.mail_from,
            )
            delivery_session.abort()
            if server.transport is not None:
                asyncio.get_running_loop().call_soon(server.transport.close)
            return LetterboxError.smtp_reply

        return f"250 OK: message delivered to {len(delivered)} recipient(s)"


########################################################################
########################################################################
#
class LetterboxSMTP(SMTP):
    """
    Refuses connections from clients that are not in the allowlist before
    the greeting is sent, so no mail exchange can happen with them.
    """

    ####################################################################
    #
    async def _handle_client(self):
        peer = self.session.peer if self.session is not None else None
        reply = self.event_handler.on_connect(peer)
        if reply is not None:
            await self.push(reply)
            self.transport.close()
            return
        await super()._handle_client()

    ####################################################################
    #
    async def smtp_DATA(self, arg: Optional[str]) -> None:
        """
        A mail transaction whose recipients were all rejected gets the same
        554 as one whose maildirs could not be opened. aiosmtpd would
        otherwise answer 503 without calling `handle_DATA`.
        """
        envelope = self.envelope
        delivery_session = getattr(envelope, "delivery_session", None)
        if (
            envelope is not None
            and delivery_session is not None
            and not envelope.rcpt_tos
            and not arg
        ):
            logger.info(
                "Error: No valid recipients. Envelope from: %s",
                envelope.mail_from,
            )
            delivery_session.abort()
            await self.push(NoValidRecipients.smtp_reply)
            return
        await super().smtp_DATA(arg)

    ####################################################################
    #
    def connection_lost(self, error: Optional[Exception]) -> None:
        envelope = getattr(self, "envelope", None)
        if envelope is not None:
            self.event_handler.on_disconnect(envelope)
        super().connection_lost(error)


########################################################################
########################################################################
#
class LetterboxController(Controller):
    """
    Uses LetterboxSMTP for every connection, and hooks sentry's
    AsyncioIntegration in to the controller's event loop when a DSN is
    given.
    """

    ####################################################################
    #
    def __init__(
        self,
        handler: LetterboxHandler,
        *args,
        sentry_dsn: Optional[str] = None,
        sentry_traces_sample_rate: float = 0.0,
        sentry_environment: str = "production",
        **kwargs,
    ):
        self.sentry_dsn = sentry_dsn
        self.sentry_traces_sample_rate = sentry_traces_sample_rate
        self.sentry_environment = sentry_environment
        super().__init__(handler, *args, **kwargs)

    ####################################################################
    #
    def factory(self):
        return LetterboxSMTP(self.handler, **self.SMTP_kwargs)

    ####################################################################
    #
    def _run(self, *args, **kwargs):
        asyncio.set_event_loop(self.loop)
        if self.sentry_dsn is not None:
            sentry_sdk.init(
                dsn=self.sentry_dsn,
                traces_sample_rate=self.sentry_traces_sample_rate,
                integrations=[
                    AsyncioIntegration(),
                ],
                environment=self.sentry_environment,
            )
        super()._run(*args, **kwargs)
