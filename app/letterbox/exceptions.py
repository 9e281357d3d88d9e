#!/usr/bin/env python
#
"""
The errors raised by the letterbox core.

Every error knows the SMTP reply that the aiosmtpd handler sends back to the
client when that error reaches it. Per-recipient errors (`RecipientRejected`,
`MalformedAddress`, `MailboxUnavailable`) are absorbed by the session they
happen in. Session-wide errors are only raised after every open delivery has
been closed.
"""
# system imports
#
from typing import List, Optional


########################################################################
########################################################################
#
class LetterboxError(Exception):
    """
    Base class for everything letterbox raises on purpose.
    """

    smtp_reply = "421 4.3.0 Error: session failure"


########################################################################
########################################################################
#
class AdmissionDenied(LetterboxError):
    """
    The client address did not match any entry in the allowlist. Raised by
    `Allowlist.check()`, the connection is refused with `smtp_reply` before
    the greeting.
    """

    smtp_reply = "554 5.7.1 Client host rejected: access denied"

    ####################################################################
    #
    def __init__(self, client: Optional[str]):
        self.client = client
        super().__init__(f"Client host {client} rejected: access denied")


########################################################################
########################################################################
#
class RecipientRejected(LetterboxError):
    """
    The recipient is not in the whitelist. Only this recipient is dropped.
    """

    ####################################################################
    #
    def __init__(self, address: str, reason: str = "not in whitelist"):
        self.address = address
        self.reason = reason
        super().__init__(f"<{address}>: Recipient address rejected: {reason}")

    ####################################################################
    #
    @property
    def smtp_reply(self) -> str:  # type: ignore[override]
        return f"550 5.1.1 {self}"


########################################################################
########################################################################
#
class MalformedAddress(RecipientRejected):
    """
    The recipient address can not be turned into a local mailbox name.
    """

    ####################################################################
    #
    def __init__(self, address: str, reason: str = "malformed address"):
        super().__init__(address, reason)


########################################################################
########################################################################
#
class NoValidRecipients(LetterboxError):
    smtp_reply = "554 5.5.1 Error: no valid recipients"


########################################################################
########################################################################
#
class MailboxUnavailable(LetterboxError):
    """
    A recipient's maildir could not be created, or a delivery could not be
    opened in it.
    """

    smtp_reply = "450 Error: maildir unavailable"


########################################################################
########################################################################
#
class DeliveryWriteFailure(LetterboxError):
    """
    Appending to one of the open deliveries failed. The whole session has
    been aborted by the time this is raised.
    """

    smtp_reply = "450 Error: maildir unavailable"


########################################################################
########################################################################
#
class MailboxCommitFailure(LetterboxError):
    """
    Raised by `DeliverySession.close()` after every delivery has been given
    the chance to commit, when one or more of them failed to.

    `delivered` holds the recipients whose message did make it into their
    maildir, `failed` the ones that did not.
    """

    smtp_reply = "450 Error: maildir unavailable"

    ####################################################################
    #
    def __init__(
        self, failed: List[str], delivered: Optional[List[str]] = None
    ):
        self.failed = failed
        self.delivered = delivered if delivered is not None else []
        super().__init__(
            f"Unable to commit message for: {', '.join(failed)}"
        )


########################################################################
########################################################################
#
class SessionClosed(LetterboxError):
    """
    The session has already been committed or aborted.
    """
