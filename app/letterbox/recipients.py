#!/usr/bin/env python
#
"""
The recipient whitelist, and turning a recipient address in to the name of
the maildir that it is delivered to.
"""
# system imports
#
import logging
import posixpath
from typing import FrozenSet, Iterable

# Project imports
#
from .exceptions import MalformedAddress

logger = logging.getLogger("letterbox.recipients")


####################################################################
#
def derive_local_name(email_address: str) -> str:
    """
    Return the name of the maildir for `email_address`: the part before
    the first `@`, with anything that looks like a path eliminated.

    Whatever the recipient looks like the result is always a single path
    component. It never contains a `/`, and is never `.` or `..`, so
    it can not escape the maildirs directory.

    Raises MalformedAddress if there is no `@`, or if nothing usable is
    left of the local part.
    """
    if "@" not in email_address:
        raise MalformedAddress(email_address, "no '@' in address")

    local_part = email_address.split("@", 1)[0]

    # Backslashes are not separators on POSIX but treat them as such so
    # that a name like "..\..\etc" is not written verbatim either.
    #
    local_part = local_part.replace("\\", "/")
    name = posixpath.basename(posixpath.normpath(local_part))
    if name in ("", ".", "..") or "\x00" in name:
        raise MalformedAddress(email_address, "no usable mailbox name")
    return name


########################################################################
########################################################################
#
class RecipientWhitelist:
    """
    The set of email addresses we accept mail for. Matching is exact and
    case sensitive, the addresses are compared as they are written in the
    config file.
    """

    ####################################################################
    #
    def __init__(self, emails: Iterable[str] = ()):
        self._emails: FrozenSet[str] = frozenset(emails)

    ####################################################################
    #
    def __len__(self) -> int:
        return len(self._emails)

    ####################################################################
    #
    def __contains__(self, email_address: object) -> bool:
        return email_address in self._emails

    ####################################################################
    #
    def is_eligible(self, email_address: str) -> bool:
        if email_address in self._emails:
            return True
        logger.debug("Recipient <%s> not in whitelist", email_address)
        return False
