#!/usr/bin/env python
#
"""
The fixed set of ways we refuse mail.

Every refusal the SMTP daemon can send is a member of `Rejection`. The
ingestion pipeline raises `SMTPRejection` carrying one of these and only the
SMTP handler turns it in to the actual reply line. That way the
authentication code never has to know what an SMTP reply looks like.
"""
# system imports
#
from enum import Enum
from typing import Optional


########################################################################
########################################################################
#
class Rejection(Enum):
    """
    Each member's value is the (basic status, enhanced status, reason)
    triple that goes out on the wire.
    """

    TEMPORARY = (451, "4.0.0", "Temporary error")
    # Used once the message body has been received. The sender should retry
    # the whole message later.
    #
    TEMPORARY_EXISTS = (451, "4.2.4", "Temporary error")
    CONNECTION = (451, "4.0.0", "Invalid client ip address")
    FROM_ADDRESS = (501, "5.1.7", "Invalid mail from address")
    RCPT_ADDRESS = (501, "5.1.3", "Invalid recipient address")
    MAILBOX = (550, "5.1.1", "Invalid recipient mailbox")
    MAILBOX_CONFIG = (451, "4.3.0", "Invalid recipient mailbox config")
    MAILBOX_DISABLED = (450, "4.2.1", "Mailbox is archived")
    SYSTEM = (550, "5.1.2", "Invalid recipient system")
    RCPT_COUNT = (451, "4.5.3", "Too many recipients")
    AUTH_SEND = (550, "5.7.2", "Unauthorized to send to this mailing list")
    SEQUENCE = (503, "5.5.1", "Invalid command sequence")
    SPF_FAIL = (550, "5.7.1", "Failed spf")
    SPF_TEMP = (451, "4.4.3", "Temporary spf error")
    SPF_PERM = (550, "5.5.2", "Invalid spf dns record")
    DKIM_FAIL = (550, "5.7.7", "Failed DKIM verification")
    MAIL_BODY = (550, "5.7.7", "Malformed mail body")
    SPF_ALIGNMENT = (550, "5.7.1", "Failed SPF from header alignment")
    DMARC_POLICY = (550, "5.7.1", "Rejecting based on DMARC policy")
    AUTH_UNSUPPORTED = (502, "5.7.0", "Authentication not supported")

    ####################################################################
    #
    @property
    def code(self) -> int:
        return self.value[0]

    ####################################################################
    #
    @property
    def enhanced(self) -> str:
        return self.value[1]

    ####################################################################
    #
    @property
    def message(self) -> str:
        return self.value[2]

    ####################################################################
    #
    @property
    def temporary(self) -> bool:
        """
        4xx replies tell the sending MTA to try again later.
        """
        return 400 <= self.code < 500

    ####################################################################
    #
    def reply(self) -> str:
        return f"{self.code} {self.enhanced} {self.message}"

    ####################################################################
    #
    def __str__(self) -> str:
        return self.reply()


########################################################################
########################################################################
#
class SMTPRejection(Exception):
    """
    Raised anywhere in the ingestion path to refuse the current command.
    `detail` is only for our logs, it is never sent to the client.
    """

    ####################################################################
    #
    def __init__(self, rejection: Rejection, detail: Optional[str] = None):
        self.rejection = rejection
        self.detail = detail
        super().__init__(rejection.reply() if not detail else detail)

    ####################################################################
    #
    @property
    def reply(self) -> str:
        return self.rejection.reply()
