#!/usr/bin/env python
#
"""
Per connection SMTP state.

The connection itself only knows who connected and what they said in
HELO/EHLO. Each mail transaction moves through

    Init -> FromSet -> RcptSet -> ReceivingData -> Init

and every state carries only the fields that are known at that point. The
state lives on the aiosmtpd `Session` so that nothing is shared between
connections.
"""
# system imports
#
from typing import Literal, Optional, Union

# 3rd party imports
#
from aiosmtpd.smtp import Session as SMTPSession
from pydantic import BaseModel, ConfigDict

# Project imports
#
from .authentication import SPFVerdict
from .policy import Recipient
from .rejections import Rejection, SMTPRejection

CONNECTION_ATTR = "listmail_connection"
TRANSACTION_ATTR = "listmail_transaction"


########################################################################
########################################################################
#
class Connection(BaseModel):
    model_config = ConfigDict(frozen=True)

    source_ip: str
    helo: str = ""


########################################################################
########################################################################
#
class Init(BaseModel):
    model_config = ConfigDict(frozen=True)

    state: Literal["init"] = "init"


########################################################################
########################################################################
#
class FromSet(BaseModel):
    """
    MAIL FROM has been accepted.
    """

    model_config = ConfigDict(frozen=True)

    state: Literal["from"] = "from"
    request_id: str
    mail_from: str
    from_domain: str
    spf: SPFVerdict


########################################################################
########################################################################
#
class RcptSet(BaseModel):
    model_config = ConfigDict(frozen=True)

    state: Literal["rcpt"] = "rcpt"
    sender: FromSet
    recipient: Recipient


########################################################################
########################################################################
#
class ReceivingData(BaseModel):
    model_config = ConfigDict(frozen=True)

    state: Literal["data"] = "data"
    sender: FromSet
    recipient: Recipient


Transaction = Union[Init, FromSet, RcptSet, ReceivingData]

INIT = Init()


####################################################################
#
def get_connection(session: SMTPSession) -> Optional[Connection]:
    return getattr(session, CONNECTION_ATTR, None)


####################################################################
#
def require_connection(session: SMTPSession) -> Connection:
    """
    The connection once HELO/EHLO has been received. Anything that needs it
    before then is out of sequence.
    """
    connection = get_connection(session)
    if connection is None or not connection.helo:
        raise SMTPRejection(Rejection.SEQUENCE, "No HELO/EHLO yet")
    return connection


####################################################################
#
def set_connection(session: SMTPSession, connection: Connection) -> None:
    setattr(session, CONNECTION_ATTR, connection)


####################################################################
#
def get_transaction(session: SMTPSession) -> Transaction:
    return getattr(session, TRANSACTION_ATTR, INIT)


####################################################################
#
def set_transaction(session: SMTPSession, transaction: Transaction) -> None:
    setattr(session, TRANSACTION_ATTR, transaction)


####################################################################
#
def reset_transaction(session: SMTPSession) -> None:
    """
    Back to Init. The connection (and its HELO) is kept.
    """
    setattr(session, TRANSACTION_ATTR, INIT)
