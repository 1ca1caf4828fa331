#!/usr/bin/env python
#
"""
Resolve a recipient address to one of our mailing lists, and decide if a
sender may post to it.
"""
# system imports
#
import logging

# 3rd party imports
#
from django.core.exceptions import ObjectDoesNotExist
from pydantic import BaseModel, ConfigDict

# Project imports
#
from .identity import (
    aauth_member,
    aauth_user,
    aresolve_owner,
    namespace_for_domain,
)
from .models import ListMember, MailingList, User, user_owner_id
from .rejections import Rejection, SMTPRejection
from .utils import AddressError, parse_address, split_list_address

logger = logging.getLogger("listmail.policy")


########################################################################
########################################################################
#
class Recipient(BaseModel):
    """
    The list that RCPT TO resolved to.
    """

    model_config = ConfigDict(frozen=True)

    rcpt_to: str
    list_pk: int
    list_id: str
    owner_id: str
    is_org: bool
    sender_policy: str


####################################################################
#
async def aresolve_recipient(address: str) -> Recipient:
    """
    Turn a RCPT TO address in to the list it names.

    Raises SMTPRejection:
      - RCPT_ADDRESS if the address does not parse
      - SYSTEM if it is not one of our list domains
      - MAILBOX if there is no such owner or list (or the local part is not
        `<owner>.<list>`)
      - MAILBOX_DISABLED if the list is archived
    """
    try:
        rcpt = parse_address(address)
    except AddressError as exc:
        raise SMTPRejection(Rejection.RCPT_ADDRESS, str(exc)) from exc

    is_org = namespace_for_domain(rcpt.domain)

    try:
        owner, listname = split_list_address(rcpt.username)
    except ValueError as exc:
        raise SMTPRejection(Rejection.MAILBOX, str(exc)) from exc

    try:
        owner_id = await aresolve_owner(owner, is_org)
    except ObjectDoesNotExist as exc:
        raise SMTPRejection(
            Rejection.MAILBOX, f"No such list owner '{owner}'"
        ) from exc

    try:
        mailing_list = await MailingList.objects.aget(
            owner_id=owner_id, listname=listname
        )
    except MailingList.DoesNotExist as exc:
        raise SMTPRejection(
            Rejection.MAILBOX, f"No list '{listname}' for '{owner_id}'"
        ) from exc

    if mailing_list.archive:
        raise SMTPRejection(
            Rejection.MAILBOX_DISABLED, f"{mailing_list.list_id} is archived"
        )

    return Recipient(
        rcpt_to=rcpt.addr_spec,
        list_pk=mailing_list.pk,
        list_id=mailing_list.list_id,
        owner_id=owner_id,
        is_org=is_org,
        sender_policy=mailing_list.sender_policy,
    )


####################################################################
#
async def check_sender_policy(recipient: Recipient, sender: User) -> None:
    """
    Raise SMTPRejection(AUTH_SEND) if `sender` may not post to the list,
    SMTPRejection(MAILBOX_CONFIG) if the list's sender policy is not one we
    know.

    owner:  for an org list, the sender must be a member of the org. For a
            user list, the sender must be the owner.
    member: the sender must be a member of the list.
    user:   any registered user.
    """
    policy = recipient.sender_policy
    allowed = False

    match policy:
        case MailingList.SenderPolicy.OWNER:
            if recipient.is_org:
                allowed = await aauth_member(recipient.owner_id, sender)
            else:
                is_owner = recipient.owner_id == user_owner_id(sender)
                allowed = is_owner and await aauth_user(sender)
        case MailingList.SenderPolicy.MEMBER:
            allowed = (
                await aauth_user(sender)
                and await ListMember.objects.filter(
                    mailing_list_id=recipient.list_pk, user=sender
                ).aexists()
            )
        case MailingList.SenderPolicy.USER:
            allowed = await aauth_user(sender)
        case _:
            logger.error(
                "List %s has an invalid sender policy '%s'",
                recipient.list_id,
                policy,
            )
            raise SMTPRejection(
                Rejection.MAILBOX_CONFIG,
                f"Invalid sender policy '{policy}' on {recipient.list_id}",
            )

    if not allowed:
        raise SMTPRejection(
            Rejection.AUTH_SEND,
            f"{sender} may not send to {recipient.list_id} (policy {policy})",
        )
