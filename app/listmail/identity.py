#!/usr/bin/env python
#
"""
Map the names and addresses we see in mail to our users and organizations.

Lookups that find nothing raise the model's `DoesNotExist`. The SMTP handler
decides what that means for the sender (an unknown mailbox, or an
unauthorized sender).
"""
# system imports
#
import logging

# 3rd party imports
#
from django.conf import settings

# Project imports
#
from .models import ORG_OWNER_PREFIX, Org, OrgMember, User, user_owner_id
from .rejections import Rejection, SMTPRejection
from .utils import normalize_domain

logger = logging.getLogger("listmail.identity")


####################################################################
#
def namespace_for_domain(domain: str) -> bool:
    """
    Return True if `domain` is the organization list domain, False if it is
    the user list domain.

    Raises SMTPRejection(SYSTEM) for any other domain.
    """
    domain = normalize_domain(domain)
    if domain == normalize_domain(settings.LISTMAIL_USER_DOMAIN):
        return False
    if domain == normalize_domain(settings.LISTMAIL_ORG_DOMAIN):
        return True
    raise SMTPRejection(Rejection.SYSTEM, f"'{domain}' is not a list domain")


####################################################################
#
async def aresolve_owner(owner: str, is_org: bool) -> str:
    """
    Given the owner part of a list address return the owner id that lists
    are stored under.

    Raises Org.DoesNotExist or User.DoesNotExist.
    """
    if is_org:
        org = await Org.objects.aget(name=owner)
        return org.owner_id
    user = await User.objects.aget(username=owner)
    return user_owner_id(user)


####################################################################
#
async def aget_user_by_email(email_address: str) -> User:
    """
    Find the registered user with this email address.

    Raises User.DoesNotExist.
    """
    user = (
        await User.objects.filter(email__iexact=email_address)
        .order_by("pk")
        .afirst()
    )
    if user is None:
        raise User.DoesNotExist(f"No user with email '{email_address}'")
    return user


####################################################################
#
async def aauth_user(user: User) -> bool:
    """
    Is this user allowed to act at all? Deactivated accounts are not.
    """
    return user.is_active


####################################################################
#
async def aauth_member(owner_id: str, user: User) -> bool:
    """
    Is `user` a member of the organization with the given owner id?
    """
    if not owner_id.startswith(ORG_OWNER_PREFIX):
        return False
    org_pk = owner_id[len(ORG_OWNER_PREFIX) :]
    if not org_pk.isdigit():
        return False
    if not user.is_active:
        return False
    return await OrgMember.objects.filter(
        org_id=int(org_pk), user=user
    ).aexists()
