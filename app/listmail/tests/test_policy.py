#!/usr/bin/env python
#
"""
Test resolving recipient addresses to lists and the list sender policies.
"""
# 3rd party imports
#
import pytest
from asgiref.sync import sync_to_async

# Project imports
#
from ..identity import aauth_member, aget_user_by_email, namespace_for_domain
from ..models import MailingList, User, user_owner_id
from ..policy import Recipient, aresolve_recipient, check_sender_policy
from ..rejections import Rejection, SMTPRejection

pytestmark = pytest.mark.django_db(transaction=True)


####################################################################
#
def recipient_for(mailing_list: MailingList) -> Recipient:
    return Recipient(
        rcpt_to=f"x.{mailing_list.listname}@lists.example.org",
        list_pk=mailing_list.pk,
        list_id=mailing_list.list_id,
        owner_id=mailing_list.owner_id,
        is_org=mailing_list.is_org,
        sender_policy=mailing_list.sender_policy,
    )


########################################################################
########################################################################
#
class TestIdentity:
    ####################################################################
    #
    def test_namespace_for_domain(self):
        assert namespace_for_domain("lists.example.org") is False
        assert namespace_for_domain("ORG.lists.example.org.") is True

        with pytest.raises(SMTPRejection) as exc_info:
            namespace_for_domain("example.com")
        assert exc_info.value.rejection == Rejection.SYSTEM

    ####################################################################
    #
    @pytest.mark.asyncio
    async def test_aget_user_by_email(self, user_factory):
        """
        Given a registered user
        When we look them up by email address in a different case
        Then we find them, and an unknown address raises DoesNotExist
        """
        alice = await sync_to_async(user_factory)(email="alice@example.com")

        assert await aget_user_by_email("Alice@Example.com") == alice
        with pytest.raises(User.DoesNotExist):
            await aget_user_by_email("nobody@example.com")

    ####################################################################
    #
    @pytest.mark.asyncio
    async def test_aauth_member(
        self, org_factory, org_member_factory, user_factory
    ):
        org = await sync_to_async(org_factory)()
        member = await sync_to_async(user_factory)()
        outsider = await sync_to_async(user_factory)()
        await sync_to_async(org_member_factory)(org=org, user=member)

        assert await aauth_member(org.owner_id, member)
        assert not await aauth_member(org.owner_id, outsider)
        assert not await aauth_member(user_owner_id(member), member)


########################################################################
########################################################################
#
class TestResolveRecipient:
    ####################################################################
    #
    @pytest.mark.asyncio
    async def test_user_list(self, user_factory, mailing_list_factory):
        """
        Given a list `announce` owned by the user `bob`
        When bob.announce@lists.example.org is resolved
        Then we get that list
        """
        bob = await sync_to_async(user_factory)(username="bob")
        mailing_list = await sync_to_async(mailing_list_factory)(
            owner_id=user_owner_id(bob), listname="announce"
        )

        recipient = await aresolve_recipient("bob.announce@lists.example.org")

        assert recipient.list_pk == mailing_list.pk
        assert recipient.list_id == f"{bob.pk}.announce"
        assert recipient.owner_id == str(bob.pk)
        assert recipient.is_org is False
        assert recipient.rcpt_to == "bob.announce@lists.example.org"

    ####################################################################
    #
    @pytest.mark.asyncio
    async def test_org_list(self, org_factory, mailing_list_factory):
        org = await sync_to_async(org_factory)(name="acme")
        mailing_list = await sync_to_async(mailing_list_factory)(
            owner_id=org.owner_id, listname="staff"
        )

        recipient = await aresolve_recipient("acme.staff@org.lists.example.org")

        assert recipient.list_pk == mailing_list.pk
        assert recipient.list_id == f"org.{org.pk}.staff"
        assert recipient.is_org is True

    ####################################################################
    #
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "address,rejection",
        [
            ("not an address", Rejection.RCPT_ADDRESS),
            ("bob.announce@example.com", Rejection.SYSTEM),
            ("bobannounce@lists.example.org", Rejection.MAILBOX),
            ("bob.an.nounce@lists.example.org", Rejection.MAILBOX),
            ("carol.announce@lists.example.org", Rejection.MAILBOX),
            ("bob.missing@lists.example.org", Rejection.MAILBOX),
            ("bob.announce@org.lists.example.org", Rejection.MAILBOX),
        ],
    )
    async def test_rejections(
        self, user_factory, mailing_list_factory, address, rejection
    ):
        """
        Given a list `announce` owned by the user `bob`
        When addresses that are malformed, outside our domains, missing the
          separator, or naming an unknown owner or list are resolved
        Then each is rejected with the matching rejection
        """
        bob = await sync_to_async(user_factory)(username="bob")
        await sync_to_async(mailing_list_factory)(
            owner_id=user_owner_id(bob), listname="announce"
        )

        with pytest.raises(SMTPRejection) as exc_info:
            await aresolve_recipient(address)
        assert exc_info.value.rejection == rejection

    ####################################################################
    #
    @pytest.mark.asyncio
    async def test_archived_list(self, user_factory, mailing_list_factory):
        """
        Given an archived list
        When its address is resolved
        Then it is rejected as disabled, not as an unknown mailbox
        """
        bob = await sync_to_async(user_factory)(username="bob")
        await sync_to_async(mailing_list_factory)(
            owner_id=user_owner_id(bob), listname="old", archive=True
        )

        with pytest.raises(SMTPRejection) as exc_info:
            await aresolve_recipient("bob.old@lists.example.org")
        assert exc_info.value.rejection == Rejection.MAILBOX_DISABLED
        assert exc_info.value.rejection != Rejection.MAILBOX


########################################################################
########################################################################
#
class TestSenderPolicy:
    ####################################################################
    #
    @pytest.mark.asyncio
    async def test_owner_policy_user_list(
        self, user_factory, mailing_list_factory
    ):
        """
        Given a user owned list with the `owner` policy
        When the owner, an inactive owner, and someone else send to it
        Then only the active owner is allowed
        """
        owner = await sync_to_async(user_factory)()
        other = await sync_to_async(user_factory)()
        mailing_list = await sync_to_async(mailing_list_factory)(
            owner_id=user_owner_id(owner),
            sender_policy=MailingList.SenderPolicy.OWNER,
        )
        recipient = recipient_for(mailing_list)

        await check_sender_policy(recipient, owner)

        with pytest.raises(SMTPRejection) as exc_info:
            await check_sender_policy(recipient, other)
        assert exc_info.value.rejection == Rejection.AUTH_SEND

        owner.is_active = False
        with pytest.raises(SMTPRejection) as exc_info:
            await check_sender_policy(recipient, owner)
        assert exc_info.value.rejection == Rejection.AUTH_SEND

    ####################################################################
    #
    @pytest.mark.asyncio
    async def test_owner_policy_org_list(
        self, org_factory, org_member_factory, user_factory, mailing_list_factory
    ):
        """
        Given an org owned list with the `owner` policy
        When a member of the org and a non-member send to it
        Then only the member is allowed
        """
        org = await sync_to_async(org_factory)()
        member = await sync_to_async(user_factory)()
        outsider = await sync_to_async(user_factory)()
        await sync_to_async(org_member_factory)(org=org, user=member)
        mailing_list = await sync_to_async(mailing_list_factory)(
            owner_id=org.owner_id,
            sender_policy=MailingList.SenderPolicy.OWNER,
        )
        recipient = recipient_for(mailing_list)

        await check_sender_policy(recipient, member)
        with pytest.raises(SMTPRejection) as exc_info:
            await check_sender_policy(recipient, outsider)
        assert exc_info.value.rejection == Rejection.AUTH_SEND

    ####################################################################
    #
    @pytest.mark.asyncio
    async def test_member_policy(
        self, user_factory, mailing_list_factory, list_member_factory
    ):
        member = await sync_to_async(user_factory)()
        outsider = await sync_to_async(user_factory)()
        mailing_list = await sync_to_async(mailing_list_factory)(
            sender_policy=MailingList.SenderPolicy.MEMBER,
        )
        await sync_to_async(list_member_factory)(
            mailing_list=mailing_list, user=member
        )
        recipient = recipient_for(mailing_list)

        await check_sender_policy(recipient, member)
        with pytest.raises(SMTPRejection) as exc_info:
            await check_sender_policy(recipient, outsider)
        assert exc_info.value.rejection == Rejection.AUTH_SEND

    ####################################################################
    #
    @pytest.mark.asyncio
    async def test_user_policy(self, user_factory, mailing_list_factory):
        """
        Given a list with the `user` policy
        When any active registered user sends to it
        Then they are allowed, but an inactive one is not
        """
        sender = await sync_to_async(user_factory)()
        mailing_list = await sync_to_async(mailing_list_factory)(
            sender_policy=MailingList.SenderPolicy.USER,
        )
        recipient = recipient_for(mailing_list)

        await check_sender_policy(recipient, sender)

        sender.is_active = False
        with pytest.raises(SMTPRejection) as exc_info:
            await check_sender_policy(recipient, sender)
        assert exc_info.value.rejection == Rejection.AUTH_SEND

    ####################################################################
    #
    @pytest.mark.asyncio
    async def test_invalid_policy(self, user_factory, mailing_list_factory):
        """
        Given a list whose sender policy is not one we know
        When anyone sends to it
        Then it is rejected as a mailbox configuration error
        """
        sender = await sync_to_async(user_factory)()
        mailing_list = await sync_to_async(mailing_list_factory)(
            sender_policy="everyone",
        )
        recipient = recipient_for(mailing_list)

        with pytest.raises(SMTPRejection) as exc_info:
            await check_sender_policy(recipient, sender)
        assert exc_info.value.rejection == Rejection.MAILBOX_CONFIG
