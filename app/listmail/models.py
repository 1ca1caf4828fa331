#!/usr/bin/env python
#
"""
Models for the mailing list ingestion service.

Lists belong to either a user or an organization. Which one is encoded in
the list's `owner_id`: a user owned list has the user's primary key, an org
owned list has `org.<org primary key>`. A list's `list_id` is
`<owner_id>.<listname>` and that is the identifier everything downstream
(the message store, the delivery event) uses.
"""
# 3rd party imports
#
from django.contrib.auth import get_user_model
from django.db import models
from django.utils.translation import gettext_lazy as _

# Various models that belong to a specific user need the User object.
#
User = get_user_model()

ORG_OWNER_PREFIX = "org."


####################################################################
#
def user_owner_id(user: User) -> str:
    return str(user.pk)


########################################################################
########################################################################
#
class Org(models.Model):
    name = models.CharField(
        max_length=255,
        unique=True,
        help_text=_(
            "The short name of the organization. This is the owner part of "
            "the address of lists owned by this organization."
        ),
    )
    display_name = models.CharField(max_length=255, blank=True, default="")
    members = models.ManyToManyField(
        User,
        through="OrgMember",
        related_name="orgs",
        help_text=_("Users that are members of this organization."),
    )
    created_at = models.DateTimeField(auto_now_add=True)

    ####################################################################
    #
    def __str__(self):
        return self.name

    ####################################################################
    #
    @property
    def owner_id(self) -> str:
        return f"{ORG_OWNER_PREFIX}{self.pk}"


########################################################################
########################################################################
#
class OrgMember(models.Model):
    org = models.ForeignKey(Org, on_delete=models.CASCADE)
    user = models.ForeignKey(User, on_delete=models.CASCADE)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["org", "user"], name="unique_org_member"
            ),
        ]

    ####################################################################
    #
    def __str__(self):
        return f"{self.user} in {self.org}"


########################################################################
########################################################################
#
class MailingList(models.Model):
    """
    A mailing list. Mail sent to `<owner>.<listname>@<list domain>` is
    checked against `sender_policy` and, if allowed, recorded as a
    `ListMessage`.
    """

    class SenderPolicy(models.TextChoices):
        OWNER = "owner", _("Owner")
        MEMBER = "member", _("Member")
        USER = "user", _("User")

    list_id = models.CharField(
        max_length=255,
        unique=True,
        editable=False,
        help_text=_(
            "`<owner_id>.<listname>`. Filled in automatically when the list "
            "is saved."
        ),
    )
    owner_id = models.CharField(
        max_length=64,
        help_text=_(
            "The primary key of the owning user, or `org.<pk>` for lists "
            "owned by an organization."
        ),
    )
    listname = models.CharField(max_length=127)
    name = models.CharField(max_length=255, blank=True, default="")
    description = models.TextField(blank=True, default="")
    archive = models.BooleanField(
        default=False,
        help_text=_(
            "Archived lists keep their messages but no longer accept new "
            "mail."
        ),
    )
    # NOTE: Not constrained at the database level. A value that is not one of
    #       the choices is reported to the sender as a mailbox configuration
    #       error.
    #
    sender_policy = models.CharField(
        max_length=16,
        choices=SenderPolicy.choices,
        default=SenderPolicy.OWNER,
        help_text=_(
            "Who may send to this list. `owner`: only the owning user (or "
            "any member of the owning organization). `member`: registered "
            "users that are members of the list. `user`: any registered "
            "user."
        ),
    )
    members = models.ManyToManyField(
        User, through="ListMember", related_name="mailing_lists"
    )
    last_updated = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["owner_id", "listname"], name="unique_owner_listname"
            ),
        ]

    ####################################################################
    #
    def __str__(self):
        return self.list_id

    ####################################################################
    #
    @property
    def is_org(self) -> bool:
        return self.owner_id.startswith(ORG_OWNER_PREFIX)

    ####################################################################
    #
    def save(self, *args, **kwargs):
        self.list_id = f"{self.owner_id}.{self.listname}"
        super().save(*args, **kwargs)


########################################################################
########################################################################
#
class ListMember(models.Model):
    mailing_list = models.ForeignKey(MailingList, on_delete=models.CASCADE)
    user = models.ForeignKey(User, on_delete=models.CASCADE)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["mailing_list", "user"], name="unique_list_member"
            ),
        ]

    ####################################################################
    #
    def __str__(self):
        return f"{self.user} on {self.mailing_list}"


########################################################################
########################################################################
#
class ListMessage(models.Model):
    """
    One message received for a list. There is only ever one of these per
    (list, Message-ID) no matter how many times the message is delivered
    to us.

    `processed` goes from False to True once the delivery event for this
    message has been published. Until it does, a re-delivery of the same
    message (or the reconciliation task) publishes the event again.
    """

    MAX_SUBJECT_LENGTH = 127
    MAX_MSGID_LENGTH = 1023

    mailing_list = models.ForeignKey(
        MailingList, on_delete=models.CASCADE, related_name="messages"
    )
    msg_id = models.CharField(max_length=MAX_MSGID_LENGTH)
    sender = models.ForeignKey(
        User, on_delete=models.CASCADE, related_name="list_messages"
    )
    subject = models.CharField(
        max_length=MAX_SUBJECT_LENGTH, blank=True, default=""
    )
    spf_pass = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text=_("The envelope domain if SPF passed DMARC aligned."),
    )
    dkim_pass = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text=_("The signing domain of the aligned DKIM signature."),
    )
    in_reply_to = models.CharField(
        max_length=MAX_MSGID_LENGTH, blank=True, default=""
    )
    parent_id = models.CharField(
        max_length=MAX_MSGID_LENGTH, blank=True, default=""
    )
    thread_id = models.CharField(
        max_length=MAX_MSGID_LENGTH, blank=True, default=""
    )
    processed = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["mailing_list", "msg_id"], name="unique_list_msg_id"
            ),
        ]
        indexes = [
            models.Index(
                fields=["processed", "created_at"],
                name="listmsg_processed_idx",
            ),
            models.Index(
                fields=["mailing_list", "in_reply_to"],
                name="listmsg_in_reply_to_idx",
            ),
        ]

    ####################################################################
    #
    def __str__(self):
        return f"{self.msg_id} on {self.mailing_list_id}"

    ####################################################################
    #
    @classmethod
    def truncate_subject(cls, subject: str) -> str:
        return subject[: cls.MAX_SUBJECT_LENGTH]
