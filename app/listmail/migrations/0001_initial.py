# Generated manually for the initial listmail schema

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Org",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True,
                        primary_key=True,
                        serialize=False,
                        verbose_name="ID",
                    ),
                ),
                (
                    "name",
                    models.CharField(
                        help_text=(
                            "The short name of the organization. This is the "
                            "owner part of the address of lists owned by this "
                            "organization."
                        ),
                        max_length=255,
                        unique=True,
                    ),
                ),
                (
                    "display_name",
                    models.CharField(blank=True, default="", max_length=255),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
        ),
        migrations.CreateModel(
            name="OrgMember",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True,
                        primary_key=True,
                        serialize=False,
                        verbose_name="ID",
                    ),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "org",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        to="listmail.org",
                    ),
                ),
                (
                    "user",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
        ),
        migrations.AddField(
            model_name="org",
            name="members",
            field=models.ManyToManyField(
                help_text="Users that are members of this organization.",
                related_name="orgs",
                through="listmail.OrgMember",
                to=settings.AUTH_USER_MODEL,
            ),
        ),
        migrations.AddConstraint(
            model_name="orgmember",
            constraint=models.UniqueConstraint(
                fields=("org", "user"), name="unique_org_member"
            ),
        ),
        migrations.CreateModel(
            name="MailingList",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True,
                        primary_key=True,
                        serialize=False,
                        verbose_name="ID",
                    ),
                ),
                (
                    "list_id",
                    models.CharField(
                        editable=False,
                        help_text=(
                            "`<owner_id>.<listname>`. Filled in automatically "
                            "when the list is saved."
                        ),
                        max_length=255,
                        unique=True,
                    ),
                ),
                (
                    "owner_id",
                    models.CharField(
                        help_text=(
                            "The primary key of the owning user, or "
                            "`org.<pk>` for lists owned by an organization."
                        ),
                        max_length=64,
                    ),
                ),
                ("listname", models.CharField(max_length=127)),
                (
                    "name",
                    models.CharField(blank=True, default="", max_length=255),
                ),
                ("description", models.TextField(blank=True, default="")),
                (
                    "archive",
                    models.BooleanField(
                        default=False,
                        help_text=(
                            "Archived lists keep their messages but no longer "
                            "accept new mail."
                        ),
                    ),
                ),
                (
                    "sender_policy",
                    models.CharField(
                        choices=[
                            ("owner", "Owner"),
                            ("member", "Member"),
                            ("user", "User"),
                        ],
                        default="owner",
                        help_text=(
                            "Who may send to this list. `owner`: only the "
                            "owning user (or any member of the owning "
                            "organization). `member`: registered users that "
                            "are members of the list. `user`: any registered "
                            "user."
                        ),
                        max_length=16,
                    ),
                ),
                (
                    "last_updated",
                    models.DateTimeField(blank=True, null=True),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
        ),
        migrations.AddConstraint(
            model_name="mailinglist",
            constraint=models.UniqueConstraint(
                fields=("owner_id", "listname"), name="unique_owner_listname"
            ),
        ),
        migrations.CreateModel(
            name="ListMember",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True,
                        primary_key=True,
                        serialize=False,
                        verbose_name="ID",
                    ),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "mailing_list",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        to="listmail.mailinglist",
                    ),
                ),
                (
                    "user",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
        ),
        migrations.AddField(
            model_name="mailinglist",
            name="members",
            field=models.ManyToManyField(
                related_name="mailing_lists",
                through="listmail.ListMember",
                to=settings.AUTH_USER_MODEL,
            ),
        ),
        migrations.AddConstraint(
            model_name="listmember",
            constraint=models.UniqueConstraint(
                fields=("mailing_list", "user"), name="unique_list_member"
            ),
        ),
        migrations.CreateModel(
            name="ListMessage",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True,
                        primary_key=True,
                        serialize=False,
                        verbose_name="ID",
                    ),
                ),
                ("msg_id", models.CharField(max_length=1023)),
                (
                    "subject",
                    models.CharField(blank=True, default="", max_length=127),
                ),
                (
                    "spf_pass",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text=(
                            "The envelope domain if SPF passed DMARC aligned."
                        ),
                        max_length=255,
                    ),
                ),
                (
                    "dkim_pass",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text=(
                            "The signing domain of the aligned DKIM signature."
                        ),
                        max_length=255,
                    ),
                ),
                (
                    "in_reply_to",
                    models.CharField(blank=True, default="", max_length=1023),
                ),
                (
                    "parent_id",
                    models.CharField(blank=True, default="", max_length=1023),
                ),
                (
                    "thread_id",
                    models.CharField(blank=True, default="", max_length=1023),
                ),
                ("processed", models.BooleanField(default=False)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "mailing_list",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="messages",
                        to="listmail.mailinglist",
                    ),
                ),
                (
                    "sender",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="list_messages",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
        ),
        migrations.AddConstraint(
            model_name="listmessage",
            constraint=models.UniqueConstraint(
                fields=("mailing_list", "msg_id"), name="unique_list_msg_id"
            ),
        ),
        migrations.AddIndex(
            model_name="listmessage",
            index=models.Index(
                fields=["processed", "created_at"],
                name="listmsg_processed_idx",
            ),
        ),
        migrations.AddIndex(
            model_name="listmessage",
            index=models.Index(
                fields=["mailing_list", "in_reply_to"],
                name="listmsg_in_reply_to_idx",
            ),
        ),
    ]
