#!/usr/bin/env python
#
"""
Huey dispatchable (and periodic) tasks.

`process_list_message` is the list delivery event. The SMTP daemon enqueues
it once a message has been stored, and it may be enqueued more than once for
the same message.
"""
# system imports
#
import logging
from datetime import timedelta

# 3rd party imports
#
from django.conf import settings
from django.db import transaction
from huey import crontab
from huey.contrib.djhuey import db_periodic_task, db_task

# Project imports
#
from .models import ListMessage, MailingList
from .utils import utc_now

# How many unprocessed messages the reconciliation task republishes per run.
#
RECONCILE_NUM_PER_RUN = 100

# How many failures the reconciliation task tolerates before it gives up
# for this run.
#
NUM_RECONCILE_FAILURES_PER_RUN = 5

logger = logging.getLogger("listmail.tasks")


####################################################################
#
@db_task()
def process_list_message(list_id: str, msg_id: str):
    """
    Thread the message in to its list and note that the list has been
    updated.

    A message's parent is the message named by its In-Reply-To, if we have
    it. Replies that arrived before their parent are adopted when the
    parent is processed. Running this again for the same message changes
    nothing.
    """
    msg = (
        ListMessage.objects.select_related("mailing_list")
        .filter(mailing_list__list_id=list_id, msg_id=msg_id)
        .first()
    )
    if msg is None:
        logger.error("No message '%s' on list '%s'", msg_id, list_id)
        return

    mailing_list = msg.mailing_list
    list_msgs = ListMessage.objects.filter(mailing_list=mailing_list)

    parent_id = ""
    thread_id = msg.msg_id
    if msg.in_reply_to:
        parent = list_msgs.filter(msg_id=msg.in_reply_to).first()
        if parent is not None:
            parent_id = parent.msg_id
            thread_id = parent.thread_id or parent.msg_id

    with transaction.atomic():
        # Anything already threaded under this message moves to its thread.
        #
        list_msgs.filter(thread_id=msg.msg_id).exclude(pk=msg.pk).update(
            thread_id=thread_id
        )

        # Replies that arrived before this message did. Each of them was
        # the root of its own thread until now.
        #
        orphans = list(
            list_msgs.filter(in_reply_to=msg.msg_id, parent_id="")
            .exclude(pk=msg.pk)
            .values_list("msg_id", flat=True)
        )
        if orphans:
            list_msgs.filter(thread_id__in=orphans).update(thread_id=thread_id)
            list_msgs.filter(msg_id__in=orphans).update(
                parent_id=msg.msg_id, thread_id=thread_id
            )

        list_msgs.filter(pk=msg.pk).update(
            parent_id=parent_id, thread_id=thread_id, processed=True
        )

        if (
            mailing_list.last_updated is None
            or msg.created_at > mailing_list.last_updated
        ):
            MailingList.objects.filter(pk=mailing_list.pk).update(
                last_updated=msg.created_at
            )

    logger.info(
        "Processed message '%s' on '%s' (thread '%s')",
        msg_id,
        list_id,
        thread_id,
    )


####################################################################
#
@db_periodic_task(crontab(minute="*/5"))
def reconcile_unprocessed_messages():
    """
    Republish the delivery event for messages that were recorded but never
    marked processed. This happens if the SMTP daemon went away between
    inserting the message and marking it, and the sender never retried.

    Only messages older than LISTMAIL_RECONCILE_AFTER are considered so we do
    not race a delivery that is still in progress. To avoid high noise rates
    stop after a limited number of failures.
    """
    cutoff = utc_now() - timedelta(seconds=settings.LISTMAIL_RECONCILE_AFTER)
    stale = (
        ListMessage.objects.select_related("mailing_list")
        .filter(processed=False, created_at__lt=cutoff)
        .order_by("created_at")[:RECONCILE_NUM_PER_RUN]
    )

    num_failures = 0
    for msg in stale:
        list_id = msg.mailing_list.list_id
        try:
            process_list_message(list_id, msg.msg_id)
            ListMessage.objects.filter(pk=msg.pk, processed=False).update(
                processed=True
            )
            logger.info(
                "Republished unprocessed message '%s' on '%s'",
                msg.msg_id,
                list_id,
            )
        except Exception as e:
            logger.exception(
                "Unable to republish message '%s' on '%s': %s",
                msg.msg_id,
                list_id,
                e,
            )
            num_failures += 1
            if num_failures >= NUM_RECONCILE_FAILURES_PER_RUN:
                logger.error(
                    "Stopping reconciliation after %d failures", num_failures
                )
                break
