#!/usr/bin/env python
#
"""
Record an authenticated message for a list exactly once.

For a given (list, Message-ID):

  - no record yet: store the message, insert the record, publish the
    delivery event, mark the record processed.
  - a record that is not processed yet: a previous attempt got part way.
    Store the message unless it already is, publish the event again,
    mark processed.
  - a processed record: nothing to do, the message has been accepted
    before.

The processed flag is only set after the event has been published, so a
duplicate delivery (or the reconciliation task) will always publish again
until that happens. Consumers of the delivery event have to tolerate seeing
the same message more than once.
"""
# system imports
#
import asyncio
import logging
from typing import Set

# 3rd party imports
#
from asgiref.sync import sync_to_async
from django.conf import settings
from django.db import IntegrityError, transaction

# Project imports
#
from .authentication import AuthenticatedMessage
from .models import ListMessage
from .storage import message_store
from .tasks import process_list_message
from .utils import encode_msgid

logger = logging.getLogger("listmail.ingest")

# Strong references to in flight mark-processed tasks so they are not
# garbage collected before they finish.
#
_BACKGROUND_TASKS: Set[asyncio.Task] = set()


####################################################################
#
def store_message(list_id: str, message: AuthenticatedMessage) -> bool:
    """
    Store the message unless an earlier delivery already has. Returns
    False if it was already stored.
    """
    store = message_store()
    key = encode_msgid(message.msg_id)
    if store.exists(list_id, key):
        return False
    store.put(
        list_id,
        key,
        message.content_type,
        len(message.content),
        {
            "list_id": list_id,
            "msg_id": message.msg_id,
            "sender_id": str(message.sender_id),
            "spf_pass": message.spf_pass,
            "dkim_pass": message.dkim_pass,
        },
        message.content,
    )
    return True


####################################################################
#
def insert_message(list_pk: int, message: AuthenticatedMessage) -> bool:
    """
    Insert the ListMessage record. Returns False if one for this
    (list, Message-ID) already exists.
    """
    try:
        with transaction.atomic():
            ListMessage.objects.create(
                mailing_list_id=list_pk,
                msg_id=message.msg_id,
                sender_id=message.sender_id,
                subject=ListMessage.truncate_subject(message.subject),
                spf_pass=message.spf_pass,
                dkim_pass=message.dkim_pass,
                in_reply_to=message.in_reply_to,
            )
    except IntegrityError:
        return False
    return True


####################################################################
#
def is_processed(list_pk: int, msg_id: str) -> bool:
    return ListMessage.objects.filter(
        mailing_list_id=list_pk, msg_id=msg_id, processed=True
    ).exists()


####################################################################
#
def publish_delivery_event(list_id: str, msg_id: str) -> None:
    """
    Calling the task enqueues it on huey's redis queue.
    """
    process_list_message(list_id, msg_id)


####################################################################
#
async def amark_processed(list_pk: int, msg_id: str) -> bool:
    """
    Set the processed flag. Returns True if this call is the one that set
    it.
    """
    updated = await ListMessage.objects.filter(
        mailing_list_id=list_pk, msg_id=msg_id, processed=False
    ).aupdate(processed=True)
    return updated == 1


####################################################################
#
async def _mark_processed_best_effort(
    list_id: str, list_pk: int, msg_id: str
) -> None:
    try:
        await asyncio.wait_for(
            amark_processed(list_pk, msg_id),
            timeout=settings.LISTMAIL_MARK_TIMEOUT,
        )
    except Exception as exc:
        # The record stays unprocessed. The next delivery of this message,
        # or the reconciliation task, will publish and mark it again.
        #
        logger.warning(
            "Failed to mark message %s on %s processed: %r",
            msg_id,
            list_id,
            exc,
        )


####################################################################
#
async def ingest_message(
    list_id: str, list_pk: int, message: AuthenticatedMessage
) -> None:
    """
    Durably record `message` for the list and publish its delivery event.

    Any exception other than a benign duplicate insert is raised to the
    caller, which should treat it as a temporary failure so the sending MTA
    retries.
    """
    msg_id = message.msg_id
    existing = (
        await ListMessage.objects.filter(mailing_list_id=list_pk, msg_id=msg_id)
        .values_list("processed", flat=True)
        .afirst()
    )

    if existing is True:
        logger.info("Message %s on %s already processed", msg_id, list_id)
        return

    if not await sync_to_async(store_message)(list_id, message):
        logger.info("Message %s on %s already stored", msg_id, list_id)

    if existing is None:
        inserted = await sync_to_async(insert_message)(list_pk, message)
        if not inserted:
            # Lost a race with a concurrent delivery of the same message. If
            # that one has finished there is nothing left to do, otherwise
            # carry on and publish, exactly as if we were resuming.
            #
            if await sync_to_async(is_processed)(list_pk, msg_id):
                logger.info(
                    "Message %s on %s processed concurrently", msg_id, list_id
                )
                return
            logger.info(
                "Message %s on %s inserted concurrently", msg_id, list_id
            )
    else:
        logger.info("Resuming unprocessed message %s on %s", msg_id, list_id)

    await sync_to_async(publish_delivery_event)(list_id, msg_id)

    # Marking processed runs in its own task so that the client going away
    # does not cancel it part way through.
    #
    task = asyncio.ensure_future(
        _mark_processed_best_effort(list_id, list_pk, msg_id)
    )
    _BACKGROUND_TASKS.add(task)
    task.add_done_callback(_BACKGROUND_TASKS.discard)
    await asyncio.shield(task)

    logger.info(
        "Accepted message %s for %s from user %d",
        msg_id,
        list_id,
        message.sender_id,
    )
