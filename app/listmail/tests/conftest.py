#!/usr/bin/env python
#
"""
pytest fixtures for our tests
"""
# system imports
#
import email.policy
from email.message import EmailMessage
from pathlib import Path
from typing import Dict, List, Optional

# 3rd party imports
#
import dkim
import pytest
import redis
from aiosmtpd.smtp import Envelope as SMTPEnvelope, Session as SMTPSession
from fakeredis import FakeConnection, FakeServer
from huey.api import Huey
from huey.contrib.djhuey import HUEY
from pytest_factoryboy import register

# Project imports
#
import listmail.utils
from listmail.resolver import LookupNotFound

from .factories import (
    ListMemberFactory,
    ListMessageFactory,
    MailingListFactory,
    OrgFactory,
    OrgMemberFactory,
    UserFactory,
)

# This is the magic where we create fixtures that use factories to
# generate the right kind of object.
#
# NOTE: `register(FooFactory)` provides the fixture `foo_factory`
#
register(UserFactory)
register(OrgFactory)
register(OrgMemberFactory)
register(MailingListFactory)
register(ListMemberFactory)
register(ListMessageFactory)

DATA_DIR = Path(__file__).parent / "data"

USER_DOMAIN = "lists.example.org"
ORG_DOMAIN = "org.lists.example.org"
DKIM_SELECTOR = "test"


####################################################################
#
@pytest.fixture(autouse=True)
def use_fakeredis(settings, monkeypatch) -> redis.StrictRedis:
    """
    Set up a single fake redis server and make sure all places that try to
    use redis use this server for the duration of this test.
    """
    server = FakeServer()
    huey_pool = redis.ConnectionPool(
        server=server, connection_class=FakeConnection, db=1
    )
    redis_pool = redis.ConnectionPool(
        server=server, connection_class=FakeConnection, db=2
    )

    # Everything except huey uses the `redis_client()` helper method and that
    # helper uses the module variable `REDIS_CONNECTION_POOL` so monkeypatching
    # that to o a ConnectionPool we control covers that.
    #
    monkeypatch.setattr(listmail.utils, "REDIS_CONNECTION_POOL", redis_pool)

    # Make sure huey uses our fake redis server
    #
    settings.HUEY["connection"]["connection_pool"] = huey_pool

    # And return a redis client talking to the same FakeServer in case some
    # tests need access to the redis instance.
    #
    return redis.StrictRedis(connection_pool=redis_pool)


####################################################################
#
@pytest.fixture(autouse=True)
def huey_immediate_mode(settings) -> Huey:
    """
    Huey tasks are invoked immediately inline. Cannot think of a case
    where we would not want this to happen automatically while running
    tests. Especially since there is no easy to invoke a huey task directly
    (ie: without it trying to run as a huey task.)
    """
    immediate = HUEY.immediate
    HUEY.immediate = True
    settings.HUEY["immediate"] = True
    yield HUEY
    HUEY.immediate = immediate


####################################################################
#
@pytest.fixture(autouse=True)
def listmail_settings(settings, tmp_path):
    """
    Every test gets the same list domains and its own message store.
    """
    settings.LISTMAIL_USER_DOMAIN = USER_DOMAIN
    settings.LISTMAIL_ORG_DOMAIN = ORG_DOMAIN
    settings.LISTMAIL_AUTH_DOMAIN = USER_DOMAIN
    settings.LISTMAIL_INSTANCE = "test-instance"
    settings.LISTMAIL_MESSAGE_STORE_DIR = tmp_path / "message_store"
    yield settings


####################################################################
#
@pytest.fixture
def dkim_key() -> Dict[str, bytes]:
    """
    The test DKIM key pair. `txt` is the DNS record publishing the public
    key.
    """
    private = (DATA_DIR / "dkim_test.key").read_bytes()
    public = (DATA_DIR / "dkim_test.pub").read_text().strip()
    return {
        "private": private,
        "txt": f"v=DKIM1; k=rsa; p={public}",
    }


####################################################################
#
@pytest.fixture
def dns_records(mocker) -> Dict[str, List[str]]:
    """
    Replace TXT lookups with a dict the test fills in. Names that are not
    in the dict do not exist. A value that is an exception instance is
    raised.
    """
    records: Dict[str, List[str]] = {}

    def lookup(domain: str) -> List[str]:
        domain = domain.rstrip(".").lower()
        if domain not in records:
            raise LookupNotFound(domain)
        value = records[domain]
        if isinstance(value, Exception):
            raise value
        return value

    mocker.patch("listmail.authentication.lookup_txt", side_effect=lookup)
    return records


####################################################################
#
@pytest.fixture
def mock_spf(mocker):
    """
    Mock pyspf. By default every check passes.
    """
    return mocker.patch(
        "listmail.authentication.spf.check2",
        return_value=("pass", "sender SPF authorized"),
    )


####################################################################
#
@pytest.fixture
def message_factory(faker, dkim_key):
    """
    Returns a function that makes the raw bytes of a message, as a sending
    MTA would give them to us. If `dkim_domain` is given the message is
    signed with the test key for that domain.
    """

    def make_message(
        msg_from: str,
        to: str,
        msg_id: Optional[str] = None,
        subject: Optional[str] = None,
        in_reply_to: Optional[str] = None,
        dkim_domain: Optional[str] = None,
        extra_headers: Optional[Dict[str, str]] = None,
    ) -> bytes:
        msg = EmailMessage()
        msg["From"] = msg_from
        msg["To"] = to
        msg["Subject"] = faker.sentence() if subject is None else subject
        if msg_id is None:
            msg_id = f"{faker.uuid4()}@{msg_from.rsplit('@', 1)[-1].rstrip('>')}"
        if msg_id:
            msg["Message-ID"] = f"<{msg_id}>"
        if in_reply_to:
            msg["In-Reply-To"] = f"<{in_reply_to}>"
        for header, value in (extra_headers or {}).items():
            msg[header] = value
        msg.set_content("\n".join(faker.paragraphs(nb=3)))

        raw = msg.as_bytes(policy=email.policy.SMTP)
        if dkim_domain:
            signature = dkim.sign(
                raw,
                DKIM_SELECTOR.encode(),
                dkim_domain.encode(),
                dkim_key["private"],
                include_headers=[
                    b"from",
                    b"to",
                    b"subject",
                    b"message-id",
                ],
            )
            raw = signature + raw
        return raw

    return make_message


####################################################################
#
@pytest.fixture
def publish_dkim_key(dns_records, dkim_key):
    """
    Publish the test DKIM key for a domain.
    """

    def publish(domain: str) -> None:
        dns_records[f"{DKIM_SELECTOR}._domainkey.{domain}"] = [dkim_key["txt"]]

    return publish


####################################################################
#
@pytest.fixture
def aiosmtp_session(faker) -> SMTPSession:
    """
    When testing handlers we need a aiosmtp.smtp.Session
    """
    sess = SMTPSession(None)
    sess.peer = (faker.ipv4(), faker.pyint(1024, 65535))
    return sess


####################################################################
#
@pytest.fixture
def aiosmtp_envelope():
    """
    An empty SMTPEnvelope, as it is before MAIL FROM.
    """

    def make_envelope(**kwargs):
        env = SMTPEnvelope()
        if "mail_from" in kwargs:
            env.mail_from = kwargs["mail_from"]
        if "to" in kwargs:
            env.rcpt_tos.append(kwargs["to"])
        if "content" in kwargs:
            env.original_content = kwargs["content"]
            env.content = kwargs["content"]
        return env

    return make_envelope
