#!/usr/bin/env python
#
"""
Utilitities used by our app. We want to separate them from models, tasks,
and the smtp daemon so we can import them in all of those other modules
without loops and weirdness.
"""
# system imports
#
import base64
import logging
import re
from datetime import UTC, datetime
from email.errors import HeaderParseError
from email.headerregistry import Address, HeaderRegistry
from typing import List, Optional, Tuple

# 3rd party imports
#
import redis
from django.conf import settings

logger = logging.getLogger("listmail.utils")

# A list address's local part is `<owner>.<listname>`
#
MAILBOX_SEPARATOR = "."

_HEADER_REGISTRY = HeaderRegistry()
_MSGID_RE = re.compile(r"<([^<>\s]+)>")


########################################################################
########################################################################
#
class AddressError(ValueError):
    """
    The string could not be parsed as the mailbox (or mailboxes) we wanted.
    """

    pass


####################################################################
#
def parse_mailboxes(value: str) -> List[Address]:
    """
    Parse an RFC 5322 address list. Every address in it must have both a
    local part and a domain. Groups are flattened.

    Raises AddressError if the string does not parse cleanly.
    """
    if not value or not value.strip():
        raise AddressError("empty address")
    try:
        header = _HEADER_REGISTRY("to", value)
    except (HeaderParseError, IndexError, ValueError) as exc:
        raise AddressError(f"unable to parse '{value}': {exc}") from exc

    if header.defects:
        raise AddressError(f"malformed address '{value}': {header.defects}")

    addresses = list(header.addresses)
    for address in addresses:
        if not address.username or not address.domain:
            raise AddressError(f"incomplete address '{address}'")
    return addresses


####################################################################
#
def parse_address(value: str) -> Address:
    """
    Parse exactly one mailbox, ie: the argument to MAIL FROM or RCPT TO.
    """
    addresses = parse_mailboxes(value)
    if len(addresses) != 1:
        raise AddressError(
            f"expected exactly one address in '{value}', got {len(addresses)}"
        )
    return addresses[0]


####################################################################
#
def split_list_address(local_part: str) -> Tuple[str, str]:
    """
    Split the local part of a list address in to its owner and list name.

    The local part must contain the separator exactly once and both sides
    must be non-empty.

    Raises ValueError otherwise.
    """
    parts = local_part.split(MAILBOX_SEPARATOR)
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise ValueError(f"'{local_part}' is not an <owner>.<list> address")
    return parts[0], parts[1]


####################################################################
#
def normalize_domain(domain: str) -> str:
    return domain.strip().rstrip(".").lower()


####################################################################
#
def is_aligned(domain_a: str, domain_b: str) -> bool:
    """
    Relaxed alignment: the two domains are the same, or one is a
    subdomain of the other.

    We compare on label boundaries so `badexample.com` is not aligned with
    `example.com`.
    """
    a = normalize_domain(domain_a)
    b = normalize_domain(domain_b)
    if not a or not b:
        return False
    return a == b or a.endswith("." + b) or b.endswith("." + a)


####################################################################
#
def strip_msgid(value: Optional[str]) -> str:
    """
    Return the contents of a Message-ID header without the angle brackets
    and surrounding whitespace. Empty string if there is nothing usable.
    """
    if not value:
        return ""
    value = str(value).strip()
    match = _MSGID_RE.search(value)
    if match:
        return match.group(1)
    return value.strip("<>").strip()


####################################################################
#
def parse_msgid_list(value: Optional[str]) -> List[str]:
    """
    The msg-ids in a References/In-Reply-To style header.
    """
    if not value:
        return []
    return _MSGID_RE.findall(str(value))


####################################################################
#
def encode_msgid(msgid: str) -> str:
    """
    Message-IDs can contain all sorts of characters that do not belong in a
    storage key. Encode with url safe base64 and no padding.
    """
    return base64.urlsafe_b64encode(msgid.encode("utf-8")).rstrip(b"=").decode()


####################################################################
#
def decode_msgid(key: str) -> str:
    padding = "=" * (-len(key) % 4)
    return base64.urlsafe_b64decode(key + padding).decode("utf-8")


########################################################################
#
REDIS_CONNECTION_POOL = redis.ConnectionPool(
    host=settings.REDIS_SERVER, port=6379, db=2
)


####################################################################
#
def redis_client() -> redis.Redis:
    """
    Return a redis client using our module level connection pool.
    """
    return redis.StrictRedis(connection_pool=REDIS_CONNECTION_POOL)


####################################################################
#
def utc_now() -> datetime:
    return datetime.now(UTC)
