#!/usr/bin/env python
#
"""
TXT record lookups for SPF, DKIM, and DMARC.

Results (including "there is no such record") are cached in redis for a
short while so that a burst of mail from the same domain does not turn in to
a burst of DNS queries.
"""
# system imports
#
import json
import logging
from typing import List

# 3rd party imports
#
import dns.exception
import dns.resolver
from django.conf import settings

# Project imports
#
from .utils import normalize_domain, redis_client

logger = logging.getLogger("listmail.resolver")

CACHE_KEY_PREFIX = "listmail:txt:"


########################################################################
########################################################################
#
class LookupNotFound(Exception):
    """
    The domain does not exist or has no TXT records.
    """

    pass


########################################################################
########################################################################
#
class LookupTempError(Exception):
    """
    The lookup failed in a way that may succeed if tried again later.
    """

    pass


####################################################################
#
def _resolver() -> dns.resolver.Resolver:
    resolver = dns.resolver.Resolver()
    resolver.lifetime = settings.LISTMAIL_DNS_TIMEOUT
    return resolver


####################################################################
#
def _query_txt(domain: str) -> List[str]:
    try:
        answer = _resolver().resolve(domain, "TXT")
    except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer) as exc:
        raise LookupNotFound(domain) from exc
    except dns.exception.DNSException as exc:
        logger.info("TXT lookup for '%s' failed: %r", domain, exc)
        raise LookupTempError(domain) from exc

    # A single TXT record can be split in to several strings. They are
    # joined without any separator.
    #
    return [
        b"".join(rdata.strings).decode("utf-8", errors="replace")
        for rdata in answer
    ]


####################################################################
#
def lookup_txt(domain: str) -> List[str]:
    """
    Return the TXT records for `domain`.

    Raises LookupNotFound if there are none, LookupTempError if DNS could
    not give us an answer. Temporary failures are not cached.
    """
    domain = normalize_domain(domain)
    key = f"{CACHE_KEY_PREFIX}{domain}"
    r = redis_client()

    cached = r.get(key)
    if cached is not None:
        records = json.loads(cached)
        if records is None:
            raise LookupNotFound(domain)
        return records

    try:
        records = _query_txt(domain)
    except LookupNotFound:
        r.set(key, json.dumps(None), ex=settings.LISTMAIL_DNS_CACHE_TTL)
        raise

    r.set(key, json.dumps(records), ex=settings.LISTMAIL_DNS_CACHE_TTL)
    return records
