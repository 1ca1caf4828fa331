#!/usr/bin/env python
#
"""
SPF, DKIM, and DMARC checks for mail sent to our lists.

SPF is checked once, against the envelope sender, when we get MAIL FROM.
Everything else happens once the whole message has been received: the
From: header has to line up with the envelope sender, the sender has to be
one of our users who is allowed to post to the list, and the message has to
satisfy whatever DMARC policy the From: domain publishes.

A message that passes gets `Authentication-Results`, `Received-SPF`, and
`Received` headers prepended to it before it is stored.
"""
# system imports
#
import email
import email.message
import email.policy
import logging
import re
from datetime import datetime
from email.errors import HeaderParseError
from email.utils import format_datetime
from enum import StrEnum
from typing import TYPE_CHECKING, List, Optional

# 3rd party imports
#
import dkim
import dkim.util
import spf
from asgiref.sync import sync_to_async
from django.conf import settings
from pydantic import BaseModel, ConfigDict

# Project imports
#
from .identity import aget_user_by_email
from .models import ListMessage, User
from .policy import check_sender_policy
from .rejections import Rejection, SMTPRejection
from .resolver import LookupNotFound, LookupTempError, lookup_txt
from .utils import (
    is_aligned,
    normalize_domain,
    parse_msgid_list,
    strip_msgid,
    utc_now,
)

if TYPE_CHECKING:
    from .session import Connection, ReceivingData

logger = logging.getLogger("listmail.authentication")

DMARC_POLICIES = ("none", "quarantine", "reject")
DMARC_RECORD_RE = re.compile(r"^\s*v\s*=\s*dmarc1\s*(;|$)", re.IGNORECASE)


########################################################################
########################################################################
#
class AuthResult(StrEnum):
    """
    The result values used in Authentication-Results (RFC 8601)
    """

    PASS = "pass"
    NEUTRAL = "neutral"
    NONE = "none"
    FAIL = "fail"
    SOFTFAIL = "softfail"
    TEMPERROR = "temperror"
    PERMERROR = "permerror"


# SPF results that abort the transaction at MAIL FROM
#
SPF_REJECTIONS = {
    AuthResult.FAIL: Rejection.SPF_FAIL,
    AuthResult.SOFTFAIL: Rejection.SPF_FAIL,
    AuthResult.TEMPERROR: Rejection.SPF_TEMP,
    AuthResult.PERMERROR: Rejection.SPF_PERM,
}

# Older versions of pyspf use these names for temperror/permerror
#
_LEGACY_SPF_RESULTS = {
    "error": AuthResult.TEMPERROR,
    "unknown": AuthResult.PERMERROR,
    "ambiguous": AuthResult.PERMERROR,
}


########################################################################
########################################################################
#
class SPFVerdict(BaseModel):
    model_config = ConfigDict(frozen=True)

    result: AuthResult
    domain: str
    explanation: str = ""

    ####################################################################
    #
    @property
    def rejection(self) -> Optional[Rejection]:
        return SPF_REJECTIONS.get(self.result)


####################################################################
#
def check_spf(source_ip: str, mail_from: str, helo: str) -> SPFVerdict:
    """
    Evaluate the SPF policy of the envelope sender's domain for the
    connecting ip address.

    NOTE: This checks the RFC 5321 MailFrom identity only. The From: header
          is checked against it in `authenticate_message()`.
    """
    domain = normalize_domain(mail_from.rsplit("@", 1)[-1])
    result, explanation = spf.check2(
        i=source_ip,
        s=mail_from,
        h=helo,
        timeout=settings.LISTMAIL_DNS_TIMEOUT,
    )
    result = result.lower()
    try:
        verdict = AuthResult(result)
    except ValueError:
        verdict = _LEGACY_SPF_RESULTS.get(result, AuthResult.PERMERROR)
    logger.debug(
        "check_spf: %s from %s (helo %s): %s (%s)",
        mail_from,
        source_ip,
        helo,
        verdict,
        explanation,
    )
    return SPFVerdict(result=verdict, domain=domain, explanation=explanation)


####################################################################
#
async def acheck_spf(source_ip: str, mail_from: str, helo: str) -> SPFVerdict:
    # pyspf does blocking DNS queries. Do not tie up the thread the ORM uses.
    #
    return await sync_to_async(check_spf, thread_sensitive=False)(
        source_ip, mail_from, helo
    )


########################################################################
########################################################################
#
class DMARCNoPolicy(Exception):
    pass


########################################################################
########################################################################
#
class DMARCTempError(Exception):
    pass


########################################################################
########################################################################
#
class DMARCPermError(Exception):
    pass


########################################################################
########################################################################
#
class DMARCRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    policy: str
    spf_alignment: str = "r"
    dkim_alignment: str = "r"

    ####################################################################
    #
    @property
    def strict_spf(self) -> bool:
        return self.spf_alignment == "s"

    ####################################################################
    #
    @property
    def strict_dkim(self) -> bool:
        return self.dkim_alignment == "s"


####################################################################
#
def parse_dmarc_record(record: str) -> DMARCRecord:
    """
    Parse a `v=DMARC1; p=...` TXT record. We only care about the policy and
    the two alignment modes. Tag names and the version are matched without
    regard to case, the same as when we pick the record out of the TXT
    records for the domain.

    Raises DMARCPermError if the record is not valid.
    """
    tags = {}
    for part in record.split(";"):
        part = part.strip()
        if not part:
            continue
        if "=" not in part:
            raise DMARCPermError(f"Malformed DMARC tag '{part}'")
        tag, value = part.split("=", 1)
        tags[tag.strip().lower()] = value.strip()

    if tags.get("v", "").upper() != "DMARC1":
        raise DMARCPermError(f"Not a DMARC1 record: '{record}'")

    # A record with no policy but somewhere to send reports is a domain
    # asking for reports only. That is p=none.
    #
    if "p" not in tags and tags.get("rua"):
        tags["p"] = "none"
    policy = tags.get("p", "").lower()
    if policy not in DMARC_POLICIES:
        raise DMARCPermError(f"Invalid DMARC policy '{policy}'")

    aspf = tags.get("aspf", "r").lower()
    adkim = tags.get("adkim", "r").lower()
    for mode in (aspf, adkim):
        if mode not in ("r", "s"):
            raise DMARCPermError(f"Invalid DMARC alignment mode '{mode}'")

    return DMARCRecord(policy=policy, spf_alignment=aspf, dkim_alignment=adkim)


####################################################################
#
def lookup_dmarc(domain: str) -> DMARCRecord:
    """
    Raises DMARCNoPolicy if the domain publishes no DMARC record,
    DMARCTempError if DNS failed, and DMARCPermError if the record is
    broken.
    """
    try:
        records = lookup_txt(f"_dmarc.{normalize_domain(domain)}")
    except LookupNotFound as exc:
        raise DMARCNoPolicy(domain) from exc
    except LookupTempError as exc:
        raise DMARCTempError(domain) from exc

    records = [r for r in records if DMARC_RECORD_RE.match(r)]
    if not records:
        raise DMARCNoPolicy(domain)
    if len(records) > 1:
        raise DMARCPermError(f"Multiple DMARC records for '{domain}'")
    return parse_dmarc_record(records[0])


########################################################################
########################################################################
#
class DKIMSignatureResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    result: AuthResult
    domain: str = ""
    identifier: str = ""
    reason: str = ""


####################################################################
#
def _dkim_dnsfunc(name, timeout=5) -> bytes:
    """
    dkimpy calls this to fetch `<selector>._domainkey.<domain>`. Our
    lookup exceptions are allowed to escape so that `verify_dkim()` can
    tell a missing key from a DNS failure.
    """
    if isinstance(name, bytes):
        name = name.decode("ascii", errors="replace")
    records = lookup_txt(name)
    if not records:
        raise LookupNotFound(name)
    for record in records:
        if "p=" in record:
            return record.encode("ascii", errors="replace")
    return records[0].encode("ascii", errors="replace")


####################################################################
#
def _signature_tags(signature: bytes) -> dict:
    try:
        return dkim.util.parse_tag_value(signature)
    except (dkim.util.InvalidTagValueList, dkim.DKIMException, ValueError):
        return {}


####################################################################
#
def verify_dkim(raw: bytes) -> List[DKIMSignatureResult]:
    """
    Verify every DKIM-Signature on the message.

    Returns one result per signature, an empty list if the message is not
    signed, or a single `neutral` result if the message could not be
    processed at all.
    """
    try:
        verifier = dkim.DKIM(raw)
    except dkim.DKIMException as exc:
        logger.info("Unable to process message for DKIM: %s", exc)
        return [
            DKIMSignatureResult(
                result=AuthResult.NEUTRAL,
                reason="failed processing dkim signature",
            )
        ]

    signatures = [
        value
        for name, value in verifier.headers
        if name.lower() == b"dkim-signature"
    ]

    results = []
    for idx, signature in enumerate(signatures):
        tags = _signature_tags(signature)
        domain = normalize_domain(
            tags.get(b"d", b"").decode("ascii", errors="replace")
        )
        identifier = (
            tags.get(b"i", b"").decode("ascii", errors="replace").strip()
        )
        reason = ""
        try:
            result = (
                AuthResult.PASS
                if verifier.verify(idx=idx, dnsfunc=_dkim_dnsfunc)
                else AuthResult.FAIL
            )
        except LookupTempError:
            result = AuthResult.TEMPERROR
            reason = "key lookup failed"
        except LookupNotFound:
            result = AuthResult.PERMERROR
            reason = "no key for signature"
        except dkim.ValidationError as exc:
            result = AuthResult.FAIL
            reason = str(exc)
        except dkim.DKIMException as exc:
            result = AuthResult.PERMERROR
            reason = str(exc)
        results.append(
            DKIMSignatureResult(
                result=result,
                domain=domain,
                identifier=identifier,
                reason=reason,
            )
        )
    return results


########################################################################
########################################################################
#
class DMARCVerdict(BaseModel):
    model_config = ConfigDict(frozen=True)

    result: AuthResult
    domain: str
    policy: Optional[str] = None


####################################################################
#
def _quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


####################################################################
#
def format_authentication_results(
    authserv_id: str,
    mail_from: str,
    spf_verdict: SPFVerdict,
    dkim_results: List[DKIMSignatureResult],
    dmarc: DMARCVerdict,
) -> str:
    """
    Format the value of an RFC 8601 Authentication-Results header.
    """
    results = []

    spf_result = f"spf={spf_verdict.result}"
    if spf_verdict.result != AuthResult.NONE and spf_verdict.explanation:
        spf_result += f" reason={_quote(spf_verdict.explanation)}"
    results.append(f"{spf_result} smtp.mailfrom={mail_from}")

    if not dkim_results:
        results.append(f"dkim={AuthResult.NONE}")
    for dkim_result in dkim_results:
        entry = f"dkim={dkim_result.result}"
        if dkim_result.reason:
            entry += f" reason={_quote(dkim_result.reason)}"
        if dkim_result.domain:
            entry += f" header.d={dkim_result.domain}"
        if dkim_result.identifier:
            entry += f" header.i={dkim_result.identifier}"
        results.append(entry)

    dmarc_result = f"dmarc={dmarc.result}"
    if dmarc.policy:
        dmarc_result += f" reason={_quote('p=' + dmarc.policy)}"
    results.append(f"{dmarc_result} header.from={dmarc.domain}")

    return ";\r\n\t".join([authserv_id] + results)


####################################################################
#
def format_received_spf(
    spf_verdict: SPFVerdict, source_ip: str, mail_from: str, helo: str
) -> str:
    """
    Format the value of an RFC 7208 Received-SPF header.
    """
    comment = spf_verdict.domain
    if spf_verdict.explanation:
        comment += f": {spf_verdict.explanation}"
    comment = comment.replace("(", "[").replace(")", "]")
    return (
        f"{spf_verdict.result} ({comment})\r\n\t"
        f"client-ip={source_ip}; envelope-from={_quote(mail_from)}; "
        f"helo={helo};"
    )


####################################################################
#
def format_received(
    helo: str,
    source_ip: str,
    request_id: str,
    rcpt_to: str,
    when: Optional[datetime] = None,
) -> str:
    when = when if when is not None else utc_now()
    return (
        f"from {helo} ({helo} [{source_ip}])\r\n\t"
        f"by {settings.LISTMAIL_AUTH_DOMAIN} ({settings.LISTMAIL_INSTANCE}) "
        f"with ESMTP id {request_id}\r\n\t"
        f"for <{rcpt_to}>; {format_datetime(when)}"
    )


####################################################################
#
def prepend_headers(raw: bytes, headers: List[tuple]) -> bytes:
    """
    Add trace headers to the top of the message without re-serializing it,
    so the signed content stays byte for byte what the sender gave us.
    """
    lines = [f"{name}: {value}\r\n" for name, value in headers]
    return "".join(lines).encode("utf-8") + raw


########################################################################
########################################################################
#
class AuthenticatedMessage(BaseModel):
    """
    What the ingestion pipeline needs to know about a message that passed
    authentication.
    """

    model_config = ConfigDict(frozen=True)

    msg_id: str
    content_type: str
    sender_id: int
    subject: str = ""
    in_reply_to: str = ""
    spf_pass: str = ""
    dkim_pass: str = ""
    authentication_results: str = ""
    content: bytes


####################################################################
#
def _from_addresses(msg: email.message.EmailMessage) -> list:
    addresses = []
    for header in msg.get_all("From", []):
        addresses.extend(getattr(header, "addresses", ()))
    return addresses


####################################################################
#
async def authenticate_message(
    connection: "Connection", transaction: "ReceivingData", raw: bytes
) -> AuthenticatedMessage:
    """
    Run the DATA phase checks on a received message. Raises SMTPRejection
    at the first check that fails. Returns the message with our trace
    headers added if it passes.
    """
    envelope = transaction.sender
    recipient = transaction.recipient

    # Message-ID, Content-Type, and exactly one From: address are required.
    #
    msg = email.message_from_bytes(raw, policy=email.policy.default)
    try:
        msg_id = strip_msgid(msg.get("Message-ID"))
        has_content_type = msg.get("Content-Type") is not None
        content_type = msg.get_content_type()
        from_addresses = _from_addresses(msg)
        subject = str(msg.get("Subject", "") or "")
        in_reply_to = parse_msgid_list(msg.get("In-Reply-To"))
    except (HeaderParseError, IndexError, ValueError) as exc:
        raise SMTPRejection(
            Rejection.MAIL_BODY, f"Unable to parse message headers: {exc}"
        ) from exc

    if not msg_id or len(msg_id) > ListMessage.MAX_MSGID_LENGTH:
        raise SMTPRejection(Rejection.MAIL_BODY, "Missing or invalid Message-ID")
    if not has_content_type:
        raise SMTPRejection(Rejection.MAIL_BODY, "Missing Content-Type")
    if not from_addresses:
        raise SMTPRejection(Rejection.MAIL_BODY, "Missing From")
    if len(from_addresses) != 1:
        raise SMTPRejection(
            Rejection.SPF_ALIGNMENT, "More than one From address"
        )
    from_address = from_addresses[0]
    if not from_address.username or not from_address.domain:
        raise SMTPRejection(
            Rejection.MAIL_BODY, f"Invalid From address '{from_address}'"
        )
    from_addr = from_address.addr_spec
    from_domain = normalize_domain(from_address.domain)

    # The From: header has to be in the envelope sender's domain (or a
    # parent or child of it.)
    #
    if not is_aligned(envelope.from_domain, from_domain):
        raise SMTPRejection(
            Rejection.SPF_ALIGNMENT,
            f"From '{from_addr}' not aligned with envelope '{envelope.mail_from}'",
        )

    try:
        sender = await aget_user_by_email(from_addr)
    except User.DoesNotExist as exc:
        raise SMTPRejection(
            Rejection.AUTH_SEND, f"'{from_addr}' is not a registered user"
        ) from exc

    await check_sender_policy(recipient, sender)

    # DMARC. A domain without a DMARC record gets relaxed alignment.
    #
    dmarc_record = None
    dmarc_error = None
    try:
        dmarc_record = await sync_to_async(
            lookup_dmarc, thread_sensitive=False
        )(from_domain)
    except DMARCNoPolicy:
        dmarc_error = AuthResult.NONE
    except DMARCTempError:
        dmarc_error = AuthResult.TEMPERROR
    except DMARCPermError as exc:
        logger.info("Bad DMARC record for '%s': %s", from_domain, exc)
        dmarc_error = AuthResult.PERMERROR

    spf_aligned = envelope.spf.result == AuthResult.PASS
    if dmarc_record is not None and dmarc_record.strict_spf:
        spf_aligned = spf_aligned and envelope.from_domain == from_domain

    dkim_results = await sync_to_async(verify_dkim, thread_sensitive=False)(
        raw
    )
    strict_dkim = dmarc_record is not None and dmarc_record.strict_dkim
    aligned_dkim = None
    for dkim_result in dkim_results:
        if dkim_result.result != AuthResult.PASS:
            continue
        if strict_dkim:
            aligned = dkim_result.domain == from_domain
        else:
            aligned = is_aligned(dkim_result.domain, from_domain)
        if aligned:
            aligned_dkim = dkim_result
            break

    if dmarc_record is None:
        dmarc = DMARCVerdict(result=dmarc_error, domain=from_domain)
    else:
        dmarc_result = AuthResult.PASS
        if not spf_aligned and aligned_dkim is None:
            if dmarc_record.policy != "none":
                raise SMTPRejection(
                    Rejection.DMARC_POLICY,
                    f"'{from_domain}' p={dmarc_record.policy}, neither SPF "
                    "nor DKIM aligned",
                )
            logger.info(
                "Message %s from %s fails DMARC alignment, no policy enforced",
                msg_id,
                from_addr,
            )
            dmarc_result = AuthResult.FAIL
        dmarc = DMARCVerdict(
            result=dmarc_result, domain=from_domain, policy=dmarc_record.policy
        )

    authentication_results = format_authentication_results(
        settings.LISTMAIL_AUTH_DOMAIN,
        envelope.mail_from,
        envelope.spf,
        dkim_results,
        dmarc,
    )
    content = prepend_headers(
        raw,
        [
            (
                "Received",
                format_received(
                    connection.helo,
                    connection.source_ip,
                    envelope.request_id,
                    recipient.rcpt_to,
                ),
            ),
            (
                "Received-SPF",
                format_received_spf(
                    envelope.spf,
                    connection.source_ip,
                    envelope.mail_from,
                    connection.helo,
                ),
            ),
            ("Authentication-Results", authentication_results),
        ],
    )

    return AuthenticatedMessage(
        msg_id=msg_id,
        content_type=content_type,
        sender_id=sender.pk,
        subject=subject,
        in_reply_to=in_reply_to[0] if len(in_reply_to) == 1 else "",
        spf_pass=envelope.from_domain if spf_aligned else "",
        dkim_pass=aligned_dkim.domain if aligned_dkim is not None else "",
        authentication_results=authentication_results,
        content=content,
    )
