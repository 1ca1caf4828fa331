#!/usr/bin/env python
#
"""
The AsyncIO SMTP Daemon that receives mail for our mailing lists.

Anyone may connect and send to a list. Who they are is established from
SPF, DKIM, and DMARC, not from SMTP AUTH, which we do not support. Each
transaction has exactly one recipient, a list address of the form
`<owner>.<list>@<lists domain>`.

Messages that pass are stored and a delivery event is queued for them. See
`listmail.ingest`.
"""
# system imports
#
import asyncio
import ipaddress
import itertools
import logging
import ssl
import time
from typing import List, Optional

# 3rd party imports
#
import sentry_sdk
from aiosmtpd.controller import Controller
from aiosmtpd.smtp import (
    SMTP,
    Envelope as SMTPEnvelope,
    Session as SMTPSession,
    syntax,
)
from django.conf import settings
from django.core.management.base import BaseCommand
from sentry_sdk.integrations.asyncio import AsyncioIntegration

# Project imports
#
from listmail.authentication import acheck_spf, authenticate_message
from listmail.ingest import ingest_message
from listmail.policy import aresolve_recipient
from listmail.rejections import Rejection, SMTPRejection
from listmail.session import (
    Connection,
    FromSet,
    Init,
    RcptSet,
    ReceivingData,
    get_connection,
    get_transaction,
    require_connection,
    reset_transaction,
    set_connection,
    set_transaction,
)
from listmail.utils import AddressError, normalize_domain, parse_address

SMTP_PORT = 25
LISTEN_HOST = "0.0.0.0"

logger = logging.getLogger("listmail.smtpd")


####################################################################
#
def peer_ip(session: SMTPSession) -> str:
    """
    The connecting client's ip address.

    Raises SMTPRejection(CONNECTION) if the peer is not an ip address.
    """
    peer = session.peer
    addr = peer[0] if isinstance(peer, (tuple, list)) and peer else peer
    try:
        return str(ipaddress.ip_address(addr))
    except (TypeError, ValueError) as exc:
        raise SMTPRejection(
            Rejection.CONNECTION, f"Invalid peer address {peer!r}"
        ) from exc


########################################################################
########################################################################
#
class ListMailSMTP(SMTP):
    """
    We do not support AUTH at all. A sender is who SPF, DKIM, and DMARC say
    they are.
    """

    ####################################################################
    #
    @syntax("AUTH <mechanism>")
    async def smtp_AUTH(self, arg: str) -> None:
        await self.push(str(Rejection.AUTH_UNSUPPORTED))

    # aiosmtpd checks the command order itself, before any handler hook is
    # called, and replies with its own text. Commands out of order get our
    # reply instead.
    #
    ####################################################################
    #
    @syntax("MAIL FROM: <address>", extended=" [SP <mail-parameters>]")
    async def smtp_MAIL(self, arg: Optional[str]) -> None:
        if not self.session.host_name or self.envelope.mail_from:
            await self._out_of_sequence("MAIL")
            return
        await super().smtp_MAIL(arg)

    ####################################################################
    #
    @syntax("RCPT TO: <address>", extended=" [SP <mail-parameters>]")
    async def smtp_RCPT(self, arg: Optional[str]) -> None:
        if not self.session.host_name or not self.envelope.mail_from:
            await self._out_of_sequence("RCPT")
            return
        await super().smtp_RCPT(arg)

    ####################################################################
    #
    @syntax("DATA")
    async def smtp_DATA(self, arg: str) -> None:
        if not self.session.host_name or not self.envelope.rcpt_tos:
            await self._out_of_sequence("DATA")
            return
        await super().smtp_DATA(arg)

    ####################################################################
    #
    async def _out_of_sequence(self, command: str) -> None:
        logger.info("%r: %s out of sequence", self.session.peer, command)
        await self.push(str(Rejection.SEQUENCE))

    ####################################################################
    #
    async def handle_exception(self, error: Exception) -> str:
        """
        Anything we did not expect gets a temporary failure so that the
        sending MTA tries again instead of bouncing the message.
        """
        if isinstance(error, ssl.SSLError) or isinstance(
            error.__cause__, (ssl.SSLError, ConnectionResetError)
        ):
            logger.error(
                "%r SMTP session exception: %s",
                self.session.peer if self.session else None,
                error.__cause__ or error,
            )
        else:
            logger.exception(
                "%r SMTP session exception",
                self.session.peer if self.session else None,
            )
        return str(Rejection.TEMPORARY)


########################################################################
########################################################################
#
class ListMailController(Controller):
    """
    Override the `factory()` method so that it uses our ListMailSMTP
    """

    ####################################################################
    #
    def factory(self):
        return ListMailSMTP(self.handler, **self.SMTP_kwargs)

    ####################################################################
    #
    def _run(self, *args, **kwargs):
        """
        Hook sentry_io's AsyncioIntegration in to our event loop.
        """
        asyncio.set_event_loop(self.loop)
        if settings.SENTRY_DSN is not None:
            sentry_sdk.init(
                dsn=settings.SENTRY_DSN,
                traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
                profiles_sample_rate=settings.SENTRY_PROFILES_SAMPLE_RATE,
                integrations=[
                    AsyncioIntegration(),
                ],
                environment="devel" if settings.DEBUG else "production",
            )
        super()._run(*args, **kwargs)


####################################################################
#
def make_controller(
    handler: "ListMailHandler",
    hostname: str,
    port: int,
    tls_context: Optional[ssl.SSLContext] = None,
) -> ListMailController:
    """
    The controller that serves `handler` on `hostname`:`port`, configured
    the way the list mail daemon runs it.
    """
    return ListMailController(
        handler,
        hostname=hostname,
        server_hostname=settings.SITE_NAME,
        port=port,
        tls_context=tls_context,
        require_starttls=False,
        auth_required=False,
        data_size_limit=settings.LISTMAIL_MAX_MSG_SIZE,
        command_call_limit={"RCPT": 5, "NOOP": 5},
    )


########################################################################
########################################################################
#
class Command(BaseCommand):
    help = (
        "Runs the SMTP daemon that receives mail for our mailing lists. "
        "Senders are authenticated with SPF, DKIM, and DMARC and accepted "
        "messages are queued for delivery to the list."
    )

    ####################################################################
    #
    def add_arguments(self, parser):
        parser.add_argument(
            "--smtp_port",
            type=int,
            action="store",
            default=SMTP_PORT,
        )
        parser.add_argument(
            "--listen_host",
            action="store",
            default=LISTEN_HOST,
        )
        parser.add_argument("--ssl_key", action="store", default=None)
        parser.add_argument("--ssl_cert", action="store", default=None)

    ####################################################################
    #
    def handle(self, *args, **options):
        smtp_port = options["smtp_port"]
        listen_host = options["listen_host"]
        ssl_cert_file = options["ssl_cert"]
        ssl_key_file = options["ssl_key"]

        logger.info(
            "listmail_smtpd: SMTP port: %s, host: '%s', cert: '%s', key: '%s'",
            smtp_port,
            listen_host,
            ssl_cert_file,
            ssl_key_file,
        )

        # If `list_host` contains commas we are going to assume it is a set of
        # ip addressses separated by commas.
        #
        if "," in listen_host:
            listen_host = [x.strip() for x in listen_host.split(",")]

        # STARTTLS is offered only if we were given a certificate.
        #
        tls_context = None
        if ssl_cert_file and ssl_key_file:
            tls_context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
            tls_context.check_hostname = False
            tls_context.load_cert_chain(ssl_cert_file, ssl_key_file)

        handler = ListMailHandler()
        controller = make_controller(
            handler, listen_host, smtp_port, tls_context=tls_context
        )
        logger.info("Starting SMTP controller on port %d", smtp_port)
        controller.start()

        try:
            while True:
                time.sleep(300)
        except KeyboardInterrupt:
            logger.warning("Keyboard interrupt, exiting")
        finally:
            logger.info("Stopping controller")
            controller.stop()


########################################################################
########################################################################
#
class ListMailHandler:
    """
    The aiosmtpd handler. Every hook turns an SMTPRejection in to its reply
    and anything else in to a temporary failure.

    The transaction state lives on the aiosmtpd session, see
    `listmail.session`.
    """

    ####################################################################
    #
    def __init__(self):
        self._request_ids = itertools.count(1)

    ####################################################################
    #
    def next_request_id(self) -> str:
        return f"{settings.LISTMAIL_INSTANCE}-{next(self._request_ids)}"

    ####################################################################
    #
    def _helo(self, session: SMTPSession, hostname: str) -> None:
        connection = get_connection(session)
        source_ip = (
            connection.source_ip if connection is not None else peer_ip(session)
        )
        set_connection(
            session, Connection(source_ip=source_ip, helo=hostname)
        )
        reset_transaction(session)
        # NOTE: aiosmtpd requires us to set session.host_name
        #
        session.host_name = hostname

    ####################################################################
    #
    async def handle_HELO(
        self,
        smtp: SMTP,
        session: SMTPSession,
        envelope: SMTPEnvelope,
        hostname: str,
    ) -> str:
        try:
            self._helo(session, hostname)
        except SMTPRejection as exc:
            logger.info("HELO from %r rejected: %s", session.peer, exc)
            return exc.reply
        return f"250 {smtp.hostname}"

    ####################################################################
    #
    async def handle_EHLO(
        self,
        smtp: SMTP,
        session: SMTPSession,
        envelope: SMTPEnvelope,
        hostname: str,
        responses: List[str],
    ) -> List[str]:
        try:
            self._helo(session, hostname)
        except SMTPRejection as exc:
            logger.info("EHLO from %r rejected: %s", session.peer, exc)
            return [exc.reply]

        # Do not advertise AUTH, we refuse it anyways.
        #
        return [r for r in responses if not r[4:].upper().startswith("AUTH")]

    ####################################################################
    #
    async def handle_MAIL(
        self,
        server: SMTP,
        session: SMTPSession,
        envelope: SMTPEnvelope,
        address: str,
        mail_options: List[str],
    ) -> str:
        """
        Check the envelope sender's SPF record. Any result other than
        pass, neutral, or none ends the transaction here.
        """
        try:
            connection = require_connection(session)
            if not isinstance(get_transaction(session), Init):
                raise SMTPRejection(Rejection.SEQUENCE, "Nested MAIL command")

            try:
                mail_from = parse_address(address)
            except AddressError as exc:
                raise SMTPRejection(Rejection.FROM_ADDRESS, str(exc)) from exc

            spf_verdict = await acheck_spf(
                connection.source_ip, mail_from.addr_spec, connection.helo
            )
            if spf_verdict.rejection is not None:
                raise SMTPRejection(
                    spf_verdict.rejection,
                    f"SPF {spf_verdict.result} for {mail_from.addr_spec} from "
                    f"{connection.source_ip}: {spf_verdict.explanation}",
                )

            set_transaction(
                session,
                FromSet(
                    request_id=self.next_request_id(),
                    mail_from=mail_from.addr_spec,
                    from_domain=normalize_domain(mail_from.domain),
                    spf=spf_verdict,
                ),
            )
        except SMTPRejection as exc:
            logger.info("MAIL FROM %s rejected: %s", address, exc)
            return exc.reply
        except Exception:
            logger.exception("MAIL FROM %s failed", address)
            return str(Rejection.TEMPORARY)

        envelope.mail_from = address
        envelope.mail_options.extend(mail_options)
        return "250 OK"

    ####################################################################
    #
    async def handle_RCPT(
        self,
        server: SMTP,
        session: SMTPSession,
        envelope: SMTPEnvelope,
        address: str,
        rcpt_options: List[str],
    ) -> str:
        """
        Exactly one recipient per transaction, and it has to be one of our
        lists.
        """
        try:
            transaction = get_transaction(session)
            if isinstance(transaction, (RcptSet, ReceivingData)):
                raise SMTPRejection(
                    Rejection.RCPT_COUNT, "Only one recipient per message"
                )
            if not isinstance(transaction, FromSet):
                raise SMTPRejection(Rejection.SEQUENCE, "No MAIL FROM yet")

            recipient = await aresolve_recipient(address)
            set_transaction(
                session, RcptSet(sender=transaction, recipient=recipient)
            )
        except SMTPRejection as exc:
            logger.info("RCPT TO %s rejected: %s", address, exc)
            return exc.reply
        except Exception:
            logger.exception("RCPT TO %s failed", address)
            return str(Rejection.TEMPORARY)

        envelope.rcpt_tos.append(address)
        envelope.rcpt_options.extend(rcpt_options)
        return "250 OK"

    ####################################################################
    #
    async def handle_DATA(
        self, server: SMTP, session: SMTPSession, envelope: SMTPEnvelope
    ) -> str:
        """
        Authenticate the message and hand it to the ingestion pipeline. The
        whole thing is bounded by LISTMAIL_DATA_TIMEOUT. Once we get this far
        the transaction is over and we are back to Init, whatever happens.
        """
        transaction = get_transaction(session)
        if not isinstance(transaction, RcptSet):
            logger.info("DATA from %r out of sequence", session.peer)
            return str(Rejection.SEQUENCE)

        try:
            connection = require_connection(session)
            receiving = ReceivingData(
                sender=transaction.sender, recipient=transaction.recipient
            )
            set_transaction(session, receiving)

            await asyncio.wait_for(
                self._receive(connection, receiving, envelope.original_content),
                timeout=settings.LISTMAIL_DATA_TIMEOUT,
            )
        except SMTPRejection as exc:
            logger.info(
                "DATA from %s to %s rejected: %s",
                envelope.mail_from,
                envelope.rcpt_tos,
                exc,
            )
            return exc.reply
        except Exception:
            logger.exception(
                "DATA from %s to %s failed",
                envelope.mail_from,
                envelope.rcpt_tos,
            )
            return str(Rejection.TEMPORARY_EXISTS)
        finally:
            reset_transaction(session)

        return "250 OK"

    ####################################################################
    #
    async def _receive(
        self, connection: Connection, receiving: ReceivingData, raw: bytes
    ) -> None:
        message = await authenticate_message(connection, receiving, raw)
        await ingest_message(
            receiving.recipient.list_id, receiving.recipient.list_pk, message
        )

    ####################################################################
    #
    async def handle_RSET(
        self, server: SMTP, session: SMTPSession, envelope: SMTPEnvelope
    ) -> str:
        reset_transaction(session)
        return "250 OK"

    ####################################################################
    #
    async def handle_QUIT(
        self, server: SMTP, session: SMTPSession, envelope: SMTPEnvelope
    ) -> str:
        return "221 Bye"
