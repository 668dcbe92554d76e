# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Relay messages to an upstream SMTP server.

Each transaction owns one SMTP session:

- ``start()``: connect, authenticate if configured, MAIL FROM.
- ``add_rcpt()``: RCPT TO; a refusal becomes RecipientRejectedError with the
  server's reply code (4xx replies are temporary).
- ``withdraw_rcpt()``: RSET, MAIL FROM and RCPT TO for the kept recipients.
- ``commit()``: DATA with a ``Received:`` trace field in front of the header,
  then QUIT. The message is held in memory while DATA is sent.
- ``abort()``: RSET and QUIT, or a plain close if the session is broken.

The header handed to ``body()`` is never modified; the trace field is
rendered separately.
"""

from __future__ import annotations

import asyncio
import socket
from collections.abc import Callable
from datetime import datetime, timezone
from email.utils import format_datetime

import aiosmtplib

from ..delivery import Delivery
from ..errors import RecipientRejectedError, TargetUnavailableError, TransactionFatalError
from ..logger import get_logger
from ..metadata import MsgMetadata


class SMTPRelayTarget:
    """Forward messages to ``host:port`` over SMTP.

    Args:
        name: Target name used in logs and status reports.
        host: Upstream SMTP server hostname.
        port: Upstream SMTP server port.
        user: Username for SMTP AUTH, if any.
        password: Password for SMTP AUTH, if any.
        use_tls: Connect with implicit TLS (port 465 style).
        start_tls: Upgrade with STARTTLS. None lets aiosmtplib decide.
        timeout: Timeout in seconds for each SMTP command.
        local_hostname: Name used in EHLO and in the Received field.
        smtp_factory: Callable building the SMTP client; defaults to aiosmtplib.SMTP.
        logger: Custom logger instance. If None, uses default logger.
    """

    def __init__(
        self,
        name: str,
        host: str,
        port: int = 25,
        *,
        user: str | None = None,
        password: str | None = None,
        use_tls: bool = False,
        start_tls: bool | None = False,
        timeout: float = 30.0,
        local_hostname: str | None = None,
        smtp_factory: Callable[..., aiosmtplib.SMTP] | None = None,
        logger=None,
    ):
        self.name = name
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.use_tls = use_tls
        self.start_tls = start_tls
        self.timeout = timeout
        self.local_hostname = local_hostname or socket.getfqdn()
        self.smtp_factory = smtp_factory or aiosmtplib.SMTP
        self.logger = logger or get_logger()

    async def start(self, msg_meta: MsgMetadata, mail_from: str) -> RelayDelivery:
        smtp = self.smtp_factory(
            hostname=self.host,
            port=self.port,
            use_tls=self.use_tls,
            start_tls=self.start_tls,
            timeout=self.timeout,
            local_hostname=self.local_hostname,
        )
        try:
            await smtp.connect()
            if self.user and self.password:
                await smtp.login(self.user, self.password)
            await smtp.mail(mail_from)
        except asyncio.CancelledError:
            smtp.close()
            raise
        except aiosmtplib.SMTPResponseException as exc:
            smtp.close()
            raise TargetUnavailableError(
                self.name, f"{exc.code} {exc.message}", temporary=400 <= exc.code < 500
            ) from exc
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as exc:
            smtp.close()
            raise TargetUnavailableError(self.name, f"Cannot reach {self.host}:{self.port}: {exc}") from exc

        self.logger.debug("Opened relay session to %s:%s for msg %s", self.host, self.port, msg_meta.id)
        return RelayDelivery(self, smtp, msg_meta, mail_from, logger=self.logger)

    def __repr__(self) -> str:
        return f"<SMTPRelayTarget {self.name} {self.host}:{self.port}>"


class RelayDelivery(Delivery):
    def __init__(self, target: SMTPRelayTarget, smtp: aiosmtplib.SMTP, msg_meta: MsgMetadata,
                 mail_from: str, *, logger=None):
        super().__init__(target.name, msg_meta, mail_from, logger=logger)
        self.target = target
        self.smtp = smtp

    async def _add_rcpt(self, rcpt: str) -> None:
        try:
            await self.smtp.rcpt(rcpt)
        except aiosmtplib.SMTPRecipientRefused as exc:
            raise RecipientRejectedError(
                rcpt, exc.message, smtp_code=exc.code, temporary=400 <= exc.code < 500
            ) from exc

    async def _withdraw_rcpt(self, rcpt: str) -> None:
        # SMTP has no way to drop a single RCPT: restart the envelope.
        await self.smtp.rset()
        await self.smtp.mail(self.mail_from)
        for kept in self.recipients:
            try:
                await self.smtp.rcpt(kept)
            except aiosmtplib.SMTPRecipientRefused as exc:
                raise TransactionFatalError(
                    f"{kept} refused on envelope replay: {exc.code} {exc.message}", target=self.target_name
                ) from exc

    def trace_field(self) -> str:
        """Value of the Received field added in front of the relayed header."""
        meta = self.msg_meta
        parts = []
        if meta.src_hostname and not meta.dont_trace_sender:
            parts.append(f"from {meta.src_hostname}")
        parts.append(f"by {self.target.local_hostname}")
        parts.append(f"with {meta.src_proto or 'ESMTP'}")
        parts.append(f"id {meta.id}")
        return " ".join(parts) + "; " + format_datetime(datetime.now(timezone.utc))

    def _render(self) -> bytes:
        """Build the DATA payload.

        aiosmtplib sends DATA from one bytes object, so the whole body is
        read into memory here, spooled FileBuffer bodies included.
        """
        with self.buffer.open() as fp:
            body = fp.read()
        return f"Received: {self.trace_field()}\r\n".encode() + self.header.to_bytes() + body

    async def _commit(self) -> None:
        message = await asyncio.to_thread(self._render)
        try:
            await self.smtp.data(message)
        except aiosmtplib.SMTPResponseException as exc:
            raise TransactionFatalError(
                f"{exc.code} {exc.message}", target=self.target_name, temporary=400 <= exc.code < 500
            ) from exc
        self.logger.debug("Relayed msg %s to %s:%s", self.msg_meta.id, self.target.host, self.target.port)
        try:
            await self.smtp.quit()
        except aiosmtplib.SMTPException as exc:
            # DATA was accepted; a failed QUIT does not undo the delivery.
            self.logger.debug("QUIT after relaying msg %s failed: %s", self.msg_meta.id, exc)
            self.smtp.close()

    async def _abort(self) -> None:
        if not self.smtp.is_connected:
            return
        try:
            await self.smtp.rset()
            await self.smtp.quit()
        except (aiosmtplib.SMTPException, OSError) as exc:
            self.logger.debug("Closing relay session for msg %s after error: %s", self.msg_meta.id, exc)
            self.smtp.close()
