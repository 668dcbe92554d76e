# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Fixtures and a benchmark driver for delivery targets.

- random_msg: a realistic multipart message with an "around average" body.
- bench_delivery: run the full transaction sequence repeatedly on a target.
- RecordingTarget: in-process target recording every call, with
  configurable rejections and failures.
"""

from __future__ import annotations

import hashlib
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from .buffer import Buffer, MemoryBuffer
from .delivery import Delivery, DeliveryTarget
from .errors import RecipientRejectedError, TargetUnavailableError, TransactionFatalError
from .header import Header
from .metadata import MsgMetadata

# Empirically observed "around average" values.
MESSAGE_BODY_SIZE = 100 * 1024
EXTRA_MESSAGE_HEADER_FIELDS = 10
EXTRA_MESSAGE_HEADER_FIELD_SIZE = 50

TEST_HEADER = (
    "Content-Type: multipart/mixed; boundary=message-boundary\r\n"
    "Date: Sat, 19 Jun 2016 12:00:00 +0900\r\n"
    "From: Mitsuha Miyamizu <mitsuha.miyamizu@example.org>\r\n"
    "Reply-To: Mitsuha Miyamizu <mitsuha.miyamizu+replyto@example.org>\r\n"
    "Message-Id: 42@example.org\r\n"
    "MIME-Version: 1.0\r\n"
    "Content-Transfer-Encoding: 8but\r\n"
    "Subject: Your Name.\r\n"
    "To: Taki Tachibana <taki.tachibana@example.org>\r\n"
    "\r\n"
)

TEST_HEADER_DATES = (
    "Date: Sat, 18 Jun 2016 12:00:00 +0900\r\n"
    "Date: Sat, 19 Jun 2016 12:00:00 +0900\r\n"
    "\r\n"
)

_ALT_HEADER = "Content-Type: multipart/alternative; boundary=b2\r\n\r\n"
_TEXT_PART = "Content-Disposition: inline\r\nContent-Type: text/plain\r\n\r\nWhat's your name?"
_HTML_PART = "Content-Disposition: inline\r\nContent-Type: text/html\r\n\r\n<div>What's <i>your</i> name?</div>"
_ATTACHMENT_PART = (
    "Content-Disposition: attachment; filename=note.txt\r\n"
    "Content-Type: text/plain\r\n"
    "\r\n"
    "My name is Mitsuha."
)

TEST_BODY = (
    "--message-boundary\r\n"
    + _ALT_HEADER
    + "\r\n--b2\r\n" + _TEXT_PART
    + "\r\n--b2\r\n" + _HTML_PART
    + "\r\n--b2--\r\n"
    + "\r\n--message-boundary\r\n" + _ATTACHMENT_PART
    + "\r\n--message-boundary--\r\n"
)

TEST_MAIL = TEST_HEADER + TEST_BODY + "A" * MESSAGE_BODY_SIZE


def random_msg(name: str) -> tuple[MsgMetadata, Header, MemoryBuffer]:
    """Build the benchmark message; the id is derived from ``name``."""
    header, body = Header.parse_bytes(TEST_MAIL.encode())
    for i in range(EXTRA_MESSAGE_HEADER_FIELDS):
        header.add(f"AAAAAAAAAAAA-{i}", "A" * EXTRA_MESSAGE_HEADER_FIELD_SIZE)

    meta = MsgMetadata(id=hashlib.sha1(name.encode()).hexdigest(), dont_trace_sender=True)
    return meta, header, MemoryBuffer(body)


@dataclass
class BenchResult:
    iterations: int
    elapsed: float

    @property
    def per_second(self) -> float:
        return self.iterations / self.elapsed if self.elapsed > 0 else float("inf")


async def bench_delivery(
    target: DeliveryTarget,
    sender: str,
    rcpt_templates: Sequence[str],
    iterations: int,
    *,
    name: str = "bench_delivery",
) -> BenchResult:
    """Deliver the benchmark message ``iterations`` times.

    ``X`` in each recipient template is replaced with the template's index.
    Any error, including a rejected recipient, stops the run.
    """
    meta, header, body = random_msg(name)
    rcpts = [template.replace("X", str(i)) for i, template in enumerate(rcpt_templates)]

    started = time.perf_counter()
    try:
        for _ in range(iterations):
            delivery = await target.start(meta, sender)
            async with delivery:
                for rcpt in rcpts:
                    await delivery.add_rcpt(rcpt)
                await delivery.body(header, body)
                await delivery.commit()
    finally:
        body.remove()
    return BenchResult(iterations=iterations, elapsed=time.perf_counter() - started)


@dataclass
class RecordedMessage:
    msg_meta: MsgMetadata
    mail_from: str
    rcpts: list[str]
    header: Header
    body: bytes


@dataclass
class RecordingTarget:
    """Target that keeps committed messages in memory.

    Attributes:
        reject: Recipients refused with a 550 reply.
        fail_start: Make ``start`` raise TargetUnavailableError.
        fail_body: Make ``body`` raise TransactionFatalError.
        fail_commit: Make ``commit`` raise TransactionFatalError.
        calls: ``(operation, argument)`` log of every call reaching the target.
        messages: Committed messages.
    """

    name: str
    reject: set[str] = field(default_factory=set)
    fail_start: bool = False
    fail_body: bool = False
    fail_commit: bool = False
    calls: list[tuple[str, str | None]] = field(default_factory=list)
    messages: list[RecordedMessage] = field(default_factory=list)

    @classmethod
    def rejecting(cls, name: str, rcpts: Iterable[str]) -> RecordingTarget:
        return cls(name, reject=set(rcpts))

    async def start(self, msg_meta: MsgMetadata, mail_from: str) -> RecordingDelivery:
        self.calls.append(("start", mail_from))
        if self.fail_start:
            raise TargetUnavailableError(self.name, "start failure requested")
        return RecordingDelivery(self, msg_meta, mail_from)

    def operations(self) -> list[str]:
        return [op for op, _ in self.calls]


class RecordingDelivery(Delivery):
    def __init__(self, target: RecordingTarget, msg_meta: MsgMetadata, mail_from: str):
        super().__init__(target.name, msg_meta, mail_from)
        self.target = target
        self._body_bytes: bytes | None = None

    async def _add_rcpt(self, rcpt: str) -> None:
        self.target.calls.append(("add_rcpt", rcpt))
        if rcpt in self.target.reject:
            raise RecipientRejectedError(rcpt, "User unknown", smtp_code=550)

    async def _body(self, header: Header, buffer: Buffer) -> None:
        self.target.calls.append(("body", None))
        if self.target.fail_body:
            raise TransactionFatalError("body failure requested", target=self.target_name)
        with buffer.open() as fp:
            self._body_bytes = fp.read()

    async def _commit(self) -> None:
        self.target.calls.append(("commit", None))
        if self.target.fail_commit:
            raise TransactionFatalError("commit failure requested", target=self.target_name)
        self.target.messages.append(RecordedMessage(
            msg_meta=self.msg_meta,
            mail_from=self.mail_from,
            rcpts=self.recipients,
            header=self.header.copy(),
            body=self._body_bytes or b"",
        ))

    async def _abort(self) -> None:
        self.target.calls.append(("abort", None))
        self._body_bytes = None
