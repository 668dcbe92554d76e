# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Helpers for the layer that drives deliveries.

- read_message: split a raw RFC 5322 stream into Header and Buffer.
- deliver: run one complete transaction against a target.

Example::

    factory = BufferFactory(config.buffer)
    with open("message.eml", "rb") as fp:
        header, buffer = await read_message(fp, factory)
    try:
        status = await deliver(registry.get("local"), MsgMetadata.new(),
                               "alice@example.org", ["bob@example.org"], header, buffer)
    finally:
        buffer.remove()
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import BinaryIO

from .buffer import Buffer, BufferFactory
from .delivery import DeliveryTarget
from .errors import PartialCommitError, RecipientRejectedError
from .header import Header
from .logger import get_logger
from .metadata import MsgMetadata
from .status import StatusCollector


async def read_message(
    stream: BinaryIO, factory: BufferFactory, size_hint: int | None = None
) -> tuple[Header, Buffer]:
    """Parse the header from ``stream`` and buffer the remaining body.

    Raises:
        MalformedHeaderError: If the header cannot be parsed.
        ResourceError: If the body cannot be stored.
    """
    header = Header.parse(stream)
    buffer = await factory.create(stream, size_hint=size_hint)
    return header, buffer


async def deliver(
    target: DeliveryTarget,
    msg_meta: MsgMetadata,
    mail_from: str,
    rcpts: Iterable[str],
    header: Header,
    buffer: Buffer,
    *,
    status: StatusCollector | None = None,
    metrics=None,
    log_activity: bool = False,
    logger=None,
) -> StatusCollector:
    """Run Start, AddRcpt for each recipient, Body and Commit on ``target``.

    Rejected recipients are recorded in the returned StatusCollector and do
    not stop the delivery. The caller keeps its own reference to ``buffer``.

    Raises:
        TargetUnavailableError: ``start`` failed.
        TransactionFatalError: ``body`` or ``commit`` failed; nothing was delivered.
        PartialCommitError: Only some fan-out members committed.
        ResourceError: The body could not be read.
    """
    logger = logger or get_logger()
    status = status if status is not None else StatusCollector()

    delivery = await target.start(msg_meta, mail_from)
    if metrics is not None:
        metrics.active.inc()
    outcome = "failed"
    try:
        async with delivery:
            for rcpt in rcpts:
                try:
                    await delivery.add_rcpt(rcpt)
                except RecipientRejectedError as exc:
                    status.set_status(rcpt, exc)
                else:
                    status.set_status(rcpt, None)
                if metrics is not None:
                    metrics.inc_recipient(target.name, status.outcome(rcpt) is None)

            await delivery.body(header, buffer)
            await delivery.commit()
            outcome = "committed"
    except PartialCommitError:
        outcome = "partial"
        raise
    finally:
        if metrics is not None:
            metrics.active.dec()
            metrics.inc_transaction(target.name, outcome)

    if log_activity:
        logger.info("Delivered msg %s via %s: %d accepted, %d rejected",
                    msg_meta.id, target.name, len(status.accepted()), len(status.rejected()))
    return status
