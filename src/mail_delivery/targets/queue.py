# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Hand messages over to a delivery queue.

The queue itself (persistence, retry scheduling) lives outside this
package; QueueTarget only needs an object implementing MessageQueue.
MemoryQueue is a bounded in-process implementation.

A committed message keeps its own reference to the body buffer. The
consumer must call ``QueuedMessage.release()`` once it is done with it.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from ..buffer import Buffer
from ..delivery import Delivery
from ..errors import RecipientRejectedError, TargetUnavailableError, TransactionFatalError
from ..header import Header
from ..logger import get_logger
from ..metadata import MsgMetadata


@dataclass
class QueuedMessage:
    """A committed message waiting in a queue."""

    msg_meta: MsgMetadata
    mail_from: str
    rcpts: tuple[str, ...]
    header: Header
    buffer: Buffer
    enqueued_at: float = field(default_factory=time.time)

    def release(self) -> None:
        """Drop the queue's reference to the body buffer."""
        self.buffer.remove()


@runtime_checkable
class MessageQueue(Protocol):
    """Queue collaborator used by QueueTarget."""

    def full(self) -> bool: ...

    async def put(self, message: QueuedMessage) -> None: ...


class MemoryQueue:
    """Bounded in-memory queue of QueuedMessage objects."""

    def __init__(self, max_size: int = 1000):
        self.max_size = max_size
        self._queue: asyncio.Queue[QueuedMessage] = asyncio.Queue(maxsize=max_size)

    def full(self) -> bool:
        return self._queue.full()

    async def put(self, message: QueuedMessage) -> None:
        await self._queue.put(message)

    async def get(self) -> QueuedMessage:
        return await self._queue.get()

    def get_nowait(self) -> QueuedMessage:
        return self._queue.get_nowait()

    def qsize(self) -> int:
        return self._queue.qsize()


class QueueTarget:
    """Deliver by enqueueing the message for later processing.

    Args:
        name: Target name used in logs and status reports.
        queue: MessageQueue receiving committed messages.
        max_recipients: Refuse recipients beyond this count (452, temporary).
        put_timeout: Seconds to wait for queue space at commit.
        logger: Custom logger instance. If None, uses default logger.
    """

    def __init__(
        self,
        name: str,
        queue: MessageQueue | None = None,
        *,
        max_recipients: int | None = None,
        put_timeout: float = 5.0,
        logger=None,
    ):
        self.name = name
        self.queue = queue if queue is not None else MemoryQueue()
        self.max_recipients = max_recipients
        self.put_timeout = put_timeout
        self.logger = logger or get_logger()

    async def start(self, msg_meta: MsgMetadata, mail_from: str) -> QueueDelivery:
        if self.queue.full():
            raise TargetUnavailableError(self.name, "Queue is full")
        return QueueDelivery(self, msg_meta, mail_from, logger=self.logger)


class QueueDelivery(Delivery):
    def __init__(self, target: QueueTarget, msg_meta: MsgMetadata, mail_from: str, *, logger=None):
        super().__init__(target.name, msg_meta, mail_from, logger=logger)
        self.target = target

    async def _add_rcpt(self, rcpt: str) -> None:
        limit = self.target.max_recipients
        if limit is not None and len(self.recipients) >= limit:
            raise RecipientRejectedError(rcpt, "Too many recipients", smtp_code=452, temporary=True)

    async def _commit(self) -> None:
        message = QueuedMessage(
            msg_meta=self.msg_meta,
            mail_from=self.mail_from,
            rcpts=tuple(self.recipients),
            header=self.header.copy(),
            buffer=self.buffer.retain(),
        )
        try:
            await asyncio.wait_for(self.target.queue.put(message), timeout=self.target.put_timeout)
        except asyncio.TimeoutError:
            message.release()
            raise TransactionFatalError("Timed out while enqueuing message", target=self.target_name) from None
        except BaseException:
            message.release()
            raise
        self.logger.debug("Queued msg %s for %d recipient(s)", self.msg_meta.id, len(message.rcpts))
