# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Delivery transactions and the target contract.

A DeliveryTarget opens one Delivery per message via ``start()``. The
Delivery is an explicit state machine::

    OPEN -> RECIPIENTS_ADDED -> BODY_ATTACHED -> COMMITTED | ABORTED

driven by exactly this call sequence::

    delivery = await target.start(msg_meta, mail_from)
    async with delivery:
        for rcpt in rcpts:
            try:
                await delivery.add_rcpt(rcpt)
            except RecipientRejectedError as exc:
                status.set_status(rcpt, exc)
        await delivery.body(header, buffer)
        await delivery.commit()

Out-of-order calls raise SequenceError. A rejected recipient leaves the
transaction usable. Failures in ``body`` or ``commit`` abort the transaction
and raise TransactionFatalError. If the driving task is cancelled during
any call, the target's abort logic runs, resources are released and the
transaction ends ABORTED before the cancellation propagates.

Targets subclass Delivery and override the ``_add_rcpt``, ``_body``,
``_commit`` and ``_abort`` hooks; the public methods own the state checks.
``withdraw_rcpt`` (hook ``_withdraw_rcpt``) takes back an accepted
recipient before ``body``; composite targets use it when the combined
outcome rejects a recipient some member accepted.

Policy for transactions with no accepted recipients: ``body`` is accepted,
``commit`` aborts and raises TransactionFatalError.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from enum import Enum
from typing import Protocol, runtime_checkable

from .buffer import Buffer
from .errors import (
    PartialCommitError,
    RecipientRejectedError,
    ResourceError,
    SequenceError,
    TransactionFatalError,
)
from .header import Header
from .logger import get_logger
from .metadata import MsgMetadata


class DeliveryState(str, Enum):
    OPEN = "open"
    RECIPIENTS_ADDED = "recipients_added"
    BODY_ATTACHED = "body_attached"
    COMMITTED = "committed"
    ABORTED = "aborted"

    @property
    def terminal(self) -> bool:
        return self in (DeliveryState.COMMITTED, DeliveryState.ABORTED)


_BEFORE_BODY = (DeliveryState.OPEN, DeliveryState.RECIPIENTS_ADDED)


class Delivery:
    """Base class for one delivery transaction.

    Attributes:
        target_name: Name of the target that opened the transaction.
        msg_meta: Metadata of the message being delivered.
        mail_from: Envelope sender.
        state: Current DeliveryState.
        header: Header attached by ``body()``, None before.
        buffer: Buffer attached by ``body()``, None before and after release.
    """

    def __init__(self, target_name: str, msg_meta: MsgMetadata, mail_from: str, *, logger=None):
        self.target_name = target_name
        self.msg_meta = msg_meta
        self.mail_from = mail_from
        self.state = DeliveryState.OPEN
        self.header: Header | None = None
        self.buffer: Buffer | None = None
        self.logger = logger or get_logger()
        self._rcpts: dict[str, None] = {}

    @property
    def recipients(self) -> list[str]:
        """Accepted recipients, in the order they were added."""
        return list(self._rcpts)

    # -------------------------------------------------------------------------
    # Public protocol
    # -------------------------------------------------------------------------

    async def add_rcpt(self, rcpt: str) -> None:
        """Register one recipient.

        Raises:
            RecipientRejectedError: The target refused this recipient. The
                transaction stays usable.
            TransactionFatalError: The target failed; the transaction is aborted.
            SequenceError: Called after ``body()`` or in a terminal state.
        """
        self._check("add_rcpt", _BEFORE_BODY)
        self.state = DeliveryState.RECIPIENTS_ADDED
        if rcpt in self._rcpts:
            return
        try:
            await self._run("add_rcpt", self._add_rcpt(rcpt), passthrough=(RecipientRejectedError,))
        except RecipientRejectedError as exc:
            if exc.target is None:
                exc.target = self.target_name
            self.logger.info("Recipient %s rejected by %s: %s", rcpt, self.target_name, exc.reason)
            raise
        self._rcpts[rcpt] = None
        self.logger.debug("Recipient %s accepted by %s (msg %s)", rcpt, self.target_name, self.msg_meta.id)

    async def withdraw_rcpt(self, rcpt: str) -> None:
        """Take back a recipient accepted earlier, before ``body()``.

        Unknown recipients are ignored.

        Raises:
            TransactionFatalError: The target failed; the transaction is aborted.
            SequenceError: Called after ``body()`` or in a terminal state.
        """
        self._check("withdraw_rcpt", _BEFORE_BODY)
        if rcpt not in self._rcpts:
            return
        del self._rcpts[rcpt]
        await self._run("withdraw_rcpt", self._withdraw_rcpt(rcpt))
        self.logger.debug("Recipient %s withdrawn from %s (msg %s)", rcpt, self.target_name, self.msg_meta.id)

    async def body(self, header: Header, buffer: Buffer) -> None:
        """Attach the message content. Allowed exactly once, before commit.

        The buffer is retained until the transaction ends.

        Raises:
            TransactionFatalError: The target failed; the transaction is aborted.
            ResourceError: The body could not be read; the transaction is aborted.
            SequenceError: Called twice, or after the transaction ended.
        """
        self._check("body", _BEFORE_BODY)
        self.state = DeliveryState.BODY_ATTACHED
        self.header = header
        try:
            self.buffer = buffer.retain()
        except ResourceError as exc:
            await self._fail("body", exc)
            raise
        await self._run("body", self._body(header, buffer))

    async def commit(self) -> None:
        """Finalize delivery to every accepted recipient.

        Raises:
            TransactionFatalError: Nothing was delivered; the transaction is aborted.
            PartialCommitError: Some fan-out members committed and some did not.
            SequenceError: Called before ``body()`` or after the transaction ended.
        """
        self._check("commit", (DeliveryState.BODY_ATTACHED,))
        if not self._rcpts:
            exc = TransactionFatalError("No accepted recipients", target=self.target_name, temporary=False)
            await self._fail("commit", exc)
            raise exc
        try:
            await self._run("commit", self._commit(), passthrough=(PartialCommitError,))
        except PartialCommitError:
            self._finish(DeliveryState.COMMITTED)
            raise
        self._finish(DeliveryState.COMMITTED)
        self.logger.debug("Committed msg %s on %s for %d recipient(s)",
                          self.msg_meta.id, self.target_name, len(self._rcpts))

    async def abort(self) -> None:
        """Roll back and release everything reserved by this transaction.

        Raises:
            SequenceError: The transaction already ended.
            TransactionFatalError: Cleanup failed; the transaction is still ABORTED.
        """
        self._check("abort", _BEFORE_BODY + (DeliveryState.BODY_ATTACHED,))
        try:
            await self._abort()
        except Exception as exc:
            raise TransactionFatalError(f"abort failed: {exc}", target=self.target_name) from exc
        finally:
            self._finish(DeliveryState.ABORTED)
        self.logger.debug("Aborted msg %s on %s", self.msg_meta.id, self.target_name)

    async def __aenter__(self) -> Delivery:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if not self.state.terminal:
            await self.abort()

    # -------------------------------------------------------------------------
    # Target hooks
    # -------------------------------------------------------------------------

    async def _add_rcpt(self, rcpt: str) -> None:
        """Apply the target's acceptance policy; raise RecipientRejectedError to refuse."""

    async def _withdraw_rcpt(self, rcpt: str) -> None:
        """Forget ``rcpt``; it is already gone from ``recipients``."""

    async def _body(self, header: Header, buffer: Buffer) -> None:
        """Stage the message content."""

    async def _commit(self) -> None:
        raise NotImplementedError

    async def _abort(self) -> None:
        """Undo staged effects and release resources."""

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _check(self, operation: str, allowed: tuple[DeliveryState, ...]) -> None:
        if self.state not in allowed:
            raise SequenceError(operation, self.state.value)

    def _finish(self, state: DeliveryState) -> None:
        self.state = state
        buffer, self.buffer = self.buffer, None
        if buffer is not None:
            buffer.remove()

    async def _run(self, operation: str, hook: Awaitable[None], *,
                   passthrough: tuple[type[Exception], ...] = ()) -> None:
        """Await a target hook, aborting the transaction if it fails."""
        try:
            await hook
        except passthrough:
            raise
        except asyncio.CancelledError:
            await self._cancelled()
            raise
        except (TransactionFatalError, ResourceError) as exc:
            await self._fail(operation, exc)
            raise
        except Exception as exc:
            await self._fail(operation, exc)
            raise TransactionFatalError(f"{operation} failed: {exc}", target=self.target_name) from exc

    async def _fail(self, operation: str, exc: Exception) -> None:
        try:
            await self._abort()
        except Exception as cleanup_exc:
            self.logger.warning("Cleanup after failed %s on %s failed: %s",
                                operation, self.target_name, cleanup_exc)
        finally:
            self._finish(DeliveryState.ABORTED)
        self.logger.warning("%s failed on %s for msg %s: %s",
                            operation, self.target_name, self.msg_meta.id, exc)

    async def _cancelled(self) -> None:
        try:
            await asyncio.shield(self._abort())
        except Exception as exc:
            self.logger.warning("Cleanup after cancellation on %s failed: %s", self.target_name, exc)
        finally:
            self._finish(DeliveryState.ABORTED)
        self.logger.info("Delivery of msg %s on %s cancelled", self.msg_meta.id, self.target_name)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.target_name} msg={self.msg_meta.id} {self.state.value}>"


@runtime_checkable
class DeliveryTarget(Protocol):
    """A delivery sink: opens one Delivery per message.

    ``start()`` raises TargetUnavailableError when the target cannot accept
    a transaction, without keeping any resources reserved.
    """

    name: str

    async def start(self, msg_meta: MsgMetadata, mail_from: str) -> Delivery: ...


__all__ = ["Delivery", "DeliveryState", "DeliveryTarget"]
