# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Composite target delivering one message through several targets.

FanoutTarget opens a transaction on every member and forwards each call to
the members still alive. Recipient results from all members are written
into one shared StatusCollector, which resolves them under the configured
policy (best effort by default, see ``mail_delivery.status``).

Failure handling:

- A member that fails ``start``, ``body`` or with a fatal ``add_rcpt`` error
  is dropped. If it is a required member, the whole composite fails.
- A recipient the combined outcome rejects is withdrawn from the members
  that accepted it, so no member delivers it.
- Members that accepted no recipient are aborted before ``body``.
- ``commit`` commits every live member. Recipients held by members that
  were dropped count as failed. When some pairs succeed and others fail,
  PartialCommitError lists which target/recipient pairs were delivered and
  which were not. Members that committed are not rolled back.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Sequence
from typing import Any

from ..buffer import Buffer
from ..delivery import Delivery, DeliveryTarget
from ..errors import (
    PartialCommitError,
    RecipientRejectedError,
    TargetUnavailableError,
    TransactionFatalError,
)
from ..header import Header
from ..logger import get_logger
from ..metadata import MsgMetadata
from ..status import AggregationPolicy, StatusCollector


class FanoutTarget:
    """Deliver one message to several member targets.

    Args:
        name: Target name used in logs and status reports.
        targets: Member targets; their names must be unique.
        required: Names of members whose failure is fatal to the composite.
        policy: How member recipient results combine.
        parallel: Dispatch each call to the members concurrently.
        logger: Custom logger instance. If None, uses default logger.
    """

    def __init__(
        self,
        name: str,
        targets: Sequence[DeliveryTarget],
        *,
        required: Iterable[str] = (),
        policy: AggregationPolicy | str = AggregationPolicy.BEST_EFFORT,
        parallel: bool = True,
        logger=None,
    ):
        names = [t.name for t in targets]
        if not names:
            raise ValueError("FanoutTarget needs at least one member target")
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate member target names: {names}")
        self.required = tuple(required)
        unknown = set(self.required) - set(names)
        if unknown:
            raise ValueError(f"Required targets are not members: {sorted(unknown)}")

        self.name = name
        self.targets = list(targets)
        self.policy = AggregationPolicy(policy)
        self.parallel = parallel
        self.logger = logger or get_logger()

    async def _dispatch(self, calls: list[Callable[[], Awaitable[Any]]]) -> list[Any]:
        """Run ``calls`` and return each result or the exception it raised."""
        if self.parallel:
            return await asyncio.gather(*(call() for call in calls), return_exceptions=True)
        results: list[Any] = []
        for call in calls:
            try:
                results.append(await call())
            except Exception as exc:
                results.append(exc)
        return results

    async def start(self, msg_meta: MsgMetadata, mail_from: str) -> FanoutDelivery:
        results = await self._dispatch([
            lambda t=t: t.start(msg_meta, mail_from) for t in self.targets
        ])

        started: list[Delivery] = []
        failed: dict[str, BaseException] = {}
        for target, result in zip(self.targets, results):
            if isinstance(result, BaseException):
                failed[target.name] = result
                self.logger.warning("Member %s of %s failed to start: %s", target.name, self.name, result)
            else:
                started.append(result)

        fatal = [name for name in failed if name in self.required]
        if fatal or not started:
            await self._dispatch([lambda d=d: d.abort() for d in started])
            reason = failed[fatal[0]] if fatal else "no member target could start"
            temporary = all(getattr(err, "temporary", True) for err in failed.values())
            raise TargetUnavailableError(self.name, str(reason), temporary=temporary)

        status = StatusCollector(self.policy, self.required)
        return FanoutDelivery(self, started, status, msg_meta, mail_from, failed=failed, logger=self.logger)

    def __repr__(self) -> str:
        return f"<FanoutTarget {self.name} members={[t.name for t in self.targets]}>"


class FanoutDelivery(Delivery):
    """Composite transaction forwarding every call to live member transactions.

    Attributes:
        status: Shared StatusCollector with per-member recipient results.
        members: Member transactions still taking part in the delivery.
        failed_members: Member name -> error for members that dropped out.
        lost: ``(member, rcpt, error)`` for recipients held by dropped members.
    """

    def __init__(
        self,
        target: FanoutTarget,
        members: list[Delivery],
        status: StatusCollector,
        msg_meta: MsgMetadata,
        mail_from: str,
        *,
        failed: dict[str, BaseException] | None = None,
        logger=None,
    ):
        super().__init__(target.name, msg_meta, mail_from, logger=logger)
        self.target = target
        self.members = list(members)
        self.status = status
        self.failed_members: dict[str, BaseException] = dict(failed or {})
        self.lost: list[tuple[str, str, BaseException]] = []

    def _drop(self, member: Delivery, exc: BaseException) -> None:
        if member in self.members:
            self.members.remove(member)
        self.failed_members[member.target_name] = exc
        self.lost.extend((member.target_name, rcpt, exc) for rcpt in member.recipients)
        self.logger.warning("Member %s of %s dropped: %s", member.target_name, self.target_name, exc)
        if member.target_name in self.target.required:
            raise TransactionFatalError(
                f"required member {member.target_name} failed: {exc}", target=self.target_name
            ) from exc

    async def _add_rcpt(self, rcpt: str) -> None:
        members = list(self.members)

        async def forward(member: Delivery) -> None:
            try:
                await member.add_rcpt(rcpt)
            except RecipientRejectedError as exc:
                self.status.set_status(rcpt, exc, target=member.target_name)
                return
            except Exception as exc:
                self.status.set_status(rcpt, exc, target=member.target_name)
                raise
            self.status.set_status(rcpt, None, target=member.target_name)

        results = await self.target._dispatch([lambda m=m: forward(m) for m in members])
        for member, result in zip(members, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                self._drop(member, result)

        if not self.status.by_target(rcpt):
            raise RecipientRejectedError(rcpt, "No member target available", smtp_code=451, temporary=True)
        err = self.status.outcome(rcpt)
        if err is None:
            return
        await self._withdraw(rcpt)
        if isinstance(err, RecipientRejectedError):
            raise err
        raise RecipientRejectedError(
            rcpt, str(err), smtp_code=451, temporary=getattr(err, "temporary", True)
        ) from err

    async def _withdraw(self, rcpt: str) -> None:
        """Take ``rcpt`` back from the members that accepted it."""
        members = [m for m in self.members if rcpt in m.recipients]
        results = await self.target._dispatch([lambda m=m: m.withdraw_rcpt(rcpt) for m in members])
        for member, result in zip(members, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                self._drop(member, result)

    async def _body(self, header: Header, buffer: Buffer) -> None:
        idle = [m for m in self.members if not m.recipients]
        for member in idle:
            self.members.remove(member)
            await member.abort()
            self.logger.debug("Member %s of %s has no recipients, aborted", member.target_name, self.target_name)

        members = list(self.members)
        results = await self.target._dispatch([lambda m=m: m.body(header, buffer) for m in members])
        for member, result in zip(members, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                for rcpt in member.recipients:
                    self.status.set_status(rcpt, result, target=member.target_name)
                self._drop(member, result)

        if not self.members:
            raise TransactionFatalError("No member target accepted the message", target=self.target_name)

    async def _commit(self) -> None:
        members = list(self.members)
        results = await self.target._dispatch([lambda m=m: m.commit() for m in members])

        committed: list[tuple[str, str]] = []
        failed = [entry for entry in self.lost if entry[1] in self._rcpts]
        for member, result in zip(members, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            pairs = [(member.target_name, rcpt) for rcpt in member.recipients]
            if isinstance(result, BaseException):
                failed.extend((name, rcpt, result) for name, rcpt in pairs)
                self.failed_members[member.target_name] = result
            else:
                committed.extend(pairs)
        self.members = []

        if not failed:
            return
        if not committed:
            raise TransactionFatalError(
                "; ".join(sorted({f"{name}: {err}" for name, _, err in failed})), target=self.target_name
            )
        self.logger.warning("Partial commit of msg %s on %s: %d delivered, %d failed",
                            self.msg_meta.id, self.target_name, len(committed), len(failed))
        raise PartialCommitError(committed, failed)

    async def _abort(self) -> None:
        members = [m for m in self.members if not m.state.terminal]
        self.members = []
        results = await self.target._dispatch([lambda m=m: m.abort() for m in members])
        errors = [r for r in results if isinstance(r, Exception)]
        if errors:
            raise errors[0]
