"""Tests for the fan-out composite target."""

import asyncio
from dataclasses import dataclass, field

import pytest

from mail_delivery.buffer import MemoryBuffer
from mail_delivery.delivery import DeliveryState
from mail_delivery.errors import (
    PartialCommitError,
    RecipientRejectedError,
    TargetUnavailableError,
    TransactionFatalError,
)
from mail_delivery.header import Header
from mail_delivery.metadata import MsgMetadata
from mail_delivery.pipeline import deliver
from mail_delivery.status import AggregationPolicy
from mail_delivery.targets import FanoutTarget
from mail_delivery.testing import RecordingDelivery, RecordingTarget


@dataclass
class ScriptedTarget(RecordingTarget):
    """RecordingTarget that can hang in one hook or break on some recipients."""

    stall_in: str | None = None
    broken: set[str] = field(default_factory=set)
    entered: asyncio.Event = field(default_factory=asyncio.Event)

    async def start(self, msg_meta, mail_from):
        self.calls.append(("start", mail_from))
        return ScriptedDelivery(self, msg_meta, mail_from)


class ScriptedDelivery(RecordingDelivery):
    async def _stall(self, hook):
        if self.target.stall_in == hook:
            self.target.entered.set()
            await asyncio.Event().wait()

    async def _add_rcpt(self, rcpt):
        await self._stall("add_rcpt")
        if rcpt in self.target.broken:
            raise OSError("connection lost")
        await super()._add_rcpt(rcpt)

    async def _body(self, header, buffer):
        await self._stall("body")
        await super()._body(header, buffer)

    async def _commit(self):
        await self._stall("commit")
        await super()._commit()


@pytest.fixture
def header():
    return Header([("Subject", "Fan-out")])


def three_members():
    return [
        RecordingTarget("t1"),
        RecordingTarget.rejecting("t2", ["b@x"]),
        RecordingTarget("t3"),
    ]


class TestFanoutConstruction:
    """Tests for FanoutTarget validation."""

    def test_requires_members(self):
        """Test that an empty member list is refused."""
        with pytest.raises(ValueError):
            FanoutTarget("fan", [])

    def test_duplicate_member_names(self):
        """Test that member names must be unique."""
        with pytest.raises(ValueError, match="Duplicate"):
            FanoutTarget("fan", [RecordingTarget("a"), RecordingTarget("a")])

    def test_required_must_be_member(self):
        """Test that required names must refer to members."""
        with pytest.raises(ValueError, match="not members"):
            FanoutTarget("fan", [RecordingTarget("a")], required=["b"])


class TestFanoutPolicies:
    """Tests for recipient aggregation across three members."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("parallel", [True, False])
    async def test_best_effort_accepts_partially_rejected_rcpt(self, header, parallel):
        """Test that b@x is accepted when members 1 and 3 accept it."""
        members = three_members()
        target = FanoutTarget("fan", members, policy=AggregationPolicy.BEST_EFFORT, parallel=parallel)
        delivery = await target.start(MsgMetadata.new(), "alice@a")

        await delivery.add_rcpt("a@x")
        await delivery.add_rcpt("b@x")
        await delivery.body(header, MemoryBuffer(b"body"))
        await delivery.commit()

        assert delivery.status.outcome("b@x") is None
        assert delivery.status.accepted() == ["a@x", "b@x"]
        assert isinstance(delivery.status.by_target("b@x")["t2"], RecipientRejectedError)
        assert delivery.recipients == ["a@x", "b@x"]
        assert members[0].messages[0].rcpts == ["a@x", "b@x"]
        assert members[1].messages[0].rcpts == ["a@x"]
        assert members[2].messages[0].rcpts == ["a@x", "b@x"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("parallel", [True, False])
    async def test_all_required_rejects_partially_rejected_rcpt(self, header, parallel):
        """Test that b@x is rejected when any member refuses it, and delivered by none."""
        members = three_members()
        target = FanoutTarget("fan", members, policy=AggregationPolicy.ALL_REQUIRED, parallel=parallel)
        delivery = await target.start(MsgMetadata.new(), "alice@a")

        await delivery.add_rcpt("a@x")
        with pytest.raises(RecipientRejectedError) as exc_info:
            await delivery.add_rcpt("b@x")
        assert exc_info.value.target == "t2"

        assert delivery.status.outcome("b@x") is exc_info.value
        assert delivery.status.accepted() == ["a@x"]
        assert delivery.recipients == ["a@x"]
        assert [m.recipients for m in delivery.members] == [["a@x"]] * 3

        await delivery.body(header, MemoryBuffer(b"body"))
        await delivery.commit()
        assert delivery.state is DeliveryState.COMMITTED
        assert members[0].messages[0].rcpts == ["a@x"]
        assert members[1].messages[0].rcpts == ["a@x"]
        assert members[2].messages[0].rcpts == ["a@x"]

    @pytest.mark.asyncio
    async def test_all_required_partial_commit_lists_only_accepted_rcpts(self, header):
        """Test that a rejected recipient never shows up as committed."""
        members = [RecordingTarget("t1"), RecordingTarget.rejecting("t2", ["b@x"]),
                   RecordingTarget("t3", fail_commit=True)]
        delivery = await FanoutTarget("fan", members, policy="all_required").start(MsgMetadata.new(), "alice@a")
        await delivery.add_rcpt("a@x")
        with pytest.raises(RecipientRejectedError):
            await delivery.add_rcpt("b@x")
        await delivery.body(header, MemoryBuffer(b"body"))

        with pytest.raises(PartialCommitError) as exc_info:
            await delivery.commit()
        assert exc_info.value.committed == [("t1", "a@x"), ("t2", "a@x")]
        assert exc_info.value.failed_rcpts == ["a@x"]

    @pytest.mark.asyncio
    async def test_rcpt_rejected_by_every_member(self, header):
        """Test that a recipient refused everywhere is rejected under best effort."""
        members = [RecordingTarget.rejecting(name, ["b@x"]) for name in ("t1", "t2")]
        delivery = await FanoutTarget("fan", members).start(MsgMetadata.new(), "alice@a")

        with pytest.raises(RecipientRejectedError) as exc_info:
            await delivery.add_rcpt("b@x")
        assert set(exc_info.value.errors) == {"t1", "t2"}

    @pytest.mark.asyncio
    async def test_pipeline_status_matches_member_results(self, header):
        """Test the caller-side collector when driven through deliver()."""
        target = FanoutTarget("fan", three_members(), policy="all_required")

        status = await deliver(target, MsgMetadata.new(), "alice@a", ["a@x", "b@x"],
                               header, MemoryBuffer(b"body"))

        assert status.accepted() == ["a@x"]
        assert list(status.rejected()) == ["b@x"]


class TestFanoutFailures:
    """Tests for member failures at each stage."""

    @pytest.mark.asyncio
    async def test_optional_member_start_failure_is_tolerated(self, header):
        """Test that a failing optional member is dropped at start."""
        members = [RecordingTarget("t1"), RecordingTarget("t2", fail_start=True)]
        delivery = await FanoutTarget("fan", members).start(MsgMetadata.new(), "alice@a")

        assert [m.target_name for m in delivery.members] == ["t1"]
        assert isinstance(delivery.failed_members["t2"], TargetUnavailableError)

        await delivery.add_rcpt("a@x")
        await delivery.body(header, MemoryBuffer(b"body"))
        await delivery.commit()
        assert members[0].messages[0].rcpts == ["a@x"]

    @pytest.mark.asyncio
    async def test_required_member_start_failure_aborts_others(self):
        """Test that a failing required member fails the composite start."""
        members = [RecordingTarget("t1"), RecordingTarget("t2", fail_start=True)]
        target = FanoutTarget("fan", members, required=["t2"])

        with pytest.raises(TargetUnavailableError) as exc_info:
            await target.start(MsgMetadata.new(), "alice@a")
        assert exc_info.value.target == "fan"
        assert members[0].operations() == ["start", "abort"]

    @pytest.mark.asyncio
    async def test_all_members_fail_start(self):
        """Test that the composite is unavailable when no member starts."""
        members = [RecordingTarget("t1", fail_start=True), RecordingTarget("t2", fail_start=True)]
        with pytest.raises(TargetUnavailableError, match="no member target could start"):
            await FanoutTarget("fan", members).start(MsgMetadata.new(), "alice@a")

    @pytest.mark.asyncio
    async def test_idle_member_is_aborted_before_body(self, header):
        """Test that members without accepted recipients do not receive the body."""
        members = [RecordingTarget("t1"), RecordingTarget.rejecting("t2", ["a@x"])]
        delivery = await FanoutTarget("fan", members).start(MsgMetadata.new(), "alice@a")
        await delivery.add_rcpt("a@x")
        await delivery.body(header, MemoryBuffer(b"body"))
        await delivery.commit()

        assert members[1].operations() == ["start", "add_rcpt", "abort"]
        assert members[1].messages == []

    @pytest.mark.asyncio
    async def test_optional_member_body_failure(self, header):
        """Test that a member failing body is dropped and its recipients reported as failed."""
        members = [RecordingTarget("t1"), RecordingTarget("t2", fail_body=True)]
        delivery = await FanoutTarget("fan", members).start(MsgMetadata.new(), "alice@a")
        await delivery.add_rcpt("a@x")
        await delivery.body(header, MemoryBuffer(b"body"))

        assert isinstance(delivery.status.by_target("a@x")["t2"], TransactionFatalError)
        assert "t2" in delivery.failed_members
        with pytest.raises(PartialCommitError) as exc_info:
            await delivery.commit()
        assert exc_info.value.committed == [("t1", "a@x")]
        assert [(name, rcpt) for name, rcpt, _ in exc_info.value.failed] == [("t2", "a@x")]
        assert len(members[0].messages) == 1

    @pytest.mark.asyncio
    async def test_rcpt_held_only_by_dropped_member_is_not_lost(self, header):
        """Test that a recipient only a dropped member accepted is reported as failed."""
        members = [RecordingTarget("t1", fail_body=True), RecordingTarget.rejecting("t2", ["r1@x"])]

        with pytest.raises(PartialCommitError) as exc_info:
            await deliver(FanoutTarget("fan", members), MsgMetadata.new(), "alice@a",
                          ["r1@x", "r2@x"], header, MemoryBuffer(b"body"))

        err = exc_info.value
        assert err.committed == [("t2", "r2@x")]
        assert [(name, rcpt) for name, rcpt, _ in err.failed] == [("t1", "r1@x"), ("t1", "r2@x")]
        assert "r1@x" in err.failed_rcpts
        assert members[1].messages[0].rcpts == ["r2@x"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("parallel", [True, False])
    async def test_member_broken_in_add_rcpt_keeps_earlier_rcpts_reported(self, header, parallel):
        """Test that recipients accepted before a fatal add_rcpt error count as failed."""
        members = [RecordingTarget("t1"), ScriptedTarget("t2", broken={"b@x"})]
        delivery = await FanoutTarget("fan", members, parallel=parallel).start(MsgMetadata.new(), "alice@a")
        await delivery.add_rcpt("a@x")
        await delivery.add_rcpt("b@x")

        assert isinstance(delivery.failed_members["t2"], TransactionFatalError)
        assert [m.target_name for m in delivery.members] == ["t1"]

        await delivery.body(header, MemoryBuffer(b"body"))
        with pytest.raises(PartialCommitError) as exc_info:
            await delivery.commit()
        assert exc_info.value.committed == [("t1", "a@x"), ("t1", "b@x")]
        assert [(name, rcpt) for name, rcpt, _ in exc_info.value.failed] == [("t2", "a@x")]

    @pytest.mark.asyncio
    async def test_nothing_delivered_when_dropped_and_failed_members_hold_all_rcpts(self, header):
        """Test that a commit without any delivered pair is fatal."""
        members = [RecordingTarget("t1", fail_body=True), RecordingTarget("t2", fail_commit=True)]
        delivery = await FanoutTarget("fan", members).start(MsgMetadata.new(), "alice@a")
        await delivery.add_rcpt("a@x")
        await delivery.body(header, MemoryBuffer(b"body"))

        with pytest.raises(TransactionFatalError) as exc_info:
            await delivery.commit()
        assert "body failure requested" in str(exc_info.value)
        assert "commit failure requested" in str(exc_info.value)
        assert delivery.state is DeliveryState.ABORTED

    @pytest.mark.asyncio
    async def test_required_member_body_failure_aborts_transaction(self, header):
        """Test that a required member failing body fails the composite."""
        members = [RecordingTarget("t1"), RecordingTarget("t2", fail_body=True)]
        delivery = await FanoutTarget("fan", members, required=["t2"]).start(MsgMetadata.new(), "alice@a")
        await delivery.add_rcpt("a@x")

        with pytest.raises(TransactionFatalError, match="required member t2"):
            await delivery.body(header, MemoryBuffer(b"body"))
        assert delivery.state is DeliveryState.ABORTED
        assert members[0].operations()[-1] == "abort"
        assert members[0].messages == []

    @pytest.mark.asyncio
    async def test_partial_commit(self, header):
        """Test that mixed commit results are reported without rollback."""
        members = [RecordingTarget("t1"), RecordingTarget("t2", fail_commit=True)]
        delivery = await FanoutTarget("fan", members).start(MsgMetadata.new(), "alice@a")
        await delivery.add_rcpt("a@x")
        await delivery.add_rcpt("b@x")
        await delivery.body(header, MemoryBuffer(b"body"))

        with pytest.raises(PartialCommitError) as exc_info:
            await delivery.commit()

        err = exc_info.value
        assert err.committed == [("t1", "a@x"), ("t1", "b@x")]
        assert [(name, rcpt) for name, rcpt, _ in err.failed] == [("t2", "a@x"), ("t2", "b@x")]
        assert err.failed_rcpts == ["a@x", "b@x"]
        assert err.temporary
        assert delivery.state is DeliveryState.COMMITTED
        assert members[0].messages[0].rcpts == ["a@x", "b@x"]

    @pytest.mark.asyncio
    async def test_all_commits_fail(self, header):
        """Test that a commit failing everywhere is a fatal error."""
        members = [RecordingTarget("t1", fail_commit=True), RecordingTarget("t2", fail_commit=True)]
        delivery = await FanoutTarget("fan", members).start(MsgMetadata.new(), "alice@a")
        await delivery.add_rcpt("a@x")
        await delivery.body(header, MemoryBuffer(b"body"))

        with pytest.raises(TransactionFatalError, match="commit failure requested"):
            await delivery.commit()
        assert delivery.state is DeliveryState.ABORTED

    @pytest.mark.asyncio
    async def test_abort_reaches_every_member(self):
        """Test that aborting the composite aborts all members."""
        members = [RecordingTarget("t1"), RecordingTarget("t2")]
        delivery = await FanoutTarget("fan", members).start(MsgMetadata.new(), "alice@a")
        await delivery.add_rcpt("a@x")
        await delivery.abort()

        for member in members:
            assert member.operations()[-1] == "abort"
        assert delivery.state is DeliveryState.ABORTED


class TestFanoutCancellation:
    """Tests for cancelling the driving task during a parallel member call."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("hook", ["add_rcpt", "body", "commit"])
    async def test_cancel_aborts_every_member(self, header, hook):
        """Test that all members end ABORTED and only the caller's buffer reference remains."""
        members = [ScriptedTarget("t1", stall_in=hook), ScriptedTarget("t2", stall_in=hook)]
        delivery = await FanoutTarget("fan", members, parallel=True).start(MsgMetadata.new(), "alice@a")
        member_deliveries = list(delivery.members)
        buffer = MemoryBuffer(b"body")

        async def drive():
            await delivery.add_rcpt("a@x")
            await delivery.body(header, buffer)
            await delivery.commit()

        task = asyncio.create_task(drive())
        await asyncio.wait_for(asyncio.gather(*(m.entered.wait() for m in members)), timeout=5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert delivery.state is DeliveryState.ABORTED
        assert [m.state for m in member_deliveries] == [DeliveryState.ABORTED] * 2
        assert [m.operations()[-1] for m in members] == ["abort", "abort"]
        assert [m.messages for m in members] == [[], []]
        assert delivery.buffer is None
        assert all(m.buffer is None for m in member_deliveries)
        assert not buffer.removed
        buffer.remove()
        assert buffer.removed
