# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Error taxonomy for delivery transactions.

Every error carries a machine-readable ``code`` and a ``temporary`` flag.
The protocol layer above this package maps them to reply codes and decides
between deferring and bouncing; nothing here is retried internally.

- SequenceError: a transaction method called out of order.
- RecipientRejectedError: one recipient refused; isolated per recipient.
- TransactionFatalError: body/commit failure, the transaction is aborted.
- PartialCommitError: fan-out commit where only some members succeeded.
- ResourceError: buffer allocation or storage failure.
- TargetUnavailableError: a target refused to start a transaction.
"""

from __future__ import annotations

from collections.abc import Iterable


class DeliveryError(Exception):
    """Base class for all delivery core errors."""

    code = "delivery_error"
    temporary = False


class SequenceError(DeliveryError):
    """Raised when a transaction method is invoked in a state that forbids it."""

    code = "bad_sequence"

    def __init__(self, operation: str, state: str):
        self.operation = operation
        self.state = state
        super().__init__(f"{operation}() not allowed in state '{state}'")


class RecipientRejectedError(DeliveryError):
    """Raised when a target refuses one recipient."""

    code = "recipient_rejected"

    def __init__(
        self,
        rcpt: str,
        reason: str,
        *,
        smtp_code: int = 550,
        temporary: bool = False,
        target: str | None = None,
        errors: dict[str, BaseException] | None = None,
    ):
        self.rcpt = rcpt
        self.reason = reason
        self.smtp_code = smtp_code
        self.temporary = temporary
        self.target = target
        self.errors = errors or {}
        super().__init__(f"{rcpt}: {smtp_code} {reason}")


class TransactionFatalError(DeliveryError):
    """Raised when the whole transaction fails and has been aborted."""

    code = "transaction_failed"

    def __init__(self, message: str, *, target: str | None = None, temporary: bool = True):
        self.target = target
        self.temporary = temporary
        super().__init__(f"{target}: {message}" if target else message)


class PartialCommitError(DeliveryError):
    """Raised when a fan-out commit succeeded for some members only.

    Attributes:
        committed: ``(target, rcpt)`` pairs that were durably delivered.
        failed: ``(target, rcpt, error)`` triples that were not.
    """

    code = "partial_commit"
    temporary = True

    def __init__(
        self,
        committed: Iterable[tuple[str, str]],
        failed: Iterable[tuple[str, str, BaseException]],
    ):
        self.committed = list(committed)
        self.failed = list(failed)
        targets = sorted({target for target, _, _ in self.failed})
        super().__init__(
            f"Commit failed for {len(self.failed)} recipient(s) on {', '.join(targets)}; "
            f"{len(self.committed)} delivered"
        )

    @property
    def failed_rcpts(self) -> list[str]:
        """Recipients with at least one failed member, in failure order."""
        seen: dict[str, None] = {}
        for _, rcpt, _ in self.failed:
            seen.setdefault(rcpt, None)
        return list(seen)


class ResourceError(DeliveryError):
    """Raised when buffer storage cannot be allocated, written or read."""

    code = "resource_error"
    temporary = True


class TargetUnavailableError(DeliveryError):
    """Raised by ``DeliveryTarget.start`` when a transaction cannot be opened."""

    code = "target_unavailable"

    def __init__(self, target: str, reason: str, *, temporary: bool = True):
        self.target = target
        self.reason = reason
        self.temporary = temporary
        super().__init__(f"{target}: {reason}")


class MalformedHeaderError(DeliveryError, ValueError):
    """Raised when a message header cannot be parsed."""

    code = "malformed_header"


class UnknownTargetError(DeliveryError, LookupError):
    """Raised when no target is registered under the requested name."""

    code = "unknown_target"

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Delivery target '{name}' not found")


__all__ = [
    "DeliveryError",
    "MalformedHeaderError",
    "PartialCommitError",
    "RecipientRejectedError",
    "ResourceError",
    "SequenceError",
    "TargetUnavailableError",
    "TransactionFatalError",
    "UnknownTargetError",
]
