# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Per-recipient outcome ledger.

The StatusCollector records, for each recipient, the result reported by each
target that handled it, and resolves those results into a single outcome:
``None`` when the recipient is accepted, an exception when it is rejected.

One collector is shared by reference across all members of a fan-out, so
writes are serialized with a lock.

Policies:
- best_effort: accepted when at least one target accepted the recipient.
- all_required: accepted only when every required target accepted it. With
  no required targets configured, every target that reported is required.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Iterator
from enum import Enum

from .errors import RecipientRejectedError

DEFAULT_TARGET = ""


class AggregationPolicy(str, Enum):
    """How per-target recipient results combine into one outcome."""

    BEST_EFFORT = "best_effort"
    ALL_REQUIRED = "all_required"


class StatusCollector:
    """Thread-safe mapping of recipient to per-target outcome."""

    def __init__(
        self,
        policy: AggregationPolicy | str = AggregationPolicy.BEST_EFFORT,
        required: Iterable[str] = (),
    ):
        self.policy = AggregationPolicy(policy)
        self.required = tuple(required)
        self._lock = threading.Lock()
        self._results: dict[str, dict[str, BaseException | None]] = {}

    def set_status(self, rcpt: str, err: BaseException | None, *, target: str = DEFAULT_TARGET) -> None:
        """Record the result of ``target`` for ``rcpt``; ``None`` means accepted."""
        with self._lock:
            self._results.setdefault(rcpt, {})[target] = err

    def outcome(self, rcpt: str) -> BaseException | None:
        """Resolve the outcome for ``rcpt`` under the collector's policy.

        Raises:
            KeyError: If nothing was recorded for ``rcpt``.
        """
        with self._lock:
            results = dict(self._results[rcpt])
        return self._resolve(rcpt, results)

    def by_target(self, rcpt: str) -> dict[str, BaseException | None]:
        """Raw per-target results for ``rcpt``."""
        with self._lock:
            return dict(self._results.get(rcpt, {}))

    def accepted(self) -> list[str]:
        return [rcpt for rcpt, err in self.items() if err is None]

    def rejected(self) -> dict[str, BaseException]:
        return {rcpt: err for rcpt, err in self.items() if err is not None}

    def items(self) -> list[tuple[str, BaseException | None]]:
        """Resolved ``(rcpt, outcome)`` pairs in registration order."""
        with self._lock:
            snapshot = {rcpt: dict(results) for rcpt, results in self._results.items()}
        return [(rcpt, self._resolve(rcpt, results)) for rcpt, results in snapshot.items()]

    def _resolve(self, rcpt: str, results: dict[str, BaseException | None]) -> BaseException | None:
        if self.policy is AggregationPolicy.BEST_EFFORT:
            if any(err is None for err in results.values()):
                return None
            return self._combine(rcpt, results)

        required = self.required or tuple(results)
        missing = [name for name in required if name not in results]
        failed = {name: err for name, err in results.items() if name in required and err is not None}
        if not missing and not failed:
            return None
        for name in missing:
            failed[name] = RecipientRejectedError(
                rcpt, "not delivered by required target", smtp_code=451, temporary=True, target=name
            )
        return self._combine(rcpt, failed)

    @staticmethod
    def _combine(rcpt: str, failed: dict[str, BaseException | None]) -> BaseException:
        errors = {name: err for name, err in failed.items() if err is not None}
        if len(errors) == 1:
            return next(iter(errors.values()))

        temporary = any(getattr(err, "temporary", False) for err in errors.values())
        codes = [getattr(err, "smtp_code", 550) for err in errors.values()]
        # A temporary failure on any target wins so the sender retries.
        smtp_code = next((c for c in codes if 400 <= c < 500), codes[0]) if temporary else codes[0]
        reasons = "; ".join(f"{name or 'target'}: {err}" for name, err in errors.items())
        return RecipientRejectedError(
            rcpt, reasons, smtp_code=smtp_code, temporary=temporary, errors=errors
        )

    def __contains__(self, rcpt: object) -> bool:
        with self._lock:
            return rcpt in self._results

    def __iter__(self) -> Iterator[str]:
        with self._lock:
            return iter(list(self._results))

    def __len__(self) -> int:
        with self._lock:
            return len(self._results)


__all__ = ["AggregationPolicy", "DEFAULT_TARGET", "StatusCollector"]
