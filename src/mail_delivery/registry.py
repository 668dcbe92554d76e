# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Lookup of configured delivery targets by name.

Example::

    registry = TargetRegistry()
    registry.create("maildir", "local", root="/var/mail", auto_create=True)
    registry.create("smtp", "upstream", host="smtp.example.org", port=587)
    registry.create("fanout", "both", targets=["local", "upstream"], required=["local"])

    target = registry.get("both")
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import Any

from .config import DeliveryConfig
from .delivery import DeliveryTarget
from .errors import UnknownTargetError
from .logger import get_logger
from .targets import FanoutTarget, MaildirTarget, MemoryQueue, QueueTarget, SMTPRelayTarget

TARGET_KINDS: dict[str, type] = {
    "maildir": MaildirTarget,
    "smtp": SMTPRelayTarget,
    "queue": QueueTarget,
    "fanout": FanoutTarget,
}


class TargetRegistry:
    """Named delivery targets.

    Targets built by ``create()`` take their defaults from ``config``:
    relay timeout and hostname, queue capacity and enqueue timeout, fan-out
    policy, required members and parallelism. Explicit options win.
    """

    def __init__(self, config: DeliveryConfig | None = None, logger=None):
        self.config = config or DeliveryConfig()
        self._targets: dict[str, DeliveryTarget] = {}
        self.logger = logger or get_logger()

    def register(self, target: DeliveryTarget) -> DeliveryTarget:
        """Register ``target`` under its name.

        Raises:
            ValueError: If the name is already taken.
        """
        if target.name in self._targets:
            raise ValueError(f"Delivery target '{target.name}' already registered")
        self._targets[target.name] = target
        self.logger.debug("Registered delivery target %s", target.name)
        return target

    def get(self, name: str) -> DeliveryTarget:
        """Return the target registered as ``name``.

        Raises:
            UnknownTargetError: If no such target exists.
        """
        try:
            return self._targets[name]
        except KeyError:
            raise UnknownTargetError(name) from None

    def create(self, kind: str, name: str, **options: Any) -> DeliveryTarget:
        """Build a target of ``kind`` and register it as ``name``.

        For ``fanout``, members in ``targets`` may be given as registered names.

        Raises:
            ValueError: If ``kind`` is unknown or the options are invalid.
            UnknownTargetError: If a fan-out member name is not registered.
        """
        target_class = TARGET_KINDS.get(kind)
        if target_class is None:
            raise ValueError(f"Unknown target kind '{kind}', expected one of {sorted(TARGET_KINDS)}")
        if kind == "smtp":
            options.setdefault("timeout", self.config.relay.timeout)
            options.setdefault("local_hostname", self.config.relay.local_hostname)
        elif kind == "queue":
            if options.get("queue") is None:
                options["queue"] = MemoryQueue(self.config.queue.max_size)
            options.setdefault("put_timeout", self.config.queue.put_timeout)
        elif kind == "fanout":
            options["targets"] = [
                self.get(member) if isinstance(member, str) else member
                for member in options.get("targets", ())
            ]
            members = {t.name for t in options["targets"]}
            options.setdefault("required", [n for n in self.config.fanout.required if n in members])
            options.setdefault("policy", self.config.fanout.policy)
            options.setdefault("parallel", self.config.fanout.parallel)
        return self.register(target_class(name, **options))

    def names(self) -> list[str]:
        return list(self._targets)

    def __contains__(self, name: object) -> bool:
        return name in self._targets

    def __iter__(self) -> Iterator[DeliveryTarget]:
        return iter(list(self._targets.values()))

    def __len__(self) -> int:
        return len(self._targets)
