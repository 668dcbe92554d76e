# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration dataclasses for the delivery core.

Provides nested configuration structure for clean parameter organization:
- config.buffer.memory_threshold_kb
- config.fanout.policy
- config.queue.put_timeout
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from .status import AggregationPolicy


@dataclass
class BufferConfig:
    """Message body storage settings."""

    memory_threshold_kb: float = 100.0
    """Bodies larger than this are spooled to disk instead of kept in memory."""

    spool_dir: str | None = None
    """Directory for spooled bodies. None uses the system temp directory."""

    chunk_size: int = 64 * 1024
    """Read/write chunk size in bytes when spooling."""

    @property
    def threshold_bytes(self) -> int:
        """Memory threshold in bytes."""
        return int(self.memory_threshold_kb * 1024)


@dataclass
class FanoutConfig:
    """Composite target settings."""

    policy: AggregationPolicy = AggregationPolicy.BEST_EFFORT
    """How per-member recipient results combine into one outcome."""

    required: tuple[str, ...] = ()
    """Member target names whose failure is fatal to the composite."""

    parallel: bool = True
    """Dispatch calls to members concurrently."""


@dataclass
class QueueConfig:
    """Queue target settings."""

    max_size: int = 1000
    """Maximum number of queued messages held by the in-memory queue."""

    put_timeout: float = 5.0
    """Timeout in seconds for enqueueing at commit."""


@dataclass
class RelayConfig:
    """SMTP relay settings."""

    timeout: float = 30.0
    """Timeout in seconds for each SMTP command."""

    local_hostname: str | None = None
    """Name used in EHLO and in the Received trace field."""


@dataclass
class DeliveryConfig:
    """Main configuration container for the delivery core.

    Example:
        config = DeliveryConfig(
            buffer=BufferConfig(memory_threshold_kb=256, spool_dir="/var/spool/mdc"),
            fanout=FanoutConfig(required=("local",)),
        )
        factory = BufferFactory(config.buffer)
    """

    buffer: BufferConfig = field(default_factory=BufferConfig)
    """Message body storage settings."""

    fanout: FanoutConfig = field(default_factory=FanoutConfig)
    """Composite target settings."""

    queue: QueueConfig = field(default_factory=QueueConfig)
    """Queue target settings."""

    relay: RelayConfig = field(default_factory=RelayConfig)
    """SMTP relay settings."""

    log_delivery_activity: bool = False
    """Enable verbose per-message delivery logging."""

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> DeliveryConfig:
        """Build a configuration from ``MDC_*`` environment variables.

        Environment variables:
          MDC_BUFFER_THRESHOLD_KB - Memory/disk threshold in KB (default: 100)
          MDC_SPOOL_DIR - Directory for spooled bodies
          MDC_FANOUT_POLICY - best_effort or all_required (default: best_effort)
          MDC_FANOUT_REQUIRED - Comma separated required member names
          MDC_FANOUT_PARALLEL - Dispatch members concurrently (default: true)
          MDC_QUEUE_MAX_SIZE - In-memory queue capacity (default: 1000)
          MDC_QUEUE_PUT_TIMEOUT - Enqueue timeout in seconds (default: 5)
          MDC_RELAY_TIMEOUT - SMTP command timeout in seconds (default: 30)
          MDC_LOG_DELIVERY_ACTIVITY - Verbose delivery logging (default: false)

        Raises:
            ValueError: If a variable holds an invalid value.
        """
        env = os.environ if environ is None else environ

        def get(key: str) -> str | None:
            value = env.get(key)
            if value is None or not value.strip():
                return None
            return value.strip()

        def get_float(key: str, fallback: float) -> float:
            value = get(key)
            if value is None:
                return fallback
            try:
                return float(value)
            except ValueError:
                raise ValueError(f"{key} must be a number, got {value!r}") from None

        def get_bool(key: str, fallback: bool) -> bool:
            value = get(key)
            if value is None:
                return fallback
            lowered = value.lower()
            if lowered in {"1", "true", "yes", "on"}:
                return True
            if lowered in {"0", "false", "no", "off"}:
                return False
            raise ValueError(f"{key} must be a boolean, got {value!r}")

        policy_value = get("MDC_FANOUT_POLICY")
        try:
            policy = AggregationPolicy(policy_value) if policy_value else AggregationPolicy.BEST_EFFORT
        except ValueError:
            raise ValueError(f"MDC_FANOUT_POLICY must be one of "
                             f"{[p.value for p in AggregationPolicy]}, got {policy_value!r}") from None

        required_value = get("MDC_FANOUT_REQUIRED")
        required = tuple(n.strip() for n in required_value.split(",") if n.strip()) if required_value else ()

        threshold = get_float("MDC_BUFFER_THRESHOLD_KB", 100.0)
        if threshold < 0:
            raise ValueError("MDC_BUFFER_THRESHOLD_KB must not be negative")

        return cls(
            buffer=BufferConfig(memory_threshold_kb=threshold, spool_dir=get("MDC_SPOOL_DIR")),
            fanout=FanoutConfig(
                policy=policy,
                required=required,
                parallel=get_bool("MDC_FANOUT_PARALLEL", True),
            ),
            queue=QueueConfig(
                max_size=int(get_float("MDC_QUEUE_MAX_SIZE", 1000)),
                put_timeout=get_float("MDC_QUEUE_PUT_TIMEOUT", 5.0),
            ),
            relay=RelayConfig(timeout=get_float("MDC_RELAY_TIMEOUT", 30.0)),
            log_delivery_activity=get_bool("MDC_LOG_DELIVERY_ACTIVITY", False),
        )


__all__ = [
    "BufferConfig",
    "DeliveryConfig",
    "FanoutConfig",
    "QueueConfig",
    "RelayConfig",
]
