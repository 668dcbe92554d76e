# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Transaction core for mail delivery.

This package models one in-flight message delivery, from envelope
creation through per-recipient acceptance to commit or abort, across one
or more pluggable delivery targets.

Components:
    Header: Ordered, multi-valued message header.
    MemoryBuffer, FileBuffer, BufferFactory: Re-readable message bodies.
    MsgMetadata: Per-message identity passed to every target.
    Delivery: Transaction state machine subclassed by each target.
    MaildirTarget, SMTPRelayTarget, QueueTarget: Leaf targets.
    FanoutTarget: Composite target delivering through several members.
    StatusCollector: Per-recipient outcome ledger.
    TargetRegistry: Lookup of configured targets by name.

Example:
    Deliver one message to a local mail store::

        from mail_delivery import BufferFactory, MaildirTarget, MsgMetadata, deliver, read_message

        target = MaildirTarget("local", "/var/mail", auto_create=True)
        with open("message.eml", "rb") as fp:
            header, buffer = await read_message(fp, BufferFactory())
        try:
            status = await deliver(target, MsgMetadata.new(), "alice@example.org",
                                   ["bob@example.org"], header, buffer)
        finally:
            buffer.remove()
"""

from .buffer import Buffer, BufferFactory, FileBuffer, MemoryBuffer
from .config import BufferConfig, DeliveryConfig, FanoutConfig, QueueConfig, RelayConfig
from .delivery import Delivery, DeliveryState, DeliveryTarget
from .errors import (
    DeliveryError,
    MalformedHeaderError,
    PartialCommitError,
    RecipientRejectedError,
    ResourceError,
    SequenceError,
    TargetUnavailableError,
    TransactionFatalError,
    UnknownTargetError,
)
from .header import Header
from .metadata import MsgMetadata, generate_msg_id
from .pipeline import deliver, read_message
from .registry import TargetRegistry
from .status import AggregationPolicy, StatusCollector
from .targets import FanoutTarget, MaildirTarget, MemoryQueue, QueuedMessage, QueueTarget, SMTPRelayTarget

__version__ = "0.1.0"

__all__ = [
    "AggregationPolicy",
    "Buffer",
    "BufferConfig",
    "BufferFactory",
    "Delivery",
    "DeliveryConfig",
    "DeliveryError",
    "DeliveryState",
    "DeliveryTarget",
    "FanoutConfig",
    "FanoutTarget",
    "FileBuffer",
    "Header",
    "MaildirTarget",
    "MalformedHeaderError",
    "MemoryBuffer",
    "MemoryQueue",
    "MsgMetadata",
    "PartialCommitError",
    "QueueConfig",
    "QueueTarget",
    "QueuedMessage",
    "RecipientRejectedError",
    "RelayConfig",
    "ResourceError",
    "SMTPRelayTarget",
    "SequenceError",
    "StatusCollector",
    "TargetRegistry",
    "TargetUnavailableError",
    "TransactionFatalError",
    "UnknownTargetError",
    "deliver",
    "generate_msg_id",
    "read_message",
]
