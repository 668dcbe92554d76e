# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Delivery target implementations.

- MaildirTarget: local mailbox storage
- SMTPRelayTarget: forward to an upstream SMTP server
- QueueTarget: hand over to a delivery queue
- FanoutTarget: compose several targets into one
"""

from .fanout import FanoutDelivery, FanoutTarget
from .maildir import MaildirDelivery, MaildirTarget
from .queue import MemoryQueue, MessageQueue, QueueDelivery, QueuedMessage, QueueTarget
from .relay import RelayDelivery, SMTPRelayTarget

__all__ = [
    "FanoutDelivery",
    "FanoutTarget",
    "MaildirDelivery",
    "MaildirTarget",
    "MemoryQueue",
    "MessageQueue",
    "QueueDelivery",
    "QueueTarget",
    "QueuedMessage",
    "RelayDelivery",
    "SMTPRelayTarget",
]
