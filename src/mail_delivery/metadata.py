# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Per-message metadata passed to every delivery target."""

from __future__ import annotations

import uuid
from dataclasses import dataclass


def generate_msg_id() -> str:
    """Return a new opaque message identifier."""
    return uuid.uuid4().hex


@dataclass(frozen=True)
class MsgMetadata:
    """Identifies one message instance for the lifetime of its deliveries.

    Attributes:
        id: Opaque, stable message identifier.
        dont_trace_sender: Omit the sender's host from trace fields.
        size_hint: Expected body size in bytes, if known.
        src_hostname: Hostname the message was received from.
        src_proto: Protocol the message was received with (e.g. ``ESMTP``).
    """

    id: str
    dont_trace_sender: bool = False
    size_hint: int | None = None
    src_hostname: str | None = None
    src_proto: str | None = None

    @classmethod
    def new(cls, **kwargs) -> MsgMetadata:
        """Create metadata with a freshly generated id."""
        return cls(id=generate_msg_id(), **kwargs)
