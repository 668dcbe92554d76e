# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Local mailbox storage in maildir layout.

Each recipient owns a maildir under the target root, named after the
lowercased address::

    <root>/bob@example.org/{tmp,new,cur}

``body()`` streams the message into ``tmp/`` of every accepted mailbox,
``commit()`` moves the files into ``new/`` and ``abort()`` deletes them. If a
move fails midway, files already moved are deleted again so the commit has
no visible effect.
"""

from __future__ import annotations

import asyncio
import itertools
import os
import shutil
import socket
import time
from collections.abc import Iterable
from pathlib import Path

from ..buffer import Buffer
from ..delivery import Delivery
from ..errors import RecipientRejectedError, TargetUnavailableError, TransactionFatalError
from ..header import Header
from ..logger import get_logger
from ..metadata import MsgMetadata

_SUBDIRS = ("tmp", "new", "cur")
_counter = itertools.count()


def _unique_name(msg_id: str) -> str:
    return f"{time.time():.6f}.{os.getpid()}_{next(_counter)}_{msg_id}.{socket.gethostname()}"


class MaildirTarget:
    """Deliver into per-recipient maildirs below ``root``.

    Args:
        name: Target name used in logs and status reports.
        root: Directory holding one maildir per recipient.
        auto_create: Create missing mailboxes instead of rejecting recipients.
        domains: Accept only recipients in these domains. None accepts any.
        max_message_size: Reject bodies larger than this many bytes.
        chunk_size: Copy chunk size when writing messages.
        logger: Custom logger instance. If None, uses default logger.
    """

    def __init__(
        self,
        name: str,
        root: str | os.PathLike,
        *,
        auto_create: bool = False,
        domains: Iterable[str] | None = None,
        max_message_size: int | None = None,
        chunk_size: int = 64 * 1024,
        logger=None,
    ):
        self.name = name
        self.root = Path(root)
        self.auto_create = auto_create
        self.domains = {d.lower() for d in domains} if domains is not None else None
        self.max_message_size = max_message_size
        self.chunk_size = chunk_size
        self.logger = logger or get_logger()

    def mailbox_path(self, rcpt: str) -> Path:
        return self.root / rcpt.strip().lower()

    async def start(self, msg_meta: MsgMetadata, mail_from: str) -> MaildirDelivery:
        if not await asyncio.to_thread(self.root.is_dir):
            raise TargetUnavailableError(self.name, f"Mail store {self.root} is not available")
        return MaildirDelivery(self, msg_meta, mail_from, logger=self.logger)

    def __repr__(self) -> str:
        return f"<MaildirTarget {self.name} root={self.root}>"


class MaildirDelivery(Delivery):
    """One message being written to local mailboxes."""

    def __init__(self, target: MaildirTarget, msg_meta: MsgMetadata, mail_from: str, *, logger=None):
        super().__init__(target.name, msg_meta, mail_from, logger=logger)
        self.target = target
        self._staged: dict[str, Path] = {}
        self._moved: list[Path] = []

    async def _add_rcpt(self, rcpt: str) -> None:
        local, at, domain = rcpt.rpartition("@")
        if not at or not local or not domain or "/" in rcpt or rcpt.startswith("."):
            raise RecipientRejectedError(rcpt, "Invalid mailbox address", smtp_code=553)
        if self.target.domains is not None and domain.lower() not in self.target.domains:
            raise RecipientRejectedError(rcpt, "Relay not permitted", smtp_code=550)

        mailbox = self.target.mailbox_path(rcpt)
        if not await asyncio.to_thread(mailbox.is_dir):
            if not self.target.auto_create:
                raise RecipientRejectedError(rcpt, "Mailbox unavailable", smtp_code=550)
            await asyncio.to_thread(self._create_mailbox, mailbox)
            self.logger.info("Created mailbox %s", mailbox)

    @staticmethod
    def _create_mailbox(mailbox: Path) -> None:
        for sub in _SUBDIRS:
            (mailbox / sub).mkdir(parents=True, exist_ok=True)

    async def _body(self, header: Header, buffer: Buffer) -> None:
        size = buffer.length()
        limit = self.target.max_message_size
        if limit is not None and size is not None and size > limit:
            raise TransactionFatalError(
                f"552 Message size {size} exceeds limit {limit}", target=self.target_name, temporary=False
            )

        name = _unique_name(self.msg_meta.id)
        for rcpt in self.recipients:
            path = self.target.mailbox_path(rcpt) / "tmp" / name
            self._staged[rcpt] = path
            await asyncio.to_thread(self._write, path, header.to_bytes(), buffer)

    def _write(self, path: Path, header_bytes: bytes, buffer: Buffer) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as out, buffer.open() as src:
            out.write(header_bytes)
            shutil.copyfileobj(src, out, self.target.chunk_size)
            out.flush()
            os.fsync(out.fileno())

    async def _commit(self) -> None:
        for rcpt, tmp_path in self._staged.items():
            new_path = tmp_path.parent.parent / "new" / tmp_path.name
            await asyncio.to_thread(os.replace, tmp_path, new_path)
            self._moved.append(new_path)
        self.logger.debug("Stored msg %s in %d mailbox(es)", self.msg_meta.id, len(self._moved))

    async def _abort(self) -> None:
        paths = list(self._staged.values()) + self._moved
        self._staged.clear()
        self._moved.clear()
        await asyncio.to_thread(_unlink_all, paths)


def _unlink_all(paths: list[Path]) -> None:
    for path in paths:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
