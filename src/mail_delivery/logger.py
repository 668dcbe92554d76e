# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Logging helpers for the delivery core."""

import logging


def get_logger(name: str = "mail_delivery") -> logging.Logger:
    """Return the named :class:`logging.Logger` instance.

    Note: Logging configuration should be done via logging.basicConfig()
    in the CLI entry point to avoid duplicate handlers.
    """
    return logging.getLogger(name)
