"""User-facing notification channel.

The session controller reports each terminal failure exactly once through a
Notifier. Delivery is best-effort: a failing notifier is logged and ignored.
"""

from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def error(self, message: str) -> None: ...


class LoggingNotifier:
    """Default notifier: writes the user-facing message to the log."""

    def error(self, message: str) -> None:
        logger.error("notify: %s", message)


def notify_error(notifier: Notifier, message: str) -> None:
    try:
        notifier.error(message)
    except Exception:
        logger.exception("notifier failed message=%r", message)
