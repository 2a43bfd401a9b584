"""User-notification sinks.

Notifications are fire-and-forget: a failing sink must never break the
supervisor, so errors are logged and dropped.
"""

from collections.abc import Callable

from loguru import logger

Notifier = Callable[[str], None]


def log_notifier(message: str) -> None:
    """Default sink: surface the notification through the log."""
    logger.info(f"[notice] {message}")


def safe_notify(notifier: Notifier | None, message: str) -> None:
    """Deliver a notification without letting the sink raise."""
    if notifier is None:
        return
    try:
        notifier(message)
    except Exception as e:
        logger.warning(f"Notification sink failed: {e}")
