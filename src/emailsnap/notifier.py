"""Desktop notification delivery for new mail."""

from __future__ import annotations

import logging
import shutil
import subprocess
import sys
from typing import Protocol

from emailsnap.models import Message, category_display

logger = logging.getLogger(__name__)

NOTIFY_TIMEOUT = 5


class Notifier(Protocol):
    """OS-level notification surface."""

    def is_permission_granted(self) -> bool: ...

    def request_permission(self) -> bool: ...

    def send(self, title: str, body: str) -> None: ...


def _escape_applescript(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"')


class DesktopNotifier:
    """Notifications via notify-send (Linux) or osascript (macOS)."""

    def __init__(self, app_name: str = "EmailSnap", platform: str | None = None):
        self.app_name = app_name
        self.platform = platform or sys.platform

    def _backend(self) -> str | None:
        if self.platform == "darwin":
            return shutil.which("osascript")
        return shutil.which("notify-send")

    def is_permission_granted(self) -> bool:
        """A usable notification backend exists."""
        return self._backend() is not None

    def request_permission(self) -> bool:
        """Nothing to prompt for on these platforms; report availability."""
        granted = self.is_permission_granted()
        if not granted:
            logger.warning("No desktop notification backend found, notifications disabled")
        return granted

    def send(self, title: str, body: str) -> None:
        """Fire one notification.

        Raises:
            RuntimeError: If no backend is available or it reports failure
        """
        backend = self._backend()
        if backend is None:
            raise RuntimeError("No notification backend available")

        if self.platform == "darwin":
            script = (
                f'display notification "{_escape_applescript(body)}" '
                f'with title "{_escape_applescript(title)}"'
            )
            args = [backend, "-e", script]
        else:
            args = [backend, "--app-name", self.app_name, "--", title, body]

        result = subprocess.run(args, capture_output=True, text=True, timeout=NOTIFY_TIMEOUT)
        if result.returncode != 0:
            raise RuntimeError(f"Notification failed: {result.stderr.strip()}")


class NotificationDispatcher:
    """Decides whether and what to surface for a new message."""

    def __init__(self, notifier: Notifier):
        self.notifier = notifier
        self._granted: bool | None = None

    def init(self) -> bool:
        """Request permission once at startup and remember the answer."""
        granted = self.notifier.is_permission_granted()
        if not granted:
            granted = self.notifier.request_permission()
        self._granted = granted
        return granted

    @property
    def permission_granted(self) -> bool:
        if self._granted is None:
            self._granted = self.notifier.is_permission_granted()
        return self._granted

    def build(self, message: Message) -> tuple[str, str]:
        """Title and body for a message's notification."""
        display = category_display(message.category)
        title = f"{display['emoji']} {message.sender_name or message.sender_email}"
        return title, message.subject

    def dispatch(self, message: Message) -> bool:
        """Fire-and-forget: never raises, never retries."""
        if not self.permission_granted:
            return False

        title, body = self.build(message)
        try:
            self.notifier.send(title, body)
        except Exception as e:
            logger.warning(f"Notification for {message.id} failed: {e}")
            return False
        return True
