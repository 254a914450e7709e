"""Polling scheduler: fetch, classify, store, notify and clean up on a timer."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, time
from enum import Enum
from typing import TYPE_CHECKING, Callable

from emailsnap.config import parse_hhmm
from emailsnap.decision_engine import DecisionEngine
from emailsnap.imap_client import MailClientError, MailErrorKind, fetch_messages
from emailsnap.models import Message, RawMessage
from emailsnap.rules_engine import RulesEngine
from emailsnap.structured_logger import StructuredLogger

if TYPE_CHECKING:
    from emailsnap.config import AppSettings, ImapConfig
    from emailsnap.llm_client import LLMClient
    from emailsnap.notifier import NotificationDispatcher
    from emailsnap.storage import Storage

logger = logging.getLogger(__name__)

FAILURE_THRESHOLD = 3
MAX_BACKOFF_SECONDS = 600

Fetcher = Callable[["ImapConfig", "str | None"], "list[RawMessage]"]
NewMessagesCallback = Callable[[list[Message]], None]


class SchedulerState(str, Enum):
    """Lifecycle state of a scheduler."""

    IDLE = "idle"
    POLLING = "polling"
    BACKOFF = "backoff"
    STOPPED = "stopped"


def compute_backoff(base_interval: float, failures: int, cap: float = MAX_BACKOFF_SECONDS) -> float:
    """base * 2^(failures-2), capped."""
    return min(base_interval * 2 ** max(failures - 2, 0), cap)


def within_active_hours(now: time, start: time, end: time) -> bool:
    """Inclusive on both ends; a start after the end spans midnight."""
    if start <= end:
        return start <= now <= end
    return now >= start or now <= end


class RepeatingTimer:
    """Calls `function` every `interval` seconds on a daemon thread."""

    def __init__(self, interval: float, function: Callable[[], object]):
        self.interval = interval
        self.function = function
        self._cancelled = threading.Event()
        self._thread = threading.Thread(target=self._run, name="emailsnap-poller", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def cancel(self) -> None:
        """Prevent future fires; a call in progress finishes."""
        self._cancelled.set()

    def _run(self) -> None:
        while not self._cancelled.wait(self.interval):
            self.function()


@dataclass
class PollResult:
    """Summary of one poll cycle."""

    fetched: int = 0
    inserted: int = 0
    notified: int = 0
    new_messages: list[Message] = field(default_factory=list)
    skipped: bool = False
    skip_reason: str | None = None
    error: str | None = None
    error_kind: MailErrorKind | None = None

    @property
    def success(self) -> bool:
        return not self.skipped and self.error is None

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "fetched": self.fetched,
            "inserted": self.inserted,
            "notified": self.notified,
            "skipped": self.skipped,
            "skip_reason": self.skip_reason,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
        }


class PollingScheduler:
    """
    Owns the polling lifecycle for one account.

    One repeating timer drives poll cycles. Three consecutive failures
    switch the timer to an exponential backoff interval; an authentication
    failure stops polling until start() is called again with fresh
    credentials. All state lives on the instance.
    """

    def __init__(
        self,
        storage: Storage,
        fetcher: Fetcher = fetch_messages,
        dispatcher: NotificationDispatcher | None = None,
        llm_client_factory: Callable[[str], LLMClient] | None = None,
        timer_factory: Callable[[float, Callable[[], object]], RepeatingTimer] = RepeatingTimer,
        clock: Callable[[], datetime] = datetime.now,
        diagnostics: StructuredLogger | None = None,
    ):
        self.storage = storage
        self.fetcher = fetcher
        self.dispatcher = dispatcher
        self.llm_client_factory = llm_client_factory
        self.timer_factory = timer_factory
        self.clock = clock
        self.diagnostics = diagnostics or StructuredLogger()

        self._credentials: ImapConfig | None = None
        self._settings: AppSettings | None = None
        self._on_new_messages: NewMessagesCallback | None = None
        self._subscribers: list[NewMessagesCallback] = []

        self._timer: RepeatingTimer | None = None
        self._current_interval: float | None = None
        self._failures = 0
        self._backoff = False
        # False only between start() and stop()
        self._stopped = True
        self._polling = False
        self._last_error_kind: MailErrorKind | None = None

        self._llm_client: LLMClient | None = None
        self._llm_key: str | None = None

        # Guards timer and counter changes; stop() may come from another thread
        self._state_lock = threading.RLock()
        # Single-flight guard for poll cycles
        self._poll_lock = threading.Lock()

    # ----------------------------------------
    # Lifecycle
    # ----------------------------------------

    @property
    def state(self) -> SchedulerState:
        if self._polling:
            return SchedulerState.POLLING
        if self._stopped:
            return SchedulerState.STOPPED
        if self._backoff:
            return SchedulerState.BACKOFF
        return SchedulerState.IDLE

    @property
    def failure_count(self) -> int:
        return self._failures

    @property
    def current_interval(self) -> float | None:
        return self._current_interval

    @property
    def is_running(self) -> bool:
        return self._timer is not None

    @property
    def last_error_kind(self) -> MailErrorKind | None:
        return self._last_error_kind

    def configure(
        self,
        credentials: ImapConfig,
        settings: AppSettings,
        on_new_messages: NewMessagesCallback | None = None,
    ) -> None:
        """Set what the next cycles poll with, without arming a timer."""
        with self._state_lock:
            self._credentials = credentials
            self._settings = settings
            self._on_new_messages = on_new_messages

    def start(
        self,
        credentials: ImapConfig,
        settings: AppSettings,
        on_new_messages: NewMessagesCallback | None = None,
    ) -> PollResult:
        """Arm the regular timer and poll once immediately."""
        with self._state_lock:
            self.stop()
            self.configure(credentials, settings, on_new_messages)
            self._stopped = False
            self._last_error_kind = None
            self._arm(settings.polling_interval)

        logger.info(
            f"Polling {credentials.email}@{credentials.host} every {settings.polling_interval}s"
        )
        return self.poll_once()

    def stop(self) -> None:
        """Cancel the timer and reset the failure counter. Idempotent."""
        with self._state_lock:
            if self._timer is not None:
                logger.info("Polling stopped")
            self._cancel_timer()
            self._failures = 0
            self._backoff = False
            self._stopped = True

    def subscribe(self, callback: NewMessagesCallback) -> None:
        """Receive every batch of newly inserted messages."""
        if callback not in self._subscribers:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: NewMessagesCallback) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def _arm(self, interval: float) -> None:
        self._cancel_timer()
        self._timer = self.timer_factory(interval, self.poll_once)
        self._timer.start()
        self._current_interval = interval

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._current_interval = None

    # ----------------------------------------
    # Poll cycle
    # ----------------------------------------

    def poll_once(self) -> PollResult:
        """Run one cycle unless another is still in progress."""
        if self._credentials is None or self._settings is None:
            raise RuntimeError("Scheduler is not configured")

        if not self._poll_lock.acquire(blocking=False):
            logger.debug("Previous poll still running, skipping")
            return PollResult(skipped=True, skip_reason="poll in progress")

        try:
            settings = self._settings
            if settings.work_hours_only and not self._in_active_hours(settings):
                logger.debug("Outside active hours, skipping poll")
                return PollResult(skipped=True, skip_reason="outside active hours")

            self._polling = True
            try:
                return self._run_cycle(self._credentials, settings)
            except Exception as e:
                return self._handle_failure(e)
            finally:
                self._polling = False
        finally:
            self._poll_lock.release()

    def _in_active_hours(self, settings: AppSettings) -> bool:
        now = self.clock().time()
        return within_active_hours(
            now, parse_hhmm(settings.work_hours_start), parse_hhmm(settings.work_hours_end)
        )

    def _run_cycle(self, credentials: ImapConfig, settings: AppSettings) -> PollResult:
        watermark = self.storage.get_last_received_at()
        logger.debug(f"Fetching messages since {watermark or 'the beginning (first run)'}")

        raws = self.fetcher(credentials, watermark)
        result = PollResult(fetched=len(raws))
        if not raws:
            self._handle_success()
            return result

        rules = self.storage.get_category_rules()
        engine = DecisionEngine(
            RulesEngine(rules, settings.trust_domain_for(credentials.email)),
            llm_client=self._get_llm_client(settings),
            diagnostics=self.diagnostics,
        )
        decisions = engine.decide_batch(raws)

        for raw, decision in zip(raws, decisions):
            message = Message.from_raw(raw, decision.category, credentials.web_link)
            if self.storage.insert_message(message):
                result.new_messages.append(message)
        result.inserted = len(result.new_messages)
        logger.info(f"Fetched {result.fetched} messages, {result.inserted} new")

        if settings.notifications_enabled and result.new_messages and self.dispatcher:
            notified_ids = [
                m.id for m in result.new_messages if self.dispatcher.dispatch(m)
            ]
            self.storage.mark_notified(notified_ids)
            for message in result.new_messages:
                message.notified = message.id in notified_ids
            result.notified = len(notified_ids)

        self._emit(result.new_messages)
        self._handle_success()
        self.diagnostics.log_poll_cycle(result.fetched, result.inserted, result.notified)

        self.storage.cleanup_old_messages(settings.auto_cleanup_days)
        return result

    def _get_llm_client(self, settings: AppSettings) -> LLMClient | None:
        if not settings.ai_enabled or self.llm_client_factory is None:
            return None
        if self._llm_client is None or self._llm_key != settings.groq_api_key:
            if self._llm_client is not None:
                self._llm_client.close()
            self._llm_client = self.llm_client_factory(settings.groq_api_key)
            self._llm_key = settings.groq_api_key
        return self._llm_client

    def _emit(self, new_messages: list[Message]) -> None:
        """Hand new messages to every subscriber; one failing does not stop the rest."""
        callbacks = list(self._subscribers)
        if self._on_new_messages is not None:
            callbacks.append(self._on_new_messages)

        for callback in callbacks:
            try:
                callback(list(new_messages))
            except Exception:
                logger.exception("New-message subscriber failed")

    def _handle_success(self) -> None:
        with self._state_lock:
            self._failures = 0
            self._last_error_kind = None
            if self._backoff and not self._stopped and self._settings is not None:
                logger.info("Poll succeeded, restoring normal interval")
                self._backoff = False
                self._arm(self._settings.polling_interval)

    def _handle_failure(self, error: Exception) -> PollResult:
        kind = error.kind if isinstance(error, MailClientError) else None

        with self._state_lock:
            self._failures += 1
            self._last_error_kind = kind
            failures = self._failures
            logger.error(f"Poll failed ({failures} consecutive): {error}")
            self.diagnostics.log_error(
                "poll_failed", str(error), {"failures": failures, "kind": kind.value if kind else None}
            )

            if kind == MailErrorKind.AUTH:
                logger.error("Authentication failed, polling stopped until credentials are renewed")
                self.stop()
            elif failures >= FAILURE_THRESHOLD and not self._stopped and self._settings is not None:
                interval = compute_backoff(self._settings.polling_interval, failures)
                logger.warning(f"Backing off: next poll in {interval:.0f}s")
                self._backoff = True
                self._arm(interval)
                self.diagnostics.log_backoff(failures, interval, kind.value if kind else "unknown")

        return PollResult(error=str(error), error_kind=kind)
