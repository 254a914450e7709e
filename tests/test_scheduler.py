"""Tests for the polling scheduler."""

from datetime import datetime, time

import pytest

from emailsnap.config import AppSettings, ImapConfig
from emailsnap.imap_client import MailClientError, MailErrorKind
from emailsnap.llm_client import ClassificationResult, LLMResponse
from emailsnap.models import Message, RawMessage
from emailsnap.notifier import NotificationDispatcher
from emailsnap.scheduler import (
    PollingScheduler,
    SchedulerState,
    compute_backoff,
    within_active_hours,
)
from emailsnap.storage import Storage


def create_raw(id: str, subject: str = "주간 회의", sender_email: str = "kim@company.com", **kwargs) -> RawMessage:
    defaults = {
        "id": id,
        "sender_name": "Kim",
        "sender_email": sender_email,
        "subject": subject,
        "received_at": f"2024-01-01T09:00:{int(id) % 60:02d}+00:00",
    }
    defaults.update(kwargs)
    return RawMessage(**defaults)


class FakeTimer:
    """Stands in for RepeatingTimer; never fires on its own."""

    created: list["FakeTimer"] = []

    def __init__(self, interval, function):
        self.interval = interval
        self.function = function
        self.started = False
        self.cancelled = False
        FakeTimer.created.append(self)

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        return self.function()


class ScriptedFetcher:
    """Returns or raises the scripted outcome for each call."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls: list[str | None] = []

    def __call__(self, credentials, since):
        self.calls.append(since)
        outcome = self.outcomes.pop(0) if self.outcomes else []
        if isinstance(outcome, Exception):
            raise outcome
        return list(outcome)


class FakeNotifier:
    def __init__(self, granted=True, fail=False):
        self.granted = granted
        self.fail = fail
        self.sent: list[tuple[str, str]] = []

    def is_permission_granted(self):
        return self.granted

    def request_permission(self):
        return self.granted

    def send(self, title, body):
        if self.fail:
            raise RuntimeError("no display")
        self.sent.append((title, body))


class FakeLLM:
    def __init__(self, category: str, confidence: float):
        self.result = ClassificationResult(category=category, confidence=confidence)
        self.closed = False

    def classify_batch(self, messages):
        return LLMResponse(success=True, result=[self.result] * len(messages), raw_response="{}")

    def close(self):
        self.closed = True


def connection_error() -> MailClientError:
    return MailClientError("Connection refused", MailErrorKind.CONNECTION)


@pytest.fixture(autouse=True)
def reset_timers():
    FakeTimer.created = []
    yield


@pytest.fixture
def storage(tmp_path):
    return Storage(tmp_path / "test.db")


@pytest.fixture
def credentials():
    return ImapConfig(host="imap.test", email="me@company.com", password="secret")


@pytest.fixture
def settings():
    return AppSettings(polling_interval=60, company_domain="company.com")


def create_scheduler(storage, fetcher, notifier=None, **kwargs) -> PollingScheduler:
    dispatcher = NotificationDispatcher(notifier) if notifier else None
    return PollingScheduler(
        storage,
        fetcher=fetcher,
        dispatcher=dispatcher,
        timer_factory=FakeTimer,
        **kwargs,
    )


class TestHelpers:
    def test_backoff_doubles_from_third_failure(self):
        assert compute_backoff(60, 3) == 120
        assert compute_backoff(60, 4) == 240
        assert compute_backoff(60, 5) == 480

    def test_backoff_is_capped(self):
        assert compute_backoff(60, 6) == 600
        assert compute_backoff(300, 3) == 600

    def test_active_hours_inclusive(self):
        start, end = time(9, 0), time(18, 0)
        assert within_active_hours(time(9, 0), start, end)
        assert within_active_hours(time(18, 0), start, end)
        assert not within_active_hours(time(18, 1), start, end)
        assert not within_active_hours(time(8, 59), start, end)

    def test_active_hours_overnight(self):
        start, end = time(22, 0), time(6, 0)
        assert within_active_hours(time(23, 30), start, end)
        assert within_active_hours(time(5, 0), start, end)
        assert not within_active_hours(time(12, 0), start, end)


class TestLifecycle:
    def test_start_arms_timer_and_polls_immediately(self, storage, credentials, settings):
        fetcher = ScriptedFetcher([])
        scheduler = create_scheduler(storage, fetcher)

        result = scheduler.start(credentials, settings)

        assert result.success
        assert fetcher.calls == [None]
        assert len(FakeTimer.created) == 1
        assert FakeTimer.created[0].interval == 60
        assert FakeTimer.created[0].started
        assert scheduler.is_running
        assert scheduler.state == SchedulerState.IDLE

    def test_restart_cancels_previous_timer(self, storage, credentials, settings):
        scheduler = create_scheduler(storage, ScriptedFetcher())
        scheduler.start(credentials, settings)
        scheduler.start(credentials, settings)

        first, second = FakeTimer.created
        assert first.cancelled
        assert not second.cancelled

    def test_stop_is_idempotent(self, storage, credentials, settings):
        scheduler = create_scheduler(storage, ScriptedFetcher())
        scheduler.start(credentials, settings)

        scheduler.stop()
        scheduler.stop()

        assert FakeTimer.created[0].cancelled
        assert not scheduler.is_running
        assert scheduler.state == SchedulerState.STOPPED

    def test_poll_requires_configuration(self, storage):
        with pytest.raises(RuntimeError):
            create_scheduler(storage, ScriptedFetcher()).poll_once()

    def test_timer_fire_runs_a_cycle(self, storage, credentials, settings):
        fetcher = ScriptedFetcher([], [create_raw("1")])
        scheduler = create_scheduler(storage, fetcher)
        scheduler.start(credentials, settings)

        result = FakeTimer.created[0].fire()

        assert result.inserted == 1


class TestPollCycle:
    def test_new_messages_stored_notified_and_emitted(self, storage, credentials, settings):
        notifier = FakeNotifier()
        received: list[list[Message]] = []
        scheduler = create_scheduler(
            storage,
            ScriptedFetcher(
                [
                    create_raw("1", subject="[긴급] 서버 장애", sender_email="noreply@company.com"),
                    create_raw("2", sender_email="partner@vendor.io"),
                ]
            ),
            notifier,
        )

        result = scheduler.start(credentials, settings, on_new_messages=received.append)

        assert result.fetched == 2
        assert result.inserted == 2
        assert result.notified == 2
        assert storage.get_message("1").category == "urgent"
        assert storage.get_message("2").category == "external"
        assert storage.get_message("1").notified is True
        assert notifier.sent[0] == ("🔴 Kim", "[긴급] 서버 장애")
        assert [m.id for m in received[0]] == ["1", "2"]

    def test_duplicates_are_not_renotified(self, storage, credentials, settings):
        notifier = FakeNotifier()
        raws = [create_raw("1")]
        scheduler = create_scheduler(storage, ScriptedFetcher(raws, raws), notifier)

        scheduler.start(credentials, settings)
        second = scheduler.poll_once()

        assert second.fetched == 1
        assert second.inserted == 0
        assert len(notifier.sent) == 1

    def test_watermark_passed_to_fetcher(self, storage, credentials, settings):
        fetcher = ScriptedFetcher(
            [create_raw("1", received_at="2024-01-02T10:00:00+00:00")], []
        )
        scheduler = create_scheduler(storage, fetcher)

        scheduler.start(credentials, settings)
        scheduler.poll_once()

        assert fetcher.calls == [None, "2024-01-02T10:00:00+00:00"]

    def test_notifications_disabled(self, storage, credentials):
        notifier = FakeNotifier()
        settings = AppSettings(notifications_enabled=False)
        scheduler = create_scheduler(storage, ScriptedFetcher([create_raw("1")]), notifier)

        result = scheduler.start(credentials, settings)

        assert result.inserted == 1
        assert notifier.sent == []
        assert storage.get_message("1").notified is False

    def test_failed_notification_does_not_fail_cycle(self, storage, credentials, settings):
        scheduler = create_scheduler(
            storage, ScriptedFetcher([create_raw("1")]), FakeNotifier(fail=True)
        )

        result = scheduler.start(credentials, settings)

        assert result.success
        assert result.notified == 0
        assert storage.get_message("1").notified is False

    def test_failing_subscriber_does_not_block_others(self, storage, credentials, settings):
        received = []

        def broken(messages):
            raise ValueError("subscriber bug")

        scheduler = create_scheduler(storage, ScriptedFetcher([create_raw("1")]))
        scheduler.subscribe(broken)
        scheduler.subscribe(received.append)

        result = scheduler.start(credentials, settings)

        assert result.success
        assert len(received) == 1
        assert scheduler.failure_count == 0

    def test_unsubscribe(self, storage, credentials, settings):
        received = []
        scheduler = create_scheduler(storage, ScriptedFetcher([create_raw("1")]))
        scheduler.subscribe(received.append)
        scheduler.unsubscribe(received.append)

        scheduler.start(credentials, settings)
        assert received == []

    def test_cleanup_runs_after_cycle(self, storage, credentials, settings):
        storage.insert_message(
            Message(
                id="ancient",
                sender_name="",
                sender_email="a@company.com",
                subject="old",
                received_at="2020-01-01T00:00:00+00:00",
                created_at="2020-01-01T00:00:00+00:00",
            )
        )
        scheduler = create_scheduler(storage, ScriptedFetcher([create_raw("1")]))

        scheduler.start(credentials, settings)

        assert storage.get_message("ancient") is None
        assert storage.get_message("1") is not None

    def test_outside_active_hours_skips(self, storage, credentials):
        fetcher = ScriptedFetcher([create_raw("1")])
        settings = AppSettings(work_hours_only=True, work_hours_start="09:00", work_hours_end="18:00")
        scheduler = create_scheduler(
            storage, fetcher, clock=lambda: datetime(2024, 1, 1, 20, 0)
        )

        result = scheduler.start(credentials, settings)

        assert result.skipped
        assert result.skip_reason == "outside active hours"
        assert fetcher.calls == []

    def test_inside_active_hours_polls(self, storage, credentials):
        fetcher = ScriptedFetcher([])
        settings = AppSettings(work_hours_only=True)
        scheduler = create_scheduler(
            storage, fetcher, clock=lambda: datetime(2024, 1, 1, 10, 30)
        )

        scheduler.start(credentials, settings)
        assert fetcher.calls == [None]

    def test_overlapping_poll_is_skipped(self, storage, credentials, settings):
        nested = []

        def reentrant_fetcher(creds, since):
            nested.append(scheduler.poll_once())
            return []

        scheduler = create_scheduler(storage, reentrant_fetcher)
        result = scheduler.start(credentials, settings)

        assert result.success
        assert nested[0].skipped
        assert nested[0].skip_reason == "poll in progress"

    def test_state_is_polling_during_cycle(self, storage, credentials, settings):
        states = []

        def fetcher(creds, since):
            states.append(scheduler.state)
            return []

        scheduler = create_scheduler(storage, fetcher)
        scheduler.start(credentials, settings)

        assert states == [SchedulerState.POLLING]
        assert scheduler.state == SchedulerState.IDLE


class TestAIClassification:
    def test_confident_ai_overrides_rules(self, storage, credentials):
        settings = AppSettings(company_domain="company.com", ai_categorization=True, groq_api_key="gsk_x")
        keys = []

        def factory(api_key):
            keys.append(api_key)
            return FakeLLM("approval", 0.9)

        scheduler = create_scheduler(
            storage, ScriptedFetcher([create_raw("1")]), llm_client_factory=factory
        )
        scheduler.start(credentials, settings)

        assert keys == ["gsk_x"]
        assert storage.get_message("1").category == "approval"

    def test_low_confidence_keeps_rule_category(self, storage, credentials):
        settings = AppSettings(company_domain="company.com", ai_categorization=True, groq_api_key="gsk_x")
        scheduler = create_scheduler(
            storage,
            ScriptedFetcher([create_raw("1")]),
            llm_client_factory=lambda key: FakeLLM("approval", 0.5),
        )
        scheduler.start(credentials, settings)

        assert storage.get_message("1").category == "internal"

    def test_ai_unused_without_key(self, storage, credentials):
        settings = AppSettings(company_domain="company.com", ai_categorization=True)
        factory_calls = []
        scheduler = create_scheduler(
            storage,
            ScriptedFetcher([create_raw("1")]),
            llm_client_factory=lambda key: factory_calls.append(key),
        )
        scheduler.start(credentials, settings)

        assert factory_calls == []
        assert storage.get_message("1").category == "internal"


class TestFailures:
    def test_backoff_after_three_failures(self, storage, credentials, settings):
        fetcher = ScriptedFetcher(*[connection_error() for _ in range(6)])
        scheduler = create_scheduler(storage, fetcher)

        scheduler.start(credentials, settings)
        scheduler.poll_once()
        assert scheduler.failure_count == 2
        assert scheduler.current_interval == 60
        assert scheduler.state == SchedulerState.IDLE

        scheduler.poll_once()
        assert scheduler.current_interval == 120
        assert scheduler.state == SchedulerState.BACKOFF

        scheduler.poll_once()
        assert scheduler.current_interval == 240

        scheduler.poll_once()
        scheduler.poll_once()
        assert scheduler.failure_count == 6
        assert scheduler.current_interval == 600

    def test_configured_only_never_arms_backoff(self, storage, credentials, settings):
        fetcher = ScriptedFetcher(*[connection_error() for _ in range(3)])
        scheduler = create_scheduler(storage, fetcher)
        scheduler.configure(credentials, settings)

        for _ in range(3):
            scheduler.poll_once()

        assert scheduler.failure_count == 3
        assert FakeTimer.created == []
        assert not scheduler.is_running

    def test_success_restores_normal_interval(self, storage, credentials, settings):
        fetcher = ScriptedFetcher(
            connection_error(), connection_error(), connection_error(), [create_raw("1")]
        )
        scheduler = create_scheduler(storage, fetcher)

        scheduler.start(credentials, settings)
        scheduler.poll_once()
        scheduler.poll_once()
        assert scheduler.current_interval == 120

        result = scheduler.poll_once()

        assert result.success
        assert scheduler.failure_count == 0
        assert scheduler.current_interval == 60
        assert scheduler.state == SchedulerState.IDLE
        assert FakeTimer.created[-1].interval == 60
        assert not FakeTimer.created[-1].cancelled

    def test_failure_result_carries_kind(self, storage, credentials, settings):
        scheduler = create_scheduler(storage, ScriptedFetcher(connection_error()))
        result = scheduler.start(credentials, settings)

        assert result.error == "Connection refused"
        assert result.error_kind == MailErrorKind.CONNECTION
        assert scheduler.failure_count == 1

    def test_auth_failure_stops_polling(self, storage, credentials, settings):
        fetcher = ScriptedFetcher(MailClientError("Authentication failed", MailErrorKind.AUTH))
        scheduler = create_scheduler(storage, fetcher)

        result = scheduler.start(credentials, settings)

        assert result.error_kind == MailErrorKind.AUTH
        assert not scheduler.is_running
        assert scheduler.state == SchedulerState.STOPPED
        assert scheduler.last_error_kind == MailErrorKind.AUTH
        assert FakeTimer.created[0].cancelled

    def test_storage_error_counts_as_failure(self, storage, credentials, settings):
        def broken_fetcher(creds, since):
            raise ValueError("bad data")

        scheduler = create_scheduler(storage, broken_fetcher)
        result = scheduler.start(credentials, settings)

        assert result.error == "bad data"
        assert result.error_kind is None
        assert scheduler.is_running

    def test_stop_resets_counter(self, storage, credentials, settings):
        scheduler = create_scheduler(storage, ScriptedFetcher(connection_error(), connection_error()))
        scheduler.start(credentials, settings)
        scheduler.poll_once()
        assert scheduler.failure_count == 2

        scheduler.stop()
        assert scheduler.failure_count == 0

    def test_schedulers_do_not_share_state(self, tmp_path, credentials, settings):
        failing = create_scheduler(Storage(tmp_path / "a.db"), ScriptedFetcher(connection_error()))
        healthy = create_scheduler(Storage(tmp_path / "b.db"), ScriptedFetcher([]))

        failing.start(credentials, settings)
        healthy.start(credentials, settings)

        assert failing.failure_count == 1
        assert healthy.failure_count == 0
