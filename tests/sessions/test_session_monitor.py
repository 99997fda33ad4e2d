"""
Session Activity Monitor Tests

Deterministic tests drive check_session() with a FakeClock; the threaded
tests use millisecond timeouts against the real clock to prove that
monitors fire exactly once and that cancelled monitors never fire.

Usage:
    pytest tests/sessions -v -s
"""

import threading
import time
import pytest
from datetime import timedelta

from guard.audit import AuditWriter
from guard.config import GuardConfig
from guard.errors import SessionExpired, UnknownSession
from guard.models import AuditAction, SessionStatus
from guard.sessions import SessionActivityMonitor


TIMEOUT_S = 60


@pytest.fixture
def config():
    return GuardConfig(session_timeout_ms=TIMEOUT_S * 1000, session_warning_ms=10000)


@pytest.fixture
def monitor(config, sink, clock):
    monitor = SessionActivityMonitor(config, AuditWriter(sink, config, clock=clock), clock=clock)
    yield monitor
    monitor.shutdown()


def actions(sink):
    return [e.action for e in sink.events()]


# =============================================================================
# Lifecycle
# =============================================================================

class TestLifecycle:

    def test_open_session_is_active_and_audited(self, monitor, sink):
        session = monitor.open_session("user_1", source_ip="8.8.8.8", user_agent="UA")

        assert session.status == SessionStatus.ACTIVE
        assert session.expires_at == session.created_at + timedelta(seconds=TIMEOUT_S)
        assert actions(sink) == [AuditAction.SESSION_STARTED]

    def test_duplicate_active_session_id_rejected(self, monitor):
        monitor.open_session("user_1", session_id="s1")
        with pytest.raises(ValueError):
            monitor.open_session("user_1", session_id="s1")

    def test_logout_ends_session(self, monitor, sink):
        monitor.open_session("user_1", session_id="s1")
        ended = monitor.end_session("s1")

        assert ended.status == SessionStatus.ENDED
        assert AuditAction.LOGOUT in actions(sink)
        with pytest.raises(SessionExpired):
            monitor.track_activity("s1")

    def test_logout_twice_audits_once(self, monitor, sink):
        monitor.open_session("user_1", session_id="s1")
        monitor.end_session("s1")
        monitor.end_session("s1")
        assert actions(sink).count(AuditAction.LOGOUT) == 1

    def test_terminate_other_sessions(self, monitor):
        keep = monitor.open_session("user_1")
        other = monitor.open_session("user_1")
        foreign = monitor.open_session("user_2")

        assert monitor.terminate_other_sessions("user_1", keep.session_id) == [other.session_id]
        active = {s.session_id for s in monitor.active_sessions()}
        assert active == {keep.session_id, foreign.session_id}


# =============================================================================
# Activity
# =============================================================================

class TestActivity:

    def test_activity_refreshes_idle_timer(self, monitor, clock):
        monitor.open_session("user_1", session_id="s1")
        clock.advance(50)
        monitor.track_activity("s1", "key")
        clock.advance(50)

        assert monitor.check_session("s1") == SessionStatus.ACTIVE

    def test_unrecognized_signal_is_ignored(self, monitor, clock):
        opened = monitor.open_session("user_1", session_id="s1")
        clock.advance(30)
        session = monitor.track_activity("s1", "resize")
        assert session.last_activity_at == opened.last_activity_at

    def test_unknown_session(self, monitor):
        with pytest.raises(UnknownSession):
            monitor.track_activity("missing")

    def test_unknown_ids_do_not_accumulate_locks(self, monitor):
        for i in range(100):
            with pytest.raises(UnknownSession):
                monitor.track_activity(f"bogus_{i}")
            assert monitor.check_session(f"bogus_{i}") == SessionStatus.ENDED
        assert len(monitor._session_locks) == 0

    def test_late_activity_cannot_revive(self, monitor, clock, sink):
        monitor.open_session("user_1", session_id="s1")
        clock.advance(TIMEOUT_S + 1)

        with pytest.raises(SessionExpired):
            monitor.track_activity("s1")
        assert monitor.get_session("s1").status == SessionStatus.EXPIRED
        assert actions(sink).count(AuditAction.SESSION_TIMEOUT) == 1


# =============================================================================
# Expiry (deterministic)
# =============================================================================

class TestExpiry:

    def test_exact_timeout_is_not_expired(self, monitor, clock):
        monitor.open_session("user_1", session_id="s1")
        clock.advance(TIMEOUT_S)
        assert monitor.check_session("s1") == SessionStatus.ACTIVE

    def test_expiry_fires_callback_once(self, monitor, clock, sink):
        fired = []
        monitor.open_session("user_1", session_id="s1")
        monitor.start_monitor("s1", on_timeout=fired.append)
        clock.advance(TIMEOUT_S + 1)

        assert monitor.check_session("s1") == SessionStatus.EXPIRED
        assert monitor.check_session("s1") == SessionStatus.EXPIRED
        assert [s.session_id for s in fired] == ["s1"]
        assert actions(sink).count(AuditAction.SESSION_TIMEOUT) == 1
        assert not monitor.is_monitored("s1")

    def test_timeout_event_carries_idle_seconds(self, monitor, clock, sink):
        monitor.open_session("user_1", session_id="s1")
        clock.advance(TIMEOUT_S + 5)
        monitor.check_session("s1")

        [event] = [e for e in sink.query(since=clock() - timedelta(hours=1), until=clock())
                   if e.action == AuditAction.SESSION_TIMEOUT]
        assert event.subject_id == "user_1"
        assert event.metadata["idle_seconds"] == str(TIMEOUT_S + 5)

    def test_warning_before_expiry(self, monitor, clock, sink):
        warnings = []
        monitor.open_session("user_1", session_id="s1")
        monitor.start_monitor(
            "s1",
            on_timeout=lambda s: None,
            on_warning=lambda s, remaining: warnings.append(remaining),
        )
        clock.advance(TIMEOUT_S - 5)

        monitor.check_session("s1")
        monitor.check_session("s1")
        assert warnings == [timedelta(seconds=5)]
        assert actions(sink).count(AuditAction.SESSION_WARNING) == 1

    def test_sweep_expires_and_forgets(self, monitor, clock):
        monitor.open_session("user_1", session_id="s1")
        clock.advance(TIMEOUT_S + 1)
        assert monitor.sweep() == ["s1"]

        clock.advance(TIMEOUT_S + 1)
        monitor.sweep()
        with pytest.raises(UnknownSession):
            monitor.get_session("s1")

    def test_failing_callback_is_contained(self, monitor, clock):
        def explode(session):
            raise RuntimeError("ui gone")

        monitor.open_session("user_1", session_id="s1")
        monitor.start_monitor("s1", on_timeout=explode)
        clock.advance(TIMEOUT_S + 1)
        assert monitor.check_session("s1") == SessionStatus.EXPIRED


# =============================================================================
# Timers (threaded)
# =============================================================================

class TestMonitorTimers:
    """Real threads, real clock, millisecond timeouts."""

    @pytest.fixture
    def fast_monitor(self, sink):
        config = GuardConfig(session_timeout_ms=80, session_warning_ms=0, activity_poll_ms=10)
        monitor = SessionActivityMonitor(config, AuditWriter(sink, config))
        yield monitor
        monitor.shutdown()

    def test_timeout_fires_exactly_once(self, fast_monitor):
        fired = []
        done = threading.Event()

        def on_timeout(session):
            fired.append(session.session_id)
            done.set()

        session = fast_monitor.open_session("user_1")
        fast_monitor.track_activity(session.session_id)
        fast_monitor.start_monitor(session.session_id, on_timeout)

        assert done.wait(2.0)
        time.sleep(0.1)
        assert fired == [session.session_id]
        print(f"\n✅ Timeout fired once for {session.session_id}")

    def test_stop_monitor_prevents_callback(self, fast_monitor):
        fired = []
        session = fast_monitor.open_session("user_1")
        fast_monitor.start_monitor(session.session_id, fired.append)

        fast_monitor.stop_monitor(session.session_id)
        fast_monitor.stop_monitor(session.session_id)
        time.sleep(0.25)

        assert fired == []
        assert not fast_monitor.is_monitored(session.session_id)

    def test_shutdown_cancels_every_monitor(self, fast_monitor):
        fired = []
        ids = [fast_monitor.open_session(f"user_{i}").session_id for i in range(5)]
        for session_id in ids:
            fast_monitor.start_monitor(session_id, fired.append)

        fast_monitor.shutdown()
        time.sleep(0.25)

        assert fired == []
        assert not any(fast_monitor.is_monitored(sid) for sid in ids)

    def test_stop_unknown_monitor_is_noop(self, fast_monitor):
        fast_monitor.stop_monitor("never-started")

    def test_monitor_on_ended_session_rejected(self, fast_monitor):
        session = fast_monitor.open_session("user_1")
        fast_monitor.end_session(session.session_id)

        with pytest.raises(SessionExpired):
            fast_monitor.start_monitor(session.session_id, lambda s: None)
        assert not fast_monitor.is_monitored(session.session_id)

    def test_leftover_monitor_on_terminal_session_stops(self, fast_monitor):
        fired = []
        session = fast_monitor.open_session("user_1")
        fast_monitor.start_monitor(session.session_id, fired.append)
        # Ended behind the monitor's back
        fast_monitor._sessions[session.session_id].status = SessionStatus.ENDED

        deadline = time.time() + 1.0
        while fast_monitor.is_monitored(session.session_id) and time.time() < deadline:
            time.sleep(0.01)
        assert not fast_monitor.is_monitored(session.session_id)
        assert fired == []
