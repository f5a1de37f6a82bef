"""Tests for the secret-gated refresh trigger."""

from __future__ import annotations

import threading

import pytest

from streamboard.config import Environment, TriggerConfig
from streamboard.errors import AuthorizationError, StoreError
from streamboard.refresh import RefreshGuard, RefreshReport
from streamboard.trigger import RefreshTrigger, TriggerMode, TriggerStatus


class FakeEngine:
    """Records refresh calls; optionally blocks or fails."""

    def __init__(self, error: Exception | None = None, gate: threading.Event | None = None):
        self.calls = 0
        self.error = error
        self.gate = gate

    def refresh_all(self) -> RefreshReport:
        self.calls += 1
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.error is not None:
            raise self.error
        return RefreshReport(started_at=1.0, finished_at=2.0)


PRODUCTION = TriggerConfig(environment=Environment.PRODUCTION, admin_secret="s3cret")


class TestAuthorization:
    def test_development_runs_unauthenticated(self):
        engine = FakeEngine()
        trigger = RefreshTrigger(engine, TriggerConfig())

        result = trigger.trigger(TriggerMode.SYNCHRONOUS)

        assert result.status == TriggerStatus.COMPLETED
        assert engine.calls == 1

    @pytest.mark.parametrize("secret", [None, "", "wrong", "s3cret "])
    def test_production_rejects_bad_secret(self, secret):
        engine = FakeEngine()
        trigger = RefreshTrigger(engine, PRODUCTION)

        with pytest.raises(AuthorizationError):
            trigger.trigger(TriggerMode.SYNCHRONOUS, secret=secret)

        assert engine.calls == 0
        assert not trigger.guard.running

    def test_production_without_configured_secret_refuses(self):
        engine = FakeEngine()
        trigger = RefreshTrigger(engine, TriggerConfig(environment=Environment.PRODUCTION))

        with pytest.raises(AuthorizationError, match="not configured"):
            trigger.trigger(TriggerMode.SYNCHRONOUS, secret="anything")

        assert engine.calls == 0

    def test_production_accepts_matching_secret(self):
        engine = FakeEngine()
        trigger = RefreshTrigger(engine, PRODUCTION)

        result = trigger.trigger(TriggerMode.SYNCHRONOUS, secret="s3cret")

        assert result.status == TriggerStatus.COMPLETED
        assert result.report is not None
        assert trigger.last_report is result.report


class TestModes:
    def test_fire_and_forget_returns_immediately(self):
        gate = threading.Event()
        engine = FakeEngine(gate=gate)
        trigger = RefreshTrigger(engine, TriggerConfig())

        result = trigger.trigger(TriggerMode.FIRE_AND_FORGET)

        assert result.status == TriggerStatus.STARTED
        assert result.report is None
        assert trigger.guard.running

        gate.set()
        assert trigger.wait(timeout=5)
        assert engine.calls == 1
        assert trigger.last_report is not None
        assert not trigger.guard.running

    def test_background_failure_is_logged_not_raised(self, caplog):
        engine = FakeEngine(error=StoreError("disk full"))
        trigger = RefreshTrigger(engine, TriggerConfig())

        trigger.trigger(TriggerMode.FIRE_AND_FORGET)
        assert trigger.wait(timeout=5)

        assert trigger.last_report is None
        assert not trigger.guard.running
        assert "Background refresh error" in caplog.text

    def test_synchronous_failure_reports_generic_message(self):
        engine = FakeEngine(error=StoreError("/var/lib/streamboard.sqlite is read-only"))
        trigger = RefreshTrigger(engine, TriggerConfig())

        result = trigger.trigger(TriggerMode.SYNCHRONOUS)

        assert result.status == TriggerStatus.FAILED
        assert result.message == "Failed to refresh stats"
        assert "read-only" not in result.message
        assert not trigger.guard.running

    def test_wait_without_refresh(self):
        assert RefreshTrigger(FakeEngine(), TriggerConfig()).wait()


class TestSingleFlight:
    def test_second_trigger_refused_while_running(self):
        gate = threading.Event()
        engine = FakeEngine(gate=gate)
        trigger = RefreshTrigger(engine, TriggerConfig())

        trigger.trigger(TriggerMode.FIRE_AND_FORGET)
        second = trigger.trigger(TriggerMode.SYNCHRONOUS)

        assert second.status == TriggerStatus.ALREADY_RUNNING
        gate.set()
        trigger.wait(timeout=5)
        assert engine.calls == 1

    def test_guard_shared_between_triggers(self):
        guard = RefreshGuard()
        assert guard.acquire()

        result = RefreshTrigger(FakeEngine(), TriggerConfig(), guard=guard).trigger(TriggerMode.SYNCHRONOUS)

        assert result.status == TriggerStatus.ALREADY_RUNNING
        guard.release()
