"""
Tests for sweep scheduling and notification dispatch.
"""

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from cert_alarm.config import Config, DailyReportConfig, ScheduleConfig, SmtpConfig
from cert_alarm.dispatch import DispatchOutcome
from cert_alarm.errors import SchedulerError
from cert_alarm.metrics import MetricsCollector
from cert_alarm.models import CertificateRecord, CheckStatus, ProbeMethod
from cert_alarm.normalizer import error_record
from cert_alarm.scheduler import CertificateScheduler, build_trigger
from cert_alarm.store import MEMORY_DATABASE, CertificateStore

NOW = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


def success(domain, days):
    return CertificateRecord(
        domain=domain,
        status=CheckStatus.SUCCESS,
        observed_at=NOW,
        issuer="R11",
        subject=domain,
        valid_to=NOW + timedelta(days=days),
        days_until_expiry=days,
        method=ProbeMethod.TLS,
    )


SCENARIO = {
    "good.example.com": success("good.example.com", 400),
    "dying.example.com": success("dying.example.com", 5),
    "down.example.com": error_record("down.example.com", "Connection refused", NOW),
}


class FakeResolver:
    """Resolver returning canned records, optionally blocking until released."""

    def __init__(self, records=None, gate=None):
        self.records = records or SCENARIO
        self.gate = gate
        self.calls = 0

    async def resolve_all(self, domains):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        return [self.records[d] for d in domains]


def make_config(**overrides):
    values = {
        "domains": list(SCENARIO),
        "warning_days": 30,
        "schedule": ScheduleConfig(cron_expression="0 3 1 1 *", timezone="UTC"),
        "daily_report": DailyReportConfig(enabled=True),
        "smtp": SmtpConfig(recipients=["ops@example.com"]),
    }
    values.update(overrides)
    return Config(**values)


def make_mailer():
    mailer = MagicMock()
    mailer.send_alert = AsyncMock(return_value=True)
    mailer.send_daily_report = AsyncMock(return_value=True)
    return mailer


@pytest.fixture
def store():
    store = CertificateStore(MEMORY_DATABASE)
    yield store
    store.close()


@pytest_asyncio.fixture
async def scheduler(store):
    scheduler = CertificateScheduler(
        config=make_config(),
        resolver=FakeResolver(),
        store=store,
        mailer=make_mailer(),
        scheduler=AsyncIOScheduler(timezone="UTC"),
        clock=lambda: NOW,
    )
    yield scheduler
    await scheduler.shutdown()


class TestTriggerLifecycle:
    """Test cron trigger management."""

    @pytest.mark.asyncio
    async def test_start_registers_one_job(self, scheduler):
        assert scheduler.start() is True
        assert scheduler.start() is True

        assert scheduler.is_active
        assert scheduler.active_job_ids() == [CertificateScheduler.JOB_ID]

    @pytest.mark.asyncio
    async def test_reload_keeps_single_job(self, scheduler):
        scheduler.start()
        new_config = make_config(
            schedule=ScheduleConfig(cron_expression="30 4 * * *", timezone="Asia/Shanghai")
        )

        assert scheduler.reload(new_config) is True

        assert scheduler.active_job_ids() == [CertificateScheduler.JOB_ID]
        assert scheduler.config is new_config
        scheduler.mailer.update_config.assert_called_once_with(new_config.smtp)
        status = scheduler.get_status()
        assert status["cron_expression"] == "30 4 * * *"
        assert status["timezone"] == "Asia/Shanghai"

    @pytest.mark.asyncio
    async def test_reload_swaps_resolver(self, scheduler):
        resolver = FakeResolver()

        scheduler.reload(make_config(), resolver=resolver)

        assert scheduler.resolver is resolver

    @pytest.mark.asyncio
    async def test_invalid_cron_leaves_no_trigger(self, scheduler):
        scheduler.start()
        bad = make_config()
        bad.schedule.cron_expression = "99 * * * *"

        assert scheduler.reload(bad) is False
        assert not scheduler.is_active
        assert "99 * * * *" in scheduler.get_status()["schedule_error"]

        assert scheduler.reload(make_config()) is True
        assert scheduler.get_status()["schedule_error"] is None

    def test_build_trigger_rejects_bad_cron(self):
        with pytest.raises(SchedulerError, match="Invalid schedule"):
            build_trigger(ScheduleConfig(cron_expression="61 * * * *", timezone="UTC"))

    def test_build_trigger_uses_timezone(self):
        schedule = ScheduleConfig(cron_expression="30 4 * * *", timezone="Asia/Shanghai")

        trigger = build_trigger(schedule)

        assert str(trigger.timezone) == "Asia/Shanghai"

    @pytest.mark.asyncio
    async def test_stop_removes_trigger(self, scheduler):
        scheduler.start()

        scheduler.stop()
        scheduler.stop()

        assert not scheduler.is_active
        assert scheduler.active_job_ids() == []

    @pytest.mark.asyncio
    async def test_disabled_schedule(self, scheduler):
        scheduler.start()

        result = scheduler.reload(make_config(schedule=ScheduleConfig(enabled=False)))

        assert result is False
        assert scheduler.active_job_ids() == []

    @pytest.mark.asyncio
    async def test_status_keys(self, scheduler):
        scheduler.start()

        status = scheduler.get_status()

        assert status["active"] is True
        assert status["enabled"] is True
        assert status["sweeping"] is False
        assert status["next_run_time"] is not None
        assert status["last_sweep_time"] is None
        assert status["last_report_sent"] is None
        assert status["schedule_error"] is None


class TestSweeps:
    """Test sweep execution and single-flight behaviour."""

    @pytest.mark.asyncio
    async def test_manual_check_partitions_records(self, scheduler, store):
        sweep = await scheduler.manual_check()

        assert sweep.total == 3
        assert sweep.healthy == 1
        assert sweep.expiring == 1
        assert sweep.failed == 1
        assert [r.domain for r in sweep.expiring_records] == ["dying.example.com"]
        assert sweep.source == "manual"
        assert scheduler.get_last_sweep_result() is sweep
        assert len(store.latest_records()) == 3

    @pytest.mark.asyncio
    async def test_concurrent_manual_checks_share_one_sweep(self, store):
        gate = asyncio.Event()
        resolver = FakeResolver(gate=gate)
        scheduler = CertificateScheduler(
            make_config(), resolver, store, make_mailer(), clock=lambda: NOW
        )

        first = asyncio.create_task(scheduler.manual_check())
        await asyncio.sleep(0)
        second = asyncio.create_task(scheduler.manual_check())
        await asyncio.sleep(0)
        assert scheduler.is_sweeping

        gate.set()
        results = await asyncio.gather(first, second)

        assert resolver.calls == 1
        assert results[0] is results[1]
        assert not scheduler.is_sweeping

    @pytest.mark.asyncio
    async def test_scheduled_run_skipped_while_sweeping(self, store):
        gate = asyncio.Event()
        resolver = FakeResolver(gate=gate)
        scheduler = CertificateScheduler(
            make_config(), resolver, store, make_mailer(), clock=lambda: NOW
        )

        manual = asyncio.create_task(scheduler.manual_check())
        await asyncio.sleep(0)

        assert await scheduler.run_scheduled_sweep() is None

        gate.set()
        await manual
        assert resolver.calls == 1

    @pytest.mark.asyncio
    async def test_sweep_updates_metrics(self, store):
        metrics = MetricsCollector()
        scheduler = CertificateScheduler(
            make_config(), FakeResolver(), store, make_mailer(), metrics=metrics, clock=lambda: NOW
        )

        await scheduler.manual_check()

        output = metrics.get_metrics()
        assert 'cert_days_until_expiry{domain="dying.example.com"} 5' in output

    @pytest.mark.asyncio
    async def test_scheduled_sweep_only_appends_history(self, scheduler, store):
        """Old history rows survive scheduled sweeps."""
        for age in (400, 399):
            store.save_record(
                replace(success("good.example.com", 30), observed_at=NOW - timedelta(days=age))
            )

        await scheduler.run_scheduled_sweep()
        await scheduler.run_scheduled_sweep()

        history = store.history("good.example.com")
        assert len(history) == 4
        assert history[-1].observed_at == NOW - timedelta(days=400)

    @pytest.mark.asyncio
    async def test_last_sweep_rebuilt_from_store(self, scheduler, store):
        await scheduler.manual_check()

        restarted = CertificateScheduler(
            make_config(domains=["good.example.com", "dying.example.com"]),
            FakeResolver(),
            store,
            make_mailer(),
            clock=lambda: NOW,
        )
        sweep = restarted.get_last_sweep_result()

        assert sweep.source == "store"
        assert sweep.total == 2
        assert sweep.expiring == 1
        assert sweep.sweep_time == NOW

    def test_no_sweep_yet(self, store):
        scheduler = CertificateScheduler(
            make_config(), FakeResolver(), store, make_mailer(), clock=lambda: NOW
        )

        assert scheduler.get_last_sweep_result() is None


class TestNotifications:
    """Test alert and daily report dispatch."""

    @pytest.mark.asyncio
    async def test_trigger_sends_alert_and_report_once(self, scheduler, store):
        await scheduler._on_trigger()
        await scheduler._on_trigger()

        assert scheduler.mailer.send_alert.await_count == 1
        assert scheduler.mailer.send_daily_report.await_count == 1
        assert store.get_claim("alert:2025-06-01").is_sent
        assert store.get_claim("daily-report:2025-06-01").is_sent
        assert scheduler.get_status()["last_report_sent"] is not None

        expiring, recipients, warning_days = scheduler.mailer.send_alert.await_args.args
        assert [r.domain for r in expiring] == ["dying.example.com"]
        assert recipients == ["ops@example.com"]
        assert warning_days == 30

    @pytest.mark.asyncio
    async def test_no_alert_without_expiring(self, store):
        records = {"good.example.com": success("good.example.com", 400)}
        mailer = make_mailer()
        scheduler = CertificateScheduler(
            make_config(domains=["good.example.com"]),
            FakeResolver(records),
            store,
            mailer,
            clock=lambda: NOW,
        )

        sweep = await scheduler.manual_check()

        assert await scheduler.dispatch_alerts(sweep) is None
        mailer.send_alert.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_report_disabled(self, store):
        mailer = make_mailer()
        scheduler = CertificateScheduler(
            make_config(daily_report=DailyReportConfig(enabled=False)),
            FakeResolver(),
            store,
            mailer,
            clock=lambda: NOW,
        )

        assert await scheduler.execute_daily_report() is None
        mailer.send_daily_report.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_report_without_recipients(self, store):
        scheduler = CertificateScheduler(
            make_config(smtp=SmtpConfig(recipients=[])),
            FakeResolver(),
            store,
            make_mailer(),
            clock=lambda: NOW,
        )

        assert await scheduler.execute_daily_report() is None

    @pytest.mark.asyncio
    async def test_report_runs_fresh_sweep(self, scheduler):
        outcome = await scheduler.execute_daily_report()

        assert outcome == DispatchOutcome.SENT
        recipients, sweep = scheduler.mailer.send_daily_report.await_args.args
        assert recipients == ["ops@example.com"]
        assert sweep.total == 3

    @pytest.mark.asyncio
    async def test_forced_report_respects_resend_setting(self, scheduler):
        assert await scheduler.execute_daily_report() == DispatchOutcome.SENT
        assert await scheduler.execute_daily_report(force=True) == DispatchOutcome.SKIPPED

        scheduler.reload(
            make_config(daily_report=DailyReportConfig(enabled=True, allow_same_day_resend=True))
        )

        assert await scheduler.execute_daily_report(force=True) == DispatchOutcome.SENT
        assert scheduler.mailer.send_daily_report.await_count == 2

    @pytest.mark.asyncio
    async def test_failed_report_not_retried_same_day(self, scheduler):
        scheduler.mailer.send_daily_report.return_value = False

        assert await scheduler.execute_daily_report() == DispatchOutcome.FAILED
        assert await scheduler.execute_daily_report() == DispatchOutcome.SKIPPED
        assert scheduler.mailer.send_daily_report.await_count == 1
