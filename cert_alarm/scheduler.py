"""
Sweep scheduling and notification dispatch for Cert Alarm.
"""

import asyncio
import sqlite3
import time
from typing import Any, Callable, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from cert_alarm.config import Config, ScheduleConfig
from cert_alarm.dispatch import ALERT, DAILY_REPORT, DispatchGate, DispatchOutcome
from cert_alarm.errors import SchedulerError
from cert_alarm.logger import get_logger, log_sweep_complete, log_sweep_start
from cert_alarm.mailer import EmailService
from cert_alarm.metrics import MetricsCollector
from cert_alarm.models import SweepResult
from cert_alarm.normalizer import utc_now
from cert_alarm.resolver import CertificateResolver
from cert_alarm.store import CertificateStore


def build_trigger(schedule: ScheduleConfig) -> CronTrigger:
    """
    Build the cron trigger for a schedule.

    Raises:
        SchedulerError: If the cron expression or timezone is rejected
    """
    try:
        return CronTrigger.from_crontab(schedule.cron_expression, timezone=schedule.timezone)
    except (ValueError, LookupError) as e:
        raise SchedulerError(
            f"Invalid schedule '{schedule.cron_expression}' ({schedule.timezone}): {e}"
        ) from e


class CertificateScheduler:
    """
    Owns the single cron trigger and the most-recent-sweep cache.

    Sweeps are single-flight: a trigger that fires while a sweep is running is
    skipped, and a manual check issued during a sweep waits for that sweep
    instead of starting another one.
    """

    JOB_ID = "certificate-sweep"

    def __init__(
        self,
        config: Config,
        resolver: CertificateResolver,
        store: CertificateStore,
        mailer: EmailService,
        metrics: Optional[MetricsCollector] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
        clock: Callable = utc_now,
    ):
        self.config = config
        self.resolver = resolver
        self.store = store
        self.mailer = mailer
        self.metrics = metrics
        self.clock = clock
        self.gate = DispatchGate(store, config.daily_report.allow_same_day_resend)
        self.scheduler = scheduler or AsyncIOScheduler()
        self.logger = get_logger("scheduler")

        self._inflight: Optional[asyncio.Task] = None
        self._last_sweep: Optional[SweepResult] = None
        self.schedule_error: Optional[str] = None

    # Trigger lifecycle

    def start(self) -> bool:
        """
        Register the cron trigger, replacing any existing one.

        Returns:
            True if a trigger is now active
        """
        schedule = self.config.get_schedule_config()
        self.schedule_error = None
        if not schedule.enabled:
            self.stop()
            self.logger.info("Scheduled checks are disabled")
            return False

        try:
            trigger = build_trigger(schedule)
        except SchedulerError as e:
            self.logger.error(str(e))
            self.schedule_error = str(e)
            self.stop()
            return False

        if self.is_active:
            self.logger.info("Replacing existing scheduled trigger")
            self.stop()

        self.scheduler.add_job(
            self._on_trigger,
            trigger=trigger,
            id=self.JOB_ID,
            name="Certificate sweep",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        if not self.scheduler.running:
            self.scheduler.start()

        self.logger.info(
            f"Scheduled checks started - Cron: {schedule.cron_expression}, "
            f"Timezone: {schedule.timezone}"
        )
        return True

    def stop(self) -> None:
        """Tear down the active trigger, if any."""
        if self.scheduler.get_job(self.JOB_ID) is not None:
            self.scheduler.remove_job(self.JOB_ID)
            self.logger.info("Scheduled checks stopped")

    async def shutdown(self) -> None:
        """Stop the trigger and wait for an in-flight sweep to finish."""
        self.stop()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

        if self._inflight is not None and not self._inflight.done():
            self.logger.info("Waiting for in-flight sweep to finish")
            try:
                await asyncio.shield(self._inflight)
            except Exception as e:
                self.logger.error(f"In-flight sweep failed during shutdown: {e}")

    def reload(self, config: Config, resolver: Optional[CertificateResolver] = None) -> bool:
        """Swap in a new configuration and re-derive the trigger."""
        self.config = config
        if resolver is not None:
            self.resolver = resolver
        self.gate.allow_same_day_resend = config.daily_report.allow_same_day_resend
        self.mailer.update_config(config.smtp)
        return self.start()

    @property
    def is_active(self) -> bool:
        return self.scheduler.get_job(self.JOB_ID) is not None

    @property
    def is_sweeping(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    # Sweeps

    async def _on_trigger(self) -> None:
        try:
            sweep = await self.run_scheduled_sweep()
            if sweep is None:
                return
            await self.dispatch_alerts(sweep)
            await self.execute_daily_report(sweep)
        except Exception as e:
            self.logger.error(f"Scheduled run failed: {e}", exc_info=True)

    async def run_scheduled_sweep(self) -> Optional[SweepResult]:
        """Run a sweep unless one is already in flight, in which case skip it."""
        if self.is_sweeping:
            self.logger.warning("Certificate sweep already in progress, skipping scheduled run")
            return None
        return await self._start_sweep("scheduled")

    async def manual_check(self) -> SweepResult:
        """Run a sweep now, or join the one already in flight."""
        if self.is_sweeping:
            self.logger.info("Joining in-flight certificate sweep")
            task = self._inflight
        else:
            task = self._start_sweep("manual")
        return await asyncio.shield(task)

    def _start_sweep(self, source: str) -> asyncio.Task:
        task = asyncio.create_task(self._sweep(source))
        self._inflight = task
        task.add_done_callback(self._clear_inflight)
        return task

    def _clear_inflight(self, task: asyncio.Task) -> None:
        if self._inflight is task:
            self._inflight = None

    async def _sweep(self, source: str) -> SweepResult:
        domains = self.config.get_domains()
        warning_days = self.config.get_warning_days()
        sweep_time = self.clock()
        start_time = time.time()

        log_sweep_start(self.logger, source, len(domains))
        if not domains:
            self.logger.warning("No domains configured, nothing to check")

        records = await self.resolver.resolve_all(domains)
        for record in records:
            self._persist(record)

        sweep = SweepResult.from_records(
            records,
            warning_days=warning_days,
            sweep_time=sweep_time,
            duration=time.time() - start_time,
            source=source,
        )
        # Single assignment so readers see the old or the new sweep, never a mix
        self._last_sweep = sweep

        if self.metrics:
            self.metrics.update_sweep_metrics(sweep)

        log_sweep_complete(
            self.logger, source, sweep.duration, sweep.healthy, sweep.expiring, sweep.failed
        )
        return sweep

    def _persist(self, record) -> None:
        try:
            self.store.save_record(record)
        except sqlite3.Error as e:
            self.logger.error(f"Failed to persist check result for {record.domain}: {e}")

    # Notifications

    def _window(self, kind: str) -> str:
        return self.gate.window_key(kind, self.clock(), self.config.schedule.timezone)

    def _record_dispatch(self, kind: str, outcome: DispatchOutcome) -> None:
        if self.metrics:
            self.metrics.record_dispatch(kind, outcome.value)

    async def dispatch_alerts(self, sweep: SweepResult) -> Optional[DispatchOutcome]:
        """Send the expiry alert for a sweep, at most once per day."""
        if not sweep.expiring_records:
            self.logger.info("No expiring certificates, no alert needed")
            return None

        recipients = self.config.get_report_recipients()
        if not recipients:
            self.logger.warning("No report recipients configured, skipping alert")
            return None

        async def send() -> bool:
            return await self.mailer.send_alert(
                sweep.expiring_records, recipients, sweep.warning_days
            )

        outcome = await self.gate.dispatch(self._window(ALERT), send)
        self._record_dispatch(ALERT, outcome)
        return outcome

    async def execute_daily_report(
        self, sweep: Optional[SweepResult] = None, force: bool = False
    ) -> Optional[DispatchOutcome]:
        """
        Send the daily report through the dispatch gate.

        Args:
            sweep: Sweep to report on; a fresh manual check is run when omitted
            force: Ask the gate to release today's window first

        Returns:
            DispatchOutcome, or None when the report is disabled or has no recipients
        """
        if not self.config.daily_report.enabled:
            self.logger.info("Daily report is disabled")
            return None

        recipients = self.config.get_report_recipients()
        if not recipients:
            self.logger.warning("No report recipients configured, skipping daily report")
            return None

        async def send() -> bool:
            report_sweep = sweep or await self.manual_check()
            return await self.mailer.send_daily_report(recipients, report_sweep)

        outcome = await self.gate.dispatch(self._window(DAILY_REPORT), send, force=force)
        self._record_dispatch(DAILY_REPORT, outcome)
        return outcome

    # Status

    def get_last_sweep_result(self) -> Optional[SweepResult]:
        """Most recent sweep, rebuilt from stored history after a restart."""
        if self._last_sweep is not None:
            return self._last_sweep

        try:
            stored = {record.domain: record for record in self.store.latest_records()}
        except sqlite3.Error as e:
            self.logger.error(f"Failed to read latest records: {e}")
            return None

        records = [stored[d] for d in self.config.get_domains() if d in stored]
        if not records:
            return None
        return SweepResult.from_records(
            records,
            warning_days=self.config.get_warning_days(),
            sweep_time=max(record.observed_at for record in records),
            source="store",
        )

    def get_status(self) -> Dict[str, Any]:
        schedule = self.config.get_schedule_config()
        job = self.scheduler.get_job(self.JOB_ID)
        next_run = getattr(job, "next_run_time", None) if job else None
        last_sweep = self.get_last_sweep_result()
        last_report = self.store.last_sent_claim(f"{DAILY_REPORT}:")

        return {
            "active": job is not None,
            "enabled": schedule.enabled,
            "cron_expression": schedule.cron_expression,
            "timezone": schedule.timezone,
            "sweeping": self.is_sweeping,
            "last_sweep_time": last_sweep.sweep_time.isoformat() if last_sweep else None,
            "next_run_time": next_run.isoformat() if next_run else None,
            "last_report_sent": last_report.sent_at.isoformat() if last_report else None,
            "schedule_error": self.schedule_error,
        }

    def active_job_ids(self) -> List[str]:
        return [job.id for job in self.scheduler.get_jobs()]
