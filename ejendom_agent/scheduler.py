"""
Scheduler
=========
Background thread running the maintenance jobs on interval schedules.

Jobs:
  - drain        dispatch queue drain (rate limited by the queue itself)
  - sweep        stale workflow run sweep
  - reply_sync   inbox poll for outreach replies

Schedules:
  "every 15m" / "every 6h" / "every 1d"
  "every day at 9am" / "every day at 09:00"

A failing job backs off (2, 4, 8... minutes, at most 60) and is disabled
after max_failures consecutive failures.
"""

import logging
import re
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

log = logging.getLogger("ejendom.scheduler")


class ScheduleParser:

    @staticmethod
    def next_run(schedule: str, from_time: datetime = None) -> Optional[datetime]:
        now = from_time or datetime.now(timezone.utc)
        schedule = schedule.strip().lower()

        # "every Xh/Xm/Xd"
        interval_match = re.match(
            r'every\s+(\d+)\s*(h|hr|hours?|m|min|minutes?|d|days?)\s*$', schedule
        )
        if interval_match:
            amount = int(interval_match.group(1))
            if amount <= 0:
                return None
            unit = interval_match.group(2)[0]
            delta = {"h": timedelta(hours=amount), "m": timedelta(minutes=amount),
                     "d": timedelta(days=amount)}[unit]
            return now + delta

        # "every day at HH:MM"
        daily_match = re.match(r'every\s+day\s+at\s+(.+)$', schedule)
        if daily_match:
            target_time = ScheduleParser._parse_time(daily_match.group(1))
            if target_time:
                candidate = now.replace(
                    hour=target_time[0], minute=target_time[1], second=0, microsecond=0
                )
                if candidate <= now:
                    candidate += timedelta(days=1)
                return candidate

        log.warning(f"Unrecognized schedule format: {schedule}")
        return None

    @staticmethod
    def _parse_time(time_str: str) -> Optional[tuple]:
        """Parse time: '9am', '3pm', '09:00', '17:30'."""
        time_str = time_str.strip()

        ampm_match = re.match(r'^(\d{1,2})\s*(am|pm)$', time_str, re.IGNORECASE)
        if ampm_match:
            h = int(ampm_match.group(1))
            is_pm = ampm_match.group(2).lower() == "pm"
            if is_pm and h != 12:
                h += 12
            elif not is_pm and h == 12:
                h = 0
            return (h, 0)

        mil = re.match(r'^(\d{1,2}):(\d{2})$', time_str)
        if mil:
            h, m = int(mil.group(1)), int(mil.group(2))
            if h < 24 and m < 60:
                return (h, m)

        return None


@dataclass
class Job:
    name: str
    schedule: str
    action: Callable[[], Any]
    next_run: Optional[datetime] = None
    last_run: Optional[datetime] = None
    last_result: Any = None
    failures: int = 0
    max_failures: int = 5
    enabled: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "schedule": self.schedule,
            "next_run": self.next_run.isoformat() if self.next_run else "",
            "last_run": self.last_run.isoformat() if self.last_run else "",
            "failures": self.failures,
            "enabled": self.enabled,
        }


class Scheduler:
    """Checks its jobs every CHECK_INTERVAL seconds on a daemon thread."""

    CHECK_INTERVAL = 30

    def __init__(self, clock: Callable[[], datetime] = None):
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._jobs: Dict[str, Job] = {}
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()

    def add_job(self, name: str, schedule: str, action: Callable[[], Any],
                max_failures: int = 5) -> Job:
        next_run = ScheduleParser.next_run(schedule, self._clock())
        if not next_run:
            raise ValueError(f"Could not parse schedule: '{schedule}'")
        job = Job(name=name, schedule=schedule, action=action, next_run=next_run,
                  max_failures=max_failures)
        self._jobs[name] = job
        log.info(f"Added job {name} ({schedule}), next: {next_run}")
        return job

    def remove_job(self, name: str) -> bool:
        return self._jobs.pop(name, None) is not None

    def list_jobs(self) -> List[Job]:
        return list(self._jobs.values())

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="ejendom-scheduler")
        self._thread.start()
        log.info(f"Scheduler started with {len(self._jobs)} jobs")

    def stop(self):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=5)
        log.info("Scheduler stopped")

    def _loop(self):
        while not self._stop.is_set():
            try:
                self.run_pending()
            except Exception as e:
                log.error(f"Scheduler loop error: {e}", exc_info=True)
            self._stop.wait(self.CHECK_INTERVAL)

    def run_pending(self) -> List[str]:
        """Run every due job once. Returns the names that ran."""
        now = self._clock()
        ran = []
        for job in list(self._jobs.values()):
            if job.enabled and job.next_run and now >= job.next_run:
                self._execute_job(job)
                ran.append(job.name)
        return ran

    def _execute_job(self, job: Job):
        log.debug(f"Executing job {job.name}")
        started = time.monotonic()
        try:
            job.last_result = job.action()
            job.last_run = self._clock()
            job.failures = 0
            job.next_run = ScheduleParser.next_run(job.schedule, job.last_run)
            log.debug(f"Job {job.name} finished in {time.monotonic() - started:.1f}s")
        except Exception as e:
            log.error(f"Job {job.name} failed: {e}")
            job.failures += 1
            job.last_run = self._clock()
            backoff_minutes = min(2 ** job.failures, 60)
            job.next_run = job.last_run + timedelta(minutes=backoff_minutes)
            if job.failures >= job.max_failures:
                job.enabled = False
                log.warning(f"Job {job.name} disabled after {job.failures} failures")


def build_scheduler(ctx, config) -> Scheduler:
    """Scheduler with the drain, sweep and reply-sync jobs for an AppContext."""
    scheduler = Scheduler()
    scheduler.add_job("drain", config.drain_schedule, ctx.queue.drain)
    scheduler.add_job("sweep", config.sweep_schedule, ctx.engine.sweep_stale)
    if ctx.inbox is not None and ctx.inbox.is_configured():
        from .outreach.tracker import sync_replies
        scheduler.add_job("reply_sync", config.reply_sync_schedule,
                          lambda: sync_replies(ctx.inbox, ctx.property_store))
    return scheduler
