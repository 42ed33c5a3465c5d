"""Cron scheduling of backups and cleanup, plus authenticated external triggers.

The scheduler is a plain object owned by the service; nothing here is a module
global, so tests can build as many as they like.
"""

from __future__ import annotations

import hmac
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.triggers.cron import CronTrigger

from .config import ScheduleConfig, TriggerConfig
from .errors import AuthenticationError, BackupError, BackupInProgressError
from .logger import get_logger
from .models import BackupKind, BackupRun

log = get_logger(__name__)

DAILY_JOB = "daily_database_backup"
WEEKLY_JOB = "weekly_full_backup"
CLEANUP_JOB = "retention_cleanup"


class TriggerAuthenticator:
    """Check the shared secret carried by an external trigger request."""

    def __init__(self, header: str, secret: Optional[str]):
        self.header = header
        self.secret = secret

    @classmethod
    def from_config(cls, config: TriggerConfig) -> TriggerAuthenticator:
        return cls(config.header, config.secret)

    def authenticate(self, headers: Mapping[str, str]) -> None:
        if not self.secret:
            # no secret configured means no external triggers at all
            raise AuthenticationError("external triggers are disabled: no trigger secret configured")
        wanted = self.header.lower()
        supplied = next((v for k, v in headers.items() if k.lower() == wanted), None)
        if supplied is None:
            raise AuthenticationError(f"missing {self.header} header")
        if not hmac.compare_digest(supplied.encode("utf-8"), self.secret.encode("utf-8")):
            raise AuthenticationError("invalid trigger secret")


class Scheduler:
    """Daily database backups, weekly full backups and an independent cleanup job."""

    def __init__(
        self,
        config: ScheduleConfig,
        create_backup: Callable[[BackupKind], BackupRun],
        cleanup: Callable[[], Any],
        authenticator: Optional[TriggerAuthenticator] = None,
        scheduler: Optional[BaseScheduler] = None,
    ):
        self.config = config
        self.create_backup = create_backup
        self.cleanup = cleanup
        self.authenticator = authenticator or TriggerAuthenticator(TriggerConfig().header, None)
        self.scheduler = scheduler or BackgroundScheduler(timezone=config.timezone)
        self._triggers = self._build_triggers()

    def _build_triggers(self) -> Dict[str, CronTrigger]:
        cfg = self.config
        triggers = {}
        if cfg.daily_enabled:
            triggers[DAILY_JOB] = CronTrigger.from_crontab(cfg.daily_cron, timezone=cfg.timezone)
        if cfg.weekly_enabled:
            triggers[WEEKLY_JOB] = CronTrigger.from_crontab(cfg.weekly_cron, timezone=cfg.timezone)
        if cfg.cleanup_enabled:
            triggers[CLEANUP_JOB] = CronTrigger.from_crontab(cfg.cleanup_cron, timezone=cfg.timezone)
        return triggers

    @property
    def running(self) -> bool:
        return bool(self.scheduler.running)

    def next_scheduled_backup(self, now: Optional[datetime] = None) -> Optional[datetime]:
        """Earliest upcoming backup fire time (cleanup excluded), in UTC."""
        now = now or datetime.now(timezone.utc)
        upcoming = [
            trigger.get_next_fire_time(None, now)
            for name, trigger in self._triggers.items()
            if name != CLEANUP_JOB
        ]
        upcoming = [t for t in upcoming if t is not None]
        if not upcoming:
            return None
        return min(upcoming).astimezone(timezone.utc)

    def add_jobs(self) -> None:
        jobs = {
            DAILY_JOB: (self.daily_backup, "Daily Database Backup"),
            WEEKLY_JOB: (self.weekly_backup, "Weekly Full Backup"),
            CLEANUP_JOB: (self.run_cleanup, "Retention Cleanup"),
        }
        for job_id, trigger in self._triggers.items():
            func, name = jobs[job_id]
            self.scheduler.add_job(
                func,
                trigger=trigger,
                id=job_id,
                name=name,
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
            log.info("Scheduled %s (%s)", name, trigger)

    def start(self) -> None:
        if self.running:
            return
        self.add_jobs()
        self.scheduler.start()
        log.info("Scheduler started with %d job(s) in %s", len(self._triggers), self.config.timezone)

    def stop(self, wait: bool = True) -> None:
        if self.running:
            self.scheduler.shutdown(wait=wait)
            log.info("Scheduler stopped")

    # Job bodies log instead of raising so a failure never unschedules the job.

    def daily_backup(self) -> None:
        self._run_backup(BackupKind.DATABASE)

    def weekly_backup(self) -> None:
        self._run_backup(BackupKind.FULL)

    def _run_backup(self, kind: BackupKind) -> None:
        try:
            run = self.create_backup(kind)
            log.info("Scheduled %s backup %s finished: %s", kind.value, run.id, run.status.value)
        except BackupInProgressError as e:
            log.warning("Scheduled %s backup skipped: %s", kind.value, e)
        except Exception as e:
            log.exception("Scheduled %s backup failed: %s", kind.value, e)

    def run_cleanup(self) -> None:
        try:
            self.cleanup()
        except Exception as e:
            log.exception("Retention cleanup failed: %s", e)

    def handle_trigger(self, headers: Mapping[str, str], kind: BackupKind = BackupKind.FULL) -> Dict[str, Any]:
        """Run a backup requested from outside the process.

        Authentication happens before any work; a rejected request raises
        :class:`AuthenticationError`.
        """
        self.authenticator.authenticate(headers)
        log.info("Authenticated external trigger for %s backup", kind.value)
        try:
            run = self.create_backup(kind)
        except BackupInProgressError as e:
            return {"success": False, "run_id": None, "status": "rejected", "error": str(e)}
        except BackupError as e:
            return {"success": False, "run_id": None, "status": "failed", "error": str(e)}
        return {
            "success": run.status.value == "success",
            "run_id": run.id,
            "status": run.status.value,
            "error": run.error_message,
        }
