"""Retention enforcement: purge sessions whose retention period has passed."""

import logging
from dataclasses import dataclass, field

from apscheduler.schedulers.background import BackgroundScheduler

from session_replay.errors import StorageFailure
from session_replay.ledger import SessionLedger

logger = logging.getLogger(__name__)


@dataclass
class ReapReport:
    sessions: list[str] = field(default_factory=list)
    events_deleted: int = 0
    tombstones_purged: int = 0
    failures: list[str] = field(default_factory=list)


class ReaperJob:
    """Periodic sweep over expired sessions.

    Each session is purged under its own ledger lock, so ingestion into other
    sessions is never blocked and a concurrent append to the session being
    purged fails with SessionExpired instead of recreating it.
    """

    def __init__(self, ledger: SessionLedger, interval_minutes: int = 60,
                 metrics=None, rate_limiter=None):
        self._ledger = ledger
        self._interval_minutes = interval_minutes
        self._metrics = metrics
        self._rate_limiter = rate_limiter
        self._scheduler: BackgroundScheduler | None = None

    def sweep(self, now: float | None = None) -> ReapReport:
        """Purge every expired session. Returns what was deleted."""
        now = self._ledger.now() if now is None else now
        report = ReapReport()

        for session_id in self._ledger.expired_session_ids(now):
            try:
                deleted = self._ledger.purge(session_id, now)
            except StorageFailure as exc:
                logger.error("Failed to purge session %s: %s", session_id, exc)
                report.failures.append(session_id)
                continue
            if deleted is None:
                continue
            report.sessions.append(session_id)
            report.events_deleted += deleted

        # tombstones only need to outlive any client still holding the id
        cutoff = now - self._ledger.retention_seconds
        report.tombstones_purged = self._ledger.store.purge_tombstones(cutoff)

        if self._rate_limiter is not None:
            self._rate_limiter.prune()
        if self._metrics is not None:
            self._metrics.record_reaped(len(report.sessions), report.events_deleted)
        if report.sessions:
            logger.info(
                "Purged %d expired session(s), %d event(s)",
                len(report.sessions), report.events_deleted,
            )
        return report

    def _scheduled_sweep(self):
        try:
            self.sweep()
        except Exception:
            logger.exception("Reaper sweep failed")

    def start(self):
        """Schedule sweeps on a background scheduler."""
        if self._scheduler is not None:
            return
        self._scheduler = BackgroundScheduler()
        self._scheduler.add_job(
            self._scheduled_sweep,
            "interval",
            minutes=self._interval_minutes,
            id="session-reaper",
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info("Reaper scheduled every %d minute(s)", self._interval_minutes)

    def stop(self):
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None
