"""Retention policy for extraction sessions.

- archived sessions are deleted after ``archived_retention_days``
- failed, abandoned in-flight, and never-reviewed extracted sessions are
  deleted after ``stale_after_days``
- reviewed sessions are archived after ``archive_reviewed_after_days``

All thresholds are measured against an explicit ``now`` so repeated runs with
the same clock converge.
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta
from typing import Callable, Dict, List

from loguru import logger
from pydantic import BaseModel, Field

from conceptkb.errors import OperationResult, run_operation
from conceptkb.pipeline.session_state import IN_FLIGHT_STATUSES, ensure_transition
from conceptkb.storage.repositories import SessionFilter, SessionRepository
from conceptkb.storage.schemas import SessionStatus, utc_now
from conceptkb.storage.updates import SessionPatch
from conceptkb.utils.config import CleanupConfig


class CleanupStats(BaseModel):
    total_sessions: int = 0
    by_status: Dict[str, int] = Field(default_factory=dict)
    archived_to_delete: int = 0
    stale_to_delete: int = 0
    reviewed_to_archive: int = 0


class CleanupResult(BaseModel):
    dry_run: bool = False
    deleted_archived: int = 0
    deleted_stale: int = 0
    archived_reviewed: int = 0
    timestamp: datetime = Field(default_factory=utc_now)

    @property
    def total_affected(self) -> int:
        return self.deleted_archived + self.deleted_stale + self.archived_reviewed


class SessionCleanupService:
    """Delete or archive sessions according to :class:`CleanupConfig`."""

    def __init__(
        self,
        sessions: SessionRepository,
        config: CleanupConfig | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.sessions = sessions
        self.config = config or CleanupConfig()
        self._clock = clock or utc_now

    # Public API -----------------------------------------------------
    def stats(self, now: datetime | None = None) -> OperationResult[CleanupStats]:
        return run_operation("cleanup_stats", lambda: self._stats(now or self._clock()))

    def run(
        self, *, dry_run: bool = False, now: datetime | None = None
    ) -> OperationResult[CleanupResult]:
        """Apply every retention rule, or only count what would change when ``dry_run``."""
        return run_operation("cleanup", lambda: self._run(dry_run, now or self._clock()))

    def cleanup_archived(self, now: datetime | None = None, *, dry_run: bool = False) -> int:
        filter = self._archived_filter(now or self._clock())
        if dry_run:
            return self.sessions.count(filter)
        deleted = self.sessions.delete(filter)
        if deleted:
            logger.info(f"Deleted {deleted} archived sessions")
        return deleted

    def cleanup_stale(self, now: datetime | None = None, *, dry_run: bool = False) -> int:
        filters = self._stale_filters(now or self._clock())
        if dry_run:
            return sum(self.sessions.count(f) for f in filters)
        deleted = sum(self.sessions.delete(f) for f in filters)
        if deleted:
            logger.info(f"Deleted {deleted} stale sessions")
        return deleted

    def archive_reviewed(self, now: datetime | None = None, *, dry_run: bool = False) -> int:
        filter = self._reviewed_filter(now or self._clock())
        if dry_run:
            return self.sessions.count(filter)
        archived = 0
        for session in self.sessions.find(filter):
            ensure_transition(session.status, SessionStatus.ARCHIVED, session_id=session.id)
            self.sessions.update(session.id, SessionPatch(status=SessionStatus.ARCHIVED))
            archived += 1
        if archived:
            logger.info(f"Archived {archived} reviewed sessions")
        return archived

    # Steps ----------------------------------------------------------
    def _stats(self, now: datetime) -> CleanupStats:
        sessions = self.sessions.find()
        return CleanupStats(
            total_sessions=len(sessions),
            by_status=dict(Counter(s.status.value for s in sessions)),
            archived_to_delete=self.cleanup_archived(now, dry_run=True),
            stale_to_delete=self.cleanup_stale(now, dry_run=True),
            reviewed_to_archive=self.archive_reviewed(now, dry_run=True),
        )

    def _run(self, dry_run: bool, now: datetime) -> CleanupResult:
        # Archive last so freshly archived sessions wait out their own retention.
        result = CleanupResult(
            dry_run=dry_run,
            deleted_archived=self.cleanup_archived(now, dry_run=dry_run),
            deleted_stale=self.cleanup_stale(now, dry_run=dry_run),
            archived_reviewed=self.archive_reviewed(now, dry_run=dry_run),
            timestamp=now,
        )
        prefix = "Dry-run: would affect" if dry_run else "Cleanup affected"
        logger.info(
            f"{prefix} {result.total_affected} sessions "
            f"(archived deleted={result.deleted_archived}, stale deleted={result.deleted_stale}, "
            f"reviewed archived={result.archived_reviewed})"
        )
        return result

    # Filters --------------------------------------------------------
    def _archived_filter(self, now: datetime) -> SessionFilter:
        return SessionFilter(
            statuses=[SessionStatus.ARCHIVED],
            updated_before=now - timedelta(days=self.config.archived_retention_days),
        )

    def _stale_filters(self, now: datetime) -> List[SessionFilter]:
        cutoff = now - timedelta(days=self.config.stale_after_days)
        return [
            SessionFilter(
                statuses=[SessionStatus.ERROR, *sorted(IN_FLIGHT_STATUSES, key=lambda s: s.value)],
                updated_before=cutoff,
            ),
            SessionFilter(
                statuses=[SessionStatus.EXTRACTED],
                reviewed_count=0,
                started_before=cutoff,
            ),
        ]

    def _reviewed_filter(self, now: datetime) -> SessionFilter:
        return SessionFilter(
            statuses=[SessionStatus.REVIEWED],
            updated_before=now - timedelta(days=self.config.archive_reviewed_after_days),
        )
