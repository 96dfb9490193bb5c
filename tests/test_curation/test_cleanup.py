"""Tests for the extraction session retention policy."""

from __future__ import annotations

from datetime import timedelta

import pytest
from fakes import FakeClock

from conceptkb.curation.cleanup import SessionCleanupService
from conceptkb.storage.repositories import SessionRepository
from conceptkb.storage.schemas import ExtractionSession, ReviewProgress, SessionStatus
from conceptkb.utils.config import CleanupConfig

S = SessionStatus


def _add(
    sessions: SessionRepository,
    clock: FakeClock,
    session_id: str,
    status: SessionStatus,
    age_days: int,
    reviewed: int = 0,
) -> None:
    when = clock() - timedelta(days=age_days)
    sessions.create(
        ExtractionSession(
            id=session_id,
            document_id=f"doc-{session_id}",
            status=status,
            review_progress=ReviewProgress(total_concepts=2, reviewed_count=reviewed),
            created_at=when,
            updated_at=when,
            extraction_started_at=when,
        )
    )


@pytest.fixture
def populated(sessions: SessionRepository, clock: FakeClock) -> SessionRepository:
    _add(sessions, clock, "archived-old", S.ARCHIVED, 40)
    _add(sessions, clock, "archived-new", S.ARCHIVED, 10)
    _add(sessions, clock, "error-old", S.ERROR, 10)
    _add(sessions, clock, "extracting-old", S.EXTRACTING, 8)
    _add(sessions, clock, "extracting-new", S.EXTRACTING, 1)
    _add(sessions, clock, "unreviewed-old", S.EXTRACTED, 10)
    _add(sessions, clock, "half-reviewed-old", S.EXTRACTED, 10, reviewed=1)
    _add(sessions, clock, "reviewed-old", S.REVIEWED, 100)
    _add(sessions, clock, "reviewed-new", S.REVIEWED, 20)
    return sessions


@pytest.fixture
def cleanup(sessions: SessionRepository, clock: FakeClock) -> SessionCleanupService:
    return SessionCleanupService(sessions, CleanupConfig(), clock=clock)


def test_stats_counts_by_status_and_rule(
    cleanup: SessionCleanupService, populated: SessionRepository
) -> None:
    stats = cleanup.stats().unwrap()

    assert stats.total_sessions == 9
    assert stats.by_status["archived"] == 2
    assert stats.by_status["extracted"] == 2
    assert stats.archived_to_delete == 1
    assert stats.stale_to_delete == 3
    assert stats.reviewed_to_archive == 1


def test_dry_run_reports_what_a_real_run_does(
    cleanup: SessionCleanupService, populated: SessionRepository
) -> None:
    preview = cleanup.run(dry_run=True).unwrap()

    assert preview.dry_run is True
    assert populated.count() == 9

    applied = cleanup.run().unwrap()

    assert (preview.deleted_archived, preview.deleted_stale, preview.archived_reviewed) == (
        applied.deleted_archived,
        applied.deleted_stale,
        applied.archived_reviewed,
    )
    assert applied.total_affected == 5
    remaining = {s.id for s in populated.find()}
    assert remaining == {
        "archived-new",
        "extracting-new",
        "half-reviewed-old",
        "reviewed-old",
        "reviewed-new",
    }
    assert populated.require("reviewed-old").status == S.ARCHIVED


def test_second_run_changes_nothing(
    cleanup: SessionCleanupService, populated: SessionRepository
) -> None:
    cleanup.run()

    again = cleanup.run().unwrap()

    assert again.total_affected == 0
    assert populated.count() == 5


def test_archived_session_is_deleted_after_its_own_retention(
    cleanup: SessionCleanupService, populated: SessionRepository, clock: FakeClock
) -> None:
    cleanup.run()
    clock.advance(days=31)

    result = cleanup.run().unwrap()

    assert "reviewed-old" not in {s.id for s in populated.find()}
    assert result.deleted_archived == 2


def test_custom_retention_windows(sessions: SessionRepository, clock: FakeClock) -> None:
    _add(sessions, clock, "error-3d", S.ERROR, 3)
    service = SessionCleanupService(sessions, CleanupConfig(stale_after_days=2), clock=clock)

    assert service.cleanup_stale(dry_run=True) == 1
    assert service.cleanup_stale() == 1
    assert sessions.count() == 0
