"""Unit tests for PipelineStore."""

import tempfile
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

import pytest

from leadswift.lifecycle import FollowUp, FollowUpStatus
from leadswift.models.opportunity import Opportunity
from leadswift.models.pipeline import ApplicationStatus, Pipeline
from leadswift.models.profile import Profile
from leadswift.store import PipelineStore

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _make_pipeline(opp_id: str = "o1", status: ApplicationStatus = ApplicationStatus.DISCOVERED, **kw) -> Pipeline:
    return Pipeline(
        opportunity_id=opp_id,
        profile_id="p1",
        status=status,
        created_at=kw.pop("created_at", NOW),
        last_updated=NOW,
        status_changed_at=NOW,
        **kw,
    )


@pytest.fixture
def temp_db() -> Path:
    """Temporary database path for isolated tests."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        path = Path(f.name)
    yield path
    path.unlink(missing_ok=True)


@pytest.fixture
def store(temp_db: Path) -> PipelineStore:
    """PipelineStore with temporary database."""
    s = PipelineStore(temp_db)
    yield s
    s.close()


class TestPipelines:
    """Tests for pipeline persistence."""

    def test_save_and_get(self, store: PipelineStore) -> None:
        p = _make_pipeline(tracking_id="t-1")
        store.save_pipeline(p)
        assert store.get_pipeline(p.id) == p
        assert store.get_by_opportunity("o1") == p

    def test_upsert_replaces(self, store: PipelineStore) -> None:
        """Saving again overwrites the row for the same pipeline id."""
        p = _make_pipeline()
        store.save_pipeline(p)
        updated = p.model_copy(update={"status": ApplicationStatus.ANALYZING})
        store.save_pipeline(updated)
        assert store.get_pipeline(p.id).status == ApplicationStatus.ANALYZING
        assert len(store.list_pipelines()) == 1

    def test_list_filters_and_orders(self, store: PipelineStore) -> None:
        older = _make_pipeline("o1", created_at=NOW - timedelta(days=1))
        newer = _make_pipeline("o2", ApplicationStatus.PROPOSAL_SENT)
        store.save_pipeline(older)
        store.save_pipeline(newer)
        assert [p.id for p in store.list_pipelines()] == [newer.id, older.id]
        assert [p.id for p in store.list_pipelines(status="proposal_sent")] == [newer.id]

    def test_missing_returns_none(self, store: PipelineStore) -> None:
        assert store.get_pipeline("nope") is None
        assert store.get_by_opportunity("nope") is None

    def test_survives_reopen(self, temp_db: Path) -> None:
        """Data written by one store instance is read by the next."""
        first = PipelineStore(temp_db)
        p = _make_pipeline()
        first.save_pipeline(p)
        first.close()
        second = PipelineStore(temp_db)
        assert second.get_pipeline(p.id) == p
        second.close()


class TestReferencedRecords:
    def test_opportunity_roundtrip(self, store: PipelineStore) -> None:
        opp = Opportunity(id="o1", title="Data Engineer", budget_min=Decimal("5000.50"), deadline=NOW)
        store.save_opportunity(opp)
        assert store.get_opportunity("o1") == opp

    def test_profile_roundtrip(self, store: PipelineStore, profile: Profile) -> None:
        store.save_profile(profile)
        assert store.get_profile(profile.id) == profile


class TestFollowUps:
    def test_filter_by_status(self, store: PipelineStore) -> None:
        pending = FollowUp(pipeline_id="p", sequence=1, condition="no_response", subject="s", due_at=NOW)
        done = FollowUp(
            pipeline_id="p",
            sequence=2,
            condition="final_follow_up",
            subject="s",
            due_at=NOW,
            status=FollowUpStatus.SENT,
        )
        store.save_follow_up(pending)
        store.save_follow_up(done)
        assert [f.id for f in store.list_follow_ups(status="pending")] == [pending.id]
        assert len(store.list_follow_ups(pipeline_id="p")) == 2


class TestCounter:
    def test_counter_roundtrip(self, store: PipelineStore) -> None:
        assert store.load_counter() is None
        store.save_counter("2024-01-01", 3)
        store.save_counter("2024-01-01", 4)
        assert store.load_counter() == ("2024-01-01", 4)


class TestInMemory:
    def test_memory_store_shares_connection(self) -> None:
        """Without a path everything lives on one in-memory connection."""
        store = PipelineStore()
        p = _make_pipeline()
        store.save_pipeline(p)
        assert store.get_pipeline(p.id) == p
        store.close()
