"""Tests for pairwise duplicate / overlap detection."""

from __future__ import annotations

import logging

import pytest
from sqlalchemy import update

from infralens.conflicts import ConflictDetector
from infralens.db.models import InfraObjectModel
from infralens.errors import NotFoundError, PermissionDeniedError
from infralens.geometry import Geometry
from infralens.models import ConflictType, HistoryAction, ObjectStatus
from infralens.objects.repository import ObjectStore
from infralens.review import service


@pytest.fixture
def detector(db_session) -> ConflictDetector:
    return ConflictDetector(db_session, tolerance_pixels=5, auto_resolve_confidence=0.8)


async def _ingest(session, org_id, payload):
    return await service.ingest_detection(session, org_id, payload)


async def _reposition(session, org_id, obj, x, y):
    """Move an object without going through the review lifecycle."""
    return await ObjectStore(session).mutate(
        org_id,
        obj.id,
        lambda o: o.model_copy(update={"geometry": Geometry.from_box(x, y, 10, 10)}),
        actor="tester",
        action=HistoryAction.MOVED,
    )


class TestDetection:
    @pytest.mark.asyncio
    async def test_duplicate_when_centers_within_tolerance(
        self, detector, db_session, org_id, plan_id, make_detection, centered
    ):
        a = await _ingest(db_session, org_id, make_detection(**centered(100, 100)))
        b = await _ingest(db_session, org_id, make_detection(**centered(104, 103)))

        result = await detector.scan(org_id, plan_id)

        assert result.duplicates == 1
        duplicate = next(c for c in result.conflicts if c.type == ConflictType.DUPLICATE)
        assert {duplicate.object1_id, duplicate.object2_id} == {str(a.id), str(b.id)}
        assert duplicate.object1_id < duplicate.object2_id
        assert duplicate.description == "Possible duplicate objects: TABLE"
        assert duplicate.severity.value == "medium"
        assert duplicate.auto_resolvable is False

    @pytest.mark.asyncio
    async def test_no_duplicate_beyond_tolerance(
        self, detector, db_session, org_id, plan_id, make_detection, centered
    ):
        await _ingest(db_session, org_id, make_detection(**centered(100, 100)))
        await _ingest(db_session, org_id, make_detection(**centered(110, 100)))

        result = await detector.scan(org_id, plan_id)

        assert result.duplicates == 0
        # The boxes still touch within the tolerance
        assert result.overlaps == 1

    @pytest.mark.asyncio
    async def test_different_types_never_duplicate(
        self, detector, db_session, org_id, plan_id, make_detection
    ):
        await _ingest(db_session, org_id, make_detection(type_="TABLE"))
        await _ingest(db_session, org_id, make_detection(type_="CHAIR"))

        result = await detector.scan(org_id, plan_id)

        assert result.duplicates == 0
        assert result.overlaps == 1
        assert result.conflicts[0].description in {
            "Overlapping objects: TABLE and CHAIR",
            "Overlapping objects: CHAIR and TABLE",
        }

    @pytest.mark.asyncio
    async def test_overlap_detection(self, detector, db_session, org_id, plan_id, make_detection):
        await _ingest(db_session, org_id, make_detection(x=0, y=0, type_="TABLE"))
        await _ingest(db_session, org_id, make_detection(x=8, y=8, type_="CHAIR"))
        await _ingest(db_session, org_id, make_detection(x=21, y=0, type_="BOOTH"))

        result = await detector.scan(org_id, plan_id)

        assert result.overlaps == 2
        pairs = {
            frozenset((c.object1_id, c.object2_id))
            for c in result.conflicts
            if c.type == ConflictType.OVERLAP
        }
        assert len(pairs) == 2

    @pytest.mark.asyncio
    async def test_separated_boxes_do_not_overlap(
        self, detector, db_session, org_id, plan_id, make_detection
    ):
        await _ingest(db_session, org_id, make_detection(x=0, y=0, type_="TABLE"))
        await _ingest(db_session, org_id, make_detection(x=21, y=0, type_="CHAIR"))

        result = await detector.scan(org_id, plan_id)

        assert result.conflicts == []

    @pytest.mark.asyncio
    async def test_low_confidence_duplicate_is_auto_resolvable(
        self, detector, db_session, org_id, plan_id, make_detection
    ):
        await _ingest(db_session, org_id, make_detection(confidence=0.95))
        await _ingest(db_session, org_id, make_detection(x=1, confidence=0.6))

        result = await detector.scan(org_id, plan_id)

        duplicate = next(c for c in result.conflicts if c.type == ConflictType.DUPLICATE)
        assert duplicate.auto_resolvable is True

    @pytest.mark.asyncio
    async def test_scan_is_scoped_to_plan_and_tenant(
        self, detector, db_session, org_id, plan_id, make_detection
    ):
        await _ingest(db_session, org_id, make_detection())
        await _ingest(db_session, org_id, make_detection(plan="plan-2"))
        await _ingest(db_session, "other-org", make_detection())

        result = await detector.scan(org_id, plan_id)

        assert result.scanned_objects == 1
        assert result.conflicts == []

    @pytest.mark.asyncio
    async def test_deleted_and_inactive_objects_are_never_paired(
        self, detector, db_session, org_id, plan_id, make_detection
    ):
        live = await _ingest(db_session, org_id, make_detection())
        deleted = await _ingest(db_session, org_id, make_detection(x=1))
        inactive = await _ingest(db_session, org_id, make_detection(x=2))
        await db_session.execute(
            update(InfraObjectModel)
            .where(InfraObjectModel.id == deleted.id)
            .values(is_deleted=True)
        )
        await db_session.execute(
            update(InfraObjectModel)
            .where(InfraObjectModel.id == inactive.id)
            .values(is_active=False)
        )

        result = await detector.scan(org_id, plan_id)

        assert result.scanned_objects == 1
        assert result.conflicts == []
        assert result.skipped_pairs == []
        stored = await ObjectStore(db_session).get(org_id, live.id)
        assert stored.conflicts == []
        assert stored.version == 1


class TestWriteBack:
    @pytest.mark.asyncio
    async def test_conflicts_stored_on_both_objects(
        self, detector, db_session, org_id, plan_id, make_detection
    ):
        a = await _ingest(db_session, org_id, make_detection())
        b = await _ingest(db_session, org_id, make_detection(x=2))

        result = await detector.scan(org_id, plan_id)

        assert result.objects_updated == 2
        store = ObjectStore(db_session)
        for obj in (a, b):
            stored = await store.get(org_id, obj.id)
            assert stored.status == ObjectStatus.CONFLICTED
            assert stored.requires_review is True
            assert len(stored.conflicts) == 2
            history = await store.history(org_id, obj.id)
            assert history[-1].action == HistoryAction.CONFLICTS_UPDATED
            assert history[-1].automatic is True

    @pytest.mark.asyncio
    async def test_rescan_is_idempotent(
        self, detector, db_session, org_id, plan_id, make_detection
    ):
        a = await _ingest(db_session, org_id, make_detection())
        await _ingest(db_session, org_id, make_detection(x=2))
        first = await detector.scan(org_id, plan_id)
        version = (await ObjectStore(db_session).get(org_id, a.id)).version

        second = await detector.scan(org_id, plan_id)

        assert second.objects_updated == 0
        assert [c.key for c in second.conflicts] == [c.key for c in first.conflicts]
        assert (await ObjectStore(db_session).get(org_id, a.id)).version == version

    @pytest.mark.asyncio
    async def test_cleared_conflicts_return_to_detected(
        self, detector, db_session, org_id, plan_id, make_detection
    ):
        a = await _ingest(db_session, org_id, make_detection())
        b = await _ingest(db_session, org_id, make_detection(x=2))
        await detector.scan(org_id, plan_id)

        await _reposition(db_session, org_id, b, 500, 500)
        await detector.scan(org_id, plan_id)

        stored = await ObjectStore(db_session).get(org_id, a.id)
        assert stored.conflicts == []
        assert stored.status == ObjectStatus.DETECTED
        assert stored.requires_review is False

    @pytest.mark.asyncio
    async def test_validated_object_returns_to_approved(
        self, detector, db_session, org_id, plan_id, reviewer, make_detection
    ):
        table = await _ingest(db_session, org_id, make_detection(confidence=0.5))
        await service.approve_object(db_session, org_id, table.id, reviewer)
        chair = await _ingest(db_session, org_id, make_detection(x=3, type_="CHAIR"))

        await detector.scan(org_id, plan_id)
        conflicted = await ObjectStore(db_session).get(org_id, table.id)
        assert conflicted.status == ObjectStatus.CONFLICTED

        await _reposition(db_session, org_id, chair, 500, 500)
        await detector.scan(org_id, plan_id)

        cleared = await ObjectStore(db_session).get(org_id, table.id)
        assert cleared.status == ObjectStatus.APPROVED
        assert cleared.conflicts == []

    @pytest.mark.asyncio
    async def test_malformed_object_is_skipped(
        self, detector, db_session, org_id, plan_id, make_detection, caplog
    ):
        a = await _ingest(db_session, org_id, make_detection())
        b = await _ingest(db_session, org_id, make_detection(x=2))
        broken = await _ingest(db_session, org_id, make_detection(x=4))
        await db_session.execute(
            update(InfraObjectModel)
            .where(InfraObjectModel.id == broken.id)
            .values(confidence=1.5)
        )

        with caplog.at_level(logging.WARNING, logger="infralens.conflicts.detector"):
            result = await detector.scan(org_id, plan_id)

        assert result.scanned_objects == 3
        assert len(result.skipped_pairs) == 2
        assert all("confidence" in pair.reason for pair in result.skipped_pairs)
        assert "Skipping pair" in caplog.text
        # The healthy pair is still evaluated
        assert result.duplicates == 1
        assert {str(a.id), str(b.id)} == {
            result.conflicts[0].object1_id,
            result.conflicts[0].object2_id,
        }

        raw = (
            await db_session.execute(
                InfraObjectModel.__table__.select().where(InfraObjectModel.id == broken.id)
            )
        ).one()
        assert raw.conflicts == []
        assert raw.version == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad", [float("nan"), float("inf")])
    async def test_non_finite_geometry_is_skipped_not_overlapping(
        self, detector, db_session, org_id, plan_id, make_detection, bad
    ):
        table = await _ingest(db_session, org_id, make_detection(x=5000, y=5000))
        chair = await _ingest(db_session, org_id, make_detection(type_="CHAIR"))
        await db_session.execute(
            update(InfraObjectModel)
            .where(InfraObjectModel.id == chair.id)
            .values(
                geometry={
                    "bounding_box": {"x": bad, "y": bad, "width": 10, "height": 10},
                    "center": {"x": bad, "y": bad},
                    "rotation": None,
                }
            )
        )

        result = await detector.scan(org_id, plan_id)

        assert result.conflicts == []
        assert result.objects_updated == 0
        assert len(result.skipped_pairs) == 1
        assert "geometry" in result.skipped_pairs[0].reason
        stored = await ObjectStore(db_session).get(org_id, table.id)
        assert stored.conflicts == []
        assert stored.status == ObjectStatus.DETECTED

    @pytest.mark.asyncio
    async def test_skipped_pair_keeps_previous_conflicts(
        self, detector, db_session, org_id, plan_id, make_detection
    ):
        a = await _ingest(db_session, org_id, make_detection())
        b = await _ingest(db_session, org_id, make_detection(x=2))
        await detector.scan(org_id, plan_id)

        await db_session.execute(
            update(InfraObjectModel)
            .where(InfraObjectModel.id == b.id)
            .values(geometry={"bounding_box": None})
        )
        result = await detector.scan(org_id, plan_id)

        assert len(result.skipped_pairs) == 1
        stored = await ObjectStore(db_session).get(org_id, a.id)
        assert len(stored.conflicts) == 2


class TestResolution:
    @pytest.mark.asyncio
    async def test_resolve_marks_both_objects_and_survives_rescan(
        self, detector, db_session, org_id, plan_id, reviewer, make_detection
    ):
        a = await _ingest(db_session, org_id, make_detection())
        b = await _ingest(db_session, org_id, make_detection(x=2))
        result = await detector.scan(org_id, plan_id)
        duplicate = next(c for c in result.conflicts if c.type == ConflictType.DUPLICATE)

        await detector.resolve_conflict(org_id, a.id, duplicate.key, reviewer)
        await detector.scan(org_id, plan_id)

        store = ObjectStore(db_session)
        for obj in (a, b):
            stored = await store.get(org_id, obj.id)
            marked = next(c for c in stored.conflicts if c.key == duplicate.key)
            assert marked.is_resolved
            assert marked.resolved_by == reviewer.id
            assert stored.blocking_conflicts == []

    @pytest.mark.asyncio
    async def test_resolved_duplicate_unblocks_approval(
        self, detector, db_session, org_id, plan_id, reviewer, make_detection
    ):
        a = await _ingest(db_session, org_id, make_detection())
        await _ingest(db_session, org_id, make_detection(x=2))
        result = await detector.scan(org_id, plan_id)
        duplicate = next(c for c in result.conflicts if c.type == ConflictType.DUPLICATE)

        await detector.resolve_conflict(org_id, a.id, duplicate.key, reviewer)
        approved = await service.approve_object(db_session, org_id, a.id, reviewer)

        assert approved.status == ObjectStatus.APPROVED

    @pytest.mark.asyncio
    async def test_resolve_requires_reviewer(
        self, detector, db_session, org_id, plan_id, editor, make_detection
    ):
        a = await _ingest(db_session, org_id, make_detection())
        await _ingest(db_session, org_id, make_detection(x=2))
        result = await detector.scan(org_id, plan_id)

        with pytest.raises(PermissionDeniedError):
            await detector.resolve_conflict(org_id, a.id, result.conflicts[0].key, editor)

    @pytest.mark.asyncio
    async def test_unknown_conflict_key(
        self, detector, db_session, org_id, reviewer, make_detection
    ):
        a = await _ingest(db_session, org_id, make_detection())

        with pytest.raises(NotFoundError):
            await detector.resolve_conflict(org_id, a.id, "duplicate:x:y", reviewer)


def test_scan_result_summary():
    from infralens.conflicts.detector import ScanResult, SkippedPair

    result = ScanResult(org_id="org", plan_id="plan", scanned_objects=3)
    result.skipped_pairs.append(SkippedPair("a", "b", "broken geometry"))

    summary = result.to_dict()

    assert summary["scanned_objects"] == 3
    assert summary["conflicts"] == 0
    assert summary["skipped_pairs"] == [
        {"object1_id": "a", "object2_id": "b", "reason": "broken geometry"}
    ]
