"""Unit tests for InfraLens Pydantic models.

Tests data validation, field constraints, and model behavior.
"""

from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

import pytest
from pydantic import ValidationError

from infralens.geometry import Geometry
from infralens.models import (
    ConfidenceLevel,
    Conflict,
    ConflictSeverity,
    ConflictType,
    DetectionPayload,
    InfraObject,
    ObjectPage,
    ObjectQuery,
    ObjectStatus,
    as_utc,
)


def _object(**overrides) -> InfraObject:
    now = datetime.now(timezone.utc)
    fields = dict(
        id=uuid4(),
        org_id="test-org",
        plan_id="plan-1",
        name="Door",
        category="ARCHITECTURAL",
        type="DOOR",
        geometry=Geometry.from_box(0, 0, 10, 20),
        created_by="tester",
        created_at=now,
        updated_at=now,
    )
    fields.update(overrides)
    return InfraObject(**fields)


class TestInfraObject:
    """Test InfraObject validation and derived values."""

    def test_defaults(self):
        obj = _object()

        assert obj.status == ObjectStatus.DETECTED
        assert obj.version == 1
        assert obj.conflicts == []
        assert obj.is_terminal is False

    def test_confidence_out_of_range(self):
        with pytest.raises(ValidationError):
            _object(confidence=1.2)
        with pytest.raises(ValidationError):
            _object(confidence=-0.1)

    @pytest.mark.parametrize(
        "confidence, expected",
        [
            (0.1, ConfidenceLevel.VERY_LOW),
            (0.2, ConfidenceLevel.VERY_LOW),
            (0.35, ConfidenceLevel.LOW),
            (0.6, ConfidenceLevel.MEDIUM),
            (0.8, ConfidenceLevel.HIGH),
            (0.81, ConfidenceLevel.VERY_HIGH),
            (None, None),
        ],
    )
    def test_confidence_level(self, confidence, expected):
        assert _object(confidence=confidence).confidence_level == expected

    def test_quality_score(self):
        assert _object(confidence=0.85).quality_score == pytest.approx(85.0)
        assert _object(confidence=None).quality_score == 50.0

    def test_rejected_is_terminal(self):
        assert _object(status=ObjectStatus.REJECTED).is_terminal


class TestConflict:
    def test_key_identifies_type_and_pair(self):
        conflict = Conflict(
            type=ConflictType.OVERLAP,
            object1_id="a",
            object2_id="b",
            description="Overlapping objects: DOOR and WALL",
            severity=ConflictSeverity.LOW,
        )

        assert conflict.key == "overlap:a:b"
        assert conflict.other_id("a") == "b"
        assert conflict.other_id("b") == "a"
        assert not conflict.is_resolved

    def test_unordered_pair_rejected(self):
        with pytest.raises(ValidationError):
            Conflict(
                type=ConflictType.DUPLICATE,
                object1_id="b",
                object2_id="a",
                description="Possible duplicate objects: DOOR",
                severity=ConflictSeverity.MEDIUM,
            )


class TestPayloads:
    def test_detection_requires_confidence(self):
        with pytest.raises(ValidationError):
            DetectionPayload(
                plan_id="plan-1",
                category="ARCHITECTURAL",
                type="DOOR",
                geometry=Geometry.from_box(0, 0, 1, 2),
            )

    def test_query_confidence_bounds_must_be_ordered(self):
        with pytest.raises(ValidationError):
            ObjectQuery(min_confidence=0.9, max_confidence=0.2)

    def test_query_page_starts_at_one(self):
        with pytest.raises(ValidationError):
            ObjectQuery(page=0)

    def test_page_count(self):
        assert ObjectPage(items=[], total=41, page=1, limit=20).pages == 3
        assert ObjectPage(items=[], total=0, page=1, limit=20).pages == 0


def test_as_utc_attaches_timezone_to_naive_values():
    naive = datetime(2026, 1, 1, 12, 0)

    assert as_utc(naive).tzinfo == timezone.utc
    assert as_utc(None) is None
