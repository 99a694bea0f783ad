"""Geometric conflict detection between objects on one plan.

A scan compares every pair of active objects on the plan (ordered by id so
each unordered pair is seen once) in two passes:

1. duplicates: same category and type, centers within the tolerance on both axes
2. overlaps: bounding boxes intersect once inflated by the tolerance

Each object's stored conflict list is then replaced with exactly this run's
findings, so repeated scans are idempotent. Objects whose stored geometry or
confidence is malformed are reported and skipped pair by pair instead of
failing the whole scan.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from itertools import combinations
from typing import Any
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from infralens.config import get_config
from infralens.db.models import InfraObjectModel
from infralens.errors import DataIntegrityError, NotFoundError, PermissionDeniedError
from infralens.geometry import Geometry
from infralens.models import (
    Actor,
    Conflict,
    ConflictSeverity,
    ConflictType,
    HistoryAction,
    InfraObject,
    utcnow,
)
from infralens.objects.repository import ObjectStore
from infralens.review.rules import apply_review_flags
from infralens.review.state_machine import Trigger, can_fire, next_status

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Candidate:
    id: str
    name: str
    category: str
    type: str
    geometry: Geometry
    confidence: float | None


@dataclass
class SkippedPair:
    object1_id: str
    object2_id: str
    reason: str


@dataclass
class ScanResult:
    """Outcome of one conflict scan."""

    org_id: str
    plan_id: str
    conflicts: list[Conflict] = field(default_factory=list)
    objects_updated: int = 0
    skipped_pairs: list[SkippedPair] = field(default_factory=list)
    scanned_objects: int = 0

    @property
    def duplicates(self) -> int:
        return sum(1 for c in self.conflicts if c.type == ConflictType.DUPLICATE)

    @property
    def overlaps(self) -> int:
        return sum(1 for c in self.conflicts if c.type == ConflictType.OVERLAP)

    def to_dict(self) -> dict[str, Any]:
        return {
            "org_id": self.org_id,
            "plan_id": self.plan_id,
            "scanned_objects": self.scanned_objects,
            "conflicts": len(self.conflicts),
            "duplicates": self.duplicates,
            "overlaps": self.overlaps,
            "objects_updated": self.objects_updated,
            "skipped_pairs": [
                {"object1_id": p.object1_id, "object2_id": p.object2_id, "reason": p.reason}
                for p in self.skipped_pairs
            ],
        }


def _parse_candidate(row: InfraObjectModel) -> _Candidate:
    """Validate the fields a scan needs from a raw row.

    Raises:
        DataIntegrityError: Geometry or confidence is malformed
    """
    try:
        geometry = Geometry.model_validate(row.geometry)
    except ValidationError as exc:
        raise DataIntegrityError(row.id, "geometry", exc.errors()[0]["msg"]) from exc

    confidence = row.confidence
    if confidence is not None:
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
            raise DataIntegrityError(row.id, "confidence", f"not a number: {confidence!r}")
        if math.isnan(confidence) or not 0.0 <= confidence <= 1.0:
            raise DataIntegrityError(row.id, "confidence", f"out of range: {confidence}")

    return _Candidate(
        id=str(row.id),
        name=row.name,
        category=row.category,
        type=row.object_type,
        geometry=geometry,
        confidence=confidence,
    )


def _sorted_conflicts(conflicts: list[Conflict]) -> list[Conflict]:
    return sorted(conflicts, key=lambda c: c.key)


class ConflictDetector:
    """Pairwise duplicate / overlap detection for one plan at a time."""

    def __init__(
        self,
        session: AsyncSession,
        tolerance_pixels: float | None = None,
        auto_resolve_confidence: float | None = None,
    ):
        if tolerance_pixels is None or auto_resolve_confidence is None:
            conflict_config = get_config().conflicts
            if tolerance_pixels is None:
                tolerance_pixels = conflict_config.tolerance_pixels
            if auto_resolve_confidence is None:
                auto_resolve_confidence = conflict_config.auto_resolve_confidence
        self.session = session
        self.store = ObjectStore(session)
        self.tolerance = tolerance_pixels
        self.auto_resolve_confidence = auto_resolve_confidence

    def compare(self, a: _Candidate, b: _Candidate) -> list[Conflict]:
        """Conflicts between two parsed objects; ``a.id`` must sort before ``b.id``."""
        found: list[Conflict] = []

        if (
            a.category == b.category
            and a.type == b.type
            and a.geometry.centers_within(b.geometry, self.tolerance)
        ):
            lowest = min(a.confidence or 0.0, b.confidence or 0.0)
            found.append(
                Conflict(
                    type=ConflictType.DUPLICATE,
                    object1_id=a.id,
                    object2_id=b.id,
                    description=f"Possible duplicate objects: {a.type}",
                    severity=ConflictSeverity.MEDIUM,
                    auto_resolvable=lowest < self.auto_resolve_confidence,
                )
            )

        if a.geometry.intersects(b.geometry, self.tolerance):
            found.append(
                Conflict(
                    type=ConflictType.OVERLAP,
                    object1_id=a.id,
                    object2_id=b.id,
                    description=f"Overlapping objects: {a.type} and {b.type}",
                    severity=ConflictSeverity.LOW,
                    auto_resolvable=False,
                )
            )

        return found

    async def scan(self, org_id: str, plan_id: str, actor: str = "system") -> ScanResult:
        """Detect conflicts on a plan and write them back to the objects."""
        rows = await self.store.active_rows(org_id, plan_id)
        result = ScanResult(org_id=org_id, plan_id=plan_id, scanned_objects=len(rows))

        candidates: dict[str, _Candidate] = {}
        broken: dict[str, DataIntegrityError] = {}
        for row in rows:
            try:
                candidates[str(row.id)] = _parse_candidate(row)
            except DataIntegrityError as exc:
                broken[str(row.id)] = exc

        found: dict[str, list[Conflict]] = {object_id: [] for object_id in candidates}
        skipped_keys: dict[str, set[tuple[str, str]]] = defaultdict(set)

        for id1, id2 in combinations(sorted(str(row.id) for row in rows), 2):
            error = broken.get(id1) or broken.get(id2)
            if error is not None:
                logger.warning(
                    "Skipping pair %s/%s on plan %s: %s", id1, id2, plan_id, error
                )
                result.skipped_pairs.append(SkippedPair(id1, id2, str(error)))
                skipped_keys[id1].add((id1, id2))
                skipped_keys[id2].add((id1, id2))
                continue

            for conflict in self.compare(candidates[id1], candidates[id2]):
                result.conflicts.append(conflict)
                found[id1].append(conflict)
                found[id2].append(conflict)

        for object_id, conflicts in found.items():
            updated = await self._write_back(
                org_id, UUID(object_id), conflicts, skipped_keys.get(object_id, set()), actor
            )
            if updated:
                result.objects_updated += 1

        logger.info(
            "Conflict scan of plan %s: %d objects, %d conflicts, %d updated, %d pairs skipped",
            plan_id,
            result.scanned_objects,
            len(result.conflicts),
            result.objects_updated,
            len(result.skipped_pairs),
        )
        return result

    async def _write_back(
        self,
        org_id: str,
        object_id: UUID,
        conflicts: list[Conflict],
        skipped: set[tuple[str, str]],
        actor: str,
    ) -> bool:
        changed = False

        def replace_conflicts(obj: InfraObject) -> InfraObject | None:
            nonlocal changed
            changed = False
            previous = {c.key: c for c in obj.conflicts}

            merged = []
            for conflict in conflicts:
                earlier = previous.get(conflict.key)
                if earlier is not None and earlier.is_resolved:
                    conflict = conflict.model_copy(
                        update={
                            "resolved_at": earlier.resolved_at,
                            "resolved_by": earlier.resolved_by,
                        }
                    )
                merged.append(conflict)
            # Pairs this run could not evaluate keep their last known conflicts
            merged.extend(
                c for c in obj.conflicts if (c.object1_id, c.object2_id) in skipped
            )
            merged = _sorted_conflicts(merged)

            if merged == _sorted_conflicts(obj.conflicts):
                return None

            status = obj.status
            newly_attached = {c.key for c in merged} - previous.keys()
            if newly_attached and can_fire(status, Trigger.CONFLICT_ATTACHED):
                status = next_status(status, Trigger.CONFLICT_ATTACHED)
            elif not merged and can_fire(status, Trigger.CONFLICTS_CLEARED):
                status = next_status(
                    status,
                    Trigger.CONFLICTS_CLEARED,
                    manually_validated=obj.manually_validated,
                )

            changed = True
            return apply_review_flags(
                obj.model_copy(update={"conflicts": merged, "status": status})
            )

        try:
            await self.store.mutate(
                org_id,
                object_id,
                replace_conflicts,
                actor=actor,
                action=HistoryAction.CONFLICTS_UPDATED,
                reason="conflict scan",
                automatic=True,
            )
        except (DataIntegrityError, NotFoundError) as exc:
            logger.warning("Could not write conflicts for object %s: %s", object_id, exc)
            return False
        return changed

    async def resolve_conflict(
        self, org_id: str, object_id: UUID, conflict_key: str, actor: Actor
    ) -> InfraObject:
        """Mark a conflict resolved on both objects of the pair.

        Resolution is a reviewer decision; nothing is merged or deleted.

        Raises:
            PermissionDeniedError: Actor may not review
            NotFoundError: Object, or conflict with that key on it, does not exist
        """
        if not actor.can_review:
            raise PermissionDeniedError(actor.id, "resolve conflicts")

        obj = await self.store.get(org_id, object_id)
        conflict = next((c for c in obj.conflicts if c.key == conflict_key), None)
        if conflict is None:
            raise NotFoundError(conflict_key, org_id)

        resolved_at = utcnow()

        def mark_resolved(current: InfraObject) -> InfraObject | None:
            marked = [
                c.model_copy(update={"resolved_at": resolved_at, "resolved_by": actor.id})
                if c.key == conflict_key and not c.is_resolved
                else c
                for c in current.conflicts
            ]
            if marked == current.conflicts:
                return None
            return apply_review_flags(current.model_copy(update={"conflicts": marked}))

        updated = obj
        for target_id in (UUID(conflict.object1_id), UUID(conflict.object2_id)):
            try:
                result = await self.store.mutate(
                    org_id,
                    target_id,
                    mark_resolved,
                    actor=actor.id,
                    action=HistoryAction.CONFLICTS_UPDATED,
                    reason=f"resolved {conflict_key}",
                )
            except NotFoundError:
                # The other object may have been deleted since the scan
                if target_id == object_id:
                    raise
                continue
            if target_id == object_id:
                updated = result

        logger.info("Conflict %s resolved by %s", conflict_key, actor.id)
        return updated
