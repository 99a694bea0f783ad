"""Plan-space geometry value types.

Coordinates are plan pixels (floating point). All operations are pure and
return new values; nothing here touches storage.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class Point(BaseModel):
    """A position on the plan."""

    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    x: float
    y: float


class BoundingBox(BaseModel):
    """Axis-aligned box anchored at its top-left corner."""

    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    x: float
    y: float
    width: float = Field(ge=0)
    height: float = Field(ge=0)

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def bottom(self) -> float:
        return self.y + self.height

    @property
    def center(self) -> Point:
        return Point(x=self.x + self.width / 2, y=self.y + self.height / 2)

    def area(self) -> float:
        return self.width * self.height

    def intersects(self, other: BoundingBox, tolerance: float = 0.0) -> bool:
        """True unless one box, inflated by ``tolerance``, ends before the other starts.

        The gap must be strictly larger than the tolerance to separate the
        boxes, so touching within tolerance counts as intersecting.
        """
        return not (
            self.right + tolerance < other.x
            or other.right + tolerance < self.x
            or self.bottom + tolerance < other.y
            or other.bottom + tolerance < self.y
        )


class Geometry(BaseModel):
    """Position and extent of an infra object on a plan."""

    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    bounding_box: BoundingBox
    center: Point
    rotation: float | None = None

    @classmethod
    def from_box(
        cls, x: float, y: float, width: float, height: float, rotation: float | None = None
    ) -> Geometry:
        """Build a geometry whose center is the middle of the box."""
        box = BoundingBox(x=x, y=y, width=width, height=height)
        return cls(bounding_box=box, center=box.center, rotation=rotation)

    def area(self) -> float:
        return self.bounding_box.area()

    def intersects(self, other: Geometry, tolerance: float = 0.0) -> bool:
        return self.bounding_box.intersects(other.bounding_box, tolerance)

    def center_distance(self, other: Geometry) -> tuple[float, float]:
        """Per-axis absolute distance between the two centers."""
        return (
            abs(self.center.x - other.center.x),
            abs(self.center.y - other.center.y),
        )

    def centers_within(self, other: Geometry, tolerance: float) -> bool:
        dx, dy = self.center_distance(other)
        return dx <= tolerance and dy <= tolerance

    def moved_to(self, x: float, y: float) -> Geometry:
        """Translate so the center lands on (x, y); the box keeps its size."""
        dx = x - self.center.x
        dy = y - self.center.y
        box = BoundingBox(
            x=self.bounding_box.x + dx,
            y=self.bounding_box.y + dy,
            width=self.bounding_box.width,
            height=self.bounding_box.height,
        )
        return self.model_copy(update={"bounding_box": box, "center": Point(x=x, y=y)})

    def resized(self, width: float, height: float) -> Geometry:
        """Change the box extent, keeping the top-left anchor and the center point."""
        box = BoundingBox(
            x=self.bounding_box.x, y=self.bounding_box.y, width=width, height=height
        )
        return self.model_copy(update={"bounding_box": box})

    def to_storage(self) -> dict:
        """Serialise for the JSON geometry column."""
        return self.model_dump(mode="json")
