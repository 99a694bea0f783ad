"""Catalog of supported infra object types.

Each ``(category, type)`` pair carries a default safety criticality and the
property schema used to validate the object's ``properties`` map. Keys the
schema does not know are kept as an extension map, provided they are
snake_case names holding JSON-compatible values.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from pydantic import JsonValue, TypeAdapter, ValidationError

from infralens.errors import InvalidObjectError
from infralens.models import Criticality


@dataclass(frozen=True, slots=True)
class TypeSpec:
    category: str
    type: str
    name: str
    criticality: Criticality
    properties: tuple[str, ...]
    validations: tuple[str, ...] = ()


_FLOAT_PROPERTIES = {
    "width", "height", "length", "depth", "thickness", "diameter", "slope",
    "rise", "run", "pressure", "flow_rate", "flow_capacity", "coverage_area",
    "wattage", "lumens", "voltage", "amperage", "load_capacity", "area",
    "decibel_level", "runtime", "flush_volume", "font_size", "rotation",
    "size", "value", "battery_level", "hose_length", "temperature_rating",
    "color_temperature",
}
_INT_PROPERTIES = {"steps", "floors", "circuits", "occupancy", "precision"}
_BOOL_PROPERTIES = {
    "load_bearing", "handrail", "handrails", "accessible", "illuminated",
    "panic_bar", "grounded", "gfci", "dimmer", "battery_backup", "led",
    "strobe", "network_connected", "wall_mounted", "stackable", "railings",
    "signage", "landing", "electrical",
}

_EXTENSION_KEY = re.compile(r"^[a-z][a-z0-9_]*$")


def _spec(category, type_, name, criticality, properties, validations=()):
    return TypeSpec(category, type_, name, criticality, tuple(properties), tuple(validations))


_C = Criticality

_TYPES: tuple[TypeSpec, ...] = (
    # Architectural
    _spec("ARCHITECTURAL", "DOOR", "Door", _C.MEDIUM,
          ["width", "height", "opening_direction", "material", "fire_rating"],
          ["dimensional", "fire_safety"]),
    _spec("ARCHITECTURAL", "WINDOW", "Window", _C.LOW,
          ["width", "height", "glass_type", "frame_material"], ["dimensional"]),
    _spec("ARCHITECTURAL", "WALL", "Wall", _C.MEDIUM,
          ["length", "height", "thickness", "material", "load_bearing"],
          ["dimensional", "structural"]),
    _spec("ARCHITECTURAL", "STAIR", "Stair", _C.HIGH,
          ["steps", "rise", "run", "width", "handrail"], ["dimensional", "compliance"]),
    _spec("ARCHITECTURAL", "ELEVATOR", "Elevator", _C.HIGH,
          ["capacity", "floors", "width", "depth", "accessible"], ["technical", "compliance"]),
    # Fire safety
    _spec("FIRE_SAFETY", "FIRE_EXTINGUISHER", "Fire extinguisher", _C.CRITICAL,
          ["type", "capacity", "pressure", "expiry_date", "height"],
          ["compliance", "fire_safety"]),
    _spec("FIRE_SAFETY", "EMERGENCY_EXIT", "Emergency exit", _C.CRITICAL,
          ["width", "height", "capacity", "illuminated", "panic_bar"],
          ["dimensional", "fire_safety"]),
    _spec("FIRE_SAFETY", "SPRINKLER", "Sprinkler", _C.CRITICAL,
          ["type", "coverage_area", "pressure", "temperature_rating"],
          ["technical", "fire_safety"]),
    _spec("FIRE_SAFETY", "SMOKE_DETECTOR", "Smoke detector", _C.CRITICAL,
          ["type", "sensitivity", "coverage_area", "battery_level"],
          ["technical", "fire_safety"]),
    _spec("FIRE_SAFETY", "FIRE_ALARM", "Fire alarm", _C.CRITICAL,
          ["type", "decibel_level", "strobe", "network_connected"],
          ["technical", "fire_safety"]),
    _spec("FIRE_SAFETY", "HYDRANT", "Hydrant", _C.CRITICAL,
          ["type", "pressure", "flow_rate", "hose_length"], ["technical", "fire_safety"]),
    # Electrical
    _spec("ELECTRICAL", "OUTLET", "Outlet", _C.MEDIUM,
          ["voltage", "amperage", "type", "grounded", "gfci"], ["electrical", "compliance"]),
    _spec("ELECTRICAL", "SWITCH", "Switch", _C.LOW,
          ["type", "voltage", "amperage", "dimmer"], ["electrical"]),
    _spec("ELECTRICAL", "ELECTRICAL_PANEL", "Electrical panel", _C.HIGH,
          ["capacity", "voltage", "circuits", "main_breaker"], ["electrical", "compliance"]),
    _spec("ELECTRICAL", "LIGHT_FIXTURE", "Light fixture", _C.LOW,
          ["type", "wattage", "lumens", "color_temperature"], ["electrical"]),
    _spec("ELECTRICAL", "EMERGENCY_LIGHT", "Emergency light", _C.HIGH,
          ["wattage", "battery_backup", "runtime", "led"], ["electrical", "fire_safety"]),
    # Plumbing
    _spec("PLUMBING", "TOILET", "Toilet", _C.LOW,
          ["type", "flush_volume", "accessible", "wall_mounted"], ["dimensional", "compliance"]),
    _spec("PLUMBING", "SINK", "Sink", _C.LOW,
          ["material", "faucet_type", "drainage", "accessible"], ["dimensional", "compliance"]),
    _spec("PLUMBING", "SHOWER", "Shower", _C.MEDIUM,
          ["type", "flow_rate", "temperature_control", "accessible"],
          ["dimensional", "compliance"]),
    _spec("PLUMBING", "DRAIN", "Drain", _C.LOW,
          ["diameter", "type", "flow_capacity", "location"], ["dimensional"]),
    # Accessibility
    _spec("ACCESSIBILITY", "ACCESSIBLE_RAMP", "Accessible ramp", _C.HIGH,
          ["slope", "width", "length", "handrails", "landing"], ["dimensional", "compliance"]),
    _spec("ACCESSIBILITY", "ACCESSIBLE_PARKING", "Accessible parking", _C.HIGH,
          ["width", "length", "access_aisle", "signage"], ["dimensional", "compliance"]),
    _spec("ACCESSIBILITY", "GRAB_BAR", "Grab bar", _C.HIGH,
          ["length", "diameter", "material", "height", "load_capacity"],
          ["dimensional", "compliance"]),
    _spec("ACCESSIBILITY", "TACTILE_PAVING", "Tactile paving", _C.MEDIUM,
          ["type", "material", "pattern", "contrast"], ["compliance"]),
    # Furniture and equipment
    _spec("FURNITURE", "TABLE", "Table", _C.NONE,
          ["length", "width", "height", "material", "capacity"], ["dimensional"]),
    _spec("FURNITURE", "CHAIR", "Chair", _C.NONE,
          ["width", "depth", "height", "material", "stackable"], ["dimensional"]),
    _spec("FURNITURE", "STAGE", "Stage", _C.HIGH,
          ["width", "depth", "height", "load_capacity", "railings"],
          ["dimensional", "structural"]),
    _spec("FURNITURE", "BOOTH", "Booth", _C.LOW,
          ["width", "depth", "height", "walls", "electrical"], ["dimensional"]),
    # Dimensions and annotations
    _spec("ANNOTATIONS", "DIMENSION", "Dimension", _C.NONE,
          ["value", "unit", "precision", "type"], ["dimensional"]),
    _spec("ANNOTATIONS", "TEXT_LABEL", "Text label", _C.NONE,
          ["text", "font_size", "font_family", "rotation"], ["visual"]),
    _spec("ANNOTATIONS", "ROOM_NUMBER", "Room number", _C.LOW,
          ["number", "name", "area", "occupancy"], ["compliance"]),
    _spec("ANNOTATIONS", "NORTH_ARROW", "North arrow", _C.NONE,
          ["rotation", "style", "size"], ["visual"]),
)

CATALOG: dict[tuple[str, str], TypeSpec] = {(t.category, t.type): t for t in _TYPES}


def categories() -> list[str]:
    return sorted({category for category, _ in CATALOG})


def types_for(category: str) -> list[str]:
    return sorted(type_ for cat, type_ in CATALOG if cat == category)


def get_type_spec(category: str, type_: str) -> TypeSpec:
    """Look up a catalog entry, rejecting unknown pairs."""
    spec = CATALOG.get((category, type_))
    if spec is None:
        raise InvalidObjectError(f"Unknown object type: {category}.{type_}")
    return spec


def default_criticality(category: str, type_: str) -> Criticality:
    return get_type_spec(category, type_).criticality


@lru_cache(maxsize=None)
def _adapter_for(prop: str) -> TypeAdapter:
    if prop in _FLOAT_PROPERTIES:
        return TypeAdapter(float)
    if prop in _INT_PROPERTIES:
        return TypeAdapter(int)
    if prop in _BOOL_PROPERTIES:
        return TypeAdapter(bool)
    # Free-form descriptive values ("ABC", "6kg", "oak")
    return TypeAdapter(str | float | int | bool)


_JSON_ADAPTER = TypeAdapter(JsonValue)


def validate_properties(
    category: str, type_: str, properties: dict[str, Any] | None
) -> dict[str, Any]:
    """Validate ``properties`` against the catalog schema for the object type.

    Known keys are coerced to their schema type; other keys must be
    snake_case and hold JSON-compatible values.

    Raises:
        InvalidObjectError: Unknown type, bad extension key or uncoercible value
    """
    spec = get_type_spec(category, type_)
    if not properties:
        return {}

    known = set(spec.properties)
    validated: dict[str, Any] = {}
    for key, value in properties.items():
        if value is None:
            validated[key] = None
            continue
        try:
            if key in known:
                validated[key] = _adapter_for(key).validate_python(value)
            elif _EXTENSION_KEY.match(key):
                validated[key] = _JSON_ADAPTER.validate_python(value)
            else:
                raise InvalidObjectError(
                    f"Property name '{key}' is not a valid extension key for "
                    f"{category}.{type_}"
                )
        except ValidationError as exc:
            raise InvalidObjectError(
                f"Invalid value for property '{key}' on {category}.{type_}: "
                f"{exc.errors()[0]['msg']}"
            ) from exc
    return validated
