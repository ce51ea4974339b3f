#!/usr/bin/env python3
"""
Qdrant Filter Builder

Composable payload filters. ``Condition`` creates individual field, id and
geo conditions; ``Filter`` groups them into ``must`` / ``should`` /
``must_not`` clauses and renders the JSON the points API expects.

    Filter().must(
        Condition.match("city", "London"),
        Condition.range("price", gte=10, lt=100),
    ).must_not(Condition.is_empty("tags"))
"""

from typing import Any, Dict, List, Optional, Sequence, Union
from uuid import UUID

from ..errors import ValidationError

PointId = Union[int, str]
MatchValue = Union[str, int, bool]


def validate_point_id(point_id: PointId) -> PointId:
    """Point ids are unsigned integers or UUID strings."""
    if isinstance(point_id, bool):
        raise ValidationError(f"Invalid point id: {point_id!r}", provider="qdrant")
    if isinstance(point_id, int):
        if point_id < 0:
            raise ValidationError(f"Point id must be non-negative: {point_id}", provider="qdrant")
        return point_id
    try:
        UUID(str(point_id))
    except ValueError as e:
        raise ValidationError(
            f"Point id must be an unsigned integer or UUID: {point_id!r}", provider="qdrant"
        ) from e
    return point_id


def _require_key(key: str):
    if not key:
        raise ValidationError("Filter field key must not be empty", provider="qdrant")


class Condition:
    """Factories for single filter conditions."""

    @staticmethod
    def match(key: str, value: MatchValue) -> Dict[str, Any]:
        _require_key(key)
        return {"key": key, "match": {"value": value}}

    @staticmethod
    def match_text(key: str, text: str) -> Dict[str, Any]:
        _require_key(key)
        return {"key": key, "match": {"text": text}}

    @staticmethod
    def match_any(key: str, values: Sequence[MatchValue]) -> Dict[str, Any]:
        _require_key(key)
        if not values:
            raise ValidationError("match_any needs at least one value", provider="qdrant")
        return {"key": key, "match": {"any": list(values)}}

    @staticmethod
    def match_except(key: str, values: Sequence[MatchValue]) -> Dict[str, Any]:
        _require_key(key)
        if not values:
            raise ValidationError("match_except needs at least one value", provider="qdrant")
        return {"key": key, "match": {"except": list(values)}}

    @staticmethod
    def range(
        key: str,
        gt: Optional[float] = None,
        gte: Optional[float] = None,
        lt: Optional[float] = None,
        lte: Optional[float] = None,
    ) -> Dict[str, Any]:
        _require_key(key)
        bounds = {
            name: value
            for name, value in (("gt", gt), ("gte", gte), ("lt", lt), ("lte", lte))
            if value is not None
        }
        if not bounds:
            raise ValidationError(f"range on {key} needs at least one bound", provider="qdrant")
        lower = gt if gt is not None else gte
        upper = lt if lt is not None else lte
        if lower is not None and upper is not None and lower > upper:
            raise ValidationError(
                f"range on {key} has lower bound {lower} above upper bound {upper}",
                provider="qdrant",
            )
        return {"key": key, "range": bounds}

    @staticmethod
    def is_empty(key: str) -> Dict[str, Any]:
        _require_key(key)
        return {"is_empty": {"key": key}}

    @staticmethod
    def is_null(key: str) -> Dict[str, Any]:
        _require_key(key)
        return {"is_null": {"key": key}}

    @staticmethod
    def has_id(ids: Sequence[PointId]) -> Dict[str, Any]:
        if not ids:
            raise ValidationError("has_id needs at least one id", provider="qdrant")
        return {"has_id": [validate_point_id(point_id) for point_id in ids]}

    @staticmethod
    def geo_radius(key: str, lat: float, lon: float, radius: float) -> Dict[str, Any]:
        """Points within ``radius`` metres of (lat, lon)."""
        _require_key(key)
        if not -90.0 <= lat <= 90.0:
            raise ValidationError(f"Latitude out of range: {lat}", provider="qdrant")
        if not -180.0 <= lon <= 180.0:
            raise ValidationError(f"Longitude out of range: {lon}", provider="qdrant")
        if radius <= 0:
            raise ValidationError("geo_radius radius must be positive", provider="qdrant")
        return {
            "key": key,
            "geo_radius": {"center": {"lat": lat, "lon": lon}, "radius": radius},
        }

    @staticmethod
    def nested(key: str, filter: "Filter") -> Dict[str, Any]:
        """Apply ``filter`` to each object of the array field ``key``."""
        _require_key(key)
        if filter.is_empty:
            raise ValidationError("nested filter must not be empty", provider="qdrant")
        return {"nested": {"key": key, "filter": filter.build()}}


class Filter:
    """Fluent builder for a Qdrant filter."""

    def __init__(self):
        self._must: List[Dict[str, Any]] = []
        self._should: List[Dict[str, Any]] = []
        self._must_not: List[Dict[str, Any]] = []
        self._min_should: Optional[int] = None

    @staticmethod
    def _conditions(conditions) -> List[Dict[str, Any]]:
        return [c.build() if isinstance(c, Filter) else c for c in conditions]

    def must(self, *conditions: Union[Dict[str, Any], "Filter"]) -> "Filter":
        self._must.extend(self._conditions(conditions))
        return self

    def should(self, *conditions: Union[Dict[str, Any], "Filter"]) -> "Filter":
        self._should.extend(self._conditions(conditions))
        return self

    def must_not(self, *conditions: Union[Dict[str, Any], "Filter"]) -> "Filter":
        self._must_not.extend(self._conditions(conditions))
        return self

    def min_should(self, count: int) -> "Filter":
        """Require at least ``count`` of the ``should`` conditions."""
        if count < 1:
            raise ValidationError("min_should count must be >= 1", provider="qdrant")
        self._min_should = count
        return self

    @property
    def is_empty(self) -> bool:
        return not (self._must or self._should or self._must_not)

    def build(self) -> Dict[str, Any]:
        if self._min_should is not None and self._min_should > len(self._should):
            raise ValidationError(
                f"min_should {self._min_should} exceeds {len(self._should)} should conditions",
                provider="qdrant",
            )
        result: Dict[str, Any] = {}
        if self._must:
            result["must"] = list(self._must)
        if self._should and self._min_should is not None:
            result["min_should"] = {
                "conditions": list(self._should),
                "min_count": self._min_should,
            }
        elif self._should:
            result["should"] = list(self._should)
        if self._must_not:
            result["must_not"] = list(self._must_not)
        return result


def to_filter(value: Union[Filter, Dict[str, Any], None]) -> Optional[Dict[str, Any]]:
    if value is None:
        return None
    if isinstance(value, Filter):
        return None if value.is_empty else value.build()
    return value
