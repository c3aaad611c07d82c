"""Geo feature extraction from tool results.

Pure and total: the same (tool_name, result, arguments) always yields the
same features, and malformed input yields [] rather than an error.
"""

from __future__ import annotations

import json
import math
import re
import uuid
from typing import Any

from magma.api.schemas import GeoFeature

GEOCODE_TOOL = "geocode_address"
REMOVE_FEATURE_TOOL = "remove_map_feature"

# Namespace for deterministic feature ids
_FEATURE_NAMESPACE = uuid.UUID("6f1c2a0e-4b7d-5e3f-9a21-8c4d0b7e5f13")

# Tools surfaced through an MCP bridge are prefixed mcp__<server>__<tool>
_MCP_PREFIX = re.compile(r"^mcp__[^_]+__")


def base_tool_name(tool_name: str) -> str:
    return _MCP_PREFIX.sub("", tool_name)


def _feature_id(tool_name: str, result: str, arguments: dict[str, Any]) -> str:
    key = json.dumps([tool_name, result, arguments], sort_keys=True, default=str)
    return str(uuid.uuid5(_FEATURE_NAMESPACE, key))


def _coordinate(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _extract_geocode(result: str, arguments: dict[str, Any]) -> list[GeoFeature]:
    try:
        data = json.loads(result)
    except (TypeError, ValueError):
        return []
    if not isinstance(data, dict):
        return []

    lat = _coordinate(data.get("lat"))
    lon = _coordinate(data.get("lon"))
    if lat is None or lon is None or not -90 <= lat <= 90 or not -180 <= lon <= 180:
        return []

    label = data.get("display_name") or (arguments or {}).get("address") or "Unknown"
    return [
        GeoFeature(
            id=_feature_id(GEOCODE_TOOL, result, arguments or {}),
            latitude=lat,
            longitude=lon,
            label=str(label),
        )
    ]


def extract_features(tool_name: str, result: str, arguments: dict[str, Any]) -> list[GeoFeature]:
    """Map a tool's textual result to zero or more map features."""
    if base_tool_name(tool_name) == GEOCODE_TOOL:
        return _extract_geocode(result, arguments)
    return []


def removed_feature_id(tool_name: str, result: str) -> str | None:
    """Return the id a successful remove_map_feature call reports, else None.

    Best-effort: malformed or non-matching JSON is ignored.
    """
    if base_tool_name(tool_name) != REMOVE_FEATURE_TOOL:
        return None
    try:
        data = json.loads(result)
    except (TypeError, ValueError):
        return None
    if not isinstance(data, dict) or data.get("success") is not True:
        return None
    feature_id = data.get("removed_feature_id")
    return str(feature_id) if feature_id else None
