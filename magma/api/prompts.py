"""GIS system prompt with the current map state and conversation id."""

from __future__ import annotations

from collections.abc import Iterable

from magma.api.schemas import GeoFeature

SYSTEM_CONTEXT = """You are a GIS (Geographic Information Systems) processing assistant.

You help users with geospatial data analysis, manipulation, and transformation tasks.

The user is viewing a map interface. When you use tools that return GeoFeature objects,
those features will automatically appear on the map. The user may reference "the map"
when asking questions or giving commands about the displayed geographic data.

If a user asks for a feature to be added to the map you only need to geolocate it. That is
enough to get it mapped.

Attempt to complete the user's request. If you lack the tools to do so, let the user know.
"""


def build_system_prompt(conversation_id: str, features: Iterable[GeoFeature] = ()) -> str:
    features = list(features)
    if features:
        lines = ["", "", "Current map features:"]
        for feature in features:
            lines.append(
                f'- {feature.kind}: "{feature.label or "Unlabeled"}" '
                f"at ({feature.latitude}, {feature.longitude})"
            )
        map_context = "\n".join(lines) + "\n"
    else:
        map_context = "\n\nThe map currently has no features."

    return f"{SYSTEM_CONTEXT}{map_context}\n\nConversation ID: {conversation_id}"
