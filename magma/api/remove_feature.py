"""Local tool: remove a map feature by case-insensitive partial label match.

The model parses the JSON this tool returns, so the three-way response
shape (no match / single match removed / disambiguation required) is
part of the contract.
"""

from __future__ import annotations

import json
import logging
from typing import Protocol

from magma.api.features import REMOVE_FEATURE_TOOL
from magma.api.schemas import GeoFeature
from magma.api.tools import LocalTool, ToolSpec

logger = logging.getLogger(__name__)

REMOVE_FEATURE_SPEC = ToolSpec(
    name=REMOVE_FEATURE_TOOL,
    description=(
        "Remove a map feature by searching for it by label. IMPORTANT: Use the "
        "conversation_id from the system prompt. Returns success message or "
        "disambiguation prompt."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "conversation_id": {
                "type": "string",
                "description": "REQUIRED: The conversation ID from the system prompt",
            },
            "query": {
                "type": "string",
                "description": 'Search query for the feature label (e.g., "Portland")',
            },
        },
        "required": ["conversation_id", "query"],
    },
)


class FeatureStore(Protocol):
    async def find_features_by_label(self, conversation_id: str, query: str) -> list[GeoFeature]: ...

    async def delete_feature(self, feature_id: str) -> None: ...


async def remove_feature(store: FeatureStore, conversation_id: str, query: str) -> str:
    """Search features in one conversation and delete the match if it is unique."""
    if not conversation_id:
        return json.dumps({"success": False, "error": "conversation_id is required"})
    if not query:
        return json.dumps({"success": False, "error": "query parameter is required"})

    matches = await store.find_features_by_label(conversation_id, query)

    if not matches:
        return json.dumps({
            "success": False,
            "message": f'No features found matching "{query}"',
        })

    if len(matches) == 1:
        feature = matches[0]
        await store.delete_feature(feature.id)
        logger.info("Removed feature %s (%s) from conversation %s", feature.id, feature.label, conversation_id)
        return json.dumps({
            "success": True,
            "removed_feature_id": feature.id,
            "message": f"Removed feature: {feature.label or 'Unlabeled'}",
        })

    feature_list = "\n".join(
        f"{i}. {f.label or 'Unlabeled'} ({f.kind} at {f.latitude}, {f.longitude})"
        for i, f in enumerate(matches, start=1)
    )
    return json.dumps({
        "success": False,
        "disambiguation_required": True,
        "message": (
            f'Multiple features found matching "{query}":\n{feature_list}\n\n'
            "Please be more specific about which one to remove."
        ),
    })


def create_remove_feature_tool(store: FeatureStore) -> LocalTool:
    """Bind the removal handler to a store as a LocalTool."""

    async def handler(conversation_id: str = "", query: str = "") -> str:
        return await remove_feature(store, conversation_id, query)

    return LocalTool(REMOVE_FEATURE_SPEC, handler)
