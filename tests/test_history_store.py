"""Tests for HistoryStore.

Turn reconstruction is tested with get_messages patched. The remaining
tests run against real Postgres/PostGIS (DB_* env vars, as in
docker-compose) and are skipped when no database is reachable.
"""

import uuid
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from sqlalchemy.exc import IntegrityError

from magma.api.schemas import GeoFeature, HistoryEntry, HistoryKind, Turn
from magma.config import Settings
from magma.errors import MalformedHistoryError
from magma.storage.database import Database
from magma.storage.history import HistoryStore
from magma.storage.migrator import run_migrations


def _row(message_type: str, content) -> SimpleNamespace:
    return SimpleNamespace(id=uuid.uuid4(), type=message_type, content=content)


# ---------------------------------------------------------------------------
# Turn reconstruction (no database)
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_load_history_builds_turns():
    store = HistoryStore(db=None)
    rows = [_row("user", {"text": "Hi"}), _row("assistant", {"text": "Hello"})]

    with patch.object(store, "get_messages", AsyncMock(return_value=rows)) as get_messages:
        turns = await store.load_history("c1")

    get_messages.assert_awaited_once_with("c1", ("user", "assistant"))
    assert turns == [Turn(role="user", content="Hi"), Turn(role="assistant", content="Hello")]


@pytest.mark.asyncio
@pytest.mark.parametrize("content", [{}, {"text": 5}, {"body": "Hi"}, ["Hi"]])
async def test_load_history_rejects_malformed_content(content):
    store = HistoryStore(db=None)
    bad = _row("user", content)

    with patch.object(store, "get_messages", AsyncMock(return_value=[bad])):
        with pytest.raises(MalformedHistoryError, match=str(bad.id)):
            await store.load_history("c1")


@pytest.mark.asyncio
async def test_load_history_skips_empty_assistant_text():
    store = HistoryStore(db=None)
    rows = [_row("user", {"text": "Hi"}), _row("assistant", {"text": ""}), _row("user", {"text": "Again"})]

    with patch.object(store, "get_messages", AsyncMock(return_value=rows)):
        turns = await store.load_history("c1")

    assert [t.content for t in turns] == ["Hi", "Again"]


# ---------------------------------------------------------------------------
# Postgres-backed
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def db_store():
    database = Database(Settings())
    try:
        await database.connect()
        await run_migrations(database.engine)
    except Exception as e:
        await database.disconnect()
        pytest.skip(f"Postgres not available: {e}")
    yield HistoryStore(database)
    await database.disconnect()


def _feature(label: str, lat: float, lon: float) -> GeoFeature:
    return GeoFeature(id=str(uuid.uuid4()), latitude=lat, longitude=lon, label=label)


@pytest.mark.asyncio
async def test_sequence_numbers_and_history_round_trip(db_store):
    conversation = await db_store.create_conversation(title="test")
    cid = conversation["id"]

    await db_store.append_message(cid, "user", {"text": "Map Portland"})
    await db_store.append_history_entry(
        cid, HistoryEntry(kind=HistoryKind.USER_PROMPT, sequence=1, payload={"prompt": "Map Portland"})
    )
    await db_store.append_message(cid, "assistant", {"text": "Done"})

    messages = await db_store.get_conversation_messages(cid)
    assert [m["sequence_number"] for m in messages] == [1, 2, 3]
    assert [m["type"] for m in messages] == ["user", "user_prompt", "assistant"]
    assert messages[1]["content"] == {"prompt": "Map Portland"}

    turns = await db_store.load_history(cid)
    assert turns == [Turn(role="user", content="Map Portland"), Turn(role="assistant", content="Done")]


@pytest.mark.asyncio
async def test_features_round_trip_and_label_search(db_store):
    cid = str(uuid.uuid4())
    await db_store.ensure_conversation(cid)
    await db_store.ensure_conversation(cid)
    message_id = await db_store.append_message(cid, "assistant", {"text": "ok"})

    portland = _feature("Portland", 45.5, -122.6)
    angeles = _feature("Port Angeles", 48.1, -123.4)
    for feature in (portland, angeles):
        await db_store.append_feature(message_id, feature)
    with pytest.raises(IntegrityError):
        await db_store.append_feature(message_id, portland)

    features = await db_store.list_features(cid)
    assert [f.label for f in features] == ["Portland", "Port Angeles"]
    assert features[0].latitude == pytest.approx(45.5)
    assert features[0].longitude == pytest.approx(-122.6)

    assert len(await db_store.find_features_by_label(cid, "PORT")) == 2
    assert [f.id for f in await db_store.find_features_by_label(cid, "angeles")] == [angeles.id]
    assert await db_store.find_features_by_label(str(uuid.uuid4()), "port") == []

    await db_store.delete_feature(angeles.id)
    assert [f.id for f in await db_store.list_message_features(message_id)] == [portland.id]

    await db_store.touch(cid)
    assert (await db_store.get_conversation(cid))["id"] == cid
