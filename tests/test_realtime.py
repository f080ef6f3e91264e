"""
tests/test_realtime.py
Tests for the application change feed and the admin queue bridge.
"""

import asyncio
import json
import uuid
from contextlib import asynccontextmanager

import pytest
from fastapi import WebSocketDisconnect, status
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

import services.admin.router as admin_router
from config.settings import settings
from services.admin.router import applications_feed, fetch_queue_snapshot
from services.realtime.bridge import ApplicationChangeFeed, RealtimeSyncBridge, parse_change
from shared.models.models import Shop, User
from shared.utils.security import create_access_token
from tests.conftest import make_application

CHANNEL = "test:changes:seller_applications"


def _message(payload) -> dict:
    data = payload if isinstance(payload, str) else json.dumps(payload)
    return {"type": "message", "channel": CHANNEL, "data": data}


class _Recorder:
    def __init__(self):
        self.fetches = 0
        self.sent = []

    async def fetch(self):
        self.fetches += 1
        return {"type": "snapshot", "version": self.fetches}

    async def send(self, snapshot):
        self.sent.append(snapshot)


async def _wait_for(predicate, timeout: float = 3.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)
    await asyncio.wait_for(poll(), timeout)


# ── Parsing ────────────────────────────────────────────────────────────────────

def test_parse_change_ignores_non_messages():
    assert parse_change(None) is None
    assert parse_change({"type": "subscribe", "data": 1}) is None


def test_parse_change_ignores_garbage():
    assert parse_change(_message("not json")) is None
    assert parse_change(_message("[1, 2]")) is None


def test_parse_change_decodes_bytes():
    change = parse_change({"type": "message", "data": b'{"event": "INSERT", "id": "x"}'})
    assert change == {"event": "INSERT", "id": "x"}


# ── Bridge ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
@pytest.mark.parametrize("event", ["INSERT", "UPDATE"])
async def test_bridge_refetches_on_insert_and_update(redis, event):
    recorder = _Recorder()
    bridge = RealtimeSyncBridge(ApplicationChangeFeed(redis, CHANNEL), recorder.fetch, recorder.send)

    handled = await bridge.handle_message(_message({"event": event, "id": str(uuid.uuid4())}))

    assert handled is True
    assert recorder.sent == [{"type": "snapshot", "version": 1}]


@pytest.mark.asyncio
async def test_bridge_ignores_other_events(redis):
    recorder = _Recorder()
    bridge = RealtimeSyncBridge(ApplicationChangeFeed(redis, CHANNEL), recorder.fetch, recorder.send)

    assert await bridge.handle_message(_message({"event": "DELETE", "id": "x"})) is False
    assert await bridge.handle_message(_message("garbage")) is False
    assert recorder.fetches == 0


@pytest.mark.asyncio
async def test_bridge_duplicate_notifications_converge(redis):
    """Each notification triggers a full re-fetch; the last snapshot wins."""
    recorder = _Recorder()
    bridge = RealtimeSyncBridge(ApplicationChangeFeed(redis, CHANNEL), recorder.fetch, recorder.send)
    change = _message({"event": "UPDATE", "id": "same"})

    await bridge.handle_message(change)
    await bridge.handle_message(change)

    assert recorder.fetches == 2
    assert recorder.sent[-1] == {"type": "snapshot", "version": 2}


@pytest.mark.asyncio
async def test_bridge_run_sends_initial_snapshot_then_follows_feed(redis):
    recorder = _Recorder()
    feed = ApplicationChangeFeed(redis, CHANNEL)
    bridge = RealtimeSyncBridge(feed, recorder.fetch, recorder.send, poll_timeout=0.05)
    stop = asyncio.Event()

    task = asyncio.create_task(bridge.run(stop))
    await _wait_for(lambda: len(recorder.sent) == 1)

    assert await feed.publish("INSERT", uuid.uuid4()) is True
    await _wait_for(lambda: len(recorder.sent) == 2)

    stop.set()
    await asyncio.wait_for(task, 3)
    assert bridge.snapshots_sent == 2


@pytest.mark.asyncio
async def test_bridge_survives_failed_refetch(redis):
    """A database error on one re-fetch is logged; the next change still refreshes."""
    recorder = _Recorder()

    async def flaky_fetch():
        if recorder.fetches == 1:
            recorder.fetches += 1
            raise OperationalError("SELECT 1", {}, Exception("connection reset"))
        return await recorder.fetch()

    feed = ApplicationChangeFeed(redis, CHANNEL)
    bridge = RealtimeSyncBridge(feed, flaky_fetch, recorder.send, poll_timeout=0.05)
    stop = asyncio.Event()
    task = asyncio.create_task(bridge.run(stop))
    await _wait_for(lambda: len(recorder.sent) == 1)

    await feed.publish("UPDATE", uuid.uuid4())
    await _wait_for(lambda: recorder.fetches == 2)
    assert not task.done()

    await feed.publish("UPDATE", uuid.uuid4())
    await _wait_for(lambda: len(recorder.sent) == 2)

    stop.set()
    await asyncio.wait_for(task, 3)
    assert bridge.snapshots_sent == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("how", ["stop", "cancel"])
async def test_bridge_releases_subscription(redis, how):
    recorder = _Recorder()
    bridge = RealtimeSyncBridge(
        ApplicationChangeFeed(redis, CHANNEL), recorder.fetch, recorder.send, poll_timeout=0.05,
    )
    stop = asyncio.Event()
    task = asyncio.create_task(bridge.run(stop))
    await _wait_for(lambda: len(recorder.sent) == 1)
    assert await redis.pubsub_numsub(CHANNEL) == [(CHANNEL, 1)]

    if how == "stop":
        stop.set()
        await asyncio.wait_for(task, 3)
    else:
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    assert await redis.pubsub_numsub(CHANNEL) == [(CHANNEL, 0)]


# ── Publishing ─────────────────────────────────────────────────────────────────

class _BrokenRedis:
    async def publish(self, channel, message):
        raise RedisConnectionError("redis is down")


@pytest.mark.asyncio
async def test_publish_failure_is_reported_not_raised():
    feed = ApplicationChangeFeed(_BrokenRedis(), CHANNEL)
    assert await feed.publish("UPDATE", uuid.uuid4()) is False


# ── Snapshot ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_queue_snapshot_contains_applications_and_shops(
    db: AsyncSession, user: User, shop: Shop,
):
    application = await make_application(db, user, "Cafe Cafe")

    snapshot = await fetch_queue_snapshot(db)

    assert snapshot["type"] == "snapshot"
    assert [a["id"] for a in snapshot["applications"]] == [str(application.id)]
    assert snapshot["applications"][0]["status"] == "pending"
    assert [s["name"] for s in snapshot["shops"]] == ["Santos Bakery"]
    assert snapshot["shops"][0]["owner_name"] == "Maria Santos"


# ── WebSocket Endpoint ─────────────────────────────────────────────────────────

class _FakeWebSocket:
    """Stands in for the admin's browser: records what it is sent, disconnects on demand."""

    def __init__(self):
        self.accepted = False
        self.close_code = None
        self.sent = []
        self.incoming: asyncio.Queue = asyncio.Queue()

    async def accept(self):
        self.accepted = True

    async def close(self, code: int = 1000, reason=None):
        self.close_code = code

    async def send_json(self, data):
        self.sent.append(data)

    async def receive_text(self):
        text = await self.incoming.get()
        if text is None:
            raise WebSocketDisconnect(code=1000)
        return text


@pytest.fixture
def shared_session(db: AsyncSession, monkeypatch):
    @asynccontextmanager
    async def use_test_session():
        yield db

    monkeypatch.setattr(admin_router, "get_db_context", use_test_session)


def _token(user: User) -> str:
    token, _ = create_access_token(user_id=str(user.id), email=user.email)
    return token


@pytest.mark.asyncio
async def test_live_queue_streams_snapshots_to_admin(
    db: AsyncSession, redis, admin_user: User, user: User, shared_session,
):
    channel = settings.APPLICATIONS_CHANNEL
    websocket = _FakeWebSocket()
    task = asyncio.create_task(applications_feed(websocket, token=_token(admin_user), redis=redis))

    await _wait_for(lambda: len(websocket.sent) == 1)
    assert websocket.accepted
    assert websocket.sent[0] == {"type": "snapshot", "applications": [], "shops": []}

    application = await make_application(db, user)
    await ApplicationChangeFeed(redis).publish("INSERT", application.id)
    await _wait_for(lambda: len(websocket.sent) == 2)
    assert [a["id"] for a in websocket.sent[1]["applications"]] == [str(application.id)]

    websocket.incoming.put_nowait(None)
    await asyncio.wait_for(task, 3)
    assert await redis.pubsub_numsub(channel) == [(channel, 0)]


@pytest.mark.asyncio
async def test_live_queue_refuses_buyer(redis, user: User, shared_session):
    websocket = _FakeWebSocket()

    await applications_feed(websocket, token=_token(user), redis=redis)

    assert websocket.close_code == status.WS_1008_POLICY_VIOLATION
    assert not websocket.accepted
    assert websocket.sent == []


@pytest.mark.asyncio
async def test_live_queue_refuses_missing_token(redis, shared_session):
    websocket = _FakeWebSocket()

    await applications_feed(websocket, token=None, redis=redis)

    assert websocket.close_code == status.WS_1008_POLICY_VIOLATION


@pytest.mark.asyncio
async def test_live_queue_closes_when_bridge_dies(
    redis, admin_user: User, shared_session,
):
    websocket = _FakeWebSocket()

    async def broken_send(data):
        raise RuntimeError("socket write failed")

    websocket.send_json = broken_send
    await asyncio.wait_for(
        applications_feed(websocket, token=_token(admin_user), redis=redis), 3,
    )

    assert websocket.accepted
    assert websocket.close_code == status.WS_1011_INTERNAL_ERROR
