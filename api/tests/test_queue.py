"""Tests for the Redis queue service."""

import asyncio

from api.src.services import queue

class FakeRedis:
    def __init__(self):
        self.values = {}
        self.closed = False

    async def set(self, key, value, ex=None):
        self.values[key] = (value, ex)

    async def close(self):
        self.closed = True

def fake_client(monkeypatch):
    client = FakeRedis()

    async def get_client():
        return client

    monkeypatch.setattr(queue, "get_redis_client", get_client)
    return client

def test_cancel_of_running_run_expires(monkeypatch):
    client = fake_client(monkeypatch)
    asyncio.run(queue.request_cancel("run-1"))

    _, ttl = client.values["conveyor:cancel:run-1"]
    assert ttl == queue.settings.cancel_ttl
    assert client.closed

def test_cancel_of_queued_run_waits_for_a_worker(monkeypatch):
    client = fake_client(monkeypatch)
    asyncio.run(queue.request_cancel("run-2", expires=False))

    _, ttl = client.values["conveyor:cancel:run-2"]
    assert ttl is None
