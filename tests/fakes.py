"""Test doubles shared by the monitoring tests."""
import asyncio
import inspect
from collections import defaultdict
from datetime import datetime, timedelta, timezone

from app.monitoring.gateway import VendorGateway, VendorResponse


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class ManualSleep:
    """Sleep that only returns when the test releases it."""

    def __init__(self):
        self.pending = []

    async def __call__(self, delay):
        future = asyncio.get_running_loop().create_future()
        self.pending.append((delay, future))
        await future

    @property
    def delays(self):
        return [delay for delay, future in self.pending if not future.done()]

    def release_all(self):
        for _, future in self.pending:
            if not future.done():
                future.set_result(None)


class FakeGateway(VendorGateway):
    """Answers envelopes from per-action handlers.

    A handler gets ``(config, fields)`` and returns a reply dict, or an
    awaitable of one to hold the call open; a plain dict is used as the
    reply as is. Unknown actions succeed with no data.
    """

    def __init__(self, handlers=None):
        super().__init__(timeout=5)
        self.handlers = dict(handlers or {})
        self.calls = defaultdict(list)

    def count(self, action):
        return len(self.calls[action])

    async def _send(self, vendor, envelope):
        action = envelope["action"]
        fields = {k: v for k, v in envelope.items() if k not in ("action", "config")}
        self.calls[action].append((vendor, envelope["config"], fields))
        handler = self.handlers.get(action)
        await asyncio.sleep(0)
        if handler is None:
            reply = {"success": True, "data": None}
        elif callable(handler):
            reply = handler(envelope["config"], fields)
        else:
            reply = handler
        if inspect.isawaitable(reply):
            reply = await reply
        return VendorResponse.from_dict(reply)


def ok(data=None):
    return {"success": True, "data": data}


def failure(error, error_class, code=None):
    reply = {"success": False, "data": None, "error": error, "error_class": error_class}
    if code is not None:
        reply["code"] = code
    return reply


def tokens(access="access-1", refresh="refresh-1", expires_in=7200, plant_ids=("123",)):
    return ok({"tokens": {
        "access_token": access,
        "refresh_token": refresh,
        "expires_in": expires_in,
        "authorized_plant_ids": list(plant_ids),
    }})


async def drain(rounds=50):
    for _ in range(rounds):
        await asyncio.sleep(0)
