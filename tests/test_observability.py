import logging

from inbox.adapters.base import INBOUND_MESSAGE, AdapterEvent
from inbox.models import Platform
from inbox.observability import context
from inbox.observability.logging import _ContextFilter


def test_bound_values_are_restored_on_exit():
    assert context.snapshot() == {"request_id": None, "agent_id": None, "channel_id": None}
    with context.bound(request_id="req-1"):
        with context.bound(channel_id="ch-1", request_id="req-2"):
            assert context.snapshot() == {"request_id": "req-2", "agent_id": None, "channel_id": "ch-1"}
        assert context.get("request_id") == "req-1"
        assert context.get("channel_id") is None
    assert context.get("request_id") is None


def test_request_ids_are_kept_or_generated():
    assert context.new_request_id("  abc ") == "abc"
    generated = context.new_request_id("")
    assert len(generated) == 32
    assert context.new_request_id(None) != generated


def test_filter_injects_every_field():
    record = logging.LogRecord("inbox", logging.INFO, __file__, 1, "hello", None, None)
    with context.bound(agent_id="agent-7"):
        assert _ContextFilter(context.FIELDS, context.snapshot).filter(record) is True
    assert record.agent_id == "agent-7"
    assert record.request_id is None
    assert record.channel_id is None


def test_filter_survives_a_failing_getter():
    def broken():
        raise RuntimeError("boom")

    record = logging.LogRecord("inbox", logging.INFO, __file__, 1, "hello", None, None)
    assert _ContextFilter(("request_id",), broken).filter(record) is True
    assert record.request_id is None


def test_channel_workers_bind_their_channel(runtime, run):
    seen = []

    async def record(event):
        seen.append((event.channel_id, context.get("channel_id")))

    async def scenario():
        runtime.channels.inbound_handler = record
        first = await runtime.channels.create_channel(Platform.WHATSAPP, "wa-1")
        second = await runtime.channels.create_channel(Platform.WHATSAPP, "wa-2")
        for ch in (first, second, first):
            await runtime.channels.dispatch(AdapterEvent(INBOUND_MESSAGE, ch.id, {}))
        await runtime.channels.drain()
        return first.id, second.id

    first_id, second_id = run(scenario)
    assert sorted(seen) == sorted([(first_id, first_id), (second_id, second_id), (first_id, first_id)])
    assert context.get("channel_id") is None
