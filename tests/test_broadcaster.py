#!/usr/bin/env python3
"""Run event fan-out: filtering, bounded queues, journal, never raising."""

import asyncio
import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from broadcaster import EVENT_ROUND_UPDATE, EVENT_RUN_UPDATE, RunBroadcaster


def test_subscribers_filter_by_run() -> None:
    async def _run():
        b = RunBroadcaster()
        everything = b.subscribe()
        only_a = b.subscribe("run-a")
        b.publish("run-a", EVENT_RUN_UPDATE, {"status": "ACTIVE"})
        b.publish("run-b", EVENT_ROUND_UPDATE, {"round": 1})
        return b, b.drain(everything), b.drain(only_a)

    b, all_events, a_events = asyncio.run(_run())
    assert [e["run_id"] for e in all_events] == ["run-a", "run-b"]
    assert [e["type"] for e in a_events] == [EVENT_RUN_UPDATE]
    assert a_events[0]["data"] == {"status": "ACTIVE"}
    assert "ts" in a_events[0]
    assert b.published == 2


def test_full_queue_drops_oldest() -> None:
    async def _run():
        b = RunBroadcaster(queue_size=2)
        q = b.subscribe()
        for i in range(5):
            b.publish("run-a", EVENT_ROUND_UPDATE, {"round": i})
        return b, b.drain(q)

    b, events = asyncio.run(_run())
    assert [e["data"]["round"] for e in events] == [3, 4]
    assert b.dropped == 3


def test_unsubscribe_stops_delivery() -> None:
    async def _run():
        b = RunBroadcaster()
        q = b.subscribe()
        b.unsubscribe(q)
        b.publish("run-a", EVENT_RUN_UPDATE, {})
        return b, q

    b, q = asyncio.run(_run())
    assert b.subscriber_count == 0
    assert q.empty()


def test_journal_appends_jsonl(tmp_path) -> None:
    journal = tmp_path / "nested" / "events.jsonl"
    b = RunBroadcaster(journal_path=str(journal))
    b.publish("run-a", EVENT_RUN_UPDATE, {"status": "WAITING", "countdown": 10})
    b.publish("run-a", EVENT_RUN_UPDATE, {"status": "ACTIVE"})

    lines = journal.read_text().splitlines()
    assert len(lines) == 2
    first = json.loads(lines[0])
    assert first["type"] == EVENT_RUN_UPDATE
    assert first["data"]["countdown"] == 10


def test_publish_never_raises_on_unserializable_payload(tmp_path) -> None:
    b = RunBroadcaster(journal_path=str(tmp_path / "events.jsonl"))

    class Weird:
        def __repr__(self):
            raise RuntimeError("boom")

    # str() of Weird raises inside json.dumps
    b.publish("run-a", EVENT_RUN_UPDATE, {"obj": Weird()})
    b.publish("run-a", EVENT_RUN_UPDATE, {"ok": True})
    assert b.published == 1


def test_journal_writes_off_loop_in_order_and_flushes(tmp_path) -> None:
    journal = tmp_path / "events.jsonl"

    async def _run():
        b = RunBroadcaster(journal_path=str(journal))
        for i in range(5):
            b.publish("run-a", EVENT_ROUND_UPDATE, {"round": i})
        # nothing touches the disk until the writer task gets the loop
        written_before = journal.exists()
        await b.flush()
        return b, written_before

    b, written_before = asyncio.run(_run())
    assert written_before is False
    lines = journal.read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["data"]["round"] for line in lines] == [0, 1, 2, 3, 4]
    assert b.published == 5
