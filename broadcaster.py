#!/usr/bin/env python3
"""
Real-time run event fan-out.

publish() is fire-and-forget: it never raises and never blocks the caller.
Events go to in-process subscriber queues (bounded; a full queue drops its
oldest event) and, when configured, to an append-only JSONL journal that
external transports can tail. Inside an event loop journal lines are written
by a single background writer in a worker thread, so order is kept and the
loop never waits on disk; flush() waits for the writer to catch up.
"""

from __future__ import annotations

import asyncio
import json
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from logging_utils import get_logger

EVENT_RUN_UPDATE = "run_update"
EVENT_ROUND_UPDATE = "round_update"
EVENT_VOTE_UPDATE = "vote_update"
EVENT_TRADE_UPDATE = "trade_update"
VALID_EVENT_TYPES = {EVENT_RUN_UPDATE, EVENT_ROUND_UPDATE, EVENT_VOTE_UPDATE, EVENT_TRADE_UPDATE}

DEFAULT_QUEUE_SIZE = 256


class RunBroadcaster:
    def __init__(self, journal_path: Optional[str] = None, queue_size: int = DEFAULT_QUEUE_SIZE):
        self.log = get_logger("broadcaster")
        self._journal_path = Path(journal_path) if journal_path else None
        self._queue_size = max(1, int(queue_size))
        self._subscribers: Dict[asyncio.Queue, Optional[str]] = {}
        self._journal_pending: List[str] = []
        self._journal_task: Optional[asyncio.Task] = None
        self.published = 0
        self.dropped = 0

    def subscribe(self, run_id: Optional[str] = None) -> asyncio.Queue:
        """Queue receiving events for run_id (or every run when None)."""
        q: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers[q] = run_id
        return q

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.pop(queue, None)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, run_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        try:
            event = {
                "type": event_type,
                "run_id": run_id,
                "ts": time.time(),
                "data": payload,
            }
            if event_type not in VALID_EVENT_TYPES:
                self.log.debug(f"Publishing non-standard event type {event_type}")
            for queue, wanted in list(self._subscribers.items()):
                if wanted is not None and wanted != run_id:
                    continue
                self._offer(queue, event)
            self._append_journal(event)
            self.published += 1
        except Exception as exc:
            # Delivery problems must never reach the state machine.
            self.log.warning(f"Broadcast of {event_type} for run {run_id} failed: {exc}")

    def _offer(self, queue: asyncio.Queue, event: Dict[str, Any]) -> None:
        if queue.full():
            try:
                queue.get_nowait()
                self.dropped += 1
            except asyncio.QueueEmpty:
                pass
        queue.put_nowait(event)

    def _append_journal(self, event: Dict[str, Any]) -> None:
        if self._journal_path is None:
            return
        line = json.dumps(event, separators=(",", ":"), ensure_ascii=False, default=str) + "\n"
        self._journal_pending.append(line)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._write_journal(self._take_pending())
            return
        if self._journal_task is None or self._journal_task.done():
            self._journal_task = loop.create_task(self._journal_writer())

    def _take_pending(self) -> List[str]:
        lines, self._journal_pending = self._journal_pending, []
        return lines

    async def _journal_writer(self) -> None:
        while self._journal_pending:
            await asyncio.to_thread(self._write_journal, self._take_pending())

    def _write_journal(self, lines: List[str]) -> None:
        if not lines or self._journal_path is None:
            return
        try:
            self._journal_path.parent.mkdir(parents=True, exist_ok=True)
            with self._journal_path.open("a", encoding="utf-8") as f:
                f.writelines(lines)
        except OSError as exc:
            self.log.warning(f"Event journal append failed ({self._journal_path}): {exc}")

    async def flush(self) -> None:
        """Wait until every published event is in the journal."""
        while self._journal_task is not None and not self._journal_task.done():
            await asyncio.wait({self._journal_task})
        if self._journal_pending:
            await asyncio.to_thread(self._write_journal, self._take_pending())

    def drain(self, queue: asyncio.Queue) -> List[Dict[str, Any]]:
        """Pop everything currently buffered in queue."""
        out = []
        while True:
            try:
                out.append(queue.get_nowait())
            except asyncio.QueueEmpty:
                return out
