"""
Progress broker - in-process message passing between pipeline runs and SSE streams.

One ProgressBroker lives on ``app.state`` for the lifetime of the application.
Each prospect gets a channel holding its background task, the latest
progress update, the terminal event and at most one subscriber queue. A new
subscriber replaces the previous one; subscribers leaving never affect the run.
"""

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)

TERMINAL_TYPES = ("complete", "error")

Event = Dict[str, Any]
Publish = Callable[[Event], None]
Runner = Callable[[Publish], Awaitable[Event]]


def progress_event(prospect_id: str, status: str, progress: int, message: str) -> Event:
    return {
        "prospectId": str(prospect_id),
        "status": status,
        "progress": progress,
        "message": message,
    }


def complete_event(success: bool, project_slug: Optional[str] = None, error: Optional[str] = None) -> Event:
    return {"type": "complete", "success": success, "projectSlug": project_slug, "error": error}


def error_event(message: str) -> Event:
    return {"type": "error", "message": message}


def is_terminal(event: Optional[Event]) -> bool:
    return bool(event) and event.get("type") in TERMINAL_TYPES


def format_sse(event: Event) -> str:
    """Encode an event as one SSE ``data:`` frame."""
    return f"data: {json.dumps(event, ensure_ascii=False, default=str)}\n\n"


class ProcessingChannel:
    """Event source for a single prospect."""

    def __init__(self, prospect_id: str):
        self.prospect_id = prospect_id
        self.task: Optional[asyncio.Task] = None
        self.latest: Optional[Event] = None
        self.terminal: Optional[Event] = None
        self.finished_at: Optional[float] = None
        self._subscriber: Optional[asyncio.Queue] = None

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()

    @property
    def finished(self) -> bool:
        return self.terminal is not None

    @property
    def has_subscriber(self) -> bool:
        return self._subscriber is not None

    def publish(self, event: Event):
        if is_terminal(event):
            self.terminal = event
            self.latest = None
            self.finished_at = time.monotonic()
        else:
            self.latest = event

        if self._subscriber is not None:
            self._subscriber.put_nowait(event)

    def subscribe(self) -> asyncio.Queue:
        """Attach a subscriber, closing any previous one. Replays current state."""
        if self._subscriber is not None:
            logger.info(f"Replacing SSE subscriber for prospect {self.prospect_id}")
            self._subscriber.put_nowait(None)

        queue: asyncio.Queue = asyncio.Queue()
        if self.latest is not None:
            queue.put_nowait(self.latest)
        if self.terminal is not None:
            queue.put_nowait(self.terminal)

        self._subscriber = queue
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        if self._subscriber is queue:
            self._subscriber = None


class ProgressBroker:
    """Per-application registry of processing channels."""

    def __init__(self, retention_seconds: float = 300):
        self.retention_seconds = retention_seconds
        self._channels: Dict[str, ProcessingChannel] = {}

    def get(self, prospect_id) -> Optional[ProcessingChannel]:
        self._prune()
        return self._channels.get(str(prospect_id))

    def is_running(self, prospect_id) -> bool:
        channel = self._channels.get(str(prospect_id))
        return channel is not None and channel.running

    def running_ids(self):
        return {pid for pid, channel in self._channels.items() if channel.running}

    def start(self, prospect_id, runner: Runner) -> ProcessingChannel:
        """
        Run ``runner(publish)`` as a background task.

        Idempotent while a run is active: the existing channel is returned.
        The runner's return value is published as the terminal event.
        """
        key = str(prospect_id)
        existing = self._channels.get(key)
        if existing is not None and existing.running:
            return existing

        channel = ProcessingChannel(key)
        self._channels[key] = channel

        async def run():
            try:
                terminal = await runner(channel.publish)
            except asyncio.CancelledError:
                channel.publish(error_event("Processing was cancelled"))
                raise
            except Exception as e:
                logger.exception(f"Processing run crashed for prospect {key}")
                terminal = error_event(str(e) or "Processing failed")

            if not is_terminal(terminal):
                terminal = error_event("Processing ended without a result")
            channel.publish(terminal)

        channel.task = asyncio.create_task(run(), name=f"process-prospect-{key}")
        logger.info(f"Started processing run for prospect {key}")
        return channel

    def discard(self, prospect_id):
        """Forget a finished channel so the next stream starts fresh."""
        key = str(prospect_id)
        channel = self._channels.get(key)
        if channel is not None and not channel.running:
            del self._channels[key]

    def _prune(self):
        now = time.monotonic()
        expired = [
            key for key, channel in self._channels.items()
            if not channel.running
            and channel.finished_at is not None
            and now - channel.finished_at > self.retention_seconds
            and not channel.has_subscriber
        ]
        for key in expired:
            del self._channels[key]

    async def shutdown(self):
        tasks = [channel.task for channel in self._channels.values() if channel.running]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Cancelled {len(tasks)} processing runs")
