"""
Client-side consumer for the prospect processing SSE stream.

A small explicit state machine:

    idle -> connecting -> active -> complete | failed
                 ^          |
                 +-retrying-+

Transport errors (a dropped connection, a non-200 answer, a stream that ends
without a terminal event) are retried with ``retry_delay(n) = 2**n`` seconds,
at most MAX_RETRIES times. Any successfully parsed message resets the
counter. Application ``error`` events are never retried.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

MAX_RETRIES = 3


class ConsumerState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ACTIVE = "active"
    RETRYING = "retrying"
    COMPLETE = "complete"
    FAILED = "failed"


class StreamTransportError(Exception):
    """Connection-level failure of the event stream."""


def retry_delay(retry_count: int) -> float:
    """Seconds to wait before reconnect attempt ``retry_count`` (0-based): 1, 2, 4, ..."""
    return float(2 ** retry_count)


# A transport opens the stream for a prospect and yields the payload of each
# ``data:`` frame. It raises StreamTransportError on connection problems.
Transport = Callable[[str], AsyncIterator[str]]


@dataclass
class ConsumerOutcome:
    state: ConsumerState
    success: bool
    project_slug: Optional[str] = None
    project_url: Optional[str] = None
    message: Optional[str] = None
    updates: List[Dict[str, Any]] = field(default_factory=list)


class ProspectProgressConsumer:
    """Follows one prospect's processing stream until a terminal state."""

    def __init__(
        self,
        prospect_id: str,
        transport: Transport,
        on_update: Optional[Callable[[Dict[str, Any]], None]] = None,
        on_complete: Optional[Callable[["ConsumerOutcome"], None]] = None,
        on_invalidate: Optional[Callable[[], None]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        max_retries: int = MAX_RETRIES,
        project_url_template: str = "/project/{slug}",
    ):
        self.prospect_id = str(prospect_id)
        self.transport = transport
        self.on_update = on_update
        self.on_complete = on_complete
        self.on_invalidate = on_invalidate
        self.sleep = sleep
        self.max_retries = max_retries
        self.project_url_template = project_url_template

        self.state = ConsumerState.IDLE
        self.retry_count = 0
        self.latest: Optional[Dict[str, Any]] = None
        self.history: List[ConsumerState] = [ConsumerState.IDLE]
        self._updates: List[Dict[str, Any]] = []

    def _transition(self, state: ConsumerState):
        if state != self.state:
            logger.debug(f"Prospect {self.prospect_id}: {self.state.value} -> {state.value}")
            self.state = state
            self.history.append(state)

    async def run(self) -> ConsumerOutcome:
        while True:
            self._transition(ConsumerState.CONNECTING)
            try:
                async for payload in self.transport(self.prospect_id):
                    try:
                        event = json.loads(payload)
                    except json.JSONDecodeError:
                        logger.warning(f"Ignoring unparseable SSE payload for prospect {self.prospect_id}")
                        continue
                    if not isinstance(event, dict):
                        continue

                    self.retry_count = 0
                    self._transition(ConsumerState.ACTIVE)

                    outcome = self._handle(event)
                    if outcome is not None:
                        return outcome

                raise StreamTransportError("Stream closed before processing finished")

            except StreamTransportError as e:
                if self.retry_count >= self.max_retries:
                    logger.error(f"Giving up on prospect {self.prospect_id} stream: {e}")
                    return self._fail("Connection to the processing stream failed. Refresh the page to check status.")

                delay = retry_delay(self.retry_count)
                self.retry_count += 1
                self._transition(ConsumerState.RETRYING)
                logger.info(
                    f"Stream for prospect {self.prospect_id} dropped ({e}); "
                    f"retry {self.retry_count}/{self.max_retries} in {delay:.0f}s"
                )
                await self.sleep(delay)

    def _handle(self, event: Dict[str, Any]) -> Optional[ConsumerOutcome]:
        event_type = event.get("type")

        if event_type == "complete":
            self.latest = None
            if self.on_invalidate:
                self.on_invalidate()
            if not event.get("success"):
                return self._fail(event.get("error") or "Processing failed")

            slug = event.get("projectSlug")
            self._transition(ConsumerState.COMPLETE)
            outcome = ConsumerOutcome(
                state=self.state,
                success=True,
                project_slug=slug,
                project_url=self.project_url_template.format(slug=slug) if slug else None,
                message="Project created" if slug else "Processing complete",
                updates=self._updates,
            )
            if self.on_complete:
                self.on_complete(outcome)
            return outcome

        if event_type == "error":
            self.latest = None
            return self._fail(event.get("message") or "Processing failed")

        self.latest = event
        self._updates.append(event)
        if self.on_update:
            self.on_update(event)
        return None

    def _fail(self, message: str) -> ConsumerOutcome:
        self.latest = None
        self._transition(ConsumerState.FAILED)
        return ConsumerOutcome(state=self.state, success=False, message=message, updates=self._updates)


class HttpxSSETransport:
    """Streams ``data:`` payloads from the process-stream endpoint with httpx."""

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 300.0):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout

    async def __call__(self, prospect_id: str) -> AsyncIterator[str]:
        url = f"{self.base_url}/api/prospects/{prospect_id}/process-stream"
        headers = {"Accept": "text/event-stream"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout, connect=10.0)) as client:
                async with client.stream("GET", url, headers=headers) as response:
                    if response.status_code != 200:
                        raise StreamTransportError(f"Stream returned HTTP {response.status_code}")

                    async for line in response.aiter_lines():
                        if line.startswith("data:"):
                            yield line[5:].strip()
        except httpx.HTTPError as e:
            raise StreamTransportError(str(e)) from e
