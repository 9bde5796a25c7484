"""
Hook dispatch: typed lifecycle events published by the orchestrator.

Handlers subscribe to a set of stages and receive HookEvent objects.
Once the dispatcher is started, events travel through a bounded
asyncio.Queue to a single consumer task, so publishing never runs
handler code on the orchestrator's path. Every handler invocation is
bounded by a timeout; handler failures are logged and never fail a run.

Handlers may be coroutine functions or plain callables (which run in a
worker thread so they can be timed out).
"""

import asyncio
import enum
import hashlib
import hmac
import inspect
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import httpx

from core.config import settings
from core.exceptions import HookDeliveryError, describe_error
from engine.retry import compute_delay
from schemas.pipeline import StepType

logger = logging.getLogger(__name__)


class HookStage(str, enum.Enum):
    BEFORE_EXTRACT = "BEFORE_EXTRACT"
    AFTER_EXTRACT = "AFTER_EXTRACT"
    BEFORE_TRANSFORM = "BEFORE_TRANSFORM"
    AFTER_TRANSFORM = "AFTER_TRANSFORM"
    BEFORE_VALIDATE = "BEFORE_VALIDATE"
    AFTER_VALIDATE = "AFTER_VALIDATE"
    BEFORE_ENRICH = "BEFORE_ENRICH"
    AFTER_ENRICH = "AFTER_ENRICH"
    BEFORE_ROUTE = "BEFORE_ROUTE"
    AFTER_ROUTE = "AFTER_ROUTE"
    BEFORE_LOAD = "BEFORE_LOAD"
    AFTER_LOAD = "AFTER_LOAD"
    BEFORE_EXPORT = "BEFORE_EXPORT"
    AFTER_EXPORT = "AFTER_EXPORT"
    BEFORE_FEED = "BEFORE_FEED"
    AFTER_FEED = "AFTER_FEED"
    BEFORE_SINK = "BEFORE_SINK"
    AFTER_SINK = "AFTER_SINK"
    ON_ERROR = "ON_ERROR"
    ON_RETRY = "ON_RETRY"
    ON_DEAD_LETTER = "ON_DEAD_LETTER"
    PIPELINE_STARTED = "PIPELINE_STARTED"
    PIPELINE_COMPLETED = "PIPELINE_COMPLETED"
    PIPELINE_FAILED = "PIPELINE_FAILED"


def stage_for(step_type: Optional[StepType], before: bool) -> Optional[HookStage]:
    """BEFORE_/AFTER_ stage of a step type; TRIGGER steps have none"""
    if step_type is None or step_type == StepType.TRIGGER:
        return None
    prefix = "BEFORE" if before else "AFTER"
    return HookStage(f"{prefix}_{step_type.value}")


@dataclass
class HookEvent:
    """Context payload delivered to hook handlers"""
    pipeline_id: str
    run_id: str
    stage: HookStage
    step_key: Optional[str] = None
    records: Optional[List[Dict[str, Any]]] = None
    error: Optional[Dict[str, Any]] = None
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "pipelineId": self.pipeline_id,
            "runId": self.run_id,
            "stage": self.stage.value,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.step_key is not None:
            payload["stepKey"] = self.step_key
        if self.records is not None:
            payload["records"] = self.records
        if self.error is not None:
            payload["error"] = self.error
        if self.data:
            payload["data"] = self.data
        return payload


HookHandler = Callable[[HookEvent], Any]


def _is_async(handler: HookHandler) -> bool:
    return inspect.iscoroutinefunction(handler) or inspect.iscoroutinefunction(
        getattr(handler, "__call__", None)
    )


async def _invoke(handler: HookHandler, event: HookEvent) -> Any:
    if _is_async(handler):
        return await handler(event)
    result = await asyncio.to_thread(handler, event)
    if inspect.isawaitable(result):
        return await result
    return result


class HookDispatcher:
    """
    Publishes HookEvents to subscribed handlers.

    Not started: `publish` delivers inline and returns once every handler
    acknowledged or timed out. Started: `publish` enqueues (waiting while
    the bounded queue is full) and a consumer task delivers in order.
    """

    def __init__(self, queue_size: Optional[int] = None, timeout_ms: Optional[int] = None):
        self.queue_size = queue_size or settings.HOOK_QUEUE_SIZE
        self.timeout_ms = timeout_ms or settings.HOOK_TIMEOUT_MS
        self._subscriptions: List[Tuple[HookHandler, Optional[frozenset]]] = []
        self._queue: Optional[asyncio.Queue] = None
        self._consumer: Optional[asyncio.Task] = None

        self.delivered = 0
        self.failed = 0

    def subscribe(self, handler: HookHandler, stages: Optional[Iterable[HookStage]] = None) -> Callable[[], None]:
        """Register a handler for some stages (all when None); returns an unsubscribe callable"""
        entry = (handler, frozenset(HookStage(s) for s in stages) if stages is not None else None)
        self._subscriptions.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscriptions:
                self._subscriptions.remove(entry)

        return unsubscribe

    @property
    def started(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    def has_subscribers(self, stage: HookStage) -> bool:
        return any(stages is None or stage in stages for _, stages in self._subscriptions)

    async def publish(self, event: HookEvent, timeout_ms: Optional[int] = None) -> None:
        if not self.has_subscribers(event.stage):
            return
        if self.started:
            await self._queue.put((event, timeout_ms))
        else:
            await self._deliver(event, timeout_ms)

    async def _deliver(self, event: HookEvent, timeout_ms: Optional[int]) -> None:
        timeout = (timeout_ms or self.timeout_ms) / 1000
        for handler, stages in list(self._subscriptions):
            if stages is not None and event.stage not in stages:
                continue
            try:
                await asyncio.wait_for(_invoke(handler, event), timeout=timeout)
                self.delivered += 1
            except asyncio.TimeoutError:
                self.failed += 1
                logger.warning(
                    f"Hook handler {_handler_name(handler)} timed out after {timeout:.3f}s "
                    f"on {event.stage.value} (run {event.run_id})"
                )
            except Exception as e:
                self.failed += 1
                error = HookDeliveryError(
                    f"Hook handler {_handler_name(handler)} failed on {event.stage.value}",
                    context={"run_id": event.run_id, "stage": event.stage.value, "step_key": event.step_key},
                    original_exception=e
                )
                logger.error(str(error), extra={"error_context": error.to_dict()})

    async def _consume(self) -> None:
        while True:
            event, timeout_ms = await self._queue.get()
            try:
                await self._deliver(event, timeout_ms)
            finally:
                self._queue.task_done()

    def start(self) -> None:
        """Switch to queued delivery; needs a running event loop"""
        if self.started:
            return
        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._consumer = asyncio.create_task(self._consume())
        logger.debug("Hook dispatcher started")

    async def drain(self) -> None:
        """Wait until every queued event has been delivered"""
        if self._queue is not None:
            await self._queue.join()

    async def stop(self) -> None:
        """Deliver what is queued, then stop the consumer"""
        if not self.started:
            return
        await self.drain()
        self._consumer.cancel()
        try:
            await self._consumer
        except asyncio.CancelledError:
            pass
        self._consumer = None
        self._queue = None
        logger.debug("Hook dispatcher stopped")


def _handler_name(handler: HookHandler) -> str:
    return getattr(handler, "__qualname__", None) or type(handler).__name__


class WebhookHookHandler:
    """
    Delivers events as JSON POSTs.

    When a secret is configured the body is signed with HMAC-SHA256 and
    the hex digest is sent in the X-Hook-Signature header. 5xx, 429 and
    transport failures are retried with exponential backoff; other 4xx
    responses fail immediately.
    """

    SIGNATURE_HEADER = "X-Hook-Signature"

    def __init__(
        self,
        url: str,
        secret: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        max_attempts: int = 3,
        initial_delay_ms: float = 1000,
        max_delay_ms: float = 30000,
        backoff_multiplier: float = 2.0,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.secret = secret
        self.headers = headers or {}
        self.max_attempts = max(1, max_attempts)
        self.initial_delay_ms = initial_delay_ms
        self.max_delay_ms = max_delay_ms
        self.backoff_multiplier = backoff_multiplier
        self.timeout = timeout_seconds or settings.WEBHOOK_TIMEOUT_SECONDS
        self.transport = transport

    def sign(self, body: bytes) -> str:
        digest = hmac.new(self.secret.encode(), body, hashlib.sha256).hexdigest()
        return f"sha256={digest}"

    async def __call__(self, event: HookEvent) -> None:
        body = json.dumps(event.to_dict(), default=str).encode()
        headers = {"Content-Type": "application/json", **self.headers}
        if self.secret:
            headers[self.SIGNATURE_HEADER] = self.sign(body)

        context = {"url": self.url, "stage": event.stage.value, "run_id": event.run_id}
        last_error: Optional[BaseException] = None

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            for attempt in range(self.max_attempts):
                try:
                    response = await client.post(self.url, content=body, headers=headers)
                except httpx.TransportError as e:
                    last_error = e
                    logger.warning(f"Webhook {self.url} transport error: {e} (attempt {attempt + 1}/{self.max_attempts})")
                else:
                    if response.status_code < 400:
                        return
                    last_error = HookDeliveryError(
                        f"Webhook {self.url} returned HTTP {response.status_code}",
                        context={**context, "status_code": response.status_code}
                    )
                    if response.status_code < 500 and response.status_code != 429:
                        raise last_error
                    logger.warning(
                        f"Webhook {self.url} returned {response.status_code} "
                        f"(attempt {attempt + 1}/{self.max_attempts})"
                    )

                if attempt < self.max_attempts - 1:
                    delay = compute_delay(attempt, self.initial_delay_ms, self.max_delay_ms, self.backoff_multiplier)
                    await asyncio.sleep(delay / 1000)

        raise HookDeliveryError(
            f"Webhook delivery to {self.url} failed after {self.max_attempts} attempts",
            context={**context, "attempts": self.max_attempts, "last_error": describe_error(last_error)["message"] if last_error else None},
            original_exception=last_error
        )
