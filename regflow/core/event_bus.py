"""
Event dispatcher built on asyncio tasks.

Publishing only looks up the subscribed handlers and schedules them:
- stateless handlers run as tracked background tasks bounded by a semaphore
- stateful handlers get a FIFO queue drained by one worker per handler

Handler failures are logged and dropped. Delivery is at-most-once.
"""

import asyncio
from typing import Awaitable, Callable, Dict, Optional, Set, Union
import structlog

from regflow.core.events.registry import Handler, HandlerRegistry, registry as default_registry
from regflow.models.schemas import Topic
from regflow.config.settings import settings

logger = structlog.get_logger()


class BackgroundTaskPool:
    """
    Owner of fire-and-forget tasks.

    Callers submit work and never observe its completion. The pool keeps a
    reference to every task until it finishes so it can be joined or
    cancelled at shutdown.
    """

    def __init__(self, max_concurrency: int):
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._tasks: Set[asyncio.Task] = set()

    def submit(self, work: Callable[[], Awaitable[None]], name: str = None) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._run(work), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, work: Callable[[], Awaitable[None]]):
        async with self._semaphore:
            await work()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def join(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until every submitted task finished.

        Returns:
            False if the timeout elapsed first
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout

        # Tasks may be submitted while we wait, so loop until the set is empty
        while self._tasks:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                return False
            _, not_done = await asyncio.wait(set(self._tasks), timeout=remaining)
            if not_done and deadline is not None and loop.time() >= deadline:
                return False
        return True

    async def cancel_all(self):
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


class _SerialWorker:
    """Runs the events queued for one stateful handler, one at a time."""

    def __init__(self, handler: Handler, invoke: Callable[[Handler, str, object], Awaitable[None]]):
        self.handler = handler
        self._invoke = invoke
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

    def enqueue(self, topic: str, event):
        self._queue.put_nowait((topic, event))
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(
                self._drain(), name=f"stateful:{self.handler.name}"
            )

    async def _drain(self):
        while True:
            topic, event = await self._queue.get()
            try:
                await self._invoke(self.handler, topic, event)
            finally:
                self._queue.task_done()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def join(self):
        await self._queue.join()

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass


class Dispatcher:
    """
    Publishes events to the handlers registered for their topic.

    ``publish`` returns as soon as the handlers are scheduled. Errors raised by
    handlers are never propagated to the publisher.
    """

    def __init__(
        self,
        handler_registry: HandlerRegistry = None,
        max_concurrency: int = None,
        handler_timeout: float = None,
    ):
        self._registry = handler_registry if handler_registry is not None else default_registry
        self._pool = BackgroundTaskPool(max_concurrency or settings.dispatcher_max_concurrency)
        self._handler_timeout = handler_timeout or settings.handler_timeout_seconds
        self._workers: Dict[int, _SerialWorker] = {}
        self._running = False
        self._closed = False
        self._stats = {
            "published": 0,
            "scheduled": 0,
            "handled": 0,
            "failed": 0,
            "timed_out": 0,
            "dropped": 0,
        }

    @property
    def registry(self) -> HandlerRegistry:
        return self._registry

    async def start(self):
        """Freeze the registry and accept events"""
        if self._running:
            logger.warning("dispatcher_already_running")
            return

        self._registry.freeze()
        self._running = True
        self._closed = False
        logger.info(
            "dispatcher_started",
            topics=self._registry.topics(),
            handlers=[h.name for h in self._registry.handlers()],
        )

    async def stop(self, timeout: float = None):
        """Drain scheduled work, then cancel whatever is left"""
        if self._closed:
            return

        self._closed = True
        self._running = False
        timeout = settings.dispatcher_shutdown_timeout_seconds if timeout is None else timeout

        drained = await self.join(timeout)
        if not drained:
            logger.warning(
                "dispatcher_shutdown_timeout",
                pending_tasks=self._pool.pending,
                pending_stateful=sum(w.pending for w in self._workers.values()),
            )
        await self._pool.cancel_all()
        for worker in self._workers.values():
            await worker.stop()

        logger.info("dispatcher_stopped", drained=drained, stats=self.get_stats())

    async def publish(self, topic: Union[Topic, str], event):
        """
        Schedule every handler subscribed to ``topic`` for ``event``.

        Args:
            topic: The topic to publish on
            event: Immutable event payload
        """
        key = topic.value if isinstance(topic, Topic) else str(topic)

        if self._closed:
            self._stats["dropped"] += 1
            logger.warning("event_dropped_dispatcher_stopped", topic=key)
            return

        handlers = self._registry.lookup(key)
        if not handlers:
            logger.debug("no_handlers_for_event", topic=key)
            return

        self._stats["published"] += 1
        for handler in handlers:
            self._stats["scheduled"] += 1
            if handler.is_stateful:
                self._worker_for(handler).enqueue(key, event)
            else:
                self._pool.submit(
                    lambda h=handler: self._invoke(h, key, event),
                    name=f"{handler.name}:{key}",
                )

        logger.debug("event_published", topic=key, handlers=len(handlers))

    async def notify(self, metadata):
        """Resolve event metadata and publish the result on its topic"""
        await self.publish(metadata.topic, metadata.resolve())

    async def join(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for all scheduled handler invocations to finish.

        Returns:
            False if the timeout elapsed first
        """
        async def _wait_all():
            while True:
                await self._pool.join()
                for worker in list(self._workers.values()):
                    await worker.join()
                # handlers may publish follow-up events while we wait
                if self._pool.pending == 0 and all(w.pending == 0 for w in self._workers.values()):
                    return

        try:
            await asyncio.wait_for(_wait_all(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    def _worker_for(self, handler: Handler) -> _SerialWorker:
        worker = self._workers.get(id(handler))
        if worker is None:
            worker = _SerialWorker(handler, self._invoke)
            self._workers[id(handler)] = worker
        return worker

    async def _invoke(self, handler: Handler, topic: str, event):
        """Run one handler, recording but never raising its errors"""
        try:
            await asyncio.wait_for(handler.handle(event), timeout=self._handler_timeout)
            self._stats["handled"] += 1
            logger.debug("event_handled", handler=handler.name, topic=topic)
        except asyncio.TimeoutError:
            self._stats["timed_out"] += 1
            logger.error(
                "event_handler_timeout",
                handler=handler.name,
                topic=topic,
                timeout_seconds=self._handler_timeout,
            )
        except Exception as e:
            self._stats["failed"] += 1
            logger.error(
                "event_handler_error",
                handler=handler.name,
                topic=topic,
                error=str(e),
                exc_info=True,
            )

    def get_stats(self) -> dict:
        """Get dispatcher statistics"""
        return {
            "running": self._running,
            "topics": self._registry.topics(),
            "total_handlers": len(self._registry.handlers()),
            "pending_tasks": self._pool.pending,
            "pending_stateful": sum(w.pending for w in self._workers.values()),
            **self._stats,
        }
