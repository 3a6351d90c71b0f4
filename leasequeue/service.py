"""Controller service: hands due tasks to listening workers and reacts to queue updates."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from functools import partial
from typing import Any, AsyncIterable, AsyncIterator, Awaitable, Callable

import grpc
from google.protobuf.struct_pb2 import Struct

from leasequeue.messages import (
    AddJobRequest,
    JobCompleteResponse,
    JobStreamResponse,
    ListenRequest,
    SuccessResponse,
    decode_message,
    encode_message,
)
from leasequeue.store import PERIODIC_QUEUE, UPDATE_CHANNEL, Update, UpdateType
from leasequeue.util import string_to_struct

logger = logging.getLogger(__name__)

SERVICE_NAME = "controller.Controller"
SUBSCRIBER_QUEUE_SIZE = 128
PERIODIC_CHECK_INTERVAL = 5.0


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


async def _once(response: Any) -> AsyncIterator[Any]:
    yield response


@dataclass
class Task:
    """A task announced on a queue."""

    queue: str
    task_id: str
    task: str


async def forward_tasks(
    tasks: AsyncIterable[Task], sender: asyncio.Queue[JobStreamResponse]
) -> None:
    """Pass each incoming task on to ``sender`` as a job with an empty item."""
    async for task in tasks:
        await sender.put(
            JobStreamResponse(queue_name=task.queue, task_id=task.task_id, item=Struct())
        )


class ControllerService:
    """Accepts jobs, streams them to workers and handles acknowledgements."""

    def __init__(
        self,
        store: Any,
        *,
        clock: Callable[[], int] | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        self.store = store
        self.subscribers: dict[str, list[asyncio.Queue[JobStreamResponse]]] = {}
        self._clock = clock or _now_ms
        self._sleep = sleep or asyncio.sleep
        self._background: set[asyncio.Task[Any]] = set()

    async def client_add_job(self, request: AddJobRequest) -> AsyncIterator[SuccessResponse]:
        """Store a one-off or periodic job; returns a stream with one success reply."""
        logger.info("Got a request: %r", request)
        item = request.get_item_string()
        if request.is_periodic:
            await self.store.add_periodic_task(
                request.queue_name,
                item,
                request.lease_time,
                request.start_time,
                request.end_time,
                request.interval,
            )
        else:
            await self.store.add_scheduled_task(
                request.queue_name, item, request.start_time, request.lease_time
            )
        return _once(SuccessResponse(success=True))

    async def worker_listen(self, request: ListenRequest) -> AsyncIterator[JobStreamResponse]:
        """Register a worker on a queue and return the stream of jobs sent to it."""
        queue: asyncio.Queue[JobStreamResponse] = asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)
        self.subscribers.setdefault(request.queue_name, []).append(queue)
        logger.debug("worker listening on %s", request.queue_name)
        return self._stream(request.queue_name, queue)

    async def _stream(
        self, queue_name: str, queue: asyncio.Queue[JobStreamResponse]
    ) -> AsyncIterator[JobStreamResponse]:
        try:
            while True:
                yield await queue.get()
        finally:
            self._unsubscribe(queue_name, queue)

    def _unsubscribe(self, queue_name: str, queue: asyncio.Queue[JobStreamResponse]) -> None:
        listeners = self.subscribers.get(queue_name)
        if listeners is None:
            return
        if queue in listeners:
            listeners.remove(queue)
        if not listeners:
            del self.subscribers[queue_name]

    async def worker_job_complete(self, request: JobCompleteResponse) -> SuccessResponse:
        """Acknowledge a finished job."""
        await self.store.ack_task(request.queue_name, request.task_id)
        return SuccessResponse(success=True)

    async def run_background_triggers(self) -> None:
        """Follow the update channel and start the matching handler for each update."""
        pubsub = self.store.open_pubsub()
        await pubsub.subscribe(UPDATE_CHANNEL)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    update = Update.from_json(message["data"])
                except ValueError as error:
                    logger.warning("ignoring malformed update: %s", error)
                    continue
                logger.debug("update %r", update)
                self._dispatch(update)
        finally:
            await pubsub.aclose()

    def _dispatch(self, update: Update) -> asyncio.Task[Any] | None:
        if update.update_type is UpdateType.ADD_JOB:
            coroutine = self.handle_add_job(update)
        elif update.update_type is UpdateType.ITEM_LEASED:
            coroutine = self.handle_lease_item(update)
        else:
            return None
        task = asyncio.create_task(coroutine)
        self._background.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("update handler failed", exc_info=task.exception())

    async def _wait_until(self, timestamp: int | None) -> None:
        if timestamp is None:
            raise ValueError("update carries no consumption time")
        await self._sleep(max(0, timestamp - self._clock()) / 1000)

    async def handle_add_job(self, update: Update) -> list[str]:
        """Once the update is due, lease tasks to the queue's workers, one each.

        Returns the ids of the leased tasks.
        """
        await self._wait_until(update.to_be_consumed_at)
        listeners = list(self.subscribers.get(update.queue_name, ()))
        if not listeners:
            logger.info("NO WORKERS CONNECTED")
            return []
        task_ids = await self.store.get_tasks(update.queue_name, len(listeners))
        logger.info("RECEIVED %d TASKS", len(task_ids))
        for listener, task_id in zip(listeners, task_ids):
            lease_time = await self.store.get_lease_time_by_id(task_id)
            body = await self.store.get_task_by_id(task_id)
            await listener.put(
                JobStreamResponse(
                    queue_name=update.queue_name,
                    task_id=update.task_id,
                    item=string_to_struct(body),
                )
            )
            await self.store.publish_update(
                Update(
                    queue_name=update.queue_name,
                    task_id=update.task_id,
                    update_type=UpdateType.ITEM_LEASED,
                    to_be_consumed_at=update.to_be_consumed_at + lease_time,
                )
            )
        return task_ids

    async def handle_lease_item(self, update: Update) -> None:
        """Once a lease runs out, put the task back into its queue if still present."""
        await self._wait_until(update.to_be_consumed_at)
        await self.store.handle_lease_timeout(update.queue_name, update.task_id)

    async def run_periodic_job_checker(self, interval: float = PERIODIC_CHECK_INTERVAL) -> None:
        """Enqueue due periodic tasks every ``interval`` seconds, forever."""
        while True:
            await self.store.schedule_periodic_tasks(PERIODIC_QUEUE)
            await self._sleep(interval)
            logger.debug("Running periodic job checker")


def build_grpc_handler(service: ControllerService) -> grpc.GenericRpcHandler:
    """Expose ``service`` as the ``controller.Controller`` gRPC service."""

    async def client_add_job(request: AddJobRequest, context: Any) -> AsyncIterator[Any]:
        async for response in await service.client_add_job(request):
            yield response

    async def worker_listen(request: ListenRequest, context: Any) -> AsyncIterator[Any]:
        stream = await service.worker_listen(request)
        try:
            async for response in stream:
                yield response
        finally:
            await stream.aclose()

    async def worker_job_complete(request: JobCompleteResponse, context: Any) -> Any:
        return await service.worker_job_complete(request)

    return grpc.method_handlers_generic_handler(
        SERVICE_NAME,
        {
            "ClientAddJob": grpc.unary_stream_rpc_method_handler(
                client_add_job,
                request_deserializer=partial(decode_message, AddJobRequest),
                response_serializer=encode_message,
            ),
            "WorkerListen": grpc.unary_stream_rpc_method_handler(
                worker_listen,
                request_deserializer=partial(decode_message, ListenRequest),
                response_serializer=encode_message,
            ),
            "WorkerJobComplete": grpc.unary_unary_rpc_method_handler(
                worker_job_complete,
                request_deserializer=partial(decode_message, JobCompleteResponse),
                response_serializer=encode_message,
            ),
        },
    )