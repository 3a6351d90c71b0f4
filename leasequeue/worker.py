"""Command that listens on a queue and acknowledges every job it receives."""

from __future__ import annotations

import argparse
import asyncio
import logging
from functools import partial

import grpc

from leasequeue.messages import (
    JobCompleteResponse,
    JobStreamResponse,
    ListenRequest,
    SuccessResponse,
    decode_message,
    encode_message,
)
from leasequeue.service import SERVICE_NAME

logger = logging.getLogger(__name__)

DEFAULT_ADDRESS = "[::1]:50051"
DEFAULT_QUEUE = "queue1"
CONNECT_TIMEOUT = 5.0
RESULT = "Dummy"


def _method(name: str) -> str:
    return f"/{SERVICE_NAME}/{name}"


async def run_worker(address: str = DEFAULT_ADDRESS, queue_name: str = DEFAULT_QUEUE) -> list[str]:
    """Receive jobs from ``queue_name`` and acknowledge each until the stream ends.

    Returns the ids of the acknowledged jobs. Raises ``ConnectionError`` when the
    controller cannot be reached.
    """
    acked: list[str] = []
    async with grpc.aio.insecure_channel(address) as channel:
        try:
            await asyncio.wait_for(channel.channel_ready(), CONNECT_TIMEOUT)
        except asyncio.TimeoutError:
            raise ConnectionError(f"cannot connect to {address}") from None
        listen = channel.unary_stream(
            _method("WorkerListen"),
            request_serializer=encode_message,
            response_deserializer=partial(decode_message, JobStreamResponse),
        )
        complete = channel.unary_unary(
            _method("WorkerJobComplete"),
            request_serializer=encode_message,
            response_deserializer=partial(decode_message, SuccessResponse),
        )
        stream = listen(ListenRequest(queue_name=queue_name))
        while True:
            try:
                item = await stream.read()
            except grpc.aio.AioRpcError as error:
                logger.info("job stream ended: %s", error.code())
                break
            if item is grpc.aio.EOF:
                break
            print(f"RESPONSE={item!r}")
            reply = await complete(
                JobCompleteResponse(
                    queue_name=item.queue_name, task_id=item.task_id, result=RESULT
                )
            )
            if reply.success:
                print(f"ACKED JOB {item.task_id}")
                acked.append(item.task_id)
    return acked


def main(argv: list[str] | None = None) -> int:
    """Run a worker against a controller."""
    parser = argparse.ArgumentParser(
        prog="leasequeue-worker", description="Receive and acknowledge jobs from a queue."
    )
    parser.add_argument("--address", default=DEFAULT_ADDRESS, help="controller address")
    parser.add_argument("--queue", default=DEFAULT_QUEUE, help="queue to listen on")
    args = parser.parse_args(argv)
    asyncio.run(run_worker(args.address, args.queue))
    return 0