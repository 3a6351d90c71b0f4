"""Command that runs the controller: background triggers, periodic checker and gRPC server."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import time
from typing import Any

import grpc
from dotenv import find_dotenv, load_dotenv

from leasequeue.service import ControllerService, build_grpc_handler
from leasequeue.store import PERIODIC_QUEUE, RedisStore

logger = logging.getLogger(__name__)

DEFAULT_ADDRESS = "[::1]:50051"
STARTUP_DELAY = 2.0
DEMO_QUEUE = "queue1"
DEMO_LEASE_TIME_MS = 10000
DEMO_PERIOD_MS = 10000
DEMO_INTERVAL_MS = 4000


async def serve(service: ControllerService, address: str) -> tuple[grpc.aio.Server, int]:
    """Start a gRPC server for ``service`` on ``address``; returns it and its bound port."""
    server = grpc.aio.server()
    server.add_generic_rpc_handlers((build_grpc_handler(service),))
    port = server.add_insecure_port(address)
    if port == 0:
        raise OSError(f"cannot bind {address}")
    await server.start()
    return server, port


async def _seed_demo(store: Any) -> None:
    now = time.time_ns() // 1_000_000
    await store.add_scheduled_task(
        DEMO_QUEUE,
        json.dumps({"a": "12"}, separators=(",", ":")),
        now,
        DEMO_LEASE_TIME_MS,
    )
    await store.add_periodic_task(
        PERIODIC_QUEUE,
        "something",
        DEMO_LEASE_TIME_MS,
        now,
        now + DEMO_PERIOD_MS,
        DEMO_INTERVAL_MS,
    )


async def _run(address: str, seed_demo: bool) -> None:
    store = RedisStore.from_env()
    service = ControllerService(store)
    background = [
        asyncio.create_task(service.run_background_triggers()),
        asyncio.create_task(service.run_periodic_job_checker()),
    ]
    try:
        await asyncio.sleep(STARTUP_DELAY)
        if seed_demo:
            await _seed_demo(store)
        server, port = await serve(service, address)
        logger.info("controller listening on port %d", port)
        await server.wait_for_termination()
    finally:
        for task in background:
            task.cancel()
        await store.close()


def main(argv: list[str] | None = None) -> int:
    """Run the controller until it is stopped."""
    parser = argparse.ArgumentParser(
        prog="leasequeue-controller", description="Run the task queue controller."
    )
    parser.add_argument("--address", default=DEFAULT_ADDRESS, help="address to listen on")
    parser.add_argument(
        "--no-demo", action="store_true", help="do not enqueue the sample tasks at start-up"
    )
    args = parser.parse_args(argv)
    load_dotenv(find_dotenv(usecwd=True))
    logging.basicConfig(level=logging.INFO)
    asyncio.run(_run(args.address, seed_demo=not args.no_demo))
    return 0