import asyncio

import pytest

from leasequeue.messages import (
    AddJobRequest,
    JobCompleteResponse,
    JobStreamResponse,
    ListenRequest,
    SuccessResponse,
)
from leasequeue.service import ControllerService, Task, forward_tasks
from leasequeue.store import Update, UpdateType
from leasequeue.util import json_to_struct, struct_to_json


class FakePubSub:
    def __init__(self, messages):
        self.messages = messages
        self.channels = []
        self.closed = False

    async def subscribe(self, *channels):
        self.channels.extend(channels)

    async def listen(self):
        for message in self.messages:
            yield message

    async def aclose(self):
        self.closed = True


class FakeStore:
    def __init__(self):
        self.items = {}
        self.lease_times = {}
        self.due = []
        self.calls = []
        self.published = []
        self.pubsub = FakePubSub([])

    def open_pubsub(self):
        return self.pubsub

    async def add_scheduled_task(self, queue_name, task, time, lease_time):
        self.calls.append(("scheduled", queue_name, task, time, lease_time))
        return "new-id"

    async def add_periodic_task(self, queue_name, task, lease_time, start, end, interval):
        self.calls.append(("periodic", queue_name, task, lease_time, start, end, interval))
        return True

    async def get_tasks(self, queue_name, no_of_tasks):
        self.calls.append(("get_tasks", queue_name, no_of_tasks))
        taken = self.due[:no_of_tasks]
        del self.due[:no_of_tasks]
        return taken

    async def get_lease_time_by_id(self, task_id):
        return self.lease_times[task_id]

    async def get_task_by_id(self, task_id):
        return self.items[task_id]

    async def ack_task(self, queue_name, task_id):
        self.calls.append(("ack", queue_name, task_id))
        return True

    async def handle_lease_timeout(self, queue_name, task_id):
        self.calls.append(("lease_timeout", queue_name, task_id))

    async def schedule_periodic_tasks(self, queue_name):
        self.calls.append(("schedule_periodic", queue_name))
        return True

    async def publish_update(self, update):
        self.published.append(update)


def make_service(store, now=1000):
    sleeps = []

    async def sleeper(delay):
        sleeps.append(delay)

    service = ControllerService(store, clock=lambda: now, sleep=sleeper)
    return service, sleeps


async def _collect(stream):
    return [item async for item in stream]


async def _task_source(tasks):
    for task in tasks:
        yield task


@pytest.mark.asyncio
async def test_forward_tasks_sends_empty_items():
    tasks = [Task("q", "t1", "body1"), Task("q", "t2", "body2")]
    sender = asyncio.Queue()
    await forward_tasks(_task_source(tasks), sender)
    received = [sender.get_nowait() for _ in range(sender.qsize())]
    assert [(r.queue_name, r.task_id) for r in received] == [("q", "t1"), ("q", "t2")]
    assert all(struct_to_json(r.item) == {} for r in received)


@pytest.mark.asyncio
async def test_client_add_job_scheduled():
    store = FakeStore()
    service, _ = make_service(store)
    request = AddJobRequest(
        queue_name="queue1", item=json_to_struct({"a": "12"}), start_time=100, lease_time=5000
    )
    responses = await _collect(await service.client_add_job(request))
    assert responses == [SuccessResponse(success=True)]
    assert store.calls == [("scheduled", "queue1", '{"a":"12"}', 100, 5000)]


@pytest.mark.asyncio
async def test_client_add_job_periodic():
    store = FakeStore()
    service, _ = make_service(store)
    request = AddJobRequest(
        queue_name="p",
        is_periodic=True,
        lease_time=10,
        start_time=20,
        end_time=30,
        interval=5,
    )
    responses = await _collect(await service.client_add_job(request))
    assert responses == [SuccessResponse(success=True)]
    assert store.calls == [("periodic", "p", "", 10, 20, 30, 5)]


@pytest.mark.asyncio
async def test_worker_listen_streams_and_unsubscribes():
    service, _ = make_service(FakeStore())
    stream = await service.worker_listen(ListenRequest(queue_name="q"))
    assert len(service.subscribers["q"]) == 1
    job = JobStreamResponse(queue_name="q", task_id="t")
    service.subscribers["q"][0].put_nowait(job)
    assert await stream.__anext__() == job
    await stream.aclose()
    assert "q" not in service.subscribers


@pytest.mark.asyncio
async def test_worker_job_complete_acks():
    store = FakeStore()
    service, _ = make_service(store)
    reply = await service.worker_job_complete(
        JobCompleteResponse(queue_name="q", task_id="t", result="Dummy")
    )
    assert reply == SuccessResponse(success=True)
    assert store.calls == [("ack", "q", "t")]


@pytest.mark.asyncio
async def test_handle_add_job_without_workers():
    store = FakeStore()
    service, sleeps = make_service(store)
    result = await service.handle_add_job(Update("q", "t", UpdateType.ADD_JOB, 1000))
    assert result == []
    assert store.calls == []
    assert sleeps == [0]


@pytest.mark.asyncio
async def test_handle_add_job_leases_to_worker():
    store = FakeStore()
    store.due = ["t1"]
    store.items["t1"] = '{"a":"12"}'
    store.lease_times["t1"] = 300
    service, sleeps = make_service(store, now=1000)
    await service.worker_listen(ListenRequest(queue_name="q"))
    update = Update("q", "t1", UpdateType.ADD_JOB, 1500)

    result = await service.handle_add_job(update)

    assert result == ["t1"]
    assert sleeps == [0.5]
    assert ("get_tasks", "q", 1) in store.calls
    sent = service.subscribers["q"][0].get_nowait()
    assert sent.task_id == "t1"
    assert struct_to_json(sent.item) == {"a": "12"}
    assert store.published == [
        Update("q", "t1", UpdateType.ITEM_LEASED, update.to_be_consumed_at + 300)
    ]


@pytest.mark.asyncio
async def test_handle_add_job_one_task_two_workers():
    store = FakeStore()
    store.due = ["t1"]
    store.items["t1"] = "{}"
    store.lease_times["t1"] = 10
    service, _ = make_service(store)
    await service.worker_listen(ListenRequest(queue_name="q"))
    await service.worker_listen(ListenRequest(queue_name="q"))

    await service.handle_add_job(Update("q", "t1", UpdateType.ADD_JOB, 0))

    assert ("get_tasks", "q", 2) in store.calls
    first, second = service.subscribers["q"]
    assert first.qsize() == 1
    assert second.qsize() == 0


@pytest.mark.asyncio
async def test_handle_lease_item_requeues_after_wait():
    store = FakeStore()
    service, sleeps = make_service(store, now=2000)
    await service.handle_lease_item(Update("q", "t", UpdateType.ITEM_LEASED, 1000))
    assert sleeps == [0]
    assert store.calls == [("lease_timeout", "q", "t")]


@pytest.mark.asyncio
async def test_update_without_time_is_rejected():
    service, _ = make_service(FakeStore())
    with pytest.raises(ValueError):
        await service.handle_lease_item(Update("q", "t", UpdateType.ITEM_LEASED, None))


@pytest.mark.asyncio
async def test_run_background_triggers_dispatches():
    store = FakeStore()
    store.pubsub = FakePubSub(
        [
            {"type": "subscribe", "data": 1},
            {"type": "message", "data": Update("q", "t1", UpdateType.ITEM_LEASED, 0).to_json()},
            {"type": "message", "data": "not json"},
            {"type": "message", "data": Update("q", "t2", UpdateType.ITEM_ACKED, None).to_json()},
            {"type": "message", "data": Update("q", "t3", UpdateType.ADD_JOB, 0).to_json()},
        ]
    )
    service, _ = make_service(store)

    await service.run_background_triggers()
    for _ in range(20):
        await asyncio.sleep(0)

    assert store.pubsub.channels == ["UPDATE"]
    assert store.pubsub.closed is True
    assert store.calls == [("lease_timeout", "q", "t1")]


@pytest.mark.asyncio
async def test_periodic_checker_loops():
    class Stop(Exception):
        pass

    store = FakeStore()
    sleeps = []

    async def sleeper(delay):
        sleeps.append(delay)
        if len(sleeps) == 2:
            raise Stop

    service = ControllerService(store, sleep=sleeper)
    with pytest.raises(Stop):
        await service.run_periodic_job_checker(1.5)
    assert store.calls == [("schedule_periodic", "PERIODICITY")] * 2
    assert sleeps == [1.5, 1.5]