# leasequeue

leasequeue is a job queue kept in Redis and served over gRPC. Jobs are added with a due time. Workers listen on a named queue and are handed jobs once those jobs fall due.

A job handed out is leased for a set time in milliseconds. When the worker acknowledges it, the job is removed from Redis. When the lease runs out and the job is still stored, it is put back on its queue, due at once, to be handed out again.

## Installation

```
pip install .
```

With the test tools:

```
pip install ".[test]"
```

## Configuration

The Redis server is taken from two environment variables, which may also be set in a `.env` file found from the working directory:

- `REDIS_HOST`: the Redis host name
- `REDIS_PORT`: the Redis port

`RedisStore.from_env()` raises `KeyError` when either is missing.

## Running the controller

```
leasequeue-server
```

Options:

- `--address`: the address to serve gRPC on (default `[::1]:50051`)
- `--no-demo`: do not add the sample tasks at start-up

The controller runs two background jobs next to the gRPC server:

- a trigger loop, which follows the Redis `UPDATE` channel. On an `AddJob` update it waits until the update is due, leases at most one task per listening worker and sends each worker a job. On an `ItemLeased` update it waits until the lease ends and puts the task back on its queue if it has not been acknowledged.
- a periodic checker, which every 5 seconds looks for due periodic tasks.

After a 2 second start-up delay, and unless `--no-demo` is given, the controller adds two sample tasks: a one-off task `{"a":"12"}` on `queue1`, and a periodic task that runs every 4 seconds for 10 seconds.

## Running a worker

```
leasequeue-worker
```

Options:

- `--address`: the controller address (default `[::1]:50051`)
- `--queue`: the queue to listen on (default `queue1`)

The worker prints each job it receives and acknowledges it with the result `Dummy`. It stops when the job stream ends, and raises `ConnectionError` if the controller cannot be reached within 5 seconds. `leasequeue.worker.run_worker(address, queue_name)` does the same from Python and returns the ids of the acknowledged jobs.

## Using the store from Python

```python
from leasequeue.store import RedisStore

store = RedisStore.from_env()
task_id = await store.add_scheduled_task("queue1", '{"a": "12"}', time=now_ms, lease_time=10000)
leased = await store.get_tasks("queue1", 1)
await store.ack_task("queue1", leased[0])
await store.close()
```

`RedisStore` methods:

- `add_scheduled_task(queue_name, task, time, lease_time)`: store a task due at `time` (ms) and return its id
- `get_tasks(queue_name, no_of_tasks)`: lease up to `no_of_tasks` due tasks and return their ids
- `ack_task(queue_name, task_id)`: remove a task; `False` if it was not stored
- `handle_lease_timeout(queue_name, task_id)`: put a leased task back on its queue, due now
- `get_task_by_id(task_id)`, `get_lease_time_by_id(task_id)`: read a task's body or lease time; `KeyError` if unknown
- `add_periodic_task(queue_name, task, lease_time, task_start_time, task_end_time, task_interval)`: store a periodic task (all times in ms)
- `schedule_periodic_tasks(queue_name)`: move the start time of each due periodic task on by its interval, or drop it once past its end time, and enqueue one run of each on `queue_name` with a 10 second lease
- `publish_update(update)`: publish an `Update` on the `UPDATE` channel

All periodic tasks are kept in one shared set, whatever `queue_name` is given, and the controller enqueues their runs on the `PERIODICITY` queue. Each run is a new task whose body is the periodic task's id.

## Messages and payloads

`leasequeue.messages` holds the gRPC messages `AddJobRequest`, `ListenRequest`, `JobStreamResponse`, `JobCompleteResponse` and `SuccessResponse`, with `encode_message` and `decode_message` to turn them into bytes and back. `leasequeue.util` converts between JSON data and `google.protobuf.Struct` payloads.

`leasequeue.service.ControllerService` holds the controller logic, and `build_grpc_handler` exposes it as the `controller.Controller` gRPC service with the methods `ClientAddJob`, `WorkerListen` and `WorkerJobComplete`. `leasequeue.server.serve(service, address)` starts a server for it and returns the server with its bound port.

## What it does not do

- Messages travel over gRPC as UTF-8 JSON, not as protobuf wire data, and no `.proto` file is included, so only callers using `leasequeue.messages` can talk to the controller.
- The server listens without TLS or any authentication.
- There is no command for adding jobs; use the `ClientAddJob` gRPC method or `RedisStore` directly.