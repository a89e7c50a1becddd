#!/usr/bin/env python3
"""
Tests for the Redis-fed recognition worker.
"""
import json
import os
import sys
from unittest.mock import MagicMock, patch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from models.data_models import JobKind, RecognitionJob
from services.job_queue import RedisJobQueue
from services.redis_service import RedisService
from workers import recognition_worker

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _job(job_id="j1"):
    return RecognitionJob(
        job_id=job_id,
        kind=JobKind.BATCH,
        owner_id="b1",
        page_id="p1",
        asset_ref="uploads/p1.png",
        enqueued_at="2024-01-01T00:00:00+00:00",
    )


def _raw(job_id="j1"):
    return json.dumps(_job(job_id).to_dict())


# ---------------------------------------------------------------------------
# Job parsing and execution
# ---------------------------------------------------------------------------

def test_parse_job_round_trips_wire_record():
    job = recognition_worker.parse_job(_raw())
    assert job == _job()


def test_parse_job_rejects_malformed_entries():
    assert recognition_worker.parse_job("{not json") is None
    assert recognition_worker.parse_job(json.dumps({"job_id": "x"})) is None
    assert recognition_worker.parse_job(json.dumps({**_job().to_dict(), "kind": "bogus"})) is None


def test_worker_task_runs_job():
    runner = MagicMock()
    with patch.object(recognition_worker, "get_job_runner", return_value=runner):
        assert recognition_worker.worker_task(_raw()) is True
    runner.run.assert_called_once_with(_job())


def test_worker_task_contains_failures():
    runner = MagicMock()
    runner.run.side_effect = ConnectionError("redis down")
    with patch.object(recognition_worker, "get_job_runner", return_value=runner):
        assert recognition_worker.worker_task(_raw()) is False


def test_worker_task_skips_malformed_job():
    with patch.object(recognition_worker, "get_job_runner") as get_runner:
        assert recognition_worker.worker_task("garbage") is False
    get_runner.assert_not_called()


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

def test_dispatcher_feeds_pool_and_drops_malformed_jobs():
    redis_service = MagicMock()
    redis_service.pop_from_queue.side_effect = [
        ("page_recognition_job", _raw("j1")),
        None,
        ("page_recognition_job", "{broken"),
        ("page_recognition_job", _raw("j2")),
    ]
    pool = MagicMock()

    dispatched = recognition_worker.dispatcher(pool, redis_service=redis_service, max_jobs=2)

    assert dispatched == 2
    assert pool.apply_async.call_count == 2
    first_args = pool.apply_async.call_args_list[0].kwargs["args"]
    assert json.loads(first_args[0])["job_id"] == "j1"


def test_redis_job_queue_pushes_wire_record():
    client = MagicMock()
    client.llen.return_value = 3
    queue = RedisJobQueue(RedisService(client=client), queue_name="jobs")

    assert queue.enqueue(_job("j7")) == "j7"
    name, payload = client.lpush.call_args.args
    assert name == "jobs"
    assert json.loads(payload)["kind"] == "batch"
    assert queue.pending() == 3


def test_redis_service_pop_uses_brpop_timeout():
    client = MagicMock()
    client.brpop.return_value = ("jobs", _raw())
    service = RedisService(client=client)
    assert service.pop_from_queue("jobs", timeout=2) == ("jobs", _raw())
    client.brpop.assert_called_once_with("jobs", timeout=2)
