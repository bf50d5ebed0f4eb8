import asyncio
import os

from amvconvert.jobs.cleanup import CleanupScheduler
from amvconvert.jobs.models import Job
from amvconvert.jobs.store import JobStore


def _register(store, artifacts, make_upload, job_id="job-1") -> Job:
    input_path = make_upload()
    output_path = artifacts.output_path(job_id)
    with open(output_path, "wb") as fh:
        fh.write(b"AMV")
    job = Job(id=job_id, input_path=input_path, output_path=output_path, original_name="clip")
    store.create(job)
    return job


async def test_timer_removes_record_and_files(artifacts, make_upload):
    store = JobStore()
    job = _register(store, artifacts, make_upload)
    scheduler = CleanupScheduler(store, artifacts)

    scheduler.schedule(job.id, 0.05)
    assert scheduler.pending(job.id) == 1
    await asyncio.sleep(0.15)

    assert job.id not in store
    assert not os.path.exists(job.input_path)
    assert not os.path.exists(job.output_path)
    assert scheduler.pending(job.id) == 0


async def test_first_of_two_timers_wins(artifacts, make_upload):
    store = JobStore()
    job = _register(store, artifacts, make_upload)
    scheduler = CleanupScheduler(store, artifacts)

    long_timer = scheduler.schedule(job.id, 3600)
    scheduler.schedule(job.id, 0.05)
    await asyncio.sleep(0.15)

    assert job.id not in store
    assert long_timer.cancelled()


async def test_fire_after_record_is_gone_is_a_noop(artifacts, make_upload):
    store = JobStore()
    job = _register(store, artifacts, make_upload)
    scheduler = CleanupScheduler(store, artifacts)

    scheduler.schedule(job.id, 0.05)
    store.delete(job.id)
    await asyncio.sleep(0.15)

    # files belong to whoever deleted the record
    assert os.path.exists(job.output_path)


async def test_purge_tolerates_missing_files(artifacts, make_upload):
    store = JobStore()
    job = _register(store, artifacts, make_upload)
    os.remove(job.input_path)
    os.remove(job.output_path)

    scheduler = CleanupScheduler(store, artifacts)
    assert scheduler.purge(job.id) is True
    assert scheduler.purge(job.id) is False


async def test_cancel_all_disarms_timers(artifacts, make_upload):
    store = JobStore()
    job = _register(store, artifacts, make_upload)
    scheduler = CleanupScheduler(store, artifacts)

    scheduler.schedule(job.id, 0.05)
    scheduler.cancel_all()
    await asyncio.sleep(0.15)

    assert job.id in store
