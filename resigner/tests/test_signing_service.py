import asyncio
import threading
from unittest.mock import patch

import pytest

from resigner.app.core.config import Settings
from resigner.app.core.errors import JobNotFoundError, JobNotReadyError, UploadError
from resigner.app.schemas.jobs import JobState
from resigner.app.services.signing_service import SigningService
from resigner.app.services.workspace import JobWorkspace
from resigner.app.utils.hashing import compute_artifact_hash
from resigner.tests.fixtures.apk_factory import apk_with_empty, valid_apk
from resigner.tests.fixtures.fake_tools import FakeToolInvoker

pytestmark = pytest.mark.anyio


def _settings(tmp_path, **overrides):
    values = dict(
        _env_file=None,
        work_dir=tmp_path / "work",
        keystore_path=tmp_path / "master.jks",
        store_password="store-secret",
        retry_backoff_seconds=0,
        retry_backoff_max_seconds=0,
        max_apk_size_mb=1,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def service(tmp_path):
    return SigningService(settings=_settings(tmp_path), invoker=FakeToolInvoker())


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------

async def test_empty_upload_is_rejected(service):
    with pytest.raises(UploadError):
        await service.submit(b"")

    assert len(service.tracker) == 0


async def test_oversized_upload_is_rejected(service):
    with pytest.raises(UploadError):
        await service.submit(b"\0" * (service.settings.max_apk_bytes + 1))

    assert len(service.tracker) == 0


async def test_invalid_package_identifier_is_rejected(service):
    with pytest.raises(ValueError):
        await service.submit(valid_apk(), package_identifier="not a package")

    assert len(service.tracker) == 0


async def test_malformed_job_id_is_rejected_before_touching_disk(service):
    with pytest.raises(ValueError):
        await service.submit(valid_apk(), job_id="../x")

    work_dir = service.settings.work_dir
    assert len(service.tracker) == 0
    assert not work_dir.exists() or not any(work_dir.iterdir())
    assert not any(work_dir.parent.glob("x-*"))


async def test_input_is_written_off_the_event_loop(service):
    loop_thread = threading.get_ident()
    writers = []
    original = JobWorkspace.write_input

    def recording_write(self, data):
        writers.append(threading.get_ident())
        return original(self, data)

    with patch.object(JobWorkspace, "write_input", recording_write):
        job_id = await service.submit(valid_apk())
    await service.drain()

    assert writers
    assert loop_thread not in writers
    assert service.poll(job_id).state is JobState.DONE


async def test_submit_returns_before_pipeline_finishes(service):
    job_id = await service.submit(valid_apk())

    assert service.poll(job_id).state is JobState.RECEIVED

    await service.drain()

    view = service.poll(job_id)
    assert view.state is JobState.DONE
    assert view.download_location == f"/jobs/{job_id}/download"


# ---------------------------------------------------------------------------
# Retrieval and release
# ---------------------------------------------------------------------------

async def test_retrieve_returns_signed_bytes_with_matching_digest(service):
    job_id = await service.submit(apk_with_empty("AndroidManifest.xml"))
    await service.drain()

    content = service.retrieve(job_id)
    view = service.poll(job_id)

    assert content
    assert view.output_digest == compute_artifact_hash(content)


async def test_retrieve_before_done_is_not_ready(tmp_path):
    gate = asyncio.Event()
    service = SigningService(
        settings=_settings(tmp_path),
        invoker=FakeToolInvoker(gate=gate),
    )

    job_id = await service.submit(valid_apk())
    await asyncio.sleep(0)

    with pytest.raises(JobNotReadyError):
        service.retrieve(job_id)
    with pytest.raises(JobNotReadyError):
        service.release(job_id)

    gate.set()
    await service.drain()

    assert service.poll(job_id).state is JobState.DONE


async def test_retrieve_failed_job_is_not_ready(tmp_path):
    service = SigningService(
        settings=_settings(tmp_path),
        invoker=FakeToolInvoker(always_fail={"verify"}),
    )

    job_id = await service.submit(valid_apk())
    await service.drain()

    view = service.poll(job_id)
    assert view.state is JobState.FAILED
    assert view.download_location is None
    with pytest.raises(JobNotReadyError):
        service.retrieve(job_id)


async def test_release_removes_job_and_working_files(service):
    job_id = await service.submit(valid_apk())
    await service.drain()

    root = service.output_path(job_id).parent
    assert root.is_dir()

    service.release(job_id)

    assert not root.exists()
    with pytest.raises(JobNotFoundError):
        service.poll(job_id)


async def test_unknown_job_is_not_found(service):
    with pytest.raises(JobNotFoundError):
        service.poll("does-not-exist")
    with pytest.raises(JobNotFoundError):
        service.retrieve("does-not-exist")
    with pytest.raises(JobNotFoundError):
        service.release("does-not-exist")


async def test_release_of_one_job_leaves_others_intact(service):
    job_ids = [await service.submit(valid_apk()) for _ in range(4)]
    await service.drain()

    outputs = {job_id: service.output_path(job_id) for job_id in job_ids}
    assert len({path.parent for path in outputs.values()}) == len(job_ids)

    service.release(job_ids[0])

    for job_id in job_ids[1:]:
        assert outputs[job_id].exists()
        assert service.poll(job_id).state is JobState.DONE


# ---------------------------------------------------------------------------
# Eviction and events
# ---------------------------------------------------------------------------

async def test_evict_expired_discards_terminal_jobs(tmp_path):
    service = SigningService(
        settings=_settings(tmp_path, job_ttl_seconds=0),
        invoker=FakeToolInvoker(),
    )

    job_id = await service.submit(valid_apk())
    await service.drain()
    root = service.output_path(job_id).parent

    assert service.evict_expired() == 1
    assert not root.exists()
    with pytest.raises(JobNotFoundError):
        service.poll(job_id)


async def test_events_stream_ends_with_terminal_event(service):
    job_id = await service.submit(valid_apk())
    emitter = service.events(job_id)

    await service.drain()

    events = [event async for event in emitter.stream()]
    assert events[-1].event_type.value == "job_completed"
    assert all(event.job_id == job_id for event in events)

    replayed = [event async for event in service.events(job_id).stream()]
    assert replayed == events
