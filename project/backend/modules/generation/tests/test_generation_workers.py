"""
Tests for the billing-aware generation processors with fake providers.
"""

from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio

from shared.errors import (
    ConfigError,
    GenerationError,
    InsufficientCreditsError,
    ProviderError,
    UnrecoverableStageError,
)
from shared.models import PipelineRun, Project, Scene, Story
from modules.generation import (
    AssemblyWorker,
    MediaWorker,
    SceneWorker,
    StoryWorker,
    TTSWorker,
    create_generation_workers,
)
from modules.generation.base import DISCARDED
from modules.generation.providers import LLMResult, MediaResult, SpeechResult
from modules.pipeline.templates import MEDIA_QUEUE


class FakeLLM:
    def __init__(self, data):
        self.data = data
        self.calls = []

    async def complete_json(self, system_prompt, user_prompt, model=None, max_tokens=4000):
        self.calls.append(user_prompt)
        return LLMResult(data=self.data, model="gpt-4o-mini", input_tokens=120, output_tokens=300, cost_usd=Decimal("0.02"))


class FakeMedia:
    def __init__(self, error=None):
        self.error = error
        self.calls = 0

    async def generate_image(self, prompt, aspect_ratio="16:9", model=None):
        self.calls += 1
        if self.error:
            raise self.error
        return MediaResult(
            media_type="image", mime_type="image/png", model="flux", content=b"png-bytes",
            width=1024, height=576, cost_usd=Decimal("0.03"),
        )

    async def generate_video(self, prompt, reference_image_url=None, aspect_ratio="16:9", duration_seconds=5, model=None):
        self.calls += 1
        return MediaResult(media_type="video", mime_type="video/mp4", model="kling", url="https://replicate.test/out.mp4")

    async def edit_image(self, image_url, prompt, model=None):
        raise NotImplementedError


class FakeSpeech:
    async def synthesize(self, text, voice=None):
        return SpeechResult(audio=b"mp3-bytes", model="tts-1", voice=voice or "alloy", cost_usd=Decimal("0.01"))


class FakeStorage:
    def __init__(self):
        self.uploads = {}

    async def upload_file_with_retry(self, key, data, mime_type=None):
        self.uploads[key] = (data, mime_type)
        return f"https://cdn.test/{key}"


@pytest_asyncio.fixture
async def project(store):
    project = Project(user_id="u1", title="Lighthouse", idea="A keeper finds a message")
    async with store.session() as s:
        await s.insert_project(project)
    return project


@pytest_asyncio.fixture
async def scene(store, project):
    scene = Scene(project_id=project.id, index=0, narration="The tide turns.", image_prompt="A lighthouse at dusk")
    async with store.session() as s:
        await s.replace_scenes(project.id, [scene])
    return scene


@pytest.fixture
def storage():
    return FakeStorage()


def _media_worker(store, ledger, queue, storage, media):
    return MediaWorker(store, ledger, queue, media=media, storage=storage)


def _image_payload(project, scene, **extra):
    return {
        "user_id": "u1",
        "project_id": project.id,
        "scene_id": scene.id,
        "media_type": "image",
        "prompt": scene.image_prompt,
        **extra,
    }


async def _scene(store, scene_id):
    async with store.session() as s:
        return await s.get_scene(scene_id)


async def _media(store, project_id):
    async with store.session() as s:
        return await s.list_media(project_id)


@pytest.mark.asyncio
async def test_image_generation_settles_actual_cost(store, ledger, queue, storage, make_job, project, scene):
    """Test that a successful image job uploads, updates the scene and settles at the provider cost."""
    await ledger.grant("u1", 100, "purchase")
    job = make_job(MEDIA_QUEUE, _image_payload(project, scene, scene_status="visualized"))

    result = await _media_worker(store, ledger, queue, storage, FakeMedia())(job)

    assert result["url"].startswith("https://cdn.test/generated-media/u1/")
    assert result["url"].endswith(".png")
    updated = await _scene(store, scene.id)
    assert updated.image_url == result["url"]
    assert updated.status == "visualized"

    [media] = await _media(store, project.id)
    assert media.status == "completed"
    assert media.credits_used == 3
    assert media.width == 1024

    # 0.03 USD at 100 credits per USD, below the 10 credit estimate
    assert await ledger.get_available_balance("u1") == 97
    assert "reservation_id" not in job.data
    assert queue.progress[-1] == 100


@pytest.mark.asyncio
async def test_retryable_failure_releases_and_keeps_media_pending(store, ledger, queue, storage, make_job, project, scene):
    """Test that a transient provider error releases the hold and the retry reuses the media record."""
    await ledger.grant("u1", 100, "purchase")
    media = FakeMedia(error=ProviderError("timeout", provider="replicate"))
    worker = _media_worker(store, ledger, queue, storage, media)
    job = make_job(MEDIA_QUEUE, _image_payload(project, scene), attempts_made=0)

    with pytest.raises(ProviderError):
        await worker(job)

    assert await ledger.get_available_balance("u1") == 100
    [record] = await _media(store, project.id)
    assert record.status == "pending"
    assert job.data["media_id"] == record.id
    assert (await _scene(store, scene.id)).status == "processing"

    media.error = None
    job.attempts_made = 1
    await worker(job)

    [record] = await _media(store, project.id)
    assert record.status == "completed"
    assert await ledger.get_available_balance("u1") == 97


@pytest.mark.asyncio
async def test_final_attempt_failure_marks_scene_failed(store, ledger, queue, storage, make_job, project, scene):
    await ledger.grant("u1", 100, "purchase")
    worker = _media_worker(store, ledger, queue, storage, FakeMedia(error=ProviderError("model overloaded")))
    job = make_job(MEDIA_QUEUE, _image_payload(project, scene), attempts_made=2, max_attempts=3)

    with pytest.raises(ProviderError):
        await worker(job)

    [record] = await _media(store, project.id)
    assert record.status == "failed"
    assert record.error_message == "model overloaded"
    failed = await _scene(store, scene.id)
    assert failed.status == "failed"
    assert failed.error_message == "model overloaded"
    assert await ledger.get_available_balance("u1") == 100


@pytest.mark.asyncio
async def test_insufficient_credits_fails_without_calling_provider(store, ledger, queue, storage, make_job, project, scene):
    """Test that a user who cannot cover the estimate fails the job on the first attempt."""
    await ledger.grant("u1", 4, "purchase")
    media = FakeMedia()
    job = make_job(MEDIA_QUEUE, _image_payload(project, scene), attempts_made=0)

    with pytest.raises(InsufficientCreditsError):
        await _media_worker(store, ledger, queue, storage, media)(job)

    assert media.calls == 0
    [record] = await _media(store, project.id)
    assert record.status == "failed"
    assert await ledger.get_available_balance("u1") == 4


@pytest.mark.asyncio
async def test_stale_reservation_from_crashed_attempt_is_released(store, ledger, queue, storage, make_job, project, scene):
    await ledger.grant("u1", 100, "purchase")
    stale_id = await ledger.reserve("u1", 10, "image_generation", project_id=project.id)
    job = make_job(MEDIA_QUEUE, _image_payload(project, scene, reservation_id=stale_id), attempts_made=1)

    await _media_worker(store, ledger, queue, storage, FakeMedia())(job)

    async with store.session() as s:
        stale = await s.get_reservation(stale_id)
        active = await s.list_active_reservations(user_id="u1")
    assert stale.status == "released"
    assert active == []
    assert await ledger.get_available_balance("u1") == 97


@pytest.mark.asyncio
async def test_jobs_for_inactive_run_are_discarded(store, ledger, queue, storage, make_job, project, scene):
    """Test that jobs belonging to a cancelled run do no work and hold no credits."""
    await ledger.grant("u1", 100, "purchase")
    run = PipelineRun(project_id=project.id, user_id="u1", template_id="ai-video", status="cancelled")
    async with store.session() as s:
        await s.insert_run(run)
    media = FakeMedia()
    job = make_job(MEDIA_QUEUE, _image_payload(project, scene, pipeline_run_id=run.id))

    assert await _media_worker(store, ledger, queue, storage, media)(job) == DISCARDED
    assert media.calls == 0
    assert storage.uploads == {}
    assert await _media(store, project.id) == []


@pytest.mark.asyncio
async def test_video_output_downloaded_from_provider_url(store, ledger, queue, storage, make_job, project, scene):
    await ledger.grant("u1", 200, "purchase")
    payload = _image_payload(project, scene, media_type="video", duration_seconds=5)

    with patch("modules.generation.media_worker.download_bytes", AsyncMock(return_value=b"mp4-bytes")) as download:
        result = await _media_worker(store, ledger, queue, storage, FakeMedia())(make_job(MEDIA_QUEUE, payload))

    download.assert_awaited_once_with("https://replicate.test/out.mp4")
    assert result["url"].endswith(".mp4")
    assert (await _scene(store, scene.id)).video_url == result["url"]
    # No reported cost: the estimate is charged
    assert await ledger.get_available_balance("u1") == 150


@pytest.mark.asyncio
async def test_tts_worker_writes_audio(store, ledger, queue, storage, make_job, project, scene):
    await ledger.grant("u1", 10, "purchase")
    worker = TTSWorker(store, ledger, queue, speech=FakeSpeech(), storage=storage)
    job = make_job("tts-generation", {
        "user_id": "u1", "project_id": project.id, "scene_id": scene.id,
        "text": scene.narration, "voice": "nova", "scene_status": "narrated",
    })

    result = await worker(job)

    assert result["url"].endswith(".mp3")
    narrated = await _scene(store, scene.id)
    assert narrated.audio_url == result["url"]
    assert narrated.status == "narrated"
    [record] = await _media(store, project.id)
    assert record.media_type == "audio"
    assert record.provider == "openai"
    assert await ledger.get_available_balance("u1") == 9


@pytest.mark.asyncio
async def test_story_worker_saves_story(store, ledger, queue, make_job, project):
    await ledger.grant("u1", 10, "purchase")
    llm = FakeLLM({"title": "The Keeper", "synopsis": "A message arrives.", "body": "Once upon a tide."})
    job = make_job("story-writing", {"user_id": "u1", "project_id": project.id, "idea": project.idea})

    result = await StoryWorker(store, ledger, queue, llm=llm)(job)

    async with store.session() as s:
        story = await s.get_story(project.id)
    assert result == {"story_id": story.id}
    assert story.title == "The Keeper"
    assert project.idea in llm.calls[0]
    async with store.session() as s:
        [usage] = await s.list_transactions(user_id="u1", types=["usage"])
    assert usage.amount == -2
    assert usage.metadata["output_tokens"] == 300


@pytest.mark.asyncio
async def test_story_worker_rejects_empty_story(store, ledger, queue, make_job, project):
    """Test that an unusable LLM response releases the hold."""
    await ledger.grant("u1", 10, "purchase")
    job = make_job("story-writing", {"user_id": "u1", "project_id": project.id, "idea": project.idea})
    with pytest.raises(GenerationError):
        await StoryWorker(store, ledger, queue, llm=FakeLLM({"title": "Empty"}))(job)
    assert await ledger.get_available_balance("u1") == 10


@pytest.mark.asyncio
async def test_scene_worker_replaces_scenes(store, ledger, queue, make_job, project):
    await ledger.grant("u1", 10, "purchase")
    job = make_job("scene-generation", {"user_id": "u1", "project_id": project.id, "scene_count": 2})
    llm = FakeLLM({"scenes": [
        {"narration": "One", "image_prompt": "Shot one", "motion_prompt": "Pan left"},
        {"narration": "Skipped", "image_prompt": ""},
        {"narration": "Two", "image_prompt": "Shot two", "duration_seconds": 6},
        {"narration": "Three", "image_prompt": "Over the requested count"},
    ]})

    worker = SceneWorker(store, ledger, queue, llm=llm)
    with pytest.raises(UnrecoverableStageError):
        await worker(job)

    async with store.session() as s:
        await s.save_story(Story(project_id=project.id, title="T", body="Body"))
    result = await worker(job)

    async with store.session() as s:
        scenes = await s.list_scenes(project.id)
    assert [sc.id for sc in scenes] == result["scene_ids"]
    assert [(sc.index, sc.narration, sc.status) for sc in scenes] == [(0, "One", "scripted")]
    assert await ledger.get_available_balance("u1") == 8


@pytest.mark.asyncio
async def test_assembly_worker_writes_manifest(store, ledger, queue, storage, make_job, project):
    """Test that assembly uploads an ordered manifest and points the project at it."""
    await ledger.grant("u1", 10, "purchase")
    scenes = [
        Scene(project_id=project.id, index=1, image_url="https://cdn.test/1.png", audio_url="https://cdn.test/1.mp3"),
        Scene(project_id=project.id, index=0, image_url="https://cdn.test/0.png", video_url="https://cdn.test/0.mp4"),
        Scene(project_id=project.id, index=2, status="skipped"),
    ]
    async with store.session() as s:
        await s.replace_scenes(project.id, scenes)
    job = make_job("video-assembly", {"user_id": "u1", "project_id": project.id})

    result = await AssemblyWorker(store, ledger, queue, storage=storage)(job)

    assert result["scene_count"] == 2
    [(content, mime_type)] = storage.uploads.values()
    assert mime_type == "application/json"
    assert b'"visual_type": "video"' in content
    async with store.session() as s:
        assert (await s.get_project(project.id)).output_url == result["output_url"]
    assert await ledger.get_available_balance("u1") == 8


def test_create_generation_workers_requires_providers(store, ledger, queue):
    with pytest.raises(ConfigError, match="speech"):
        create_generation_workers(store, ledger, queue, llm=FakeLLM({}), media=FakeMedia(), speech=None, storage=FakeStorage())
