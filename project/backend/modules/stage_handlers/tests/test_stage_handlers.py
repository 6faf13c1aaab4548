"""
Tests for the built-in stage handlers.
"""

import pytest
import pytest_asyncio

from shared.errors import TemplateError, UnrecoverableStageError
from shared.models import CompletionCheckResult, PipelineRun, PipelineRunStage, Project, Scene, StageHandlerContext, Story
from modules.pipeline.templates import build_ai_video_template
from modules.stage_handlers import (
    SceneGenerationHandler,
    StoryWritingHandler,
    TTSGenerationHandler,
    VideoAssemblyHandler,
    VideoGenerationHandler,
    VisualGenerationHandler,
    create_stage_registry,
)

TEMPLATE = build_ai_video_template()


def _ctx(project, stage_id, frozen_config=None, run_stage=None):
    run = PipelineRun(
        project_id=project.id,
        user_id=project.user_id,
        template_id=TEMPLATE.id,
        frozen_config=frozen_config or TEMPLATE.default_config,
    )
    return StageHandlerContext(run=run, stage=TEMPLATE.get_stage(stage_id), project=project, run_stage=run_stage)


@pytest_asyncio.fixture
async def project(store):
    project = Project(user_id="u1", title="Lighthouse", idea="A keeper finds a message")
    async with store.session() as s:
        await s.insert_project(project)
    return project


def test_registry_covers_builtin_template(store):
    """Test that every stage of the built-in template has a handler."""
    registry = create_stage_registry(store)
    assert registry.registered_stage_ids() == sorted(s.stage_id for s in TEMPLATE.stages)
    with pytest.raises(TemplateError, match="No handler registered"):
        registry.get_required("unknown")


@pytest.mark.asyncio
async def test_story_writing_job(store, project):
    jobs = await StoryWritingHandler(store).prepare_jobs(_ctx(project, "story-writing"))
    assert len(jobs) == 1
    assert jobs[0].payload["idea"] == project.idea
    assert jobs[0].payload["scene_count"] == 5


@pytest.mark.asyncio
async def test_scene_generation_requires_story(store, project):
    handler = SceneGenerationHandler(store)
    with pytest.raises(UnrecoverableStageError):
        await handler.prepare_jobs(_ctx(project, "scene-generation"))

    story = Story(project_id=project.id, title="T", body="Body")
    async with store.session() as s:
        await s.save_story(story)
    jobs = await handler.prepare_jobs(_ctx(project, "scene-generation"))
    assert jobs[0].payload["story_id"] == story.id


@pytest.mark.asyncio
async def test_per_scene_handlers_only_emit_missing_work(store, project):
    """Test that scenes already holding the stage output get no job."""
    scenes = [
        Scene(project_id=project.id, index=0, image_prompt="a", narration="n0"),
        Scene(project_id=project.id, index=1, image_prompt="b", image_url="https://cdn.test/1.png"),
        Scene(project_id=project.id, index=2, narration="n2", audio_url="https://cdn.test/2.mp3"),
    ]
    async with store.session() as s:
        await s.replace_scenes(project.id, scenes)

    visual = await VisualGenerationHandler(store).prepare_jobs(_ctx(project, "visual-generation"))
    assert [job.unit_id for job in visual] == [scenes[0].id]
    assert visual[0].payload["media_type"] == "image"
    assert visual[0].payload["aspect_ratio"] == "16:9"

    video = await VideoGenerationHandler(store).prepare_jobs(_ctx(project, "video-generation"))
    assert [job.unit_id for job in video] == [scenes[1].id]
    assert video[0].payload["reference_image_url"] == "https://cdn.test/1.png"
    assert video[0].payload["duration_seconds"] == 5

    tts = await TTSGenerationHandler(store).prepare_jobs(_ctx(project, "tts-generation"))
    assert [job.payload["text"] for job in tts] == ["n0"]


@pytest.mark.asyncio
async def test_stage_config_reaches_payload(store, project):
    async with store.session() as s:
        await s.replace_scenes(project.id, [Scene(project_id=project.id, index=0, narration="hello")])
    config = {**TEMPLATE.default_config, "stages": {"tts": {"enabled": True, "voice": "nova"}}}
    jobs = await TTSGenerationHandler(store).prepare_jobs(_ctx(project, "tts-generation", config))
    assert jobs[0].payload["voice"] == "nova"


@pytest.mark.asyncio
async def test_threshold_completion_marks_missing_scenes_skipped(store, project):
    scenes = [
        Scene(project_id=project.id, index=0, narration="a", audio_url="https://cdn.test/0.mp3"),
        Scene(project_id=project.id, index=1, narration="b"),
    ]
    async with store.session() as s:
        await s.replace_scenes(project.id, scenes)
    result = CompletionCheckResult(is_complete=True, completed_jobs=1, failed_jobs=1, total_jobs=2)

    await TTSGenerationHandler(store).on_stage_completed(_ctx(project, "tts-generation"), result)

    async with store.session() as s:
        assert (await s.get_scene(scenes[0].id)).status != "skipped"
        assert (await s.get_scene(scenes[1].id)).status == "skipped"


@pytest.mark.asyncio
async def test_completion_threshold_from_stage_config(store, project):
    """Test that a frozen config threshold overrides the template threshold."""
    row = PipelineRunStage(run_id="r", stage_id="tts-generation", job_count=5, completed_jobs=4, failed_jobs=1)
    handler = TTSGenerationHandler(store)

    passing = await handler.check_completion(_ctx(project, "tts-generation", run_stage=row))
    assert passing.is_complete is True

    strict = {**TEMPLATE.default_config, "stages": {"tts": {"threshold": 1.0}}}
    failing = await handler.check_completion(_ctx(project, "tts-generation", strict, run_stage=row))
    assert failing.is_failed is True


@pytest.mark.asyncio
async def test_assembly_needs_visuals(store, project):
    handler = VideoAssemblyHandler(store)
    async with store.session() as s:
        await s.replace_scenes(project.id, [Scene(project_id=project.id, index=0)])
    with pytest.raises(UnrecoverableStageError):
        await handler.prepare_jobs(_ctx(project, "video-assembly"))

    async with store.session() as s:
        await s.replace_scenes(project.id, [
            Scene(project_id=project.id, index=0, image_url="https://cdn.test/0.png"),
            Scene(project_id=project.id, index=1),
        ])
    jobs = await handler.prepare_jobs(_ctx(project, "video-assembly"))
    assert len(jobs[0].payload["scene_ids"]) == 1
