"""
Tests for the template registry and the built-in AI video template.
"""

import pytest

from shared.errors import NotFoundError, TemplateError
from modules.pipeline.templates import (
    AI_VIDEO_TEMPLATE_ID,
    TemplateRegistry,
    build_ai_video_template,
    create_default_registry,
    deep_merge,
)


def test_builtin_template_shape():
    template = build_ai_video_template()
    assert template.stages[0].stage_id == "story-writing"
    assembly = template.get_stage("video-assembly")
    assert set(assembly.depends_on) == {"video-generation", "tts-generation"}
    assert template.get_stage("tts-generation").can_be_disabled is True


def test_deep_merge_does_not_mutate_base():
    base = {"stages": {"tts": {"enabled": True, "voice": None}}, "scene_count": 5}
    merged = deep_merge(base, {"stages": {"tts": {"enabled": False}}, "scene_count": 3})
    assert merged == {"stages": {"tts": {"enabled": False, "voice": None}}, "scene_count": 3}
    assert base["stages"]["tts"]["enabled"] is True


def test_resolve_falls_back_to_default():
    """Test that unknown template ids resolve to the default template."""
    registry = create_default_registry()
    assert registry.resolve(None).id == AI_VIDEO_TEMPLATE_ID
    assert registry.resolve("does-not-exist").id == AI_VIDEO_TEMPLATE_ID
    with pytest.raises(NotFoundError):
        registry.get_required("does-not-exist")


def test_latest_version_wins():
    registry = TemplateRegistry()
    v2 = build_ai_video_template().model_copy(update={"version": 2, "name": "AI Video v2"})
    registry.register(v2)
    registry.register(build_ai_video_template())
    assert registry.get(AI_VIDEO_TEMPLATE_ID).version == 2


def test_register_rejects_malformed_template():
    template = build_ai_video_template()
    broken = template.model_copy(update={"stages": template.stages + [template.stages[0]]})
    with pytest.raises(TemplateError):
        TemplateRegistry().register(broken)
