"""
Stage handlers for the built-in templates.
"""

from shared.store import Store
from modules.pipeline.stage_registry import StageRegistry
from modules.stage_handlers.per_scene import (
    PerSceneStageHandler,
    TTSGenerationHandler,
    VideoGenerationHandler,
    VisualGenerationHandler,
)
from modules.stage_handlers.sequential import SceneGenerationHandler, StoryWritingHandler, VideoAssemblyHandler

BUILTIN_HANDLERS = (
    StoryWritingHandler,
    SceneGenerationHandler,
    VisualGenerationHandler,
    TTSGenerationHandler,
    VideoGenerationHandler,
    VideoAssemblyHandler,
)


def create_stage_registry(store: Store) -> StageRegistry:
    """Registry with every built-in handler bound to `store`."""
    registry = StageRegistry()
    for handler_cls in BUILTIN_HANDLERS:
        registry.register(handler_cls(store))
    return registry


__all__ = [
    "BUILTIN_HANDLERS",
    "PerSceneStageHandler",
    "SceneGenerationHandler",
    "StoryWritingHandler",
    "TTSGenerationHandler",
    "VideoAssemblyHandler",
    "VideoGenerationHandler",
    "VisualGenerationHandler",
    "create_stage_registry",
]
