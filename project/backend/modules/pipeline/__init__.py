"""
Pipeline orchestration module.

Templates describe a DAG of stages; the orchestrator walks it per run.
"""

from modules.pipeline.orchestrator import PipelineOrchestrator
from modules.pipeline.stage_registry import StageHandler, StageRegistry
from modules.pipeline.templates import TemplateRegistry, build_ai_video_template, create_default_registry

__all__ = [
    "PipelineOrchestrator",
    "StageHandler",
    "StageRegistry",
    "TemplateRegistry",
    "build_ai_video_template",
    "create_default_registry",
]
