"""
Stage handler interface and registry.

Handlers are a closed set of StageHandler subclasses, one per stage id,
registered once at process start.
"""

from abc import ABC, abstractmethod
from typing import ClassVar, Dict, List, Optional

from shared.errors import TemplateError
from shared.logging import get_logger
from shared.models import CompletionCheckResult, PreparedJob, StageHandlerContext
from shared.store import Store
from modules.pipeline.completion import evaluate_completion

logger = get_logger("pipeline.stage_registry")


class StageHandler(ABC):
    """Prepares a stage's jobs and judges its completion."""

    stage_id: ClassVar[str]

    def __init__(self, store: Store):
        self.store = store

    @abstractmethod
    async def prepare_jobs(self, ctx: StageHandlerContext) -> List[PreparedJob]:
        """Jobs to enqueue for this stage; an empty list completes the stage at once."""

    async def check_completion(self, ctx: StageHandlerContext) -> CompletionCheckResult:
        """Default: judge from the run stage counters."""
        threshold = ctx.stage_config.get("threshold")
        return evaluate_completion(ctx.stage, ctx.run_stage, threshold=threshold)

    async def on_stage_completed(self, ctx: StageHandlerContext, result: CompletionCheckResult) -> None:
        """Hook run once, by the caller that won the completion transition."""


class StageRegistry:
    """stage_id -> StageHandler."""

    def __init__(self):
        self._handlers: Dict[str, StageHandler] = {}

    def register(self, handler: StageHandler) -> None:
        stage_id = handler.stage_id
        if stage_id in self._handlers:
            logger.warning("Overwriting stage handler", extra={"stage_id": stage_id})
        self._handlers[stage_id] = handler

    def get(self, stage_id: str) -> Optional[StageHandler]:
        return self._handlers.get(stage_id)

    def get_required(self, stage_id: str) -> StageHandler:
        handler = self._handlers.get(stage_id)
        if handler is None:
            available = ", ".join(sorted(self._handlers)) or "none"
            raise TemplateError(f"No handler registered for stage '{stage_id}'. Available: {available}")
        return handler

    def has(self, stage_id: str) -> bool:
        return stage_id in self._handlers

    def registered_stage_ids(self) -> List[str]:
        return sorted(self._handlers)
