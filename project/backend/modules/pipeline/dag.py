"""
DAG utilities for pipeline templates.
"""

from collections import deque
from typing import Dict, List, Mapping

from shared.errors import TemplateError
from shared.models import SATISFIED_STAGE_STATUSES, PipelineStageDefinition, PipelineTemplate


def validate_template(template: PipelineTemplate) -> None:
    """
    Check stage ids are unique, dependencies exist and the graph is acyclic.

    Raises:
        TemplateError: On the first violation found
    """
    if not template.stages:
        raise TemplateError(f"Template {template.id} has no stages")

    seen = set()
    for stage in template.stages:
        if stage.stage_id in seen:
            raise TemplateError(f"Template {template.id} has duplicate stage id '{stage.stage_id}'")
        seen.add(stage.stage_id)

    for stage in template.stages:
        for dependency in stage.depends_on:
            if dependency == stage.stage_id:
                raise TemplateError(f"Stage '{stage.stage_id}' depends on itself")
            if dependency not in seen:
                raise TemplateError(
                    f"Stage '{stage.stage_id}' depends on unknown stage '{dependency}'"
                )
        if stage.completion_strategy == "threshold" and stage.execution_mode != "parallel-per-scene":
            raise TemplateError(
                f"Stage '{stage.stage_id}' uses threshold completion but is not parallel-per-scene"
            )

    order = topological_order(template.stages)
    if len(order) != len(template.stages):
        stuck = sorted(seen - set(order))
        raise TemplateError(f"Template {template.id} has a dependency cycle through {', '.join(stuck)}")


def topological_order(stages: List[PipelineStageDefinition]) -> List[str]:
    """
    Kahn's algorithm, stable with respect to declaration order.

    Stages on a cycle are left out of the result.
    """
    indegree: Dict[str, int] = {s.stage_id: len(set(s.depends_on)) for s in stages}
    dependents: Dict[str, List[str]] = {s.stage_id: [] for s in stages}
    for stage in stages:
        for dependency in set(stage.depends_on):
            if dependency in dependents:
                dependents[dependency].append(stage.stage_id)

    ready = deque(s.stage_id for s in stages if indegree[s.stage_id] == 0)
    order: List[str] = []
    while ready:
        stage_id = ready.popleft()
        order.append(stage_id)
        for dependent in dependents[stage_id]:
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                ready.append(dependent)
    return order


def find_root_stages(template: PipelineTemplate) -> List[PipelineStageDefinition]:
    return [s for s in template.stages if not s.depends_on]


def find_ready_stages(
    template: PipelineTemplate,
    stage_statuses: Mapping[str, str],
) -> List[PipelineStageDefinition]:
    """
    Stages not yet dispatched whose dependencies are all completed or skipped,
    in topological order.
    """
    by_id = {s.stage_id: s for s in template.stages}
    ready = []
    for stage_id in topological_order(template.stages):
        if stage_id in stage_statuses:
            continue
        stage = by_id[stage_id]
        if all(stage_statuses.get(dep) in SATISFIED_STAGE_STATUSES for dep in stage.depends_on):
            ready.append(stage)
    return ready
