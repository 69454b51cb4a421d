"""Pipeline templates: loading, validation and resolution into execution plans."""

from __future__ import annotations

import logging
from collections import deque
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from aifactory.errors import InvalidTemplate, TemplateNotFound, ValidationError
from aifactory.handshake import SkipCondition
from aifactory.models import (
    ExecutionPlan,
    ParallelGroup,
    PlannedStage,
    ResourceRequirement,
    StageDependency,
    generate_id,
)

logger = logging.getLogger(__name__)


class RetryConfig(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    backoff_type: Literal["exponential", "linear"] = "exponential"
    initial_delay_ms: int = Field(default=1000, ge=0)
    max_delay_ms: int = Field(default=30000, ge=0)

    def delay_ms(self, attempt: int) -> int:
        """Delay before the attempt following failed attempt number ``attempt`` (1-based)."""
        if self.backoff_type == "linear":
            delay = self.initial_delay_ms * attempt
        else:
            delay = self.initial_delay_ms * (2 ** (attempt - 1))
        return min(delay, self.max_delay_ms)


class StageResource(BaseModel):
    resource_name: str
    quantity: float = Field(default=1, gt=0)
    resource_type: Literal["api", "storage", "compute", "network"] = "api"
    unit: str = "units"


class TemplateStage(BaseModel):
    stage_order: int
    worker_name: str
    action: str = "execute"
    params: dict[str, Any] = Field(default_factory=dict)
    resource_requirements: list[StageResource] = Field(default_factory=list)
    can_parallel: bool = False
    depends_on: list[int] = Field(default_factory=list)
    retry_config: RetryConfig = Field(default_factory=RetryConfig)
    timeout_ms: int = Field(default=30000, gt=0)
    estimated_cost_usd: float = Field(default=0.0, ge=0)
    estimated_time_ms: int = Field(default=0, ge=0)
    optional: bool = False
    skip_conditions: list[SkipCondition] = Field(default_factory=list)

    def requirements(self) -> list[ResourceRequirement]:
        return [
            ResourceRequirement(
                resource_name=r.resource_name,
                quantity=r.quantity,
                resource_type=r.resource_type,
                unit=r.unit,
            )
            for r in self.resource_requirements
        ]


class TemplateParameter(BaseModel):
    name: str
    type: Literal["string", "number", "integer", "boolean", "array", "object"] = "string"
    required: bool = False
    default: Any = None
    description: str = ""


_PARAM_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "number": (int, float),
    "integer": (int,),
    "boolean": (bool,),
    "array": (list,),
    "object": (dict,),
}


class Template(BaseModel):
    name: str
    description: str = ""
    version: str = "1.0"
    category: str = "general"
    parameters: list[TemplateParameter] = Field(default_factory=list)
    stages: list[TemplateStage] = Field(min_length=1)

    def apply_parameters(self, supplied: dict[str, Any] | None) -> dict[str, Any]:
        """Fill defaults and check declared parameters. Undeclared keys pass through."""
        result = dict(supplied or {})
        for param in self.parameters:
            if param.name not in result or result[param.name] is None:
                if param.required:
                    raise ValidationError(f"Missing required parameter: {param.name}", parameter=param.name)
                if param.default is not None:
                    result[param.name] = param.default
                continue
            value = result[param.name]
            expected = _PARAM_TYPES[param.type]
            # bool is an int subclass; keep it out of numeric parameters
            if not isinstance(value, expected) or (param.type in ("number", "integer") and isinstance(value, bool)):
                raise ValidationError(
                    f"Parameter {param.name} must be of type {param.type}", parameter=param.name
                )
        return result

    def requirement_names(self) -> set[str]:
        return {r.resource_name for s in self.stages for r in s.resource_requirements}


class TemplateRegistry:
    """Named templates, loaded from JSON files or registered in code."""

    def __init__(self, templates_dir: Path | None = None):
        self._templates: dict[str, Template] = {}
        if templates_dir:
            self.load_dir(templates_dir)

    def load_dir(self, templates_dir: Path) -> int:
        if not templates_dir.exists():
            logger.warning(f"Templates directory {templates_dir} does not exist")
            return 0
        loaded = 0
        for path in sorted(templates_dir.glob("*.json")):
            try:
                template = Template.model_validate_json(path.read_text())
            except PydanticValidationError as e:
                logger.error(f"Skipping invalid template file {path.name}: {e}")
                continue
            self.register(template)
            loaded += 1
        logger.info(f"Loaded {loaded} templates from {templates_dir}")
        return loaded

    def register(self, template: Template | dict) -> Template:
        if isinstance(template, dict):
            try:
                template = Template.model_validate(template)
            except PydanticValidationError as e:
                raise InvalidTemplate(f"Invalid template definition: {e}") from e
        self._templates[template.name] = template
        return template

    def get(self, name: str) -> Template:
        template = self._templates.get(name)
        if template is None:
            raise TemplateNotFound(f"Template {name} not found", template_name=name)
        return template

    def list(self) -> list[Template]:
        return sorted(self._templates.values(), key=lambda t: t.name)

    def __contains__(self, name: str) -> bool:
        return name in self._templates


class TemplateResolver:
    """Turns a template into an execution plan of order tiers."""

    def __init__(self, registry: TemplateRegistry):
        self.registry = registry

    def resolve(self, template_name: str) -> ExecutionPlan:
        return self.plan(self.registry.get(template_name))

    def plan(self, template: Template) -> ExecutionPlan:
        stages = sorted(template.stages, key=lambda s: s.stage_order)
        self._validate(template.name, stages)

        # Group into tiers: consecutive parallel stages with no data edge between them
        tiers: list[list[TemplateStage]] = []
        for stage in stages:
            current = tiers[-1] if tiers else None
            if (
                current
                and stage.can_parallel
                and all(member.can_parallel for member in current)
                and not any(member.stage_order in stage.depends_on for member in current)
            ):
                current.append(stage)
            else:
                tiers.append([stage])

        planned: list[PlannedStage] = []
        dependencies: list[StageDependency] = []
        groups: list[ParallelGroup] = []
        total_cost = 0.0
        total_time = 0

        for tier_index, members in enumerate(tiers, start=1):
            for stage in members:
                planned.append(PlannedStage(stage=stage, tier=tier_index))
                total_cost += stage.estimated_cost_usd
                data_from = set(stage.depends_on)
                for order in sorted(data_from):
                    dependencies.append(StageDependency(order, stage.stage_order, "data"))
                if tier_index > 1:
                    for prev in tiers[tier_index - 2]:
                        if prev.stage_order not in data_from:
                            dependencies.append(StageDependency(prev.stage_order, stage.stage_order, "sequence"))
            total_time += max(s.estimated_time_ms for s in members)
            if len(members) > 1:
                groups.append(
                    ParallelGroup(
                        group_id=f"group_{tier_index}",
                        tier=tier_index,
                        stages=[s.stage_order for s in members],
                    )
                )

        return ExecutionPlan(
            plan_id=f"plan_{generate_id()}",
            template_name=template.name,
            stages=planned,
            dependencies=dependencies,
            parallel_groups=groups,
            estimated_total_cost_usd=round(total_cost, 6),
            estimated_total_time_ms=total_time,
        )

    def _validate(self, name: str, stages: list[TemplateStage]):
        orders = [s.stage_order for s in stages]
        if len(set(orders)) != len(orders):
            raise InvalidTemplate(f"Template {name} has duplicate stage_order values")
        count = len(stages)
        for order in orders:
            if order < 1 or order > count:
                raise InvalidTemplate(f"Template {name} stage_order {order} out of range 1..{count}")

        for stage in stages:
            for dep in stage.depends_on:
                if dep not in orders:
                    raise InvalidTemplate(f"Template {name} stage {stage.stage_order} depends on unknown stage {dep}")

        # Kahn's algorithm over the data edges
        indegree = {s.stage_order: len(set(s.depends_on)) for s in stages}
        dependents: dict[int, list[int]] = {o: [] for o in orders}
        for stage in stages:
            for dep in set(stage.depends_on):
                dependents[dep].append(stage.stage_order)
        ready = deque(o for o, d in indegree.items() if d == 0)
        visited = 0
        while ready:
            order = ready.popleft()
            visited += 1
            for child in dependents[order]:
                indegree[child] -= 1
                if indegree[child] == 0:
                    ready.append(child)
        if visited != count:
            raise InvalidTemplate(f"Template {name} stage graph has a cycle")

        for stage in stages:
            for dep in stage.depends_on:
                if dep >= stage.stage_order:
                    raise InvalidTemplate(
                        f"Template {name} stage {stage.stage_order} depends on later stage {dep}"
                    )
