"""Stage catalogue and the context each stage renders its prompt with."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

from ..errors import UnknownStage
from ..models import Project


class StageId(IntEnum):
    """The five planning stages, in pipeline order."""

    INITIAL_PLAN = 1
    ARCHITECTURE = 2
    IMPLEMENTATION = 3
    PROGRESS = 4
    UX_DESIGN = 5

    @property
    def definition(self) -> "StageDefinition":
        return STAGES[self]


@dataclass(frozen=True)
class StageDefinition:
    """Static description of one stage."""
    id: StageId
    key: str
    name: str
    description: str
    template_name: str
    dependencies: Tuple[StageId, ...] = ()
    required_inputs: Tuple[str, ...] = ()
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


STAGES: Dict[StageId, StageDefinition] = {
    StageId.INITIAL_PLAN: StageDefinition(
        id=StageId.INITIAL_PLAN,
        key="initial_plan",
        name="Initial Plan Creation",
        description="Develop the rough project idea into a comprehensive plan",
        template_name="stage1",
    ),
    StageId.ARCHITECTURE: StageDefinition(
        id=StageId.ARCHITECTURE,
        key="architecture_design",
        name="Architecture Design",
        description="Design components, data models, APIs and the technology stack",
        template_name="stage2",
        dependencies=(StageId.INITIAL_PLAN,),
    ),
    StageId.IMPLEMENTATION: StageDefinition(
        id=StageId.IMPLEMENTATION,
        key="implementation_strategy",
        name="Implementation Strategy",
        description="Plan the roadmap, critical path, testing and deployment",
        template_name="stage3",
        dependencies=(StageId.ARCHITECTURE,),
    ),
    StageId.PROGRESS: StageDefinition(
        id=StageId.PROGRESS,
        key="progress_assessment",
        name="Progress Assessment",
        description="Assess progress against the strategy and recommend next steps",
        template_name="stage4",
        dependencies=(StageId.IMPLEMENTATION,),
        required_inputs=("current_status",),
    ),
    StageId.UX_DESIGN: StageDefinition(
        id=StageId.UX_DESIGN,
        key="ux_design",
        name="User Experience Design",
        description="Design personas, flows, interface guidelines and accessibility",
        template_name="stage5",
        dependencies=(StageId.PROGRESS,),
    ),
}


def get_stage(stage: Union[int, str, StageId]) -> StageDefinition:
    """Look a stage up by number or key.

    Raises:
        UnknownStage: If no stage matches.
    """
    if isinstance(stage, str) and not stage.isdigit():
        for definition in STAGES.values():
            if definition.key == stage:
                return definition
        raise UnknownStage(f"Unknown stage '{stage}'")
    try:
        return STAGES[StageId(int(stage))]
    except ValueError:
        raise UnknownStage(f"Unknown stage '{stage}'", stage_id=None) from None


def stage_names() -> List[Tuple[int, str]]:
    return [(int(d.id), d.name) for d in STAGES.values()]


def dependency_levels(stage_ids: Iterable[StageId]) -> List[List[StageId]]:
    """Group stages into levels whose members can run concurrently.

    Dependencies outside ``stage_ids`` are assumed to be satisfied already.
    """
    wanted = sorted(set(stage_ids))
    placed: Dict[StageId, int] = {}

    def level_of(stage_id: StageId) -> int:
        if stage_id not in placed:
            deps = [d for d in STAGES[stage_id].dependencies if d in wanted]
            placed[stage_id] = 1 + max((level_of(d) for d in deps), default=-1)
        return placed[stage_id]

    levels: List[List[StageId]] = []
    for stage_id in wanted:
        level = level_of(stage_id)
        while len(levels) <= level:
            levels.append([])
        levels[level].append(stage_id)
    return levels


@dataclass
class StageContext(Mapping[str, Any]):
    """Variables available to a stage template.

    Built fresh per invocation: project attributes, then prior stage outputs
    keyed by stage key, then user overrides, each layer winning over the
    previous one.
    """
    values: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        project: Project,
        outputs: Mapping[str, str],
        overrides: Optional[Mapping[str, Any]] = None,
    ) -> "StageContext":
        values: Dict[str, Any] = {
            "project_id": project.id,
            "project_name": project.name,
            "project_description": project.description,
            "project_idea": project.idea or project.description,
        }
        values.update(outputs)
        values.update(overrides or {})
        return cls(values)

    def __getitem__(self, key: str) -> Any:
        return self.values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self.values)

    def __len__(self) -> int:
        return len(self.values)

    def set(self, key: str, value: Any) -> None:
        self.values[key] = value

    def has(self, key: str) -> bool:
        return key in self.values
