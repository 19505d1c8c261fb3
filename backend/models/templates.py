"""Task template models.

Templates are configuration: loaded from YAML, validated here, and never
mutated at runtime. A context keeps ``template.model_dump(mode="json")`` as
its frozen snapshot, so later edits to a template file never change an
in-flight task.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from models.agents import AgentRole


class TemplateMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    category: str = "general"


class Goal(BaseModel):
    """A declarative outcome the task must reach.

    ``success_criteria`` are dotted paths into ``CurrentState.data`` that must
    hold a non-empty value. A goal without criteria is satisfied once every
    phase has completed.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    description: str
    required: bool = True
    success_criteria: tuple[str, ...] = ()


class Goals(BaseModel):
    model_config = ConfigDict(frozen=True)

    primary: tuple[Goal, ...] = ()
    secondary: tuple[Goal, ...] = ()

    def required(self) -> list[Goal]:
        return [goal for goal in (*self.primary, *self.secondary) if goal.required]


class Subtask(BaseModel):
    """One unit of phase work bound to a single agent role."""

    model_config = ConfigDict(frozen=True)

    id: str
    agent: AgentRole
    instruction: str
    required: bool = True
    parallel_execution: bool | None = Field(
        default=None,
        description="Run concurrently with adjacent parallel subtasks; None inherits the phase flag",
    )
    data: dict[str, Any] = Field(default_factory=dict)
    timeout_seconds: float | None = Field(default=None, gt=0)


class Phase(BaseModel):
    """An ordered group of subtasks."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    depends_on: tuple[str, ...] = ()
    parallel_execution: bool = False
    subtasks: tuple[Subtask, ...] = ()

    def runs_in_parallel(self, subtask: Subtask) -> bool:
        if subtask.parallel_execution is None:
            return self.parallel_execution
        return subtask.parallel_execution


class TaskTemplate(BaseModel):
    """A versioned task definition: metadata, goals and phases."""

    model_config = ConfigDict(frozen=True)

    id: str
    version: str = "1.0.0"
    metadata: TemplateMetadata
    goals: Goals = Field(default_factory=Goals)
    phases: tuple[Phase, ...] = ()

    def snapshot(self) -> dict[str, Any]:
        """JSON-safe frozen copy stored on every context created from this template."""
        return self.model_dump(mode="json")
