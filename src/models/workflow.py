"""Workflow specification models for multi-agent stacks."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TaskSpec(BaseModel):
    """A single agent entry in a stack workflow."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str
    uses: str = ""
    input_from: list[str] = Field(default_factory=list, alias="inputFrom")
    depends: list[str] = Field(default_factory=list)
    params: dict[str, Any] = Field(default_factory=dict)
    input_key: str | None = Field(default=None, alias="inputKey")

    @field_validator("id")
    @classmethod
    def id_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("id is required")
        return v

    @field_validator("input_from", "depends", mode="before")
    @classmethod
    def none_to_empty_list(cls, v: Any) -> Any:
        return [] if v is None else v

    @field_validator("params", mode="before")
    @classmethod
    def none_to_empty_dict(cls, v: Any) -> Any:
        return {} if v is None else v

    @property
    def dependency_ids(self) -> list[str]:
        """Declared dependencies (inputFrom then depends), deduplicated."""
        seen: list[str] = []
        for dep_id in [*self.input_from, *self.depends]:
            if dep_id and dep_id not in seen:
                seen.append(dep_id)
        return seen


class WorkflowSpec(BaseModel):
    """A named, versioned set of tasks with declared dependencies."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    name: str
    description: str = ""
    version: str = ""
    agents: list[TaskSpec] = Field(default_factory=list)
    networks: list[str] = Field(default_factory=list)
    volumes: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def name_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("name is required")
        return v

    @field_validator("version", mode="before")
    @classmethod
    def version_to_str(cls, v: Any) -> Any:
        # YAML reads `version: 1.0` as a float
        if v is None:
            return ""
        if isinstance(v, (int, float)):
            return str(v)
        return v

    @field_validator("agents", "networks", "volumes", mode="before")
    @classmethod
    def none_to_empty_list(cls, v: Any) -> Any:
        return [] if v is None else v

    @field_validator("metadata", mode="before")
    @classmethod
    def none_to_empty_dict(cls, v: Any) -> Any:
        return {} if v is None else v

    @property
    def task_ids(self) -> list[str]:
        return [task.id for task in self.agents]

    def get_task(self, task_id: str) -> TaskSpec:
        """Look up a task by ID."""
        for task in self.agents:
            if task.id == task_id:
                return task
        raise KeyError(task_id)
