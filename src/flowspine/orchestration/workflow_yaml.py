"""Pydantic models for declarative workflow definitions.

Workflows can be declared in YAML (or any dict source) instead of code. The
models here validate the document's shape; the engine still performs the
structural checks (cycles, executor lookup) when the workflow is created,
so both paths share one source of truth.

Usage::

    from flowspine.orchestration.workflow_yaml import WorkflowSpec

    spec = WorkflowSpec.from_yaml_file("workflows/nightly.yaml")
    engine.create_workflow_from_spec(spec)

Example YAML::

    apiVersion: flowspine.io/v1
    kind: Workflow
    metadata:
      id: nightly-2026-10-16
      name: nightly.refresh
      labels:
        team: data
    spec:
      data:
        region: eu
      steps:
        - id: extract
          type: http
          config: {url: "https://example.com/export"}
        - id: transform
          type: python
          depends_on: [extract]
          max_attempts: 5
        - id: load
          type: sql
          depends_on: [transform]

Tags:
    flowspine, orchestration, yaml, declarative, pydantic

Doc-Types:
    api-reference
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from flowspine.core.errors import ValidationError
from flowspine.orchestration.models import StepDefinition, Workflow


class WorkflowMetadataSpec(BaseModel):
    """Metadata section of a workflow document."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., min_length=1, description="Workflow id, unique in the engine")
    name: str = Field(default="", description="Human-readable name (defaults to the id)")
    description: str = Field(default="", description="Free text")
    labels: dict[str, str] = Field(default_factory=dict, description="Copied into workflow metadata")


class StepSpec(BaseModel):
    """One step of a workflow document."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    id: str = Field(..., min_length=1, description="Step id, unique within the workflow")
    type: str = Field(..., min_length=1, description="Executor tag")
    name: str = Field(default="", description="Human-readable label")
    depends_on: list[str] = Field(default_factory=list, alias="dependencies")
    config: dict[str, Any] = Field(default_factory=dict, description="Passed to the executor")
    max_attempts: int | None = Field(default=None, ge=1, description="Per-step attempt budget")

    def to_definition(self) -> StepDefinition:
        return StepDefinition(
            id=self.id,
            type=self.type,
            dependencies=tuple(self.depends_on),
            name=self.name,
            config=dict(self.config),
            max_attempts=self.max_attempts,
        )


class WorkflowSpecSection(BaseModel):
    """The ``spec`` section: steps and initial data."""

    model_config = ConfigDict(extra="forbid")

    steps: list[StepSpec] = Field(default_factory=list)
    data: dict[str, Any] = Field(default_factory=dict, description="Initial workflow data")

    @field_validator("steps")
    @classmethod
    def validate_unique_ids(cls, v: list[StepSpec]) -> list[StepSpec]:
        """Ensure step ids are unique."""
        ids = [step.id for step in v]
        if len(ids) != len(set(ids)):
            duplicates = sorted({i for i in ids if ids.count(i) > 1})
            raise ValueError(f"Duplicate step ids: {duplicates}")
        return v

    @model_validator(mode="after")
    def validate_dependencies(self) -> WorkflowSpecSection:
        """Ensure depends_on references existing step ids."""
        step_ids = {step.id for step in self.steps}
        for step in self.steps:
            unknown = sorted(set(step.depends_on) - step_ids)
            if unknown:
                raise ValueError(f"Step '{step.id}' depends on unknown steps: {unknown}")
        return self


class WorkflowSpec(BaseModel):
    """Root model of a workflow document."""

    model_config = ConfigDict(extra="forbid")

    apiVersion: Literal["flowspine.io/v1"] = Field(default="flowspine.io/v1")
    kind: Literal["Workflow"] = Field(default="Workflow")
    metadata: WorkflowMetadataSpec
    spec: WorkflowSpecSection = Field(default_factory=WorkflowSpecSection)

    def to_step_definitions(self) -> list[StepDefinition]:
        return [step.to_definition() for step in self.spec.steps]

    def to_create_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for ``WorkflowEngine.create_workflow``."""
        metadata: dict[str, Any] = {"labels": dict(self.metadata.labels), "source": "spec"}
        if self.metadata.description:
            metadata["description"] = self.metadata.description
        return {
            "workflow_id": self.metadata.id,
            "name": self.metadata.name or self.metadata.id,
            "steps": self.to_step_definitions(),
            "initial_data": dict(self.spec.data),
            "metadata": metadata,
        }

    @classmethod
    def from_yaml(cls, yaml_content: str) -> WorkflowSpec:
        """Parse and validate YAML content.

        Raises:
            ValidationError: Content isn't valid YAML
            pydantic.ValidationError: Document doesn't match the schema
        """
        try:
            data = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ValidationError(f"Invalid YAML: {e}", cause=e) from e
        if not isinstance(data, dict):
            raise ValidationError("Workflow document must be a mapping")
        return cls.model_validate(data)

    @classmethod
    def from_yaml_file(cls, path: str | Path) -> WorkflowSpec:
        """Load and validate a YAML file."""
        content = Path(path).read_text(encoding="utf-8")
        return cls.from_yaml(content)

    @classmethod
    def from_workflow(cls, workflow: Workflow) -> WorkflowSpec:
        """Describe an existing workflow's structure (runtime state is dropped)."""
        return cls(
            metadata=WorkflowMetadataSpec(
                id=workflow.id,
                name=workflow.name,
                description=str(workflow.metadata.get("description", "")),
                labels=dict(workflow.metadata.get("labels", {})),
            ),
            spec=WorkflowSpecSection(
                steps=[
                    StepSpec(
                        id=step.id,
                        type=step.type,
                        name=step.name if step.name != step.id else "",
                        depends_on=list(step.dependencies),
                        config=dict(step.config),
                        max_attempts=step.max_attempts,
                    )
                    for step in workflow.steps
                ],
                data=dict(workflow.data),
            ),
        )

    def to_yaml(self) -> str:
        """Serialise back to YAML."""
        return yaml.safe_dump(
            self.model_dump(mode="json", exclude_defaults=False),
            sort_keys=False,
            default_flow_style=False,
        )


__all__ = ["StepSpec", "WorkflowMetadataSpec", "WorkflowSpec", "WorkflowSpecSection"]
