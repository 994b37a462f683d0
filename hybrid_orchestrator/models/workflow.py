"""
Workflow definition models for Hybrid Orchestrator

Mirrors the YAML workflow layout: a ``generate`` stage made of ordered steps
(each fanning one rendered prompt out to several models) followed by a single
``synthesize`` stage.
"""

from typing import Optional, Dict, Any, List, Callable
from dataclasses import dataclass, field

import yaml

from ..core.exceptions import InvalidRequestError


@dataclass
class GenerateStep:
    """Single step within the generate stage."""

    name: str
    models: List[str]
    prompt_template: str
    output_var: str
    input_vars: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GenerateStep":
        return cls(
            name=data.get("name", ""),
            models=list(data.get("models") or []),
            prompt_template=data.get("prompt_template", ""),
            output_var=data.get("output_var") or data.get("name", ""),
            input_vars=list(data.get("input_vars") or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "models": list(self.models),
            "prompt_template": self.prompt_template,
            "output_var": self.output_var,
            "input_vars": list(self.input_vars),
        }


@dataclass
class GenerateStage:
    """Generate stage: ordered steps, parallel or sequential fan-out."""

    steps: List[GenerateStep] = field(default_factory=list)
    parallel: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GenerateStage":
        return cls(
            steps=[GenerateStep.from_dict(step) for step in data.get("steps") or []],
            parallel=bool(data.get("parallel", True)),
        )


@dataclass
class SynthesizeStage:
    """Synthesis stage: one model folds the successful outputs together."""

    model: Optional[str] = None
    prompt_template: Optional[str] = None
    name: str = "synthesize"
    input_vars: List[str] = field(default_factory=list)
    output_var: str = "synthesis"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SynthesizeStage":
        return cls(
            model=data.get("model"),
            prompt_template=data.get("prompt_template"),
            name=data.get("name", "synthesize"),
            input_vars=list(data.get("input_vars") or []),
            output_var=data.get("output_var", "synthesis"),
        )


@dataclass
class WorkflowDefinition:
    """A complete generate-then-synthesize workflow."""

    workflow_name: str
    generate: GenerateStage
    synthesize: SynthesizeStage = field(default_factory=SynthesizeStage)
    description: Optional[str] = None
    critical_models: List[str] = field(default_factory=list)
    timeout_seconds: Optional[float] = None

    @property
    def requested_models(self) -> List[str]:
        """All generate-stage models in first-seen order."""
        models: List[str] = []
        for step in self.generate.steps:
            for model_id in step.models:
                if model_id not in models:
                    models.append(model_id)
        return models

    def validate(self):
        """Check the few properties orchestration relies on."""
        if not self.workflow_name:
            raise InvalidRequestError("workflow_name", "must not be empty")
        if not self.generate.steps:
            raise InvalidRequestError("stages.generate.steps", "at least one step is required")

        seen: Dict[str, str] = {}
        for step in self.generate.steps:
            if not step.models:
                raise InvalidRequestError(f"steps.{step.name}.models", "must not be empty")
            if not step.prompt_template or not step.prompt_template.strip():
                raise InvalidRequestError(f"steps.{step.name}.prompt_template", "must not be empty")
            for model_id in step.models:
                if model_id in seen:
                    raise InvalidRequestError(
                        f"steps.{step.name}.models",
                        f"model already used by step {seen[model_id]}",
                        model_id
                    )
                seen[model_id] = step.name

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowDefinition":
        stages = data.get("stages") or {}
        generate = stages.get("generate") or {}
        synthesize = stages.get("synthesize") or {}
        return cls(
            workflow_name=data.get("workflow_name", ""),
            description=data.get("description"),
            generate=GenerateStage.from_dict(generate),
            synthesize=SynthesizeStage.from_dict(synthesize),
            critical_models=list(data.get("critical_models") or []),
            timeout_seconds=data.get("timeout_seconds"),
        )

    @classmethod
    def from_yaml(cls, text: str) -> "WorkflowDefinition":
        """Parse a workflow from YAML text."""
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise InvalidRequestError("workflow", f"invalid YAML: {e}")
        if not isinstance(data, dict):
            raise InvalidRequestError("workflow", "YAML document must be a mapping")
        return cls.from_dict(data)


@dataclass
class JobOptions:
    """Per-request options for run_prompt / run_workflow."""

    parallel: Optional[bool] = None
    timeout_seconds: Optional[float] = None
    synthesis_model: Optional[str] = None
    synthesis_prompt_template: Optional[str] = None
    critical_models: List[str] = field(default_factory=list)
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    call_timeout_seconds: Optional[float] = None
    stream: bool = False
    on_partial_chunk: Optional[Callable[[str, str], None]] = None
    custom_parameters: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "JobOptions":
        data = data or {}
        return cls(
            parallel=data.get("parallel"),
            timeout_seconds=data.get("timeout_seconds"),
            synthesis_model=data.get("synthesis_model"),
            synthesis_prompt_template=data.get("synthesis_prompt_template"),
            critical_models=list(data.get("critical_models") or []),
            max_tokens=data.get("max_tokens"),
            temperature=data.get("temperature"),
            call_timeout_seconds=data.get("call_timeout_seconds"),
            stream=bool(data.get("stream", False)),
            on_partial_chunk=data.get("on_partial_chunk"),
            custom_parameters=dict(data.get("custom_parameters") or {}),
        )
