"""
Analysis step intermediate representation (IR) for provenance tracking.

Every service method returns an ``AnalysisStep`` alongside its result so a
caller can record exactly which operation ran with which parameters and
re-render the equivalent Python code.
"""

import json
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from jinja2 import Environment, StrictUndefined, TemplateSyntaxError

_REQUIRED_FIELDS = [
    "operation",
    "tool_name",
    "description",
    "library",
    "code_template",
    "imports",
    "parameters",
    "parameter_schema",
]

_jinja_env = Environment(undefined=StrictUndefined, keep_trailing_newline=True)


@dataclass
class ParameterSpec:
    """Schema of one parameter of an analysis step."""

    param_type: str
    papermill_injectable: bool
    default_value: Any
    required: bool
    validation_rule: Optional[str] = None
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        try:
            json.dumps(self.default_value)
        except TypeError as e:
            raise TypeError(
                f"default_value {self.default_value!r} is not JSON-serializable"
            ) from e
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ParameterSpec":
        return cls(**data)


@dataclass
class AnalysisStep:
    """One executed operation with its parameters and a code template."""

    operation: str
    tool_name: str
    description: str
    library: str
    code_template: str
    imports: List[str]
    parameters: Dict[str, Any]
    parameter_schema: Dict[str, ParameterSpec]
    input_entities: List[str] = field(default_factory=list)
    output_entities: List[str] = field(default_factory=list)
    execution_context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-compatible dict."""
        return {
            "operation": self.operation,
            "tool_name": self.tool_name,
            "description": self.description,
            "library": self.library,
            "code_template": self.code_template,
            "imports": list(self.imports),
            "parameters": dict(self.parameters),
            "parameter_schema": {
                name: spec.to_dict() for name, spec in self.parameter_schema.items()
            },
            "input_entities": list(self.input_entities),
            "output_entities": list(self.output_entities),
            "execution_context": dict(self.execution_context),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisStep":
        missing = [name for name in _REQUIRED_FIELDS if name not in data]
        if missing:
            raise ValueError(f"Missing required fields: {', '.join(missing)}")

        schema = {
            name: spec if isinstance(spec, ParameterSpec) else ParameterSpec.from_dict(spec)
            for name, spec in data["parameter_schema"].items()
        }
        return cls(
            operation=data["operation"],
            tool_name=data["tool_name"],
            description=data["description"],
            library=data["library"],
            code_template=data["code_template"],
            imports=list(data["imports"]),
            parameters=dict(data["parameters"]),
            parameter_schema=schema,
            input_entities=list(data.get("input_entities", [])),
            output_entities=list(data.get("output_entities", [])),
            execution_context=dict(data.get("execution_context", {})),
        )

    def validate_template(self) -> bool:
        try:
            _jinja_env.parse(self.code_template)
        except TemplateSyntaxError as e:
            raise ValueError(f"Invalid Jinja2 template: {e}") from e
        return True

    def render(self, **overrides: Any) -> str:
        """Render the code template with the stored parameters (and overrides)."""
        params = {**self.parameters, **overrides}
        try:
            template = _jinja_env.from_string(self.code_template)
            return template.render(**params)
        except Exception as e:
            raise ValueError(f"Template rendering failed: {e}") from e

    def __repr__(self) -> str:
        return (
            f"AnalysisStep(operation={self.operation!r}, tool_name={self.tool_name!r}, "
            f"n_parameters={len(self.parameters)})"
        )
