"""
Parameter specifications and the validator chain.

Tool parameters are declared as typed specs (StringParam, IntegerParam,
PathParam, ...). Each spec validates its own values and renders its own JSON
schema for the MCP tool listing.

Before a task runs, its parameters pass through an ordered ValidatorChain:
1. SchemaStage: required/defaults, types, enums and ranges
2. InputSizeStage: per-context character limits
3. InjectionStage: prompt-injection screening of free-text values
4. PathSecurityStage: every path parameter becomes a ValidatedPath

Each stage returns sanitized parameters or raises a structured error
(ParameterValidationError, PromptInjectionError or PathSecurityError).
"""

import copy
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol, Sequence

from .content_security import PromptInjectionGuard
from .exceptions import ParameterValidationError, PromptInjectionError
from .path_security import PathSecurityGuard

logger = logging.getLogger(__name__)


def _reject(name: str, message: str, **details: Any) -> ParameterValidationError:
    return ParameterValidationError(f"Invalid parameter '{name}': {message}", {"parameter": name, **details})


@dataclass(frozen=True)
class ParamSpec:
    """Base parameter spec."""

    name: str
    description: str = ""
    required: bool = False
    default: Any = None

    json_type = "string"

    def validate(self, value: Any) -> Any:
        return value

    def schema_extras(self) -> dict[str, Any]:
        return {}

    def to_schema(self) -> dict[str, Any]:
        schema: dict[str, Any] = {"type": self.json_type}
        if self.description:
            schema["description"] = self.description
        if self.default is not None:
            schema["default"] = self.default
        schema.update(self.schema_extras())
        return schema


@dataclass(frozen=True)
class StringParam(ParamSpec):
    enum: tuple[str, ...] | None = None
    size_context: str = "general"

    def validate(self, value: Any) -> str:
        if not isinstance(value, str):
            raise _reject(self.name, f"expected string, got {type(value).__name__}")
        if self.enum is not None and value not in self.enum:
            raise _reject(self.name, f"must be one of {list(self.enum)}", value=value)
        return value

    def schema_extras(self) -> dict[str, Any]:
        return {"enum": list(self.enum)} if self.enum else {}


@dataclass(frozen=True)
class IntegerParam(ParamSpec):
    minimum: int | None = None
    maximum: int | None = None

    json_type = "integer"

    def validate(self, value: Any) -> int:
        # bool is an int subclass but never a valid integer parameter
        if isinstance(value, bool):
            raise _reject(self.name, "expected integer, got boolean")
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        if not isinstance(value, int):
            raise _reject(self.name, f"expected integer, got {type(value).__name__}")
        if self.minimum is not None and value < self.minimum:
            raise _reject(self.name, f"must be >= {self.minimum}", value=value)
        if self.maximum is not None and value > self.maximum:
            raise _reject(self.name, f"must be <= {self.maximum}", value=value)
        return value

    def schema_extras(self) -> dict[str, Any]:
        extras = {}
        if self.minimum is not None:
            extras["minimum"] = self.minimum
        if self.maximum is not None:
            extras["maximum"] = self.maximum
        return extras


@dataclass(frozen=True)
class NumberParam(ParamSpec):
    minimum: float | None = None
    maximum: float | None = None

    json_type = "number"

    def validate(self, value: Any) -> float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise _reject(self.name, f"expected number, got {type(value).__name__}")
        if self.minimum is not None and value < self.minimum:
            raise _reject(self.name, f"must be >= {self.minimum}", value=value)
        if self.maximum is not None and value > self.maximum:
            raise _reject(self.name, f"must be <= {self.maximum}", value=value)
        return value


@dataclass(frozen=True)
class BooleanParam(ParamSpec):
    json_type = "boolean"

    def validate(self, value: Any) -> bool:
        if not isinstance(value, bool):
            raise _reject(self.name, f"expected boolean, got {type(value).__name__}")
        return value


@dataclass(frozen=True)
class PathParam(ParamSpec):
    """An absolute path; resolved against the allowed roots by PathSecurityStage."""

    kind: str = "any"  # "file", "directory" or "any"

    def validate(self, value: Any) -> str:
        if isinstance(value, os.PathLike):
            value = os.fspath(value)
        if not isinstance(value, str) or not value:
            raise _reject(self.name, "expected a non-empty path string")
        return value

    def schema_extras(self) -> dict[str, Any]:
        return {"format": "path"}


@dataclass(frozen=True)
class ArrayParam(ParamSpec):
    items: ParamSpec | None = None
    max_items: int | None = None

    json_type = "array"

    def validate(self, value: Any) -> list:
        if not isinstance(value, (list, tuple)):
            raise _reject(self.name, f"expected array, got {type(value).__name__}")
        if self.max_items is not None and len(value) > self.max_items:
            raise _reject(self.name, f"at most {self.max_items} items allowed", count=len(value))
        if self.items is None:
            return list(value)
        return [self.items.validate(v) for v in value]

    def schema_extras(self) -> dict[str, Any]:
        extras: dict[str, Any] = {}
        if self.items is not None:
            extras["items"] = self.items.to_schema()
        if self.max_items is not None:
            extras["maxItems"] = self.max_items
        return extras


@dataclass(frozen=True)
class ObjectParam(ParamSpec):
    properties: tuple[ParamSpec, ...] = ()

    json_type = "object"

    def validate(self, value: Any) -> dict:
        if not isinstance(value, dict):
            raise _reject(self.name, f"expected object, got {type(value).__name__}")
        known = {p.name: p for p in self.properties}
        result = {}
        for key, item in value.items():
            spec = known.get(key)
            if spec is None:
                # Free-form objects keep unknown keys as-is
                if not self.properties:
                    result[key] = item
                continue
            if item is not None:
                result[key] = spec.validate(item)
        for spec in self.properties:
            if spec.required and spec.name not in result:
                raise _reject(f"{self.name}.{spec.name}", "is required")
        return result

    def schema_extras(self) -> dict[str, Any]:
        if not self.properties:
            return {}
        return {"properties": {p.name: p.to_schema() for p in self.properties}}


def build_input_schema(specs: Iterable[ParamSpec]) -> dict[str, Any]:
    """JSON schema for an MCP tool's inputSchema."""
    specs = list(specs)
    return {
        "type": "object",
        "properties": {s.name: s.to_schema() for s in specs},
        "required": [s.name for s in specs if s.required],
    }


# -----------------------------------------------------------------------------
# Chain stages
# -----------------------------------------------------------------------------


class ValidationStage(Protocol):
    def apply(self, params: dict[str, Any], specs: Sequence[ParamSpec]) -> dict[str, Any]:
        ...


class SchemaStage:
    """Applies defaults, enforces required parameters and checks types."""

    def apply(self, params: dict[str, Any], specs: Sequence[ParamSpec]) -> dict[str, Any]:
        result: dict[str, Any] = {}
        declared = {s.name for s in specs}
        for name in params:
            if name not in declared:
                logger.debug(f"[VALIDATION] Ignoring undeclared parameter '{name}'")

        for spec in specs:
            value = params.get(spec.name)
            if value is None:
                if spec.required:
                    raise _reject(spec.name, "is required")
                if spec.default is not None:
                    result[spec.name] = copy.deepcopy(spec.default)
                continue
            result[spec.name] = spec.validate(value)
        return result


class InputSizeStage:
    """Rejects string values longer than the limit for their context."""

    def __init__(self, limits: dict[str, int]):
        self.limits = limits

    def _limit_for(self, spec: ParamSpec) -> int | None:
        if isinstance(spec, PathParam):
            return self.limits.get("file-path")
        if isinstance(spec, StringParam):
            return self.limits.get(spec.size_context)
        return None

    def _check(self, spec: ParamSpec, value: Any, label: str) -> None:
        if isinstance(spec, ArrayParam) and spec.items is not None:
            for i, item in enumerate(value):
                self._check(spec.items, item, f"{label}[{i}]")
        elif isinstance(spec, ObjectParam):
            known = {p.name: p for p in spec.properties}
            for key, item in value.items():
                if key in known:
                    self._check(known[key], item, f"{label}.{key}")
        elif isinstance(value, str):
            limit = self._limit_for(spec)
            if limit is not None and len(value) > limit:
                raise _reject(
                    label, f"too long ({len(value):,} > {limit:,} characters)",
                    length=len(value), limit=limit,
                )

    def apply(self, params: dict[str, Any], specs: Sequence[ParamSpec]) -> dict[str, Any]:
        for spec in specs:
            if spec.name in params:
                self._check(spec, params[spec.name], spec.name)
        return params


SECURITY_WARNINGS_KEY = "_security_warnings"


class InjectionStage:
    """
    Screens free-text parameters for prompt injection.

    Critical attempts are rejected with PromptInjectionError. High-risk text
    is neutralized in place. Every flagged value is reported under
    SECURITY_WARNINGS_KEY, which cache keys ignore.
    """

    def __init__(self, guard: PromptInjectionGuard):
        self.guard = guard

    def _screen(self, spec: ParamSpec, value: Any, label: str, warnings: list[dict]) -> Any:
        if isinstance(spec, ArrayParam) and spec.items is not None:
            return [
                self._screen(spec.items, item, f"{label}[{i}]", warnings)
                for i, item in enumerate(value)
            ]
        if isinstance(spec, ObjectParam) and isinstance(value, dict):
            known = {p.name: p for p in spec.properties}
            return {
                key: self._screen(known.get(key, StringParam(key)), item, f"{label}.{key}", warnings)
                for key, item in value.items()
            }
        if isinstance(spec, PathParam) or not isinstance(value, str):
            return value

        analysis = self.guard.analyze(value, "parameter")
        if not analysis.detected:
            return value
        if self.guard.should_block(analysis):
            raise PromptInjectionError(
                f"Prompt injection attempt blocked in parameter '{label}'",
                {"parameter": label, **analysis.to_dict()},
            )
        warnings.append({"parameter": label, **analysis.to_dict()})
        if analysis.risk_level == "high":
            return self.guard.sanitize(value, analysis)
        return value

    def apply(self, params: dict[str, Any], specs: Sequence[ParamSpec]) -> dict[str, Any]:
        result = dict(params)
        warnings: list[dict] = []
        for spec in specs:
            if result.get(spec.name) is not None:
                result[spec.name] = self._screen(spec, result[spec.name], spec.name, warnings)
        if warnings:
            result[SECURITY_WARNINGS_KEY] = warnings
        return result


class PathSecurityStage:
    """Turns every path parameter into a ValidatedPath."""

    def __init__(self, guard: PathSecurityGuard):
        self.guard = guard

    def _resolve(self, spec: PathParam, value: str):
        validated = self.guard.validate(value)
        if spec.kind == "directory" and not os.path.isdir(validated.path):
            raise _reject(spec.name, "must be an existing directory", path=validated.path)
        return validated

    def apply(self, params: dict[str, Any], specs: Sequence[ParamSpec]) -> dict[str, Any]:
        result = dict(params)
        for spec in specs:
            value = result.get(spec.name)
            if value is None:
                continue
            if isinstance(spec, PathParam):
                result[spec.name] = self._resolve(spec, value)
            elif isinstance(spec, ArrayParam) and isinstance(spec.items, PathParam):
                result[spec.name] = [self._resolve(spec.items, v) for v in value]
        return result


@dataclass
class ValidatorChain:
    """Ordered validation stages run before a task handler."""

    specs: Sequence[ParamSpec]
    stages: list[ValidationStage] = field(default_factory=list)

    def run(self, params: dict[str, Any] | None) -> dict[str, Any]:
        if params is None:
            params = {}
        if not isinstance(params, dict):
            raise ParameterValidationError("Parameters must be an object", {"type": type(params).__name__})
        for stage in self.stages:
            params = stage.apply(params, self.specs)
        return params

    @classmethod
    def standard(
        cls,
        specs: Sequence[ParamSpec],
        guard: PathSecurityGuard,
        size_limits: dict[str, int],
        injection_guard: PromptInjectionGuard | None = None,
    ) -> "ValidatorChain":
        stages: list[ValidationStage] = [SchemaStage(), InputSizeStage(size_limits)]
        if injection_guard is not None:
            stages.append(InjectionStage(injection_guard))
        stages.append(PathSecurityStage(guard))
        return cls(specs, stages)
