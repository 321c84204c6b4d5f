"""
Variable Value Object

Architectural Intent:
- Immutable typed input for a run (string, number, bool, mapping)
- Coerces raw CLI/env strings into the declared type
- Reports every violated constraint instead of stopping at the first;
  expression-based validation rules are evaluated by the graph builder
"""

from __future__ import annotations
import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class VariableType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOL = "bool"
    MAPPING = "mapping"


_TRUE = ("true", "1", "yes", "on")
_FALSE = ("false", "0", "no", "off")


@dataclass(frozen=True)
class ValidationRule:
    """Expression that must evaluate to true for the bound value."""
    condition: str
    error_message: str


@dataclass(frozen=True)
class Variable:
    name: str
    type: VariableType = VariableType.STRING
    default: Any = None
    description: str = ""
    pattern: Optional[str] = None
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    allowed: tuple[Any, ...] = ()
    validations: tuple[ValidationRule, ...] = ()
    sensitive: bool = False

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Variable name cannot be empty")

    @property
    def required(self) -> bool:
        return self.default is None

    def coerce(self, raw: Any) -> Any:
        """Convert a raw value (often a string from the CLI) to the declared type."""
        if self.type == VariableType.STRING:
            if isinstance(raw, (dict, list)):
                raise ValueError(f"expected a string, got {type(raw).__name__}")
            return raw if isinstance(raw, str) else str(raw)
        if self.type == VariableType.BOOL:
            if isinstance(raw, bool):
                return raw
            if isinstance(raw, str) and raw.lower() in _TRUE:
                return True
            if isinstance(raw, str) and raw.lower() in _FALSE:
                return False
            raise ValueError(f"expected a bool, got {raw!r}")
        if self.type == VariableType.NUMBER:
            if isinstance(raw, bool):
                raise ValueError(f"expected a number, got {raw!r}")
            if isinstance(raw, (int, float)):
                return raw
            try:
                text = str(raw)
                return float(text) if any(c in text for c in ".eE") else int(text)
            except ValueError:
                raise ValueError(f"expected a number, got {raw!r}") from None
        if isinstance(raw, dict):
            return raw
        if isinstance(raw, str):
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, dict):
                return parsed
        raise ValueError(f"expected a mapping, got {raw!r}")

    def check(self, value: Any) -> list[str]:
        """Return every constraint violation for an already coerced value."""
        problems: list[str] = []
        prefix = f"variable '{self.name}'"
        if self.pattern is not None and isinstance(value, str):
            if not re.fullmatch(self.pattern, value):
                problems.append(
                    f"{prefix}: value {value!r} does not match pattern {self.pattern!r}"
                )
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            if self.minimum is not None and value < self.minimum:
                problems.append(f"{prefix}: {value} is below minimum {self.minimum}")
            if self.maximum is not None and value > self.maximum:
                problems.append(f"{prefix}: {value} is above maximum {self.maximum}")
        if self.allowed and value not in self.allowed:
            problems.append(
                f"{prefix}: {value!r} is not one of {list(self.allowed)!r}"
            )
        return problems
