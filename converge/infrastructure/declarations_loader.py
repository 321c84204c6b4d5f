"""
Declaration Loader

Architectural Intent:
- Reads the JSON declaration file into immutable Declarations
- Reports every structural problem of the file in one ValidationError;
  cross-reference checks are left to the graph builder
- Collects variable values from --var, --var-file and CONVERGE_VAR_<name>

File layout:
    {
      "variables":      {"<name>": {"type": ..., "default": ..., ...}},
      "resource_types": {"<type>": {"computed": [...], "required": [...],
                                    "timeout_seconds": 120}},
      "resources":      [{"id": ..., "type": ..., "attributes": {...},
                          "depends_on": [...], "condition": "...",
                          "ignore_changes": [...]}],
      "branches":       [{"name": ..., "selector": "...",
                          "when_true": "<id>", "when_false": "<id>"}],
      "outputs":        {"<name>": {"value": "...", "sensitive": false}},
      "pipeline":       {"steps": [{"id": ..., "action": {"kind": ..., ...},
                                    "wait_for": [...], "artifacts": {...}}]}
    }
"""

from __future__ import annotations
import json
import logging
import os
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

from converge.domain.errors import ValidationError
from converge.domain.value_objects.declarations import (
    BranchDeclaration,
    Declarations,
    ResourceDeclaration,
    ResourceTypeSchema,
    StepAction,
    StepDeclaration,
)
from converge.domain.value_objects.output_value import OutputValue
from converge.domain.value_objects.variable import (
    ValidationRule,
    Variable,
    VariableType,
)

logger = logging.getLogger(__name__)

DEFAULT_DECLARATIONS_FILE = "converge.json"
VAR_ENV_PREFIX = "CONVERGE_VAR_"

_TOP_LEVEL = {
    "variables",
    "resource_types",
    "resources",
    "branches",
    "outputs",
    "pipeline",
}


def _reject_duplicates(pairs: list[tuple[str, Any]]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in pairs:
        if key in result:
            raise ValueError(f"duplicate key {key!r}")
        result[key] = value
    return result


def _read_json(path: Path) -> Any:
    try:
        with open(path) as f:
            return json.load(f, object_pairs_hook=_reject_duplicates)
    except FileNotFoundError:
        raise ValidationError([f"declaration file not found: {path}"]) from None
    except json.JSONDecodeError as e:
        raise ValidationError([f"{path}: invalid JSON: {e}"]) from None
    except ValueError as e:
        raise ValidationError([f"{path}: {e}"]) from None


def _str_tuple(value: Any, owner: str, key: str, problems: list[str]) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        problems.append(f"{owner}: '{key}' must be a list of strings")
        return ()
    return tuple(value)


def _mapping(value: Any, owner: str, key: str, problems: list[str]) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        problems.append(f"{owner}: '{key}' must be an object")
        return {}
    return value


def _optional_number(value: Any, owner: str, key: str, problems: list[str]) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        problems.append(f"{owner}: '{key}' must be a number")
        return None
    return value


def _parse_variables(data: Any, problems: list[str]) -> tuple[Variable, ...]:
    variables = []
    for name, spec in _mapping(data, "declarations", "variables", problems).items():
        owner = f"variable '{name}'"
        if not isinstance(spec, dict):
            problems.append(f"{owner}: must be an object")
            continue
        try:
            var_type = VariableType(spec.get("type", "string"))
        except ValueError:
            problems.append(
                f"{owner}: unknown type {spec.get('type')!r} "
                f"(expected one of {[t.value for t in VariableType]})"
            )
            continue
        rules = []
        for rule in spec.get("validations") or []:
            if not isinstance(rule, dict) or "condition" not in rule:
                problems.append(f"{owner}: validation rules need a 'condition'")
                continue
            rules.append(
                ValidationRule(
                    condition=str(rule["condition"]),
                    error_message=str(
                        rule.get("error_message") or f"failed {rule['condition']}"
                    ),
                )
            )
        allowed = spec.get("allowed") or []
        if not isinstance(allowed, list):
            problems.append(f"{owner}: 'allowed' must be a list")
            allowed = []
        variables.append(
            Variable(
                name=name,
                type=var_type,
                default=spec.get("default"),
                description=str(spec.get("description", "")),
                pattern=spec.get("pattern"),
                minimum=_optional_number(spec.get("minimum"), owner, "minimum", problems),
                maximum=_optional_number(spec.get("maximum"), owner, "maximum", problems),
                allowed=tuple(allowed),
                validations=tuple(rules),
                sensitive=bool(spec.get("sensitive", False)),
            )
        )
    return tuple(variables)


def _parse_resource_types(
    data: Any, problems: list[str]
) -> dict[str, ResourceTypeSchema]:
    schemas = {}
    for name, spec in _mapping(data, "declarations", "resource_types", problems).items():
        owner = f"resource type '{name}'"
        if not isinstance(spec, dict):
            problems.append(f"{owner}: must be an object")
            continue
        computed = _str_tuple(spec.get("computed"), owner, "computed", problems)
        schemas[name] = ResourceTypeSchema(
            name=name,
            computed=computed or ("id",),
            required=_str_tuple(spec.get("required"), owner, "required", problems),
            timeout_seconds=_optional_number(
                spec.get("timeout_seconds"), owner, "timeout_seconds", problems
            ),
        )
    return schemas


def _list_of_objects(data: Any, key: str, problems: list[str]) -> list[dict[str, Any]]:
    if data is None:
        return []
    if not isinstance(data, list):
        problems.append(f"declarations: '{key}' must be a list")
        return []
    items = []
    for index, item in enumerate(data):
        if not isinstance(item, dict):
            problems.append(f"declarations: {key}[{index}] must be an object")
            continue
        items.append(item)
    return items


def _parse_resources(data: Any, problems: list[str]) -> tuple[ResourceDeclaration, ...]:
    resources = []
    for index, spec in enumerate(_list_of_objects(data, "resources", problems)):
        node_id = spec.get("id")
        owner = f"resource '{node_id}'" if node_id else f"resources[{index}]"
        if not isinstance(node_id, str) or not node_id:
            problems.append(f"{owner}: missing 'id'")
            continue
        if not isinstance(spec.get("type"), str) or not spec["type"]:
            problems.append(f"{owner}: missing 'type'")
            continue
        condition = spec.get("condition")
        if condition is not None and not isinstance(condition, str):
            problems.append(f"{owner}: 'condition' must be a string expression")
            condition = None
        resources.append(
            ResourceDeclaration(
                id=node_id,
                type=spec["type"],
                attributes=_mapping(spec.get("attributes"), owner, "attributes", problems),
                depends_on=_str_tuple(spec.get("depends_on"), owner, "depends_on", problems),
                condition=condition,
                ignore_changes=_str_tuple(
                    spec.get("ignore_changes"), owner, "ignore_changes", problems
                ),
            )
        )
    return tuple(resources)


def _parse_branches(data: Any, problems: list[str]) -> tuple[BranchDeclaration, ...]:
    branches = []
    for index, spec in enumerate(_list_of_objects(data, "branches", problems)):
        owner = f"branch '{spec.get('name') or index}'"
        missing = [
            k for k in ("name", "selector", "when_true", "when_false")
            if not isinstance(spec.get(k), str) or not spec.get(k)
        ]
        if missing:
            problems.append(f"{owner}: missing {', '.join(repr(k) for k in missing)}")
            continue
        branches.append(
            BranchDeclaration(
                name=spec["name"],
                selector=spec["selector"],
                when_true=spec["when_true"],
                when_false=spec["when_false"],
            )
        )
    return tuple(branches)


def _parse_outputs(data: Any, problems: list[str]) -> tuple[OutputValue, ...]:
    outputs = []
    for name, spec in _mapping(data, "declarations", "outputs", problems).items():
        if not isinstance(spec, dict) or "value" not in spec:
            problems.append(f"output '{name}': needs a 'value'")
            continue
        outputs.append(
            OutputValue(
                name=name,
                value=spec["value"],
                description=str(spec.get("description", "")),
                sensitive=bool(spec.get("sensitive", False)),
            )
        )
    return tuple(outputs)


def _parse_steps(data: Any, problems: list[str]) -> tuple[StepDeclaration, ...]:
    pipeline = _mapping(data, "declarations", "pipeline", problems)
    steps = []
    for index, spec in enumerate(_list_of_objects(pipeline.get("steps"), "pipeline.steps", problems)):
        step_id = spec.get("id")
        owner = f"step '{step_id}'" if step_id else f"pipeline.steps[{index}]"
        if not isinstance(step_id, str) or not step_id:
            problems.append(f"{owner}: missing 'id'")
            continue
        action = _mapping(spec.get("action"), owner, "action", problems)
        if not isinstance(action.get("kind"), str):
            problems.append(f"{owner}: action needs a 'kind'")
            continue
        wait_for = spec.get("wait_for")
        steps.append(
            StepDeclaration(
                id=step_id,
                action=StepAction(
                    kind=action["kind"],
                    params={k: v for k, v in action.items() if k != "kind"},
                ),
                wait_for=(
                    None
                    if wait_for is None
                    else _str_tuple(wait_for, owner, "wait_for", problems)
                ),
                artifacts=_mapping(spec.get("artifacts"), owner, "artifacts", problems),
                timeout_seconds=_optional_number(
                    spec.get("timeout_seconds"), owner, "timeout_seconds", problems
                ),
            )
        )
    return tuple(steps)


def parse_declarations(data: Any) -> Declarations:
    """Convert an already decoded JSON document into Declarations."""
    if not isinstance(data, dict):
        raise ValidationError(["declarations: top level must be an object"])
    problems: list[str] = []
    for key in sorted(set(data) - _TOP_LEVEL):
        problems.append(f"declarations: unknown section '{key}'")
    declarations = Declarations(
        variables=_parse_variables(data.get("variables"), problems),
        resource_types=_parse_resource_types(data.get("resource_types"), problems),
        resources=_parse_resources(data.get("resources"), problems),
        branches=_parse_branches(data.get("branches"), problems),
        outputs=_parse_outputs(data.get("outputs"), problems),
        steps=_parse_steps(data.get("pipeline"), problems),
    )
    if problems:
        raise ValidationError(problems)
    return declarations


def load_declarations(path: Optional[str] = None) -> Declarations:
    declarations_path = Path(path or DEFAULT_DECLARATIONS_FILE)
    declarations = parse_declarations(_read_json(declarations_path))
    logger.debug(
        "Loaded %s: %d resource(s), %d step(s)",
        declarations_path,
        len(declarations.resources),
        len(declarations.steps),
    )
    return declarations


def collect_variable_values(
    declarations: Declarations,
    var_args: Iterable[str] = (),
    var_files: Iterable[str] = (),
    environ: Optional[Mapping[str, str]] = None,
) -> dict[str, Any]:
    """Merge variable values: --var beats --var-file beats CONVERGE_VAR_<name>.

    Defaults are applied later by the graph builder. Environment values are
    only picked up for declared variables.
    """
    environ = os.environ if environ is None else environ
    values: dict[str, Any] = {}
    for variable in declarations.variables:
        env_key = f"{VAR_ENV_PREFIX}{variable.name}"
        if env_key in environ:
            values[variable.name] = environ[env_key]

    problems: list[str] = []
    for var_file in var_files:
        data = _read_json(Path(var_file))
        if not isinstance(data, dict):
            problems.append(f"{var_file}: must contain a JSON object")
            continue
        values.update(data)
    for arg in var_args:
        name, sep, value = arg.partition("=")
        if not sep or not name:
            problems.append(f"--var {arg!r}: expected name=value")
            continue
        values[name.strip()] = value
    if problems:
        raise ValidationError(problems)
    return values
