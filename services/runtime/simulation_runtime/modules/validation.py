from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from ..models import SimulationKind, ValidationOutcome


@dataclass(frozen=True)
class FieldRule:
    field: str
    message: str
    minimum: float | None = None
    maximum: float | None = None
    required: bool = True


@dataclass(frozen=True)
class WarningRule:
    field: str
    message: str
    triggered: Callable[[float, Mapping[str, Any]], bool]


@dataclass(frozen=True)
class SuggestionRule:
    field: str
    default: float
    ceiling: Callable[[Mapping[str, Any]], float]


FIELD_RULES: dict[SimulationKind, tuple[FieldRule, ...]] = {
    SimulationKind.drop_test: (
        FieldRule("drop_height", "Drop height must be between 0.1 and 10.0 m", minimum=0.1, maximum=10.0),
        FieldRule("num_drops", "Number of drops must be at least 1", minimum=1),
        FieldRule("restitution", "Restitution must be between 0 and 1", minimum=0.0, maximum=1.0, required=False),
    ),
    SimulationKind.stress_test: (
        FieldRule("max_force", "Maximum force must be between 1 and 50000 N", minimum=1, maximum=50000),
        FieldRule("force_increment", "Force increment must be at least 1 N", minimum=1),
    ),
    SimulationKind.motion: (
        FieldRule("duration", "Duration must be between 1 and 300 s", minimum=1, maximum=300),
        FieldRule("velocity", "Velocity must be at least 0.1 m/s", minimum=0.1),
    ),
    SimulationKind.fluid: (
        FieldRule("fluid_density", "Fluid density must be between 0.1 and 2000 kg/m3", minimum=0.1, maximum=2000),
        FieldRule("drag_coefficient", "Drag coefficient must not be negative", minimum=0.0),
    ),
}

WARNING_RULES: dict[SimulationKind, tuple[WarningRule, ...]] = {
    SimulationKind.drop_test: (
        WarningRule(
            "num_drops",
            "More than 20 drops will slow the simulation considerably",
            lambda value, _params: value > 20,
        ),
    ),
    SimulationKind.stress_test: (
        WarningRule(
            "force_increment",
            "Force increment is too high relative to max force; few data points will be produced",
            lambda value, params: _number(params.get("max_force")) is not None
            and value > _number(params.get("max_force")) / 10,
        ),
    ),
    SimulationKind.motion: (
        WarningRule("velocity", "Velocity above 20 m/s may make the simulation unstable", lambda value, _params: value > 20),
    ),
    SimulationKind.fluid: (
        WarningRule("drag_coefficient", "Drag coefficient above 2 is unusually high", lambda value, _params: value > 2),
    ),
}


def _stress_increment_ceiling(params: Mapping[str, Any]) -> float:
    max_force = _number(params.get("max_force"))
    if not max_force:
        return 50.0
    return max_force / 20


SUGGESTION_RULES: dict[SimulationKind, tuple[SuggestionRule, ...]] = {
    SimulationKind.drop_test: (
        SuggestionRule("num_drops", 5, lambda _params: 20),
        SuggestionRule("drop_height", 1.0, lambda _params: 5.0),
    ),
    SimulationKind.stress_test: (SuggestionRule("force_increment", 100, _stress_increment_ceiling),),
    SimulationKind.motion: (
        SuggestionRule("duration", 10, lambda _params: 60),
        SuggestionRule("velocity", 1.0, lambda _params: 5.0),
    ),
    SimulationKind.fluid: (SuggestionRule("fluid_density", 1.2, lambda _params: 100),),
}


def _number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return value


def _rule_minimum(kind: SimulationKind, field: str) -> float | None:
    for rule in FIELD_RULES[kind]:
        if rule.field == field:
            return rule.minimum
    return None


def validate(kind: SimulationKind | str, parameters: Mapping[str, Any]) -> ValidationOutcome:
    kind = SimulationKind(kind)
    errors: list[str] = []
    warnings: list[str] = []

    for rule in FIELD_RULES[kind]:
        raw = parameters.get(rule.field)
        if raw is None:
            if rule.required:
                errors.append(f"{rule.field} is required: {rule.message}")
            continue
        value = _number(raw)
        if value is None:
            errors.append(f"{rule.field} must be a number: {rule.message}")
            continue
        if rule.minimum is not None and value < rule.minimum:
            errors.append(rule.message)
        elif rule.maximum is not None and value > rule.maximum:
            errors.append(rule.message)

    if not errors:
        for warning in WARNING_RULES[kind]:
            value = _number(parameters.get(warning.field))
            if value is not None and warning.triggered(value, parameters):
                warnings.append(warning.message)

    suggested = suggest(kind, parameters) if warnings else dict(parameters)
    return ValidationOutcome(
        valid=not errors,
        errors=errors,
        warnings=warnings,
        suggestedParameters=suggested,
    )


def suggest(kind: SimulationKind | str, parameters: Mapping[str, Any]) -> dict[str, Any]:
    kind = SimulationKind(kind)
    suggested = dict(parameters)
    for rule in SUGGESTION_RULES[kind]:
        value = _number(suggested.get(rule.field)) or rule.default
        value = min(value, rule.ceiling(suggested))
        minimum = _rule_minimum(kind, rule.field)
        if minimum is not None:
            value = max(value, minimum)
        suggested[rule.field] = value
    return suggested


def estimate_runtime_minutes(kind: SimulationKind | str, parameters: Mapping[str, Any]) -> int:
    kind = SimulationKind(kind)
    if kind == SimulationKind.drop_test:
        drops = _number(parameters.get("num_drops")) or 5
        return math.ceil(drops * 0.3)
    if kind == SimulationKind.stress_test:
        max_force = _number(parameters.get("max_force")) or 1000
        increment = _number(parameters.get("force_increment")) or 100
        return math.ceil(math.ceil(max_force / increment) * 0.2)
    if kind == SimulationKind.motion:
        duration = _number(parameters.get("duration")) or 10
        return math.ceil(duration * 0.1)
    return 5
