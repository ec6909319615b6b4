from __future__ import annotations

import pytest

from simulation_runtime.models import SimulationKind
from simulation_runtime.modules.validation import estimate_runtime_minutes, suggest, validate


def test_valid_drop_test_has_no_errors_or_warnings():
    outcome = validate(SimulationKind.drop_test, {"drop_height": 1.0, "num_drops": 5, "gravity": -9.8})

    assert outcome.valid is True
    assert outcome.errors == []
    assert outcome.warnings == []
    assert outcome.suggestedParameters == {"drop_height": 1.0, "num_drops": 5, "gravity": -9.8}


def test_stress_increment_warning_suggests_smaller_increment():
    outcome = validate("stress_test", {"max_force": 50, "force_increment": 20})

    assert outcome.valid is True
    assert any("increment" in warning.lower() for warning in outcome.warnings)
    assert outcome.suggestedParameters["force_increment"] <= 5
    assert outcome.suggestedParameters["max_force"] == 50


@pytest.mark.parametrize(
    "kind,params,fragment",
    [
        (SimulationKind.drop_test, {"drop_height": 0.05, "num_drops": 5}, "Drop height"),
        (SimulationKind.drop_test, {"drop_height": 11, "num_drops": 5}, "Drop height"),
        (SimulationKind.drop_test, {"drop_height": 1.0, "num_drops": 0}, "Number of drops"),
        (SimulationKind.stress_test, {"max_force": 60000, "force_increment": 10}, "Maximum force"),
        (SimulationKind.motion, {"duration": 10, "velocity": 0.0}, "Velocity"),
        (SimulationKind.fluid, {"fluid_density": 1.2, "drag_coefficient": -0.1}, "Drag coefficient"),
    ],
)
def test_out_of_range_values_are_errors(kind, params, fragment):
    outcome = validate(kind, params)

    assert outcome.valid is False
    assert any(fragment in error for error in outcome.errors)
    assert outcome.warnings == []


def test_missing_and_non_numeric_fields_are_errors():
    outcome = validate(SimulationKind.drop_test, {"drop_height": "high", "num_drops": True})

    assert outcome.valid is False
    assert len(outcome.errors) == 2
    assert all("must be a number" in error for error in outcome.errors)

    missing = validate(SimulationKind.motion, {"velocity": 1.0})
    assert missing.valid is False
    assert missing.errors[0].startswith("duration is required")

    infinite = validate(SimulationKind.fluid, {"fluid_density": 1.2, "drag_coefficient": float("inf")})
    assert infinite.valid is False
    assert infinite.errors == ["drag_coefficient must be a number: Drag coefficient must not be negative"]
    assert validate(SimulationKind.drop_test, {"drop_height": float("-inf"), "num_drops": 2}).valid is False


def test_optional_restitution_is_range_checked_only_when_present():
    assert validate(SimulationKind.drop_test, {"drop_height": 1, "num_drops": 2}).valid
    outcome = validate(SimulationKind.drop_test, {"drop_height": 1, "num_drops": 2, "restitution": 1.5})
    assert outcome.valid is False


def test_warning_thresholds():
    assert validate(SimulationKind.drop_test, {"drop_height": 1, "num_drops": 21}).warnings
    assert validate(SimulationKind.motion, {"duration": 10, "velocity": 25}).warnings
    assert validate(SimulationKind.fluid, {"fluid_density": 1.2, "drag_coefficient": 2.5}).warnings
    assert not validate(SimulationKind.drop_test, {"drop_height": 1, "num_drops": 20}).warnings


@pytest.mark.parametrize(
    "kind,params",
    [
        (SimulationKind.drop_test, {"drop_height": 8.0, "num_drops": 40}),
        (SimulationKind.drop_test, {}),
        (SimulationKind.stress_test, {"max_force": 50, "force_increment": 20}),
        (SimulationKind.stress_test, {"force_increment": 500}),
        (SimulationKind.motion, {"duration": 200, "velocity": 30}),
        (SimulationKind.fluid, {"fluid_density": 1000, "drag_coefficient": 0.5}),
    ],
)
def test_suggest_is_idempotent(kind, params):
    once = suggest(kind, params)
    assert suggest(kind, once) == once


def test_suggest_clamps_and_never_goes_below_rule_minimum():
    drop = suggest(SimulationKind.drop_test, {"drop_height": 8.0, "num_drops": 40})
    assert drop == {"drop_height": 5.0, "num_drops": 20}

    stress = suggest(SimulationKind.stress_test, {"max_force": 10, "force_increment": 8})
    assert stress["force_increment"] == 1

    defaults = suggest(SimulationKind.motion, {})
    assert defaults == {"duration": 10, "velocity": 1.0}


def test_suggest_does_not_mutate_input():
    params = {"max_force": 50, "force_increment": 20}
    suggest(SimulationKind.stress_test, params)
    assert params == {"max_force": 50, "force_increment": 20}


def test_runtime_estimates():
    assert estimate_runtime_minutes(SimulationKind.drop_test, {"num_drops": 5}) == 2
    assert estimate_runtime_minutes(SimulationKind.stress_test, {"max_force": 1000, "force_increment": 100}) == 2
    assert estimate_runtime_minutes(SimulationKind.motion, {"duration": 25}) == 3
    assert estimate_runtime_minutes(SimulationKind.fluid, {}) == 5
