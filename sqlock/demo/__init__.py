"""Self-checking demo scenarios for the distributed lock."""

from sqlock.demo.runner import DemoRunner
from sqlock.demo.scenarios import (
    CancellationScenario,
    DemoContext,
    DemoScenario,
    HappyPathScenario,
    InterProcessScenario,
    MutualExclusionScenario,
    ScenarioResult,
    TimeoutScenario,
    default_scenarios,
    memory_probe,
    postgres_probe,
)

__all__ = [
    "CancellationScenario",
    "DemoContext",
    "DemoRunner",
    "DemoScenario",
    "HappyPathScenario",
    "InterProcessScenario",
    "MutualExclusionScenario",
    "ScenarioResult",
    "TimeoutScenario",
    "default_scenarios",
    "memory_probe",
    "postgres_probe",
]
