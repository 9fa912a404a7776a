"""Runs demo scenarios in sequence and collects their results."""

from __future__ import annotations

import time
from collections.abc import Iterable, Sequence

from loguru import logger

from sqlock.demo.scenarios import (
    DemoContext,
    DemoScenario,
    ScenarioResult,
    default_scenarios,
    elapsed_ms,
)


class DemoRunner:
    """Executes scenarios one after another against a single context.

    A scenario that raises is recorded as failed; the remaining scenarios
    still run.
    """

    def __init__(self, ctx: DemoContext, scenarios: Sequence[DemoScenario] | None = None) -> None:
        self._ctx = ctx
        self._scenarios = list(scenarios) if scenarios is not None else default_scenarios()

    @property
    def scenario_names(self) -> list[str]:
        return [s.name for s in self._scenarios]

    def select(
        self,
        names: Iterable[str] | None = None,
        *,
        skip_processes: bool = False,
    ) -> list[DemoScenario]:
        if names:
            wanted = list(dict.fromkeys(names))
            unknown = [n for n in wanted if n not in self.scenario_names]
            if unknown:
                raise ValueError(
                    f"Unknown scenario(s): {', '.join(unknown)}. "
                    f"Available: {', '.join(self.scenario_names)}"
                )
            selected = [s for s in self._scenarios if s.name in wanted]
        else:
            selected = list(self._scenarios)
        if skip_processes:
            selected = [s for s in selected if not s.requires_processes]
        return selected

    async def run(
        self,
        names: Iterable[str] | None = None,
        *,
        skip_processes: bool = False,
    ) -> list[ScenarioResult]:
        results: list[ScenarioResult] = []
        for scenario in self.select(names, skip_processes=skip_processes):
            results.append(await self._run_one(scenario))

        passed = sum(1 for r in results if r.passed)
        logger.info(f"Demo finished: {passed}/{len(results)} scenarios passed")
        return results

    async def _run_one(self, scenario: DemoScenario) -> ScenarioResult:
        logger.info(f"=== Scenario: {scenario.name} ===")
        logger.info(scenario.description)
        start = time.perf_counter()
        try:
            result = await scenario.run(self._ctx)
        except Exception as exc:
            logger.exception(f"Scenario '{scenario.name}' raised")
            result = ScenarioResult(
                name=scenario.name,
                passed=False,
                detail=f"{type(exc).__name__}: {exc}",
                elapsed_ms=elapsed_ms(start),
            )

        if result.passed:
            logger.info(f"Scenario '{result.name}' passed: {result.detail}")
        else:
            logger.warning(f"Scenario '{result.name}' FAILED: {result.detail}")
        return result
