"""Post-commit chain hooks.

After a raw-capture collector commits new rows, its downstream stages run immediately
instead of waiting for their own schedule slot. Each stage is isolated: a failure is logged
as CHAIN_ERROR and the next stage still runs. Nothing here raises to the trigger.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from prometheus_client import Counter

from performance_monitor.collection.run_log import RunStatus, record_run_isolated

CHAIN_RUNS = Counter('chain_stage_runs_total', 'Chain-triggered stage invocations', ['trigger', 'stage'])
CHAIN_FAILURES = Counter('chain_stage_failures_total', 'Chain-triggered stage failures', ['trigger', 'stage'])

logger = logging.getLogger(__name__)

ATTRIBUTE_TO_TRIGGER = "trigger"
ATTRIBUTE_TO_STAGE = "stage"


@dataclass
class ChainOutcome:
    stage: str
    ok: bool
    error: str | None = None
    result: Any = None


class ChainTrigger:
    def __init__(
        self,
        trigger_name: str,
        stages: Sequence[str],
        runner: Callable[[str, bool], Any],
        attribution: str = ATTRIBUTE_TO_TRIGGER,
        session_factory=None,
    ):
        self.trigger_name = trigger_name
        self.stages = tuple(stages)
        self.runner = runner
        self.attribution = attribution
        self.session_factory = session_factory

    def fire(self, debug: bool = False) -> list[ChainOutcome]:
        outcomes: list[ChainOutcome] = []
        for stage in self.stages:
            CHAIN_RUNS.labels(self.trigger_name, stage).inc()
            try:
                result = self.runner(stage, debug)
            except Exception as exc:
                CHAIN_FAILURES.labels(self.trigger_name, stage).inc()
                message = f"Chain-triggered {stage} failed: {exc}"
                logger.warning(f"{self.trigger_name}: {message}")
                owner = stage if self.attribution == ATTRIBUTE_TO_STAGE else self.trigger_name
                try:
                    record_run_isolated(owner, RunStatus.CHAIN_ERROR, error_message=message,
                                        session_factory=self.session_factory)
                except Exception:
                    logger.exception(f"Could not record CHAIN_ERROR for {owner}")
                outcomes.append(ChainOutcome(stage, False, str(exc)))
                continue
            if debug:
                logger.info(f"{self.trigger_name}: chain-triggered {stage} completed")
            outcomes.append(ChainOutcome(stage, True, result=result))
        return outcomes
