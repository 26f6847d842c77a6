"""
Pipeline orchestrator for turn processing.

TurnPipeline executes stages sequentially with timing and error handling.
A stage may set ``context.rewind_to`` to jump back to an earlier stage;
this is how a trigger_next_turn request loops Dispatching back into
Completing. ``max_stage_runs`` bounds the total number of stage runs as a
guard against a stage that rewinds forever.
"""

import time
from typing import List, Optional

import structlog

from src.domain.models.session import ConversationState
from .base import TurnStage
from .context import TurnContext
from .result import TurnResult

log = structlog.get_logger(__name__)


class TurnPipeline:
    """
    Orchestrates execution of pipeline stages.

    Executes stages sequentially, tracking timing and handling errors.
    """

    def __init__(self, stages: List[TurnStage], max_stage_runs: Optional[int] = None):
        """
        Initialize pipeline with a list of stages.

        Args:
            stages: Ordered list of TurnStage instances
            max_stage_runs: Upper bound on stage executions per turn
        """
        self.stages = stages
        self.max_stage_runs = max_stage_runs or len(stages) * 10
        self.logger = log

    def _index_of(self, stage_name: str) -> int:
        for i, stage in enumerate(self.stages):
            if stage.stage_name == stage_name:
                return i
        raise ValueError(f"No stage named {stage_name}")

    async def execute(self, context: TurnContext) -> TurnResult:
        """
        Execute stages until the last one completes.

        Raises:
            Exception: If any stage fails (the engine decides how to recover)
        """
        start_time = time.perf_counter()

        self.logger.info(
            "pipeline_started",
            ref_code=context.ref_code,
            interaction=context.interaction.type,
            num_stages=len(self.stages),
        )

        index = 0
        runs = 0
        while index < len(self.stages):
            stage = self.stages[index]
            runs += 1
            if runs > self.max_stage_runs:
                raise RuntimeError(f"Turn exceeded {self.max_stage_runs} stage runs")

            if not stage.applies(context):
                index += 1
                continue

            context.session.state = stage.state
            stage_start = time.perf_counter()
            try:
                self.logger.debug("stage_started", stage_name=stage.stage_name)

                context = await stage.process(context)

                stage_elapsed = (time.perf_counter() - stage_start) * 1000
                context.stage_timings[stage.stage_name] = (
                    context.stage_timings.get(stage.stage_name, 0.0) + stage_elapsed
                )
                self.logger.debug(
                    "stage_completed",
                    stage_name=stage.stage_name,
                    duration_ms=stage_elapsed,
                )
            except Exception as e:
                self.logger.error(
                    "stage_failed",
                    stage_name=stage.stage_name,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                raise

            if context.rewind_to:
                index = self._index_of(context.rewind_to)
                context.rewind_to = None
            else:
                index += 1

        context.session.state = ConversationState.IDLE
        latency_ms = int((time.perf_counter() - start_time) * 1000)

        new_items = context.thread.items_since(context.thread_start)
        self.logger.info(
            "pipeline_completed",
            ref_code=context.ref_code,
            new_items=len(new_items),
            completion_rounds=context.completion_rounds,
            latency_ms=latency_ms,
            stage_timings=context.stage_timings,
        )

        return TurnResult(
            ref_code=context.ref_code,
            new_items=new_items,
            state=context.session.state,
            completion_rounds=context.completion_rounds,
            latency_ms=latency_ms,
            stage_timings=context.stage_timings,
            error=type(context.flagged).__name__ if context.flagged else None,
        )
