"""
Provisioning pipeline — the central run loop.

Flow per step, in topological order:
    idempotency check → skip | apply → merge exports forward

The first ``ProvisionError`` is recorded on a failed ``StepResult``
and aborts the run: later steps never execute and nothing is rolled
back. A re-run resumes by itself, because completed steps pass their
live-system checks and are skipped.

A pipeline instance is single-use:
    not_started → running → completed | aborted
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence

from nodeprov.core.context import BuildContext
from nodeprov.core.engine.dag import topological_order, validate_graph
from nodeprov.core.engine.executors import NodeServices, StepEnv, apply_step, is_satisfied
from nodeprov.core.errors import ProvisionError
from nodeprov.core.models.step import PipelineResult, PipelineState, Step, StepResult
from nodeprov.core.reliability.retry import NO_RETRY, RetryPolicy

logger = logging.getLogger(__name__)


class PipelineStateError(RuntimeError):
    """The pipeline was used outside its lifecycle (e.g. run twice)."""


class ProvisioningPipeline:
    """Runs a validated step graph against the node once."""

    def __init__(
        self,
        steps: Sequence[Step],
        context: BuildContext,
        services: NodeServices,
        *,
        retry: RetryPolicy = NO_RETRY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        validate_graph(steps, initial_outputs=context.outputs)
        self.steps: list[Step] = topological_order(steps)
        self.context = context
        self.services = services
        self.retry = retry
        self._sleep = sleep
        self.state = PipelineState.NOT_STARTED
        self.result: PipelineResult | None = None
        self.error: ProvisionError | None = None

    @property
    def order(self) -> list[str]:
        return [s.name for s in self.steps]

    def run(self) -> PipelineResult:
        if self.state is not PipelineState.NOT_STARTED:
            raise PipelineStateError(f"pipeline already {self.state.value}; create a new one")
        self.state = PipelineState.RUNNING

        ctx = self.context
        changed_paths: set[str] = set()
        reloaded_paths: set[str] = set()
        results: list[StepResult] = []
        logger.info("Provisioning %d steps: %s", len(self.steps), " → ".join(self.order))

        try:
            for step in self.steps:
                env = StepEnv(
                    context=ctx,
                    node=self.services,
                    retry=self.retry,
                    changed_paths=changed_paths,
                    reloaded_paths=reloaded_paths,
                    sleep=self._sleep,
                )
                result = self._run_step(step, env)
                results.append(result)

                if result.failed:
                    self.state = PipelineState.ABORTED
                    self.result = self._aborted(results, step)
                    logger.error("aborted: %s", result.error, extra={"step": step.name})
                    return self.result

                ctx = ctx.with_outputs(step.exports)
        except BaseException:
            self.state = PipelineState.ABORTED
            raise

        self.context = ctx
        self.state = PipelineState.COMPLETED
        self.result = PipelineResult(status="completed", steps=results)
        logger.info(self.result.diagnostic())
        return self.result

    def _run_step(self, step: Step, env: StepEnv) -> StepResult:
        start = time.monotonic()

        def elapsed() -> int:
            return int((time.monotonic() - start) * 1000)

        try:
            if is_satisfied(step, env):
                logger.info("skipped (%s)", step.idempotency_key, extra={"step": step.name})
                return StepResult.skip(step.name, step.idempotency_key, duration_ms=elapsed())

            logger.info(
                "applying: %s", step.description or step.idempotency_key, extra={"step": step.name},
            )
            outcome = apply_step(step, env)
        except ProvisionError as e:
            if e.step is None:
                e.step = step.name
            self.error = e
            return StepResult.failure(
                step.name, e.kind, e.message, duration_ms=elapsed(),
            )

        logger.info("applied: %s", outcome.detail, extra={"step": step.name})
        return StepResult.success(
            step.name,
            outcome.detail,
            changed=outcome.changed,
            restarted=outcome.restarted,
            duration_ms=elapsed(),
        )

    def _aborted(self, results: list[StepResult], step: Step) -> PipelineResult:
        failed = results[-1]
        exit_code = self.error.exit_code if self.error else ProvisionError.exit_code
        return PipelineResult(
            status="aborted",
            steps=results,
            failed_step=step.name,
            error_kind=failed.error_kind,
            error=failed.error,
            exit_code=exit_code,
        )

