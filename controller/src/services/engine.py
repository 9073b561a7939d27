"""
Execution engine - runs a pipeline definition step by step.

Per step state machine:

    pending -> running -> succeeded
                       -> failed -> retrying -> running   (while retries remain)
                       -> failed -> succeeded_with_warning (continue_on_failure)
                       -> aborted                          (run cancelled)
    pending -> skipped   (condition not met, or the run already halted)

Steps run strictly in declared order. The only state the engine owns is the
run's result log. A step that times out or is cancelled is interrupted through
its StepContext and awaited before its credentials are released or it is
retried.
"""

import asyncio
import logging
import time
from contextlib import ExitStack
from datetime import datetime
from typing import Any, Dict, Iterable, Mapping, Optional

from controller.src.errors import (
    CredentialError,
    StepAborted,
    StepError,
    StepExecutionFailed,
    StepTimeout,
)
from controller.src.models.step import (
    EnvironmentBinding,
    PipelineDefinition,
    PipelineRun,
    RunStatus,
    StepDescriptor,
    StepResult,
    StepStatus,
)
from controller.src.services.credentials import CredentialResolver
from controller.src.services.templating import UnresolvedReference, build_context, render
from controller.src.tools.base import Capability, StepContext

logger = logging.getLogger(__name__)


class EngineListener:
    """Receives step transitions and results as they happen."""

    def on_transition(self, step: StepDescriptor, status: StepStatus, attempt: int):
        pass

    def on_result(self, result: StepResult):
        pass


class ExecutionEngine:
    def __init__(
        self,
        capabilities: Mapping[str, Capability],
        credentials: CredentialResolver,
        listeners: Iterable[EngineListener] = (),
        cancel_event: Optional[asyncio.Event] = None,
        default_timeout: int = 600,
        stop_grace: float = 30.0,
    ):
        self._capabilities = dict(capabilities)
        self._credentials = credentials
        self._listeners = list(listeners)
        self._cancel = cancel_event
        self._default_timeout = default_timeout
        self._stop_grace = stop_grace

    async def run(
        self,
        definition: PipelineDefinition,
        run: PipelineRun,
        binding: EnvironmentBinding,
        workspace: Optional[str] = None,
    ) -> PipelineRun:
        """Execute every step of ``definition`` and finalize ``run``."""
        run.status = RunStatus.RUNNING
        run.environment = binding.name

        run_scope = {
            "run_id": run.run_id,
            "build_number": run.build_number,
            "branch": run.branch,
            "commit_sha": run.commit_sha,
        }
        target = binding.model_dump()
        target["image_tag"] = str(render(binding.image_tag, {"run": run_scope, "env": definition.env}))

        outputs: Dict[str, Dict[str, Any]] = {}
        halted_by: Optional[str] = None
        aborted = False

        logger.info(
            f"Run {run.run_id} (#{run.build_number}) on {run.branch} -> {binding.name}: "
            f"{len(definition.steps)} steps"
        )

        for step in definition.steps:
            if not aborted and self._cancelled():
                logger.warning(f"Run {run.run_id} cancelled before step '{step.name}'")
                aborted = True

            if aborted:
                self._skip(run, step, "run cancelled")
                continue

            if halted_by is not None:
                self._skip(run, step, f"halted after '{halted_by}' failed")
                continue

            if not step.when.matches(run.branch):
                self._skip(run, step, "condition not met")
                continue

            context = build_context(run_scope, definition.env, target, outputs)
            result = await self._execute(step, run, context, target, workspace)
            self._record(run, result)

            if result.ok:
                outputs[step.name] = result.outputs
            elif result.status == StepStatus.ABORTED:
                aborted = True
            else:
                halted_by = step.name

        status = run.finalize(aborted=aborted)
        logger.info(f"Run {run.run_id} finished with status: {status.value}")
        return run

    async def _execute(
        self,
        step: StepDescriptor,
        run: PipelineRun,
        context: Dict[str, Mapping[str, Any]],
        target: Dict[str, Any],
        workspace: Optional[str],
    ) -> StepResult:
        started_at = datetime.utcnow()
        clock = time.monotonic()
        self._transition(step, StepStatus.PENDING, 0)

        def make_result(status: StepStatus, attempts: int, outputs=None, error=None) -> StepResult:
            return StepResult(
                name=step.name,
                ordinal=step.ordinal,
                status=status,
                outputs=outputs or {},
                attempts=attempts,
                duration=time.monotonic() - clock,
                started_at=started_at,
                finished_at=datetime.utcnow(),
                error=str(error) if error is not None else None,
                error_type=type(error).__name__ if error is not None else None,
                logs=getattr(error, "output", None) or (outputs or {}).get("logs"),
            )

        try:
            params = render(step.params, context)
        except UnresolvedReference as e:
            error = StepExecutionFailed(f"Step '{step.name}' input not satisfied: {e}", retryable=False)
            logger.error(str(error))
            self._transition(step, StepStatus.FAILED, 0)
            return self._settle(step, make_result, 0, error)

        attempt = 0
        while True:
            attempt += 1
            self._transition(step, StepStatus.RUNNING, attempt)
            logger.info(f"Executing step {step.ordinal}: {step.name} (attempt {attempt})")

            try:
                produced = await self._attempt(step, run, params, target, workspace, attempt)
                outputs = self._collect_outputs(step, produced)
            except (StepError, CredentialError) as e:
                error = e
            except Exception as e:
                logger.exception(f"Step {step.ordinal} ({step.name}) attempt {attempt} crashed")
                error = StepExecutionFailed(f"{type(e).__name__}: {e}", retryable=False)
            else:
                self._transition(step, StepStatus.SUCCEEDED, attempt)
                logger.info(f"Step {step.ordinal} ({step.name}) succeeded")
                return make_result(StepStatus.SUCCEEDED, attempt, outputs=outputs)

            if isinstance(error, StepAborted):
                self._transition(step, StepStatus.ABORTED, attempt)
                logger.warning(f"Step {step.ordinal} ({step.name}) aborted")
                return make_result(StepStatus.ABORTED, attempt, error=error)

            self._transition(step, StepStatus.FAILED, attempt)
            logger.error(f"Step {step.ordinal} ({step.name}) failed: {error}")

            if getattr(error, "retryable", False) and attempt <= step.retry.max_retries:
                delay = step.retry.delay_for(attempt)
                self._transition(step, StepStatus.RETRYING, attempt)
                logger.info(f"Retrying step {step.name} in {delay:.1f}s ({attempt}/{step.retry.max_retries})")
                if await self._sleep_or_cancel(delay):
                    aborted = StepAborted(f"Step '{step.name}' aborted while waiting to retry")
                    self._transition(step, StepStatus.ABORTED, attempt)
                    return make_result(StepStatus.ABORTED, attempt, error=aborted)
                continue

            return self._settle(step, make_result, attempt, error)

    def _settle(self, step: StepDescriptor, make_result, attempts: int, error: Exception) -> StepResult:
        """Terminal failure: a warning for non-blocking steps, otherwise failed."""
        if step.continue_on_failure:
            self._transition(step, StepStatus.WARNING, attempts)
            logger.warning(f"Step {step.name} failed but is non-blocking, continuing")
            return make_result(StepStatus.WARNING, attempts, error=error)
        return make_result(StepStatus.FAILED, attempts, error=error)

    async def _attempt(
        self,
        step: StepDescriptor,
        run: PipelineRun,
        params: Dict[str, Any],
        target: Dict[str, Any],
        workspace: Optional[str],
        attempt: int,
    ) -> Dict[str, Any]:
        capability = self._capabilities.get(step.uses)
        if capability is None:
            raise StepExecutionFailed(f"No collaborator registered for '{step.uses}'", retryable=False)

        timeout = step.timeout or self._default_timeout

        with ExitStack() as scope:
            handles = {
                name: scope.enter_context(self._credentials.scoped(name))
                for name in step.credentials
            }
            context = StepContext(
                run_id=run.run_id,
                build_number=run.build_number,
                step=step,
                params=params,
                timeout=timeout,
                target=target,
                credentials=handles,
                workspace=workspace,
                attempt=attempt,
            )
            # Credentials are released only after the collaborator has returned
            return await self._call(capability, context, step, timeout)

    async def _call(
        self, capability: Capability, context: StepContext, step: StepDescriptor, timeout: int
    ) -> Dict[str, Any]:
        work = asyncio.ensure_future(asyncio.to_thread(capability, context))
        waiters = {work}
        cancel_wait = None
        if self._cancel is not None:
            cancel_wait = asyncio.ensure_future(self._cancel.wait())
            waiters.add(cancel_wait)

        try:
            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if cancel_wait is not None:
                cancel_wait.cancel()

        if work not in done:
            context.cancel.set()
            await self._stop(work, step)
            if self._cancelled():
                raise StepAborted(f"Step '{step.name}' aborted")
            raise StepTimeout(f"Step '{step.name}' timed out after {timeout}s")

        try:
            return work.result()
        except (StepError, CredentialError):
            raise
        except Exception as e:
            raise StepExecutionFailed(f"{type(e).__name__}: {e}")

    async def _stop(self, work: asyncio.Future, step: StepDescriptor):
        """Wait for an interrupted collaborator to return so attempts never overlap."""
        done, _ = await asyncio.wait({work}, timeout=self._stop_grace)
        if not done:
            logger.error(
                f"Step '{step.name}' did not stop within {self._stop_grace:.0f}s of being interrupted"
            )
            return
        if not work.cancelled() and work.exception() is not None:
            logger.info(f"Step '{step.name}' stopped: {work.exception()}")

    def _collect_outputs(self, step: StepDescriptor, produced: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        produced = produced or {}
        missing = [name for name in step.outputs if name not in produced]
        if missing:
            raise StepExecutionFailed(
                f"Step '{step.name}' did not produce declared outputs: {', '.join(missing)}",
                retryable=False,
            )
        return dict(produced)

    async def _sleep_or_cancel(self, delay: float) -> bool:
        """Sleep for ``delay`` seconds; True if the run was cancelled meanwhile."""
        if self._cancel is None:
            await asyncio.sleep(delay)
            return False
        try:
            await asyncio.wait_for(self._cancel.wait(), delay)
            return True
        except asyncio.TimeoutError:
            return False

    def _cancelled(self) -> bool:
        return self._cancel is not None and self._cancel.is_set()

    def _skip(self, run: PipelineRun, step: StepDescriptor, reason: str):
        logger.info(f"Skipping step {step.ordinal} ({step.name}): {reason}")
        self._transition(step, StepStatus.SKIPPED, 0)
        self._record(run, StepResult(name=step.name, ordinal=step.ordinal, status=StepStatus.SKIPPED))

    def _record(self, run: PipelineRun, result: StepResult):
        run.record(result)
        for listener in self._listeners:
            try:
                listener.on_result(result)
            except Exception:
                logger.exception(f"Listener failed to record result of {result.name}")

    def _transition(self, step: StepDescriptor, status: StepStatus, attempt: int):
        for listener in self._listeners:
            try:
                listener.on_transition(step, status, attempt)
            except Exception:
                logger.exception(f"Listener failed on {step.name} -> {status.value}")
