"""Tests for the execution engine state machine."""

import asyncio
import threading
import time

import pytest

from controller.src.errors import GateRejected, StepExecutionFailed
from controller.src.models.step import EnvironmentBinding, PipelineRun, RunStatus, StepStatus
from controller.src.services.credentials import CredentialResolver, EnvSecretStore, SecretStore
from controller.src.services.definition_loader import load_definition_dict
from controller.src.services.engine import EngineListener, ExecutionEngine

PROD = EnvironmentBinding(pattern="main", name="prod", namespace="shop-prod", manifest="deployment-prod.yaml")

class Recorder(EngineListener):
    def __init__(self):
        self.transitions = []
        self.results = []

    def on_transition(self, step, status, attempt):
        self.transitions.append((step.name, status, attempt))

    def on_result(self, result):
        self.results.append(result)

    def count(self, name, status):
        return sum(1 for n, s, _ in self.transitions if n == name and s == status)

class CountingResolver(CredentialResolver):
    """Tracks acquire/release pairs."""

    def __init__(self, specs, environ):
        super().__init__(specs, stores={"env": EnvSecretStore(environ)})
        self.acquired = []
        self.released = []

    def acquire(self, name):
        handle = super().acquire(name)
        self.acquired.append(handle)
        return handle

    def release(self, handle):
        self.released.append(handle)
        super().release(handle)

def definition(*steps, credentials=None):
    return load_definition_dict({"credentials": credentials or {}, "steps": list(steps)})

def ok(outputs=None):
    def capability(ctx):
        return dict(outputs or {})
    return capability

def failing(error_factory):
    calls = []

    def capability(ctx):
        calls.append(ctx.attempt)
        raise error_factory()

    capability.calls = calls
    return capability

def run_engine(pipeline, capabilities, branch="main", resolver=None, listeners=(), cancel_event=None):
    run = PipelineRun(run_id="run-1", build_number=7, branch=branch, commit_sha="abc123")
    engine = ExecutionEngine(
        capabilities,
        resolver or CredentialResolver({}),
        listeners=listeners,
        cancel_event=cancel_event,
    )
    return asyncio.run(engine.run(pipeline, run, PROD))

def test_all_steps_succeed():
    pipeline = definition(
        {"name": "Build", "uses": "maven.build"},
        {"name": "Push", "uses": "docker.push"},
    )
    run = run_engine(pipeline, {"maven.build": ok(), "docker.push": ok()})

    assert run.status == RunStatus.SUCCEEDED
    assert [r.status for r in run.results] == [StepStatus.SUCCEEDED, StepStatus.SUCCEEDED]
    assert run.environment == "prod"
    assert run.finished_at is not None

def test_failure_halts_the_run():
    executed = []

    def push(ctx):
        executed.append(ctx.step.name)
        return {}

    pipeline = definition(
        {"name": "Build", "uses": "maven.build"},
        {"name": "Push", "uses": "docker.push"},
    )
    run = run_engine(pipeline, {
        "maven.build": failing(lambda: StepExecutionFailed("compilation error")),
        "docker.push": push,
    })

    assert run.status == RunStatus.FAILED
    assert executed == []
    assert run.results[0].status == StepStatus.FAILED
    assert run.results[1].status == StepStatus.SKIPPED
    assert run.failed_step == "Build"
    assert run.error == "compilation error"

def test_continue_on_failure_makes_run_unstable():
    executed = []

    def push(ctx):
        executed.append(ctx.step.name)
        return {}

    pipeline = definition(
        {"name": "Scan", "uses": "trivy.scan", "continue_on_failure": True},
        {"name": "Push", "uses": "docker.push"},
    )
    run = run_engine(pipeline, {
        "trivy.scan": failing(lambda: StepExecutionFailed("2 HIGH findings", retryable=False)),
        "docker.push": push,
    })

    assert executed == ["Push"]
    assert run.results[0].status == StepStatus.WARNING
    assert run.results[0].error == "2 HIGH findings"
    assert run.status == RunStatus.UNSTABLE
    assert run.failed_step is None

def test_hard_failure_wins_over_warning():
    pipeline = definition(
        {"name": "Scan", "uses": "trivy.scan", "continue_on_failure": True},
        {"name": "Push", "uses": "docker.push"},
    )
    run = run_engine(pipeline, {
        "trivy.scan": failing(lambda: StepExecutionFailed("findings")),
        "docker.push": failing(lambda: StepExecutionFailed("registry down")),
    })
    assert run.status == RunStatus.FAILED
    assert run.failed_step == "Push"

def test_retry_bound_is_respected():
    recorder = Recorder()
    rollout = failing(lambda: StepExecutionFailed("pods not ready"))
    pipeline = definition({"name": "Verify", "uses": "kube.rollout", "retry": {"max_retries": 3, "delay": 0}})

    run = run_engine(pipeline, {"kube.rollout": rollout}, listeners=[recorder])

    assert rollout.calls == [1, 2, 3, 4]
    assert recorder.count("Verify", StepStatus.RUNNING) == 4
    assert recorder.count("Verify", StepStatus.RETRYING) == 3
    assert run.results[0].status == StepStatus.FAILED
    assert run.results[0].attempts == 4
    assert run.status == RunStatus.FAILED

def test_retry_then_success():
    attempts = []

    def flaky(ctx):
        attempts.append(ctx.attempt)
        if ctx.attempt < 3:
            raise StepExecutionFailed("503 from cluster")
        return {"ready": True}

    pipeline = definition({"name": "Verify", "uses": "kube.rollout", "retry": 5})
    run = run_engine(pipeline, {"kube.rollout": flaky})

    assert attempts == [1, 2, 3]
    assert run.results[0].status == StepStatus.SUCCEEDED
    assert run.results[0].attempts == 3
    assert run.status == RunStatus.SUCCEEDED

def test_non_retryable_errors_are_not_retried():
    gate = failing(lambda: GateRejected("quality gate ERROR"))
    pipeline = definition({"name": "Gate", "uses": "sonar.gate", "retry": 3})

    run = run_engine(pipeline, {"sonar.gate": gate})

    assert gate.calls == [1]
    assert run.results[0].error_type == "GateRejected"
    assert run.status == RunStatus.FAILED

def test_unexpected_exception_becomes_execution_failure():
    def broken(ctx):
        raise KeyError("digest")

    pipeline = definition({"name": "Push", "uses": "docker.push"})
    run = run_engine(pipeline, {"docker.push": broken})

    assert run.results[0].status == StepStatus.FAILED
    assert run.results[0].error_type == "StepExecutionFailed"
    assert "KeyError" in run.results[0].error

def test_timeout_fails_the_step():
    def slow(ctx):
        time.sleep(1.5)
        return {}

    pipeline = definition({"name": "Verify", "uses": "kube.rollout", "timeout": 1})
    run = run_engine(pipeline, {"kube.rollout": slow})

    assert run.results[0].status == StepStatus.FAILED
    assert run.results[0].error_type == "StepTimeout"
    assert run.status == RunStatus.FAILED

def test_outputs_flow_to_later_steps():
    seen = {}

    def push(ctx):
        seen.update(ctx.params)
        return {"digest": "sha256:abc"}

    pipeline = definition(
        {"name": "Image", "uses": "docker.build", "outputs": ["image"]},
        {"name": "Push", "uses": "docker.push", "with": {
            "image": "${{ steps.Image.image }}",
            "tag": "${{ target.image_tag }}",
            "namespace": "${{ target.namespace }}",
        }},
    )
    run = run_engine(pipeline, {"docker.build": ok({"image": "shop:7"}), "docker.push": push})

    assert seen == {"image": "shop:7", "tag": "7", "namespace": "shop-prod"}
    assert run.result_for("Push").outputs == {"digest": "sha256:abc"}

def test_missing_declared_output_fails():
    pipeline = definition({"name": "Image", "uses": "docker.build", "outputs": ["image"], "retry": 2})
    run = run_engine(pipeline, {"docker.build": ok({})})

    assert run.results[0].status == StepStatus.FAILED
    assert run.results[0].attempts == 1
    assert "did not produce declared outputs: image" in run.results[0].error

def test_condition_skips_step():
    executed = []

    def deploy(ctx):
        executed.append(ctx.step.name)
        return {}

    pipeline = definition(
        {"name": "Build", "uses": "maven.build"},
        {"name": "Deploy", "uses": "kube.apply", "when": {"branch": "main"}},
        {"name": "Disabled", "uses": "kube.pods", "when": False},
    )
    run = run_engine(pipeline, {"maven.build": ok(), "kube.apply": deploy, "kube.pods": deploy}, branch="develop")

    assert executed == []
    assert [r.status for r in run.results] == [StepStatus.SUCCEEDED, StepStatus.SKIPPED, StepStatus.SKIPPED]
    assert run.status == RunStatus.SUCCEEDED

def test_results_are_recorded_in_order():
    recorder = Recorder()
    pipeline = definition(
        {"name": "A", "uses": "maven.build"},
        {"name": "B", "uses": "docker.build"},
        {"name": "C", "uses": "docker.push"},
    )
    run = run_engine(pipeline, {"maven.build": ok(), "docker.build": ok(), "docker.push": ok()}, listeners=[recorder])

    assert [r.ordinal for r in run.results] == [0, 1, 2]
    assert [r.name for r in recorder.results] == ["A", "B", "C"]

def test_broken_listener_does_not_break_the_run():
    class Broken(EngineListener):
        def on_result(self, result):
            raise RuntimeError("database unavailable")

    pipeline = definition({"name": "Build", "uses": "maven.build"})
    run = run_engine(pipeline, {"maven.build": ok()}, listeners=[Broken()])
    assert run.status == RunStatus.SUCCEEDED

# Credential scoping

CREDENTIALS = {"registry": {"variable": "REGISTRY_TOKEN"}}
ENVIRON = {"REGISTRY_TOKEN": "s3cr3t"}

def test_credential_released_after_success():
    pipeline = definition({"name": "Push", "uses": "docker.push", "credentials": ["registry"]}, credentials=CREDENTIALS)
    resolver = CountingResolver(pipeline.credentials, ENVIRON)
    seen = []

    def push(ctx):
        seen.append(ctx.credential("registry").value)
        return {}

    run_engine(pipeline, {"docker.push": push}, resolver=resolver)

    assert seen == ["s3cr3t"]
    assert len(resolver.acquired) == 1
    assert resolver.released == resolver.acquired
    assert all(handle.released for handle in resolver.acquired)

def test_credential_released_once_per_attempt_on_failure():
    pipeline = definition(
        {"name": "Push", "uses": "docker.push", "credentials": ["registry"], "retry": 2},
        credentials=CREDENTIALS,
    )
    resolver = CountingResolver(pipeline.credentials, ENVIRON)
    run = run_engine(pipeline, {"docker.push": failing(lambda: StepExecutionFailed("denied"))}, resolver=resolver)

    assert run.status == RunStatus.FAILED
    assert len(resolver.acquired) == 3
    assert resolver.released == resolver.acquired

def test_credential_released_on_timeout():
    def slow(ctx):
        time.sleep(1.5)
        return {}

    pipeline = definition(
        {"name": "Push", "uses": "docker.push", "credentials": ["registry"], "timeout": 1},
        credentials=CREDENTIALS,
    )
    resolver = CountingResolver(pipeline.credentials, ENVIRON)
    run = run_engine(pipeline, {"docker.push": slow}, resolver=resolver)

    assert run.results[0].error_type == "StepTimeout"
    assert len(resolver.acquired) == 1
    assert resolver.released == resolver.acquired

def test_missing_credential_fails_without_retry():
    calls = []

    def push(ctx):
        calls.append(ctx.attempt)
        return {}

    pipeline = definition(
        {"name": "Push", "uses": "docker.push", "credentials": ["registry"], "retry": 3},
        credentials=CREDENTIALS,
    )
    resolver = CountingResolver(pipeline.credentials, {})
    run = run_engine(pipeline, {"docker.push": push}, resolver=resolver)

    assert calls == []
    assert run.results[0].attempts == 1
    assert run.results[0].error_type == "CredentialNotFound"
    assert resolver.released == []

# Cancellation

def test_cancel_aborts_running_step_and_releases_credentials():
    pipeline = definition(
        {"name": "Deploy", "uses": "kube.apply", "credentials": ["registry"]},
        {"name": "Verify", "uses": "kube.rollout"},
        credentials=CREDENTIALS,
    )
    events = []

    class OrderedResolver(CountingResolver):
        def release(self, handle):
            events.append("released")
            super().release(handle)

    resolver = OrderedResolver(pipeline.credentials, ENVIRON)
    started = threading.Event()
    verify_calls = []

    def deploy(ctx):
        started.set()
        try:
            ctx.cancel.wait(5)
            if not ctx.cancel.is_set():
                events.append("applied")
            return {}
        finally:
            events.append("stopped")

    def verify(ctx):
        verify_calls.append(ctx.attempt)
        return {}

    async def scenario():
        cancel = asyncio.Event()
        engine = ExecutionEngine({"kube.apply": deploy, "kube.rollout": verify}, resolver, cancel_event=cancel)
        run = PipelineRun(run_id="run-2", build_number=8, branch="main")

        async def cancel_when_started():
            await asyncio.to_thread(started.wait, 5)
            cancel.set()

        canceller = asyncio.create_task(cancel_when_started())
        try:
            return await engine.run(pipeline, run, PROD)
        finally:
            await canceller

    run = asyncio.run(scenario())

    assert run.status == RunStatus.ABORTED
    assert run.results[0].status == StepStatus.ABORTED
    assert run.results[1].status == StepStatus.SKIPPED
    assert verify_calls == []
    # The collaborator saw the interrupt and returned before its credential was released
    assert events == ["stopped", "released"]
    assert len(resolver.acquired) == 1
    assert resolver.released == resolver.acquired

def test_cancel_interrupts_polling_collaborator():
    pipeline = definition({"name": "Verify", "uses": "kube.rollout"})
    polls = []
    side_effects = []

    def rollout(ctx):
        for _ in range(100):
            polls.append(ctx.attempt)
            ctx.sleep(0.05)
        side_effects.append("rolled out")
        return {}

    async def scenario():
        cancel = asyncio.Event()
        engine = ExecutionEngine({"kube.rollout": rollout}, CredentialResolver({}), cancel_event=cancel)
        asyncio.get_running_loop().call_later(0.2, cancel.set)
        started = time.monotonic()
        run = await engine.run(pipeline, PipelineRun(run_id="run-5", branch="main"), PROD)
        return run, time.monotonic() - started

    run, elapsed = asyncio.run(scenario())

    assert run.status == RunStatus.ABORTED
    assert side_effects == []
    assert elapsed < 2
    polls_at_abort = len(polls)
    time.sleep(0.2)
    assert len(polls) == polls_at_abort

def test_timed_out_attempt_finishes_before_retry():
    pipeline = definition({"name": "Verify", "uses": "kube.rollout", "timeout": 1, "retry": 1})
    lock = threading.Lock()
    live = []
    peak = []

    def slow(ctx):
        with lock:
            live.append(ctx.attempt)
            peak.append(len(live))
        try:
            # Ignores the interrupt on purpose
            time.sleep(1.3)
            return {}
        finally:
            with lock:
                live.remove(ctx.attempt)

    run = run_engine(pipeline, {"kube.rollout": slow})

    assert run.results[0].attempts == 2
    assert run.results[0].error_type == "StepTimeout"
    assert max(peak) == 1

def test_timeout_sets_the_interrupt_token():
    pipeline = definition({"name": "Scan", "uses": "trivy.scan", "timeout": 1})
    interrupted = []

    def scan(ctx):
        interrupted.append(ctx.cancel.wait(5))
        return {}

    run = run_engine(pipeline, {"trivy.scan": scan})

    assert run.results[0].error_type == "StepTimeout"
    assert interrupted == [True]

def test_secret_store_crash_fails_the_step():
    class BrokenStore(SecretStore):
        def fetch(self, spec):
            raise ValueError("Invalid isoformat string: 'tomorrow'")

    pipeline = definition(
        {"name": "Build", "uses": "maven.build"},
        {"name": "Deploy", "uses": "kube.apply", "credentials": ["registry"], "retry": 2},
        {"name": "Verify", "uses": "kube.rollout"},
        credentials=CREDENTIALS,
    )
    resolver = CredentialResolver(pipeline.credentials, stores={"env": BrokenStore()})
    deploy = failing(lambda: StepExecutionFailed("should not run"))
    run = run_engine(pipeline, {"maven.build": ok(), "kube.apply": deploy, "kube.rollout": ok()}, resolver=resolver)

    assert [r.status for r in run.results] == [StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.SKIPPED]
    assert run.results[1].error_type == "CredentialError"
    assert "tomorrow" in run.results[1].error
    assert run.results[1].attempts == 1
    assert deploy.calls == []
    assert run.status == RunStatus.FAILED
    assert run.failed_step == "Deploy"

def test_crash_outside_the_collaborator_is_recorded():
    class ExplodingResolver(CredentialResolver):
        def acquire(self, name):
            raise RuntimeError("resolver bug")

    pipeline = definition(
        {"name": "Push", "uses": "docker.push", "credentials": ["registry"]},
        credentials=CREDENTIALS,
    )
    run = run_engine(pipeline, {"docker.push": ok()}, resolver=ExplodingResolver(pipeline.credentials))

    assert run.results[0].status == StepStatus.FAILED
    assert run.results[0].error_type == "StepExecutionFailed"
    assert "RuntimeError" in run.results[0].error
    assert run.failed_step == "Push"

def test_cancel_before_start_skips_everything():
    pipeline = definition({"name": "Build", "uses": "maven.build"})
    build = failing(lambda: StepExecutionFailed("should not run"))

    async def scenario():
        cancel = asyncio.Event()
        cancel.set()
        engine = ExecutionEngine({"maven.build": build}, CredentialResolver({}), cancel_event=cancel)
        return await engine.run(pipeline, PipelineRun(run_id="run-3", branch="main"), PROD)

    run = asyncio.run(scenario())

    assert build.calls == []
    assert run.results[0].status == StepStatus.SKIPPED
    assert run.status == RunStatus.ABORTED

def test_cancel_during_retry_delay():
    pipeline = definition({"name": "Verify", "uses": "kube.rollout", "retry": {"max_retries": 3, "delay": 30}})
    rollout = failing(lambda: StepExecutionFailed("not ready"))

    async def scenario():
        cancel = asyncio.Event()
        engine = ExecutionEngine({"kube.rollout": rollout}, CredentialResolver({}), cancel_event=cancel)
        asyncio.get_running_loop().call_later(0.2, cancel.set)
        return await engine.run(pipeline, PipelineRun(run_id="run-4", branch="main"), PROD)

    run = asyncio.run(scenario())

    assert rollout.calls == [1]
    assert run.results[0].status == StepStatus.ABORTED
    assert run.status == RunStatus.ABORTED

def test_record_rejects_out_of_order_results():
    pipeline = definition({"name": "A", "uses": "maven.build"}, {"name": "B", "uses": "docker.build"})
    run = run_engine(pipeline, {"maven.build": ok(), "docker.build": ok()})
    with pytest.raises(ValueError):
        run.record(run.results[0])
