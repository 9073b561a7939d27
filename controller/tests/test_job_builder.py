"""Tests for Kubernetes Job construction."""

from types import SimpleNamespace

from controller.src.k8s.job_builder import build_job, build_job_name, env_var_name, get_job_status

RUN_ID = "2b7c0d3e-0000-4000-8000-000000000001"

def test_job_name_is_a_valid_k8s_name():
    name = build_job_name(RUN_ID, 3, "Unit Tests_(JDK 21) with a very long name", attempt=2)

    assert name.startswith("cv-")
    assert len(name) <= 63
    assert name == name.lower()
    assert all(c.isalnum() or c == "-" for c in name)
    assert "-3-2-" in name

def test_job_name_differs_per_attempt():
    assert build_job_name(RUN_ID, 0, "build", 1) != build_job_name(RUN_ID, 0, "build", 2)

def test_env_var_name():
    assert env_var_name("harbor-creds", "username") == "HARBOR_CREDS_USERNAME"
    assert env_var_name("token", "value") == "TOKEN_VALUE"

def test_build_job():
    job = build_job(
        run_id=RUN_ID,
        step_order=1,
        step_name="Unit tests",
        image="maven:3.9",
        commands=["mvn -B test", "mvn -B verify"],
        env_vars={"REGISTRY_VALUE": "s3cr3t"},
        timeout=900,
        attempt=2,
        namespace="ci",
    )

    assert job.metadata.namespace == "ci"
    assert job.metadata.labels["app"] == "conveyor"
    assert job.spec.backoff_limit == 0
    assert job.spec.active_deadline_seconds == 900

    container = job.spec.template.spec.containers[0]
    assert container.image == "maven:3.9"
    assert container.args == ["mvn -B test && mvn -B verify"]
    env = {e.name: e.value for e in container.env}
    assert env["CONVEYOR_RUN_ID"] == RUN_ID
    assert env["CONVEYOR_STEP_NAME"] == "Unit tests"
    assert env["REGISTRY_VALUE"] == "s3cr3t"

def test_job_status():
    def job(**status):
        fields = {"succeeded": None, "failed": None, "active": None}
        fields.update(status)
        return SimpleNamespace(status=SimpleNamespace(**fields))

    assert get_job_status(SimpleNamespace(status=None)) == "pending"
    assert get_job_status(job(active=1)) == "running"
    assert get_job_status(job(succeeded=1)) == "succeeded"
    assert get_job_status(job(failed=1)) == "failed"
    assert get_job_status(job()) == "pending"
