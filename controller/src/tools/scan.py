"""
Vulnerability scanning (Trivy) and static analysis (SonarQube).
"""

import json
import logging
import os
import time
from typing import Any, Dict

import httpx

from controller.src.config import get_settings
from controller.src.errors import GateRejected, StepExecutionFailed, StepTimeout
from controller.src.tools.base import StepContext
from controller.src.tools.process import run_command

logger = logging.getLogger(__name__)
settings = get_settings()

SEVERITIES = ("UNKNOWN", "LOW", "MEDIUM", "HIGH", "CRITICAL")


def summarize_findings(report: Dict[str, Any]) -> Dict[str, int]:
    """Count Trivy findings by severity."""
    counts = {severity: 0 for severity in SEVERITIES}
    for result in report.get("Results") or []:
        for vulnerability in result.get("Vulnerabilities") or []:
            severity = vulnerability.get("Severity", "UNKNOWN").upper()
            counts[severity if severity in counts else "UNKNOWN"] += 1
    return counts


def findings_at_or_above(findings: Dict[str, int], threshold: str) -> int:
    floor = SEVERITIES.index(threshold.upper())
    return sum(count for severity, count in findings.items() if SEVERITIES.index(severity) >= floor)


def trivy_scan(ctx: StepContext) -> Dict[str, Any]:
    """
    scan(target) -> {report, findings}

    With ``blocking: false`` the scan only reports; otherwise findings at or
    above ``fail_on`` fail the step.
    """
    target = ctx.param("target")
    mode = ctx.param("mode", "image")
    threshold = ctx.param("fail_on", "HIGH").upper()
    blocking = ctx.param("blocking", True)

    if threshold not in SEVERITIES:
        raise StepExecutionFailed(f"Unknown severity '{threshold}'", retryable=False)

    report_path = os.path.join(ctx.workspace or ".", f"trivy-{ctx.step.ordinal}.json")
    run_command(
        [settings.trivy_bin, mode, "--format", "json", "--output", report_path, "--quiet", target],
        timeout=ctx.remaining(),
        secrets=ctx.secrets(),
        cancel=ctx.cancel,
    )

    with open(report_path) as f:
        findings = summarize_findings(json.load(f))

    logger.info(f"Trivy findings for {target}: {findings}")

    over = findings_at_or_above(findings, threshold)
    if blocking and over:
        raise StepExecutionFailed(
            f"{over} vulnerabilities at or above {threshold} in {target}", retryable=False
        )

    return {"report": report_path, "findings": findings}


def read_report_task(path: str) -> Dict[str, str]:
    """Parse the scanner's report-task.txt (key=value lines)."""
    values = {}
    with open(path) as f:
        for line in f:
            key, sep, value = line.strip().partition("=")
            if sep:
                values[key] = value
    return values


def sonar_analyze(ctx: StepContext) -> Dict[str, Any]:
    """analyze(project) -> reportRef"""
    project = ctx.param("project_key")
    host = ctx.param("host_url", settings.sonar_host_url)
    token = ctx.credential(ctx.param("credential", None)).value
    base_dir = ctx.workspace or "."

    run_command(
        [
            settings.sonar_scanner_bin,
            f"-Dsonar.projectKey={project}",
            f"-Dsonar.host.url={host}",
            f"-Dsonar.token={token}",
            *ctx.param("args", []),
        ],
        cwd=base_dir,
        timeout=ctx.remaining(),
        secrets=ctx.secrets(),
        cancel=ctx.cancel,
    )

    task = read_report_task(os.path.join(base_dir, ctx.param("report_task", ".scannerwork/report-task.txt")))
    if "ceTaskId" not in task:
        raise StepExecutionFailed("Scanner did not report a background task id", retryable=False)

    return {"report_ref": task["ceTaskId"], "dashboard_url": task.get("dashboardUrl")}


def sonar_gate(ctx: StepContext) -> Dict[str, Any]:
    """waitForGate(reportRef, timeout) -> pass|fail"""
    task_id = ctx.param("report_ref")
    host = ctx.param("host_url", settings.sonar_host_url).rstrip("/")
    wait = float(ctx.param("wait", 300))
    poll = float(ctx.param("poll_interval", 5))
    token = ctx.credential(ctx.param("credential", None)).value

    deadline = time.monotonic() + min(wait, ctx.remaining())

    with httpx.Client(base_url=host, auth=(token, ""), timeout=30.0) as client:
        while True:
            task = client.get("/api/ce/task", params={"id": task_id})
            task.raise_for_status()
            status = task.json()["task"]["status"]

            if status == "SUCCESS":
                analysis_id = task.json()["task"]["analysisId"]
                break
            if status in ("FAILED", "CANCELED"):
                raise StepExecutionFailed(f"Analysis task {task_id} ended {status}")
            if time.monotonic() >= deadline:
                raise StepTimeout(f"Quality gate not computed within {wait:.0f}s")
            ctx.sleep(poll)

        gate = client.get("/api/qualitygates/project_status", params={"analysisId": analysis_id})
        gate.raise_for_status()
        gate_status = gate.json()["projectStatus"]["status"]

    if gate_status == "ERROR":
        raise GateRejected(f"Quality gate failed for analysis {analysis_id}")

    logger.info(f"Quality gate passed ({gate_status})")
    return {"gate": gate_status}
