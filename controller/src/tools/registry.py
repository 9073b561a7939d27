"""
Capability name -> collaborator adapter.
"""

from typing import Dict

from controller.src.tools import build, deploy, job, scan
from controller.src.tools.base import Capability


def build_capabilities() -> Dict[str, Capability]:
    return {
        "job": job.run_job,
        "maven.build": build.maven_build,
        "docker.build": build.docker_build,
        "docker.push": build.docker_push,
        "nexus.publish": build.nexus_publish,
        "trivy.scan": scan.trivy_scan,
        "sonar.analyze": scan.sonar_analyze,
        "sonar.gate": scan.sonar_gate,
        "gitops.update": deploy.gitops_update,
        "argocd.sync": deploy.argocd_sync,
        "argocd.wait": deploy.argocd_wait,
        "kube.apply": deploy.kube_apply,
        "kube.rollout": deploy.kube_rollout,
        "kube.pods": deploy.kube_pods,
        "http.check": deploy.http_check,
    }
