"""
Pipeline definition parser and validator.

Everything that can be checked without running a step is checked here, so a
broken definition is rejected before any side effect happens.
"""

import yaml
from typing import List, Dict, Any, Optional

from controller.src.errors import MalformedDefinition
from controller.src.models.step import (
    CredentialSpec,
    EnvironmentBinding,
    NotificationTarget,
    PipelineDefinition,
    RetryPolicy,
    StepCondition,
    StepDescriptor,
)
from controller.src.services.templating import (
    RUN_FIELDS,
    TARGET_FIELDS,
    references,
)

DEFINITION_FILES = (
    ".conveyor.yml",
    ".conveyor.yaml",
    "conveyor.yml",
    "conveyor.yaml",
)

CAPABILITIES = frozenset({
    "job",
    "maven.build",
    "docker.build",
    "docker.push",
    "trivy.scan",
    "sonar.analyze",
    "sonar.gate",
    "nexus.publish",
    "gitops.update",
    "argocd.sync",
    "argocd.wait",
    "kube.apply",
    "kube.rollout",
    "kube.pods",
    "http.check",
})

CREDENTIAL_SOURCES = ("env", "kubernetes")
NOTIFICATION_CHANNELS = ("email", "slack")


def load_definition(yaml_content: str) -> PipelineDefinition:
    """Parse a pipeline definition from YAML text."""
    try:
        config = yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        raise MalformedDefinition(f"Invalid YAML: {e}")

    return load_definition_dict(config)


def load_definition_dict(config: Optional[Dict[str, Any]]) -> PipelineDefinition:
    """Validate an already-parsed pipeline definition."""
    if not config:
        raise MalformedDefinition("Empty pipeline definition")

    if not isinstance(config, dict):
        raise MalformedDefinition("Pipeline definition must be a mapping")

    name = config.get("name", "Unnamed Pipeline")
    if not isinstance(name, str):
        raise MalformedDefinition("Pipeline 'name' must be a string")

    env = config.get("env") or {}
    if not isinstance(env, dict):
        raise MalformedDefinition("Pipeline 'env' must be a mapping")
    env = {str(k): str(v) for k, v in env.items()}

    credentials = validate_credentials(config.get("credentials") or {})
    environments = [
        validate_environment(binding, i, env)
        for i, binding in enumerate(_as_list(config.get("environments"), "environments"))
    ]
    fallback = None
    if config.get("fallback") is not None:
        if not isinstance(config["fallback"], dict):
            raise MalformedDefinition("Pipeline 'fallback' must be a mapping")
        fallback = validate_environment(dict(config["fallback"], pattern="*"), "fallback", env)
    notifications = [
        validate_notification(target, i)
        for i, target in enumerate(_as_list(config.get("notifications"), "notifications"))
    ]

    if "steps" not in config:
        raise MalformedDefinition("Pipeline must have 'steps' defined")

    steps = config["steps"]
    if not isinstance(steps, list):
        raise MalformedDefinition("Pipeline 'steps' must be a list")

    if len(steps) == 0:
        raise MalformedDefinition("Pipeline must have at least one step")

    validated_steps: List[StepDescriptor] = []
    for i, step in enumerate(steps):
        descriptor = validate_step(step, i)
        check_step_references(descriptor, validated_steps, credentials, env)
        validated_steps.append(descriptor)

    return PipelineDefinition(
        name=name,
        env=env,
        credentials=credentials,
        environments=environments,
        fallback=fallback,
        notifications=notifications,
        steps=validated_steps,
    )


def validate_step(step: Dict[str, Any], index: int) -> StepDescriptor:
    """Validate a single pipeline step."""
    if not isinstance(step, dict):
        raise MalformedDefinition(f"Step {index} must be a mapping")

    if "name" not in step:
        raise MalformedDefinition(f"Step {index} missing 'name'")

    if not isinstance(step["name"], str) or not step["name"].strip():
        raise MalformedDefinition(f"Step {index} 'name' must be a non-empty string")

    name = step["name"]
    image = step.get("image")
    commands = step.get("commands", [])

    if image is not None:
        uses = step.get("uses", "job")
        if uses != "job":
            raise MalformedDefinition(f"Step '{name}' sets 'image' but uses '{uses}'")
        if not isinstance(image, str):
            raise MalformedDefinition(f"Step '{name}' 'image' must be a string")
        if not isinstance(commands, list) or not commands:
            raise MalformedDefinition(f"Step '{name}' 'commands' must be a non-empty list")
        for j, cmd in enumerate(commands):
            if not isinstance(cmd, str):
                raise MalformedDefinition(f"Step '{name}' command {j} must be a string")
    elif "uses" not in step:
        raise MalformedDefinition(f"Step '{name}' needs either 'uses' or 'image' and 'commands'")
    else:
        uses = step["uses"]

    if uses not in CAPABILITIES:
        raise MalformedDefinition(f"Step '{name}' uses unknown capability '{uses}'")

    params = step.get("with") or {}
    if not isinstance(params, dict):
        raise MalformedDefinition(f"Step '{name}' 'with' must be a mapping")

    timeout = step.get("timeout")
    if timeout is not None and (not isinstance(timeout, int) or isinstance(timeout, bool) or timeout <= 0):
        raise MalformedDefinition(f"Step '{name}' 'timeout' must be a positive integer")

    return StepDescriptor(
        name=name,
        ordinal=index,
        uses=uses,
        params=params,
        image=image,
        commands=commands if image is not None else [],
        credentials=_string_list(step.get("credentials"), f"Step '{name}' 'credentials'"),
        outputs=_string_list(step.get("outputs"), f"Step '{name}' 'outputs'"),
        retry=validate_retry(step.get("retry"), name),
        timeout=timeout,
        continue_on_failure=_flag(step.get("continue_on_failure"), False, f"Step '{name}' 'continue_on_failure'"),
        when=validate_condition(step.get("when"), name),
    )


def validate_retry(retry: Any, step_name: str) -> RetryPolicy:
    if retry is None:
        return RetryPolicy()

    if isinstance(retry, bool):
        raise MalformedDefinition(f"Step '{step_name}' 'retry' must be a count or a mapping")

    if isinstance(retry, int):
        retry = {"max_retries": retry}

    if not isinstance(retry, dict):
        raise MalformedDefinition(f"Step '{step_name}' 'retry' must be a count or a mapping")

    max_retries = retry.get("max_retries", 0)
    delay = retry.get("delay", 0)
    backoff = retry.get("backoff", 1)

    if not isinstance(max_retries, int) or isinstance(max_retries, bool) or max_retries < 0:
        raise MalformedDefinition(f"Step '{step_name}' retry 'max_retries' must be >= 0")
    if not _number(delay) or delay < 0:
        raise MalformedDefinition(f"Step '{step_name}' retry 'delay' must be >= 0")
    if not _number(backoff) or backoff < 1:
        raise MalformedDefinition(f"Step '{step_name}' retry 'backoff' must be >= 1")

    return RetryPolicy(max_retries=max_retries, delay=float(delay), backoff=float(backoff))


def validate_condition(when: Any, step_name: str) -> StepCondition:
    if when is None:
        return StepCondition()

    if isinstance(when, bool):
        return StepCondition(enabled=when)

    if not isinstance(when, dict):
        raise MalformedDefinition(f"Step '{step_name}' 'when' must be a boolean or a mapping")

    branches = when.get("branch", [])
    if isinstance(branches, str):
        branches = [branches]

    return StepCondition(
        enabled=_flag(when.get("enabled"), True, f"Step '{step_name}' 'when.enabled'"),
        branches=_string_list(branches, f"Step '{step_name}' 'when.branch'"),
    )


def validate_credentials(credentials: Any) -> Dict[str, CredentialSpec]:
    """Accept either a mapping of name -> spec or a list of specs with names."""
    if isinstance(credentials, dict):
        items = [dict(spec or {}, name=name) for name, spec in credentials.items()]
    elif isinstance(credentials, list):
        items = credentials
    else:
        raise MalformedDefinition("Pipeline 'credentials' must be a mapping or a list")

    validated: Dict[str, CredentialSpec] = {}
    for item in items:
        if not isinstance(item, dict) or not item.get("name"):
            raise MalformedDefinition("Every credential needs a 'name'")

        name = item["name"]
        if name in validated:
            raise MalformedDefinition(f"Credential '{name}' declared twice")

        source = item.get("source", "env")
        if source not in CREDENTIAL_SOURCES:
            raise MalformedDefinition(f"Credential '{name}' has unknown source '{source}'")

        if source == "kubernetes" and not item.get("secret"):
            raise MalformedDefinition(f"Credential '{name}' missing 'secret'")

        if source == "env" and not item.get("variable") and not item.get("fields"):
            raise MalformedDefinition(f"Credential '{name}' needs 'variable' or 'fields'")

        ttl = item.get("ttl")
        if ttl is not None and (not isinstance(ttl, int) or isinstance(ttl, bool) or ttl <= 0):
            raise MalformedDefinition(f"Credential '{name}' 'ttl' must be a positive integer")

        validated[name] = CredentialSpec(
            name=name,
            source=source,
            variable=item.get("variable"),
            fields=item.get("fields") or {},
            secret=item.get("secret"),
            namespace=item.get("namespace"),
            ttl=ttl,
        )

    return validated


def validate_environment(binding: Any, index: Any, env: Dict[str, str]) -> EnvironmentBinding:
    if not isinstance(binding, dict):
        raise MalformedDefinition(f"Environment {index} must be a mapping")

    for field in ("pattern", "namespace"):
        if not binding.get(field):
            raise MalformedDefinition(f"Environment {index} missing '{field}'")

    for ref in references(binding.get("image_tag", "")):
        scope, _, key = ref.partition(".")
        if (
            scope not in ("run", "env")
            or (scope == "run" and key not in RUN_FIELDS)
            or (scope == "env" and key not in env)
        ):
            raise MalformedDefinition(f"Environment {index} 'image_tag' has unknown reference '{ref}'")

    return EnvironmentBinding(
        pattern=str(binding["pattern"]),
        name=str(binding.get("name", binding["namespace"])),
        namespace=str(binding["namespace"]),
        manifest=binding.get("manifest"),
        image_tag=str(binding.get("image_tag", "${{ run.build_number }}")),
    )


def validate_notification(target: Any, index: int) -> NotificationTarget:
    if not isinstance(target, dict):
        raise MalformedDefinition(f"Notification {index} must be a mapping")

    channel = target.get("channel")
    if channel not in NOTIFICATION_CHANNELS:
        raise MalformedDefinition(f"Notification {index} has unknown channel '{channel}'")

    recipients = target.get("recipients", [])
    if isinstance(recipients, str):
        recipients = [recipients]

    return NotificationTarget(
        channel=channel,
        recipients=_string_list(recipients, f"Notification {index} 'recipients'"),
    )


def check_step_references(
    step: StepDescriptor,
    earlier: List[StepDescriptor],
    credentials: Dict[str, CredentialSpec],
    env: Dict[str, str],
):
    """Check a step's credentials and expressions against what is declared."""
    if any(s.name == step.name for s in earlier):
        raise MalformedDefinition(f"Duplicate step name '{step.name}'")

    for credential in step.credentials:
        if credential not in credentials:
            raise MalformedDefinition(
                f"Step '{step.name}' references undeclared credential '{credential}'"
            )

    outputs = {s.name: set(s.outputs) for s in earlier}
    for ref in references(step.params):
        scope, _, key = ref.partition(".")

        if scope == "steps":
            source, _, output = key.partition(".")
            if source not in outputs:
                raise MalformedDefinition(
                    f"Step '{step.name}' references unknown or later step '{source}'"
                )
            if output not in outputs[source]:
                raise MalformedDefinition(
                    f"Step '{step.name}' references undeclared output '{output}' of '{source}'"
                )
        elif scope == "target":
            if key not in TARGET_FIELDS:
                raise MalformedDefinition(f"Step '{step.name}' references unknown target field '{key}'")
        elif scope == "run":
            if key not in RUN_FIELDS:
                raise MalformedDefinition(f"Step '{step.name}' references unknown run field '{key}'")
        elif scope == "env":
            if key not in env:
                raise MalformedDefinition(f"Step '{step.name}' references undefined variable '{key}'")
        else:
            raise MalformedDefinition(f"Step '{step.name}' has unknown reference '{ref}'")


def _as_list(value: Any, field: str) -> list:
    if value is None:
        return []
    if not isinstance(value, list):
        raise MalformedDefinition(f"Pipeline '{field}' must be a list")
    return value


def _string_list(value: Any, field: str) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise MalformedDefinition(f"{field} must be a list of strings")
    return list(value)


def _flag(value: Any, default: bool, field: str) -> bool:
    """YAML booleans only; a quoted "false" is a mistake, not a truthy string."""
    if value is None:
        return default
    if not isinstance(value, bool):
        raise MalformedDefinition(f"{field} must be true or false")
    return value


def _number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)
