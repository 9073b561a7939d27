"""
Credential resolution.

Secrets are materialized only for the duration of one step attempt. A handle
never shows its values in repr/str/logs and refuses to hand them out once it
is released or past its TTL.
"""

import base64
import logging
import os
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Mapping, Optional, Tuple

from kubernetes.client.rest import ApiException

from controller.src.errors import CredentialError, CredentialExpired, CredentialNotFound
from controller.src.models.step import CredentialSpec

logger = logging.getLogger(__name__)

EXPIRES_AT_ANNOTATION = "conveyor.io/expires-at"


class CredentialHandle:
    """Opaque reference to a materialized secret."""

    def __init__(self, name: str, values: Dict[str, str], deadline: Optional[float] = None):
        self.name = name
        self._values = dict(values)
        self._deadline = deadline
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    @property
    def expired(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    def get(self, key: str = "value") -> str:
        if self._released:
            raise CredentialExpired(f"Credential '{self.name}' was already released")
        if self.expired:
            raise CredentialExpired(f"Credential '{self.name}' has expired")
        if key not in self._values:
            raise CredentialNotFound(f"Credential '{self.name}' has no field '{key}'")
        return self._values[key]

    @property
    def value(self) -> str:
        """The secret itself for single-valued credentials."""
        if "value" in self._values or len(self._values) != 1:
            return self.get("value")
        return self.get(next(iter(self._values)))

    def fields(self) -> List[str]:
        return list(self._values)

    def secrets(self) -> List[str]:
        """Values to mask in collaborator output."""
        return [] if self._released else [v for v in self._values.values() if v]

    def _wipe(self):
        self._values.clear()
        self._released = True

    def __repr__(self) -> str:
        state = "released" if self._released else "live"
        return f"<CredentialHandle {self.name} ({state})>"

    __str__ = __repr__


class SecretStore(ABC):
    """Source of secret values for one credential source type."""

    @abstractmethod
    def fetch(self, spec: CredentialSpec) -> Tuple[Dict[str, str], Optional[datetime]]:
        """Return the secret values and, when known, their expiry time."""
        pass


class EnvSecretStore(SecretStore):
    """Secrets held in environment variables."""

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self._environ = environ if environ is not None else os.environ

    def fetch(self, spec: CredentialSpec) -> Tuple[Dict[str, str], Optional[datetime]]:
        variables = dict(spec.fields) if spec.fields else {"value": spec.variable}

        values = {}
        for field, variable in variables.items():
            if variable not in self._environ:
                raise CredentialNotFound(
                    f"Credential '{spec.name}': environment variable {variable} is not set"
                )
            values[field] = self._environ[variable]

        return values, None


class KubernetesSecretStore(SecretStore):
    """Secrets held in Kubernetes Secret objects."""

    def __init__(self, core_api=None, namespace: Optional[str] = None):
        self._core_api = core_api
        self._namespace = namespace

    def _api(self):
        if self._core_api is None:
            from controller.src.k8s.client import get_core_api
            self._core_api = get_core_api()
        return self._core_api

    def fetch(self, spec: CredentialSpec) -> Tuple[Dict[str, str], Optional[datetime]]:
        namespace = spec.namespace or self._namespace
        if namespace is None:
            from controller.src.config import get_settings
            namespace = get_settings().k8s_namespace

        try:
            secret = self._api().read_namespaced_secret(name=spec.secret, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                raise CredentialNotFound(
                    f"Credential '{spec.name}': secret {namespace}/{spec.secret} not found"
                )
            raise CredentialError(f"Credential '{spec.name}': failed to read secret ({e.reason})")

        data = {
            key: base64.b64decode(raw).decode("utf-8")
            for key, raw in (secret.data or {}).items()
        }

        if spec.fields:
            values = {}
            for field, key in spec.fields.items():
                if key not in data:
                    raise CredentialNotFound(
                        f"Credential '{spec.name}': secret {spec.secret} has no key '{key}'"
                    )
                values[field] = data[key]
        else:
            values = data

        if not values:
            raise CredentialNotFound(f"Credential '{spec.name}': secret {spec.secret} is empty")

        annotations = (secret.metadata.annotations if secret.metadata else None) or {}
        expires_at = None
        if EXPIRES_AT_ANNOTATION in annotations:
            expires_at = parse_expiry(annotations[EXPIRES_AT_ANNOTATION])

        return values, expires_at


def parse_expiry(value: str) -> datetime:
    expires_at = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return expires_at


class CredentialResolver:
    """Maps declared credential names to short-lived handles.

    Holds only read-only configuration, so one resolver may serve several
    concurrent runs.
    """

    def __init__(
        self,
        specs: Mapping[str, CredentialSpec],
        stores: Optional[Mapping[str, SecretStore]] = None,
    ):
        self._specs = dict(specs)
        self._stores = dict(stores) if stores is not None else {
            "env": EnvSecretStore(),
            "kubernetes": KubernetesSecretStore(),
        }

    def acquire(self, name: str) -> CredentialHandle:
        spec = self._specs.get(name)
        if spec is None:
            raise CredentialNotFound(f"Credential '{name}' is not declared")

        store = self._stores.get(spec.source)
        if store is None:
            raise CredentialNotFound(f"Credential '{name}': no store for source '{spec.source}'")

        try:
            values, expires_at = store.fetch(spec)
        except CredentialError:
            raise
        except Exception as e:
            # Bad expiry annotations, undecodable data, unreachable API server
            raise CredentialError(f"Credential '{name}': {type(e).__name__}: {e}")

        deadline = None
        if expires_at is not None:
            remaining = (expires_at - datetime.now(timezone.utc)).total_seconds()
            if remaining <= 0:
                raise CredentialExpired(f"Credential '{name}' expired at {expires_at.isoformat()}")
            deadline = time.monotonic() + remaining
        if spec.ttl is not None:
            ttl_deadline = time.monotonic() + spec.ttl
            deadline = ttl_deadline if deadline is None else min(deadline, ttl_deadline)

        logger.debug(f"Acquired credential {name}")
        return CredentialHandle(name, values, deadline)

    def release(self, handle: CredentialHandle):
        if handle.released:
            raise CredentialError(f"Credential '{handle.name}' released twice")
        handle._wipe()
        logger.debug(f"Released credential {handle.name}")

    @contextmanager
    def scoped(self, name: str) -> Iterator[CredentialHandle]:
        """Acquire a credential and release it on every exit path."""
        handle = self.acquire(name)
        try:
            yield handle
        finally:
            self.release(handle)
