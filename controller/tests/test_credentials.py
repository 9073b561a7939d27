"""Tests for credential resolution."""

import base64
import time
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from kubernetes.client.rest import ApiException

from controller.src.errors import CredentialError, CredentialExpired, CredentialNotFound
from controller.src.models.step import CredentialSpec
from controller.src.services.credentials import (
    EXPIRES_AT_ANNOTATION,
    CredentialHandle,
    CredentialResolver,
    EnvSecretStore,
    KubernetesSecretStore,
)

ENVIRON = {"REGISTRY_TOKEN": "s3cr3t", "NEXUS_USER": "deployer", "NEXUS_PASSWORD": "hunter2"}

SPECS = {
    "registry": CredentialSpec(name="registry", variable="REGISTRY_TOKEN"),
    "nexus": CredentialSpec(name="nexus", fields={"username": "NEXUS_USER", "password": "NEXUS_PASSWORD"}),
    "missing": CredentialSpec(name="missing", variable="NOT_SET"),
}

class FakeCoreApi:
    def __init__(self, secrets):
        self.secrets = secrets

    def read_namespaced_secret(self, name, namespace):
        if (namespace, name) not in self.secrets:
            raise ApiException(status=404, reason="Not Found")
        return self.secrets[(namespace, name)]

def make_secret(data, annotations=None):
    return SimpleNamespace(
        data={key: base64.b64encode(value.encode()).decode() for key, value in data.items()},
        metadata=SimpleNamespace(annotations=annotations),
    )

def env_resolver():
    return CredentialResolver(SPECS, stores={"env": EnvSecretStore(ENVIRON)})

def test_acquire_single_value():
    handle = env_resolver().acquire("registry")
    assert handle.value == "s3cr3t"
    assert handle.get() == "s3cr3t"

def test_acquire_fields():
    handle = env_resolver().acquire("nexus")
    assert handle.get("username") == "deployer"
    assert handle.get("password") == "hunter2"
    assert sorted(handle.fields()) == ["password", "username"]

def test_undeclared_credential():
    with pytest.raises(CredentialNotFound, match="not declared"):
        env_resolver().acquire("vault")

def test_missing_variable():
    with pytest.raises(CredentialNotFound, match="NOT_SET"):
        env_resolver().acquire("missing")

def test_handle_never_shows_value():
    handle = env_resolver().acquire("registry")
    assert "s3cr3t" not in repr(handle)
    assert "s3cr3t" not in str(handle)
    assert "registry" in repr(handle)

def test_release_wipes_handle():
    resolver = env_resolver()
    handle = resolver.acquire("registry")
    resolver.release(handle)

    assert handle.released
    assert handle.secrets() == []
    with pytest.raises(CredentialExpired, match="already released"):
        handle.get()

def test_double_release_is_an_error():
    resolver = env_resolver()
    handle = resolver.acquire("registry")
    resolver.release(handle)
    with pytest.raises(CredentialError, match="released twice"):
        resolver.release(handle)

def test_scoped_releases_on_error():
    resolver = env_resolver()
    with pytest.raises(RuntimeError):
        with resolver.scoped("registry") as handle:
            raise RuntimeError("step blew up")
    assert handle.released

def test_expired_handle():
    handle = CredentialHandle("registry", {"value": "s3cr3t"}, deadline=time.monotonic() - 1)
    assert handle.expired
    with pytest.raises(CredentialExpired, match="has expired"):
        handle.get()

def test_ttl_sets_deadline():
    specs = {"short": CredentialSpec(name="short", variable="REGISTRY_TOKEN", ttl=300)}
    handle = CredentialResolver(specs, stores={"env": EnvSecretStore(ENVIRON)}).acquire("short")
    assert not handle.expired
    assert handle.get() == "s3cr3t"

def test_kubernetes_secret():
    core = FakeCoreApi({("ci", "harbor"): make_secret({"username": "robot", "password": "pw"})})
    specs = {"harbor": CredentialSpec(name="harbor", source="kubernetes", secret="harbor", namespace="ci")}
    resolver = CredentialResolver(specs, stores={"kubernetes": KubernetesSecretStore(core)})

    handle = resolver.acquire("harbor")
    assert handle.get("username") == "robot"
    assert handle.get("password") == "pw"

def test_kubernetes_secret_field_mapping():
    core = FakeCoreApi({("ci", "argocd"): make_secret({"auth-token": "tok"})})
    specs = {"argocd": CredentialSpec(
        name="argocd", source="kubernetes", secret="argocd", namespace="ci", fields={"value": "auth-token"},
    )}
    handle = CredentialResolver(specs, stores={"kubernetes": KubernetesSecretStore(core)}).acquire("argocd")
    assert handle.value == "tok"

def test_kubernetes_secret_not_found():
    specs = {"harbor": CredentialSpec(name="harbor", source="kubernetes", secret="harbor", namespace="ci")}
    resolver = CredentialResolver(specs, stores={"kubernetes": KubernetesSecretStore(FakeCoreApi({}))})
    with pytest.raises(CredentialNotFound, match="ci/harbor not found"):
        resolver.acquire("harbor")

def test_kubernetes_secret_expired():
    yesterday = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()
    core = FakeCoreApi({
        ("ci", "harbor"): make_secret({"token": "old"}, {EXPIRES_AT_ANNOTATION: yesterday}),
    })
    specs = {"harbor": CredentialSpec(name="harbor", source="kubernetes", secret="harbor", namespace="ci")}
    resolver = CredentialResolver(specs, stores={"kubernetes": KubernetesSecretStore(core)})
    with pytest.raises(CredentialExpired):
        resolver.acquire("harbor")

def test_kubernetes_secret_not_yet_expired():
    tomorrow = (datetime.now(timezone.utc) + timedelta(days=1)).strftime("%Y-%m-%dT%H:%M:%SZ")
    core = FakeCoreApi({
        ("ci", "harbor"): make_secret({"token": "fresh"}, {EXPIRES_AT_ANNOTATION: tomorrow}),
    })
    specs = {"harbor": CredentialSpec(name="harbor", source="kubernetes", secret="harbor", namespace="ci")}
    handle = CredentialResolver(specs, stores={"kubernetes": KubernetesSecretStore(core)}).acquire("harbor")
    assert handle.value == "fresh"
    assert not handle.expired

def test_kubernetes_secret_bad_expiry_annotation():
    core = FakeCoreApi({
        ("ci", "harbor"): make_secret({"token": "t"}, {EXPIRES_AT_ANNOTATION: "tomorrow"}),
    })
    specs = {"harbor": CredentialSpec(name="harbor", source="kubernetes", secret="harbor", namespace="ci")}
    resolver = CredentialResolver(specs, stores={"kubernetes": KubernetesSecretStore(core)})
    with pytest.raises(CredentialError, match="harbor.*ValueError"):
        resolver.acquire("harbor")

def test_kubernetes_secret_undecodable_data():
    secret = SimpleNamespace(
        data={"token": base64.b64encode(b"\xff\xfe").decode()},
        metadata=SimpleNamespace(annotations=None),
    )
    specs = {"harbor": CredentialSpec(name="harbor", source="kubernetes", secret="harbor", namespace="ci")}
    resolver = CredentialResolver(specs, stores={"kubernetes": KubernetesSecretStore(FakeCoreApi({("ci", "harbor"): secret}))})
    with pytest.raises(CredentialError, match="UnicodeDecodeError"):
        resolver.acquire("harbor")

def test_unreachable_secret_store():
    class Unreachable:
        def read_namespaced_secret(self, name, namespace):
            raise ConnectionError("connection refused")

    specs = {"harbor": CredentialSpec(name="harbor", source="kubernetes", secret="harbor", namespace="ci")}
    resolver = CredentialResolver(specs, stores={"kubernetes": KubernetesSecretStore(Unreachable())})
    with pytest.raises(CredentialError, match="connection refused"):
        resolver.acquire("harbor")
