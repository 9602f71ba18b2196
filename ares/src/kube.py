from __future__ import annotations

import base64
import logging
from collections.abc import Iterator
from typing import Any

from kubernetes import client, config, watch
from kubernetes.client import CoreV1Api, CustomObjectsApi
from kubernetes.config.config_exception import ConfigException

from ares.src.errors import ConfigError
from ares.src.records import RECORD_GROUP, RECORD_PLURAL, RECORD_VERSION

LOGGER = logging.getLogger(__name__)

# Server-side watch timeout; bounds how long a stopped watch keeps its connection.
WATCH_TIMEOUT_SECONDS = 30


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, CustomObjectsApi]:
    """Return CoreV1 and CustomObjects API clients using the active kube configuration."""
    return client.CoreV1Api(), client.CustomObjectsApi()


class ClusterClient:
    """The slice of the Kubernetes API ARES needs.

    Pods and Nodes come back as typed ``V1*`` models; Record custom objects
    come back as plain dicts with camelCase keys.  Watch methods take a
    :class:`kubernetes.watch.Watch` so the caller owns stopping the stream.
    """

    def __init__(self, core_api: CoreV1Api, custom_api: CustomObjectsApi) -> None:
        self.core_api = core_api
        self.custom_api = custom_api

    def read_secret_value(self, namespace: str, name: str, key: str) -> str:
        secret = self.core_api.read_namespaced_secret(name=name, namespace=namespace)
        data = getattr(secret, "data", None) or {}
        if key not in data:
            raise ConfigError(f"Secret {namespace}/{name} has no key {key!r}")
        try:
            return base64.b64decode(data[key]).decode("utf-8")
        except (ValueError, UnicodeDecodeError) as exc:
            raise ConfigError(f"Secret {namespace}/{name} key {key!r} is not valid UTF-8") from exc

    def list_pods(self, namespace: str, label_selector: str) -> Any:
        kwargs: dict[str, Any] = {"namespace": namespace}
        if label_selector:
            kwargs["label_selector"] = label_selector
        return self.core_api.list_namespaced_pod(**kwargs)

    def read_node(self, name: str) -> Any:
        return self.core_api.read_node(name=name)

    def watch_pods(
        self,
        watcher: watch.Watch,
        namespace: str,
        label_selector: str,
        resource_version: str | None = None,
        timeout_seconds: int = WATCH_TIMEOUT_SECONDS,
    ) -> Iterator[dict[str, Any]]:
        kwargs: dict[str, Any] = {"namespace": namespace, "timeout_seconds": timeout_seconds}
        if label_selector:
            kwargs["label_selector"] = label_selector
        if resource_version:
            kwargs["resource_version"] = resource_version
        return watcher.stream(self.core_api.list_namespaced_pod, **kwargs)

    def list_records(self) -> list[dict[str, Any]]:
        response = self.custom_api.list_cluster_custom_object(
            group=RECORD_GROUP,
            version=RECORD_VERSION,
            plural=RECORD_PLURAL,
        )
        return list(response.get("items") or [])

    def read_record(self, namespace: str, name: str) -> dict[str, Any]:
        return self.custom_api.get_namespaced_custom_object(
            group=RECORD_GROUP,
            version=RECORD_VERSION,
            namespace=namespace,
            plural=RECORD_PLURAL,
            name=name,
        )

    def watch_record(
        self,
        watcher: watch.Watch,
        namespace: str,
        name: str,
        resource_version: str | None = None,
        timeout_seconds: int = WATCH_TIMEOUT_SECONDS,
    ) -> Iterator[dict[str, Any]]:
        kwargs: dict[str, Any] = {
            "group": RECORD_GROUP,
            "version": RECORD_VERSION,
            "namespace": namespace,
            "plural": RECORD_PLURAL,
            "field_selector": f"metadata.name={name}",
            "timeout_seconds": timeout_seconds,
        }
        if resource_version:
            kwargs["resource_version"] = resource_version
        return watcher.stream(self.custom_api.list_namespaced_custom_object, **kwargs)
