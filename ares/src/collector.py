from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any

from kubernetes import watch

from ares.src.errors import CollectionError, ConfigError, RecordDeletedError, WatchError
from ares.src.kube import ClusterClient
from ares.src.metrics import METRICS
from ares.src.provider import ProviderBackend
from ares.src.records import (
    AUTOMATIC_TTL,
    ChangeKind,
    ManagedRecord,
    ManagedRecordSpec,
    RecordBuilder,
    diff_sorted,
)
from ares.src.selector import Expression, label_selector_string, matches_all, matches_labels
from ares.src.watch import CLOSED, ERROR, StreamFactory, WatchMultiplexer

LOGGER = logging.getLogger(__name__)

VALUES_STREAM = "values"
RECORD_STREAM = "record"


class ValueCollector(ABC):
    """Produces the desired value set of a managed record and follows its changes.

    Subclasses implement :meth:`collect`, and :meth:`value_stream` when the
    values depend on cluster objects that can be watched.  Collected values
    are always returned sorted, which :func:`diff_sorted` relies on.
    """

    # Value-stream event types that can change the derived values.
    recompute_events: frozenset[str] = frozenset()

    def __init__(self, cluster: ClusterClient) -> None:
        self.cluster = cluster

    @abstractmethod
    def collect(self, record: ManagedRecord) -> tuple[list[str], str | None]:
        """Return ``(sorted values, resourceVersion to watch from)``."""

    def get_values(self, record: ManagedRecord) -> list[str]:
        return self.collect(record)[0]

    def value_stream(self, record: ManagedRecord, resource_version: str | None) -> StreamFactory | None:
        return None

    def sync(self, record: ManagedRecord, provider: ProviderBackend, builder: RecordBuilder) -> None:
        provider.sync_records(builder, self.get_values(record))

    def watch_values(
        self,
        record: ManagedRecord,
        provider: ProviderBackend,
        builder: RecordBuilder,
        multiplexer: WatchMultiplexer,
    ) -> ManagedRecord | None:
        """Apply value changes until the record itself changes.

        Returns the refreshed record snapshot when it is modified, or
        ``None`` when *multiplexer* is stopped from outside.  Raises
        :class:`RecordDeletedError` when the record is deleted and
        :class:`WatchError` when either stream fails or closes.
        """
        current, resource_version = self.collect(record)

        value_factory = self.value_stream(record, resource_version)
        if value_factory is not None:
            multiplexer.add_stream(VALUES_STREAM, value_factory)
        multiplexer.add_stream(RECORD_STREAM, self._record_stream(record))

        with multiplexer:
            while True:
                item = multiplexer.next_event()
                if item is None:
                    return None
                stream, event = item
                event_type = str(event.get("type", ""))
                METRICS.watch_events_total.labels(stream=stream, type=event_type).inc()

                if event_type in {ERROR, CLOSED}:
                    METRICS.watch_errors_total.labels(stream=stream).inc()
                    raise WatchError(
                        f"{stream} watch for {record.fqdn} ended with {event_type}: "
                        f"{event.get('object')}"
                    )

                if stream == VALUES_STREAM:
                    current = self._apply_value_event(
                        event_type, record, provider, builder, current
                    )
                    continue

                refreshed = self._check_record_event(event_type, event.get("object"), record)
                if refreshed is not None:
                    return refreshed

    def _record_stream(self, record: ManagedRecord) -> StreamFactory:
        def factory(watcher: watch.Watch, resume_from: str | None) -> Any:
            return self.cluster.watch_record(
                watcher,
                namespace=record.namespace,
                name=record.name,
                resource_version=resume_from or record.resource_version or None,
            )

        return factory

    def _apply_value_event(
        self,
        event_type: str,
        record: ManagedRecord,
        provider: ProviderBackend,
        builder: RecordBuilder,
        current: list[str],
    ) -> list[str]:
        if event_type not in self.recompute_events:
            return current

        new_values = self.get_values(record)
        for change in diff_sorted(current, new_values):
            target = builder.with_value(change.value).with_ttl(AUTOMATIC_TTL).finalize()
            if change.kind is ChangeKind.ADD:
                provider.add_record(builder.zone, target)
            else:
                provider.delete_record(builder.zone, target)
        return new_values

    @staticmethod
    def _check_record_event(
        event_type: str, obj: Any, record: ManagedRecord
    ) -> ManagedRecord | None:
        if not isinstance(obj, Mapping):
            return None
        metadata = obj.get("metadata") or {}
        if metadata.get("uid") != record.uid:
            return None

        if event_type == "DELETED":
            raise RecordDeletedError(f"Record {record.namespace}/{record.name} was deleted")
        if event_type == "MODIFIED":
            return ManagedRecord.from_resource(obj)
        if event_type == "ADDED" and str(metadata.get("resourceVersion")) != record.resource_version:
            return ManagedRecord.from_resource(obj)
        return None


class PodSelector(ValueCollector):
    """External IPs of the Nodes running Pods matched by a label selector.

    ``matchLabels`` narrows the Pod listing server-side; ``matchExpressions``
    are evaluated client-side since the listing API cannot express them all.
    Pods are listed in the record's namespace unless an override is given.
    """

    recompute_events = frozenset({"ADDED", "DELETED"})

    def __init__(
        self,
        cluster: ClusterClient,
        match_labels: Mapping[str, str] | None = None,
        match_expressions: list[Expression] | None = None,
        namespace_override: str = "",
    ) -> None:
        super().__init__(cluster)
        self.match_labels = dict(match_labels or {})
        self.match_expressions = list(match_expressions or [])
        self.namespace_override = namespace_override

    @classmethod
    def from_spec(
        cls, raw: Any, cluster: ClusterClient, namespace_override: str = ""
    ) -> PodSelector:
        if not isinstance(raw, Mapping):
            raise ConfigError("podSelector must be an object")
        match_labels = raw.get("matchLabels")
        match_expressions = raw.get("matchExpressions")
        if match_labels is None and match_expressions is None:
            raise ConfigError("podSelector requires matchLabels or matchExpressions")
        if match_labels is not None and not isinstance(match_labels, Mapping):
            raise ConfigError("podSelector.matchLabels must be an object")
        if match_expressions is not None and not isinstance(match_expressions, list):
            raise ConfigError("podSelector.matchExpressions must be a list")
        return cls(
            cluster,
            match_labels={str(k): str(v) for k, v in (match_labels or {}).items()},
            match_expressions=[Expression.from_dict(e) for e in match_expressions or []],
            namespace_override=namespace_override,
        )

    @property
    def label_selector(self) -> str:
        return label_selector_string(self.match_labels)

    def _namespace(self, record: ManagedRecord) -> str:
        return self.namespace_override or record.namespace

    def collect(self, record: ManagedRecord) -> tuple[list[str], str | None]:
        namespace = self._namespace(record)
        pods = self.cluster.list_pods(namespace, self.label_selector)
        resource_version = getattr(getattr(pods, "metadata", None), "resource_version", None)

        seen_nodes: set[str] = set()
        addresses: list[str] = []
        for pod in getattr(pods, "items", None) or []:
            metadata = getattr(pod, "metadata", None)
            pod_name = getattr(metadata, "name", None) or "<unknown>"
            labels = getattr(metadata, "labels", None) or {}
            if not matches_labels(self.match_labels, labels):
                continue
            if not matches_all(self.match_expressions, labels):
                continue

            node_name = getattr(getattr(pod, "spec", None), "node_name", None)
            if not node_name:
                raise CollectionError(f"Pod {namespace}/{pod_name} is not assigned to a node")
            if node_name in seen_nodes:
                continue
            seen_nodes.add(node_name)

            node = self.cluster.read_node(node_name)
            node_addresses = getattr(getattr(node, "status", None), "addresses", None)
            if node_addresses is None:
                raise CollectionError(f"Node {node_name} has no status.addresses")
            for address in node_addresses:
                # Nodes may share a floating IP.
                if address.type == "ExternalIP" and address.address not in addresses:
                    addresses.append(address.address)

        return sorted(addresses), resource_version

    def value_stream(self, record: ManagedRecord, resource_version: str | None) -> StreamFactory:
        namespace = self._namespace(record)

        def factory(watcher: watch.Watch, resume_from: str | None) -> Any:
            return self.cluster.watch_pods(
                watcher,
                namespace=namespace,
                label_selector=self.label_selector,
                resource_version=resume_from or resource_version,
            )

        return factory


class StaticValues(ValueCollector):
    """Values listed inline in ``spec.value``; only record changes are watched."""

    def __init__(self, cluster: ClusterClient, values: tuple[str, ...]) -> None:
        super().__init__(cluster)
        self.values = values

    def collect(self, record: ManagedRecord) -> tuple[list[str], str | None]:
        return sorted(set(self.values)), None


VALUE_SOURCES = {
    "podSelector": PodSelector,
}


def build_collector(
    spec: ManagedRecordSpec, cluster: ClusterClient, namespace_override: str = ""
) -> ValueCollector:
    """Pick the collector driving *spec*: inline values or its ``valueFrom`` variant."""
    if spec.value is not None:
        return StaticValues(cluster, spec.value)

    value_from = spec.value_from or {}
    if len(value_from) != 1:
        raise ConfigError(f"Record {spec.fqdn} valueFrom must name exactly one source")
    ((tag, options),) = value_from.items()
    source = VALUE_SOURCES.get(tag)
    if source is None:
        raise ConfigError(f"Record {spec.fqdn} has unknown valueFrom source {tag!r}")
    return source.from_spec(options, cluster, namespace_override=namespace_override)
