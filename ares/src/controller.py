from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Sequence
from dataclasses import asdict, dataclass
from typing import Any

from ares.src.config import AresConfig
from ares.src.errors import ConfigError
from ares.src.kube import ClusterClient
from ares.src.records import ManagedRecord
from ares.src.reconcile import ReconcileLoop

LOGGER = logging.getLogger(__name__)

LoopFactory = Callable[..., ReconcileLoop]


@dataclass(frozen=True)
class TaskStatus:
    """Point-in-time view of one reconcile task, served on ``/statusz``."""

    fqdn: str
    namespace: str
    name: str
    provider: str
    state: str
    attempts: int
    alive: bool
    last_error: str | None


def parse_records(
    objects: Iterable[dict[str, Any]], logger: logging.Logger | None = None
) -> list[ManagedRecord]:
    """Parse Record custom objects, logging and skipping invalid ones."""
    log = logger or LOGGER
    records: list[ManagedRecord] = []
    for obj in objects:
        try:
            records.append(ManagedRecord.from_resource(obj))
        except ConfigError as exc:
            metadata = obj.get("metadata") or {}
            log.error(
                "Skipping invalid Record %s/%s: %s",
                metadata.get("namespace", "<unknown>"),
                metadata.get("name", "<unknown>"),
                exc,
            )
    return records


class Dispatcher:
    """Pairs configuration entries with managed records and runs one task per pair.

    Each configuration entry claims every record whose fqdn matches one of
    its selectors; a record matched by two entries gets two tasks, one per
    provider.  Tasks run in daemon threads and fail independently.
    """

    def __init__(
        self,
        configs: Sequence[AresConfig],
        cluster: ClusterClient,
        *,
        namespace_override: str = "",
        max_backoff_seconds: int = 30,
        logger: logging.Logger | None = None,
        loop_factory: LoopFactory = ReconcileLoop,
    ) -> None:
        self.configs = list(configs)
        self.cluster = cluster
        self.namespace_override = namespace_override
        self.max_backoff_seconds = max_backoff_seconds
        self.logger = logger or LOGGER
        self.loop_factory = loop_factory
        self.ready = threading.Event()
        self._tasks: list[tuple[ReconcileLoop, threading.Thread]] = []
        self._lock = threading.Lock()

    def pair(self, records: Sequence[ManagedRecord]) -> list[tuple[AresConfig, ManagedRecord]]:
        pairs = []
        for ares_config in self.configs:
            for record in records:
                if ares_config.matches_selector(record.fqdn):
                    pairs.append((ares_config, record))
        return pairs

    def _run_task(self, loop: ReconcileLoop) -> None:
        try:
            loop.run_forever()
        except Exception:
            self.logger.exception("Reconcile task for %s crashed", loop.record.fqdn)

    def start(self, records: Sequence[ManagedRecord]) -> int:
        """Spawn a task per matching (config, record) pair and return how many started."""
        pairs = self.pair(records)
        matched = {id(record) for _, record in pairs}
        for record in records:
            if id(record) not in matched:
                self.logger.warning(
                    "Record %s/%s (%s) matches no configured selector",
                    record.namespace,
                    record.name,
                    record.fqdn,
                )

        with self._lock:
            for ares_config, record in pairs:
                loop = self.loop_factory(
                    record,
                    ares_config,
                    self.cluster,
                    namespace_override=self.namespace_override,
                    max_backoff_seconds=self.max_backoff_seconds,
                )
                thread = threading.Thread(
                    target=self._run_task,
                    args=(loop,),
                    name=f"reconcile-{record.namespace}/{record.name}",
                    daemon=True,
                )
                self._tasks.append((loop, thread))
                thread.start()
                self.logger.info(
                    "Spawned reconcile task for %s (%s/%s) using %s",
                    record.fqdn,
                    record.namespace,
                    record.name,
                    ares_config.provider_name or ares_config.provider.name,
                )
        self.ready.set()
        return len(pairs)

    def statuses(self) -> list[dict[str, Any]]:
        with self._lock:
            tasks = list(self._tasks)
        return [
            asdict(
                TaskStatus(
                    fqdn=loop.record.fqdn,
                    namespace=loop.record.namespace,
                    name=loop.record.name,
                    provider=loop.config.provider_name or loop.provider.name,
                    state=loop.state.value,
                    attempts=loop.attempts,
                    alive=thread.is_alive(),
                    last_error=loop.last_error,
                )
            )
            for loop, thread in tasks
        ]

    def stop(self, join_timeout_seconds: float = 10) -> None:
        self.ready.clear()
        with self._lock:
            tasks = list(self._tasks)
        for loop, _ in tasks:
            loop.request_stop()
        for loop, thread in tasks:
            thread.join(timeout=join_timeout_seconds)
            if thread.is_alive():
                self.logger.warning(
                    "Reconcile task for %s did not stop within %ss",
                    loop.record.fqdn,
                    join_timeout_seconds,
                )
