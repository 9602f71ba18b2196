from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from enum import Enum

from kubernetes.client import ApiException

from ares.src.collector import build_collector
from ares.src.config import AresConfig
from ares.src.errors import ConfigError, RecordDeletedError
from ares.src.kube import ClusterClient
from ares.src.metrics import METRICS
from ares.src.records import ManagedRecord
from ares.src.watch import WatchMultiplexer

LOGGER = logging.getLogger(__name__)


class LoopState(str, Enum):
    INIT = "init"
    SYNC = "sync"
    WATCHING = "watching"
    REFRESHED = "refreshed"
    FAILED = "failed"
    STOPPED = "stopped"


class ReconcileLoop:
    """Keeps the DNS records of one managed record in line with cluster state.

    One attempt (:meth:`run_once`) walks ``INIT -> SYNC -> WATCHING``:

    1. resolve the zone owning the record's fqdn;
    2. run a full :meth:`ProviderBackend.sync_records` from freshly collected
       values;
    3. watch the value source and the Record resource together, applying
       merge-join diffs as values change, until the Record is modified
       (``REFRESHED``) or something fails.

    :meth:`run_forever` repeats attempts.  A refreshed snapshot restarts
    immediately.  Failures restart after a jittered exponential backoff
    (1 s doubling up to ``max_backoff_seconds``) and re-read the Record
    first so a stale resourceVersion is never reused.  Deletion of the
    Record, invalid record data and ``401``/``403`` from the API stop the
    task for good.
    """

    def __init__(
        self,
        record: ManagedRecord,
        ares_config: AresConfig,
        cluster: ClusterClient,
        *,
        namespace_override: str = "",
        max_backoff_seconds: int = 30,
        logger: logging.Logger | None = None,
        multiplexer_factory: Callable[[], WatchMultiplexer] = WatchMultiplexer,
    ) -> None:
        self.record = record
        self.config = ares_config
        self.provider = ares_config.provider
        self.cluster = cluster
        self.namespace_override = namespace_override
        self.max_backoff_seconds = max_backoff_seconds
        self.multiplexer_factory = multiplexer_factory
        self._base_logger = logger or LOGGER
        self.logger = self._bind_logger()

        self.state = LoopState.INIT
        self.attempts = 0
        self.last_error: str | None = None
        self._stop = threading.Event()
        self._active_multiplexer: WatchMultiplexer | None = None
        self._multiplexer_lock = threading.Lock()

    def _bind_logger(self) -> logging.LoggerAdapter:
        return logging.LoggerAdapter(
            self._base_logger,
            {
                "record": self.record.fqdn,
                "namespace": self.record.namespace,
                "resource": self.record.name,
            },
        )

    def _set_state(self, state: LoopState) -> None:
        self.state = state
        self.logger.debug("Reconcile state -> %s", state.value)

    def request_stop(self) -> None:
        """Request a cooperative stop and interrupt an open watch."""
        self._stop.set()
        with self._multiplexer_lock:
            multiplexer = self._active_multiplexer
        if multiplexer is not None:
            multiplexer.stop()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def run_once(self) -> ManagedRecord | None:
        """Run one ``INIT -> SYNC -> WATCHING`` attempt.

        Returns the refreshed Record snapshot, or ``None`` if a stop was
        requested.  Every failure propagates to the caller.
        """
        self._set_state(LoopState.INIT)
        collector = build_collector(self.record.spec, self.cluster, self.namespace_override)
        self.logger.info("Getting zone domain name")
        zone = self.provider.get_zone(self.record.fqdn)
        builder = self.record.builder(zone)

        self._set_state(LoopState.SYNC)
        self.logger.info("Syncing records in zone %s", zone)
        collector.sync(self.record, self.provider, builder)
        self.logger.info("Finished syncing")

        multiplexer = self.multiplexer_factory()
        with self._multiplexer_lock:
            if self._stop.is_set():
                return None
            self._active_multiplexer = multiplexer
        self._set_state(LoopState.WATCHING)
        try:
            refreshed = collector.watch_values(self.record, self.provider, builder, multiplexer)
        finally:
            with self._multiplexer_lock:
                self._active_multiplexer = None

        if refreshed is not None:
            self._set_state(LoopState.REFRESHED)
        return refreshed

    def _reload_record(self) -> ManagedRecord:
        try:
            obj = self.cluster.read_record(self.record.namespace, self.record.name)
        except ApiException as exc:
            if exc.status == 404:
                raise RecordDeletedError(
                    f"Record {self.record.namespace}/{self.record.name} no longer exists"
                ) from exc
            raise
        return ManagedRecord.from_resource(obj)

    def _fail(self, message: str, outcome: str) -> None:
        self.last_error = message
        self._set_state(LoopState.FAILED)
        METRICS.reconcile_attempts_total.labels(outcome=outcome).inc()

    def run_forever(self) -> None:
        backoff_seconds = 1
        reload_first = False
        METRICS.active_tasks.inc()
        try:
            while not self._stop.is_set():
                try:
                    if reload_first:
                        self.record = self._reload_record()
                        self.logger = self._bind_logger()
                        reload_first = False
                    self.attempts += 1
                    refreshed = self.run_once()
                    if refreshed is None:
                        break
                    self.logger.info(
                        "Record changed (resourceVersion %s); restarting reconcile",
                        refreshed.resource_version,
                    )
                    METRICS.reconcile_attempts_total.labels(outcome="refreshed").inc()
                    self.record = refreshed
                    self.logger = self._bind_logger()
                    backoff_seconds = 1
                    continue
                except RecordDeletedError as exc:
                    self.logger.info("Record deleted; stopping reconcile task")
                    self._fail(str(exc), "deleted")
                    return
                except ConfigError as exc:
                    self.logger.error("Invalid record or configuration: %s", exc)
                    self._fail(str(exc), "config_error")
                    return
                except ApiException as exc:
                    if exc.status in {401, 403}:
                        self.logger.error(
                            "Kubernetes API access denied (status=%s). "
                            "Check ARES RBAC and service account permissions.",
                            exc.status,
                        )
                        self._fail(f"Kubernetes API access denied ({exc.status})", "denied")
                        return
                    self.logger.exception("Kubernetes API error during reconcile")
                    self._fail(f"Kubernetes API error ({exc.status})", "failed")
                except Exception as exc:
                    self.logger.exception("Reconcile attempt failed")
                    self._fail(str(exc), "failed")

                if self._stop.is_set():
                    break
                METRICS.reconcile_retries_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                self.logger.info("Retrying reconcile in %.1fs", jittered)
                self._stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, self.max_backoff_seconds)
                reload_first = True
        finally:
            METRICS.active_tasks.dec()

        self._set_state(LoopState.STOPPED)
