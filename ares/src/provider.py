from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable

from ares.src.errors import (
    ProviderError,
    RecordAlreadyOwnedError,
    UnownedRecordError,
    UnsupportedOperationError,
)
from ares.src.metrics import METRICS
from ares.src.records import (
    AUTOMATIC_TTL,
    RecordBuilder,
    RecordType,
    RemoteRecord,
    is_tracking_record,
    tracking_name,
    tracking_record_for,
)

LOGGER = logging.getLogger(__name__)


class ProviderBackend(ABC):
    """Abstract DNS backend plus the ownership layer ARES builds on top of it.

    Subclasses implement the low-level calls (``lookup_zone``,
    ``get_records``, ``raw_add``, ``raw_delete``) without any notion of
    ownership.  The concrete methods on this class add tracking-record
    semantics:

    * every fqdn ARES manages has a TXT record at ``_owner.<fqdn>`` whose
      value is ``ares``;
    * the tracking record is created *before* the value record and deleted
      *after* it, so a crash between the two calls never leaves an untracked
      value record that looks owned;
    * a record is only deleted while an ``ares`` tracking record guards it,
      and nothing is added while any TXT record sits at the owner name,
      whatever its value: a foreign value means another owner claims it.

    Implementations must be safe to share between reconcile threads; each
    call is independent and no cross-call transaction is provided.
    """

    name = "provider"

    @abstractmethod
    def lookup_zone(self, candidate: str) -> str | None:
        """Return the zone name if *candidate* is a zone managed by this backend."""

    @abstractmethod
    def get_records(self, zone: str, name: str) -> list[RemoteRecord]:
        """List records named *name* within *zone*; empty when there are none."""

    def get_all_records(self, zone: str) -> dict[str, list[RemoteRecord]]:
        """Bulk listing of every record in *zone*, keyed by record name."""
        raise UnsupportedOperationError(f"{self.name} does not support bulk record listing")

    @abstractmethod
    def raw_add(self, zone: str, record: RemoteRecord) -> None:
        """Create one record with no ownership checks."""

    @abstractmethod
    def raw_delete(self, zone: str, record: RemoteRecord) -> None:
        """Delete the record matching ``record.identity`` with no ownership checks."""

    def get_zone(self, domain: str) -> str:
        """Resolve the zone owning *domain* by stripping leftmost labels until one resolves."""
        labels = [label for label in domain.rstrip(".").split(".") if label]
        for index in range(len(labels)):
            candidate = ".".join(labels[index:])
            zone = self.lookup_zone(candidate)
            if zone:
                LOGGER.debug("Resolved zone %s for %s", zone, domain)
                return zone
        raise ProviderError(f"No {self.name} zone found for {domain}")

    def _find_tracking_record(self, zone: str, fqdn: str) -> RemoteRecord | None:
        for candidate in self.get_records(zone, tracking_name(fqdn)):
            if is_tracking_record(candidate):
                return candidate
        return None

    def _owner_name_claimed(self, zone: str, fqdn: str) -> bool:
        # Any TXT at the owner name is a claim, ours or another controller's.
        return any(r.type is RecordType.TXT for r in self.get_records(zone, tracking_name(fqdn)))

    def add_record(self, zone: str, record: RemoteRecord) -> None:
        if self._owner_name_claimed(zone, record.fqdn):
            METRICS.ownership_conflicts_total.labels(operation="add").inc()
            raise RecordAlreadyOwnedError(
                f"Tracking record already exists for {record.fqdn}; "
                "refusing to add (possible conflict with another owner)"
            )
        self.raw_add(zone, tracking_record_for(record))
        self.raw_add(zone, record)
        METRICS.record_mutations_total.labels(operation="add").inc()
        LOGGER.info("Added %s record %s -> %s", record.type.value, record.fqdn, record.value)

    def delete_record(self, zone: str, record: RemoteRecord) -> None:
        tracking = self._find_tracking_record(zone, record.fqdn)
        if tracking is None:
            METRICS.ownership_conflicts_total.labels(operation="delete").inc()
            raise UnownedRecordError(
                f"No tracking record for {record.fqdn}; refusing to delete a record "
                "ARES did not create"
            )
        self.raw_delete(zone, record)
        self.raw_delete(zone, tracking)
        METRICS.record_mutations_total.labels(operation="delete").inc()
        LOGGER.info("Deleted %s record %s -> %s", record.type.value, record.fqdn, record.value)

    def sync_records(self, builder: RecordBuilder, desired_values: Iterable[str]) -> None:
        """Converge the records at ``builder.fqdn`` to exactly *desired_values*.

        Full reconciliation against the remote listing: stale values are
        deleted first, then missing values are added with the automatic ttl.
        Calling it again with unchanged inputs performs no mutation.
        """
        desired = sorted(set(desired_values))
        remote = sorted(
            (r for r in self.get_records(builder.zone, builder.fqdn) if r.type is builder.type),
            key=lambda r: r.value,
        )
        remote_values = {r.value for r in remote}

        for record in remote:
            if record.value not in desired:
                self.delete_record(builder.zone, record)

        for value in desired:
            if value not in remote_values:
                record = builder.with_value(value).with_ttl(AUTOMATIC_TTL).finalize()
                self.add_record(builder.zone, record)
