from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from ares.src.errors import ConfigError, IncompleteRecordError

OWNER_PREFIX = "_owner."
OWNER_VALUE = "ares"
AUTOMATIC_TTL = 1

RECORD_GROUP = "syntixi.io"
RECORD_VERSION = "v1alpha1"
RECORD_PLURAL = "records"


class RecordType(str, Enum):
    A = "A"
    AAAA = "AAAA"
    ALIAS = "ALIAS"
    CNAME = "CNAME"
    MX = "MX"
    NS = "NS"
    PTR = "PTR"
    SOA = "SOA"
    SRV = "SRV"
    TXT = "TXT"
    DNSKEY = "DNSKEY"
    DS = "DS"
    NSEC = "NSEC"
    NSEC3 = "NSEC3"
    NSEC3PARAM = "NSEC3PARAM"
    RRSIG = "RRSIG"


@dataclass(frozen=True)
class RemoteRecord:
    """A concrete record as it exists, or will exist, on a DNS provider.

    Equality and hashing ignore ``ttl``: a record is identified by
    ``(zone, fqdn, type, value)``.
    """

    fqdn: str
    zone: str
    type: RecordType
    value: str
    ttl: int = field(default=AUTOMATIC_TTL, compare=False)

    @property
    def identity(self) -> tuple[str, str, RecordType, str]:
        return (self.zone, self.fqdn, self.type, self.value)


@dataclass(frozen=True)
class RecordBuilder:
    """Partially-built :class:`RemoteRecord`; ``finalize`` checks required fields."""

    fqdn: str
    zone: str
    type: RecordType = RecordType.A
    ttl: int | None = None
    value: str | None = None

    def with_value(self, value: str) -> RecordBuilder:
        return replace(self, value=value)

    def with_ttl(self, ttl: int) -> RecordBuilder:
        return replace(self, ttl=ttl)

    def finalize(self) -> RemoteRecord:
        if self.ttl is None:
            raise IncompleteRecordError(f"Record for {self.fqdn} is missing a ttl")
        if self.value is None:
            raise IncompleteRecordError(f"Record for {self.fqdn} is missing a value")
        return RemoteRecord(
            fqdn=self.fqdn,
            zone=self.zone,
            type=self.type,
            value=self.value,
            ttl=self.ttl,
        )


def tracking_name(fqdn: str) -> str:
    return f"{OWNER_PREFIX}{fqdn}"


def tracking_record_for(record: RemoteRecord) -> RemoteRecord:
    """Return the ownership TXT record guarding ``record.fqdn``."""
    return RemoteRecord(
        fqdn=tracking_name(record.fqdn),
        zone=record.zone,
        type=RecordType.TXT,
        value=OWNER_VALUE,
        ttl=AUTOMATIC_TTL,
    )


def is_tracking_record(record: RemoteRecord) -> bool:
    # Some providers return TXT content wrapped in quotes.
    return record.type is RecordType.TXT and record.value.strip('"') == OWNER_VALUE


class ChangeKind(str, Enum):
    ADD = "add"
    REMOVE = "remove"


@dataclass(frozen=True)
class RecordChange:
    kind: ChangeKind
    value: str


def diff_sorted(previous: Sequence[str], current: Sequence[str]) -> list[RecordChange]:
    """Merge-join two sorted value lists into the changes turning *previous* into *current*.

    Walks both lists with one cursor each.  A smaller value on the left was
    removed; a smaller value on the right was added; equal values are
    unchanged.  Leftovers once either side is exhausted are all removals
    (left) or all additions (right).  Changes are returned in discovery order.
    """
    changes: list[RecordChange] = []
    left, right = 0, 0
    while left < len(previous) or right < len(current):
        if right >= len(current):
            changes.append(RecordChange(ChangeKind.REMOVE, previous[left]))
            left += 1
        elif left >= len(previous):
            changes.append(RecordChange(ChangeKind.ADD, current[right]))
            right += 1
        elif previous[left] < current[right]:
            changes.append(RecordChange(ChangeKind.REMOVE, previous[left]))
            left += 1
        elif previous[left] > current[right]:
            changes.append(RecordChange(ChangeKind.ADD, current[right]))
            right += 1
        else:
            left += 1
            right += 1
    return changes


@dataclass(frozen=True)
class ManagedRecordSpec:
    """The ``spec`` of a ``syntixi.io/v1alpha1`` Record resource."""

    fqdn: str
    type: RecordType
    ttl: int | None = None
    value: tuple[str, ...] | None = None
    value_from: Mapping[str, Any] | None = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> ManagedRecordSpec:
        fqdn = raw.get("fqdn")
        if not isinstance(fqdn, str) or not fqdn:
            raise ConfigError("Record spec.fqdn must be a non-empty string")

        try:
            record_type = RecordType(raw.get("type", RecordType.A.value))
        except ValueError as exc:
            raise ConfigError(f"Record {fqdn} has unknown type {raw.get('type')!r}") from exc

        ttl = raw.get("ttl")
        if ttl is not None and (isinstance(ttl, bool) or not isinstance(ttl, int)):
            raise ConfigError(f"Record {fqdn} ttl must be an integer, got: {ttl!r}")

        value = raw.get("value")
        value_from = raw.get("valueFrom")
        if (value is None) == (value_from is None):
            raise ConfigError(f"Record {fqdn} must set exactly one of value or valueFrom")
        if value is not None and (
            not isinstance(value, list) or not all(isinstance(v, str) for v in value)
        ):
            raise ConfigError(f"Record {fqdn} value must be a list of strings")
        if value_from is not None and not isinstance(value_from, Mapping):
            raise ConfigError(f"Record {fqdn} valueFrom must be an object")

        return cls(
            fqdn=fqdn,
            type=record_type,
            ttl=ttl,
            value=tuple(value) if value is not None else None,
            value_from=value_from,
        )


@dataclass(frozen=True)
class ManagedRecord:
    """Snapshot of a Record resource: identity metadata plus its spec."""

    name: str
    namespace: str
    uid: str
    resource_version: str
    spec: ManagedRecordSpec

    @classmethod
    def from_resource(cls, obj: Mapping[str, Any]) -> ManagedRecord:
        """Parse a custom object dict as returned by ``CustomObjectsApi``."""
        metadata = obj.get("metadata") or {}
        name = metadata.get("name")
        namespace = metadata.get("namespace")
        if not name or not namespace:
            raise ConfigError("Record resource is missing metadata.name or metadata.namespace")
        spec = obj.get("spec")
        if not isinstance(spec, Mapping):
            raise ConfigError(f"Record {namespace}/{name} has no spec")
        return cls(
            name=name,
            namespace=namespace,
            uid=str(metadata.get("uid") or ""),
            resource_version=str(metadata.get("resourceVersion") or ""),
            spec=ManagedRecordSpec.from_dict(spec),
        )

    @property
    def fqdn(self) -> str:
        return self.spec.fqdn

    def builder(self, zone: str) -> RecordBuilder:
        return RecordBuilder(fqdn=self.spec.fqdn, zone=zone, type=self.spec.type)
