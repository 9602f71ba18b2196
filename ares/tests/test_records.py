from __future__ import annotations

import pytest

from ares.src.errors import ConfigError, IncompleteRecordError
from ares.src.records import (
    ChangeKind,
    ManagedRecord,
    ManagedRecordSpec,
    RecordBuilder,
    RecordChange,
    RecordType,
    RemoteRecord,
    diff_sorted,
    is_tracking_record,
    tracking_record_for,
)
from ares.tests.fakes import make_record_object


def add(value: str) -> RecordChange:
    return RecordChange(ChangeKind.ADD, value)


def remove(value: str) -> RecordChange:
    return RecordChange(ChangeKind.REMOVE, value)


# ---------------------------------------------------------------------------
# RecordBuilder / RemoteRecord
# ---------------------------------------------------------------------------


def test_builder_updates_return_new_builders() -> None:
    base = RecordBuilder(fqdn="app.example.com", zone="example.com")

    with_value = base.with_value("10.0.0.1")
    with_both = with_value.with_ttl(1)

    assert base.value is None and base.ttl is None
    assert with_value.value == "10.0.0.1" and with_value.ttl is None
    assert with_both.finalize() == RemoteRecord(
        fqdn="app.example.com", zone="example.com", type=RecordType.A, value="10.0.0.1", ttl=1
    )


def test_finalize_requires_ttl_and_value() -> None:
    base = RecordBuilder(fqdn="app.example.com", zone="example.com")

    with pytest.raises(IncompleteRecordError):
        base.with_value("10.0.0.1").finalize()
    with pytest.raises(IncompleteRecordError):
        base.with_ttl(1).finalize()


def test_remote_record_identity_ignores_ttl() -> None:
    short = RemoteRecord("a.example.com", "example.com", RecordType.A, "10.0.0.1", ttl=1)
    long = RemoteRecord("a.example.com", "example.com", RecordType.A, "10.0.0.1", ttl=3600)

    assert short == long
    assert hash(short) == hash(long)
    assert short.identity == ("example.com", "a.example.com", RecordType.A, "10.0.0.1")


def test_tracking_record_is_owner_txt() -> None:
    record = RemoteRecord("a.example.com", "example.com", RecordType.A, "10.0.0.1")

    tracking = tracking_record_for(record)

    assert tracking.fqdn == "_owner.a.example.com"
    assert tracking.type is RecordType.TXT
    assert tracking.value == "ares"
    assert tracking.ttl == 1
    assert is_tracking_record(tracking)


def test_is_tracking_record_accepts_quoted_txt_content() -> None:
    quoted = RemoteRecord("_owner.a.example.com", "example.com", RecordType.TXT, '"ares"')
    other = RemoteRecord("_owner.a.example.com", "example.com", RecordType.TXT, "someone-else")

    assert is_tracking_record(quoted)
    assert not is_tracking_record(other)


# ---------------------------------------------------------------------------
# Merge-join diff
# ---------------------------------------------------------------------------


def test_diff_emits_changes_in_cursor_order() -> None:
    changes = diff_sorted(["a", "c", "e"], ["b", "c", "d"])

    # e > d emits Add(d) first; the leftover e is then removed.
    assert changes == [remove("a"), add("b"), add("d"), remove("e")]
    assert set(changes) == {remove("a"), add("b"), remove("e"), add("d")}
    assert all(change.value != "c" for change in changes)


def test_diff_of_identical_lists_is_empty() -> None:
    assert diff_sorted(["10.0.0.1", "10.0.0.2"], ["10.0.0.1", "10.0.0.2"]) == []


def test_diff_from_empty_adds_everything() -> None:
    assert diff_sorted([], ["a", "b"]) == [add("a"), add("b")]


def test_diff_to_empty_removes_everything() -> None:
    assert diff_sorted(["a", "b"], []) == [remove("a"), remove("b")]


def test_diff_with_trailing_additions() -> None:
    assert diff_sorted(["a"], ["a", "b", "c"]) == [add("b"), add("c")]


def test_diff_uses_lexicographic_order() -> None:
    # "10.0.0.10" sorts before "10.0.0.9" as a string.
    previous = sorted(["10.0.0.9"])
    current = sorted(["10.0.0.10", "10.0.0.9"])

    assert diff_sorted(previous, current) == [add("10.0.0.10")]


# ---------------------------------------------------------------------------
# Managed record parsing
# ---------------------------------------------------------------------------


def test_managed_record_from_resource() -> None:
    record = ManagedRecord.from_resource(
        make_record_object(value=["10.0.0.1"], record_type="AAAA", resource_version="42")
    )

    assert record.name == "app"
    assert record.namespace == "default"
    assert record.uid == "uid-1"
    assert record.resource_version == "42"
    assert record.fqdn == "app.example.com"
    assert record.spec.type is RecordType.AAAA
    assert record.spec.value == ("10.0.0.1",)
    assert record.builder("example.com") == RecordBuilder(
        fqdn="app.example.com", zone="example.com", type=RecordType.AAAA
    )


def test_spec_defaults_type_to_a_and_allows_missing_ttl() -> None:
    spec = ManagedRecordSpec.from_dict({"fqdn": "a.example.com", "value": ["x"]})

    assert spec.type is RecordType.A
    assert spec.ttl is None


@pytest.mark.parametrize(
    "raw",
    [
        {"type": "A", "value": ["x"]},
        {"fqdn": "a.example.com", "type": "BOGUS", "value": ["x"]},
        {"fqdn": "a.example.com", "type": "A"},
        {"fqdn": "a.example.com", "type": "A", "value": ["x"], "valueFrom": {"podSelector": {}}},
        {"fqdn": "a.example.com", "type": "A", "value": "x"},
        {"fqdn": "a.example.com", "type": "A", "ttl": "60", "value": ["x"]},
        {"fqdn": "a.example.com", "type": "A", "valueFrom": ["podSelector"]},
    ],
)
def test_spec_rejects_invalid_data(raw: dict[str, object]) -> None:
    with pytest.raises(ConfigError):
        ManagedRecordSpec.from_dict(raw)


def test_managed_record_requires_identity_metadata() -> None:
    obj = make_record_object()
    del obj["metadata"]["namespace"]

    with pytest.raises(ConfigError):
        ManagedRecord.from_resource(obj)
