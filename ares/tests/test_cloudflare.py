from __future__ import annotations

from typing import Any
from unittest.mock import MagicMock

import pytest
import requests

from ares.src.cloudflare import BASE_URL, CloudflareProvider
from ares.src.errors import ConfigError, ProviderError
from ares.src.records import RecordType, RemoteRecord


def response(payload: Any, status_error: Exception | None = None) -> MagicMock:
    mock = MagicMock()
    mock.json.return_value = payload
    if status_error is not None:
        mock.raise_for_status.side_effect = status_error
    return mock


def ok(result: Any, total_pages: int = 1) -> MagicMock:
    return response(
        {"success": True, "errors": [], "result": result, "result_info": {"total_pages": total_pages}}
    )


def zone_found() -> MagicMock:
    return ok([{"id": "zone-1", "name": "example.com"}])


def make_provider(*responses: MagicMock) -> tuple[CloudflareProvider, MagicMock]:
    provider = CloudflareProvider(api_token="token-123")
    request = MagicMock(side_effect=list(responses))
    provider._session.request = request
    return provider, request


def test_token_credentials_use_bearer_header() -> None:
    provider = CloudflareProvider(api_token="token-123")

    assert provider._session.headers["Authorization"] == "Bearer token-123"
    assert "X-Auth-Key" not in provider._session.headers
    assert provider._session.headers["User-Agent"].startswith("k8s-ares/")


def test_global_key_credentials_use_auth_headers() -> None:
    provider = CloudflareProvider.from_options({"email": "ops@example.com", "apiKey": "key-1"})

    assert provider._session.headers["X-Auth-Email"] == "ops@example.com"
    assert provider._session.headers["X-Auth-Key"] == "key-1"
    assert "Authorization" not in provider._session.headers


@pytest.mark.parametrize(
    "options",
    [{}, {"email": "ops@example.com"}, {"apiKey": "key-1"}, {"apiToken": 123}],
)
def test_invalid_credentials_are_config_errors(options: dict[str, Any]) -> None:
    with pytest.raises(ConfigError):
        CloudflareProvider.from_options(options)


def test_lookup_zone_returns_zone_name_and_caches_id() -> None:
    provider, request = make_provider(zone_found())

    assert provider.lookup_zone("example.com") == "example.com"
    assert provider._zone_ids == {"example.com": "zone-1"}
    request.assert_called_once_with(
        "GET", f"{BASE_URL}/zones", timeout=10, params={"name": "example.com"}
    )


def test_lookup_zone_returns_none_for_unknown_zone() -> None:
    provider, _ = make_provider(ok([]))

    assert provider.lookup_zone("mail.example.com") is None


def test_get_zone_walks_up_to_the_registered_zone() -> None:
    provider, request = make_provider(ok([]), zone_found())

    assert provider.get_zone("mail.example.com") == "example.com"
    assert [c.kwargs["params"]["name"] for c in request.call_args_list] == [
        "mail.example.com",
        "example.com",
    ]


def test_get_records_paginates_and_skips_unknown_types() -> None:
    page_one = ok(
        [
            {"id": "r1", "name": "mail.example.com", "type": "A", "content": "10.0.0.1", "ttl": 1},
            {"id": "r2", "name": "mail.example.com", "type": "HTTPS", "content": "x", "ttl": 1},
        ],
        total_pages=2,
    )
    page_two = ok(
        [{"id": "r3", "name": "mail.example.com", "type": "A", "content": "10.0.0.2", "ttl": 300}],
        total_pages=2,
    )
    provider, request = make_provider(zone_found(), page_one, page_two)

    records = provider.get_records("example.com", "mail.example.com")

    assert [r.value for r in records] == ["10.0.0.1", "10.0.0.2"]
    assert records[1].ttl == 300
    assert [c.kwargs["params"]["page"] for c in request.call_args_list[1:]] == [1, 2]


def test_get_all_records_groups_by_name() -> None:
    listing = ok(
        [
            {"id": "r1", "name": "a.example.com", "type": "A", "content": "10.0.0.1", "ttl": 1},
            {"id": "r2", "name": "b.example.com", "type": "A", "content": "10.0.0.2", "ttl": 1},
            {"id": "r3", "name": "a.example.com", "type": "TXT", "content": "ares", "ttl": 1},
        ]
    )
    provider, _ = make_provider(zone_found(), listing)

    grouped = provider.get_all_records("example.com")

    assert sorted(grouped) == ["a.example.com", "b.example.com"]
    assert [r.type for r in grouped["a.example.com"]] == [RecordType.A, RecordType.TXT]


def test_raw_add_posts_record_payload() -> None:
    provider, request = make_provider(zone_found(), ok({"id": "new"}))
    record = RemoteRecord("mail.example.com", "example.com", RecordType.A, "10.0.0.1", ttl=1)

    provider.raw_add("example.com", record)

    method, url = request.call_args.args
    assert (method, url) == ("POST", f"{BASE_URL}/zones/zone-1/dns_records")
    assert request.call_args.kwargs["json"] == {
        "type": "A",
        "name": "mail.example.com",
        "content": "10.0.0.1",
        "ttl": 1,
    }


def test_raw_delete_matches_quoted_txt_content() -> None:
    listing = ok(
        [{"id": "t1", "name": "_owner.mail.example.com", "type": "TXT", "content": '"ares"', "ttl": 1}]
    )
    provider, request = make_provider(zone_found(), listing, ok({"id": "t1"}))
    tracking = RemoteRecord("_owner.mail.example.com", "example.com", RecordType.TXT, "ares")

    provider.raw_delete("example.com", tracking)

    method, url = request.call_args.args
    assert (method, url) == ("DELETE", f"{BASE_URL}/zones/zone-1/dns_records/t1")


def test_raw_delete_without_match_issues_no_delete() -> None:
    provider, request = make_provider(zone_found(), ok([]))
    record = RemoteRecord("mail.example.com", "example.com", RecordType.A, "10.0.0.1")

    provider.raw_delete("example.com", record)

    assert [c.args[0] for c in request.call_args_list] == ["GET", "GET"]


def test_unsuccessful_payload_raises_provider_error() -> None:
    provider, _ = make_provider(response({"success": False, "errors": [{"code": 9109}]}))

    with pytest.raises(ProviderError, match="9109"):
        provider.lookup_zone("example.com")


def test_http_error_raises_provider_error() -> None:
    provider, _ = make_provider(response({}, status_error=requests.HTTPError("403 Forbidden")))

    with pytest.raises(ProviderError, match="403"):
        provider.lookup_zone("example.com")


def test_transport_error_raises_provider_error() -> None:
    provider = CloudflareProvider(api_token="token-123")
    provider._session.request = MagicMock(side_effect=requests.ConnectionError("reset"))

    with pytest.raises(ProviderError):
        provider.lookup_zone("example.com")


def test_malformed_json_raises_provider_error() -> None:
    broken = MagicMock()
    broken.json.side_effect = ValueError("no json")
    provider, _ = make_provider(broken)

    with pytest.raises(ProviderError, match="malformed JSON"):
        provider.lookup_zone("example.com")


def test_unknown_zone_id_raises_provider_error() -> None:
    provider, _ = make_provider(ok([]))

    with pytest.raises(ProviderError, match="not found"):
        provider.get_records("example.com", "mail.example.com")
