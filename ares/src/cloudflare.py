from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Mapping
from typing import Any

import requests

from ares.src.errors import ConfigError, ProviderError
from ares.src.provider import ProviderBackend
from ares.src.records import RecordType, RemoteRecord
from ares.src.version import USER_AGENT

LOGGER = logging.getLogger(__name__)

BASE_URL = "https://api.cloudflare.com/client/v4"
PAGE_SIZE = 100


class CloudflareProvider(ProviderBackend):
    """Cloudflare v4 REST backend.

    Two credential shapes are accepted in ``providerOptions``:

    * ``apiToken`` - a scoped API token sent as a Bearer token.  Needs
      ``Zone:Read`` and ``DNS:Edit`` on the managed zones.
    * ``email`` + ``apiKey`` - the global API key of an account, sent as
      ``X-Auth-Email`` / ``X-Auth-Key``.

    Zone ids are cached after the first lookup.  Every transport failure,
    non-2xx response or ``success: false`` payload raises
    :class:`ProviderError`.
    """

    name = "cloudflare"

    def __init__(
        self,
        *,
        api_token: str | None = None,
        email: str | None = None,
        api_key: str | None = None,
        base_url: str = BASE_URL,
        timeout_seconds: float = 10,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._zone_ids: dict[str, str] = {}
        self._session = requests.Session()
        self._session.headers["User-Agent"] = USER_AGENT
        if api_token:
            self._session.headers["Authorization"] = f"Bearer {api_token}"
        elif email and api_key:
            self._session.headers["X-Auth-Email"] = email
            self._session.headers["X-Auth-Key"] = api_key
        else:
            raise ConfigError("Cloudflare requires apiToken, or email and apiKey")

    @classmethod
    def from_options(cls, options: Mapping[str, Any]) -> CloudflareProvider:
        if not isinstance(options, Mapping):
            raise ConfigError("cloudflare providerOptions must be a mapping")
        api_token = options.get("apiToken")
        email = options.get("email")
        api_key = options.get("apiKey")
        for key, value in (("apiToken", api_token), ("email", email), ("apiKey", api_key)):
            if value is not None and not isinstance(value, str):
                raise ConfigError(f"cloudflare providerOptions.{key} must be a string")
        return cls(api_token=api_token, email=email, api_key=api_key)

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        try:
            response = self._session.request(method, url, timeout=self._timeout, **kwargs)
            response.raise_for_status()
            payload = response.json()
        except requests.exceptions.RequestException as exc:
            raise ProviderError(f"Cloudflare {method} {path} failed: {exc}") from exc
        except ValueError as exc:
            raise ProviderError(f"Cloudflare {method} {path} returned malformed JSON") from exc

        if not isinstance(payload, dict):
            raise ProviderError(f"Cloudflare {method} {path} returned a non-object payload")
        if not payload.get("success", False):
            raise ProviderError(f"Cloudflare {method} {path} failed: {payload.get('errors')}")
        return payload

    def _zone_id(self, zone: str) -> str:
        zone_id = self._zone_ids.get(zone)
        if zone_id is None:
            if self.lookup_zone(zone) is None:
                raise ProviderError(f"Cloudflare zone {zone} not found")
            zone_id = self._zone_ids[zone]
        return zone_id

    def lookup_zone(self, candidate: str) -> str | None:
        payload = self._request("GET", "/zones", params={"name": candidate})
        result = payload.get("result") or []
        if not result:
            return None
        try:
            zone_name = str(result[0]["name"])
            self._zone_ids[zone_name] = str(result[0]["id"])
        except (KeyError, TypeError) as exc:
            raise ProviderError(f"Malformed Cloudflare zone entry for {candidate}") from exc
        return zone_name

    def _list_dns_records(self, zone_id: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        records: list[dict[str, Any]] = []
        page = 1
        while True:
            payload = self._request(
                "GET",
                f"/zones/{zone_id}/dns_records",
                params={**params, "page": page, "per_page": PAGE_SIZE},
            )
            result = payload.get("result")
            if not isinstance(result, list):
                raise ProviderError("Cloudflare dns_records result is not a list")
            records.extend(result)
            total_pages = (payload.get("result_info") or {}).get("total_pages") or 1
            if page >= total_pages:
                return records
            page += 1

    @staticmethod
    def _to_record(zone: str, raw: dict[str, Any]) -> RemoteRecord | None:
        try:
            name = raw["name"]
            raw_type = raw["type"]
            content = raw["content"]
            ttl = int(raw["ttl"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ProviderError(f"Malformed Cloudflare record: {raw!r}") from exc
        try:
            record_type = RecordType(raw_type)
        except ValueError:
            LOGGER.debug("Skipping unsupported %s record %s", raw_type, name)
            return None
        return RemoteRecord(fqdn=name, zone=zone, type=record_type, value=content, ttl=ttl)

    def get_records(self, zone: str, name: str) -> list[RemoteRecord]:
        zone_id = self._zone_id(zone)
        records = []
        for raw in self._list_dns_records(zone_id, {"name": name}):
            record = self._to_record(zone, raw)
            if record is not None:
                records.append(record)
        return records

    def get_all_records(self, zone: str) -> dict[str, list[RemoteRecord]]:
        zone_id = self._zone_id(zone)
        grouped: dict[str, list[RemoteRecord]] = defaultdict(list)
        for raw in self._list_dns_records(zone_id, {}):
            record = self._to_record(zone, raw)
            if record is not None:
                grouped[record.fqdn].append(record)
        return dict(grouped)

    def raw_add(self, zone: str, record: RemoteRecord) -> None:
        zone_id = self._zone_id(zone)
        self._request(
            "POST",
            f"/zones/{zone_id}/dns_records",
            json={
                "type": record.type.value,
                "name": record.fqdn,
                "content": record.value,
                "ttl": record.ttl,
            },
        )

    def raw_delete(self, zone: str, record: RemoteRecord) -> None:
        zone_id = self._zone_id(zone)
        matches = [
            raw
            for raw in self._list_dns_records(
                zone_id, {"name": record.fqdn, "type": record.type.value}
            )
            if str(raw.get("content", "")).strip('"') == record.value.strip('"')
        ]
        if not matches:
            LOGGER.warning(
                "No Cloudflare %s record %s -> %s to delete",
                record.type.value,
                record.fqdn,
                record.value,
            )
            return
        for raw in matches:
            self._request("DELETE", f"/zones/{zone_id}/dns_records/{raw['id']}")
