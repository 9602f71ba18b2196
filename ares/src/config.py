from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import yaml

from ares.src.cloudflare import CloudflareProvider
from ares.src.errors import ConfigError
from ares.src.provider import ProviderBackend

PROVIDERS = {
    "cloudflare": CloudflareProvider,
}


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


@dataclass(frozen=True)
class Settings:
    """Process settings read from the environment at startup.

    Attributes:
        secret:            Secret holding the configuration document.
        secret_key:        Key inside ``secret``.
        secret_namespace:  Namespace of ``secret``.
        pod_namespace:     Namespace PodSelectors list Pods in; empty means the
                           managed record's own namespace.
        health_port:       Port of the health/metrics server.
        max_backoff_seconds: Cap of the reconcile retry backoff.
    """

    secret: str = "ares-secret"
    secret_key: str = "ares.yaml"
    secret_namespace: str = "default"
    pod_namespace: str = ""
    health_port: int = 8080
    max_backoff_seconds: int = 30


def load_settings() -> Settings:
    secret = os.getenv("SECRET", "ares-secret").strip()
    if not secret:
        raise ConfigError("SECRET must be a non-empty string")
    secret_key = os.getenv("SECRET_KEY", "ares.yaml").strip()
    if not secret_key:
        raise ConfigError("SECRET_KEY must be a non-empty string")

    return Settings(
        secret=secret,
        secret_key=secret_key,
        secret_namespace=os.getenv("SECRET_NAMESPACE", "default").strip() or "default",
        pod_namespace=os.getenv("POD_NAMESPACE", "").strip(),
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535),
        max_backoff_seconds=env_int("RETRY_MAX_BACKOFF_SECONDS", 30, minimum=1),
    )


@dataclass(frozen=True)
class AresConfig:
    """One entry of the configuration document: fqdn selectors bound to a provider."""

    selector: tuple[str, ...]
    provider: ProviderBackend
    provider_name: str = ""

    def matches_selector(self, fqdn: str) -> bool:
        """Return True if *fqdn* ends with any selector string.

        Plain string suffix, not label-aware: ``example.com`` also matches
        ``badexample.com``.  Use ``.example.com`` to match only subdomains.
        """
        return any(fqdn.endswith(pattern) for pattern in self.selector)


def build_provider(tag: Any, options: Any) -> ProviderBackend:
    provider_class = PROVIDERS.get(tag) if isinstance(tag, str) else None
    if provider_class is None:
        raise ConfigError(f"Unknown provider {tag!r}; expected one of {sorted(PROVIDERS)}")
    return provider_class.from_options(options if options is not None else {})


def parse_config_entry(raw: Any, index: int) -> AresConfig:
    if not isinstance(raw, Mapping):
        raise ConfigError(f"Configuration entry {index} must be a mapping")

    selector = raw.get("selector")
    if (
        not isinstance(selector, list)
        or not selector
        or not all(isinstance(s, str) and s for s in selector)
    ):
        raise ConfigError(
            f"Configuration entry {index} selector must be a non-empty list of strings"
        )

    tag = raw.get("provider")
    return AresConfig(
        selector=tuple(selector),
        provider=build_provider(tag, raw.get("providerOptions")),
        provider_name=str(tag),
    )


def parse_config_document(text: str) -> list[AresConfig]:
    """Parse the YAML configuration document into ordered :class:`AresConfig` entries.

    Example document::

        - selector:
          - .example.com
          provider: cloudflare
          providerOptions:
            apiToken: "..."
    """
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Configuration document is not valid YAML: {exc}") from exc

    if not isinstance(document, list):
        raise ConfigError("Configuration document must be a list of entries")
    return [parse_config_entry(entry, index) for index, entry in enumerate(document)]
