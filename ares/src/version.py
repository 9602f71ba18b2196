from __future__ import annotations

RUNTIME_VERSION = "0.1.0"
USER_AGENT = f"k8s-ares/{RUNTIME_VERSION}"
