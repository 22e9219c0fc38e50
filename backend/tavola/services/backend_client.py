# Overview: HTTP client for the central backend this branch node replicates to.

"""
Upstream client

Every queued mutation is replayed as

    POST {UPSTREAM_URL}{endpoint}
    Idempotency-Key: <queue item key>
    {"operation": "...", "payload": {...}}

Failure classes matter to the queue:
- UpstreamUnavailableError: network/transport failure, timeout, 5xx, 408, 429.
  The item stays queued and is retried with backoff.
- UpstreamRejectedError: any other 4xx. Retrying the same request cannot
  succeed, so the item is marked FAILED.
"""

from __future__ import annotations


import httpx
from flask import current_app



ENTITY_ENDPOINTS = {
    "order": "/orders",
    "audit_log": "/audit-logs",
    "stock_movement": "/inventory/movements",
    "stock_transfer": "/inventory/transfers",
    "journal_entry": "/ledger/entries",
    "menu_item": "/menu/items",
    "customer": "/customers",
}

_RETRYABLE_CLIENT_STATUSES = {408, 429}


class UpstreamError(Exception):
    pass


class UpstreamUnavailableError(UpstreamError):
    """Upstream could not be reached or failed transiently."""
    pass


class UpstreamRejectedError(UpstreamError):
    """Upstream refused the request (4xx)."""
    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        super().__init__(f"Upstream rejected request ({status_code}): {message}")


class UpstreamClient:
    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 5.0,
        api_token: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        headers = {"Accept": "application/json"}
        if api_token:
            headers["Authorization"] = f"Bearer {api_token}"
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    def push(self, entity_type: str, operation: str, payload: dict, *, idempotency_key: str) -> dict:
        path = ENTITY_ENDPOINTS.get(entity_type)
        if path is None:
            raise UpstreamRejectedError(400, f"No upstream endpoint for entity type {entity_type!r}")

        try:
            resp = self._client.post(
                path,
                json={"operation": operation, "payload": payload},
                headers={"Idempotency-Key": idempotency_key},
            )
        except httpx.TransportError as e:
            raise UpstreamUnavailableError(f"{type(e).__name__}: {e}") from e

        if resp.status_code >= 500 or resp.status_code in _RETRYABLE_CLIENT_STATUSES:
            raise UpstreamUnavailableError(f"Upstream returned {resp.status_code}")
        if resp.status_code >= 400:
            raise UpstreamRejectedError(resp.status_code, resp.text[:500])
        if not 200 <= resp.status_code < 300:
            # redirects and informational replies never stored the record
            raise UpstreamUnavailableError(f"Upstream returned unexpected status {resp.status_code}")

        if not resp.content:
            return {}
        try:
            body = resp.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {"data": body}

    def is_online(self) -> bool:
        try:
            resp = self._client.get("/health")
        except httpx.TransportError:
            return False
        return resp.status_code < 500

    def close(self) -> None:
        self._client.close()


class StandaloneUpstream:
    """
    Used when UPSTREAM_URL is unset: the node is its own system of record and
    every replay is acknowledged locally.
    """
    base_url = None

    def push(self, entity_type: str, operation: str, payload: dict, *, idempotency_key: str) -> dict:
        current_app.logger.debug("Standalone ack for %s %s (%s)", entity_type, operation, idempotency_key)
        return {"status": "accepted", "mode": "standalone"}

    def is_online(self) -> bool:
        return True

    def close(self) -> None:
        pass


def build_upstream_client(config) -> UpstreamClient | StandaloneUpstream:
    url = config.get("UPSTREAM_URL")
    if not url:
        return StandaloneUpstream()
    return UpstreamClient(
        url,
        timeout=float(config.get("UPSTREAM_TIMEOUT_SECONDS", 5)),
        api_token=config.get("UPSTREAM_API_TOKEN"),
    )


def get_upstream_client():
    """The client bound to the current app (tests may swap it)."""
    client = current_app.extensions.get("tavola_upstream")
    if client is None:
        client = build_upstream_client(current_app.config)
        current_app.extensions["tavola_upstream"] = client
    return client
