"""Polar REST API client.

Every call is a blocking round trip. Network errors and 5xx responses are
retried with exponential backoff; 4xx responses fail immediately because the
request itself is wrong.
"""

import logging
import time
from collections.abc import Callable
from typing import Any

import httpx

from app.config import POLAR_SERVERS, settings
from app.errors import ConfigurationError, ProcessorAPIError, TransientError
from app.metrics import PROCESSOR_REQUESTS

logger = logging.getLogger(__name__)


def _error_detail(resp: httpx.Response) -> object:
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:500]
    if isinstance(data, dict) and "detail" in data:
        return data["detail"]
    return data


class PolarClient:
    """Thin retrying wrapper around the Polar API, grouped by resource."""

    def __init__(
        self,
        access_token: str | None = None,
        server: str | None = None,
        *,
        max_retries: int | None = None,
        backoff_seconds: float | None = None,
        timeout: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._access_token = (
            settings.polar_access_token if access_token is None else access_token
        )
        server = server or settings.polar_server
        if server not in POLAR_SERVERS:
            raise ConfigurationError(f"Unknown Polar server: {server}")
        self.base_url = POLAR_SERVERS[server]
        self.max_retries = max(
            1, settings.polar_max_retries if max_retries is None else max_retries
        )
        self.backoff_seconds = (
            settings.polar_backoff_seconds if backoff_seconds is None else backoff_seconds
        )
        self.timeout = settings.polar_timeout_seconds if timeout is None else timeout
        self._sleep = sleep

        self.customers = CustomersAPI(self)
        self.subscriptions = SubscriptionsAPI(self)
        self.products = ProductsAPI(self)
        self.checkouts = CheckoutsAPI(self)
        self.orders = OrdersAPI(self)
        self.metrics = MetricsAPI(self)

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def is_configured(self) -> bool:
        return bool(self._access_token)

    def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        if not self.is_configured():
            raise ConfigurationError("Polar is not configured")
        url = f"{self.base_url}{path}"
        if params:
            params = {key: value for key, value in params.items() if value is not None}
        last_error = "no attempt made"
        for attempt in range(self.max_retries):
            try:
                with httpx.Client(timeout=self.timeout) as client:
                    resp = client.request(
                        method, url, params=params, json=json, headers=self._headers()
                    )
            except httpx.RequestError as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                logger.warning(
                    "Polar %s %s network error (attempt %d/%d): %s",
                    method,
                    path,
                    attempt + 1,
                    self.max_retries,
                    last_error,
                )
            else:
                if resp.status_code < 400:
                    PROCESSOR_REQUESTS.labels(method, "ok").inc()
                    if resp.status_code == 204 or not resp.content:
                        return {}
                    return resp.json()
                if resp.status_code < 500:
                    PROCESSOR_REQUESTS.labels(method, "client_error").inc()
                    detail = _error_detail(resp)
                    logger.error(
                        "Polar %s %s rejected with %s: %s",
                        method,
                        path,
                        resp.status_code,
                        detail,
                    )
                    raise ProcessorAPIError(
                        f"Polar {method} {path} failed with status {resp.status_code}",
                        processor_status=resp.status_code,
                        details=detail,
                    )
                last_error = f"HTTP {resp.status_code}"
                logger.warning(
                    "Polar %s %s returned %s (attempt %d/%d)",
                    method,
                    path,
                    resp.status_code,
                    attempt + 1,
                    self.max_retries,
                )
            if attempt < self.max_retries - 1:
                self._sleep(self.backoff_seconds * (2**attempt))
        PROCESSOR_REQUESTS.labels(method, "unavailable").inc()
        raise TransientError(
            f"Polar {method} {path} failed after {self.max_retries} attempts: {last_error}"
        )


def _items(data: Any) -> list[dict]:
    if isinstance(data, dict):
        return list(data.get("items") or [])
    return list(data or [])


class _Resource:
    def __init__(self, client: PolarClient) -> None:
        self._client = client


class CustomersAPI(_Resource):
    def create(
        self,
        email: str,
        name: str | None = None,
        external_id: str | None = None,
        metadata: dict | None = None,
    ) -> dict:
        payload = {
            "email": email,
            "name": name,
            "external_id": external_id,
            "metadata": metadata or {},
        }
        return self._client.request("POST", "/v1/customers/", json=payload)

    def get(self, customer_id: str) -> dict:
        return self._client.request("GET", f"/v1/customers/{customer_id}")

    def update(self, customer_id: str, **fields: Any) -> dict:
        return self._client.request("PATCH", f"/v1/customers/{customer_id}", json=fields)

    def list(
        self, email: str | None = None, page: int = 1, limit: int = 100
    ) -> list[dict]:
        data = self._client.request(
            "GET",
            "/v1/customers/",
            params={"email": email, "page": page, "limit": limit},
        )
        return _items(data)


class SubscriptionsAPI(_Resource):
    def get(self, subscription_id: str) -> dict:
        return self._client.request("GET", f"/v1/subscriptions/{subscription_id}")

    def list(
        self,
        customer_id: str | None = None,
        active: bool | None = None,
        page: int = 1,
        limit: int = 100,
    ) -> list[dict]:
        params: dict[str, Any] = {"customer_id": customer_id, "page": page, "limit": limit}
        if active is not None:
            params["active"] = str(active).lower()
        return _items(self._client.request("GET", "/v1/subscriptions/", params=params))

    def cancel(self, subscription_id: str, at_period_end: bool = True) -> dict:
        if at_period_end:
            return self._client.request(
                "PATCH",
                f"/v1/subscriptions/{subscription_id}",
                json={"cancel_at_period_end": True},
            )
        return self._client.request("DELETE", f"/v1/subscriptions/{subscription_id}")

    def update(self, subscription_id: str, **fields: Any) -> dict:
        return self._client.request(
            "PATCH", f"/v1/subscriptions/{subscription_id}", json=fields
        )


class ProductsAPI(_Resource):
    def get(self, product_id: str) -> dict:
        return self._client.request("GET", f"/v1/products/{product_id}")

    def list(self, is_archived: bool = False, limit: int = 100) -> list[dict]:
        data = self._client.request(
            "GET",
            "/v1/products/",
            params={"is_archived": str(is_archived).lower(), "limit": limit},
        )
        return _items(data)


class CheckoutsAPI(_Resource):
    def create(
        self,
        product_ids: list[str],
        success_url: str | None = None,
        customer_email: str | None = None,
        customer_external_id: str | None = None,
        metadata: dict | None = None,
    ) -> dict:
        payload = {
            "products": product_ids,
            "success_url": success_url,
            "customer_email": customer_email,
            "external_customer_id": customer_external_id,
            "metadata": metadata or {},
        }
        return self._client.request(
            "POST",
            "/v1/checkouts/custom/",
            json={key: value for key, value in payload.items() if value is not None},
        )

    def get(self, checkout_id: str) -> dict:
        return self._client.request("GET", f"/v1/checkouts/custom/{checkout_id}")

    def confirm(self, checkout_id: str, **fields: Any) -> dict:
        return self._client.request(
            "POST", f"/v1/checkouts/custom/{checkout_id}/confirm", json=fields
        )


class OrdersAPI(_Resource):
    def get(self, order_id: str) -> dict:
        return self._client.request("GET", f"/v1/orders/{order_id}")

    def list(
        self, customer_id: str | None = None, page: int = 1, limit: int = 100
    ) -> list[dict]:
        data = self._client.request(
            "GET",
            "/v1/orders/",
            params={"customer_id": customer_id, "page": page, "limit": limit},
        )
        return _items(data)


class MetricsAPI(_Resource):
    def ingest_events(self, events: list[dict]) -> dict:
        return self._client.request("POST", "/v1/metrics/events", json={"events": events})

    def get_usage(
        self,
        customer_id: str,
        start_date: str | None = None,
        end_date: str | None = None,
    ) -> dict:
        return self._client.request(
            "GET",
            "/v1/metrics/usage",
            params={
                "customer_id": customer_id,
                "start_date": start_date,
                "end_date": end_date,
            },
        )
