from __future__ import annotations

import random
import time

import requests


class BackendError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class BackendClient:
    """
    HTTP client for the dashboard backend that fronts the exchange:
    trend scores, portfolio balances and the order queue.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 15.0,
        max_retries: int = 4,
        session: requests.Session | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.max_retries = max_retries
        self.session = session or requests.Session()

    def _headers(self) -> dict:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        return headers

    def _request(self, method: str, path: str, params=None, json_body=None):
        url = f"{self.base_url}{path}"

        last_err: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                r = self.session.request(
                    method,
                    url,
                    params=dict(params or {}),
                    json=json_body,
                    headers=self._headers(),
                    timeout=self.timeout,
                )

                # Rate limit
                if r.status_code == 429:
                    ra = r.headers.get("Retry-After")
                    sleep_s = float(ra) if ra else (0.4 * (2**attempt))
                    sleep_s += random.uniform(0, 0.2)
                    last_err = BackendError(
                        f"rate limit: {method} {path}", status_code=429, body=r.text
                    )
                    time.sleep(min(sleep_s, 10.0))
                    continue

                # Server errors
                if r.status_code >= 500:
                    last_err = BackendError(
                        f"service unavailable: HTTP {r.status_code}",
                        status_code=r.status_code,
                        body=r.text,
                    )
                    time.sleep(min(0.4 * (2**attempt), 8.0))
                    continue

                if r.status_code >= 400:
                    raise BackendError(
                        f"Backend HTTP {r.status_code}: {r.text}",
                        status_code=r.status_code,
                        body=r.text,
                    )

                return r.json() if r.content else None

            except (requests.Timeout, requests.ConnectionError) as e:
                last_err = e
                time.sleep(min(0.4 * (2**attempt), 8.0))
                continue

        raise BackendError(
            f"Backend request failed after retries: {method} {path} ({last_err})"
        )

    # ---------------- MARKET ----------------

    def market_trend(self, symbol: str) -> dict:
        """{price, techScore, trendScore, support, resistance}"""
        return self._request("GET", f"/market/trend/{symbol.upper()}")

    # ---------------- PORTFOLIO ----------------

    def balance(self, symbol: str) -> dict:
        """{symbol, quantity}"""
        return self._request("GET", f"/portfolio/balance/{symbol.upper()}")

    # ---------------- ORDERS ----------------

    def create_order(self, payload: dict) -> dict:
        return self._request("POST", "/orders", json_body=payload)

    def get_order(self, order_id: str) -> dict:
        return self._request("GET", f"/orders/{order_id}")
