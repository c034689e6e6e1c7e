# apps/backend/services/shopify_client.py

from __future__ import annotations

from typing import Any, Dict, Optional

import requests

from apps.backend.services.commands.errors import PlatformError
from apps.backend.utils.settings import settings


class ShopifyClient:
    """
    Shopify REST client bound to one connected store.

    Design goals:
    - Simple, explicit REST usage (no magic SDKs)
    - Version pinned, every call bounded by a timeout
    - No retries: a failed call surfaces as PlatformError and the caller
      decides what it means for the batch
    """

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        *,
        api_version: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        if not shop_domain or not access_token:
            raise ValueError("ShopifyClient requires shop_domain and access_token")

        self.shop_domain = shop_domain.lower().strip()
        self.api_version = api_version or settings.PLATFORM_API_VERSION
        self.timeout = timeout or settings.PLATFORM_TIMEOUT_SECONDS
        self.base_url = f"https://{self.shop_domain}/admin/api/{self.api_version}"
        self.session = session or requests.Session()

        self.headers = {
            "X-Shopify-Access-Token": access_token.strip(),
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    # ---------------------------------------------------------
    # Low-level request handler
    # ---------------------------------------------------------
    def request(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        *,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Performs one REST request. Raises PlatformError on non-2xx,
        timeouts and connection failures.
        """
        url = f"{self.base_url}/{path.lstrip('/')}"

        try:
            response = self.session.request(
                method=method,
                url=url,
                headers=self.headers,
                params=params,
                json=body,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise PlatformError(None, str(e)) from e

        if not 200 <= response.status_code < 300:
            raise PlatformError(response.status_code, response.text)

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            # 2xx with a non-JSON body (proxy or maintenance page)
            raise PlatformError(response.status_code, response.text) from e

    # ---------------------------------------------------------
    # Public REST helpers
    # ---------------------------------------------------------
    def get(self, path: str, *, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self.request("GET", path, params=params)

    def post(self, path: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self.request("POST", path, body)

    def put(self, path: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self.request("PUT", path, body)

    def delete(self, path: str) -> Dict[str, Any]:
        return self.request("DELETE", path)
