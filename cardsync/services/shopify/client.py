# cardsync.services.shopify.client

import logging
from typing import Any, Dict, Optional

import httpx

from cardsync.core.config import get_settings
from cardsync.core.exceptions import (
    RemoteRateLimitedError,
    RemoteTerminalError,
    RemoteTransientError,
)
from cardsync.core.utils import location_numeric_id
from cardsync.models.shopify_store import ShopifyStore

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER_SECONDS = 2.0


def to_gid(resource: str, value: Any) -> str:
    value = str(value)
    if value.startswith("gid://"):
        return value
    return f"gid://shopify/{resource}/{value}"


def numeric_id(value: Any) -> Optional[str]:
    """Webhooks carry numeric ids, so that is what is stored locally."""
    if value is None:
        return None
    return str(value).rsplit("/", 1)[-1]


class ShopifyClient:
    """
    Async client for one Shopify store.

    Hybrid REST + GraphQL, the same split the Admin API itself encourages:
      GraphQL: product title/status updates, archive, delete
      REST:    product create (with its first variant), variant price,
               inventory_levels/set

    Every response is classified into the remote error taxonomy:
      429 / GraphQL THROTTLED     -> RemoteRateLimitedError (retry_after)
      5xx / network / timeout     -> RemoteTransientError
      other 4xx / userErrors      -> RemoteTerminalError

    Call-limit usage (REST header, GraphQL throttleStatus) is reported to the
    governor when one is attached. The client does not gate calls itself;
    callers wrap each operation in RateGovernor.execute.
    """

    def __init__(
        self,
        store: ShopifyStore,
        governor=None,
        api_version: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        if not store.access_token:
            raise ValueError(f"Store {store.key} has no Admin API access token configured")

        self.store_key = store.key
        self.service_key = store.service_key
        self.domain = store.domain
        self.api_version = api_version or store.api_version or settings.SHOPIFY_API_VERSION
        self.timeout = timeout or settings.SHOPIFY_HTTP_TIMEOUT
        self.governor = governor
        self._transport = transport
        self.base_url = f"https://{self.domain}/admin/api/{self.api_version}"
        self.headers = {
            "X-Shopify-Access-Token": store.access_token,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    # --- infrastructure ---

    def _record_usage(self, used: Optional[float], limit: Optional[float]) -> None:
        if self.governor is not None and used is not None and limit:
            self.governor.record_usage(self.service_key, used, limit)

    def _record_rest_usage(self, response: httpx.Response) -> None:
        header = response.headers.get("X-Shopify-Shop-Api-Call-Limit")
        if not header or "/" not in header:
            return
        try:
            used, limit = (float(part) for part in header.split("/", 1))
        except ValueError:
            return
        self._record_usage(used, limit)

    def _record_graphql_usage(self, extensions: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        throttle = ((extensions or {}).get("cost") or {}).get("throttleStatus")
        if not throttle:
            return None
        maximum = float(throttle.get("maximumAvailable") or 0)
        available = float(throttle.get("currentlyAvailable") or 0)
        self._record_usage(maximum - available, maximum)
        return throttle

    @staticmethod
    def _retry_after(response: httpx.Response) -> float:
        header = response.headers.get("Retry-After")
        try:
            return float(header) if header else DEFAULT_RETRY_AFTER_SECONDS
        except ValueError:
            return DEFAULT_RETRY_AFTER_SECONDS

    async def _send(self, method: str, path: str, json: Optional[Dict] = None) -> httpx.Response:
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.request(method, url, headers=self.headers, json=json)
        except httpx.TimeoutException as e:
            raise RemoteTransientError(f"Shopify request timed out: {e}") from e
        except httpx.RequestError as e:
            raise RemoteTransientError(f"Network error talking to Shopify: {e}") from e

        if response.status_code == 429:
            retry_after = self._retry_after(response)
            logger.warning("Shopify 429 for %s %s (Retry-After %.1fs)", method, path, retry_after)
            raise RemoteRateLimitedError("Shopify rate limit exceeded", retry_after=retry_after)
        if response.status_code >= 500:
            raise RemoteTransientError(
                f"Shopify {response.status_code} for {method} {path}: {response.text[:500]}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise RemoteTerminalError(
                f"Shopify {response.status_code} for {method} {path}: {response.text[:500]}",
                status_code=response.status_code,
            )
        return response

    async def rest(self, method: str, path: str, json: Optional[Dict] = None) -> Dict[str, Any]:
        response = await self._send(method, path, json)
        self._record_rest_usage(response)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise RemoteTransientError(f"Invalid JSON from Shopify REST {path}") from e

    async def graphql(self, query: str, variables: Optional[Dict] = None) -> Dict[str, Any]:
        payload = {"query": query}
        if variables:
            payload["variables"] = variables
        response = await self._send("POST", "graphql.json", payload)
        try:
            body = response.json()
        except ValueError as e:
            raise RemoteTransientError("Invalid JSON from Shopify GraphQL") from e

        throttle = self._record_graphql_usage(body.get("extensions"))
        errors = body.get("errors") or []
        if errors:
            if any((err.get("extensions") or {}).get("code") == "THROTTLED" for err in errors):
                retry_after = DEFAULT_RETRY_AFTER_SECONDS
                if throttle and float(throttle.get("restoreRate") or 0) > 0:
                    requested = float(((body.get("extensions") or {}).get("cost") or {}).get("requestedQueryCost") or 0)
                    missing = max(requested - float(throttle.get("currentlyAvailable") or 0), 0)
                    retry_after = max(missing / float(throttle["restoreRate"]), 1.0)
                raise RemoteRateLimitedError("Shopify GraphQL THROTTLED", retry_after=retry_after)
            messages = "; ".join(err.get("message", "Unknown error") for err in errors)
            raise RemoteTerminalError(f"GraphQL errors: {messages}")
        return body.get("data") or {}

    @staticmethod
    def _raise_user_errors(result: Optional[Dict[str, Any]], operation: str) -> Dict[str, Any]:
        if result is None:
            raise RemoteTerminalError(f"{operation} returned no result")
        user_errors = result.get("userErrors") or []
        if user_errors:
            messages = "; ".join(f"{e.get('field')}: {e.get('message')}" for e in user_errors)
            raise RemoteTerminalError(f"{operation} userErrors: {messages}")
        return result

    # --- product operations ---

    async def create_product(
        self,
        *,
        sku: str,
        title: Optional[str],
        price: Optional[float],
    ) -> Dict[str, Optional[str]]:
        """
        Create a product with a single tracked variant; returns its remote ids.

        Stock is not set here. The caller records the ids first and schedules
        the level as a separate step, so a failed level call never repeats the
        product POST.
        """
        variant = {
            "sku": sku,
            "inventory_management": "shopify",
            "inventory_policy": "deny",
        }
        if price is not None:
            variant["price"] = f"{price:.2f}"
        body = await self.rest("POST", "products.json", {
            "product": {"title": title or sku, "status": "active", "variants": [variant]}
        })
        product = body.get("product") or {}
        variants = product.get("variants") or [{}]
        ids = {
            "product_id": numeric_id(product.get("id")),
            "variant_id": numeric_id(variants[0].get("id")),
            "inventory_item_id": numeric_id(variants[0].get("inventory_item_id")),
        }
        if not ids["product_id"]:
            raise RemoteTerminalError(f"Shopify did not return a product id for {sku}")
        logger.info("Created Shopify product %s for sku %s on %s", ids["product_id"], sku, self.store_key)
        return ids

    async def update_product(
        self,
        product_id: str,
        *,
        title: Optional[str] = None,
        variant_id: Optional[str] = None,
        price: Optional[float] = None,
    ) -> Dict[str, Any]:
        if title:
            data = await self.graphql(
                """
                mutation productUpdate($input: ProductInput!) {
                  productUpdate(input: $input) {
                    product { id title }
                    userErrors { field message }
                  }
                }
                """,
                {"input": {"id": to_gid("Product", product_id), "title": title}},
            )
            self._raise_user_errors(data.get("productUpdate"), "productUpdate")

        if variant_id and price is not None:
            await self.rest("PUT", f"variants/{numeric_id(variant_id)}.json", {
                "variant": {"id": int(numeric_id(variant_id)), "price": f"{price:.2f}"}
            })
        return {"product_id": numeric_id(product_id)}

    async def archive_product(self, product_id: str) -> Dict[str, Any]:
        data = await self.graphql(
            """
            mutation productUpdate($input: ProductInput!) {
              productUpdate(input: $input) {
                product { id status }
                userErrors { field message }
              }
            }
            """,
            {"input": {"id": to_gid("Product", product_id), "status": "ARCHIVED"}},
        )
        self._raise_user_errors(data.get("productUpdate"), "productUpdate")
        logger.info("Archived Shopify product %s on %s", product_id, self.store_key)
        return {"product_id": numeric_id(product_id), "status": "ARCHIVED"}

    async def delete_product(self, product_id: str) -> Dict[str, Any]:
        data = await self.graphql(
            """
            mutation productDelete($input: ProductDeleteInput!) {
              productDelete(input: $input) {
                deletedProductId
                userErrors { field message }
              }
            }
            """,
            {"input": {"id": to_gid("Product", product_id)}},
        )
        result = self._raise_user_errors(data.get("productDelete"), "productDelete")
        logger.info("Deleted Shopify product %s on %s", product_id, self.store_key)
        return {"deleted_product_id": numeric_id(result.get("deletedProductId"))}

    async def set_inventory_level(self, inventory_item_id: str, location_gid: str, quantity: int) -> Dict[str, Any]:
        """Absolute level at one location (REST inventory_levels/set)."""
        body = await self.rest("POST", "inventory_levels/set.json", {
            "location_id": int(location_numeric_id(location_gid)),
            "inventory_item_id": int(numeric_id(inventory_item_id)),
            "available": max(int(quantity), 0),
        })
        return body.get("inventory_level") or {}
