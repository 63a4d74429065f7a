"""
Shopify Storefront API Client
Cart creation and variant validation behind a circuit breaker
"""

from dataclasses import dataclass
from typing import Dict, List, Optional
import logging

import httpx
import pybreaker

from app.config import settings
from app.services.checkout_errors import (
    CircuitOpenError,
    UpstreamError,
    UpstreamTimeout,
    UpstreamUnknownError,
    UpstreamUserError,
)
from app.services.monitoring.circuit_breakers import get_shopify_breaker, seconds_until_half_open

logger = logging.getLogger(__name__)

VARIANT_GID_PREFIX = "gid://shopify/ProductVariant/"

CART_CREATE_MUTATION = """
mutation cartCreate($input: CartInput!) {
  cartCreate(input: $input) {
    cart {
      id
      checkoutUrl
    }
    userErrors {
      field
      message
    }
  }
}
"""

VALIDATE_VARIANTS_QUERY = """
query validateVariants($ids: [ID!]!) {
  nodes(ids: $ids) {
    ... on ProductVariant {
      id
      availableForSale
    }
  }
}
"""


@dataclass
class CartCreateResult:
    cart_id: str
    checkout_url: str


def variant_gid(variant_id: int) -> str:
    return f"{VARIANT_GID_PREFIX}{variant_id}"


class ShopifyStorefrontClient:
    """
    Client for the Shopify Storefront GraphQL API

    Every request goes through the Shopify circuit breaker. Failures surface as:
    - CircuitOpenError: breaker open, no network attempt made
    - UpstreamTimeout: no response within the configured timeout
    - UpstreamUserError: Shopify rejected specific inputs
    - UpstreamUnknownError: anything else
    """

    def __init__(
        self,
        http_client: Optional[httpx.Client] = None,
        breaker: Optional[pybreaker.CircuitBreaker] = None,
        storefront_token: Optional[str] = None,
        domain: Optional[str] = None,
        api_version: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.storefront_token = storefront_token or settings.shopify_storefront_token
        domain = domain or settings.shopify_domain
        api_version = api_version or settings.shopify_api_version
        self.endpoint = f"https://{domain}/api/{api_version}/graphql.json"
        self.timeout = timeout_seconds or settings.shopify_timeout_seconds
        self.http_client = http_client or httpx.Client(timeout=self.timeout)
        self.breaker = breaker or get_shopify_breaker()

        if not self.storefront_token:
            logger.warning("SHOPIFY_STOREFRONT_TOKEN not configured - cart creation will fail")

    def _post(self, query: str, variables: Dict, request_id: str) -> Dict:
        try:
            response = self.http_client.post(
                self.endpoint,
                json={"query": query, "variables": variables},
                headers={
                    "Content-Type": "application/json",
                    "X-Shopify-Storefront-Access-Token": self.storefront_token,
                },
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            logger.error(f"Shopify request timed out after {self.timeout}s", extra={"request_id": request_id})
            raise UpstreamTimeout("Shopify request timeout") from e
        except httpx.HTTPError as e:
            logger.error(f"Shopify transport error: {type(e).__name__}", extra={"request_id": request_id})
            raise UpstreamUnknownError(f"Shopify transport error: {type(e).__name__}") from e

        if response.status_code >= 400:
            logger.error(
                f"Shopify API HTTP error: {response.status_code}",
                extra={"request_id": request_id, "status": response.status_code}
            )
            raise UpstreamUnknownError(f"Shopify API error: {response.status_code}")

        try:
            result = response.json()
        except ValueError as e:
            raise UpstreamUnknownError("Shopify returned invalid JSON") from e

        if result.get("errors"):
            first = result["errors"][0] if isinstance(result["errors"], list) else {}
            message = first.get("message") if isinstance(first, dict) else None
            logger.error("Shopify GraphQL errors", extra={"request_id": request_id})
            raise UpstreamUnknownError(message or "Shopify GraphQL error")

        data = result.get("data")
        if not isinstance(data, dict):
            raise UpstreamUnknownError("Shopify response missing data")

        return data

    def query(self, query: str, variables: Dict, request_id: str) -> Dict:
        """
        Execute a Storefront GraphQL query through the circuit breaker.

        Args:
            query: GraphQL document
            variables: GraphQL variables
            request_id: Correlation id for logs

        Returns:
            The response "data" object
        """
        if not self.storefront_token:
            raise UpstreamUnknownError("SHOPIFY_STOREFRONT_TOKEN not configured")

        try:
            return self.breaker.call(self._post, query, variables, request_id)
        except pybreaker.CircuitBreakerError as e:
            # A failed half-open trial reports the breaker error; the real cause is chained
            cause = e.__cause__ or e.__context__
            if isinstance(cause, UpstreamError):
                raise cause
            retry_after = seconds_until_half_open(self.breaker)
            logger.warning(
                f"Shopify circuit open, failing fast (retry after {retry_after}s)",
                extra={"request_id": request_id}
            )
            raise CircuitOpenError(
                "Shopify temporarily unavailable",
                retry_after=retry_after
            ) from e

    def validate_variant_ids(self, variant_ids: List[int], request_id: str) -> None:
        """
        Check that every variant exists and is available for sale.

        Raises:
            UpstreamUserError: listing each missing or unavailable variant
        """
        data = self.query(
            VALIDATE_VARIANTS_QUERY,
            {"ids": [variant_gid(v) for v in variant_ids]},
            request_id
        )
        nodes = data.get("nodes") or []

        errors = []
        for index, variant_id in enumerate(variant_ids):
            node = nodes[index] if index < len(nodes) else None
            if not node:
                errors.append(f"Variant {variant_id} does not exist")
            elif not node.get("availableForSale"):
                errors.append(f"Variant {variant_id} is not available for sale")

        if errors:
            logger.warning(
                f"Variant validation failed: {len(errors)} invalid",
                extra={"request_id": request_id}
            )
            raise UpstreamUserError("Invalid products in routine", details=errors)

    def create_cart(
        self,
        variant_ids: List[int],
        attributes: List[Dict[str, str]],
        note: str,
        request_id: str,
        discount_codes: Optional[List[str]] = None,
    ) -> CartCreateResult:
        """
        Create a cart with one line per variant.

        Args:
            variant_ids: Ordered Shopify variant ids (quantity 1 each)
            attributes: Cart attributes as [{"key": ..., "value": ...}]
            note: Cart note
            request_id: Correlation id for logs
            discount_codes: Optional discount codes

        Returns:
            CartCreateResult with cart id and checkout URL

        Raises:
            UpstreamUserError: Shopify returned userErrors
            UpstreamUnknownError: no cart and no userErrors
        """
        cart_input = {
            "lines": [
                {"merchandiseId": variant_gid(v), "quantity": 1}
                for v in variant_ids
            ],
            "attributes": attributes,
            "note": note,
        }
        if discount_codes:
            cart_input["discountCodes"] = discount_codes

        data = self.query(CART_CREATE_MUTATION, {"input": cart_input}, request_id)
        payload = data.get("cartCreate") or {}

        user_errors = payload.get("userErrors") or []
        if user_errors:
            messages = [e.get("message", "unknown error") for e in user_errors]
            raise UpstreamUserError(messages[0], details=messages)

        cart = payload.get("cart")
        if not cart or not cart.get("id") or not cart.get("checkoutUrl"):
            raise UpstreamUnknownError("No cart returned from Shopify")

        logger.info("Shopify cart created", extra={"request_id": request_id})
        return CartCreateResult(cart_id=cart["id"], checkout_url=cart["checkoutUrl"])
