"""
Order Service — cart service client

Every call goes through the circuit breaker first and is retried with
backoff on top of it:

    with_retry(lambda: breaker.call(request), policy)

Only transport errors and 5xx responses are retried. A 4xx is the caller's
problem and fails fast; CircuitOpenError is never retried.
"""

import logging
from decimal import Decimal

import httpx

from services.common.events import CamelModel
from services.common.resilience import CircuitBreaker, RetryPolicy, with_retry

logger = logging.getLogger(__name__)


class CartItem(CamelModel):
    product_id: str
    product_name: str
    product_sku: str
    quantity: int
    unit_price: Decimal


class Cart(CamelModel):
    id: str
    user_id: str
    items: list[CartItem] = []
    total: Decimal = Decimal("0")


class CartServiceError(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return False


class CartClient:
    def __init__(
        self,
        http: httpx.AsyncClient,
        breaker: CircuitBreaker,
        policy: RetryPolicy = RetryPolicy(),
    ) -> None:
        self.http = http
        self.breaker = breaker
        self.policy = policy

    async def _request(self, method: str, path: str, token: str) -> httpx.Response:
        async def send() -> httpx.Response:
            response = await self.http.request(
                method, path, headers={"Authorization": f"Bearer {token}"}
            )
            response.raise_for_status()
            return response

        try:
            return await with_retry(
                lambda: self.breaker.call(send), self.policy, retryable=is_retryable
            )
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            logger.error("Cart service %s %s returned %d", method, path, status)
            raise CartServiceError(f"Cart service returned {status}", status) from exc
        except httpx.TransportError as exc:
            logger.error("Cart service %s %s unreachable: %s", method, path, exc)
            raise CartServiceError(f"Cart service unreachable: {exc}") from exc

    async def get_cart(self, cart_id: str, token: str) -> Cart:
        response = await self._request("GET", f"/carts/{cart_id}", token)
        body = response.json()
        # the cart service wraps payloads as {"success": ..., "data": {...}}
        if isinstance(body, dict) and "data" in body:
            body = body["data"]
        return Cart.model_validate(body)

    async def clear_cart(self, cart_id: str, token: str) -> None:
        await self._request("DELETE", f"/carts/{cart_id}", token)
