import httpx
import pytest

from services.common.resilience import CircuitBreaker, CircuitOpenError, CircuitState, RetryPolicy
from services.order.app.cart_client import CartClient, CartServiceError

CART = {"id": "cart-1", "userId": "user-1", "items": []}


class Script:
    """Answers requests from a list of responses (or exceptions), in order."""

    def __init__(self, *steps) -> None:
        self.steps = list(steps)
        self.calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        step = self.steps.pop(0) if len(self.steps) > 1 else self.steps[0]
        if isinstance(step, Exception):
            raise step
        return step


def make_client(script: Script, attempts: int = 3, threshold: int = 5) -> CartClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(script), base_url="http://cart")
    return CartClient(
        http,
        CircuitBreaker("cart-service", failure_threshold=threshold, reset_timeout=60.0),
        RetryPolicy(max_attempts=attempts, base_delay=0.001, max_delay=0.002),
    )


async def test_get_cart_unwraps_data_envelope():
    client = make_client(Script(httpx.Response(200, json={"success": True, "data": CART})))
    cart = await client.get_cart("cart-1", "tok")
    assert cart.id == "cart-1"
    assert cart.user_id == "user-1"


async def test_server_errors_are_retried():
    script = Script(httpx.Response(503), httpx.Response(502), httpx.Response(200, json=CART))
    client = make_client(script)

    cart = await client.get_cart("cart-1", "tok")

    assert cart.id == "cart-1"
    assert script.calls == 3


async def test_transport_errors_are_retried_then_reported():
    script = Script(httpx.ConnectError("connection refused"))
    client = make_client(script, attempts=2)

    with pytest.raises(CartServiceError, match="unreachable"):
        await client.get_cart("cart-1", "tok")
    assert script.calls == 2


async def test_client_errors_fail_fast_with_status():
    script = Script(httpx.Response(404, json={"error": "not found"}))
    client = make_client(script)

    with pytest.raises(CartServiceError) as info:
        await client.get_cart("cart-1", "tok")

    assert info.value.status_code == 404
    assert script.calls == 1


async def test_circuit_opens_and_short_circuits_calls():
    script = Script(httpx.Response(500))
    client = make_client(script, attempts=1, threshold=2)

    for _ in range(2):
        with pytest.raises(CartServiceError):
            await client.get_cart("cart-1", "tok")
    assert client.breaker.state is CircuitState.OPEN

    with pytest.raises(CircuitOpenError):
        await client.get_cart("cart-1", "tok")
    assert script.calls == 2
