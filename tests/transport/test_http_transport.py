"""Tests for HttpTransport using mocked HTTP responses."""

import json

import pytest

# Skip all tests if httpx is not installed
pytest.importorskip("httpx")

import httpx
import respx

from converge import (
    MalformedResponseError,
    PermanentApplicationError,
    PermanentClientError,
    Request,
    RequestTimeoutError,
    RestResource,
    RetryPolicy,
    StaticTokenProvider,
    TransientNetworkError,
    TransientServerError,
    UnauthorizedError,
    create_client,
)
from converge.transport.http import HttpTransport

BASE_URL = "https://api.test.dev"


@pytest.fixture
def http_transport() -> HttpTransport:
    """Create an HttpTransport with a bearer token."""
    return HttpTransport(f"{BASE_URL}/", auth=StaticTokenProvider("secret"))


class TestRequests:
    """Tests for request encoding."""

    def test_base_url_normalized(self, http_transport: HttpTransport) -> None:
        """Test that the trailing slash is stripped."""
        assert http_transport.base_url == BASE_URL

    @respx.mock
    async def test_get_sends_params_and_headers(
        self, http_transport: HttpTransport
    ) -> None:
        """Test that GET sends query params with auth and Accept headers."""
        route = respx.get(f"{BASE_URL}/customers?page=1").mock(
            return_value=httpx.Response(200, json=[{"id": "1"}])
        )

        response = await http_transport.send(
            Request("GET", "/customers", params={"page": 1})
        )

        assert response.status == 200
        assert response.data == [{"id": "1"}]
        request = route.calls[0].request
        assert request.headers["Authorization"] == "Bearer secret"
        assert request.headers["Accept"] == "application/json"

    @respx.mock
    async def test_post_sends_json_and_idempotency_key(
        self, http_transport: HttpTransport
    ) -> None:
        """Test that POST sends the JSON body and Idempotency-Key."""
        route = respx.post(f"{BASE_URL}/orders").mock(
            return_value=httpx.Response(201, json={"id": "o1"})
        )

        response = await http_transport.send(
            Request("POST", "/orders", json={"sku": "lamp"}, idempotency_key="k1")
        )

        assert response.data == {"id": "o1"}
        request = route.calls[0].request
        assert json.loads(request.content) == {"sku": "lamp"}
        assert request.headers["Idempotency-Key"] == "k1"

    async def test_injected_client_not_closed(self) -> None:
        """Test that a caller's httpx client stays open."""
        client = httpx.AsyncClient(base_url=BASE_URL)
        transport = HttpTransport(BASE_URL, client=client)
        await transport.aclose()
        assert not client.is_closed
        await client.aclose()


class TestResponses:
    """Tests for response decoding and classification."""

    @respx.mock
    async def test_no_content(self, http_transport: HttpTransport) -> None:
        """Test that 204 decodes to None."""
        respx.delete(f"{BASE_URL}/orders/1").mock(return_value=httpx.Response(204))
        response = await http_transport.send(Request("DELETE", "/orders/1"))
        assert response.status == 204
        assert response.data is None

    @respx.mock
    async def test_text_body(self, http_transport: HttpTransport) -> None:
        """Test that non-JSON bodies decode to text."""
        respx.get(f"{BASE_URL}/health").mock(
            return_value=httpx.Response(200, text="ok")
        )
        response = await http_transport.send(Request("GET", "/health"))
        assert response.data == "ok"

    @respx.mock
    async def test_invalid_json_is_malformed(self, http_transport: HttpTransport) -> None:
        """Test that broken JSON raises MalformedResponseError."""
        respx.get(f"{BASE_URL}/customers").mock(
            return_value=httpx.Response(
                200, content=b"{not json", headers={"content-type": "application/json"}
            )
        )
        with pytest.raises(MalformedResponseError):
            await http_transport.send(Request("GET", "/customers"))

    @respx.mock
    async def test_server_error(self, http_transport: HttpTransport) -> None:
        """Test that 5xx raises TransientServerError."""
        respx.get(f"{BASE_URL}/customers").mock(return_value=httpx.Response(503))
        with pytest.raises(TransientServerError) as exc_info:
            await http_transport.send(Request("GET", "/customers"))
        assert exc_info.value.status == 503

    @respx.mock
    async def test_unauthorized(self, http_transport: HttpTransport) -> None:
        """Test that 401 raises UnauthorizedError."""
        respx.get(f"{BASE_URL}/me").mock(return_value=httpx.Response(401))
        with pytest.raises(UnauthorizedError):
            await http_transport.send(Request("GET", "/me"))

    @respx.mock
    async def test_problem_details(self, http_transport: HttpTransport) -> None:
        """Test that problem+json bodies become PermanentApplicationError."""
        body = {"type": "about:blank", "title": "Out of stock", "status": 409}
        respx.post(f"{BASE_URL}/orders").mock(
            return_value=httpx.Response(
                409,
                content=json.dumps(body).encode(),
                headers={"content-type": "application/problem+json"},
            )
        )
        with pytest.raises(PermanentApplicationError) as exc_info:
            await http_transport.send(Request("POST", "/orders", json={}))
        assert exc_info.value.problem.title == "Out of stock"

    @respx.mock
    async def test_client_error(self, http_transport: HttpTransport) -> None:
        """Test that other 4xx raise PermanentClientError."""
        respx.get(f"{BASE_URL}/orders/9").mock(
            return_value=httpx.Response(404, json={"detail": "missing"})
        )
        with pytest.raises(PermanentClientError) as exc_info:
            await http_transport.send(Request("GET", "/orders/9"))
        assert exc_info.value.status == 404

    @respx.mock
    async def test_timeout(self, http_transport: HttpTransport) -> None:
        """Test that an httpx timeout becomes RequestTimeoutError."""
        respx.get(f"{BASE_URL}/slow").mock(side_effect=httpx.ReadTimeout)
        with pytest.raises(RequestTimeoutError):
            await http_transport.send(Request("GET", "/slow"))

    @respx.mock
    async def test_connection_error(self, http_transport: HttpTransport) -> None:
        """Test that connection failures become TransientNetworkError."""
        respx.get(f"{BASE_URL}/down").mock(side_effect=httpx.ConnectError)
        with pytest.raises(TransientNetworkError):
            await http_transport.send(Request("GET", "/down"))


class TestClientOverHttp:
    """End-to-end tests through create_client."""

    @respx.mock
    async def test_update_retried_until_success(self, retry: RetryPolicy) -> None:
        """Test that an update retries 503s over HTTP and lands in the cache."""
        respx.get(f"{BASE_URL}/customers/1").mock(
            return_value=httpx.Response(200, json={"id": "1", "name": "Ada"})
        )
        route = respx.put(f"{BASE_URL}/customers/1").mock(
            side_effect=[
                httpx.Response(503),
                httpx.Response(503),
                httpx.Response(200, json={"id": "1", "name": "Ada L."}),
            ]
        )

        async with create_client(base_url=f"{BASE_URL}/", retry=retry) as client:
            customers = RestResource(client, "customers")
            assert await customers.get("1") == {"id": "1", "name": "Ada"}

            await customers.update("1", {"name": "Ada L."})

            assert route.call_count == 3
            assert client.get_query_data(customers.detail_key("1")) == {
                "id": "1",
                "name": "Ada L.",
            }
