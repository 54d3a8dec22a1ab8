"""Tests for MemoryTransport and status classification."""

import pytest

from converge import (
    MemoryTransport,
    PermanentApplicationError,
    PermanentClientError,
    ProblemDetails,
    Request,
    Response,
    StaticTokenProvider,
    Transport,
    TransientServerError,
    UnauthorizedError,
)
from converge.transport import raise_for_status


class TestRaiseForStatus:
    """Tests for raise_for_status."""

    def test_success_passes(self) -> None:
        """Test that 2xx and 3xx statuses do not raise."""
        raise_for_status(200)
        raise_for_status(204)
        raise_for_status(304)

    def test_server_errors_are_transient(self) -> None:
        """Test that 5xx raises TransientServerError with the body."""
        with pytest.raises(TransientServerError) as exc_info:
            raise_for_status(503, "busy")
        assert exc_info.value.status == 503
        assert exc_info.value.body == "busy"

    def test_unauthorized(self) -> None:
        """Test that 401 raises UnauthorizedError."""
        with pytest.raises(UnauthorizedError) as exc_info:
            raise_for_status(401)
        assert exc_info.value.status == 401

    def test_problem_details(self) -> None:
        """Test that problem details become PermanentApplicationError."""
        body = {
            "type": "https://example.com/out-of-stock",
            "title": "Out of stock",
            "status": 409,
            "detail": "Only 2 left",
            "sku": "lamp-1",
        }
        with pytest.raises(PermanentApplicationError) as exc_info:
            raise_for_status(409, body)
        error = exc_info.value
        assert error.status == 409
        assert str(error) == "Only 2 left"
        assert error.problem.extensions == {"sku": "lamp-1"}

    def test_other_client_errors(self) -> None:
        """Test that other 4xx bodies raise PermanentClientError."""
        with pytest.raises(PermanentClientError) as exc_info:
            raise_for_status(404, {"detail": "missing"})
        assert not isinstance(exc_info.value, PermanentApplicationError)
        assert exc_info.value.body == {"detail": "missing"}


class TestProblemDetails:
    """Tests for ProblemDetails parsing."""

    def test_from_dict(self) -> None:
        """Test that unknown members land in extensions."""
        problem = ProblemDetails.from_dict(
            {
                "title": "Invalid",
                "status": 400,
                "errors": {"name": ["required"]},
                "traceId": "abc",
            }
        )
        assert problem.title == "Invalid"
        assert problem.status == 400
        assert problem.errors == {"name": ["required"]}
        assert problem.extensions == {"traceId": "abc"}

    def test_looks_like(self) -> None:
        """Test detection of problem details bodies."""
        assert ProblemDetails.looks_like({"title": "x", "status": 400})
        assert not ProblemDetails.looks_like({"title": "x"})
        assert not ProblemDetails.looks_like(["title"])


class TestMemoryTransport:
    """Tests for MemoryTransport routing."""

    def test_is_transport(self) -> None:
        """Test that MemoryTransport satisfies the Transport protocol."""
        assert isinstance(MemoryTransport(), Transport)

    async def test_routes_with_path_params(self) -> None:
        """Test that path parameters are passed to the handler."""
        transport = MemoryTransport()

        @transport.route("GET", "/products/{id}")
        def get_product(request: Request, id: str) -> dict:
            return {"id": id}

        response = await transport.send(Request("GET", "/products/42"))
        assert response == Response(200, {"id": "42"})
        assert response.ok

    async def test_none_is_no_content(self) -> None:
        """Test that a handler returning None answers 204."""
        transport = MemoryTransport()
        transport.route("DELETE", "/products/{id}", lambda request, id: None)
        response = await transport.send(Request("DELETE", "/products/1"))
        assert response.status == 204

    async def test_async_handler_and_error_status(self) -> None:
        """Test that async handlers can return error responses."""
        transport = MemoryTransport()

        async def failing(request: Request) -> Response:
            return Response(502)

        transport.route("POST", "/orders", failing)
        with pytest.raises(TransientServerError):
            await transport.send(Request("POST", "/orders", json={}))

    async def test_unknown_route_is_404(self) -> None:
        """Test that an unrouted path answers 404."""
        with pytest.raises(PermanentClientError) as exc_info:
            await MemoryTransport().send(Request("GET", "/nowhere"))
        assert exc_info.value.status == 404

    async def test_records_calls_with_auth_headers(self) -> None:
        """Test that calls are recorded with their auth headers."""
        transport = MemoryTransport(auth=StaticTokenProvider("secret"))
        transport.route("GET", "/me", lambda request: {"id": "me"})

        await transport.send(Request("GET", "/me/"))

        (call,) = transport.calls
        assert call.headers["Authorization"] == "Bearer secret"
        assert transport.calls_to("get", "/me/") == [call]
