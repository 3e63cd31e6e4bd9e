import json

import httpx
import pytest

from dashsync.config import Settings
from dashsync.session import DashSyncSession


class FakeDashboardServer:
    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/api/events/stream":
            frames = [
                {"type": "flow-started", "flowId": "f1", "data": {"type": "chat"}},
                {"kind": "usage-update", "payload": {"tokens": 10}},
                {"type": "metrics-update", "data": {"metrics": {"activeFlows": 1}}},
            ]
            body = "".join(f"data: {json.dumps(frame)}\n\n" for frame in frames)
            return httpx.Response(200, content=body.encode())
        if path == "/api/dashboard/summary":
            return httpx.Response(200, json={"success": True, "data": {"totalCost": 4.2}})
        return httpx.Response(404, json={"error": "not found"})

    def paths(self) -> list[str]:
        return [request.url.path for request in self.requests]


@pytest.mark.asyncio
async def test_session_wires_stream_into_views_and_cache() -> None:
    server = FakeDashboardServer()
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(server))
    settings = Settings(
        api_base_url="http://testserver/api",
        access_token="tok",
        refresh_token="r1",
        max_reconnect_attempts=0,
    )
    session = DashSyncSession.from_settings(settings, http_client=http_client)

    assert await session.dashboard.get_summary() == {"totalCost": 4.2}
    assert "dashboard:all" in session.cache

    session.start()
    await session.stream.join()

    assert session.flows.active_flow_ids == ["f1"]
    assert session.flows.metrics == {"activeFlows": 1}
    assert "dashboard:all" not in session.cache
    assert server.requests[-1].url.params.get("token") == "tok"

    await session.aclose()
    await session.aclose()

    assert session.bus.handler_count() == 0
    assert not http_client.is_closed
    await http_client.aclose()
