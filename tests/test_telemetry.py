import asyncio
import json

import httpx

from webflasher.flashing.classifier import ErrorCategory
from webflasher.flashing.telemetry import TelemetryClient
from webflasher.services.guard_pipeline import RawRequest

BASE = "https://flasher.example.com/api/v1/flash"


class FakeServer:
    def __init__(self, log_status=200):
        self.log_status = log_status
        self.posts = []
        self.count_reads = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/log"):
            self.posts.append(json.loads(request.content))
            return httpx.Response(self.log_status, json={"success": True})
        if request.url.path.endswith("/counts"):
            self.count_reads += 1
            return httpx.Response(200, json={"Blink": {"total": 1, "success": 1, "failed": 0}})
        return httpx.Response(404)


def run_with_client(server, body):
    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(server)) as client:
            return await body(client)

    return asyncio.run(scenario())


def test_success_report_refreshes_counts():
    server = FakeServer()
    seen = []

    async def body(client):
        telemetry = TelemetryClient(BASE, client=client, on_counts=seen.append)
        return await telemetry.report(project="Blink", action="flash", success=True)

    assert run_with_client(server, body) is True
    assert server.posts[0]["project"] == "Blink"
    assert server.posts[0]["success"] is True
    assert "error" not in server.posts[0]
    assert "errorCategory" not in server.posts[0]
    assert server.count_reads == 1
    assert seen == [{"Blink": {"total": 1, "success": 1, "failed": 0}}]


def test_failure_report_carries_category_and_context():
    server = FakeServer()

    async def body(client):
        telemetry = TelemetryClient(BASE, client=client)
        return await telemetry.report(
            project="Blink",
            action="flash",
            success=False,
            error="Timeout waiting for packet header",
            context={"stage": "connecting"},
        )

    run_with_client(server, body)
    post = server.posts[0]
    assert post["errorCategory"] == "connection_timeout"
    assert post["context"] == {"stage": "connecting"}


def test_server_rejection_is_swallowed():
    server = FakeServer(log_status=429)

    async def body(client):
        telemetry = TelemetryClient(BASE, client=client)
        return await telemetry.report(project="Blink", action="flash", success=True)

    assert run_with_client(server, body) is False
    assert server.count_reads == 0


def test_network_error_is_swallowed():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async def body(client):
        telemetry = TelemetryClient(BASE, client=client)
        return await telemetry.report(project="Blink", action="flash", success=True)

    assert run_with_client(handler, body) is False


def test_disabled_client_sends_nothing():
    server = FakeServer()

    async def body(client):
        telemetry = TelemetryClient(BASE, enabled=False, client=client)
        telemetry.submit(project="Blink", action="flash", success=True)
        await telemetry.flush()
        return await telemetry.report(project="Blink", action="flash", success=True)

    assert run_with_client(server, body) is False
    assert server.posts == []


def test_submit_then_flush():
    server = FakeServer()

    async def body(client):
        telemetry = TelemetryClient(BASE, client=client)
        telemetry.submit(project="Blink", action="flash", success=True)
        await telemetry.flush()

    run_with_client(server, body)
    assert len(server.posts) == 1


def test_unsupported_host_report():
    server = FakeServer()

    async def body(client):
        telemetry = TelemetryClient(BASE, client=client)
        telemetry.report_unsupported_host()
        await telemetry.flush()

    run_with_client(server, body)
    post = server.posts[0]
    assert post["project"] == "NA"
    assert post["action"] == "browser_check"
    assert post["success"] is False
    assert post["errorCategory"] == ErrorCategory.WRONG_BROWSER.value
    assert post["context"]["browser"]["serial"] is False


def test_unsupported_host_name_survives_server_sanitizing(pipeline, store):
    def server(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/counts"):
            return httpx.Response(200, json=store.counts())
        result = pipeline.handle(RawRequest(method="POST", body=request.content, client_ip="198.51.100.4"))
        return httpx.Response(result.status, json=result.body)

    async def body(client):
        telemetry = TelemetryClient(BASE, client=client)
        telemetry.report_unsupported_host()
        await telemetry.flush()

    run_with_client(server, body)
    assert store.counts() == {"NA": {"total": 1, "success": 0, "failed": 1}}
    assert store.error_log()["entries"][0]["project"] == "NA"
