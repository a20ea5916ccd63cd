"""End-to-end tests for the HTTP boundary."""

from __future__ import annotations

import asyncio
from unittest.mock import patch

import httpx
import pytest
from fastapi.testclient import TestClient

from foundry_proxy.agents import RunError, RunStatus
from foundry_proxy.api import chat
from foundry_proxy.errors import TurnCancelledError, UpstreamAuthError
from foundry_proxy.health import IdentityCheck, IdentityState
from foundry_proxy.main import create_app
from foundry_proxy.poller import PollingPolicy, RunPoller
from foundry_proxy.schemas import ChatRequest
from foundry_proxy.session import ConversationSessionManager
from tests.helpers import FakeAgentClient, make_settings


class ActiveIdentity:
    def check(self) -> IdentityCheck:
        return IdentityCheck(IdentityState.ACTIVE, "test identity")


def _app(client: FakeAgentClient | None = None, **overrides):
    return create_app(make_settings(**overrides), client=client or FakeAgentClient(), identity_probe=ActiveIdentity())


class TestChatEndpoint:
    def test_new_conversation(self):
        fake = FakeAgentClient()
        with TestClient(_app(fake)) as client:
            response = client.post("/api/chat", json={"threadId": "", "message": "Hello"})

        assert response.status_code == 200
        body = response.json()
        assert body["threadId"] == "thread_1"
        assert body["response"] == "Hello from the agent"
        assert body["agentName"] == "Test Agent"
        assert "timestamp" in body

    def test_existing_thread_with_pascal_case_keys(self):
        """The browser client sends ThreadId/Message."""
        fake = FakeAgentClient()
        with TestClient(_app(fake)) as client:
            response = client.post("/api/chat", json={"ThreadId": "thread_abc", "Message": "Hi"})

        assert response.status_code == 200
        assert response.json()["threadId"] == "thread_abc"
        assert fake.count("create_thread") == 0
        assert ("post_message", ("thread_abc", "Hi")) in fake.calls

    def test_legacy_route_alias(self):
        with TestClient(_app()) as client:
            response = client.post("/chat", json={"message": "Hello"})
        assert response.status_code == 200

    @pytest.mark.parametrize("payload", [{}, {"message": ""}, {"message": "   "}, {"threadId": "t1"}])
    def test_missing_message_is_bad_request(self, payload):
        fake = FakeAgentClient()
        with TestClient(_app(fake)) as client:
            response = client.post("/api/chat", json=payload)

        assert response.status_code == 400
        assert response.json()["error"]["kind"] == "invalid_input"
        assert fake.calls == []

    def test_malformed_body_is_bad_request(self):
        fake = FakeAgentClient()
        with TestClient(_app(fake)) as client:
            response = client.post(
                "/api/chat", content=b"{not json", headers={"Content-Type": "application/json"}
            )

        assert response.status_code == 400
        assert fake.calls == []

    def test_overlong_message_is_bad_request(self):
        fake = FakeAgentClient()
        with TestClient(_app(fake, MAX_MESSAGE_LENGTH=5)) as client:
            response = client.post("/api/chat", json={"message": "too long"})

        assert response.status_code == 400
        assert fake.calls == []

    def test_failed_run_reports_upstream_detail(self):
        fake = FakeAgentClient(
            statuses=[RunStatus.IN_PROGRESS, RunStatus.FAILED],
            run_error=RunError(code="rate_limit_exceeded", message="rate limited"),
        )
        with TestClient(_app(fake)) as client:
            response = client.post("/api/chat", json={"threadId": "thread_1", "message": "Hi"})

        assert response.status_code == 502
        error = response.json()["error"]
        assert error["kind"] == "run_failed"
        assert "rate limited" in error["message"]

    def test_run_that_never_finishes_times_out(self):
        fake = FakeAgentClient(statuses=[RunStatus.IN_PROGRESS])
        with TestClient(_app(fake, RUN_DEADLINE_SECONDS=0.1)) as client:
            response = client.post("/api/chat", json={"threadId": "thread_1", "message": "Hi"})

        assert response.status_code == 504
        assert response.json()["error"]["kind"] == "timeout"

    def test_unknown_thread_is_not_found(self):
        fake = FakeAgentClient()
        fake.missing_threads.add("thread_gone")
        with TestClient(_app(fake)) as client:
            response = client.post("/api/chat", json={"threadId": "thread_gone", "message": "Hi"})

        assert response.status_code == 404
        assert response.json()["error"]["kind"] == "not_found"
        assert fake.count("create_run") == 0

    def test_auth_failure_is_bad_gateway(self):
        fake = FakeAgentClient(statuses=[UpstreamAuthError("Agent service rejected credentials", status_code=401)])
        with TestClient(_app(fake)) as client:
            response = client.post("/api/chat", json={"threadId": "thread_1", "message": "Hi"})

        assert response.status_code == 502
        assert response.json()["error"]["kind"] == "connection_error"

    def test_unexpected_error_does_not_leak_internals(self):
        fake = FakeAgentClient(statuses=[RuntimeError("secret at /etc/foundry/key.pem")])
        with TestClient(_app(fake), raise_server_exceptions=False) as client:
            response = client.post("/api/chat", json={"threadId": "thread_1", "message": "Hi"})

        assert response.status_code == 500
        assert "key.pem" not in response.text
        assert response.json()["error"]["kind"] == "internal_error"

    @pytest.mark.asyncio
    async def test_concurrent_requests_on_same_thread_conflict(self):
        fake = FakeAgentClient(statuses=[RunStatus.IN_PROGRESS] * 5 + [RunStatus.COMPLETED])
        app = _app(fake)

        async with app.router.lifespan_context(app):
            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
                responses = await asyncio.gather(
                    client.post("/api/chat", json={"threadId": "thread_1", "message": "first"}),
                    client.post("/api/chat", json={"threadId": "thread_1", "message": "second"}),
                )

        codes = sorted(response.status_code for response in responses)
        assert codes == [200, 409]
        conflict = next(response for response in responses if response.status_code == 409)
        assert conflict.json()["error"]["kind"] == "conflict"
        assert fake.count("create_run") == 1


class ScriptedRequest:
    """Stands in for a Starlette request that reports a disconnect after some checks."""

    def __init__(self, connected_checks: int | None = None):
        self.connected_checks = connected_checks
        self.checks = 0

    async def is_disconnected(self) -> bool:
        self.checks += 1
        return self.connected_checks is not None and self.checks > self.connected_checks


class TestClientDisconnect:
    @staticmethod
    def _sessions(fake: FakeAgentClient) -> ConversationSessionManager:
        policy = PollingPolicy(initial_interval=0.01, max_interval=0.02, backoff_factor=1.5, deadline=5.0)
        return ConversationSessionManager(fake, RunPoller(fake, policy))

    @staticmethod
    def _track_tasks():
        tasks: list[asyncio.Task] = []
        create_task = asyncio.create_task

        def track(coro, **kwargs):
            task = create_task(coro, **kwargs)
            tasks.append(task)
            return task

        return tasks, patch("foundry_proxy.api.asyncio.create_task", side_effect=track)

    @pytest.mark.asyncio
    async def test_disconnect_mid_poll_cancels_turn(self):
        fake = FakeAgentClient(statuses=[RunStatus.IN_PROGRESS], get_run_delay=1.0)
        sessions = self._sessions(fake)
        request = ScriptedRequest(connected_checks=3)
        payload = ChatRequest.model_validate({"threadId": "thread_1", "message": "Hi"})
        tasks, tracking = self._track_tasks()

        loop = asyncio.get_running_loop()
        with patch("foundry_proxy.api.DISCONNECT_POLL_INTERVAL", 0.02), tracking:
            started = loop.time()
            with pytest.raises(TurnCancelledError):
                await chat(payload, request, settings=make_settings(), sessions=sessions)
            elapsed = loop.time() - started

        assert elapsed < 0.5
        assert request.checks == 4
        assert not sessions.locks.is_busy("thread_1")
        assert len(tasks) == 1 and tasks[0].done()

        calls = len(fake.calls)
        await asyncio.sleep(0.1)
        assert len(fake.calls) == calls
        assert fake.count("list_messages_since") == 0

    @pytest.mark.asyncio
    async def test_watcher_cancelled_when_turn_completes(self):
        fake = FakeAgentClient()
        sessions = self._sessions(fake)
        payload = ChatRequest.model_validate({"threadId": "thread_1", "message": "Hi"})
        tasks, tracking = self._track_tasks()

        with patch("foundry_proxy.api.DISCONNECT_POLL_INTERVAL", 0.02), tracking:
            response = await chat(payload, ScriptedRequest(), settings=make_settings(), sessions=sessions)

        assert response.response == "Hello from the agent"
        assert len(tasks) == 1 and tasks[0].cancelled()


class TestCreateThreadEndpoint:
    def test_create_thread(self):
        fake = FakeAgentClient()
        with TestClient(_app(fake)) as client:
            response = client.post("/api/createThread")

        assert response.status_code == 200
        assert response.json() == {"threadId": "thread_1"}
        assert fake.count("create_thread") == 1


class TestHealthEndpoint:
    def test_healthy(self):
        with TestClient(_app()) as client:
            response = client.get("/api/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "Healthy"
        assert body["agentId"] == "asst_test"
        assert body["details"]["aiFoundryAccess"].startswith("Authorized")

    def test_unhealthy_is_service_unavailable(self):
        fake = FakeAgentClient()
        fake.agent_error = UpstreamAuthError("denied", status_code=403)
        with TestClient(_app(fake)) as client:
            response = client.get("/health")

        assert response.status_code == 503
        body = response.json()
        assert body["status"] == "Unhealthy"
        assert body["connectionStatus"].startswith("Disconnected")


class TestApplication:
    def test_cors_preflight(self):
        with TestClient(_app(CORS_ALLOW_ORIGINS="https://chat.example.com")) as client:
            response = client.options(
                "/api/chat",
                headers={
                    "Origin": "https://chat.example.com",
                    "Access-Control-Request-Method": "POST",
                    "Access-Control-Request-Headers": "Content-Type",
                },
            )

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "https://chat.example.com"
        assert "POST" in response.headers["access-control-allow-methods"]

    def test_shutdown_closes_agent_client(self):
        fake = FakeAgentClient()
        with TestClient(_app(fake)):
            assert not fake.closed
        assert fake.closed

    def test_simulation_backend(self):
        app = create_app(make_settings(AGENT_BACKEND="simulation"), identity_probe=ActiveIdentity())
        with TestClient(app) as client:
            created = client.post("/api/createThread").json()["threadId"]
            response = client.post("/api/chat", json={"threadId": created, "message": "hello there"})

        assert response.status_code == 200
        assert "simulation" in response.json()["response"]
