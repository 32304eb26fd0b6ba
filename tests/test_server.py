"""HTTP and websocket tests against the aiohttp application."""

import pytest

from fakes import SECRET, FakeCredentials, agent

from livebridge.auth import sign_token
from livebridge.config import target_url
from livebridge.registry import SessionRegistry
from livebridge.server import create_app

TOKEN = sign_token("user@x.com", secret=SECRET)
AUTH = {"Authorization": f"Bearer {TOKEN}"}


@pytest.fixture
def make_client(aiohttp_client, registry, credentials, verifier):
    async def _make(**overrides):
        app = create_app(
            registry=overrides.get("registry", registry),
            credentials=overrides.get("credentials", credentials),
            verifier=verifier,
            sweep_interval=3600,
        )
        return await aiohttp_client(app)
    return _make


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, make_client):
        client = await make_client()
        resp = await client.get("/health")
        assert resp.status == 200
        assert await resp.json() == {"status": "ok", "active_sessions": 0, "channels": 0, "sessions": []}

    @pytest.mark.asyncio
    async def test_health_lists_sessions(self, make_client, registry):
        await registry.acquire("user@x.com")
        client = await make_client()
        (info,) = (await (await client.get("/health")).json())["sessions"]
        assert info["identity"] == "user@x.com"
        assert info["url"] == "https://remote.test/home"
        assert info["busy"] is False


class TestIdentity:
    @pytest.mark.asyncio
    async def test_invalid_token_is_anonymous(self, make_client, registry):
        client = await make_client()
        resp = await client.get("/agent/abc", headers={"Authorization": "Bearer not.a.token"})
        assert resp.status == 200
        assert "anonymous" in registry

    @pytest.mark.asyncio
    async def test_expired_token_is_anonymous(self, make_client, registry):
        expired = sign_token("user@x.com", secret=SECRET, ttl=1, now=0)
        client = await make_client()
        resp = await client.get("/agent/abc", headers={"Authorization": f"Bearer {expired}"})
        assert resp.status == 200
        assert "anonymous" in registry
        assert "user@x.com" not in registry

    @pytest.mark.asyncio
    async def test_cookie_token(self, make_client, registry):
        client = await make_client()
        client.session.cookie_jar.update_cookies({"arena_token": TOKEN})
        resp = await client.get("/agent/abc")
        assert resp.status == 200
        assert "user@x.com" in registry

    @pytest.mark.asyncio
    async def test_missing_token_is_anonymous(self, make_client, registry):
        client = await make_client()
        resp = await client.get("/agent/abc")
        assert resp.status == 200
        assert "anonymous" in registry


class TestSubmitPrompt:
    @pytest.mark.asyncio
    async def test_submit_prompt(self, make_client, engine):
        engine.prepare = lambda page: setattr(page, "after_submit_url", target_url("/agent/new1"))
        client = await make_client()
        resp = await client.post("/submit-prompt", json={"prompt": "a product teaser"}, headers=AUTH)
        assert resp.status == 200
        body = await resp.json()
        assert body["success"] is True
        assert body["sessionId"] == "new1"
        assert body["sessionPath"] == "/agent/new1"

    @pytest.mark.asyncio
    async def test_prompt_required(self, make_client, engine):
        client = await make_client()
        resp = await client.post("/submit-prompt", json={"prompt": ""}, headers=AUTH)
        assert resp.status == 400
        assert (await resp.json())["error"] == "Prompt is required"
        assert engine.created == 0

    @pytest.mark.asyncio
    async def test_invalid_json(self, make_client):
        client = await make_client()
        resp = await client.post("/submit-prompt", data="{oops", headers=AUTH)
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_session_limit_is_unavailable(self, make_client, engine, credentials, clock):
        registry = SessionRegistry(engine, credentials, max_sessions=1, clock=clock)
        await registry.acquire("other@x.com")
        client = await make_client(registry=registry)
        resp = await client.post("/submit-prompt", json={"prompt": "hi"}, headers=AUTH)
        assert resp.status == 503
        assert (await resp.json())["code"] == "SESSION_LIMIT"


class TestAgent:
    @pytest.mark.asyncio
    async def test_open_conversation(self, make_client, engine, registry):
        engine.prepare = lambda page: setattr(page, "samples", [[agent("Your video is being made.")]])
        client = await make_client()
        resp = await client.get("/agent/abc", headers=AUTH)
        body = await resp.json()
        assert body["url"] == target_url("/agent/abc")
        assert body["messages"] == [{"role": "agent", "text": "Your video is being made."}]
        assert registry.get("user@x.com").remote_session_id == "abc"

    @pytest.mark.asyncio
    async def test_navigate_agent_requires_id(self, make_client):
        client = await make_client()
        resp = await client.post("/navigate-agent", json={}, headers=AUTH)
        assert resp.status == 400
        assert (await resp.json())["error"] == "Session ID is required"

    @pytest.mark.asyncio
    async def test_navigate_agent(self, make_client):
        client = await make_client()
        resp = await client.post("/navigate-agent", json={"sessionId": "xyz"}, headers=AUTH)
        assert (await resp.json())["url"] == target_url("/agent/xyz")


class TestReloadContext:
    @pytest.mark.asyncio
    async def test_reload_closes_sessions(self, make_client, registry):
        await registry.acquire("a@x.com")
        await registry.acquire("b@x.com")
        client = await make_client()
        resp = await client.post("/reload-context", headers=AUTH)
        assert await resp.json() == {"success": True, "closed": 2}
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_reload_without_credentials(self, make_client, registry):
        await registry.acquire("a@x.com")
        client = await make_client(credentials=FakeCredentials(shared=False))
        body = await (await client.post("/reload-context", headers=AUTH)).json()
        assert body["success"] is False
        assert body["error"].startswith("No credentials found")
        assert len(registry) == 1


class TestWebsocket:
    @pytest.mark.asyncio
    async def test_streamed_reply_ends_as_one_entry(self, make_client, engine, registry):
        """Authenticate, open a conversation and poll while the reply streams in."""
        engine.prepare = lambda page: setattr(page, "samples", [[], [agent("H")], [agent("He")], [agent("Hello")]])
        client = await make_client()
        ws = await client.ws_connect("/ws")

        await ws.send_json({"action": "authenticate", "id": 1, "token": TOKEN})
        assert (await ws.receive_json())["action"] == "authenticated"

        await ws.send_json({"action": "navigate", "id": 2, "url": "/session/abc"})
        assert (await ws.receive_json())["success"] is True

        for request_id in (3, 4, 5):
            await ws.send_json({"action": "get_messages", "id": request_id})
            reply = await ws.receive_json()
            assert reply["id"] == request_id

        agent_entries = [m for m in reply["messages"] if m["role"] == "agent"]
        assert agent_entries == [{"role": "agent", "text": "Hello"}]
        assert registry.get("user@x.com") is not None
        await ws.close()

    @pytest.mark.asyncio
    async def test_cookie_authenticates_websocket(self, make_client, registry):
        client = await make_client()
        client.session.cookie_jar.update_cookies({"arena_token": TOKEN})
        ws = await client.ws_connect("/ws")
        await ws.send_json({"action": "navigate", "id": 1, "url": "/agent/abc"})
        await ws.receive_json()
        assert "user@x.com" in registry
        await ws.close()
