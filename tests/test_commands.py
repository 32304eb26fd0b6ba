"""Tests for command execution against sessions."""

import pytest
from playwright.async_api import Error as PlaywrightError

from fakes import CLOSED, SELECTORS, agent, placeholder, user

from livebridge.commands import execute
from livebridge.config import target_url
from livebridge.models import Command

MEDIA = "https://resource2.heygen.ai/"
VIDEO = MEDIA + "video/transcode/abc123/1080p.mp4?Signature=one"


def cmd(action, request_id=None, **payload):
    return Command(action=action, payload=payload, request_id=request_id)


def script(engine, *samples):
    """Queue transcript samples on every page the engine creates."""
    def prepare(page):
        page.samples = [list(s) for s in samples]
    engine.prepare = prepare


class TestNavigate:
    @pytest.mark.asyncio
    async def test_navigate_returns_transcript(self, registry, engine):
        script(engine, [user("make a video"), agent("Sure, on it.")])
        reply = await execute(registry, "user@x", cmd("navigate", 7, url="/agent/abc"))
        assert reply["success"] is True
        assert reply["action"] == "navigate"
        assert reply["id"] == 7
        assert reply["url"] == target_url("/agent/abc")
        assert [m["text"] for m in reply["messages"]] == ["make a video", "Sure, on it."]
        assert registry.get("user@x").remote_session_id == "abc"

    @pytest.mark.asyncio
    async def test_navigate_requires_url(self, registry):
        reply = await execute(registry, "user@x", cmd("navigate"))
        assert reply["success"] is False
        assert reply["code"] == "INVALID_COMMAND"

    @pytest.mark.asyncio
    async def test_switching_conversation_resets_transcript(self, registry, engine):
        script(engine, [agent("First conversation.")], [agent("Second conversation.")])
        await execute(registry, "user@x", cmd("navigate", url="/agent/one"))
        reply = await execute(registry, "user@x", cmd("navigate", url="/agent/two"))
        assert [m["text"] for m in reply["messages"]] == ["Second conversation."]


class TestStreaming:
    @pytest.mark.asyncio
    async def test_three_polls_collapse_to_one_entry(self, registry, engine):
        script(engine, [], [agent("H")], [agent("He")], [agent("Hello")])
        await execute(registry, "user@x", cmd("navigate", url="/session/abc"))
        replies = [await execute(registry, "user@x", cmd("get_messages")) for _ in range(3)]

        assert [[d["text"] for d in r["delta"]] for r in replies] == [["H"], ["He"], ["Hello"]]
        final = replies[-1]["messages"]
        assert final == [{"role": "agent", "text": "Hello"}]

    @pytest.mark.asyncio
    async def test_error_banner_is_reported(self, registry, engine):
        engine.prepare = lambda page: setattr(page, "error_banner", "Generation failed")
        reply = await execute(registry, "user@x", cmd("get_messages"))
        assert reply["success"] is True
        assert reply["hasError"] is True
        assert reply["error"] == "Generation failed"

    @pytest.mark.asyncio
    async def test_streaming_flag(self, registry, engine):
        script(engine, [agent("Writing your scr", streaming=True)], [agent("Writing your script now.")])
        typing = await execute(registry, "user@x", cmd("get_messages"))
        done = await execute(registry, "user@x", cmd("get_messages"))
        assert typing["streaming"] is True
        assert done["streaming"] is False
        assert [m["text"] for m in done["messages"]] == ["Writing your script now."]


class TestSampleFailures:
    @pytest.mark.asyncio
    async def test_failed_sample_is_stale_not_an_error(self, registry, engine):
        script(engine, [agent("Working on your video now.")])
        await execute(registry, "user@x", cmd("get_messages"))
        page = registry.get("user@x").page
        page.fail_sample = PlaywrightError("Execution context was destroyed")

        first = await execute(registry, "user@x", cmd("get_messages"))
        second = await execute(registry, "user@x", cmd("get_messages"))
        assert first["success"] is True and first["stale"] is True
        assert first["messages"] == [{"role": "agent", "text": "Working on your video now."}]
        assert second["consecutiveFailures"] == 2

        page.fail_sample = None
        recovered = await execute(registry, "user@x", cmd("get_messages"))
        assert recovered["consecutiveFailures"] == 0
        assert "stale" not in recovered

    @pytest.mark.asyncio
    async def test_progress_falls_back_to_last_known(self, registry, engine):
        engine.prepare = lambda page: setattr(page, "progress", {"isGenerating": True, "percentage": 30})
        first = await execute(registry, "user@x", cmd("get_generation_progress"))
        assert first["data"]["percentage"] == 30
        registry.get("user@x").page.fail_sample = PlaywrightError("Timeout 500ms exceeded.")
        second = await execute(registry, "user@x", cmd("get_generation_progress"))
        assert second["stale"] is True
        assert second["data"]["percentage"] == 30

    @pytest.mark.asyncio
    async def test_video_resolution_keeps_last_progress(self, registry, engine):
        def prepare(page):
            page.progress = {"isGenerating": True, "percentage": 90}
            page.cards = [{"thumbnail": MEDIA + "t1.jpg", "title": "Demo", "subtitle": ""}]
            page.card_videos = {0: [{"videoUrl": VIDEO, "poster": ""}]}
        engine.prepare = prepare

        await execute(registry, "user@x", cmd("get_generation_progress"))
        assert (await execute(registry, "user@x", cmd("get_video_url")))["success"] is True
        assert registry.get("user@x").transcript.progress.percentage == 90

        registry.get("user@x").page.fail_sample = PlaywrightError("Timeout 500ms exceeded.")
        stale = await execute(registry, "user@x", cmd("get_generation_progress"))
        assert stale["stale"] is True
        assert stale["data"]["percentage"] == 90


class TestContextRecovery:
    @pytest.mark.asyncio
    async def test_dead_context_is_recreated_and_retried(self, registry, engine):
        script(engine, [agent("Your script is ready.")])
        await execute(registry, "user@x", cmd("navigate", url="/agent/abc"))
        registry.get("user@x").page.crash()

        reply = await execute(registry, "user@x", cmd("get_messages", 3))
        assert reply["success"] is True
        assert reply["id"] == 3
        assert engine.created == 2
        assert engine.contexts[0].close_calls == 1
        fresh = registry.get("user@x")
        assert fresh.page.gotos == [target_url("/agent/abc")]
        assert [m["text"] for m in reply["messages"]] == ["Your script is ready."]

    @pytest.mark.asyncio
    async def test_second_failure_is_reported(self, registry, engine, caplog):
        await registry.acquire("user@x")
        engine.prepare = lambda page: setattr(page, "fail_sample", PlaywrightError(CLOSED))
        registry.get("user@x").page.crash()

        reply = await execute(registry, "user@x", cmd("get_messages"))
        assert reply["success"] is False
        assert reply["code"] == "CONTEXT_INVALIDATED"
        assert engine.created == 2
        assert any(r.levelname == "WARNING" and "CONTEXT_INVALIDATED" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_step_failure_is_not_retried(self, registry, engine):
        engine.prepare = lambda page: page.missing.add(SELECTORS.prompt_input)
        reply = await execute(registry, "user@x", cmd("send_message", message="hello"))
        assert reply["success"] is False
        assert reply["error"] == "Prompt input not found on page"
        assert engine.created == 1


class TestMessages:
    @pytest.mark.asyncio
    async def test_send_message_from_landing(self, registry):
        reply = await execute(registry, "user@x", cmd("send_message", message="make a teaser"))
        assert reply["success"] is True
        page = registry.get("user@x").page
        assert page.submitted == ["make a teaser"]
        assert page.gotos[-1] == target_url("/home")

    @pytest.mark.asyncio
    async def test_empty_message_rejected(self, registry):
        reply = await execute(registry, "user@x", cmd("send_message", message="   "))
        assert reply == {
            "success": False, "action": "send_message",
            "error": "Message is required", "code": "INVALID_COMMAND",
        }

    @pytest.mark.asyncio
    async def test_submit_prompt_reports_new_conversation(self, registry, engine):
        engine.prepare = lambda page: setattr(page, "after_submit_url", target_url("/agent/xyz"))
        reply = await execute(registry, "user@x", cmd("submit_prompt", prompt="a 30s product video"))
        assert reply["sessionPath"] == "/agent/xyz"
        assert reply["sessionId"] == "xyz"
        assert reply["sessionUrl"] == target_url("/agent/xyz")
        assert registry.get("user@x").page.submitted == ["a 30s product video"]

    @pytest.mark.asyncio
    async def test_upload_files(self, registry):
        files = [{"name": "logo.png", "mimeType": "image/png", "content": "aGVsbG8="}]
        reply = await execute(registry, "user@x", cmd("upload_files", files=files))
        assert reply["count"] == 1
        (uploaded,) = registry.get("user@x").page.uploaded
        assert uploaded["buffer"] == b"hello"

    @pytest.mark.asyncio
    async def test_upload_rejects_bad_base64(self, registry):
        files = [{"name": "logo.png", "content": "not base64!"}]
        reply = await execute(registry, "user@x", cmd("upload_files", files=files))
        assert reply["code"] == "INVALID_COMMAND"


class TestVideo:
    @pytest.mark.asyncio
    async def test_resolve_fills_placeholder_once(self, registry, engine):
        def prepare(page):
            page.samples = [[placeholder(MEDIA + "t1.jpg", "Product demo")]]
            page.cards = [{"thumbnail": MEDIA + "t1.jpg", "title": "Product demo", "subtitle": ""}]
            page.card_videos = {0: [{"videoUrl": VIDEO, "poster": MEDIA + "t1.jpg"}]}
        engine.prepare = prepare

        await execute(registry, "user@x", cmd("get_messages"))
        first = await execute(registry, "user@x", cmd("get_video_url"))
        second = await execute(registry, "user@x", cmd("get_video_url"))
        assert first["data"]["videoUrl"] == VIDEO
        assert first["duplicate"] is False
        assert second["duplicate"] is True

        entries = registry.get("user@x").transcript.entries
        assert len(entries) == 1
        assert entries[0].video.video_url == VIDEO
        assert entries[0].video.title == "Product demo"

    @pytest.mark.asyncio
    async def test_no_video(self, registry):
        reply = await execute(registry, "user@x", cmd("get_video_url"))
        assert reply["success"] is False
        assert reply["error"] == "No video found"

    @pytest.mark.asyncio
    async def test_initial_load_resolves_cards(self, registry, engine):
        def prepare(page):
            page.samples = [[user("make a demo"), placeholder(MEDIA + "t1.jpg", "Demo")]]
            page.cards = [{"thumbnail": MEDIA + "t1.jpg", "title": "Demo", "subtitle": ""}]
            page.card_videos = {0: [{"videoUrl": VIDEO, "poster": ""}]}
        engine.prepare = prepare

        reply = await execute(registry, "user@x", cmd("initial_load"))
        assert reply["videos"] == 1
        assert len(reply["messages"]) == 2
        assert reply["messages"][1]["video"]["videoUrl"] == VIDEO
        assert reply["messages"][1]["video"]["title"] == "Demo"


class TestDispatch:
    @pytest.mark.asyncio
    async def test_unknown_action(self, registry, engine):
        reply = await execute(registry, "user@x", cmd("teleport", "r1"))
        assert reply["success"] is False
        assert reply["code"] == "INVALID_COMMAND"
        assert reply["id"] == "r1"
        assert engine.created == 0

    @pytest.mark.asyncio
    async def test_ping_needs_no_session(self, registry, engine):
        reply = await execute(registry, "user@x", cmd("ping"))
        assert reply["message"] == "pong"
        assert engine.created == 0

    @pytest.mark.asyncio
    async def test_logout_releases_session(self, registry, engine):
        await registry.acquire("user@x")
        reply = await execute(registry, "user@x", cmd("logout"))
        assert reply["released"] is True
        assert "user@x" not in registry
        assert engine.contexts[0].close_calls == 1
