"""Unit tests for the content script bridge."""

import asyncio
from unittest.mock import AsyncMock, call, patch

import pytest

from sitescribe.capture.bridge import (
    AgentRequestError,
    AgentTimeoutError,
    AgentTransportError,
    ContentScriptBridge,
    unwrap_reply,
)
from sitescribe.capture.host import InjectionError


PAGE = "page-1"
URL = "https://example.com/"


class TestUnwrapReply:
    """Tests for agent reply envelopes."""

    def test_success_envelope(self):
        assert unwrap_reply("getHTML", {"ok": True, "result": "<html></html>"}) == "<html></html>"

    def test_error_envelope(self):
        """Tagged errors carry the agent's error name and message."""
        with pytest.raises(AgentRequestError) as exc_info:
            unwrap_reply("getText", {"ok": False, "error": {"name": "TypeError", "message": "boom"}})

        assert str(exc_info.value) == "boom"
        assert exc_info.value.name == "TypeError"
        assert exc_info.value.action == "getText"

    def test_string_error(self):
        with pytest.raises(AgentRequestError, match="broken"):
            unwrap_reply("ping", {"ok": False, "error": "broken"})

    def test_non_envelope_passthrough(self):
        """Replies without an envelope are returned unchanged."""
        assert unwrap_reply("ping", "pong") == "pong"
        assert unwrap_reply("getPageDimensions", {"height": 10}) == {"height": 10}


class TestEnsureAgentReady:
    """Tests for ContentScriptBridge.ensure_agent_ready."""

    @pytest.fixture
    def bridge(self, fake_host):
        return ContentScriptBridge(
            fake_host.channel,
            fake_host.injector,
            probe_timeout_ms=100,
            inject_settle_ms=500,
            max_attempts=3,
            backoff_ms=1000,
        )

    @pytest.mark.asyncio
    async def test_cheap_path_skips_injection(self, fake_host, bridge):
        """A responsive agent is accepted without any injection."""
        fake_host.open(PAGE, URL, agent=True)

        assert await bridge.ensure_agent_ready(PAGE) is True
        assert fake_host.injector.inject_calls == []
        assert bridge.get_stats()["injections"] == 0

    @pytest.mark.asyncio
    async def test_injects_and_verifies(self, fake_host, bridge):
        """A missing agent is injected and verified by a second probe."""
        fake_host.open(PAGE, URL, agent=False)

        with patch("sitescribe.capture.bridge.asyncio.sleep", new_callable=AsyncMock) as sleep:
            assert await bridge.ensure_agent_ready(PAGE) is True

        assert fake_host.injector.inject_calls == [PAGE]
        assert sleep.await_args_list == [call(0.5)]

    @pytest.mark.asyncio
    async def test_probe_always_fails(self, fake_host, bridge):
        """Exactly three attempts are made with the prescribed waits, then False."""
        fake_host.open(PAGE, URL, agent=False)
        fake_host.injector.installs = False

        with patch("sitescribe.capture.bridge.asyncio.sleep", new_callable=AsyncMock) as sleep:
            assert await bridge.ensure_agent_ready(PAGE) is False

        assert len(fake_host.injector.inject_calls) == 3
        # settle after each injection, backoff of 1s then 2s between attempts
        assert sleep.await_args_list == [call(0.5), call(1.0), call(0.5), call(2.0), call(0.5)]
        assert len(fake_host.channel.actions("ping")) == 6
        assert bridge.get_stats()["ready_failures"] == 1

    @pytest.mark.asyncio
    async def test_flag_set_skips_reinjection(self, fake_host, bridge):
        """An agent that marked itself present is not injected again."""
        fake_host.open(PAGE, URL, agent=False)
        fake_host.injector.flagged.add(PAGE)

        with patch("sitescribe.capture.bridge.asyncio.sleep", new_callable=AsyncMock):
            assert await bridge.ensure_agent_ready(PAGE) is False

        assert fake_host.injector.inject_calls == []

    @pytest.mark.asyncio
    async def test_injection_error_counts_as_failed_attempt(self, fake_host, bridge):
        """Injection errors are absorbed and the next attempt still runs."""
        fake_host.open(PAGE, URL, agent=False)
        fake_host.injector.fail_with = InjectionError("CSP blocked evaluation")

        with patch("sitescribe.capture.bridge.asyncio.sleep", new_callable=AsyncMock) as sleep:
            assert await bridge.ensure_agent_ready(PAGE) is False

        assert len(fake_host.injector.inject_calls) == 3
        assert sleep.await_args_list == [call(1.0), call(2.0)]

    @pytest.mark.asyncio
    async def test_wrong_probe_answer(self, fake_host, bridge):
        """Only the expected acknowledgement counts as a live agent."""
        fake_host.open(PAGE, URL, agent=True)
        fake_host.channel.handlers["ping"] = "hello"
        fake_host.injector.installs = False

        with patch("sitescribe.capture.bridge.asyncio.sleep", new_callable=AsyncMock):
            assert await bridge.ensure_agent_ready(PAGE) is False


class TestRequest:
    """Tests for ContentScriptBridge.request."""

    @pytest.mark.asyncio
    async def test_message_shape(self, fake_host, bridge):
        """The payload is merged into the message next to the action."""
        fake_host.open(PAGE, URL)

        result = await bridge.request(PAGE, "scrollTo", {"position": 400})

        assert result == {"success": True}
        assert fake_host.channel.sent[-1] == (PAGE, {"action": "scrollTo", "position": 400})

    @pytest.mark.asyncio
    async def test_timeout(self, fake_host, bridge):
        """A reply slower than the timeout raises AgentTimeoutError."""
        fake_host.open(PAGE, URL)

        async def slow(message):
            await asyncio.sleep(1)
            return "late"

        fake_host.channel.handlers["getHTML"] = slow

        with pytest.raises(AgentTimeoutError) as exc_info:
            await bridge.request(PAGE, "getHTML", timeout_ms=20)

        assert exc_info.value.action == "getHTML"
        assert bridge.get_stats()["timeouts"] == 1

    @pytest.mark.asyncio
    async def test_closed_page(self, fake_host, bridge):
        """A closed page surfaces as a transport error."""
        fake_host.open(PAGE, URL)
        fake_host.pages.close(PAGE)

        with pytest.raises(AgentTransportError):
            await bridge.request(PAGE, "getText")

        assert bridge.get_stats()["transport_errors"] == 1

    @pytest.mark.asyncio
    async def test_agent_error(self, fake_host, bridge):
        """Tagged agent errors are raised as AgentRequestError."""
        fake_host.open(PAGE, URL)

        with pytest.raises(AgentRequestError) as exc_info:
            await bridge.request(PAGE, "noSuchAction")

        assert exc_info.value.name == "UnknownAction"
        assert bridge.get_stats()["agent_errors"] == 1

    @pytest.mark.asyncio
    async def test_start_observing(self, fake_host, bridge):
        fake_host.open(PAGE, URL)

        assert await bridge.start_observing(PAGE) is True
        assert len(fake_host.channel.actions("observe")) == 1

    @pytest.mark.asyncio
    async def test_start_observing_failure(self, fake_host, bridge):
        """Observation failures are reported as False, not raised."""
        fake_host.open(PAGE, URL)
        fake_host.channel.handlers["observe"] = {"ok": False, "error": {"message": "no observer"}}

        assert await bridge.start_observing(PAGE) is False
