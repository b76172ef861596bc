"""Reliable request/response channel to the in-page agent.

The bridge makes sure the agent script is present and answering before any
extraction request is sent, then exchanges single tagged messages with it
under explicit timeouts.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from .host import HostError, MessageChannel, ScriptInjector


logger = logging.getLogger(__name__)


PROBE_ACTION = "ping"
PROBE_ACK = "pong"


class AgentError(Exception):
    """Base error for agent communication failures."""

    def __init__(self, message: str, action: Optional[str] = None):
        super().__init__(message)
        self.action = action


class AgentTimeoutError(AgentError):
    """No reply arrived within the request timeout."""


class AgentTransportError(AgentError):
    """The page or its channel is gone."""


class AgentRequestError(AgentError):
    """The agent answered with a tagged error."""

    def __init__(self, message: str, action: Optional[str] = None, name: Optional[str] = None):
        super().__init__(message, action)
        self.name = name or "Error"


def unwrap_reply(action: str, reply: Any) -> Any:
    """Unwrap an agent reply envelope.

    Args:
        action: Action the reply answers
        reply: ``{"ok": true, "result": ...}`` or ``{"ok": false, "error": {...}}``

    Returns:
        The result value (non-envelope replies are returned unchanged)

    Raises:
        AgentRequestError: If the agent reported an error
    """
    if not isinstance(reply, dict) or "ok" not in reply:
        return reply
    if reply["ok"]:
        return reply.get("result")
    error = reply.get("error") or {}
    if isinstance(error, str):
        error = {"message": error}
    raise AgentRequestError(
        error.get("message") or "Agent request failed",
        action=action,
        name=error.get("name"),
    )


class ContentScriptBridge:
    """Guarantees a responsive in-page agent and talks to it."""

    def __init__(
        self,
        channel: MessageChannel,
        injector: ScriptInjector,
        probe_timeout_ms: int = 1000,
        inject_settle_ms: int = 500,
        max_attempts: int = 3,
        backoff_ms: int = 1000,
        request_timeout_ms: int = 5000
    ):
        """Initialize the bridge.

        Args:
            channel: Message channel to the page agents
            injector: Agent script injector
            probe_timeout_ms: Timeout for a single liveness probe
            inject_settle_ms: Wait between injecting and re-probing
            max_attempts: Readiness attempts before giving up
            backoff_ms: Backoff unit; attempt ``n`` is followed by ``n * backoff_ms``
            request_timeout_ms: Default timeout for requests
        """
        self.channel = channel
        self.injector = injector
        self.probe_timeout_ms = probe_timeout_ms
        self.inject_settle_ms = inject_settle_ms
        self.max_attempts = max_attempts
        self.backoff_ms = backoff_ms
        self.request_timeout_ms = request_timeout_ms

        self._stats = {
            "requests": 0,
            "timeouts": 0,
            "transport_errors": 0,
            "agent_errors": 0,
            "injections": 0,
            "ready_checks": 0,
            "ready_failures": 0,
        }

    async def ensure_agent_ready(self, handle: Any) -> bool:
        """Make sure the agent in the page answers the liveness probe.

        Args:
            handle: Page handle

        Returns:
            True once the agent answers, False after all attempts failed
        """
        self._stats["ready_checks"] += 1

        for attempt in range(1, self.max_attempts + 1):
            try:
                if await self._probe(handle):
                    if attempt > 1:
                        logger.debug(f"Agent ready in {handle} after {attempt} attempts")
                    return True

                if not await self._agent_flag_set(handle):
                    logger.debug(f"Injecting agent into {handle} (attempt {attempt})")
                    self._stats["injections"] += 1
                    await self.injector.inject(handle)

                await asyncio.sleep(self.inject_settle_ms / 1000)

                if await self._probe(handle):
                    logger.debug(f"Agent verified in {handle} after injection")
                    return True

            except Exception as e:
                logger.warning(f"Agent readiness attempt {attempt} failed for {handle}: {e}")

            if attempt < self.max_attempts:
                await asyncio.sleep(self.backoff_ms * attempt / 1000)

        self._stats["ready_failures"] += 1
        logger.error(f"Agent unreachable in {handle} after {self.max_attempts} attempts")
        return False

    async def request(
        self,
        handle: Any,
        action: str,
        payload: Optional[Dict[str, Any]] = None,
        timeout_ms: Optional[int] = None
    ) -> Any:
        """Send one request to the agent and wait for its reply.

        Args:
            handle: Page handle
            action: Agent action name
            payload: Extra message fields
            timeout_ms: Reply timeout (defaults to the bridge's request timeout)

        Returns:
            The unwrapped result

        Raises:
            AgentTimeoutError: If no reply arrived in time
            AgentTransportError: If the page or channel is gone
            AgentRequestError: If the agent answered with an error
        """
        timeout_ms = self.request_timeout_ms if timeout_ms is None else timeout_ms
        message = {"action": action, **(payload or {})}
        self._stats["requests"] += 1

        try:
            reply = await asyncio.wait_for(
                self.channel.send(handle, message),
                timeout=timeout_ms / 1000
            )
        except asyncio.TimeoutError:
            self._stats["timeouts"] += 1
            raise AgentTimeoutError(
                f"No reply to '{action}' within {timeout_ms}ms", action=action
            )
        except HostError as e:
            self._stats["transport_errors"] += 1
            raise AgentTransportError(f"Channel error on '{action}': {e}", action=action) from e

        try:
            return unwrap_reply(action, reply)
        except AgentRequestError:
            self._stats["agent_errors"] += 1
            raise

    async def start_observing(self, handle: Any) -> bool:
        """Ask the agent to start reporting mutation and scroll events.

        Returns:
            True if the agent acknowledged
        """
        try:
            if not await self.ensure_agent_ready(handle):
                return False
            await self.request(handle, "observe", timeout_ms=self.probe_timeout_ms)
            return True
        except AgentError as e:
            logger.warning(f"Could not start observing {handle}: {e}")
            return False

    async def _probe(self, handle: Any) -> bool:
        try:
            reply = await self.request(handle, PROBE_ACTION, timeout_ms=self.probe_timeout_ms)
        except AgentError as e:
            logger.debug(f"Probe failed for {handle}: {e}")
            return False
        return reply == PROBE_ACK

    async def _agent_flag_set(self, handle: Any) -> bool:
        try:
            return await self.injector.is_injected(handle)
        except HostError as e:
            logger.debug(f"Could not read agent flag for {handle}: {e}")
            return False

    def get_stats(self) -> Dict[str, Any]:
        """Get bridge statistics."""
        return dict(self._stats)
