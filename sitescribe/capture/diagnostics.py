"""Capture diagnostics for a single page."""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..models.capture import utc_now_iso
from .bridge import ContentScriptBridge
from .host import HostCapabilities, HostError


logger = logging.getLogger(__name__)


DiagnosticTest = Tuple[str, Callable[[], Awaitable[Any]]]


async def run_capture_diagnostics(
    host: HostCapabilities,
    bridge: ContentScriptBridge,
    handle: Optional[Any] = None
) -> Dict[str, Any]:
    """Exercise each capture mechanism against one page.

    Every test runs in isolation: a failing test is reported as
    ``{"error": message}`` and the remaining tests still run.

    Args:
        host: Host capabilities
        bridge: Bridge to the in-page agent
        handle: Page to diagnose (defaults to the active page)

    Returns:
        Report mapping test name to its result
    """
    report: Dict[str, Any] = {"timestamp": utc_now_iso()}

    if handle is None:
        try:
            handle = await host.pages.get_active_page()
        except HostError as e:
            logger.error(f"Could not resolve the active page: {e}")
        if handle is None:
            report["error"] = "No active page found for diagnostics"
            return report

    report["page"] = str(handle)
    logger.info(f"Starting capture diagnostics for {handle}")

    async def agent_readiness() -> str:
        if not await bridge.ensure_agent_ready(handle):
            raise RuntimeError("Agent did not answer the liveness probe")
        return "Successful"

    async def visible_screenshot() -> Dict[str, int]:
        image = await host.screenshots.capture_visible(handle)
        return {"bytes": len(image)}

    async def page_dimensions() -> Any:
        return await bridge.request(handle, "getPageDimensions")

    async def html_capture() -> Dict[str, int]:
        html = await bridge.request(handle, "getHTML")
        return {"length": len(html)}

    tests: List[DiagnosticTest] = [
        ("Agent Readiness", agent_readiness),
        ("Visible Screenshot", visible_screenshot),
        ("Page Dimensions", page_dimensions),
        ("HTML Capture", html_capture),
    ]

    for name, test in tests:
        try:
            report[name] = await test()
            logger.info(f"Diagnostic '{name}' passed")
        except Exception as e:
            report[name] = {"error": str(e) or type(e).__name__}
            logger.error(f"Diagnostic '{name}' failed: {e}")

    return report
