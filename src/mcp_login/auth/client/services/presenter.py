"""Strategies for showing the authorization URL to the user."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
import webbrowser
from typing import Mapping, Protocol, TextIO

logger = logging.getLogger(__name__)

_BANNER_WIDTH = 60


class AuthorizationPresenter(Protocol):
    """Protocol for handing the authorization URL to the user.

    Allows different strategies for user interaction:
    - Print the URL for manual copy (headless, CI)
    - Open the system browser
    - Custom UI integration
    """

    async def present(self, authorization_url: str) -> None:
        """Present the authorization URL to the user."""
        ...


class ConsolePresenter:
    """Prints the authorization URL for the user to open manually.

    Output goes to stderr so that stdout stays usable for command output.
    """

    def __init__(self, stream: TextIO | None = None):
        self.stream = stream

    async def present(self, authorization_url: str) -> None:
        stream = self.stream or sys.stderr
        rule = "=" * _BANNER_WIDTH
        print(f"\n{rule}", file=stream)
        print(
            "Please open the following URL in your browser to authenticate:",
            file=stream,
        )
        print(f"\n{authorization_url}\n", file=stream)
        print(f"{rule}\n", file=stream)
        stream.flush()


class BrowserPresenter:
    """Opens the authorization URL in the system browser.

    Failure to launch a browser never fails the flow; the URL is printed
    through the fallback presenter instead.
    """

    def __init__(self, fallback: AuthorizationPresenter | None = None):
        self.fallback = fallback or ConsolePresenter()

    async def present(self, authorization_url: str) -> None:
        try:
            opened = await asyncio.to_thread(webbrowser.open, authorization_url)
        except (webbrowser.Error, OSError) as e:
            logger.debug(f"Failed to open browser: {e}")
            opened = False

        if opened:
            logger.debug("Opened browser for authentication")
            return

        logger.info("Could not open a browser; printing authorization URL instead")
        await self.fallback.present(authorization_url)


def is_headless(
    environ: Mapping[str, str] | None = None,
    stdin: TextIO | None = None,
    platform: str | None = None,
) -> bool:
    """Detect an environment where no browser can be shown.

    Headless means any of: a ``CI`` variable is set, stdin is not a TTY,
    or Linux without an X11 or Wayland display.
    """
    environ = os.environ if environ is None else environ
    stdin = sys.stdin if stdin is None else stdin
    platform = sys.platform if platform is None else platform

    if environ.get("CI"):
        return True

    try:
        if not stdin.isatty():
            return True
    except (AttributeError, ValueError):
        # Detached or closed stdin
        return True

    if platform.startswith("linux") and not (
        environ.get("DISPLAY") or environ.get("WAYLAND_DISPLAY")
    ):
        return True

    return False


def select_presenter(headless: bool | None = None) -> AuthorizationPresenter:
    """Choose the presenter for one authorization flow."""
    if headless is None:
        headless = is_headless()
    if headless:
        return ConsolePresenter()
    return BrowserPresenter()
