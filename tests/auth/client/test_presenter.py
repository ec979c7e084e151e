import io
import webbrowser
from unittest.mock import AsyncMock, MagicMock

import pytest

from mcp_login.auth.client.services.presenter import (
    BrowserPresenter,
    ConsolePresenter,
    is_headless,
    select_presenter,
)

AUTH_URL = "https://auth.example.com/authorize?client_id=abc&state=xyz"


def tty(is_tty: bool) -> MagicMock:
    stdin = MagicMock()
    stdin.isatty.return_value = is_tty
    return stdin


class TestConsolePresenter:
    async def test_prints_url_in_banner(self):
        # Arrange
        stream = io.StringIO()
        presenter = ConsolePresenter(stream=stream)

        # Act
        await presenter.present(AUTH_URL)

        # Assert
        output = stream.getvalue()
        assert AUTH_URL in output
        assert "=" * 60 in output
        assert "open the following URL" in output


class TestBrowserPresenter:
    async def test_opens_browser(self, monkeypatch):
        # Arrange
        opened = []
        monkeypatch.setattr(webbrowser, "open", lambda url: opened.append(url) or True)
        fallback = AsyncMock()
        presenter = BrowserPresenter(fallback=fallback)

        # Act
        await presenter.present(AUTH_URL)

        # Assert
        assert opened == [AUTH_URL]
        fallback.present.assert_not_awaited()

    async def test_falls_back_when_no_browser_available(self, monkeypatch):
        monkeypatch.setattr(webbrowser, "open", lambda url: False)
        fallback = AsyncMock()
        presenter = BrowserPresenter(fallback=fallback)

        await presenter.present(AUTH_URL)

        fallback.present.assert_awaited_once_with(AUTH_URL)

    async def test_browser_error_never_fails_the_flow(self, monkeypatch):
        # Arrange
        def broken_open(url):
            raise webbrowser.Error("could not locate runnable browser")

        monkeypatch.setattr(webbrowser, "open", broken_open)
        stream = io.StringIO()
        presenter = BrowserPresenter(fallback=ConsolePresenter(stream=stream))

        # Act
        await presenter.present(AUTH_URL)

        # Assert
        assert AUTH_URL in stream.getvalue()


class TestHeadlessDetection:
    def test_ci_variable_means_headless(self):
        assert is_headless({"CI": "true", "DISPLAY": ":0"}, tty(True), "darwin")

    def test_non_tty_stdin_means_headless(self):
        assert is_headless({}, tty(False), "darwin")

    def test_closed_stdin_means_headless(self):
        stdin = MagicMock()
        stdin.isatty.side_effect = ValueError("I/O operation on closed file")

        assert is_headless({}, stdin, "darwin")

    @pytest.mark.parametrize(
        "environ,expected",
        [
            ({}, True),
            ({"DISPLAY": ":0"}, False),
            ({"WAYLAND_DISPLAY": "wayland-0"}, False),
        ],
    )
    def test_linux_requires_a_display(self, environ, expected):
        assert is_headless(environ, tty(True), "linux") is expected

    @pytest.mark.parametrize("platform", ["darwin", "win32"])
    def test_desktop_platforms_with_tty_are_interactive(self, platform):
        assert is_headless({}, tty(True), platform) is False


class TestSelectPresenter:
    def test_headless_selects_console(self):
        assert isinstance(select_presenter(headless=True), ConsolePresenter)

    def test_interactive_selects_browser(self):
        assert isinstance(select_presenter(headless=False), BrowserPresenter)
