"""Browser automation capability used by the verification pipeline."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Protocol, TypeVar

from ..errors import SessionUnavailableError

T = TypeVar("T")


class BrowserSession(Protocol):
    """What the verifier and extraction pipeline need from a browser."""

    def navigate(self, url: str, timeout: float) -> None: ...

    def wait_loaded(self, timeout: float) -> None: ...

    def query_selector(self, selector: str) -> str | None: ...

    def query_selector_all(self, selector: str) -> list[str]: ...

    def html(self) -> str: ...

    def screenshot(self, path: Path) -> Path: ...

    def is_alive(self) -> bool: ...

    def close(self) -> None: ...


class PlaywrightSession:
    """One Chromium browser driven through ``playwright.sync_api``.

    The sync API is bound to the thread that started it, so every call runs on
    a private single-thread executor and sessions can move between workers.
    """

    def __init__(self, headless: bool = True, page_timeout_ms: int = 30000) -> None:
        self._headless = headless
        self._page_timeout_ms = page_timeout_ms
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="browser")
        self._playwright = None
        self._browser = None
        self._context = None
        self._page = None

    def start(self) -> "PlaywrightSession":
        self._call(self._start)
        return self

    def _start(self) -> None:
        from playwright.sync_api import sync_playwright

        self._playwright = sync_playwright().start()
        self._browser = self._playwright.chromium.launch(
            headless=self._headless,
            args=[
                "--disable-gpu",
                "--no-sandbox",
                "--disable-dev-shm-usage",
            ],
        )
        self._context = self._browser.new_context(
            viewport={"width": 1280, "height": 1600},
            ignore_https_errors=True,
        )
        self._context.set_default_timeout(self._page_timeout_ms)
        self._page = self._context.new_page()

    def _call(self, func: Callable[..., T], *args: Any, timeout: float | None = None) -> T:
        future = self._executor.submit(func, *args)
        return future.result(timeout=timeout)

    # ------------------------------------------------------------------
    def navigate(self, url: str, timeout: float) -> None:
        from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

        def _goto() -> None:
            try:
                self._page.goto(url, wait_until="domcontentloaded", timeout=int(timeout * 1000))
            except PlaywrightTimeoutError as exc:
                raise TimeoutError(f"Playwright timeout: {exc}") from exc

        self._call(_goto)

    def wait_loaded(self, timeout: float) -> None:
        from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

        def _wait() -> None:
            try:
                self._page.wait_for_load_state("load", timeout=int(timeout * 1000))
            except PlaywrightTimeoutError:
                # Slow subresources; the DOM is already usable.
                pass

        self._call(_wait)

    def query_selector(self, selector: str) -> str | None:
        def _query() -> str | None:
            handle = self._page.query_selector(selector)
            if handle is None:
                return None
            href = handle.get_attribute("href")
            text = handle.inner_text()
            return text if text.strip() or not href else href

        return self._call(_query)

    def query_selector_all(self, selector: str) -> list[str]:
        return self._call(lambda: [h.inner_text() for h in self._page.query_selector_all(selector)])

    def html(self) -> str:
        return self._call(lambda: self._page.content())

    def screenshot(self, path: Path) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        self._call(lambda: self._page.screenshot(path=str(path), full_page=True))
        return path

    def is_alive(self, timeout: float = 5.0) -> bool:
        if self._browser is None:
            return False
        try:
            return bool(
                self._call(
                    lambda: self._browser.is_connected() and self._page.evaluate("1 + 1") == 2,
                    timeout=timeout,
                )
            )
        except Exception:  # noqa: BLE001
            return False

    def close(self) -> None:
        def _close() -> None:
            if self._page is not None:
                self._page.close()
                self._page = None
            if self._context is not None:
                self._context.close()
                self._context = None
            if self._browser is not None:
                self._browser.close()
                self._browser = None
            if self._playwright is not None:
                self._playwright.stop()
                self._playwright = None

        try:
            self._call(_close, timeout=30)
        finally:
            self._executor.shutdown(wait=False)


def playwright_factory(headless: bool = True, page_timeout_ms: int = 30000) -> Callable[[], BrowserSession]:
    """Return a zero-argument factory launching a fresh ``PlaywrightSession``."""

    def _launch() -> BrowserSession:
        session = PlaywrightSession(headless=headless, page_timeout_ms=page_timeout_ms)
        try:
            return session.start()
        except Exception as exc:
            session.close()
            raise SessionUnavailableError(f"browser launch failed: {exc}") from exc

    return _launch


__all__ = ["BrowserSession", "PlaywrightSession", "playwright_factory"]
