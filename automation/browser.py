# automation/browser.py
"""One Chromium instance and one page per run."""
import os
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

from playwright.sync_api import sync_playwright

logger = logging.getLogger(__name__)

VIEWPORT = {"width": 1920, "height": 1080}


def default_headless() -> bool:
    return os.getenv("PLAYWRIGHT_HEADLESS", "true").strip().lower() not in ("0", "false", "no")


def default_slow_mo() -> Optional[int]:
    val = os.getenv("PLAYWRIGHT_SLOW_MO")
    return int(val) if val else None


@dataclass
class BrowserHandle:
    page: object
    # filled in once the context has closed and the recording is flushed
    video_path: Optional[str] = None


def _close(ctx_or_browser):
    try:
        ctx_or_browser.close()
    except Exception:
        logger.debug("Error closing browser/context", exc_info=True)


@contextmanager
def open_browser(headless: Optional[bool] = None, slow_mo: Optional[int] = None,
                 user_data_dir: Optional[str] = None, record_video_dir: Optional[str] = None) -> Iterator[BrowserHandle]:
    headless = headless if headless is not None else default_headless()
    slow_mo = slow_mo if slow_mo is not None else default_slow_mo()
    user_data_dir = user_data_dir or os.getenv("PLAYWRIGHT_USER_DATA_DIR")
    video_opts = {"record_video_dir": record_video_dir, "record_video_size": VIEWPORT} if record_video_dir else {}

    with sync_playwright() as p:
        browser = None
        if user_data_dir:
            ctx = p.chromium.launch_persistent_context(
                user_data_dir=user_data_dir, headless=headless, slow_mo=slow_mo or 0,
                viewport=VIEWPORT, **video_opts)
            page = ctx.pages[0] if ctx.pages else ctx.new_page()
        else:
            browser = p.chromium.launch(headless=headless, slow_mo=slow_mo or 0)
            ctx = browser.new_context(viewport=VIEWPORT, **video_opts)
            page = ctx.new_page()

        handle = BrowserHandle(page=page)
        try:
            yield handle
        finally:
            video = page.video if record_video_dir else None
            _close(ctx)
            if browser is not None:
                _close(browser)
            if video is not None:
                try:
                    handle.video_path = video.path()
                except Exception:
                    logger.debug("No video recorded", exc_info=True)
