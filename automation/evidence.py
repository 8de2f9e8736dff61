# automation/evidence.py
"""
Screenshot, evidence and recording capture into blob storage.

Storage layout:
    automation/challenges/{challenge_id}/screenshots/{name}-{ts}.png
    automation/dry-runs/{challenge_id}/screenshots/{name}-{ts}.png
    automation/challenges/{challenge_id}/video/recording-{ts}.webm
    automation/runs/{automation_id}/{challenge_id}/step-{n}-{ts}.png
    users/{user_id}/tickets/{ticket_id}/automation/screenshots/{name}-{ts}.png
    users/{user_id}/tickets/{ticket_id}/evidence/evidence-{uuid}.jpg
"""
import time
import uuid
import logging
import pathlib
from typing import Iterable, List, Optional
from urllib.parse import urljoin

from db.models import Media, MediaSource, MediaType

logger = logging.getLogger(__name__)


def _ts() -> int:
    return int(time.time() * 1000)


def challenge_screenshot_path(challenge_id: str, name: str, dry_run: bool = False, ts: Optional[int] = None) -> str:
    root = "automation/dry-runs" if dry_run else "automation/challenges"
    return f"{root}/{challenge_id}/screenshots/{name}-{ts or _ts()}.png"


def ticket_screenshot_path(user_id: str, ticket_id: str, name: str, ts: Optional[int] = None) -> str:
    return f"users/{user_id}/tickets/{ticket_id}/automation/screenshots/{name}-{ts or _ts()}.png"


def run_screenshot_path(automation_id: str, challenge_id: str, step: int, ts: Optional[int] = None) -> str:
    return f"automation/runs/{automation_id}/{challenge_id}/step-{step}-{ts or _ts()}.png"


def recording_path(challenge_id: str, ts: Optional[int] = None) -> str:
    return f"automation/challenges/{challenge_id}/video/recording-{ts or _ts()}.webm"


def evidence_prefix(user_id: str, ticket_id: str) -> str:
    return f"users/{user_id}/tickets/{ticket_id}/evidence/"


def take_screenshot(page, store, path: str, full_page: bool = True) -> str:
    data = page.screenshot(full_page=full_page)
    url = store.put(path, data, "image/png")
    logger.info("Screenshot stored at %s", path)
    return url


def upload_evidence(page, store, prefix: str, image_sources: Iterable[str]) -> List[str]:
    """Download issuer evidence images with the page's cookies and store them.

    Skipped entirely when the prefix already holds evidence. A failing image is
    logged and left out; it never fails the run.
    """
    existing = store.list(prefix)
    if existing:
        logger.info("Evidence already present under %s (%d files); skipping upload", prefix, len(existing))
        return []

    uploaded: List[str] = []
    for src in image_sources:
        full = urljoin(page.url or "", src)
        try:
            resp = page.request.get(full)
            if not resp.ok:
                logger.warning("Evidence download failed: HTTP %s for %s", resp.status, full)
                continue
            path = f"{prefix}evidence-{uuid.uuid4()}.jpg"
            uploaded.append(store.put(path, resp.body(), "image/jpeg"))
        except Exception:
            logger.exception("Evidence upload failed for %s", full)
    logger.info("Uploaded %d evidence image(s) to %s", len(uploaded), prefix)
    return uploaded


def upload_recording(store, challenge_id: str, video_path: Optional[str]) -> Optional[str]:
    if not video_path:
        return None
    p = pathlib.Path(video_path)
    if not p.exists():
        logger.warning("Recording %s missing; nothing uploaded", video_path)
        return None
    return store.put(recording_path(challenge_id), p.read_bytes(), "video/webm")


def record_media(session, ticket_id: str, urls: Iterable[str], source: MediaSource,
                 media_type: MediaType = MediaType.IMAGE, description: Optional[str] = None) -> List[Media]:
    rows = [
        Media(ticket_id=ticket_id, url=u, type=media_type, source=source, description=description)
        for u in urls
    ]
    session.add_all(rows)
    return rows
