# tests/test_evidence.py
import pytest

from adapters import session as session_mod
from automation import evidence
from automation.captcha import TwoCaptchaSolver
from automation.errors import CaptchaUnsolved
from db.models import Media, MediaSource, MediaType
from conftest import FakeAPIResponse, FakePage, FakeResponse, FakeSession, FakeStore


def test_storage_paths():
    assert evidence.challenge_screenshot_path("c1", "final", ts=5) == "automation/challenges/c1/screenshots/final-5.png"
    assert evidence.challenge_screenshot_path("c1", "final", dry_run=True, ts=5) == \
        "automation/dry-runs/c1/screenshots/final-5.png"
    assert evidence.ticket_screenshot_path("u", "t", "PCN1", ts=7) == \
        "users/u/tickets/t/automation/screenshots/PCN1-7.png"
    assert evidence.run_screenshot_path("a", "c", 3, ts=9) == "automation/runs/a/c/step-3-9.png"
    assert evidence.recording_path("c1", ts=1) == "automation/challenges/c1/video/recording-1.webm"
    assert evidence.evidence_prefix("u", "t") == "users/u/tickets/t/evidence/"


def test_upload_evidence_skips_existing_prefix():
    store = FakeStore()
    store.put("users/u/tickets/t/evidence/evidence-old.jpg", b"x")
    page = FakePage(url="https://portal.example/")
    assert evidence.upload_evidence(page, store, "users/u/tickets/t/evidence/", ["/a.jpg"]) == []
    assert page.request.fetched == []


def test_upload_evidence_tolerates_bad_images():
    store = FakeStore()
    page = FakePage(url="https://portal.example/pcn/step2.php")
    page.request.responses["https://portal.example/pcn/missing.jpg"] = FakeAPIResponse(404)
    urls = evidence.upload_evidence(page, store, "users/u/tickets/t/evidence/", ["ok.jpg", "missing.jpg"])
    assert len(urls) == 1
    assert urls[0].startswith("mem://users/u/tickets/t/evidence/evidence-")
    assert page.request.fetched == ["https://portal.example/pcn/ok.jpg", "https://portal.example/pcn/missing.jpg"]


def test_upload_recording(tmp_path):
    store = FakeStore()
    video = tmp_path / "v.webm"
    video.write_bytes(b"webm")
    url = evidence.upload_recording(store, "c1", str(video))
    assert url.startswith("mem://automation/challenges/c1/video/recording-")
    assert evidence.upload_recording(store, "c1", str(tmp_path / "gone.webm")) is None
    assert evidence.upload_recording(store, "c1", None) is None


def test_record_media(db_session, lewisham_ticket):
    evidence.record_media(db_session, lewisham_ticket.id, ["mem://v"], MediaSource.RECORDING,
                          media_type=MediaType.VIDEO, description="Automation challenge recording")
    db_session.commit()
    row = db_session.query(Media).one()
    assert row.type == MediaType.VIDEO and row.source == MediaSource.RECORDING


# --- captcha ---

def test_captcha_polls_until_ready(monkeypatch):
    fake_session = FakeSession(
        FakeResponse(200, {"status": 1, "request": "task-1"}),
        FakeResponse(200, {"status": 0, "request": "CAPCHA_NOT_READY"}),
        FakeResponse(200, {"status": 1, "request": "token-xyz"}),
    )
    monkeypatch.setattr(session_mod, "session", lambda: fake_session)
    solver = TwoCaptchaSolver(api_key="k", poll_interval_s=5, deadline_s=60, sleep=lambda s: None)

    assert solver.solve_recaptcha("site", "https://portal.example") == "token-xyz"
    assert fake_session.requests[0]["params"]["googlekey"] == "site"
    assert fake_session.requests[2]["params"]["id"] == "task-1"


def test_captcha_deadline(monkeypatch):
    fake_session = FakeSession(
        FakeResponse(200, {"status": 1, "request": "task-1"}),
        FakeResponse(200, {"status": 0, "request": "CAPCHA_NOT_READY"}),
    )
    monkeypatch.setattr(session_mod, "session", lambda: fake_session)
    solver = TwoCaptchaSolver(api_key="k", poll_interval_s=5, deadline_s=15, sleep=lambda s: None)
    with pytest.raises(CaptchaUnsolved, match="not solved"):
        solver.solve_recaptcha("site", "https://portal.example")
    assert len(fake_session.requests) == 4


def test_captcha_error_reply(monkeypatch):
    fake_session = FakeSession(
        FakeResponse(200, {"status": 1, "request": "task-1"}),
        FakeResponse(200, {"status": 0, "request": "ERROR_CAPTCHA_UNSOLVABLE"}),
    )
    monkeypatch.setattr(session_mod, "session", lambda: fake_session)
    solver = TwoCaptchaSolver(api_key="k", sleep=lambda s: None)
    with pytest.raises(CaptchaUnsolved, match="ERROR_CAPTCHA_UNSOLVABLE"):
        solver.solve_recaptcha("site", "https://portal.example")


def test_captcha_solver_from_env(monkeypatch):
    monkeypatch.delenv("TWO_CAPTCHA_API_KEY", raising=False)
    assert TwoCaptchaSolver.from_env() is None
    monkeypatch.setenv("TWO_CAPTCHA_API_KEY", "k")
    assert TwoCaptchaSolver.from_env().api_key == "k"
