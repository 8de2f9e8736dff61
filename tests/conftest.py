# tests/conftest.py
import sys, os
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import fnmatch
import json

import pytest
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from db import init_db
from db.models import Ticket, User, Vehicle


# --- Helpers: tiny fakes for the Playwright page, HTTP and blob storage ---

class FakeElement:
    def __init__(self, text="", attrs=None, visible=True, on_click=None):
        self.text = text
        self.attrs = attrs or {}
        self.visible = visible
        self.clicked = 0
        self._on_click = on_click

    def is_visible(self):
        return self.visible

    def inner_text(self):
        return self.text

    def get_attribute(self, name):
        return self.attrs.get(name)

    def click(self):
        self.clicked += 1
        if self._on_click:
            self._on_click()


class FakeAPIResponse:
    def __init__(self, status=200, body=b"jpeg-bytes"):
        self.status = status
        self.ok = 200 <= status < 300
        self._body = body

    def body(self):
        return self._body


class FakeRequest:
    def __init__(self, responses=None):
        self.responses = responses or {}
        self.fetched = []

    def get(self, url):
        self.fetched.append(url)
        return self.responses.get(url, FakeAPIResponse())


class FakePage:
    """The subset of the Playwright sync Page API the step engine touches.

    elements maps selector -> list of FakeElement. navigations maps a clicked
    selector to the url the page lands on afterwards.
    """

    def __init__(self, elements=None, url="about:blank", body_text="", navigations=None):
        self.elements = {k: list(v) for k, v in (elements or {}).items()}
        self.url = url
        self.body_text = body_text
        self.navigations = navigations or {}
        self.calls = []
        self.filled = {}
        self.waited_ms = []
        self.request = FakeRequest()
        self.fail_goto = False

    def _visible(self, selector):
        return [e for e in self.elements.get(selector, []) if e.visible]

    def goto(self, url, timeout=None):
        self.calls.append(("goto", url))
        if self.fail_goto:
            from playwright.sync_api import Error as PlaywrightError
            raise PlaywrightError("net::ERR_NAME_NOT_RESOLVED")
        self.url = url

    def wait_for_selector(self, selector, state="visible", timeout=None):
        present = self.elements.get(selector, [])
        ok = {
            "visible": bool(self._visible(selector)),
            "attached": bool(present),
            "hidden": not self._visible(selector),
            "detached": not present,
        }[state]
        if not ok:
            raise PlaywrightTimeoutError(f"Timeout waiting for {selector} ({state})")
        return present[0] if present else None

    def wait_for_url(self, pattern, timeout=None):
        if not fnmatch.fnmatch(self.url, pattern):
            raise PlaywrightTimeoutError(f"Timeout waiting for url {pattern}")

    def wait_for_timeout(self, ms):
        self.waited_ms.append(ms)

    def fill(self, selector, value):
        self.calls.append(("fill", selector, value))
        self.filled[selector] = value

    def eval_on_selector(self, selector, script, arg=None):
        self.calls.append(("eval", selector, arg))
        self.filled[selector] = arg

    def click(self, selector):
        self.calls.append(("click", selector))
        if selector in self.navigations:
            self.url = self.navigations[selector]

    def select_option(self, selector, value):
        self.calls.append(("select", selector, value))

    def check(self, selector):
        self.calls.append(("check", selector))

    def set_input_files(self, selector, path):
        self.calls.append(("upload", selector, path))

    def query_selector(self, selector):
        found = self.elements.get(selector, [])
        return found[0] if found else None

    def query_selector_all(self, selector):
        return list(self.elements.get(selector, []))

    def inner_text(self, selector):
        if selector == "body":
            return self.body_text
        found = self.elements.get(selector, [])
        return found[0].text if found else ""

    def get_attribute(self, selector, name):
        found = self.elements.get(selector, [])
        return found[0].attrs.get(name) if found else None

    def screenshot(self, path=None, full_page=False):
        self.calls.append(("screenshot", path, full_page))
        return b"png-bytes"

    def content(self):
        return f"<html><body>{self.body_text}</body></html>"

    def clicked(self):
        return [c[1] for c in self.calls if c[0] == "click"]


class FakeStore:
    def __init__(self):
        self.blobs = {}

    def put(self, path, data, content_type="application/octet-stream"):
        self.blobs[path] = (data, content_type)
        return f"mem://{path}"

    def list(self, prefix):
        return sorted(f"mem://{p}" for p in self.blobs if p.startswith(prefix))


class FakeResponse:
    def __init__(self, status_code=200, json_data=None, text=None):
        self.status_code = status_code
        self._json = json_data if json_data is not None else {}
        self.text = text if text is not None else json.dumps(self._json)
        self.ok = 200 <= status_code < 400

    def raise_for_status(self):
        if not self.ok:
            from requests.exceptions import HTTPError
            raise HTTPError(f"HTTP {self.status_code}")

    def json(self):
        return self._json


class FakeSession:
    """Returns queued responses in order; records every request."""

    def __init__(self, *responses):
        self._responses = list(responses)
        self.requests = []

    def _next(self):
        resp = self._responses.pop(0) if len(self._responses) > 1 else self._responses[0]
        if isinstance(resp, Exception):
            raise resp
        return resp

    def post(self, url, headers=None, json=None, timeout=None):
        self.requests.append({"method": "POST", "url": url, "headers": headers, "json": json, "timeout": timeout})
        return self._next()

    def get(self, url, headers=None, params=None, timeout=None):
        self.requests.append({"method": "GET", "url": url, "headers": headers, "params": params, "timeout": timeout})
        return self._next()


class FakeWorker:
    def __init__(self, learn=None, run=None):
        self.learn_resp = learn or {"success": True, "job_id": "job-learn-1", "status": "queued"}
        self.run_resp = run or {"success": True, "job_id": "job-run-1", "status": "queued"}
        self.learn_calls = []
        self.run_calls = []

    def start_learn_job(self, *args, **kwargs):
        self.learn_calls.append(args)
        return self.learn_resp

    def start_run_job(self, *args, **kwargs):
        self.run_calls.append((args, kwargs))
        return self.run_resp


class FakeBrowser:
    """Stands in for automation.browser.open_browser."""

    def __init__(self, page):
        self.page = page
        self.opened = 0
        self.closed = 0

    def __call__(self, record_video_dir=None):
        from contextlib import contextmanager
        from automation.browser import BrowserHandle

        @contextmanager
        def _cm():
            self.opened += 1
            try:
                yield BrowserHandle(page=self.page)
            finally:
                self.closed += 1

        return _cm()


# --- Fixtures ---

@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    from automation import engine as engine_mod
    monkeypatch.setattr(engine_mod, "LOG_DIR", tmp_path / "diag")
    for name in ("AUTOMATION_DRY_RUN", "AUTOMATION_RUN_LOCAL", "AUTOMATION_RECORD_VIDEO", "USE_MOCK_LLM"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def db_session():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    init_db(bind=engine)
    Session = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = Session()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


def make_ticket(session, pcn="LW12345678", issuer="London Borough of Lewisham", email="jane@example.com"):
    user = User(name="Jane Q Driver", email=email, phone_number="07700900000",
                address={"line1": "1 High Street", "city": "London", "postcode": "SE13 5AB"})
    vehicle = Vehicle(user=user, registration_number="AB12CDE")
    ticket = Ticket(vehicle=vehicle, pcn_number=pcn, issuer=issuer)
    session.add_all([user, vehicle, ticket])
    session.commit()
    return ticket


@pytest.fixture
def lewisham_ticket(db_session):
    return make_ticket(db_session)


@pytest.fixture
def store():
    return FakeStore()
