# adapters/session.py
"""
Shared HTTP session for every outbound call (worker API, OpenAI, 2Captcha).

Tests monkeypatch adapters.session.session to return a fake.
"""
import os
import logging

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

logger = logging.getLogger(__name__)

_RETRY = Retry(
    total=3,
    status_forcelist=[429, 500, 502, 503, 504],
    allowed_methods=frozenset(["HEAD", "GET", "OPTIONS", "PUT", "DELETE"]),
    backoff_factor=0.5,
)

_SESSION = requests.Session()
_SESSION.mount("https://", HTTPAdapter(max_retries=_RETRY))
_SESSION.mount("http://", HTTPAdapter(max_retries=_RETRY))

DEFAULT_REQUEST_TIMEOUT = int(os.getenv("ADAPTER_REQUEST_TIMEOUT_S", "30"))
DEBUG_RETURN_RAW = os.getenv("DEBUG_RETURN_RAW_API_RESPONSES", "false").strip().lower() in ("1", "true", "yes")


def env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


def session() -> requests.Session:
    """Return the process-wide requests.Session (singleton)."""
    return _SESSION
