# automation/captcha.py
"""reCAPTCHA solving through the 2Captcha HTTP API."""
import os
import time
import logging
from typing import Optional

from requests.exceptions import RequestException

from adapters import session as session_mod

from .errors import CaptchaUnsolved

logger = logging.getLogger(__name__)

IN_URL = "https://2captcha.com/in.php"
RES_URL = "https://2captcha.com/res.php"


class TwoCaptchaSolver:
    def __init__(self, api_key: Optional[str] = None, poll_interval_s: float = 5.0, deadline_s: float = 120.0,
                 sleep=time.sleep):
        self.api_key = api_key or os.getenv("TWO_CAPTCHA_API_KEY")
        self.poll_interval_s = poll_interval_s
        self.deadline_s = deadline_s
        self._sleep = sleep

    @classmethod
    def from_env(cls) -> Optional["TwoCaptchaSolver"]:
        """Solver when TWO_CAPTCHA_API_KEY is set, else None."""
        if not os.getenv("TWO_CAPTCHA_API_KEY"):
            return None
        return cls()

    def _get(self, url: str, params: dict) -> dict:
        try:
            r = session_mod.session().get(url, params=params, timeout=session_mod.DEFAULT_REQUEST_TIMEOUT)
            r.raise_for_status()
            return r.json()
        except (RequestException, ValueError) as e:
            raise CaptchaUnsolved(f"2Captcha request failed: {e}")

    def solve_recaptcha(self, sitekey: str, page_url: str) -> str:
        if not self.api_key:
            raise CaptchaUnsolved("TWO_CAPTCHA_API_KEY not set")
        submitted = self._get(IN_URL, {
            "key": self.api_key, "method": "userrecaptcha", "googlekey": sitekey,
            "pageurl": page_url, "json": 1,
        })
        if submitted.get("status") != 1:
            raise CaptchaUnsolved(f"2Captcha rejected task: {submitted.get('request')}")
        task_id = submitted.get("request")
        logger.info("2Captcha task %s submitted for %s", task_id, page_url)

        waited = 0.0
        while waited < self.deadline_s:
            self._sleep(self.poll_interval_s)
            waited += self.poll_interval_s
            res = self._get(RES_URL, {"key": self.api_key, "action": "get", "id": task_id, "json": 1})
            if res.get("status") == 1:
                return res["request"]
            if res.get("request") != "CAPCHA_NOT_READY":
                raise CaptchaUnsolved(f"2Captcha error: {res.get('request')}")
        raise CaptchaUnsolved(f"2Captcha task {task_id} not solved within {self.deadline_s:.0f}s")
