# adapters/worker.py
from typing import Dict, Any, List, Optional
import os
import logging

from . import session as session_mod

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/api/webhooks/automation"


class WorkerAdapter:
    """Client for the remote learn/run automation worker.

    Every method returns a dict and never raises:
    {"success": True, "job_id": ..., "status": ...} or {"success": False, "error": ...}.
    """

    def __init__(self):
        self._refresh_config()

    def _refresh_config(self):
        self.base_url = (os.getenv("HETZNER_AUTOMATION_URL") or "").rstrip("/")
        self.secret = os.getenv("HETZNER_AUTOMATION_SECRET")
        self.app_url = os.getenv("APP_URL")

    def _validate(self) -> bool:
        return bool(self.base_url and self.secret)

    def webhook_url(self) -> Optional[str]:
        if not self.app_url:
            return None
        base = self.app_url if self.app_url.startswith("http") else f"https://{self.app_url}"
        return base.rstrip("/") + WEBHOOK_PATH

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json", "Authorization": f"Bearer {self.secret}"}

    def _normalize(self, data: Any) -> Dict[str, Any]:
        data = data if isinstance(data, dict) else {}
        if data.get("success") is False:
            return {"success": False, "error": data.get("error") or data.get("message") or "worker reported failure"}
        out = {"success": True, "job_id": data.get("jobId") or data.get("job_id"), "status": data.get("status")}
        if data.get("message"):
            out["message"] = data["message"]
        if session_mod.DEBUG_RETURN_RAW:
            out["raw"] = data
        return out

    def _error_from_response(self, r) -> Dict[str, Any]:
        try:
            body = r.json()
        except ValueError:
            body = {}
        err = body.get("error") if isinstance(body, dict) else None
        return {"success": False, "error": err or f"HTTP {r.status_code}"}

    def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None,
                 timeout: Optional[int] = None) -> Dict[str, Any]:
        self._refresh_config()
        if not self._validate():
            return {"success": False, "error": "Worker not configured. Set HETZNER_AUTOMATION_URL and HETZNER_AUTOMATION_SECRET."}
        timeout = timeout or session_mod.DEFAULT_REQUEST_TIMEOUT
        url = f"{self.base_url}{path}"
        try:
            if method == "GET":
                r = session_mod.session().get(url, headers=self._headers(), timeout=timeout)
            else:
                r = session_mod.session().post(url, headers=self._headers(), json=body, timeout=timeout)
            if r.status_code >= 400:
                out = self._error_from_response(r)
                logger.error("Worker %s %s failed: %s", method, path, out["error"])
                return out
            data = r.json() if getattr(r, "text", None) else {}
            return self._normalize(data)
        except Exception as e:
            logger.exception("Worker API error on %s %s", method, path)
            return {"success": False, "error": str(e) or "Failed to connect to automation service"}

    def _callback_fields(self) -> Dict[str, Any]:
        return {"webhookUrl": self.webhook_url(), "webhookSecret": self.secret}

    def start_learn_job(self, automation_id: str, issuer_name: str, pcn_number: str, vehicle_reg: str,
                        issuer_website: Optional[str] = None, timeout: Optional[int] = None) -> Dict[str, Any]:
        self._refresh_config()
        if not self.webhook_url():
            return {"success": False, "error": "App URL not configured. Set APP_URL."}
        logger.info("Starting learn job for automation %s (%s)", automation_id, issuer_name)
        body = {
            "automationId": automation_id,
            "issuerName": issuer_name,
            "issuerWebsite": issuer_website,
            "pcnNumber": pcn_number,
            "vehicleReg": vehicle_reg,
        }
        body.update(self._callback_fields())
        return self._request("POST", "/automation/learn", body, timeout=timeout)

    def start_run_job(self, automation_id: str, challenge_id: str, steps: List[Dict[str, Any]],
                      context: Dict[str, Any], dry_run: bool = False, timeout: Optional[int] = None) -> Dict[str, Any]:
        self._refresh_config()
        if not self.webhook_url():
            return {"success": False, "error": "App URL not configured. Set APP_URL."}
        logger.info("Starting run job for automation %s challenge %s (dry_run=%s)", automation_id, challenge_id, dry_run)
        body = {
            "automationId": automation_id,
            "challengeId": challenge_id,
            "steps": steps,
            "context": context,
            "dryRun": dry_run,
        }
        body.update(self._callback_fields())
        return self._request("POST", "/automation/run", body, timeout=timeout)

    def get_job_status(self, job_id: str, timeout: Optional[int] = None) -> Dict[str, Any]:
        return self._request("GET", f"/automation/status/{job_id}", timeout=timeout)

    def cancel_job(self, job_id: str, timeout: Optional[int] = None) -> Dict[str, Any]:
        return self._request("POST", f"/automation/cancel/{job_id}", {}, timeout=timeout)

    def run_health_check(self, timeout: Optional[int] = None) -> Dict[str, Any]:
        return self._request("POST", "/automation/health-check", {}, timeout=timeout)
