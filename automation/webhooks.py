# automation/webhooks.py
"""
Consumer for the worker's job-completion webhook.

The worker POSTs JSON {jobId, type: learn|run, status, automationId,
challengeId?, result, timestamp} signed with HMAC-SHA256 (hex) of the raw body
in the X-Webhook-Signature header. handle_automation_webhook() returns an
(http_status, body) pair for whatever web layer sits in front of it.

Deliveries are idempotent: a result for an automation that is no longer
LEARNING, for a different job, or for a challenge that is already SUCCESS or
ERROR is acknowledged with {"ignored": true} and changes nothing.
"""
import hashlib
import hmac
import json
import logging
import os
from datetime import datetime
from typing import Any, Dict, Optional, Tuple, Union

from db.models import Challenge, ChallengeStatus, IssuerAutomation, IssuerAutomationStatus as S

from .autochallenge import queued_challenges
from .errors import InvalidTransition
from .recipe_store import record_learn_result
from .results import (
    FailedMetadata,
    NeedsHumanHelpMetadata,
    PendingReviewMetadata,
    RunStartedMetadata,
    SubmittedMetadata,
    parse_metadata,
    set_metadata,
)

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"

Response = Tuple[int, Dict[str, Any]]


def sign(raw_body: Union[bytes, str], secret: str) -> str:
    if isinstance(raw_body, str):
        raw_body = raw_body.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: Union[bytes, str], signature: Optional[str], secret: str) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(sign(raw_body, secret), signature)


def _ignored(reason: str, **extra: Any) -> Response:
    body = {"success": True, "ignored": True, "reason": reason}
    body.update(extra)
    return 200, body


# =============================================================================
# LEARN RESULTS
# =============================================================================

def _handle_learn(session, payload: Dict[str, Any]) -> Response:
    automation_id = payload.get("automationId")
    automation = session.get(IssuerAutomation, automation_id) if automation_id else None
    if automation is None:
        logger.warning("Learn webhook for unknown automation %s", automation_id)
        return 404, {"error": "Automation not found"}
    job_id = payload.get("jobId")
    if automation.status != S.LEARNING:
        logger.info("Ignoring learn result for %s: status is %s", automation.issuer_id, automation.status.value)
        return _ignored("not_learning", status=automation.status.value)
    if automation.hetzner_job_id and job_id and job_id != automation.hetzner_job_id:
        logger.info("Ignoring learn result for %s: job %s is not current job %s",
                    automation.issuer_id, job_id, automation.hetzner_job_id)
        return _ignored("job_mismatch")

    result = payload.get("result") or {}
    success = bool(result.get("success")) and payload.get("status") != "failed"
    record_learn_result(
        session,
        automation,
        success=success,
        steps=result.get("steps"),
        challenge_url=result.get("challengeUrl"),
        failure_reason=result.get("humanHelpReason") or result.get("error"),
        needs_human_help=bool(result.get("needsHumanHelp")),
        needs_account=bool(result.get("needsAccount")),
        captcha_type=result.get("captchaType"),
    )

    for challenge in queued_challenges(session, automation):
        if automation.status == S.NEEDS_HUMAN_HELP:
            set_metadata(challenge, NeedsHumanHelpMetadata(automation_id=automation.id,
                                                           reason=automation.failure_reason))
        elif automation.status == S.PENDING_REVIEW:
            set_metadata(challenge, PendingReviewMetadata(automation_id=automation.id))
        else:
            challenge.status = ChallengeStatus.ERROR
            set_metadata(challenge, FailedMetadata(error=automation.failure_reason or "Learning failed",
                                                   error_code="learn_failed"))
    session.commit()
    logger.info("Learn result applied to %s: %s", automation.issuer_id, automation.status.value)
    return 200, {"success": True, "automationId": automation.id, "status": automation.status.value}


# =============================================================================
# RUN RESULTS
# =============================================================================

def _handle_run(session, payload: Dict[str, Any]) -> Response:
    challenge_id = payload.get("challengeId")
    challenge = session.get(Challenge, challenge_id) if challenge_id else None
    if challenge is None:
        logger.warning("Run webhook for unknown challenge %s", challenge_id)
        return 404, {"error": "Challenge not found", "jobId": payload.get("jobId")}
    if challenge.status != ChallengeStatus.PENDING:
        return _ignored("already_final", status=challenge.status.value)
    try:
        meta = parse_metadata(challenge.challenge_metadata)
    except (TypeError, ValueError):
        meta = None
    job_id = payload.get("jobId")
    if isinstance(meta, RunStartedMetadata) and meta.job_id and job_id and meta.job_id != job_id:
        return _ignored("job_mismatch")

    automation_id = payload.get("automationId")
    result = payload.get("result") or {}
    screenshots = list(result.get("screenshotUrls") or [])

    if result.get("success") and result.get("challengeSubmitted"):
        now = datetime.utcnow()
        challenge.status = ChallengeStatus.SUCCESS
        challenge.submitted_at = now
        set_metadata(challenge, SubmittedMetadata(challenge_text=result.get("challengeText"),
                                                  screenshot_urls=screenshots, submitted_at=now))
        logger.info("Challenge %s submitted by worker", challenge.id)
    elif result.get("captchaEncountered") and not result.get("success"):
        # stays PENDING for a person to finish
        set_metadata(challenge, NeedsHumanHelpMetadata(automation_id=automation_id, reason="captcha",
                                                       during_run=True))
        logger.warning("Challenge %s blocked by CAPTCHA", challenge.id)
    else:
        error = result.get("error") or "Submission failed"
        challenge.status = ChallengeStatus.ERROR
        set_metadata(challenge, FailedMetadata(error=error, error_code="run_failed", screenshot_urls=screenshots))
        automation = session.get(IssuerAutomation, automation_id) if automation_id else None
        if automation is not None:
            automation.failure_reason = error
        logger.error("Challenge %s submission failed: %s", challenge.id, error)

    session.commit()
    return 200, {"success": True, "challengeId": challenge.id, "status": challenge.status.value}


def handle_automation_webhook(session, raw_body: Union[bytes, str], signature: Optional[str],
                              secret: Optional[str] = None) -> Response:
    secret = secret or os.getenv("HETZNER_AUTOMATION_SECRET")
    if not secret:
        logger.error("HETZNER_AUTOMATION_SECRET not configured")
        return 500, {"error": "Server configuration error"}
    if not verify_signature(raw_body, signature, secret):
        logger.warning("Invalid webhook signature")
        return 401, {"error": "Invalid signature"}

    try:
        payload = json.loads(raw_body)
    except (TypeError, ValueError):
        return 400, {"error": "Malformed JSON"}
    if not isinstance(payload, dict):
        return 400, {"error": "Malformed payload"}

    kind = payload.get("type")
    logger.info("Received automation webhook job=%s type=%s status=%s", payload.get("jobId"), kind,
                payload.get("status"))
    try:
        if kind == "learn":
            return _handle_learn(session, payload)
        if kind == "run":
            return _handle_run(session, payload)
    except InvalidTransition as e:
        session.rollback()
        logger.warning("Webhook rejected: %s", e)
        return _ignored("invalid_transition")
    except Exception:
        session.rollback()
        logger.exception("Webhook processing error")
        return 500, {"error": "Internal server error"}
    return 400, {"error": f"Unknown job type: {kind}"}
