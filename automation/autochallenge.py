# automation/autochallenge.py
"""
Entry point for "challenge this ticket automatically".

initiate_auto_challenge() is a decision table over the issuer's recipe status:

    built-in recipe      -> run it now (or a dry run that writes nothing)
    no recipe yet        -> create LEARNING row, queue the challenge, start a learn job
    LEARNING             -> learning
    PENDING_REVIEW       -> pending_review
    NEEDS_HUMAN_HELP     -> needs_human_help
    FAILED               -> relearn
    VERIFIED             -> start a run job (or replay locally)

Rows are committed before any worker call and updated after it, so a crash
leaves a PENDING challenge whose `queued` metadata can be re-driven by
process_queued_challenges().
"""
import logging
import random
import string
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from adapters import get_worker
from adapters.session import env_flag
from db.models import (
    Challenge,
    ChallengeStatus,
    ChallengeType,
    IssuerAutomation,
    IssuerAutomationStatus as S,
    Ticket,
)

from .errors import WorkerError
from .dispatcher import default_dry_run, run_issuer_automation, run_learned_recipe
from .issuers import find_issuer, has_built_in_support, issuer_slug
from .recipe import build_automation_context
from .recipe_store import create_learning_automation, get_automation, request_relearn, transition
from .results import (
    AutoChallengeResult,
    FailedMetadata,
    NeedsHumanHelpMetadata,
    PendingReviewMetadata,
    QueuedMetadata,
    RunResult,
    RunStartedMetadata,
    SubmittedMetadata,
    parse_metadata,
    set_metadata,
)

logger = logging.getLogger(__name__)

_WAITING = {
    S.LEARNING: ("learning",
                 "We're learning how to submit challenges for this issuer. Please try again once it is ready."),
    S.PENDING_REVIEW: ("pending_review", "Automation for this issuer is awaiting review. Please check back soon."),
    S.NEEDS_HUMAN_HELP: ("needs_human_help",
                         "This issuer's website needs manual setup. Our team has been notified."),
}

_QUEUED_MESSAGE = "We're learning how to submit challenges for this issuer. Your challenge is queued."


def default_run_local() -> bool:
    return env_flag("AUTOMATION_RUN_LOCAL")


def dry_run_id() -> str:
    rand = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"dry-run-{int(time.time() * 1000)}-{rand}"


def _new_challenge(session, ticket: Ticket, reason: str, custom_reason: Optional[str]) -> Challenge:
    challenge = Challenge(
        ticket_id=ticket.id,
        type=ChallengeType.AUTO_CHALLENGE,
        reason=reason,
        custom_reason=custom_reason,
        status=ChallengeStatus.PENDING,
    )
    session.add(challenge)
    session.flush()
    return challenge


def apply_run_result(challenge: Challenge, result: RunResult) -> None:
    """Move a PENDING challenge to SUCCESS or ERROR from a finished run.

    A successful dry run submitted nothing, so the challenge stays PENDING.
    """
    if result.success and result.dry_run:
        set_metadata(challenge, SubmittedMetadata(
            challenge_text=result.challenge_text,
            screenshot_urls=list(result.screenshot_urls),
            video_url=result.video_url,
            dry_run=True,
        ))
    elif result.success:
        now = datetime.utcnow()
        challenge.status = ChallengeStatus.SUCCESS
        challenge.submitted_at = now
        set_metadata(challenge, SubmittedMetadata(
            challenge_text=result.challenge_text,
            screenshot_urls=list(result.screenshot_urls),
            video_url=result.video_url,
            submitted_at=now,
            dry_run=result.dry_run,
        ))
    else:
        challenge.status = ChallengeStatus.ERROR
        set_metadata(challenge, FailedMetadata.from_run(result))


def _fail_challenge(challenge: Challenge, error: str, code: str) -> None:
    challenge.status = ChallengeStatus.ERROR
    set_metadata(challenge, FailedMetadata(error=error, error_code=code))


# =============================================================================
# BUILT-IN PATH
# =============================================================================

def _run_built_in(session, ticket: Ticket, reason: str, custom_reason: Optional[str], dry_run: bool,
                  runner, **run_kwargs: Any) -> AutoChallengeResult:
    if dry_run:
        result = runner(session, ticket.pcn_number, "challenge", reason=reason, custom_reason=custom_reason,
                        challenge_id=dry_run_id(), dry_run=True, **run_kwargs)
        if not result.success:
            return AutoChallengeResult(False, "error", result.error or "Dry run failed.")
        return AutoChallengeResult(
            True,
            "dry_run_complete",
            "Dry run completed. Nothing was submitted.",
            dry_run_results={
                "screenshot_urls": list(result.screenshot_urls),
                "video_url": result.video_url,
                "challenge_text": result.challenge_text,
            },
        )

    challenge = _new_challenge(session, ticket, reason, custom_reason)
    session.commit()
    result = runner(session, ticket.pcn_number, "challenge", reason=reason, custom_reason=custom_reason,
                    challenge_id=challenge.id, dry_run=False, **run_kwargs)
    apply_run_result(challenge, result)
    session.commit()
    if result.success:
        return AutoChallengeResult(True, "submitted", "Challenge submitted successfully.", challenge_id=challenge.id)
    return AutoChallengeResult(False, "error", result.error or "Challenge submission failed.",
                               challenge_id=challenge.id)


# =============================================================================
# LEARN / RUN PATH
# =============================================================================

def _start_learning(session, automation: IssuerAutomation, ticket: Ticket, reason: str,
                    custom_reason: Optional[str], worker) -> AutoChallengeResult:
    challenge = _new_challenge(session, ticket, reason, custom_reason)
    set_metadata(challenge, QueuedMetadata(automation_id=automation.id, issuer_id=automation.issuer_id))
    session.commit()

    resp = worker.start_learn_job(automation.id, automation.issuer_name, ticket.pcn_number,
                                  ticket.vehicle.registration_number, automation.issuer_website)
    if not resp.get("success"):
        error = resp.get("error") or "Failed to start learn job"
        logger.warning("Learn job for %s did not start: %s", automation.issuer_id, error)
        transition(session, automation, S.FAILED, failure_reason=error)
        _fail_challenge(challenge, error, WorkerError.code)
        session.commit()
        return AutoChallengeResult(False, "error", "Failed to start automation learning.",
                                   challenge_id=challenge.id, automation_id=automation.id)

    automation.hetzner_job_id = resp.get("job_id")
    session.commit()
    logger.info("Learn job %s started for %s", automation.hetzner_job_id, automation.issuer_id)
    return AutoChallengeResult(True, "learning", _QUEUED_MESSAGE, challenge_id=challenge.id,
                               automation_id=automation.id, job_id=automation.hetzner_job_id)


def _start_run(session, automation: IssuerAutomation, ticket: Ticket, challenge: Challenge, *, worker,
               dry_run: bool, run_local: bool, learned_runner, **run_kwargs: Any) -> AutoChallengeResult:
    context = build_automation_context(ticket, challenge.reason, challenge.custom_reason)

    if run_local:
        result = learned_runner(session, automation, ticket, challenge, context, dry_run=dry_run, **run_kwargs)
        apply_run_result(challenge, result)
        session.commit()
        if result.success and result.dry_run:
            return AutoChallengeResult(True, "dry_run_complete", "Dry run completed. Nothing was submitted.",
                                       challenge_id=challenge.id, automation_id=automation.id)
        if result.success:
            return AutoChallengeResult(True, "submitted", "Challenge submitted successfully.",
                                       challenge_id=challenge.id, automation_id=automation.id)
        return AutoChallengeResult(False, "error", result.error or "Challenge submission failed.",
                                   challenge_id=challenge.id, automation_id=automation.id)

    resp = worker.start_run_job(automation.id, challenge.id, automation.steps, context.to_payload(), dry_run=dry_run)
    if not resp.get("success"):
        error = resp.get("error") or "Failed to start run job"
        logger.warning("Run job for challenge %s did not start: %s", challenge.id, error)
        _fail_challenge(challenge, error, WorkerError.code)
        session.commit()
        return AutoChallengeResult(False, "error", "Failed to start challenge submission.",
                                   challenge_id=challenge.id, automation_id=automation.id)

    job_id = resp.get("job_id")
    set_metadata(challenge, RunStartedMetadata(automation_id=automation.id, job_id=job_id))
    session.commit()
    return AutoChallengeResult(True, "submitting", "Your challenge is being submitted.",
                               challenge_id=challenge.id, automation_id=automation.id, job_id=job_id)


def initiate_auto_challenge(session, ticket_id: str, challenge_reason: str, custom_reason: Optional[str] = None,
                            *, user_id: Optional[str] = None, worker=None, dry_run: Optional[bool] = None,
                            run_local: Optional[bool] = None, runner=None, learned_runner=None,
                            **run_kwargs: Any) -> AutoChallengeResult:
    """Start (or report on) an automated challenge for one ticket. Never raises.

    runner / learned_runner default to the dispatcher's run_issuer_automation /
    run_learned_recipe; run_kwargs are passed through to them.
    """
    dry_run = default_dry_run() if dry_run is None else dry_run
    run_local = default_run_local() if run_local is None else run_local
    runner = runner or run_issuer_automation
    learned_runner = learned_runner or run_learned_recipe
    try:
        ticket = session.get(Ticket, ticket_id)
        if ticket is None:
            return AutoChallengeResult(False, "error", "Ticket not found.")
        if user_id is not None and ticket.vehicle.user_id != user_id:
            return AutoChallengeResult(False, "error", "You do not have permission to challenge this ticket.")

        issuer = find_issuer(ticket.issuer)
        issuer_id = issuer.id if issuer else issuer_slug(ticket.issuer)

        if has_built_in_support(issuer_id, "challenge"):
            return _run_built_in(session, ticket, challenge_reason, custom_reason, dry_run, runner, **run_kwargs)

        worker = worker or get_worker()
        automation = get_automation(session, issuer_id)
        if automation is None:
            automation, created = create_learning_automation(
                session, issuer_id, issuer.name if issuer else ticket.issuer,
                issuer.website_url if issuer else None)
            if created:
                return _start_learning(session, automation, ticket, challenge_reason, custom_reason, worker)

        if automation.status in _WAITING:
            status, message = _WAITING[automation.status]
            return AutoChallengeResult(True, status, message, automation_id=automation.id,
                                       job_id=automation.hetzner_job_id)

        if automation.status == S.FAILED:
            logger.info("Relearning failed automation for %s", issuer_id)
            request_relearn(session, automation)
            return _start_learning(session, automation, ticket, challenge_reason, custom_reason, worker)

        challenge = _new_challenge(session, ticket, challenge_reason, custom_reason)
        session.commit()
        return _start_run(session, automation, ticket, challenge, worker=worker, dry_run=dry_run,
                          run_local=run_local, learned_runner=learned_runner, **run_kwargs)
    except Exception as e:
        logger.exception("Auto-challenge for ticket %s failed", ticket_id)
        session.rollback()
        return AutoChallengeResult(False, "error", str(e) or "An unexpected error occurred.")


def get_challenge_status(session, challenge_id: str) -> Optional[Dict[str, Any]]:
    challenge = session.get(Challenge, challenge_id)
    if challenge is None:
        return None
    return {
        "id": challenge.id,
        "status": challenge.status.value,
        "metadata": challenge.challenge_metadata,
        "submitted_at": challenge.submitted_at.isoformat() if challenge.submitted_at else None,
    }


def queued_challenges(session, automation: IssuerAutomation) -> List[Challenge]:
    """PENDING challenges whose metadata names this automation."""
    out = []
    pending = session.query(Challenge).filter(Challenge.status == ChallengeStatus.PENDING).all()
    for challenge in pending:
        try:
            meta = parse_metadata(challenge.challenge_metadata)
        except (TypeError, ValueError):
            logger.warning("Challenge %s has unreadable metadata", challenge.id)
            continue
        if meta is not None and getattr(meta, "automation_id", None) == automation.id:
            out.append(challenge)
    return out


def _waiting_on_recipe(meta) -> bool:
    """True for challenges parked while the recipe was learned or reviewed."""
    if isinstance(meta, NeedsHumanHelpMetadata):
        return not meta.during_run
    return isinstance(meta, (QueuedMetadata, PendingReviewMetadata))


def process_queued_challenges(session, automation: IssuerAutomation, *, worker=None,
                              dry_run: Optional[bool] = None, run_local: Optional[bool] = None,
                              learned_runner=None, **run_kwargs: Any) -> List[AutoChallengeResult]:
    """Start runs for challenges that were queued while the recipe was being learned."""
    if automation.status != S.VERIFIED:
        return []
    dry_run = default_dry_run() if dry_run is None else dry_run
    run_local = default_run_local() if run_local is None else run_local
    worker = worker or get_worker()
    learned_runner = learned_runner or run_learned_recipe

    results = []
    for challenge in queued_challenges(session, automation):
        if not _waiting_on_recipe(parse_metadata(challenge.challenge_metadata)):
            continue
        logger.info("Starting queued challenge %s for %s", challenge.id, automation.issuer_id)
        results.append(_start_run(session, automation, challenge.ticket, challenge, worker=worker,
                                  dry_run=dry_run, run_local=run_local, learned_runner=learned_runner,
                                  **run_kwargs))
    return results


__all__ = [
    "initiate_auto_challenge",
    "get_challenge_status",
    "process_queued_challenges",
    "apply_run_result",
]
