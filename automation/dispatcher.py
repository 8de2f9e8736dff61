#!/usr/bin/env python3
# automation/dispatcher.py
"""
Runs a ticket's issuer portal automation end to end.

- run_issuer_automation() resolves ticket -> issuer -> built-in recipe, opens the
  browser, runs the StepEngine and persists evidence/screenshot Media rows. It
  always returns a RunResult; failures carry an error_code.
- verify() / challenge() / dispatch() collapse that to a bool and never raise.
- run_learned_recipe() replays a VERIFIED IssuerAutomation with the same engine.
"""
import logging
import shutil
import tempfile
import threading
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional

from adapters import get_storage
from adapters.session import env_flag
from db.models import IssuerAutomation, IssuerAutomationStatus, MediaSource, MediaType, Ticket
from llm.challenge_text import generate_challenge_text

from . import evidence as evidence_mod
from .browser import open_browser
from .captcha import TwoCaptchaSolver
from .engine import StepEngine
from .errors import (AutomationError, IssuerNotFound, IssuerUnsupported, RecipeError, TextGenerationError,
                     TicketNotFound)
from .issuers import find_issuer, is_automation_supported, load_built_in_recipe
from .recipe import AutomationContext, Step, build_automation_context, parse_steps
from .results import RunResult

logger = logging.getLogger(__name__)

INTENTS = ("verify", "challenge")


def default_dry_run() -> bool:
    return env_flag("AUTOMATION_DRY_RUN")


def _execute(session, ticket: Ticket, steps: List[Step], context: AutomationContext, *, intent: str,
             screenshot_path: Callable[[str, int], str], recording_id: Optional[str] = None, dry_run: bool = False,
             extra_variables: Optional[Dict[str, str]] = None, browser_factory=None, store=None,
             text_generator=None, captcha_solver=None, cancel_event: Optional[threading.Event] = None,
             record_video: Optional[bool] = None) -> RunResult:
    browser_factory = browser_factory or open_browser
    store = store if store is not None else get_storage()
    text_generator = text_generator or generate_challenge_text
    captcha_solver = captcha_solver if captcha_solver is not None else TwoCaptchaSolver.from_env()
    record_video = env_flag("AUTOMATION_RECORD_VIDEO") if record_video is None else record_video
    user = ticket.vehicle.user
    video_dir = tempfile.mkdtemp(prefix="ptp-video-") if (record_video and recording_id) else None

    try:
        with browser_factory(record_video_dir=video_dir) as handle:
            engine = StepEngine(
                handle.page,
                context,
                store=store,
                text_generator=text_generator,
                captcha_solver=captcha_solver,
                screenshot_path=screenshot_path,
                evidence_prefix=evidence_mod.evidence_prefix(user.id, ticket.id),
                dry_run=dry_run,
                cancel_event=cancel_event,
                extra_variables=extra_variables,
            )
            result = engine.run(steps, intent=intent)

        if handle.video_path and recording_id:
            try:
                result.video_url = evidence_mod.upload_recording(store, recording_id, handle.video_path)
            except Exception:
                logger.exception("Recording upload failed for %s", recording_id)
    finally:
        if video_dir:
            shutil.rmtree(video_dir, ignore_errors=True)

    evidence_mod.record_media(session, ticket.id, result.evidence_urls, MediaSource.EVIDENCE,
                              description="Issuer evidence")
    evidence_mod.record_media(session, ticket.id, result.screenshot_urls, MediaSource.SCREENSHOT,
                              description=f"Automation {intent} screenshot")
    if result.video_url:
        evidence_mod.record_media(session, ticket.id, [result.video_url], MediaSource.RECORDING,
                                  media_type=MediaType.VIDEO, description=f"Automation {intent} recording")
    session.commit()
    return result


def run_issuer_automation(session, pcn_number: str, intent: str = "verify", *, reason: Optional[str] = None,
                          custom_reason: Optional[str] = None, challenge_id: Optional[str] = None,
                          dry_run: Optional[bool] = None, **kwargs: Any) -> RunResult:
    """Run the built-in recipe for the ticket's issuer. Never raises.

    challenge_id keys screenshots and recordings under automation/challenges/
    (or automation/dry-runs/); without it screenshots land under the ticket.
    """
    dry_run = default_dry_run() if dry_run is None else dry_run
    try:
        ticket = session.query(Ticket).filter(Ticket.pcn_number == pcn_number).first()
        if ticket is None:
            raise TicketNotFound(f"Ticket not found: {pcn_number}")
        issuer = find_issuer(ticket.issuer)
        if issuer is None:
            raise IssuerNotFound(f"Issuer not found: {ticket.issuer}")
        if not is_automation_supported(issuer.id):
            raise IssuerUnsupported(f"Automation not supported for issuer: {issuer.id}")
        recipe = load_built_in_recipe(issuer.id)
        if recipe is None or not recipe.supports(intent):
            raise RecipeError(f"No built-in {intent} automation for issuer: {issuer.id}")

        extra = recipe.reason_variables(reason) if intent == "challenge" else {}
        context = build_automation_context(ticket, reason or "", custom_reason)
        user = ticket.vehicle.user

        if challenge_id:
            def screenshot_path(name, order):
                return evidence_mod.challenge_screenshot_path(challenge_id, name, dry_run=dry_run)
        else:
            def screenshot_path(name, order):
                return evidence_mod.ticket_screenshot_path(user.id, ticket.id, name)

        logger.info("Running %s automation for %s (issuer=%s, dry_run=%s)", intent, pcn_number, issuer.id, dry_run)
        return _execute(session, ticket, recipe.steps_for(intent), context, intent=intent,
                        screenshot_path=screenshot_path, recording_id=challenge_id, dry_run=dry_run,
                        extra_variables=extra, **kwargs)
    except AutomationError as e:
        logger.warning("%s automation for %s failed: %s", intent, pcn_number, e)
        return RunResult.failure(str(e), e.code, intent=intent, dry_run=dry_run)
    except Exception as e:
        logger.exception("Unhandled exception in %s automation for %s", intent, pcn_number)
        return RunResult.failure(str(e) or "unexpected error", "unexpected_error", intent=intent, dry_run=dry_run)


def _learned_challenge_text(ticket: Ticket, context: AutomationContext, *, store=None, text_generator=None,
                            **_: Any) -> str:
    """Write the appeal up front; learned recipes only fill {{challengeText}}."""
    store = store if store is not None else get_storage()
    text_generator = text_generator or generate_challenge_text
    evidence_urls = store.list(evidence_mod.evidence_prefix(ticket.vehicle.user_id, ticket.id))
    text = text_generator(
        pcn_number=context.pcn_number,
        challenge_reason=context.challenge_reason,
        additional_details=context.additional_details,
        placeholder_text="",
        issuer_evidence_urls=evidence_urls,
        user_evidence_urls=[],
    )
    if not text or not text.strip():
        raise TextGenerationError(f"Empty challenge text for PCN {context.pcn_number}")
    return text


def run_learned_recipe(session, automation: IssuerAutomation, ticket: Ticket, challenge,
                       context: AutomationContext, *, dry_run: Optional[bool] = None, **kwargs: Any) -> RunResult:
    """Replay a VERIFIED learned recipe locally. Never raises."""
    dry_run = default_dry_run() if dry_run is None else dry_run
    try:
        if automation.status != IssuerAutomationStatus.VERIFIED:
            raise RecipeError(f"Recipe for {automation.issuer_id} is not verified")
        steps = parse_steps(automation.steps)
        if not context.challenge_text and not any(getattr(s, "into", None) == "challengeText" for s in steps):
            context = replace(context, challenge_text=_learned_challenge_text(ticket, context, **kwargs))

        def screenshot_path(name, order):
            return evidence_mod.run_screenshot_path(automation.id, challenge.id, order)

        result = _execute(session, ticket, steps, context, intent="challenge", screenshot_path=screenshot_path,
                          recording_id=challenge.id, dry_run=dry_run, **kwargs)
        if result.challenge_text is None:
            result.challenge_text = context.challenge_text
        return result
    except AutomationError as e:
        logger.warning("Learned recipe for %s failed: %s", automation.issuer_id, e)
        return RunResult.failure(str(e), e.code, intent="challenge", dry_run=dry_run)
    except Exception as e:
        logger.exception("Unhandled exception replaying recipe for %s", automation.issuer_id)
        return RunResult.failure(str(e) or "unexpected error", "unexpected_error", intent="challenge", dry_run=dry_run)


def verify(session, pcn_number: str, **kwargs: Any) -> bool:
    return run_issuer_automation(session, pcn_number, "verify", **kwargs).success


def challenge(session, pcn_number: str, reason: str, **kwargs: Any) -> bool:
    return run_issuer_automation(session, pcn_number, "challenge", reason=reason, **kwargs).success


def dispatch(session, pcn_number: str, intent: str, **kwargs: Any) -> bool:
    if intent not in INTENTS:
        logger.error("Unknown automation intent: %s", intent)
        return False
    return run_issuer_automation(session, pcn_number, intent, **kwargs).success


__all__ = ["run_issuer_automation", "run_learned_recipe", "verify", "challenge", "dispatch"]
