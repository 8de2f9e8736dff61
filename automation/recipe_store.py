# automation/recipe_store.py
"""
IssuerAutomation persistence and its status machine.

Every status change goes through transition(); anything not listed in
ALLOWED_TRANSITIONS raises InvalidTransition.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError

from db.models import IssuerAutomation, IssuerAutomationStatus as S

from .errors import InvalidTransition, RecipeError
from .recipe import parse_steps

logger = logging.getLogger(__name__)

# None stands for "no row yet"
ALLOWED_TRANSITIONS = {
    None: {S.LEARNING},
    S.LEARNING: {S.PENDING_REVIEW, S.NEEDS_HUMAN_HELP, S.FAILED},
    S.PENDING_REVIEW: {S.VERIFIED, S.LEARNING, S.FAILED},
    S.NEEDS_HUMAN_HELP: {S.PENDING_REVIEW, S.LEARNING},
    S.VERIFIED: {S.LEARNING, S.NEEDS_HUMAN_HELP},
    S.FAILED: {S.LEARNING},
}


def can_transition(current: Optional[S], target: S) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


def get_automation(session, issuer_id: str) -> Optional[IssuerAutomation]:
    return session.query(IssuerAutomation).filter(IssuerAutomation.issuer_id == issuer_id).first()


def transition(session, automation: IssuerAutomation, target: S, **fields) -> IssuerAutomation:
    current = automation.status
    if not can_transition(current, target):
        raise InvalidTransition(f"{automation.issuer_id}: {getattr(current, 'value', current)} -> {target.value} not allowed")
    automation.status = target
    for k, v in fields.items():
        setattr(automation, k, v)
    if target == S.VERIFIED:
        automation.verified_at = datetime.utcnow()
    automation.updated_at = datetime.utcnow()
    session.flush()
    logger.info("Automation %s: %s -> %s", automation.issuer_id, getattr(current, "value", current), target.value)
    return automation


def create_learning_automation(session, issuer_id: str, issuer_name: str,
                               issuer_website: Optional[str] = None) -> Tuple[IssuerAutomation, bool]:
    """Insert a LEARNING row, or return the row a concurrent caller inserted first.

    Returns (automation, created).
    """
    automation = IssuerAutomation(
        issuer_id=issuer_id,
        issuer_name=issuer_name,
        issuer_website=issuer_website,
        status=S.LEARNING,
    )
    session.add(automation)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        existing = get_automation(session, issuer_id)
        if existing is None:
            raise
        logger.info("Automation for %s created concurrently; using existing row", issuer_id)
        return existing, False
    logger.info("Created LEARNING automation %s for %s", automation.id, issuer_id)
    return automation, True


def validate_recipe_steps(steps: Any) -> List[Dict[str, Any]]:
    """Raise RecipeError unless the raw step list parses; return it unchanged."""
    parse_steps(steps)
    return steps


def record_learn_result(session, automation: IssuerAutomation, *, success: bool,
                        steps: Optional[List[Dict[str, Any]]] = None, challenge_url: Optional[str] = None,
                        failure_reason: Optional[str] = None, needs_human_help: bool = False,
                        needs_account: bool = False, captcha_type: Optional[str] = None) -> IssuerAutomation:
    if needs_human_help:
        return transition(session, automation, S.NEEDS_HUMAN_HELP,
                          failure_reason=failure_reason, needs_account=bool(needs_account),
                          captcha_type=captcha_type, challenge_url=challenge_url or automation.challenge_url)
    if not success:
        return transition(session, automation, S.FAILED, failure_reason=failure_reason or "learn job failed")
    try:
        validate_recipe_steps(steps)
    except RecipeError as e:
        logger.warning("Learned recipe for %s rejected: %s", automation.issuer_id, e)
        return transition(session, automation, S.FAILED, failure_reason=f"invalid recipe: {e}")
    return transition(session, automation, S.PENDING_REVIEW, steps=list(steps),
                      challenge_url=challenge_url, failure_reason=None)


def approve_recipe(session, automation: IssuerAutomation) -> IssuerAutomation:
    validate_recipe_steps(automation.steps)
    return transition(session, automation, S.VERIFIED)


def reject_recipe(session, automation: IssuerAutomation, reason: str) -> IssuerAutomation:
    return transition(session, automation, S.FAILED, failure_reason=reason)


def supply_human_recipe(session, automation: IssuerAutomation, steps: List[Dict[str, Any]],
                        challenge_url: Optional[str] = None) -> IssuerAutomation:
    validate_recipe_steps(steps)
    if automation.status != S.NEEDS_HUMAN_HELP:
        raise InvalidTransition(f"{automation.issuer_id}: staff recipes only replace NEEDS_HUMAN_HELP")
    return transition(session, automation, S.PENDING_REVIEW, steps=list(steps),
                      challenge_url=challenge_url or automation.challenge_url, failure_reason=None)


def request_relearn(session, automation: IssuerAutomation) -> IssuerAutomation:
    return transition(session, automation, S.LEARNING, hetzner_job_id=None, failure_reason=None)
