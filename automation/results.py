# automation/results.py
"""
Result records and the typed payloads written to Challenge.metadata.

Metadata is never built as an ad-hoc dict: each state has its own payload
class tagged with `kind`, and parse_metadata() refuses kinds it does not know.
"""
from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass
class StepOutcome:
    order: int
    action: str
    status: str  # ok | skipped | failed
    attempts: int = 0
    selector_used: Optional[str] = None
    error: Optional[str] = None
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RunResult:
    success: bool
    run_id: Optional[str] = None
    intent: Optional[str] = None
    dry_run: bool = False
    outcomes: List[StepOutcome] = field(default_factory=list)
    failed_step: Optional[int] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    challenge_text: Optional[str] = None
    screenshot_urls: List[str] = field(default_factory=list)
    evidence_urls: List[str] = field(default_factory=list)
    video_url: Optional[str] = None
    variables: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def failure(cls, error: str, error_code: str, **kw) -> "RunResult":
        return cls(success=False, error=error, error_code=error_code, **kw)

    @property
    def completed_steps(self) -> List[int]:
        return [o.order for o in self.outcomes if o.status == "ok"]

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["completed_steps"] = self.completed_steps
        # run variables can hold personal data; keep them out of the printable form
        out.pop("variables", None)
        return out


@dataclass
class AutoChallengeResult:
    success: bool
    status: str  # submitted | learning | pending_review | needs_human_help | submitting | dry_run_complete | error
    message: str = ""
    challenge_id: Optional[str] = None
    automation_id: Optional[str] = None
    job_id: Optional[str] = None
    dry_run_results: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


# =============================================================================
# CHALLENGE METADATA
# =============================================================================

def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


class _Payload:
    kind = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        obj = parse_metadata(data)
        if not isinstance(obj, cls):
            raise ValueError(f"expected {cls.kind!r} metadata, got {(data or {}).get('kind')!r}")
        return obj


@dataclass
class QueuedMetadata(_Payload):
    kind = "queued"
    automation_id: str
    issuer_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "automation_id": self.automation_id, "issuer_id": self.issuer_id}


@dataclass
class RunStartedMetadata(_Payload):
    kind = "run_started"
    automation_id: str
    job_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "automation_id": self.automation_id, "job_id": self.job_id}


@dataclass
class SubmittedMetadata(_Payload):
    kind = "submitted"
    challenge_text: Optional[str] = None
    screenshot_urls: List[str] = field(default_factory=list)
    video_url: Optional[str] = None
    submitted_at: Optional[datetime] = None
    dry_run: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "challenge_text": self.challenge_text,
            "screenshot_urls": list(self.screenshot_urls),
            "video_url": self.video_url,
            "submitted_at": _iso(self.submitted_at),
            "dry_run": self.dry_run,
        }


@dataclass
class FailedMetadata(_Payload):
    kind = "failed"
    error: str
    error_code: Optional[str] = None
    failed_at_step: Optional[int] = None
    completed_steps: List[int] = field(default_factory=list)
    screenshot_urls: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "error": self.error,
            "error_code": self.error_code,
            "failed_at_step": self.failed_at_step,
            "completed_steps": list(self.completed_steps),
            "screenshot_urls": list(self.screenshot_urls),
        }

    @classmethod
    def from_run(cls, result: RunResult) -> "FailedMetadata":
        return cls(
            error=result.error or "automation failed",
            error_code=result.error_code,
            failed_at_step=result.failed_step,
            completed_steps=result.completed_steps,
            screenshot_urls=list(result.screenshot_urls),
        )


@dataclass
class NeedsHumanHelpMetadata(_Payload):
    kind = "needs_human_help"
    automation_id: str
    reason: Optional[str] = None
    # set when a started run was blocked, as opposed to learning stalling
    during_run: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "automation_id": self.automation_id, "reason": self.reason,
                "during_run": self.during_run}


@dataclass
class PendingReviewMetadata(_Payload):
    kind = "pending_review"
    automation_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "automation_id": self.automation_id}


METADATA_KINDS = {
    cls.kind: cls
    for cls in (QueuedMetadata, RunStartedMetadata, SubmittedMetadata,
                FailedMetadata, NeedsHumanHelpMetadata, PendingReviewMetadata)
}


def parse_metadata(data: Optional[Dict[str, Any]]):
    """Rebuild the payload object stored in Challenge.metadata. Raises ValueError."""
    if not data:
        return None
    kind = data.get("kind")
    cls = METADATA_KINDS.get(kind)
    if cls is None:
        raise ValueError(f"unknown challenge metadata kind: {kind!r}")
    kwargs = {k: v for k, v in data.items() if k != "kind"}
    if cls is SubmittedMetadata and kwargs.get("submitted_at"):
        kwargs["submitted_at"] = datetime.fromisoformat(kwargs["submitted_at"])
    return cls(**kwargs)


def set_metadata(challenge, payload) -> None:
    """Assign (never mutate) the JSON column so the change is always flushed."""
    challenge.challenge_metadata = payload.to_dict()
