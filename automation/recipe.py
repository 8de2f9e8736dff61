# automation/recipe.py
"""
Recipe format.

A recipe is an ordered list of steps. Steps arrive in two shapes:
- built-in recipe files (automation/recipes/<issuer>.json), snake_case keys;
- learned recipes posted back by the worker (camelCase keys, a generic 'wait'
  action, navigate URL carried in 'value').

normalize_step() folds both shapes into one, validate_steps() checks the list
against schema.json, and parse_steps() builds one frozen dataclass per action.
Placeholders ({{pcnNumber}}, {{challengeText}}, ...) are checked statically:
every name must be a context field or be produced by an earlier step's `into`.
"""
from __future__ import annotations

import json
import logging
import pathlib
import re
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Iterable, List, Optional, Tuple

from jsonschema import validate, ValidationError

from .errors import RecipeError

logger = logging.getLogger(__name__)

SCHEMA_PATH = pathlib.Path(__file__).with_name("schema.json")

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z][A-Za-z0-9_]*)\s*\}\}")

CONTEXT_FIELDS: Tuple[str, ...] = (
    "pcnNumber", "vehicleReg", "firstName", "lastName", "fullName", "email",
    "phone", "addressLine1", "addressLine2", "city", "postcode",
    "challengeReason", "challengeText", "additionalDetails",
)
REASON_FIELDS: Tuple[str, ...] = ("reasonDescription", "reasonDetail", "reasonSummary")

DEFAULT_CAPTCHA_DETECT = "iframe[src*='recaptcha']"

_CAMEL_KEYS = {
    "waitFor": "wait_for",
    "waitForUrl": "wait_for_url",
    "selectorCandidates": "selector_candidates",
    "timeoutMs": "timeout_ms",
    "durationMs": "duration_ms",
    "onNoMatch": "on_no_match",
    "placeholderFrom": "placeholder_from",
    "sitekeySelector": "sitekey_selector",
    "responseSelector": "response_selector",
}
# learn-job bookkeeping that the engine has no use for
_DROP_KEYS = {"screenshotUrl", "fieldType", "placeholder"}


# ---------------- context ----------------

@dataclass
class AutomationContext:
    """Values a recipe may reference through placeholders."""
    pcn_number: str
    vehicle_reg: str
    first_name: str = ""
    last_name: str = ""
    full_name: str = ""
    email: str = ""
    phone: Optional[str] = None
    address_line1: str = ""
    address_line2: Optional[str] = None
    city: str = ""
    postcode: str = ""
    challenge_reason: str = ""
    challenge_text: Optional[str] = None
    additional_details: Optional[str] = None

    def as_variables(self) -> Dict[str, str]:
        return {
            "pcnNumber": self.pcn_number,
            "vehicleReg": self.vehicle_reg,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "fullName": self.full_name,
            "email": self.email,
            "phone": self.phone or "",
            "addressLine1": self.address_line1,
            "addressLine2": self.address_line2 or "",
            "city": self.city,
            "postcode": self.postcode,
            "challengeReason": self.challenge_reason,
            "challengeText": self.challenge_text or "",
            "additionalDetails": self.additional_details or "",
        }

    def to_payload(self) -> Dict[str, str]:
        """camelCase dict for the worker API, empty optionals omitted."""
        out = self.as_variables()
        for k in ("phone", "addressLine2", "challengeText", "additionalDetails"):
            if not out[k]:
                out.pop(k)
        return out


def build_automation_context(ticket, challenge_reason: str, custom_reason: Optional[str] = None) -> AutomationContext:
    user = ticket.vehicle.user
    address = user.address or {}
    parts = (user.name or "").split()
    return AutomationContext(
        pcn_number=ticket.pcn_number,
        vehicle_reg=ticket.vehicle.registration_number,
        first_name=parts[0] if parts else "",
        last_name=" ".join(parts[1:]),
        full_name=user.name or "",
        email=user.email,
        phone=user.phone_number,
        address_line1=address.get("line1") or "",
        address_line2=address.get("line2"),
        city=address.get("city") or "",
        postcode=address.get("postcode") or "",
        challenge_reason=challenge_reason or "",
        additional_details=custom_reason,
    )


def render(template: Optional[str], variables: Dict[str, Any]) -> str:
    if not template:
        return ""

    def _sub(m):
        name = m.group(1)
        if name not in variables:
            raise RecipeError(f"unknown placeholder {{{{{name}}}}}")
        v = variables[name]
        return "" if v is None else str(v)

    return _PLACEHOLDER_RE.sub(_sub, template)


# ---------------- step types ----------------

@dataclass(frozen=True)
class Step:
    action: str = ""
    order: int = 0
    description: str = ""
    optional: bool = False
    submit: bool = False
    retries: Optional[int] = None
    timeout_ms: Optional[int] = None
    when: Optional[Dict[str, Any]] = None

    # string fields that may carry placeholders
    _templated = ("description",)

    def placeholders(self) -> List[str]:
        names: List[str] = []
        for attr in self._templated:
            val = getattr(self, attr, None)
            vals = val if isinstance(val, tuple) else (val,)
            for v in vals:
                if isinstance(v, str):
                    names.extend(_PLACEHOLDER_RE.findall(v))
        if self.when:
            names.append(self.when.get("var", ""))
        return names

    def produces(self) -> Optional[str]:
        return getattr(self, "into", None) or None

    def label(self) -> str:
        return self.description or f"{self.action} #{self.order}"


@dataclass(frozen=True)
class Navigate(Step):
    url: str = ""
    wait_for: Optional[str] = None
    _templated = ("url", "wait_for")


@dataclass(frozen=True)
class Fill(Step):
    selectors: Tuple[str, ...] = ()
    value: str = ""
    _templated = ("selectors", "value")


@dataclass(frozen=True)
class Click(Step):
    selectors: Tuple[str, ...] = ()
    wait_for: Optional[str] = None
    wait_for_url: Optional[str] = None
    _templated = ("selectors", "wait_for")


@dataclass(frozen=True)
class Select(Step):
    selectors: Tuple[str, ...] = ()
    value: str = ""
    _templated = ("selectors", "value")


@dataclass(frozen=True)
class Check(Step):
    selectors: Tuple[str, ...] = ()
    _templated = ("selectors",)


@dataclass(frozen=True)
class UploadFile(Step):
    selectors: Tuple[str, ...] = ()
    value: str = ""
    _templated = ("selectors", "value")


@dataclass(frozen=True)
class WaitFor(Step):
    selectors: Tuple[str, ...] = ()
    url: Optional[str] = None
    state: str = "visible"
    _templated = ("selectors", "url")


@dataclass(frozen=True)
class WaitUntil(Step):
    """Poll until a selector reaches `state` or the page text contains `text`."""
    selectors: Tuple[str, ...] = ()
    text: Optional[str] = None
    state: str = "visible"
    _templated = ("selectors", "text")


@dataclass(frozen=True)
class Sleep(Step):
    duration_ms: int = 0
    reason: str = ""


@dataclass(frozen=True)
class ExtractText(Step):
    selectors: Tuple[str, ...] = ()
    attribute: Optional[str] = None
    into: str = ""
    _templated = ("selectors",)


@dataclass(frozen=True)
class ChooseListItem(Step):
    selectors: Tuple[str, ...] = ()
    match: str = ""
    on_no_match: str = "fail"
    then: Optional[str] = None
    _templated = ("selectors", "match", "then")


@dataclass(frozen=True)
class GenerateText(Step):
    into: str = "challengeText"
    reason: str = "{{challengeReason}}"
    placeholder_from: Optional[str] = None
    use_evidence: bool = True
    overwrite: bool = False
    _templated = ("reason", "placeholder_from")


@dataclass(frozen=True)
class CollectEvidence(Step):
    selectors: Tuple[str, ...] = ()
    attribute: str = "src"
    contains: Optional[str] = None
    open: Optional[str] = None
    close: Optional[str] = None
    _templated = ("selectors",)


@dataclass(frozen=True)
class Screenshot(Step):
    name: str = "screenshot"
    full_page: bool = True
    _templated = ("name",)


@dataclass(frozen=True)
class SolveCaptcha(Step):
    detect: str = DEFAULT_CAPTCHA_DETECT
    sitekey_selector: str = "[data-sitekey]"
    response_selector: str = "textarea[name='g-recaptcha-response']"


STEP_TYPES = {
    "navigate": Navigate,
    "fill": Fill,
    "click": Click,
    "select": Select,
    "check": Check,
    "upload_file": UploadFile,
    "wait_for": WaitFor,
    "wait_until": WaitUntil,
    "sleep": Sleep,
    "extract_text": ExtractText,
    "choose_list_item": ChooseListItem,
    "generate_text": GenerateText,
    "collect_evidence": CollectEvidence,
    "screenshot": Screenshot,
    "solve_captcha": SolveCaptcha,
}

# fields each action cannot run without
_REQUIRED = {
    "navigate": ("url",),
    "fill": ("selectors", "value"),
    "click": ("selectors",),
    "select": ("selectors", "value"),
    "check": ("selectors",),
    "upload_file": ("selectors", "value"),
    "wait_until": ("timeout_ms",),
    "sleep": ("duration_ms", "reason"),
    "extract_text": ("selectors", "into"),
    "choose_list_item": ("selectors", "match"),
    "collect_evidence": ("selectors",),
}


# ---------------- normalization & validation ----------------

def load_file(path) -> str:
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def pretty_validation_error(e: ValidationError, instance_obj: Any = None) -> str:
    parts = [f"ValidationError: {e.message}"]
    if e.path:
        parts.append(f"  path: {list(e.path)}")
    if e.schema_path:
        parts.append(f"  schema_path: {list(e.schema_path)}")
    if instance_obj is not None:
        try:
            parts.append(f"  instance snapshot (truncated): {json.dumps(instance_obj)[:800]}")
        except (TypeError, ValueError):
            parts.append(f"  instance snapshot (repr): {repr(instance_obj)[:800]}")
    return "\n".join(parts)


def normalize_step(raw: Dict[str, Any], index: int) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        raise RecipeError(f"step {index} is not an object")
    s: Dict[str, Any] = {}
    for k, v in raw.items():
        if k in _DROP_KEYS:
            continue
        s[_CAMEL_KEYS.get(k, k)] = v
    s.setdefault("order", index)

    action = s.get("action")
    if action == "wait":
        if s.get("wait_for"):
            s["action"] = "wait_for"
            s["selector"] = s.pop("wait_for")
        else:
            s["action"] = "sleep"
            s["duration_ms"] = int(s.pop("value", 0) or 0)
            s.setdefault("reason", s.get("description") or "recipe wait")
    elif action == "navigate" and "url" not in s and "value" in s:
        s["url"] = str(s.pop("value"))
    elif action == "screenshot":
        s.setdefault("name", f"step-{s['order']}")

    if isinstance(s.get("value"), (int, float)) and not isinstance(s.get("value"), bool):
        s["value"] = str(s["value"])
    return s


def validate_steps(steps: List[Dict[str, Any]]) -> None:
    schema = json.loads(load_file(SCHEMA_PATH))
    try:
        validate(instance=steps, schema=schema)
    except ValidationError as e:
        raise RecipeError("Recipe failed validation:\n" + pretty_validation_error(e))


def _build_step(s: Dict[str, Any]) -> Step:
    action = s["action"]
    cls = STEP_TYPES[action]
    allowed = {f.name for f in fields(cls)}
    kwargs: Dict[str, Any] = {}
    if "selectors" in allowed:
        cands = s.get("selector_candidates") or ([s["selector"]] if s.get("selector") else [])
        kwargs["selectors"] = tuple(cands)
    for k, v in s.items():
        if k in allowed and k != "selectors":
            kwargs[k] = v
    for req in _REQUIRED.get(action, ()):
        if not kwargs.get(req):
            raise RecipeError(f"step {s.get('order')} ({action}) is missing '{req}'")
    return cls(**kwargs)


def check_placeholders(steps: Iterable[Step], known: Iterable[str]) -> None:
    available = set(known)
    for st in steps:
        for name in st.placeholders():
            if name not in available:
                raise RecipeError(f"step {st.order} ({st.action}) references unknown placeholder '{name}'")
        produced = st.produces()
        if produced:
            available.add(produced)


def parse_steps(raw_steps: Any, known: Iterable[str] = CONTEXT_FIELDS) -> List[Step]:
    """Normalize, validate and type a step list. Raises RecipeError."""
    if not isinstance(raw_steps, list) or not raw_steps:
        raise RecipeError("Recipe has no steps")
    normalized = [normalize_step(r, i) for i, r in enumerate(raw_steps)]
    validate_steps(normalized)
    steps = sorted((_build_step(s) for s in normalized), key=lambda st: st.order)
    check_placeholders(steps, known)
    return steps


# ---------------- recipe files ----------------

@dataclass
class Recipe:
    issuer_id: str
    intents: Dict[str, List[Step]]
    reasons: Dict[str, Dict[str, str]] = field(default_factory=dict)
    challenge_url: Optional[str] = None

    def supports(self, intent: str) -> bool:
        return intent in self.intents

    def steps_for(self, intent: str) -> List[Step]:
        if intent not in self.intents:
            raise RecipeError(f"recipe for {self.issuer_id} has no '{intent}' steps")
        return self.intents[intent]

    def reason_variables(self, reason_id: Optional[str]) -> Dict[str, str]:
        if not self.reasons:
            return {}
        entry = self.reasons.get(reason_id or "")
        if not entry:
            raise RecipeError(f"Invalid challenge reason: {reason_id}")
        description = entry.get("description", "")
        detail = entry.get("detail", "")
        return {
            "reasonDescription": description,
            "reasonDetail": detail,
            "reasonSummary": f"{description} - {detail}" if detail else description,
        }


def load_recipe(data: Dict[str, Any]) -> Recipe:
    if not isinstance(data, dict) or not isinstance(data.get("intents"), dict):
        raise RecipeError("recipe file must contain an 'intents' object")
    access = data.get("access") or []
    reasons = data.get("reasons") or {}
    known = list(CONTEXT_FIELDS) + (list(REASON_FIELDS) if reasons else [])
    intents: Dict[str, List[Step]] = {}
    for name, raw in data["intents"].items():
        intents[name] = parse_steps(list(access) + list(raw or []), known=known)
    return Recipe(
        issuer_id=data.get("issuer_id", ""),
        intents=intents,
        reasons=reasons,
        challenge_url=data.get("challenge_url"),
    )


def load_recipe_file(path) -> Recipe:
    try:
        data = json.loads(load_file(path))
    except json.JSONDecodeError as e:
        raise RecipeError(f"recipe file {path} is not valid JSON: {e}")
    recipe = load_recipe(data)
    logger.debug("Loaded recipe %s (%s)", recipe.issuer_id, ", ".join(recipe.intents))
    return recipe
