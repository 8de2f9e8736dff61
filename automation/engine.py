#!/usr/bin/env python3
# automation/engine.py
"""
StepEngine: runs a parsed recipe against a Playwright page.

- One interpreter for built-in and learned recipes.
- Per-step retries with doubling backoff for retryable errors (timeouts, missing
  selectors, unreachable portal, unsolved captcha).
- Ranked selector candidates; success rates persisted as selector_stats.json.
- Bounded polling waits that honour a cancellation event; no fixed long sleeps.
- Structured, redacted JSON step log (steps.jsonl) and screenshot + HTML
  diagnostics when a run fails.
- Dry runs skip every step flagged `submit`.
"""
from __future__ import annotations
import os
import time
import logging
import pathlib
import json
import re
import threading
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

from playwright.sync_api import Error as PlaywrightError, TimeoutError as PlaywrightTimeoutError

from . import evidence as evidence_mod
from .errors import (
    AutomationCancelled,
    AutomationError,
    CaptchaUnsolved,
    PortalUnreachable,
    SelectorNotFound,
    StepTimeout,
    TextGenerationError,
    UnexpectedPageState,
)
from .recipe import AutomationContext, Step, render
from .results import RunResult, StepOutcome

logger = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

DEFAULT_TIMEOUT = int(os.getenv("AUTOMATION_TIMEOUT_MS", "30000"))
SHORT_TIMEOUT = int(os.getenv("AUTOMATION_SHORT_TIMEOUT_MS", "10000"))
DEFAULT_RETRIES = int(os.getenv("AUTOMATION_STEP_RETRIES", "2"))
RETRY_BACKOFF_MS = int(os.getenv("AUTOMATION_RETRY_BACKOFF_MS", "500"))
MAX_WAIT_MS = int(os.getenv("AUTOMATION_MAX_WAIT_MS", str(3 * 60 * 1000)))
POLL_START_MS = 250
POLL_MAX_MS = 5000
PAUSE_CHUNK_MS = 1000

LOG_DIR = pathlib.Path(os.getenv("AUTOMATION_DIAG_DIR", "./automation_diag"))

_SAVE_RAW_DIAGNOSTICS = os.getenv("AUTOMATION_SAVE_RAW_DIAGNOSTICS", "false").strip().lower() in ("1", "true", "yes")

_EMAIL_RE = re.compile(r"([A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,})")
_TOKEN_RE = re.compile(r"(?i)(api[_-]?key|token|secret)[\"']?\s*[:=]\s*['\"]?[\w\-\.]{8,}['\"]?")

# waits whose timeout is the expected failure mode; retrying only multiplies the wait
_NO_DEFAULT_RETRY = ("wait_until", "sleep")

_FILL_JS = (
    "(el, v) => { if (el.isContentEditable) el.innerText = v; else el.value = v; "
    "el.dispatchEvent(new Event('input', {bubbles:true})); el.dispatchEvent(new Event('change', {bubbles:true})); }"
)
_INJECT_TOKEN_JS = "(el, t) => { el.value = t; el.innerHTML = t; }"


def _redact_text(s: str) -> str:
    if not isinstance(s, str):
        return s
    s = _EMAIL_RE.sub("[REDACTED_EMAIL]", s)
    s = _TOKEN_RE.sub(r"\1: [REDACTED]", s)
    return s


def _redact_obj(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {k: _redact_obj(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_redact_obj(x) for x in obj]
    if isinstance(obj, str):
        return _redact_text(obj)
    return obj


def _normalize_text(s: Optional[str]) -> str:
    return " ".join((s or "").lower().split())


class StepEngine:
    def __init__(self, page, context: AutomationContext, *, store=None,
                 text_generator: Optional[Callable[..., str]] = None, captcha_solver=None,
                 screenshot_path: Optional[Callable[[str, int], str]] = None,
                 evidence_prefix: Optional[str] = None, dry_run: bool = False,
                 cancel_event: Optional[threading.Event] = None, run_id: Optional[str] = None,
                 extra_variables: Optional[Dict[str, str]] = None, diag_dir=None):
        self.page = page
        self.context = context
        self.store = store
        self.text_generator = text_generator
        self.captcha_solver = captcha_solver
        self.run_id = run_id or uuid.uuid4().hex
        self.screenshot_path = screenshot_path or (
            lambda name, order: f"automation/adhoc/{self.run_id}/{name}-{int(time.time() * 1000)}.png")
        self.evidence_prefix = evidence_prefix
        self.dry_run = dry_run
        self.cancel_event = cancel_event or threading.Event()
        self.diag_dir = pathlib.Path(diag_dir) if diag_dir else LOG_DIR
        self.variables: Dict[str, str] = context.as_variables()
        self.variables.update(extra_variables or {})
        self.selector_stats = self._load_selector_stats()
        self._result: Optional[RunResult] = None

    # ---------------- logging & diagnostics ----------------

    @property
    def _log_file(self) -> pathlib.Path:
        return self.diag_dir / "steps.jsonl"

    @property
    def _stats_file(self) -> pathlib.Path:
        return self.diag_dir / "selector_stats.json"

    def _log_step(self, event: str, step: Dict[str, Any], extra: Optional[Dict[str, Any]] = None):
        payload = {"run_id": self.run_id, "ts": time.time(), "event": event, "step": step}
        if extra:
            payload["extra"] = extra
        safe = _redact_obj(payload)
        logger.info(json.dumps(safe))
        try:
            self.diag_dir.mkdir(parents=True, exist_ok=True)
            with open(self._log_file, "a", encoding="utf-8") as fh:
                fh.write(json.dumps(safe) + "\n")
        except OSError:
            logger.debug("Could not write logline", exc_info=True)

    def save_diagnostic(self, label: str):
        try:
            self.diag_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            logger.debug("diagnostic dir unavailable", exc_info=True)
            return
        ts = int(time.time())
        png = self.diag_dir / f"{label}_{self.run_id}_{ts}.png"
        html = self.diag_dir / f"{label}_{self.run_id}_{ts}.html"
        try:
            self.page.screenshot(path=str(png), full_page=True)
        except Exception:
            logger.debug("screenshot failed", exc_info=True)
        try:
            content = self.page.content()
            if not _SAVE_RAW_DIAGNOSTICS:
                content = _redact_text(content)
            html.write_text(content, encoding="utf-8")
        except Exception:
            logger.debug("html save failed", exc_info=True)

    # ---------------- selector ranking ----------------

    def _load_selector_stats(self) -> Dict[str, Dict[str, int]]:
        try:
            if self._stats_file.exists():
                return json.loads(self._stats_file.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.debug("Could not read selector stats", exc_info=True)
        return {}

    def _score_and_order_selectors(self, selectors: List[str]) -> List[str]:
        # Laplace smoothing: an untried candidate scores 0.5, not 0
        def score(s):
            st = self.selector_stats.get(s, {})
            return (st.get("successes", 0) + 1) / (st.get("tries", 0) + 2)
        # stable sort keeps recipe order among equally scored candidates
        return sorted(selectors, key=score, reverse=True)

    def _update_selector_stats(self, selector: str, success: bool):
        st = self.selector_stats.setdefault(selector, {"tries": 0, "successes": 0})
        st["tries"] += 1
        if success:
            st["successes"] += 1
        try:
            self.diag_dir.mkdir(parents=True, exist_ok=True)
            self._stats_file.write_text(json.dumps(self.selector_stats, indent=2), encoding="utf-8")
        except OSError:
            logger.debug("Could not persist selector stats", exc_info=True)

    # ---------------- helpers ----------------

    def _meta(self, step: Step) -> Dict[str, Any]:
        return {"order": step.order, "action": step.action, "description": step.description}

    def _render(self, template: Optional[str]) -> str:
        return render(template, self.variables)

    def _selectors(self, step: Step) -> List[str]:
        return self._score_and_order_selectors([self._render(s) for s in getattr(step, "selectors", ())])

    def _short(self, step: Step) -> int:
        return step.timeout_ms or SHORT_TIMEOUT

    def _long(self, step: Step) -> int:
        return step.timeout_ms or DEFAULT_TIMEOUT

    def _check_cancelled(self):
        if self.cancel_event.is_set():
            raise AutomationCancelled("run cancelled")

    def _pause(self, ms: int):
        remaining = ms
        while remaining > 0:
            self._check_cancelled()
            chunk = min(remaining, PAUSE_CHUNK_MS)
            self.page.wait_for_timeout(chunk)
            remaining -= chunk
        self._check_cancelled()

    def _condition_holds(self, step: Step) -> bool:
        if not step.when:
            return True
        value = self.variables.get(step.when.get("var", ""), "")
        if "equals" in step.when:
            return value == step.when["equals"]
        if "in" in step.when:
            return value in step.when["in"]
        return bool(value)

    def _on_selector(self, step: Step, fn: Callable[[str], None], state: str = "visible") -> str:
        """Run fn on the first ranked selector that appears; raise SelectorNotFound otherwise."""
        selectors = self._selectors(step)
        for s in selectors:
            try:
                self.page.wait_for_selector(s, state=state, timeout=self._short(step))
            except PlaywrightTimeoutError:
                self._update_selector_stats(s, False)
                self._log_step(f"{step.action}_selector_timeout", self._meta(step), {"selector": s})
                continue
            fn(s)
            self._update_selector_stats(s, True)
            self._log_step(f"{step.action}_success", self._meta(step), {"selector": s})
            return s
        raise SelectorNotFound(f"none of {selectors} found", step=step.order)

    def _wait_url(self, pattern: str, step: Step):
        try:
            self.page.wait_for_url(self._render(pattern), timeout=self._long(step))
        except PlaywrightTimeoutError:
            raise StepTimeout(f"url never matched {pattern}", step=step.order)

    def _wait_selector(self, selector: str, step: Step, state: str = "visible"):
        try:
            self.page.wait_for_selector(self._render(selector), state=state, timeout=self._long(step))
        except PlaywrightTimeoutError:
            raise SelectorNotFound(f"{selector} not {state}", step=step.order)

    # ---------------- actions ----------------

    def _navigate(self, step) -> Optional[str]:
        url = self._render(step.url)
        try:
            self.page.goto(url, timeout=self._long(step))
        except PlaywrightError as e:
            raise PortalUnreachable(f"could not load {url}: {e}", step=step.order)
        if step.wait_for:
            self._wait_selector(step.wait_for, step)
        return None

    def _fill_one(self, selector: str, value: str):
        try:
            self.page.fill(selector, value)
        except PlaywrightError:
            self.page.eval_on_selector(selector, _FILL_JS, value)

    def _fill(self, step) -> Optional[str]:
        value = self._render(step.value)
        return self._on_selector(step, lambda s: self._fill_one(s, value))

    def _click(self, step) -> Optional[str]:
        used = self._on_selector(step, lambda s: self.page.click(s))
        if step.wait_for_url:
            self._wait_url(step.wait_for_url, step)
        if step.wait_for:
            self._wait_selector(step.wait_for, step)
        return used

    def _select(self, step) -> Optional[str]:
        value = self._render(step.value)
        return self._on_selector(step, lambda s: self.page.select_option(s, value))

    def _check(self, step) -> Optional[str]:
        return self._on_selector(step, lambda s: self.page.check(s))

    def _upload_file(self, step) -> Optional[str]:
        path = self._render(step.value)
        return self._on_selector(step, lambda s: self.page.set_input_files(s, path), state="attached")

    def _wait_for(self, step) -> Optional[str]:
        if step.url:
            self._wait_url(step.url, step)
        if step.selectors:
            return self._on_selector(step, lambda s: None, state=step.state)
        return None

    def _element_in_state(self, selector: str, state: str) -> bool:
        el = self.page.query_selector(selector)
        if state == "attached":
            return el is not None
        if state == "detached":
            return el is None
        visible = el is not None and el.is_visible()
        return visible if state == "visible" else not visible

    def _wait_until(self, step) -> Optional[str]:
        selectors = [self._render(s) for s in step.selectors]
        text = self._render(step.text) if step.text else None
        limit = min(step.timeout_ms or DEFAULT_TIMEOUT, MAX_WAIT_MS)
        waited, interval = 0, POLL_START_MS
        while True:
            self._check_cancelled()
            matched = next((s for s in selectors if self._element_in_state(s, step.state)), None)
            sel_ok = not selectors or matched is not None
            text_ok = not text or text.lower() in (self.page.inner_text("body") or "").lower()
            if sel_ok and text_ok:
                return matched
            if waited >= limit:
                raise StepTimeout(f"condition not met within {limit}ms", step=step.order)
            chunk = min(interval, limit - waited)
            self._pause(chunk)
            waited += chunk
            interval = min(interval * 2, POLL_MAX_MS)

    def _sleep(self, step) -> Optional[str]:
        duration = min(step.duration_ms, MAX_WAIT_MS)
        self._log_step("sleep", self._meta(step), {"duration_ms": duration, "reason": step.reason})
        self._pause(duration)
        return None

    def _extract_text(self, step) -> Optional[str]:
        found = {}

        def read(s):
            if step.attribute:
                found["v"] = self.page.get_attribute(s, step.attribute)
            else:
                found["v"] = self.page.inner_text(s)

        used = self._on_selector(step, read, state="attached")
        self.variables[step.into] = (found.get("v") or "").strip()
        return used

    def _choose_list_item(self, step) -> Optional[str]:
        items, used = [], None
        for s in self._selectors(step):
            items = self.page.query_selector_all(s)
            if items:
                used = s
                break
        if not items:
            raise SelectorNotFound("no list items found", step=step.order)
        target = _normalize_text(self._render(step.match))
        chosen = next((it for it in items if target and target in _normalize_text(it.inner_text())), None)
        if chosen is None:
            if step.on_no_match != "first":
                raise UnexpectedPageState(f"no list item matches '{self._render(step.match)}'", step=step.order)
            self._log_step("list_item_fallback_first", self._meta(step), {"items": len(items)})
            chosen = items[0]
        chosen.click()
        if step.then:
            then = self._render(step.then)
            self._wait_selector(then, step)
            self.page.click(then)
        return used

    def _generate_text(self, step) -> Optional[str]:
        if self.variables.get(step.into) and not step.overwrite:
            self._log_step("generate_text_kept", self._meta(step), {"into": step.into})
            text = self.variables[step.into]
        else:
            if self.text_generator is None:
                raise TextGenerationError("no text generator configured", step=step.order)
            placeholder = ""
            if step.placeholder_from:
                sel = self._render(step.placeholder_from)
                self._wait_selector(sel, step, state="attached")
                placeholder = self.page.get_attribute(sel, "placeholder") or ""
            evidence_urls: List[str] = []
            if step.use_evidence and self.store is not None and self.evidence_prefix:
                evidence_urls = self.store.list(self.evidence_prefix)
            text = self.text_generator(
                pcn_number=self.context.pcn_number,
                challenge_reason=self._render(step.reason),
                additional_details=self.context.additional_details,
                placeholder_text=placeholder,
                issuer_evidence_urls=evidence_urls,
                user_evidence_urls=[],
            )
            if not text or not text.strip():
                raise TextGenerationError("text generator returned nothing", step=step.order)
            self.variables[step.into] = text
        if step.into == "challengeText":
            self._result.challenge_text = text
        return None

    def _collect_evidence(self, step) -> Optional[str]:
        if step.open:
            self._wait_selector(step.open, step)
            self.page.click(self._render(step.open))
        sources: List[str] = []
        used = None
        for s in self._selectors(step):
            imgs = self.page.query_selector_all(s)
            if imgs:
                used = s
                sources = [img.get_attribute(step.attribute) for img in imgs]
                break
        sources = [src for src in sources if src and (not step.contains or step.contains in src)]
        if not sources:
            self._log_step("evidence_none_found", self._meta(step))
        elif self.store is None or not self.evidence_prefix:
            self._log_step("evidence_not_stored", self._meta(step), {"found": len(sources)})
        else:
            self._result.evidence_urls.extend(
                evidence_mod.upload_evidence(self.page, self.store, self.evidence_prefix, sources))
        if step.close:
            self.page.click(self._render(step.close))
        return used

    def _screenshot(self, step) -> Optional[str]:
        if self.store is None:
            self._log_step("screenshot_not_stored", self._meta(step))
            return None
        url = evidence_mod.take_screenshot(self.page, self.store, self.screenshot_path(self._render(step.name), step.order),
                                           full_page=step.full_page)
        self._result.screenshot_urls.append(url)
        return None

    def _solve_captcha(self, step) -> Optional[str]:
        if self.page.query_selector(step.detect) is None:
            self._log_step("captcha_absent", self._meta(step))
            return None
        if self.captcha_solver is None:
            raise CaptchaUnsolved("captcha present but no solver configured", step=step.order)
        sitekey = self.page.get_attribute(step.sitekey_selector, "data-sitekey")
        if not sitekey:
            raise CaptchaUnsolved("captcha sitekey not found", step=step.order)
        token = self.captcha_solver.solve_recaptcha(sitekey, self.page.url)
        self.page.eval_on_selector(step.response_selector, _INJECT_TOKEN_JS, token)
        self._log_step("captcha_solved", self._meta(step))
        return step.response_selector

    # ---------------- run loop ----------------

    def _attempt(self, step: Step) -> Optional[str]:
        handler = getattr(self, f"_{step.action}")
        try:
            return handler(step)
        except PlaywrightTimeoutError as e:
            raise StepTimeout(str(e).splitlines()[0] if str(e) else "timeout", step=step.order)
        except PlaywrightError as e:
            raise UnexpectedPageState(str(e).splitlines()[0] if str(e) else "page error", step=step.order)

    def _run_step(self, step: Step) -> Tuple[StepOutcome, Optional[AutomationError]]:
        retries = step.retries
        if retries is None:
            retries = 0 if step.action in _NO_DEFAULT_RETRY else DEFAULT_RETRIES
        delay = RETRY_BACKOFF_MS
        attempts = 0
        while True:
            attempts += 1
            self._log_step("step_start", self._meta(step), {"attempt": attempts})
            try:
                used = self._attempt(step)
            except AutomationCancelled:
                raise
            except AutomationError as e:
                if e.retryable and attempts <= retries:
                    self._log_step("step_retry", self._meta(step), {"attempt": attempts, "error": str(e), "backoff_ms": delay})
                    self._pause(delay)
                    delay *= 2
                    continue
                self._log_step("step_end", self._meta(step), {"result": "failed", "error": str(e), "attempts": attempts})
                return StepOutcome(step.order, step.action, "failed", attempts, error=str(e),
                                   description=step.description), e
            self._log_step("step_end", self._meta(step), {"result": "ok", "selector_used": used, "attempts": attempts})
            return StepOutcome(step.order, step.action, "ok", attempts, selector_used=used,
                               description=step.description), None

    def _fail(self, result: RunResult, step: Optional[Step], err: AutomationError) -> RunResult:
        result.success = False
        result.failed_step = step.order if step is not None else err.step
        result.error = str(err)
        result.error_code = err.code
        self.save_diagnostic(f"step{result.failed_step}")
        return result

    def run(self, steps: List[Step], intent: Optional[str] = None) -> RunResult:
        result = RunResult(success=False, run_id=self.run_id, intent=intent, dry_run=self.dry_run)
        self._result = result
        current: Optional[Step] = None
        try:
            for step in sorted(steps, key=lambda s: s.order):
                current = step
                self._check_cancelled()
                if not self._condition_holds(step):
                    result.outcomes.append(StepOutcome(step.order, step.action, "skipped", description=step.description))
                    self._log_step("step_skipped", self._meta(step), {"why": "condition"})
                    continue
                if step.submit and self.dry_run:
                    result.outcomes.append(StepOutcome(step.order, step.action, "skipped", description=step.description))
                    self._log_step("step_skipped", self._meta(step), {"why": "dry_run"})
                    continue
                outcome, err = self._run_step(step)
                result.outcomes.append(outcome)
                if err is None:
                    continue
                if step.optional:
                    logger.warning("Optional step %s failed: %s", step.label(), err)
                    continue
                return self._fail(result, step, err)
        except AutomationCancelled as e:
            if current is not None:
                result.outcomes.append(StepOutcome(current.order, current.action, "failed", error=str(e),
                                                   description=current.description))
            return self._fail(result, current, e)
        except AutomationError as e:
            logger.exception("Automation error at step %s", current.label() if current else "?")
            return self._fail(result, current, e)
        except Exception as e:
            logger.exception("Unhandled exception while running step %s", current.label() if current else "?")
            return self._fail(result, current, UnexpectedPageState(f"unexpected error: {e}"))
        finally:
            result.variables = dict(self.variables)

        result.success = True
        self._log_step("run_complete", {"intent": intent}, {"steps": len(result.outcomes), "dry_run": self.dry_run})
        return result
