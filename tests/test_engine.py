# tests/test_engine.py
import json
import threading

import pytest

from automation.engine import StepEngine
from automation.recipe import AutomationContext, parse_steps
from conftest import FakeAPIResponse, FakeElement, FakePage, FakeStore


def _context(**kw):
    base = dict(pcn_number="LW12345678", vehicle_reg="AB12CDE", first_name="Jane", last_name="Driver",
                full_name="Jane Driver", email="jane@example.com", address_line1="1 High Street",
                postcode="SE13 5AB", challenge_reason="OTHER")
    base.update(kw)
    return AutomationContext(**base)


def _engine(page, tmp_path, **kw):
    kw.setdefault("store", FakeStore())
    return StepEngine(page, kw.pop("context", _context()), diag_dir=tmp_path, **kw)


def test_fill_and_click_render_placeholders(tmp_path):
    page = FakePage({"#pcn": [FakeElement()], "#go": [FakeElement()]}, navigations={"#go": "https://x/step2.php"})
    steps = parse_steps([
        {"action": "fill", "selector": "#pcn", "value": "{{pcnNumber}}"},
        {"action": "click", "selector": "#go", "wait_for_url": "**/step2.php"},
    ])
    result = _engine(page, tmp_path).run(steps)

    assert result.success is True
    assert page.filled["#pcn"] == "LW12345678"
    assert [o.status for o in result.outcomes] == ["ok", "ok"]
    assert result.completed_steps == [0, 1]


def test_selector_candidates_fall_through_and_stats_persist(tmp_path):
    page = FakePage({"#second": [FakeElement()]})
    steps = parse_steps([{"action": "click", "selector_candidates": ["#first", "#second"]}])
    result = _engine(page, tmp_path).run(steps)

    assert result.success is True
    assert result.outcomes[0].selector_used == "#second"
    stats = json.loads((tmp_path / "selector_stats.json").read_text())
    assert stats["#first"] == {"tries": 1, "successes": 0}
    assert stats["#second"] == {"tries": 1, "successes": 1}


def test_ranked_selector_tried_first(tmp_path):
    (tmp_path / "selector_stats.json").write_text(json.dumps({"#b": {"tries": 4, "successes": 4}}))
    page = FakePage({"#a": [FakeElement()], "#b": [FakeElement()]})
    steps = parse_steps([{"action": "click", "selector_candidates": ["#a", "#b"]}])
    result = _engine(page, tmp_path).run(steps)
    assert result.outcomes[0].selector_used == "#b"


def test_untried_selector_outranks_failing_one(tmp_path):
    (tmp_path / "selector_stats.json").write_text(json.dumps({"#a": {"tries": 1, "successes": 0}}))
    page = FakePage({"#a": [FakeElement()], "#b": [FakeElement()]})
    steps = parse_steps([{"action": "click", "selector_candidates": ["#a", "#b"]}])
    result = _engine(page, tmp_path).run(steps)
    assert result.outcomes[0].selector_used == "#b"


def test_success_elsewhere_does_not_displace_preferred_selector(tmp_path):
    page = FakePage({"#btn": [FakeElement()], "#btn.final": [FakeElement()]})
    steps = parse_steps([
        {"action": "click", "selector": "#btn"},
        {"action": "click", "selector_candidates": ["#btn.final", "#other"]},
    ])
    result = _engine(page, tmp_path).run(steps)
    assert page.clicked() == ["#btn", "#btn.final"]
    assert result.outcomes[1].selector_used == "#btn.final"


def test_missing_selector_retries_then_fails_with_diagnostics(tmp_path):
    page = FakePage({"#ok": [FakeElement()]}, body_text="contact jane@example.com")
    steps = parse_steps([
        {"action": "click", "selector": "#ok"},
        {"action": "click", "selector": "#missing", "retries": 2},
        {"action": "click", "selector": "#ok"},
    ])
    result = _engine(page, tmp_path).run(steps)

    assert result.success is False
    assert result.failed_step == 1
    assert result.error_code == "selector_not_found"
    assert result.outcomes[-1].attempts == 3
    assert result.completed_steps == [0]
    # backoff doubles between attempts
    assert page.waited_ms[:2] == [500, 1000]
    html = list(tmp_path.glob("step1_*.html"))
    assert html and "jane@example.com" not in html[0].read_text()
    log_lines = (tmp_path / "steps.jsonl").read_text().splitlines()
    assert any(json.loads(line)["event"] == "step_retry" for line in log_lines)


def test_optional_failure_does_not_abort(tmp_path):
    page = FakePage({"#ok": [FakeElement()]})
    steps = parse_steps([
        {"action": "click", "selector": "#nope", "optional": True, "retries": 0},
        {"action": "click", "selector": "#ok"},
    ])
    result = _engine(page, tmp_path).run(steps)
    assert result.success is True
    assert [o.status for o in result.outcomes] == ["failed", "ok"]


def test_dry_run_skips_submit_steps(tmp_path):
    page = FakePage({"#check": [FakeElement()], "#submit": [FakeElement()]})
    steps = parse_steps([
        {"action": "check", "selector": "#check"},
        {"action": "click", "selector": "#submit", "submit": True},
    ])
    result = _engine(page, tmp_path, dry_run=True).run(steps)

    assert result.success is True
    assert result.dry_run is True
    assert "#submit" not in page.clicked()
    assert [o.status for o in result.outcomes] == ["ok", "skipped"]


def test_when_condition_selects_branch(tmp_path):
    page = FakePage({"#a": [FakeElement()], "#b": [FakeElement()]})
    steps = parse_steps([
        {"action": "click", "selector": "#a", "when": {"var": "challengeReason", "equals": "OTHER"}},
        {"action": "click", "selector": "#b", "when": {"var": "challengeReason", "in": ["ALREADY_PAID"]}},
    ])
    result = _engine(page, tmp_path).run(steps)
    assert page.clicked() == ["#a"]
    assert [o.status for o in result.outcomes] == ["ok", "skipped"]


def test_navigate_failure_is_portal_unreachable(tmp_path):
    page = FakePage()
    page.fail_goto = True
    steps = parse_steps([{"action": "navigate", "url": "https://portal.example", "retries": 0}])
    result = _engine(page, tmp_path).run(steps)
    assert result.error_code == "portal_unreachable"


def test_wait_until_polls_with_bounded_backoff(tmp_path):
    page = FakePage(body_text="nothing here")
    steps = parse_steps([{"action": "wait_until", "text": "{{pcnNumber}}", "timeout_ms": 3000}])
    result = _engine(page, tmp_path).run(steps)

    assert result.error_code == "step_timeout"
    assert sum(page.waited_ms) == 3000
    assert result.outcomes[0].attempts == 1


def test_wait_until_text_present(tmp_path):
    page = FakePage(body_text="PCN lw12345678 found")
    steps = parse_steps([{"action": "wait_until", "text": "{{pcnNumber}}", "timeout_ms": 3000}])
    assert _engine(page, tmp_path).run(steps).success is True
    assert page.waited_ms == []


def test_wait_until_respects_max_wait(tmp_path, monkeypatch):
    from automation import engine as engine_mod
    monkeypatch.setattr(engine_mod, "MAX_WAIT_MS", 1000)
    page = FakePage({"#spinner": [FakeElement()]})
    steps = parse_steps([{"action": "wait_until", "selector": "#spinner", "state": "hidden", "timeout_ms": 600000}])
    _engine(page, tmp_path).run(steps)
    assert sum(page.waited_ms) == 1000


def test_sleep_is_capped(tmp_path, monkeypatch):
    from automation import engine as engine_mod
    monkeypatch.setattr(engine_mod, "MAX_WAIT_MS", 2000)
    page = FakePage()
    steps = parse_steps([{"action": "sleep", "duration_ms": 180000, "reason": "portal rate limit"}])
    assert _engine(page, tmp_path).run(steps).success is True
    assert sum(page.waited_ms) == 2000


def test_cancelled_run(tmp_path):
    cancel = threading.Event()
    cancel.set()
    page = FakePage({"#a": [FakeElement()]})
    steps = parse_steps([{"action": "click", "selector": "#a"}])
    result = _engine(page, tmp_path, cancel_event=cancel).run(steps)
    assert result.success is False
    assert result.error_code == "cancelled"
    assert page.clicked() == []


def test_choose_list_item_matches_case_insensitively(tmp_path):
    items = [FakeElement("10 Other Road"), FakeElement("1  HIGH street, London")]
    page = FakePage({"#addr li": items, "#add": [FakeElement()]})
    steps = parse_steps([{"action": "choose_list_item", "selector": "#addr li", "match": "{{addressLine1}}",
                          "then": "#add"}])
    result = _engine(page, tmp_path).run(steps)
    assert result.success is True
    assert items[1].clicked == 1 and items[0].clicked == 0
    assert page.clicked() == ["#add"]


def test_choose_list_item_fails_without_match(tmp_path):
    items = [FakeElement("10 Other Road")]
    page = FakePage({"#addr li": items})
    steps = parse_steps([{"action": "choose_list_item", "selector": "#addr li", "match": "{{addressLine1}}",
                          "retries": 0}])
    result = _engine(page, tmp_path).run(steps)
    assert result.error_code == "unexpected_page_state"
    assert items[0].clicked == 0


def test_choose_list_item_first_fallback(tmp_path):
    items = [FakeElement("10 Other Road")]
    page = FakePage({"#addr li": items})
    steps = parse_steps([{"action": "choose_list_item", "selector": "#addr li", "match": "{{addressLine1}}",
                          "on_no_match": "first"}])
    assert _engine(page, tmp_path).run(steps).success is True
    assert items[0].clicked == 1


def test_generate_text_uses_placeholder_and_evidence(tmp_path):
    store = FakeStore()
    store.put("users/u1/tickets/t1/evidence/evidence-1.jpg", b"x")
    calls = []

    def generator(**kw):
        calls.append(kw)
        return "I was loading."

    page = FakePage({"#notes": [FakeElement(attrs={"placeholder": "Max 2000 chars"})]})
    steps = parse_steps([
        {"action": "generate_text", "reason": "{{challengeReason}}", "placeholder_from": "#notes"},
        {"action": "fill", "selector": "#notes", "value": "{{challengeText}}"},
    ])
    result = _engine(page, tmp_path, store=store, text_generator=generator,
                     evidence_prefix="users/u1/tickets/t1/evidence/").run(steps)

    assert result.success is True
    assert result.challenge_text == "I was loading."
    assert page.filled["#notes"] == "I was loading."
    assert calls[0]["placeholder_text"] == "Max 2000 chars"
    assert calls[0]["issuer_evidence_urls"] == ["mem://users/u1/tickets/t1/evidence/evidence-1.jpg"]


def test_generate_text_keeps_supplied_text(tmp_path):
    def generator(**kw):
        raise AssertionError("should not be called")

    page = FakePage()
    steps = parse_steps([{"action": "generate_text"}])
    result = _engine(page, tmp_path, context=_context(challenge_text="Already written"),
                     text_generator=generator).run(steps)
    assert result.challenge_text == "Already written"


def test_generate_text_empty_output_fails_run(tmp_path):
    page = FakePage({"#submit": [FakeElement()]})
    steps = parse_steps([
        {"action": "generate_text"},
        {"action": "click", "selector": "#submit"},
    ])
    result = _engine(page, tmp_path, text_generator=lambda **kw: "  ").run(steps)
    assert result.error_code == "text_generation_failed"
    assert page.clicked() == []


def test_screenshot_uses_rendered_name(tmp_path):
    store = FakeStore()
    page = FakePage()
    steps = parse_steps([{"action": "screenshot", "name": "{{pcnNumber}}"}])
    result = _engine(page, tmp_path, store=store,
                     screenshot_path=lambda name, order: f"shots/{name}.png").run(steps)
    assert result.screenshot_urls == ["mem://shots/LW12345678.png"]
    assert store.blobs["shots/LW12345678.png"] == (b"png-bytes", "image/png")


def test_collect_evidence_downloads_full_size_images(tmp_path):
    store = FakeStore()
    imgs = [FakeElement(attrs={"src": "/img?id=1&thumb=false"}), FakeElement(attrs={"src": "/img?id=1&thumb=true"})]
    page = FakePage({"#gallery img": imgs, "#open": [FakeElement()]}, url="https://portal.example/step2.php")
    page.request.responses["https://portal.example/img?id=1&thumb=false"] = FakeAPIResponse(200, b"full")
    steps = parse_steps([{"action": "collect_evidence", "selector": "#gallery img", "contains": "thumb=false",
                          "open": "#open", "close": "#close"}])
    result = _engine(page, tmp_path, store=store, evidence_prefix="users/u/tickets/t/evidence/").run(steps)

    assert result.success is True
    assert page.request.fetched == ["https://portal.example/img?id=1&thumb=false"]
    assert len(result.evidence_urls) == 1
    assert page.clicked() == ["#open", "#close"]


def test_solve_captcha_noop_when_absent(tmp_path):
    page = FakePage()
    steps = parse_steps([{"action": "solve_captcha"}])
    assert _engine(page, tmp_path).run(steps).success is True


def test_solve_captcha_injects_token(tmp_path):
    class Solver:
        def solve_recaptcha(self, sitekey, page_url):
            assert sitekey == "site-key"
            return "token-123"

    page = FakePage({"iframe[src*='recaptcha']": [FakeElement()],
                     "[data-sitekey]": [FakeElement(attrs={"data-sitekey": "site-key"})]})
    steps = parse_steps([{"action": "solve_captcha"}])
    result = _engine(page, tmp_path, captcha_solver=Solver()).run(steps)
    assert result.success is True
    assert page.filled["textarea[name='g-recaptcha-response']"] == "token-123"


def test_solve_captcha_without_solver(tmp_path):
    page = FakePage({"iframe[src*='recaptcha']": [FakeElement()]})
    steps = parse_steps([{"action": "solve_captcha", "retries": 0}])
    assert _engine(page, tmp_path).run(steps).error_code == "captcha_unsolved"


def test_extract_text_feeds_later_steps(tmp_path):
    page = FakePage({"#ref": [FakeElement("  REF-99 ")], "#box": [FakeElement()]})
    steps = parse_steps([
        {"action": "extract_text", "selector": "#ref", "into": "reference"},
        {"action": "fill", "selector": "#box", "value": "{{reference}}"},
    ])
    result = _engine(page, tmp_path).run(steps)
    assert page.filled["#box"] == "REF-99"
    assert result.variables["reference"] == "REF-99"
