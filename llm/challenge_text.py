#!/usr/bin/env python3
"""
llm/challenge_text.py

Writes the free-text body of a portal challenge.

- OpenAI-compatible chat completions call with retries and doubling backoff.
- Multimodal user message: instruction text plus one image_url part per evidence image.
- USE_MOCK_LLM short-circuits the API call with deterministic text (tests, local runs).
- Empty output or an API failure raises TextGenerationError; callers never get "".
"""
from __future__ import annotations
import os
import re
import time
import logging
from typing import Any, Dict, List, Optional, Sequence

from requests.exceptions import RequestException
from dotenv import load_dotenv

from adapters import session as session_mod
from automation.errors import TextGenerationError
from .prompts import CHALLENGE_WRITER_PROMPT, challenge_user_text

load_dotenv()

OPENAI_URL = os.getenv("OPENAI_URL", "https://api.openai.com/v1/chat/completions")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o")

logger = logging.getLogger(__name__)

DEFAULT_RETRIES = 2
DEFAULT_BACKOFF = 1.0  # seconds
MAX_TOKENS = 1000
TEMPERATURE = 0.7


def _use_mock() -> bool:
    return os.getenv("USE_MOCK_LLM", "false").strip().lower() in ("1", "true", "yes")


def call_openai(messages: List[Dict[str, Any]], timeout: int = 60, retries: int = DEFAULT_RETRIES,
                backoff: float = DEFAULT_BACKOFF) -> Dict[str, Any]:
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        raise TextGenerationError("OPENAI_API_KEY not set in environment")

    payload = {"model": OPENAI_MODEL, "messages": messages, "temperature": TEMPERATURE, "max_tokens": MAX_TOKENS}
    headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}

    last_exc = None
    for attempt in range(retries + 1):
        try:
            logger.debug("POST %s model=%s (attempt %d)", OPENAI_URL, OPENAI_MODEL, attempt + 1)
            r = session_mod.session().post(OPENAI_URL, json=payload, headers=headers, timeout=timeout)
            if not r.ok:
                raise TextGenerationError(f"OpenAI API error: HTTP {r.status_code}: {r.text[:1000]}")
            return r.json()
        except RequestException as rexc:
            last_exc = rexc
            logger.warning("OpenAI RequestException (attempt %d): %s, retrying in %.1fs", attempt + 1, rexc, backoff)
            time.sleep(backoff)
            backoff *= 2
    raise TextGenerationError(f"Failed to call OpenAI after {retries + 1} attempts: {last_exc}")


def strip_code_fences(s: str) -> str:
    s = re.sub(r"^```(?:\w+)?\s*", "", s.strip(), flags=re.I | re.M)
    s = re.sub(r"\s*```$", "", s, flags=re.I | re.M)
    return s.strip()


def extract_text(resp_json: Dict[str, Any]) -> str:
    for c in resp_json.get("choices") or []:
        msg = c.get("message") if isinstance(c, dict) else None
        if isinstance(msg, dict) and isinstance(msg.get("content"), str):
            return strip_code_fences(msg["content"])
        if isinstance(c, dict) and isinstance(c.get("text"), str):
            return strip_code_fences(c["text"])
    return ""


def build_messages(pcn_number: str, challenge_reason: str, additional_details: Optional[str],
                   placeholder_text: Optional[str], image_urls: Sequence[str]) -> List[Dict[str, Any]]:
    content: List[Dict[str, Any]] = [
        {"type": "text", "text": challenge_user_text(pcn_number, challenge_reason, additional_details, placeholder_text)},
    ]
    for url in image_urls:
        content.append({"type": "image_url", "image_url": {"url": url}})
    return [
        {"role": "system", "content": CHALLENGE_WRITER_PROMPT},
        {"role": "user", "content": content},
    ]


def mock_challenge_text(pcn_number: str, challenge_reason: str) -> str:
    return (
        f"I am challenging PCN {pcn_number} on the grounds that {challenge_reason.rstrip('.').lower()}. "
        "The circumstances at the time do not support the contravention alleged and I ask that the "
        "penalty charge notice is cancelled."
    )


def generate_challenge_text(pcn_number: str, challenge_reason: str, additional_details: Optional[str] = None,
                            placeholder_text: Optional[str] = None,
                            issuer_evidence_urls: Sequence[str] = (),
                            user_evidence_urls: Sequence[str] = ()) -> str:
    if _use_mock():
        logger.info("USE_MOCK_LLM enabled; returning deterministic challenge text")
        return mock_challenge_text(pcn_number, challenge_reason)

    messages = build_messages(pcn_number, challenge_reason, additional_details, placeholder_text,
                              list(issuer_evidence_urls) + list(user_evidence_urls))
    resp = call_openai(messages)
    text = extract_text(resp)
    if not text:
        raise TextGenerationError(f"Empty challenge text returned for PCN {pcn_number}")
    return text
