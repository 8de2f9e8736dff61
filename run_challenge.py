#!/usr/bin/env python3
"""
run_challenge.py

Runs a built-in issuer portal automation for one ticket already in the database.

Usage:
  python run_challenge.py AB12345678
  python run_challenge.py AB12345678 verify
  python run_challenge.py AB12345678 challenge CONTRAVENTION_DID_NOT_OCCUR
  python run_challenge.py AB12345678 challenge CONTRAVENTION_DID_NOT_OCCUR dry-run
"""
import sys
import json
import re
import logging

from dotenv import load_dotenv

load_dotenv()

from db import SessionLocal, init_db
from automation.dispatcher import INTENTS, run_issuer_automation

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

_EMAIL_RE = re.compile(r"([A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,})")

DRY_RUN_ARGS = ("dry-run", "dryrun", "simulate", "--dry-run", "dry")

USAGE = "Usage: python run_challenge.py <PCN> [verify|challenge] [REASON] [dry-run]"


def redact_for_console(obj: str) -> str:
    return _EMAIL_RE.sub("[REDACTED_EMAIL]", obj)


def parse_args(argv):
    """Return (pcn, intent, reason, dry_run) from positional args. Raises ValueError without a PCN."""
    args = list(argv)
    dry_run = False
    if args and args[-1].lower() in DRY_RUN_ARGS:
        dry_run = True
        args = args[:-1]
    if not args:
        raise ValueError(USAGE)
    pcn = args[0]
    intent = args[1].lower() if len(args) > 1 else "verify"
    reason = args[2] if len(args) > 2 else None
    return pcn, intent, reason, dry_run


def dispatch(pcn_number, intent="verify", reason=None, dry_run: bool = False, session_factory=SessionLocal, **kwargs):
    """
    Run the issuer automation for one PCN and return the RunResult as a dict.
    """
    if intent not in INTENTS:
        return {"success": False, "error": f"unsupported intent: {intent}", "error_code": "bad_intent"}
    if intent == "challenge" and not reason:
        return {"success": False, "error": "challenge needs a REASON", "error_code": "bad_reason"}
    session = session_factory()
    try:
        result = run_issuer_automation(session, pcn_number, intent, reason=reason, dry_run=dry_run, **kwargs)
        return result.to_dict()
    finally:
        session.close()


if __name__ == "__main__":
    try:
        pcn, intent, reason, dry_run_flag = parse_args(sys.argv[1:])
    except ValueError:
        print(USAGE)
        sys.exit(1)
    init_db()

    print(f"Running {intent.upper()} automation for {pcn} (dry_run={dry_run_flag})...")
    results = dispatch(pcn, intent, reason, dry_run=dry_run_flag)
    print(redact_for_console(json.dumps(results, indent=2, default=str)))
    sys.exit(0 if results.get("success") else 2)
