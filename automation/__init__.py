# automation/__init__.py
"""
Package exports for the automation package.

Only errors and result types are imported here; import the dispatcher,
autochallenge and webhooks modules directly.
"""
from .errors import AutomationError, RecipeError
from .results import AutoChallengeResult, RunResult, StepOutcome

__all__ = ["AutomationError", "RecipeError", "AutoChallengeResult", "RunResult", "StepOutcome"]
