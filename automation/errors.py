# automation/errors.py
"""
Exception taxonomy for portal automation.

Every error carries a stable `code` that ends up in RunResult.error_code and
in challenge metadata. `retryable` errors are retried by the step engine.
"""
from typing import Optional


class AutomationError(Exception):
    code = "automation_error"
    retryable = False

    def __init__(self, message: str = "", *, step: Optional[int] = None):
        super().__init__(message or self.code)
        self.step = step


class TicketNotFound(AutomationError):
    code = "ticket_not_found"


class IssuerNotFound(AutomationError):
    code = "issuer_not_found"


class IssuerUnsupported(AutomationError):
    code = "issuer_unsupported"


class RecipeError(AutomationError):
    code = "recipe_error"


class PortalUnreachable(AutomationError):
    code = "portal_unreachable"
    retryable = True


class SelectorNotFound(AutomationError):
    code = "selector_not_found"
    retryable = True


class StepTimeout(AutomationError):
    code = "step_timeout"
    retryable = True


class UnexpectedPageState(AutomationError):
    code = "unexpected_page_state"
    retryable = True


class CaptchaUnsolved(AutomationError):
    code = "captcha_unsolved"
    retryable = True


class TextGenerationError(AutomationError):
    code = "text_generation_failed"


class AutomationCancelled(AutomationError):
    code = "cancelled"


class InvalidTransition(AutomationError):
    code = "invalid_transition"


class WorkerError(AutomationError):
    code = "worker_error"
