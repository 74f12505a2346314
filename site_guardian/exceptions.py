"""Error taxonomy shared by the resolver, the expectations and the executor."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    NAVIGATION_TIMEOUT = "NavigationTimeout"
    EVALUATION_TIMEOUT = "EvaluationTimeout"
    ASSERTION_FAILED = "AssertionFailed"
    ELEMENT_NOT_FOUND = "ElementNotFound"
    CREDENTIALS_MISSING = "CredentialsMissing"
    SESSION_UNAVAILABLE = "SessionUnavailable"
    UNEXPECTED_HTTP_STATUS = "UnexpectedHttpStatus"
    BROWSER_ERROR = "BrowserError"
    RUN_TIMEOUT = "RunTimeout"


class SiteGuardianError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(SiteGuardianError):
    """The run cannot start: malformed base URL, unknown run-mode, bad value."""


class ExpectationFailed(SiteGuardianError):
    """An expectation evaluated false against the page or response state."""

    kind = ErrorKind.ASSERTION_FAILED

    def __init__(self, expected: str, observed: str):
        self.expected = expected
        self.observed = observed
        super().__init__(f"expected {expected}, observed {observed}")


class UnexpectedHttpStatus(ExpectationFailed):
    kind = ErrorKind.UNEXPECTED_HTTP_STATUS


class ElementNotFound(ExpectationFailed):
    """Raised only by expectations that explicitly test for presence."""

    kind = ErrorKind.ELEMENT_NOT_FOUND
