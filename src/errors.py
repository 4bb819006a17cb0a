class HarnessError(Exception):
    """Base error; carries whatever diagnostic context was collected before raising."""

    def __init__(self, message: str, diagnostics: dict | None = None):
        super().__init__(message)
        self.diagnostics = diagnostics or {}


class ConfigurationError(HarnessError):
    """Missing credentials or an invalid run configuration. Never retried."""


class NavigationTimeout(HarnessError):
    pass


class ElementTimeout(HarnessError):
    pass


class AssertionViolation(HarnessError, AssertionError):
    pass


class EnvelopeParseError(HarnessError):
    """Backend response did not have the expected envelope shape."""


class CleanupError(HarnessError):
    pass


class AmbiguousElement(HarnessError):
    """A lookup that must hit exactly one element matched several."""
