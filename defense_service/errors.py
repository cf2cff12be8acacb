class DefenseServiceError(Exception):
    """Base class for errors raised by the defense service"""


class ConfigurationError(DefenseServiceError):
    """Missing credentials or workflow id. Never retried."""


class EvaluatorNotConfiguredError(ConfigurationError):
    """The language model backend has no API key"""


class CallStartError(DefenseServiceError):
    """The voice transport failed to start a call"""

    def __init__(self, message: str, user_message: str = ""):
        super().__init__(message)
        self.user_message = user_message or message


class InvalidTransitionError(DefenseServiceError):
    """A call operation was requested from a status that does not allow it"""
