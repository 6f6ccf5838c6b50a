"""Exceptions raised by the wallet client."""


class PesaWalletError(Exception):
    """Base class for wallet client errors."""


class ConfigError(PesaWalletError):
    """Raised when the config file holds values of the wrong type."""


class SessionError(PesaWalletError):
    """Base class for session errors."""


class SessionNotLoadedError(SessionError):
    """Raised when auth state is read before the cached session has loaded."""


class AuthenticationError(SessionError):
    """Raised when login or registration is refused; carries the backend message."""

    def __init__(self, message: str, status: int = 0):
        super().__init__(message)
        self.message = message
        self.status = status


class WizardError(PesaWalletError):
    """Base class for transfer wizard errors."""


class InvalidTransitionError(WizardError):
    """Raised when an event is not accepted in the wizard's current step."""


class SubmissionPendingError(WizardError):
    """Raised when a transfer is submitted while another is still in flight."""
