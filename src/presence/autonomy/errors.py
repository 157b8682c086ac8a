from typing import Optional


class PresenceError(Exception):
    pass


class TransientCollaboratorError(PresenceError):
    """Recoverable failure from a network collaborator (timeout, rate limit, 5xx)."""


class SessionError(PresenceError):
    pass


class FatalProviderError(PresenceError):
    """Authentication, billing or access failure from the language-model provider.

    This is the one error class allowed to stop the scheduler.
    """

    BILLING = "BILLING_ERROR"
    AUTH = "AUTH_ERROR"
    ACCESS_DENIED = "ACCESS_DENIED"

    def __init__(self, message: str, code: str, status: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.status = status

    def diagnostic(self) -> str:
        hints = {
            self.BILLING: "Add credits or fix the billing plan for the model provider account.",
            self.AUTH: "Check OPENAI_API_KEY; the provider rejected it.",
            self.ACCESS_DENIED: "The API key lacks access to the configured model (OPENAI_MODEL).",
        }
        hint = hints.get(self.code, "Check the model provider account.")
        return f"Fatal model provider error code={self.code} status={self.status}: {self}. {hint}"
