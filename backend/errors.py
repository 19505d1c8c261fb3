"""Exception taxonomy for the onboarding engine.

Every failure the core can surface derives from ``OnboardingError`` so the
HTTP layer can map families of errors to status codes in one place:

- ConfigurationError: bad or missing templates, cyclic/forward phase
  dependencies, unregistered agent roles. Never retried.
- InputValidationError: malformed or incomplete input (UI responses, entries).
- HistoryIntegrityError: sequence collisions or gaps found while replaying.
- TransientError: store or external-call unavailability. Retried with backoff
  at the call site.
- TerminalAgentError: a required subtask reported an unrecoverable failure.
- ContextTerminatedError: a write reached a context that already ended.
"""

from typing import Any


class OnboardingError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(OnboardingError):
    """A template or wiring problem detected before any agent runs."""


class TemplateNotFoundError(ConfigurationError):
    """Raised when a task template id (and version) cannot be loaded."""

    def __init__(self, template_id: str, version: str | None = None) -> None:
        self.template_id = template_id
        self.version = version
        suffix = f" (version {version})" if version else ""
        super().__init__(f"Task template not found: {template_id}{suffix}")


class PhaseDependencyError(ConfigurationError):
    """Raised when a phase depends on itself, a later phase, or an unknown phase."""


class AgentNotRegisteredError(ConfigurationError):
    """Raised when a template references an agent role with no registered agent."""


class InputValidationError(OnboardingError):
    """Raised for malformed or incomplete caller input."""

    def __init__(self, message: str, fields: list[str] | None = None) -> None:
        self.fields = fields or []
        super().__init__(message)


class HistoryIntegrityError(OnboardingError):
    """Raised when a context history violates the sequence invariant."""

    def __init__(
        self,
        message: str,
        context_id: str | None = None,
        sequence_numbers: list[int] | None = None,
    ) -> None:
        self.context_id = context_id
        self.sequence_numbers = sequence_numbers or []
        super().__init__(message)


class TransientError(OnboardingError):
    """A retryable failure of a store or an external service."""


class StoreUnavailableError(TransientError):
    """Raised when the event store cannot be reached or a write fails."""


class TerminalAgentError(OnboardingError):
    """A required subtask reported an unrecoverable error."""

    def __init__(self, code: str, message: str, details: dict[str, Any] | None = None) -> None:
        self.code = code
        self.details = details or {}
        super().__init__(f"{code}: {message}")


class ContextNotFoundError(OnboardingError):
    """Raised when an operation targets an unknown context id."""

    def __init__(self, context_id: str) -> None:
        self.context_id = context_id
        super().__init__(f"Task context not found: {context_id}")


class UIRequestNotFoundError(OnboardingError):
    """Raised when a UI response does not match an open pause point."""


class PauseExpiredError(OnboardingError):
    """Raised when a UI response arrives after its pause point expired."""


class ContextTerminatedError(OnboardingError):
    """Raised when an entry is appended to a completed, failed or cancelled context."""

    def __init__(self, context_id: str, status: str) -> None:
        self.context_id = context_id
        self.status = status
        super().__init__(f"Task context {context_id} is already {status}")
