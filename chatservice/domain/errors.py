from __future__ import annotations

from enum import StrEnum


class TurnPhase(StrEnum):
    """Step of a chat completion turn in which a failure happened."""

    LOADING = "loading"
    CREATING = "creating"
    APPENDING = "appending"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    FINALIZING = "finalizing"


class ChatServiceError(Exception):
    """Base class for every failure surfaced by the chat completion use case.

    Callers branch on the exception type (or ``kind``) and ``phase``, never on
    the message text. ``retryable`` tells whether replaying the whole turn may
    succeed.
    """

    kind = "chat_service_error"
    retryable = False

    def __init__(self, message: str, *, phase: TurnPhase | None = None) -> None:
        self.message = message
        self.phase = phase
        super().__init__(message)

    def with_phase(self, phase: TurnPhase) -> ChatServiceError:
        """Return a copy of this error attributed to ``phase``."""
        return type(self)(self.message, phase=phase)

    def __str__(self) -> str:
        if self.phase is None:
            return self.message
        return f"{self.phase}: {self.message}"


class ChatNotFoundError(ChatServiceError):
    kind = "not_found"


class ValidationError(ChatServiceError):
    kind = "validation_error"


class TokenizationError(ChatServiceError):
    kind = "tokenization_error"


class BudgetExceededError(ChatServiceError):
    kind = "budget_exceeded"


class StoreError(ChatServiceError):
    kind = "store_error"
    retryable = True


class ChatCommitError(StoreError):
    """The provider finished the reply but the chat could not be persisted."""

    kind = "commit_error"


class ProviderError(ChatServiceError):
    kind = "provider_error"
    retryable = True

    def __init__(self, message: str, *, status_code: int = 502, phase: TurnPhase | None = None) -> None:
        self.status_code = status_code
        super().__init__(message, phase=phase)

    def with_phase(self, phase: TurnPhase) -> ProviderError:
        return ProviderError(self.message, status_code=self.status_code, phase=phase)
