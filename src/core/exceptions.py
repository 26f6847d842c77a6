"""
Custom exception hierarchy for the conversation engine.

All application exceptions inherit from ConversationEngineError.

Errors are grouped by how the engine reacts to them:
- ValidationError: input rejected; reported back to the caller, nothing retried
- TransientExternalError: a collaborator failed; retried with bounded backoff
- NotFoundError: a referenced entity does not exist
"""


class ConversationEngineError(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(ConversationEngineError):
    """Invalid or missing configuration."""

    pass


# =============================================================================
# Validation Errors
# =============================================================================


class ValidationError(ConversationEngineError):
    """Input validation failed."""

    pass


class UnknownToolError(ValidationError):
    """Completion service proposed a tool that is not registered or enabled."""

    pass


class InteractionValidationError(ValidationError):
    """Inbound interaction payload does not match any open form or button."""

    pass


class ModerationFlagged(ConversationEngineError):
    """User input was flagged by the moderation service.

    Not an operational failure: the turn completes with a flagged thread item.
    """

    def __init__(self, message: str, verdict: dict | None = None):
        super().__init__(message)
        self.verdict = verdict or {}


# =============================================================================
# Transient External Errors
# =============================================================================


class TransientExternalError(ConversationEngineError):
    """An external collaborator failed in a way that may succeed on retry."""

    pass


class LLMError(ConversationEngineError):
    """Base for completion/moderation service errors."""

    pass


class LLMTimeoutError(LLMError, TransientExternalError):
    """LLM call timed out."""

    pass


class LLMRateLimitError(LLMError, TransientExternalError):
    """LLM rate limit exceeded."""

    pass


class LLMServiceUnavailableError(LLMError, TransientExternalError):
    """LLM provider returned a server-side error."""

    pass


class LLMInvalidResponseError(LLMError):
    """LLM returned invalid or unexpected response."""

    pass


class NotificationDeliveryError(TransientExternalError):
    """Outbound notification could not be delivered."""

    pass


class PersistenceError(TransientExternalError):
    """Document store read or write failed."""

    pass


class ExternalCollaboratorError(TransientExternalError):
    """Call to a configured external tool or resource failed."""

    pass


# =============================================================================
# Action Errors
# =============================================================================


class ActionExecutionError(ConversationEngineError):
    """An action in a sequence failed."""

    def __init__(self, message: str, action_name: str | None = None):
        super().__init__(message)
        self.action_name = action_name


# =============================================================================
# Not Found / Session Errors
# =============================================================================


class NotFoundError(ConversationEngineError):
    """Referenced entity does not exist."""

    pass


class SessionNotFoundError(NotFoundError):
    """Session does not exist."""

    pass


class ThreadItemNotFoundError(NotFoundError):
    """Thread index is out of range or the item is already finalized."""

    pass


class TenantNotFoundError(NotFoundError):
    """No configuration is registered for the tenant."""

    pass


class SessionClosedError(ConversationEngineError):
    """Attempted operation on a closed session."""

    pass
