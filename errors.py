"""
Kindred - Error Types
Provider failures feed the fallback chain; persistence and reference
failures are recovered where they happen.
"""


class ProviderError(Exception):
    """A model backend failed to produce text."""

    kind = "provider_error"

    def __init__(self, provider: str, message: str):
        super().__init__(message)
        self.provider = provider
        self.message = message

    def __str__(self):
        return self.message


class ProviderAuthError(ProviderError):
    kind = "auth"


class ProviderRateLimitError(ProviderError):
    kind = "rate_limit"


class ProviderServerError(ProviderError):
    kind = "server_error"


class ProviderTimeoutError(ProviderError):
    kind = "timeout"


class ProviderContentBlockedError(ProviderError):
    kind = "content_blocked"


class ProviderMalformedResponseError(ProviderError):
    kind = "malformed_response"


class AllProvidersFailedError(Exception):
    """Primary and every fallback failed; carries the first and last cause."""

    def __init__(self, primary: str, primary_error: Exception, last_error: Exception = None):
        self.primary = primary
        self.primary_error = primary_error
        self.last_error = last_error if last_error is not None else primary_error
        super().__init__(
            f"All AI providers failed. Primary ({primary}) error: {primary_error}. "
            f"Last fallback error: {self.last_error}"
        )


class PersistenceReadError(Exception):
    """A stored JSON document was unreadable; callers substitute defaults."""

    def __init__(self, path: str, cause: Exception):
        super().__init__(f"Could not read {path}: {cause}")
        self.path = path
        self.cause = cause


class PersistenceWriteError(Exception):
    """A JSON document could not be written; logged and swallowed."""

    def __init__(self, path: str, cause: Exception):
        super().__init__(f"Could not write {path}: {cause}")
        self.path = path
        self.cause = cause


class ReferenceResolutionError(Exception):
    """A replied-to message could not be fetched from the platform."""

    def __init__(self, channel_id: str, message_id: str, cause: Exception = None):
        super().__init__(f"Could not fetch message {message_id} in {channel_id}: {cause}")
        self.channel_id = channel_id
        self.message_id = message_id
        self.cause = cause
