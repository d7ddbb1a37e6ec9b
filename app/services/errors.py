"""Error taxonomy for the integration sync engine.

Every failure surfaced by the vault, token manager, WHOOP client, store and
orchestrator is an ``IntegrationError`` subclass, so callers (HTTP handlers,
the scheduler) can map them without inspecting messages.
"""


class IntegrationError(Exception):
    """Base class for integration failures.

    ``steps`` holds the orchestrator step labels the error passed through,
    outermost first; they are rendered as a ``step: step: message`` prefix.
    """

    kind = "error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message
        self.steps: list[str] = []

    def add_step(self, step: str) -> "IntegrationError":
        self.steps.insert(0, step)
        return self

    def __str__(self) -> str:
        parts = [*self.steps, self.message or self.kind]
        return ": ".join(parts)


class ConfigError(IntegrationError):
    """Invalid process configuration. Fatal at startup."""

    kind = "config"


class KeyConfigError(ConfigError):
    """Token encryption key is missing or malformed."""

    kind = "key_config"


class EmptyInput(IntegrationError):
    kind = "empty_input"


class InvalidRequest(IntegrationError):
    """Caller supplied unusable input (e.g. a redirect URI we did not register)."""

    kind = "invalid_request"


class MissingToken(IntegrationError):
    """No usable credential for the integration. Not retried."""

    kind = "missing_token"

    def __init__(self, message: str = "missing token"):
        super().__init__(message)


class DecryptionFailed(IntegrationError):
    """Stored ciphertext is corrupt or was tampered with."""

    kind = "decryption_failed"


class UpstreamError(IntegrationError):
    """WHOOP returned an error status or the transport failed."""

    kind = "upstream_error"

    def __init__(self, message: str = "", status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class UpstreamUnauthorized(UpstreamError):
    kind = "upstream_unauthorized"

    def __init__(self, message: str = "whoop unauthorized", status_code: int | None = 401):
        super().__init__(message, status_code)


class UpstreamTimeout(IntegrationError):
    kind = "upstream_timeout"


class ParseError(IntegrationError):
    """A response body could not be decoded into the expected shape."""

    kind = "parse_error"


class PersistenceError(IntegrationError):
    kind = "persistence_error"


class NotFound(IntegrationError):
    kind = "not_found"

    def __init__(self, message: str = "not found"):
        super().__init__(message)
