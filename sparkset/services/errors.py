"""
Typed errors raised by the query pipeline.

Each class carries a legacy string ``code`` and an HTTP ``status`` so the
error taxonomy in ``query_errors`` can classify it without guessing.
"""
from __future__ import annotations

from typing import List, Optional


class SparksetError(Exception):
    """Base class for pipeline errors."""

    code = "E_INTERNAL_ERROR"
    status = 500

    def __init__(self, message: str, details: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class QueryValidationError(SparksetError):
    code = "E_VALIDATION_ERROR"
    status = 400


class SafetyViolation(QueryValidationError):
    """Raised when a statement fails the SQL safety validator."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ActionHandlerNotFound(QueryValidationError):
    def __init__(self, action_type: str):
        super().__init__(f"No handler for type {action_type}")
        self.action_type = action_type


class ConfigurationError(SparksetError):
    code = "E_CONFIGURATION_ERROR"
    status = 400


class DatasourceNotFoundError(ConfigurationError):
    def __init__(self, datasource_id: object):
        super().__init__(f"Datasource {datasource_id} not found")
        self.datasource_id = datasource_id


class ProviderConfigurationError(ConfigurationError):
    """Raised when a language-model provider is unknown or misconfigured."""


class DatabaseError(SparksetError):
    code = "E_DATABASE_ERROR"
    status = 400


class RateLimitError(SparksetError):
    code = "E_RATE_LIMIT_EXCEEDED"
    status = 429

    def __init__(self, message: str, retry_after: Optional[int] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ExternalServiceError(SparksetError):
    code = "E_EXTERNAL_SERVICE_ERROR"
    status = 502

    def __init__(self, service: str, message: str):
        super().__init__(message)
        self.service = service


class QueryTimeoutError(ExternalServiceError):
    """Raised when a query exceeds the datasource timeout."""

    def __init__(self, message: str):
        super().__init__("Datasource", message)


class AIGenerationError(ExternalServiceError):
    """Every candidate model failed to produce SQL."""

    def __init__(self, message: str, attempts: int, last_error: Optional[BaseException] = None):
        super().__init__("AI provider", message)
        self.attempts = attempts
        self.last_error = last_error


class AuthenticationError(SparksetError):
    code = "E_AUTHENTICATION_FAILED"
    status = 401
