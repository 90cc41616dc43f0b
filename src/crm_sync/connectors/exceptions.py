"""Error taxonomy shared by connectors and the resilience layer.

- CRMAuthError: credentials rejected. Never retried.
- CRMRateLimitError: vendor throttled us. Always retried; carries reset_time.
- CRMApiError: other API failures; the raising adapter sets ``retryable``.
- CircuitOpenError: a circuit breaker rejected the call without trying it.
- UnsupportedSystemError: no adapter or OAuth profile for a vendor tag.
"""

from __future__ import annotations

from datetime import datetime


class CRMError(Exception):
    """Base class for all CRM errors."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        system: str = "unknown",
        retryable: bool = False,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.system = system
        self.retryable = retryable
        self.status_code = status_code

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(message={self.message!r}, code={self.code!r}, "
            f"system={self.system!r}, retryable={self.retryable})"
        )


class CRMAuthError(CRMError):
    def __init__(self, message: str, system: str = "unknown", status_code: int | None = None) -> None:
        super().__init__(message, "AUTH_ERROR", system, retryable=False, status_code=status_code)


class CRMRateLimitError(CRMError):
    def __init__(
        self,
        message: str,
        system: str,
        reset_time: datetime,
        status_code: int | None = 429,
    ) -> None:
        super().__init__(message, "RATE_LIMIT", system, retryable=True, status_code=status_code)
        self.reset_time = reset_time


class CRMApiError(CRMError):
    def __init__(
        self,
        message: str,
        system: str,
        code: str,
        retryable: bool = False,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, code, system, retryable=retryable, status_code=status_code)


class CircuitOpenError(CRMError):
    def __init__(self, name: str) -> None:
        super().__init__(
            f"Circuit breaker is open for {name}",
            "CIRCUIT_BREAKER_OPEN",
            retryable=False,
        )
        self.name = name


class UnsupportedSystemError(CRMError):
    def __init__(self, system: str, context: str = "CRM system") -> None:
        super().__init__(f"Unsupported {context}: {system}", "UNSUPPORTED_SYSTEM", system)
