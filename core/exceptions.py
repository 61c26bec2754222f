"""Shared exception types for core trading logic."""

from typing import Optional


class CriticalDataUnavailable(RuntimeError):
    """Raised when required market or account data cannot be fetched safely."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(source)
        self.source = source
        self.original = original


class ConfigurationError(ValueError):
    """Raised at startup when configuration or credentials are unusable."""

    def __init__(self, errors):
        if isinstance(errors, str):
            errors = [errors]
        self.errors = list(errors)
        super().__init__(f"Invalid configuration: {len(self.errors)} error(s) found")


class ExecutionFailed(RuntimeError):
    """Raised by a venue adapter when an order got no fill."""

    def __init__(self, side: str, mint: str, reason: str):
        super().__init__(f"{side} {mint} failed: {reason}")
        self.side = side
        self.mint = mint
        self.reason = reason
