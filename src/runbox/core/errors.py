from __future__ import annotations


class RunboxError(Exception):
    """Base class for errors raised by the execution service."""


class ValidationError(RunboxError):
    """Bad input: nothing was staged or spawned."""


class UnsupportedLanguageError(ValidationError):
    def __init__(self, language: str):
        super().__init__(f"unsupported language: {language!r}")
        self.language = language


class InfrastructureError(RunboxError):
    """Staging, spawning or sandbox setup failed on our side."""


class CapacityError(RunboxError):
    """Too many executions in flight."""


class InvalidSourceError(ValidationError):
    """Source text that cannot be written as UTF-8 (e.g. lone surrogates from JSON escapes)."""
