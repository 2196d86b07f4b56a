from __future__ import annotations


class DomainError(Exception):
    pass


class DomainValidationError(DomainError):
    pass


class DomainInvariantError(DomainError):
    pass


class DomainDependencyError(DomainError):
    pass


class CallerMisuseError(DomainError):
    """Raised immediately when a caller drives a transaction in a way it cannot honor."""


class UnknownTransactionError(CallerMisuseError):
    pass


class UnknownRiskIndicatorError(DomainValidationError):
    pass


class TransientTransportError(DomainDependencyError):
    """Network or decoding failure that outlived the gateway's own retries."""

    def __init__(self, message: str, *, attempts: int = 1) -> None:
        super().__init__(message)
        self.attempts = attempts


class ArtifactFetchError(DomainDependencyError):
    pass
