from dataclasses import dataclass
from typing import List

PROBLEM_BASE = "https://pjhwebservices.co.uk/problems"


@dataclass
class DomainError(Exception):
    detail: str
    title: str = "Domain Error"
    type: str = f"{PROBLEM_BASE}/domain-error"
    errors: List[dict] | None = None
    status_code: int = 400

    def __str__(self) -> str:
        return self.detail


@dataclass
class ValidationError(DomainError):
    title: str = "Validation Error"
    type: str = f"{PROBLEM_BASE}/validation-error"
    status_code: int = 422


@dataclass
class NotFoundError(DomainError):
    title: str = "Not Found"
    type: str = f"{PROBLEM_BASE}/not-found"
    status_code: int = 404


@dataclass
class NothingOwedError(DomainError):
    title: str = "Nothing Owed"
    type: str = f"{PROBLEM_BASE}/nothing-owed"
    status_code: int = 409


AlreadySettledError = NothingOwedError


@dataclass
class NoExternalReferenceError(DomainError):
    title: str = "No External Reference"
    type: str = f"{PROBLEM_BASE}/no-external-reference"
    status_code: int = 409


@dataclass
class SignatureError(DomainError):
    title: str = "Invalid Signature"
    type: str = f"{PROBLEM_BASE}/invalid-signature"
    status_code: int = 400


@dataclass
class ExternalServiceError(DomainError):
    """The payment processor rejected or failed a request; nothing was persisted."""

    title: str = "Payment Processor Error"
    type: str = f"{PROBLEM_BASE}/external-service-error"
    status_code: int = 502
    retryable: bool = False

    def __post_init__(self) -> None:
        if self.retryable:
            self.status_code = 503


@dataclass
class PersistenceError(DomainError):
    title: str = "Persistence Error"
    type: str = f"{PROBLEM_BASE}/persistence-error"
    status_code: int = 500
