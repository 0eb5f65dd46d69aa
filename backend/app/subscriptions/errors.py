"""Error taxonomy for the subscription engine."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


@dataclass
class SubscriptionError(Exception):
    """Base error carrying a stable code and the HTTP status it maps to."""

    message: str
    code: str = "subscription_error"
    status_code: int = status.HTTP_400_BAD_REQUEST
    detail: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        super().__init__(self.message)

    @property
    def payload(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            body.update(self.detail)
        return body

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=self.payload)


@dataclass
class SubscriptionValidationError(SubscriptionError):
    """Malformed request or unknown plan, rejected before any mutation."""

    code: str = "validation_error"
    status_code: int = status.HTTP_400_BAD_REQUEST


@dataclass
class SignatureError(SubscriptionError):
    """Webhook signature verification failed."""

    code: str = "invalid_signature"
    status_code: int = status.HTTP_400_BAD_REQUEST


@dataclass
class ConflictError(SubscriptionError):
    """Duplicate live subscription or an otherwise conflicting change."""

    code: str = "conflict"
    status_code: int = status.HTTP_409_CONFLICT


@dataclass
class NotFoundError(SubscriptionError):
    """Unknown subscription or plan id."""

    code: str = "not_found"
    status_code: int = status.HTTP_404_NOT_FOUND


@dataclass
class ProviderError(SubscriptionError):
    """A provider charge failed; gateways convert this into a failure result."""

    code: str = "provider_error"
    status_code: int = status.HTTP_502_BAD_GATEWAY


__all__ = [
    "ConflictError",
    "NotFoundError",
    "ProviderError",
    "SignatureError",
    "SubscriptionError",
    "SubscriptionValidationError",
]
