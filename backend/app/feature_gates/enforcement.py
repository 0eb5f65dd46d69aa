"""Helpers for enforcing entitlement checks on API and service layers."""
from __future__ import annotations

import os
from functools import lru_cache
from typing import Any, Callable, Optional, Union

from fastapi import Cookie, Depends

from ..entitlements import EntitlementDecision, EntitlementResolver, FallbackBehavior, Feature
from ..services.subscriptions import get_entitlement_resolver, owner_from_user
from .exceptions import FeatureGateError


def assert_feature(decision: EntitlementDecision) -> EntitlementDecision:
    """Raise :class:`FeatureGateError` unless ``decision`` lets the caller proceed.

    Degraded decisions pass through; the caller inspects ``decision.degraded``
    to decide how much of the feature to serve.
    """

    if not decision.allowed:
        raise FeatureGateError.from_decision(decision)
    return decision


def _resolve_get_current_user() -> Callable[..., Any]:  # pragma: no cover
    try:
        from backend.main import get_current_user as resolved
    except ModuleNotFoundError as exc:
        if exc.name != "backend":
            raise
        from ...main import get_current_user as resolved  # type: ignore[no-redef]
    return resolved


@lru_cache(maxsize=1)
def _get_current_user_callable() -> Callable[..., Any]:
    return _resolve_get_current_user()


_SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")


def _get_current_user(
    session_token: Optional[str] = Cookie(None, alias=_SESSION_COOKIE_NAME),
):
    resolved = _get_current_user_callable()
    return resolved(session_token=session_token)


def require_feature(
    feature: Union[Feature, str],
    *,
    fallback: FallbackBehavior = FallbackBehavior.BLOCK,
    strict: bool = False,
) -> Callable[..., EntitlementDecision]:
    """Build a FastAPI dependency that gates a route on ``feature``.

    Example::

        @router.get("/reports/export")
        def export(decision=Depends(require_feature(Feature.DATA_EXPORT))):
            ...
    """

    def dependency(
        current_user=Depends(_get_current_user),
        resolver: EntitlementResolver = Depends(get_entitlement_resolver),
    ) -> EntitlementDecision:
        decision = resolver.resolve(
            owner_from_user(current_user),
            feature,
            fallback=fallback,
            strict=strict,
        )
        try:
            return assert_feature(decision)
        except FeatureGateError as exc:
            raise exc.to_http_exception() from exc

    return dependency


__all__ = ["assert_feature", "require_feature"]
