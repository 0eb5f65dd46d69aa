"""Feature gating utilities coordinating entitlement enforcement."""
from .enforcement import assert_feature, require_feature
from .exceptions import FeatureGateError

__all__ = [
    "FeatureGateError",
    "assert_feature",
    "require_feature",
]
