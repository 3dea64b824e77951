"""Tier catalog: the feature limits every subscription tier grants.

Loaded once from ``entitlements.yaml`` at import time and frozen. A tier that
omits a feature flag or numeric limit is rejected at load, so every lookup
below is total.
"""
import os
from dataclasses import dataclass
from enum import Enum
from math import inf
from types import MappingProxyType
from typing import Mapping, Union

import yaml

from readlog.models import Tier

ENTITLEMENTS_PATH = os.path.abspath(os.path.join(os.path.dirname(__file__), "../entitlements.yaml"))

UNBOUNDED = -1


class SubscriptionFeature(str, Enum):
    """Boolean features gated by tier. Numeric limits are not features."""
    export_to_pdf = "exportToPdf"
    advanced_note_format = "advancedNoteFormat"
    ai_author_summary = "aiAuthorSummary"
    ai_customization = "aiCustomization"
    detailed_author_info = "detailedAuthorInfo"
    extended_ai_summary = "extendedAiSummary"

    @classmethod
    def parse(cls, value: Union["SubscriptionFeature", str]) -> "SubscriptionFeature":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"Unknown subscription feature: {value!r}") from None


@dataclass(frozen=True)
class TierLimits:
    max_books: Union[int, float]  # math.inf when unbounded
    ai_credits_per_month: int
    features: Mapping[SubscriptionFeature, bool]

    def to_dict(self) -> dict:
        return {
            "maxBooks": None if self.max_books == inf else self.max_books,
            "aiCreditsPerMonth": self.ai_credits_per_month,
            **{feature.value: enabled for feature, enabled in self.features.items()},
        }


def _parse_limits(tier: Tier, raw: dict) -> TierLimits:
    if not isinstance(raw, dict):
        raise RuntimeError(f"Tier '{tier.value}' has no limits defined")
    for key in ("max_books", "ai_credits_per_month"):
        if not isinstance(raw.get(key), int) or isinstance(raw.get(key), bool):
            raise RuntimeError(f"Tier '{tier.value}' must define integer '{key}'")
    flags = raw.get("features") or {}
    missing = [f.value for f in SubscriptionFeature if f.value not in flags]
    if missing:
        raise RuntimeError(f"Tier '{tier.value}' is missing features: {', '.join(missing)}")
    unknown = set(flags) - {f.value for f in SubscriptionFeature}
    if unknown:
        raise RuntimeError(f"Tier '{tier.value}' defines unknown features: {', '.join(sorted(unknown))}")
    features = {}
    for feature in SubscriptionFeature:
        value = flags[feature.value]
        if not isinstance(value, bool):
            raise RuntimeError(f"Tier '{tier.value}' feature '{feature.value}' must be true or false")
        features[feature] = value
    max_books = inf if raw["max_books"] == UNBOUNDED else raw["max_books"]
    return TierLimits(
        max_books=max_books,
        ai_credits_per_month=raw["ai_credits_per_month"],
        features=MappingProxyType(features),
    )


def build_catalog(raw: dict) -> Mapping[Tier, TierLimits]:
    if not raw:
        raise RuntimeError("Entitlements YAML is empty or malformed!")
    return MappingProxyType({tier: _parse_limits(tier, raw.get(tier.value)) for tier in Tier})


def load_catalog(path: str = ENTITLEMENTS_PATH) -> Mapping[Tier, TierLimits]:
    with open(path, "r") as f:
        return build_catalog(yaml.safe_load(f))


CATALOG = load_catalog()


def limits_for(tier: Union[Tier, str]) -> TierLimits:
    # Tier("gold") raises ValueError: an unknown tier is a caller bug, not a denial.
    return CATALOG[Tier(tier)]


def catalog_as_dict() -> dict:
    return {tier.value: limits.to_dict() for tier, limits in CATALOG.items()}
