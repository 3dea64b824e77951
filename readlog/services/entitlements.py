from typing import Union

from readlog.models import Tier
from readlog.services.catalog import SubscriptionFeature, limits_for


def can_access(tier: Union[Tier, str], feature: Union[SubscriptionFeature, str]) -> bool:
    """Whether ``tier`` grants the boolean ``feature``."""
    return limits_for(tier).features[SubscriptionFeature.parse(feature)]


def has_reached_book_limit(tier: Union[Tier, str], current_count: int) -> bool:
    return current_count >= limits_for(tier).max_books


def entitlements_for(tier: Union[Tier, str]) -> dict:
    return {feature.value: enabled for feature, enabled in limits_for(tier).features.items()}
