from math import inf

import pytest

from readlog.models import Tier
from readlog.services.catalog import (
    CATALOG, SubscriptionFeature, build_catalog, catalog_as_dict, limits_for,
)
from readlog.services.entitlements import can_access, entitlements_for, has_reached_book_limit

def test_every_tier_defines_every_feature():
    for tier in Tier:
        limits = CATALOG[tier]
        assert set(limits.features) == set(SubscriptionFeature)

def test_catalog_values():
    assert limits_for(Tier.free).max_books == 5
    assert limits_for(Tier.free).ai_credits_per_month == 3
    assert limits_for("basic").max_books == 50
    assert limits_for("basic").ai_credits_per_month == 50
    assert limits_for(Tier.premium).max_books == inf
    assert limits_for(Tier.premium).ai_credits_per_month == 100

def test_feature_matrix():
    assert not any(limits_for(Tier.free).features.values())
    assert all(limits_for(Tier.premium).features.values())
    basic = limits_for(Tier.basic).features
    assert basic[SubscriptionFeature.export_to_pdf]
    assert basic[SubscriptionFeature.advanced_note_format]
    assert basic[SubscriptionFeature.ai_author_summary]
    assert not basic[SubscriptionFeature.ai_customization]
    assert not basic[SubscriptionFeature.detailed_author_info]
    assert not basic[SubscriptionFeature.extended_ai_summary]

def test_catalog_is_read_only():
    with pytest.raises(TypeError):
        CATALOG[Tier.free] = CATALOG[Tier.premium]
    with pytest.raises(TypeError):
        limits_for(Tier.free).features[SubscriptionFeature.export_to_pdf] = True

def test_unknown_tier_is_an_error():
    with pytest.raises(ValueError):
        limits_for("gold")

def test_catalog_as_dict_uses_null_for_unbounded_books():
    plans = catalog_as_dict()
    assert plans["premium"]["maxBooks"] is None
    assert plans["free"]["aiCreditsPerMonth"] == 3
    assert plans["basic"]["exportToPdf"] is True

def _valid_raw():
    return {
        tier.value: {
            "max_books": 1,
            "ai_credits_per_month": 1,
            "features": {f.value: False for f in SubscriptionFeature},
        }
        for tier in Tier
    }

def test_missing_feature_rejected_at_load():
    raw = _valid_raw()
    del raw["basic"]["features"]["exportToPdf"]
    with pytest.raises(RuntimeError, match="exportToPdf"):
        build_catalog(raw)

def test_missing_tier_and_empty_yaml_rejected():
    with pytest.raises(RuntimeError):
        build_catalog({})
    with pytest.raises(RuntimeError, match="premium"):
        raw = _valid_raw()
        del raw["premium"]
        build_catalog(raw)

def test_can_access():
    assert not can_access(Tier.free, SubscriptionFeature.ai_author_summary)
    assert can_access(Tier.basic, "aiAuthorSummary")
    assert not can_access("basic", "extendedAiSummary")
    assert can_access(Tier.premium, SubscriptionFeature.extended_ai_summary)

def test_unknown_feature_is_an_error():
    with pytest.raises(ValueError):
        can_access(Tier.premium, "teleportation")

def test_book_limit():
    assert not has_reached_book_limit(Tier.free, 4)
    assert has_reached_book_limit(Tier.free, 5)
    assert has_reached_book_limit(Tier.basic, 50)
    assert not has_reached_book_limit(Tier.premium, 10 ** 6)

def test_entitlements_for_lists_flags_by_name():
    flags = entitlements_for(Tier.basic)
    assert flags["aiAuthorSummary"] is True
    assert flags["aiCustomization"] is False
