from __future__ import annotations

import pytest

from esgflow.core.errors import ConfigurationError
from esgflow.services.transfer_policy import (
    JurisdictionTransferPolicy,
    KeywordTransferPolicy,
    get_transfer_policy,
)


def test_jurisdiction_policy() -> None:
    policy = JurisdictionTransferPolicy(["EU", "DE", "IE", "JP"])
    assert policy.assess("de", "EU").is_cross_border is False
    assert policy.assess("JP", "EU").reason == "adequate_jurisdictions"
    assert policy.assess("EU", "EU").reason == "same_jurisdiction"

    outside = policy.assess("US", "EU")
    assert outside.is_cross_border is True
    assert outside.source_jurisdiction == "US"
    assert outside.reason == "outside_adequate_area"

    unknown = policy.assess(None, "")
    assert unknown.is_cross_border is False
    assert unknown.destination_jurisdiction == "EU"


def test_keyword_policy_matches_whole_words() -> None:
    policy = KeywordTransferPolicy(["us", "china"])
    assert policy.assess("US East", "EU").is_cross_border is True
    assert policy.assess("Mainland China", "EU").reason == "keyword_match"
    # "us" inside another word does not count.
    assert policy.assess("Russia", "EU").is_cross_border is False
    assert policy.assess("Austria", "EU").is_cross_border is False


def test_policy_selection() -> None:
    assert get_transfer_policy().name == "jurisdiction"
    assert get_transfer_policy("keyword").name == "keyword"
    with pytest.raises(ConfigurationError, match="Unknown transfer policy"):
        get_transfer_policy("geoip")
