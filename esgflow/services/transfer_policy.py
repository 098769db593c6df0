from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Protocol

from esgflow.core.config import get_settings, split_csv
from esgflow.core.errors import ConfigurationError


@dataclass(frozen=True)
class TransferAssessment:
    source_jurisdiction: str | None
    destination_jurisdiction: str
    is_cross_border: bool
    reason: str


class TransferPolicy(Protocol):
    name: str

    def assess(self, source_jurisdiction: str | None, destination_jurisdiction: str) -> TransferAssessment:
        ...


def _normalize(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip().upper()
    return value or None


class JurisdictionTransferPolicy:
    """Flag transfers that leave the adequate-jurisdiction area.

    Moving data between two adequate jurisdictions (EU/EEA members or
    countries with an adequacy decision) is not cross-border for reporting
    purposes. Unknown sources are not flagged.
    """

    name = "jurisdiction"

    def __init__(self, adequate: list[str]) -> None:
        self._adequate = {code.upper() for code in adequate}

    def assess(self, source_jurisdiction: str | None, destination_jurisdiction: str) -> TransferAssessment:
        source = _normalize(source_jurisdiction)
        destination = _normalize(destination_jurisdiction) or "EU"
        if source is None:
            return TransferAssessment(None, destination, False, "unknown_source")
        if source == destination:
            return TransferAssessment(source, destination, False, "same_jurisdiction")
        if source in self._adequate and destination in self._adequate:
            return TransferAssessment(source, destination, False, "adequate_jurisdictions")
        return TransferAssessment(source, destination, True, "outside_adequate_area")


class KeywordTransferPolicy:
    # Legacy heuristic: match keywords against the free-text jurisdiction labels.
    name = "keyword"

    def __init__(self, keywords: list[str]) -> None:
        self._patterns = [
            re.compile(rf"(^|[^a-z]){re.escape(keyword.lower())}([^a-z]|$)") for keyword in keywords if keyword
        ]

    def assess(self, source_jurisdiction: str | None, destination_jurisdiction: str) -> TransferAssessment:
        destination = destination_jurisdiction or "EU"
        haystacks = [(source_jurisdiction or "").lower(), destination.lower()]
        hit = any(pattern.search(text) for pattern in self._patterns for text in haystacks)
        return TransferAssessment(
            source_jurisdiction,
            destination,
            hit,
            "keyword_match" if hit else "no_keyword_match",
        )


def get_transfer_policy(name: str | None = None) -> TransferPolicy:
    settings = get_settings()
    selected = (name or settings.transfer_policy).strip().lower()
    if selected == "jurisdiction":
        return JurisdictionTransferPolicy(split_csv(settings.transfer_adequate_jurisdictions))
    if selected == "keyword":
        return KeywordTransferPolicy(split_csv(settings.transfer_keywords))
    raise ConfigurationError(f"Unknown transfer policy: {selected}")
