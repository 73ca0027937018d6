# Intel Module - Confidence & Threat Classifier
#
# Blends the feed-reported confidence with a per-source reputation weight,
# boosts indicators that look like credential phishing, and maps the
# feed's free-form threat label onto the canonical ThreatType.
#
#   reported  = feed confidence, or 50 when missing
#   blended   = round(0.7 * reported + 0.3 * reputation)
#   +15       when the indicator contains a phishing keyword
#   clamp     0 - 100

import re
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from .models import RawThreat, ThreatLevel, ThreatType
from .normalizer import primary_value

DEFAULT_REPORTED_CONFIDENCE = 50
UNKNOWN_SOURCE_REPUTATION = 50
KEYWORD_BOOST = 15

REPORTED_WEIGHT = 0.7
REPUTATION_WEIGHT = 0.3

DEFAULT_SOURCE_REPUTATION: Dict[str, int] = {
    "openphish": 90,
    "phishing-database": 85,
    "abuse.ch-urlhaus": 80,
    "abuse.ch-threatfox": 80,
    "alienvault-otx": 60,
}

# Fallback for unlabelled or unrecognised threats; abuse.ch feeds only
# carry malware infrastructure
DEFAULT_THREAT_TYPE_BY_SOURCE: Dict[str, ThreatType] = {
    "abuse.ch-urlhaus": ThreatType.MALWARE,
    "abuse.ch-threatfox": ThreatType.MALWARE,
}

PHISHING_KEYWORDS = (
    "login",
    "signin",
    "verify",
    "account",
    "secure",
    "update",
    "banking",
    "password",
    "webscr",
    "wallet",
    "paypal",
    "confirm",
)

_MALWARE_SUBSTRINGS = (
    "malware",
    "trojan",
    "backdoor",
    "botnet",
    "command",
    "ransom",
    "stealer",
    "loader",
)
# Short labels only count as whole tokens ("rat", not "pirate")
_MALWARE_TOKENS = ("rat", "c2")

_TOKEN_SPLIT = re.compile(r"[^a-z0-9]+")

HIGH_CONFIDENCE = 80
MEDIUM_CONFIDENCE = 60


@dataclass(frozen=True)
class Classification:
    confidence: int
    threat_type: ThreatType


def threat_level(confidence: int, threat_type: ThreatType) -> ThreatLevel:
    """Display bucket: phishing or >= 80 is high, >= 60 medium, else low."""
    if confidence >= HIGH_CONFIDENCE or threat_type == ThreatType.PHISHING:
        return ThreatLevel.HIGH
    if confidence >= MEDIUM_CONFIDENCE:
        return ThreatLevel.MEDIUM
    return ThreatLevel.LOW


def has_phishing_keyword(text: Optional[str]) -> bool:
    if not text:
        return False
    lowered = text.lower()
    return any(keyword in lowered for keyword in PHISHING_KEYWORDS)


def map_threat_label(
    label: Optional[str],
    indicator_text: Optional[str] = None,
    default: ThreatType = ThreatType.OTHER,
) -> ThreatType:
    """Map a feed's threat label onto ThreatType.

    Without a label, indicators carrying a phishing keyword are phishing
    and everything else is ``default``.  Unrecognised labels map to
    ``default`` as well.
    """
    if label is None or not str(label).strip():
        if has_phishing_keyword(indicator_text):
            return ThreatType.PHISHING
        return default

    lowered = str(label).lower()
    if "phish" in lowered:
        return ThreatType.PHISHING
    if "spam" in lowered:
        return ThreatType.SPAM
    if any(s in lowered for s in _MALWARE_SUBSTRINGS):
        return ThreatType.MALWARE
    tokens = set(_TOKEN_SPLIT.split(lowered))
    if tokens.intersection(_MALWARE_TOKENS):
        return ThreatType.MALWARE
    return default


class Classifier:
    """Per-source confidence blending and threat-type mapping.

    Args:
        source_reputation: Overrides merged on top of the default
            reputation table (``{"openphish": 95}``).
    """

    def __init__(self, source_reputation: Optional[Mapping[str, int]] = None):
        self.source_reputation: Dict[str, int] = dict(DEFAULT_SOURCE_REPUTATION)
        if source_reputation:
            self.source_reputation.update(source_reputation)

    def reputation(self, source: str) -> int:
        return self.source_reputation.get(source, UNKNOWN_SOURCE_REPUTATION)

    def default_threat_type(self, source: str) -> ThreatType:
        return DEFAULT_THREAT_TYPE_BY_SOURCE.get(source, ThreatType.OTHER)

    def classify(self, raw: RawThreat, source: Optional[str] = None) -> Classification:
        source = source or raw.source
        text = primary_value(raw)

        reported = raw.confidence if raw.confidence is not None else DEFAULT_REPORTED_CONFIDENCE
        reported = max(0, min(100, int(reported)))

        confidence = round(
            REPORTED_WEIGHT * reported + REPUTATION_WEIGHT * self.reputation(source)
        )
        if has_phishing_keyword(text):
            confidence += KEYWORD_BOOST
        confidence = max(0, min(100, confidence))

        return Classification(
            confidence=confidence,
            threat_type=map_threat_label(
                raw.threat_type, text, self.default_threat_type(source)
            ),
        )
