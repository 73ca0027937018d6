# Intel Module - Record Normalizer
#
# Maps a provider's RawThreat onto the canonical Indicator schema.
#
#   primary value        = first non-empty of indicator, url, domain
#   normalized_indicator = lower(trim(primary value))
#
# No further canonicalisation is applied: a URL key stays a URL key and
# never collapses to its host.  Confidence and threat type are filled in
# by the classifier afterwards.

import ipaddress
import re
from typing import Optional

from .exceptions import NormalizationFailure
from .models import Indicator, IndicatorType, RawThreat, ThreatType, merge_tags

_HEX_RE = re.compile(r"^[0-9a-f]+$")
_HASH_LENGTHS = (32, 40, 64)  # md5, sha1, sha256

_DOMAIN_RE = re.compile(
    r"^(?=.{1,253}$)"
    r"(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+"
    r"[a-z0-9-]{2,63}\.?$"
)


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def primary_value(raw: RawThreat) -> Optional[str]:
    """First non-empty of ``indicator``, ``url``, ``domain`` (trimmed)."""
    for candidate in (raw.indicator, raw.url, raw.domain):
        value = _clean(candidate)
        if value:
            return value
    return None


def is_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value.strip("[]"))
    except ValueError:
        return False
    return True


def infer_indicator_type(value: str) -> IndicatorType:
    """Deterministic, total type inference for a normalized value.

    ``://`` -> url, 32/40/64 hex chars -> hash, IP literal -> ip,
    domain grammar -> domain, anything else -> domain.
    """
    value = value.strip().lower()
    if "://" in value:
        return IndicatorType.URL
    if len(value) in _HASH_LENGTHS and _HEX_RE.match(value):
        return IndicatorType.HASH
    if is_ip(value):
        return IndicatorType.IP
    if _DOMAIN_RE.match(value):
        return IndicatorType.DOMAIN
    return IndicatorType.DOMAIN


def normalize(raw: RawThreat) -> Indicator:
    """Map ``raw`` to an Indicator keyed by its normalized primary value.

    Raises:
        NormalizationFailure: when indicator, url and domain are all empty.
    """
    value = primary_value(raw)
    if value is None:
        raise NormalizationFailure("no-indicator-value", source=raw.source)

    normalized = value.lower()
    ind_type = raw.indicator_type or infer_indicator_type(normalized)
    if not isinstance(ind_type, IndicatorType):
        try:
            ind_type = IndicatorType(str(ind_type).lower())
        except ValueError:
            ind_type = infer_indicator_type(normalized)

    confidence = raw.confidence if raw.confidence is not None else 50
    confidence = max(0, min(100, int(confidence)))

    return Indicator(
        indicator=value,
        normalized_indicator=normalized,
        indicator_type=ind_type,
        source=raw.source,
        threat_type=ThreatType.OTHER,
        confidence=confidence,
        is_active=True,
        tags=merge_tags([], raw.tags or []),
        description=_clean(raw.description),
        url=_clean(raw.url),
        domain=_clean(raw.domain),
        malware_family=_clean(raw.malware_family),
        campaign_name=_clean(raw.campaign_name),
        reported_first_seen=_clean(raw.reported_first_seen),
        raw_data=dict(raw.raw_data) if raw.raw_data else None,
    )
