# hijackwatch/services/similarity.py
"""
Attribute-level similarity between two fingerprint observations
"""
import logging
from typing import Any, List, Mapping, Optional, Union

from hijackwatch.models.models import FingerprintAttributes, SIMILARITY_FIELDS

log = logging.getLogger(__name__)

Attributes = Union[FingerprintAttributes, Mapping[str, Any]]

# Equal weight per compared attribute
FIELD_WEIGHT = 1.0 / len(SIMILARITY_FIELDS)


def _get(attrs: Attributes, name: str) -> Any:
    if isinstance(attrs, FingerprintAttributes):
        return getattr(attrs, name)
    if hasattr(attrs, "keys") and name in attrs.keys():
        return attrs[name]
    return None

def _normalize(value: Any) -> Optional[str]:
    """Lower-cased, trimmed value; empty or missing collapses to None"""
    if value is None:
        return None
    text = str(value).strip().lower()
    return text or None


def compute_similarity(a: Attributes, b: Attributes) -> float:
    """
    Score agreement of OS, browser, screen resolution and timezone in [0, 1].

    Each attribute contributes 0.25 when both sides match after normalization,
    or when both sides are absent.
    One side absent is inconclusive and contributes nothing, as does a
    mismatch. No threshold is applied here.
    """
    score = 0.0
    for name in SIMILARITY_FIELDS:
        a_val = _normalize(_get(a, name))
        b_val = _normalize(_get(b, name))
        if a_val is None and b_val is None:
            score += FIELD_WEIGHT
        elif a_val is None or b_val is None:
            continue
        elif a_val == b_val:
            score += FIELD_WEIGHT
    return min(1.0, max(0.0, score))


def describe_differences(original: Attributes, new: Attributes) -> List[str]:
    """Human-readable change list, used as context for adjudication"""
    differences = []
    for name in SIMILARITY_FIELDS:
        o_val = _normalize(_get(original, name))
        n_val = _normalize(_get(new, name))
        if o_val is None and n_val is None:
            continue
        if o_val is None or n_val is None:
            differences.append(f"{name} unknown on one side: {_get(original, name)} -> {_get(new, name)}")
        elif o_val != n_val:
            differences.append(f"{name} changed: {_get(original, name)} -> {_get(new, name)}")
    return differences
