"""
Rule-based helpers for the enrichment pipeline.

- ``has_relevant_keywords``: cheap substring pre-filter deciding whether a work
  description is worth an LLM keyword call
- ``extract_work_description_heuristic``: picks the most work-like line item
  description without calling an LLM
- ``match_vocabulary``: keyword fallback used by the heuristic strategy
"""

from typing import Any, Iterable, Optional

# Fixed electrical/HVAC allowlist; matching is plain lowercase substring search.
RELEVANT_TERMS = (
    "heat pump",
    "ac",
    "air con",
    "hvac",
    "air conditioning",
    "switchboard",
    "panel",
    "repair",
    "install",
    "replace",
    "service",
    "maintenance",
    "diagnosis",
    "fault",
    "broken",
    "not working",
)

WORK_KEYWORDS = (
    "install",
    "replace",
    "remove",
    "repair",
    "fix",
    "test",
    "commission",
    "arrived",
    "went through",
    "access",
    "wiring",
    "electrical",
    "power",
    "connect",
    "disconnect",
    "mount",
    "secure",
    "check",
    "inspect",
    "troubleshoot",
    "diagnose",
    "complete",
    "finish",
    "service",
    "maintenance",
)

SKIP_KEYWORDS = (
    "thank you",
    "opportunity",
    "contact",
    "office",
    "concerns",
    "drive",
    "road",
    "street",
    "avenue",
    "auckland",
    "wellington",
    "christchurch",
    "hamilton",
    "tauranga",
    "charge",
    "van charge",
    "misc",
    "screws",
    "wipes",
    "tape",
    "ties",
    "silicon",
)

TECHNICAL_TERMS = (
    "cooktop",
    "oven",
    "wiring",
    "electrical",
    "circuit",
    "switch",
    "outlet",
    "heat pump",
    "air con",
    "switchboard",
    "panel",
    "mcb",
    "rcbo",
    "smart vent",
)

ADDRESS_TERMS = ("drive", "road", "street", "avenue")

MAX_KEYWORDS = 8


def has_relevant_keywords(text: str, terms: Iterable[str] = RELEVANT_TERMS) -> bool:
    if not text:
        return False
    lowered = text.lower()
    return any(term in lowered for term in terms)


def match_vocabulary(text: str) -> list[str]:
    """Multi-character allowlist terms found in ``text``, in vocabulary order."""
    if not text:
        return []
    lowered = text.lower()
    # "ac" is too short to be a meaningful keyword on its own
    matches = [t for t in RELEVANT_TERMS if len(t) > 2 and t in lowered]
    return matches[:MAX_KEYWORDS]


def clean_keywords(raw: Any) -> list[str]:
    """Lowercase, trim, drop blanks and cap at ``MAX_KEYWORDS``."""
    if not isinstance(raw, list):
        return []
    cleaned = []
    for keyword in raw[:MAX_KEYWORDS]:
        if not isinstance(keyword, str):
            continue
        keyword = keyword.strip().lower()
        if keyword:
            cleaned.append(keyword)
    return cleaned


def line_item_descriptions(line_items: list[dict], min_length: int = 5) -> list[str]:
    """Non-trivial ``Description`` values of invoice line items."""
    descriptions = []
    for item in line_items or []:
        if not isinstance(item, dict):
            continue
        description = item.get("Description")
        if isinstance(description, str) and len(description.strip()) > min_length:
            descriptions.append(description.strip())
    return descriptions


def _count(text: str, terms: Iterable[str]) -> int:
    return sum(1 for term in terms if term in text)


def _score(item: dict) -> Optional[float]:
    """Score one line item, or None if it must not be chosen."""
    description = item.get("Description")
    if not isinstance(description, str):
        return None
    description = description.strip()
    if len(description) < 15:
        return None

    lowered = description.lower()
    has_amount = bool(item.get("LineAmount") or item.get("UnitAmount"))
    work_matches = _count(lowered, WORK_KEYWORDS)

    # Generic charged items: "Van charge", "Misc consumables"
    if has_amount and _count(lowered, SKIP_KEYWORDS) and len(description) < 50:
        return None
    if _count(lowered, ADDRESS_TERMS) and not work_matches:
        return None

    score = work_matches * 10 + min(len(description) / 10, 25)
    if has_amount and not work_matches:
        score -= 10
    score += _count(lowered, TECHNICAL_TERMS) * 8
    return score


def extract_work_description_heuristic(line_items: list[dict]) -> str:
    """
    Choose the line item description that best describes the work done.

    Descriptions are scored by work verbs, technical terms and length.
    Addresses and short charged items are ignored. When nothing scores at
    least 5, the longest description without skip words (over 20 characters)
    is used instead; the result may be empty.
    """
    items = [item for item in (line_items or []) if isinstance(item, dict)]
    best_description = ""
    best_score = -1.0

    for item in items:
        score = _score(item)
        if score is not None and score > best_score:
            best_score = score
            best_description = item["Description"].strip()

    if best_description and best_score >= 5:
        return best_description

    longest = ""
    for item in items:
        description = item.get("Description")
        if not isinstance(description, str):
            continue
        description = description.strip()
        if _count(description.lower(), SKIP_KEYWORDS):
            continue
        if len(description) > 20 and len(description) > len(longest):
            longest = description
    return longest
