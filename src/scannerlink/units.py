"""Unit identifier extraction from radio traffic."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, List, Optional

NUMBER = r"\s*-?\s*(\d{1,3})\b"


@dataclass(frozen=True)
class UnitPattern:
    name: str
    regex: re.Pattern
    normalizer: Callable[[re.Match], str]


def _titled(label: str) -> Callable[[re.Match], str]:
    def _normalize(match: re.Match) -> str:
        return f"{label} {int(match.group(2))}"

    return _normalize


def _own_word(match: re.Match) -> str:
    return f"{match.group(1).title()} {int(match.group(2))}"


def _pattern(words: str) -> re.Pattern:
    return re.compile(rf"\b({words}){NUMBER}", re.IGNORECASE)


# Evaluated in order; the first pattern with a match wins.
UNIT_PATTERNS: List[UnitPattern] = [
    UnitPattern("medic", _pattern("medic"), _titled("Medic")),
    UnitPattern("ambulance", _pattern("ambulance"), _titled("Ambulance")),
    UnitPattern("ems", _pattern("ems"), _titled("EMS")),
    UnitPattern("engine", _pattern("engine"), _titled("Engine")),
    UnitPattern("squad", _pattern("squad"), _titled("Squad")),
    UnitPattern("truck", _pattern("truck"), _titled("Truck")),
    UnitPattern("rescue", _pattern("rescue"), _titled("Rescue")),
    UnitPattern("battalion", _pattern("battalion|chief"), _own_word),
    UnitPattern("unit", _pattern("unit"), _titled("Unit")),
]


def extract_unit(text: Optional[str], patterns: Optional[List[UnitPattern]] = None) -> Optional[str]:
    if not text:
        return None
    for pattern in patterns or UNIT_PATTERNS:
        match = pattern.regex.search(text)
        if match:
            return pattern.normalizer(match)
    return None


def same_unit(a: Optional[str], b: Optional[str]) -> bool:
    if not a or not b:
        return False
    return " ".join(a.lower().split()) == " ".join(b.lower().split())
