"""Release-authorization (SOR) request and physician name detection."""

from __future__ import annotations

import logging
import re
from typing import Dict, Iterable, List, Optional, Tuple

from .config import SignalConfig
from .models import Conversation, SignalResult

logger = logging.getLogger("scannerlink")

WORD_RE = re.compile(r"[a-z0-9']+")
NAME_RE = re.compile(r"^[A-Z][a-zA-Z'\-]{1,19}$")
TRAILING_PUNCT = ".,;:!?"

NAME_STOP_WORDS = frozenset(
    {
        "and", "or", "but", "the", "a", "an", "in", "on", "at", "to", "for",
        "with", "by", "from", "is", "are", "was", "were", "be", "been", "being",
        "have", "has", "had", "will", "would", "could", "should", "may", "might",
        "this", "that", "these", "those", "here", "there", "where", "when", "how",
        "what", "who", "why", "we", "need", "requesting", "please", "can", "you",
        "i", "okay", "ok", "copy", "thanks", "thank", "yes", "no", "speaking",
        "medic", "ambulance", "engine", "squad", "truck", "rescue", "unit",
        "hospital", "emergency", "er", "ed", "dr", "doctor", "physician",
    }
)

# Ordered; the first phrasing that yields a usable name wins.
NAME_PHRASES = [
    re.compile(
        r"\b(?:this is|speaking is|i am|my name is)\s+(?:dr\.?|doctor|physician)\s+"
        r"([a-z'\-]+(?:\s+[a-z'\-]+)?)",
        re.IGNORECASE,
    ),
    re.compile(
        r"\b(?:dr\.?|doctor|physician)\s+([a-z'\-]+(?:\s+[a-z'\-]+)?)\s+"
        r"(?:speaking|here|available)\b",
        re.IGNORECASE,
    ),
]


def _phrase_pattern(phrase: str) -> re.Pattern:
    return re.compile(rf"(?<![a-z0-9]){re.escape(phrase)}(?![a-z0-9])")


def _titled_name(captured: str) -> Optional[str]:
    names = []
    for word in captured.split():
        if word.lower() in NAME_STOP_WORDS:
            break
        word = word.title()
        if not NAME_RE.match(word):
            break
        names.append(word)
    return " ".join(names) or None


def bounded_edit_distance(a: str, b: str, bound: int) -> Optional[int]:
    """Levenshtein distance between a and b, or None once it exceeds bound."""
    if abs(len(a) - len(b)) > bound:
        return None
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i] + [0] * len(b)
        for j, cb in enumerate(b, start=1):
            current[j] = min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            )
        if min(current) > bound:
            return None
        previous = current
    distance = previous[-1]
    return distance if distance <= bound else None


class SignalDetector:
    """Score a conversation's transcript text for an SOR request.

    ``evaluate`` is pure: the result depends only on the transcripts present
    on the conversation and the detector configuration.
    """

    def __init__(self, config: Optional[SignalConfig] = None) -> None:
        self.config = config or SignalConfig()
        cfg = self.config
        self._markers = frozenset(m.lower().strip() for m in cfg.non_speech_markers)
        self._courtesy: List[re.Pattern] = [
            _phrase_pattern(p.lower())
            for p in sorted(cfg.courtesy_phrases, key=len, reverse=True)
        ]
        self._requests: List[Tuple[str, re.Pattern]] = [
            (p.lower(), _phrase_pattern(p.lower())) for p in cfg.request_phrases
        ]
        self._misspellings: List[Tuple[str, re.Pattern]] = [
            (p.lower(), _phrase_pattern(p.lower())) for p in cfg.acronym_misspellings
        ]
        self._fuzzy_phrases: List[List[str]] = [WORD_RE.findall(p.lower()) for p in cfg.fuzzy_phrases]
        self._titles: List[List[str]] = sorted(
            (t.lower().strip(TRAILING_PUNCT).split() for t in cfg.physician_titles),
            key=len,
            reverse=True,
        )
        self._context: List[re.Pattern] = [_phrase_pattern(t.lower()) for t in cfg.context_terms]

    def evaluate(self, conversation: Conversation) -> SignalResult:
        return self.evaluate_texts(conversation.transcript_texts(), conversation.id)

    def evaluate_text(self, text: str, conversation_id: str = "") -> SignalResult:
        return self.evaluate_texts([text], conversation_id)

    def evaluate_many(self, conversations: Iterable[Conversation]) -> Dict[str, SignalResult]:
        results: Dict[str, SignalResult] = {}
        for conv in conversations:
            try:
                results[conv.id] = self.evaluate(conv)
            except Exception as exc:
                logger.warning("Signal evaluation failed for %s: %s", conv.id, exc)
        return results

    def evaluate_texts(self, texts: Iterable[str], conversation_id: str = "") -> SignalResult:
        cfg = self.config
        spoken = [t for t in texts if t and t.strip().lower() not in self._markers]
        raw = " ".join(spoken)
        lowered = " ".join(raw.lower().split())
        if not lowered or lowered in self._markers:
            return self._rejected(conversation_id)

        stripped = lowered
        for pattern in self._courtesy:
            stripped = pattern.sub(" ", stripped)
        if not WORD_RE.search(stripped):
            return self._rejected(conversation_id)

        matched, kind = self._match_request(stripped)
        is_requested = matched is not None
        confidence = cfg.base_confidence if is_requested else 0.0

        name = self.extract_physician_name(raw)
        if name:
            confidence += cfg.name_with_request_bonus if is_requested else cfg.name_only_bonus

        if is_requested:
            hits = sum(1 for pattern in self._context if pattern.search(stripped))
            confidence += min(hits * cfg.context_bonus_step, cfg.context_bonus_max)

        confidence = round(min(max(confidence, 0.0), 1.0), 4)
        return SignalResult(
            conversation_id=conversation_id,
            is_requested=is_requested,
            confidence=confidence,
            physician_name=name,
            matched_phrase=matched,
            match_kind=kind,
            level=self._level(confidence),
        )

    def _rejected(self, conversation_id: str) -> SignalResult:
        return SignalResult(conversation_id=conversation_id, is_requested=False, confidence=0.0)

    def _level(self, confidence: float) -> str:
        if confidence >= self.config.high_threshold:
            return "high"
        if confidence >= self.config.low_threshold:
            return "low"
        return "none"

    def _match_request(self, text: str) -> Tuple[Optional[str], Optional[str]]:
        for phrase, pattern in self._requests:
            if pattern.search(text):
                return phrase, "exact"
        for phrase, pattern in self._misspellings:
            if pattern.search(text):
                return phrase, "fuzzy"
        words = WORD_RE.findall(text)
        for phrase_words in self._fuzzy_phrases:
            target = " ".join(phrase_words)
            size = len(phrase_words)
            bound = self._edit_bound(target)
            for start in range(0, len(words) - size + 1):
                window = " ".join(words[start : start + size])
                if window != target and sorted(window) == sorted(target):
                    continue
                if bounded_edit_distance(window, target, bound) is not None:
                    return target, "fuzzy"
        return None, None

    def _edit_bound(self, phrase: str) -> int:
        if len(phrase) < self.config.fuzzy_long_length:
            return min(1, self.config.max_edit_distance)
        return self.config.max_edit_distance

    def extract_physician_name(self, text: str) -> Optional[str]:
        tokens = text.split()
        lowered = [t.lower().strip(TRAILING_PUNCT) for t in tokens]
        for idx in range(len(tokens)):
            size = self._title_at(lowered, idx)
            if not size:
                continue
            names: List[str] = []
            for follower in tokens[idx + size : idx + size + 3]:
                word = follower.strip(TRAILING_PUNCT + "\"'()")
                if not word or word.lower() in NAME_STOP_WORDS or not NAME_RE.match(word):
                    break
                names.append(word)
                if follower[-1] in TRAILING_PUNCT:
                    break
            if names:
                return " ".join(names)

        # Spoken phrasings, for lower-cased transcripts.
        for pattern in NAME_PHRASES:
            match = pattern.search(text)
            if match:
                name = _titled_name(match.group(1))
                if name:
                    return name
        return None

    def _title_at(self, lowered: List[str], idx: int) -> int:
        for title in self._titles:
            if lowered[idx : idx + len(title)] == title:
                return len(title)
        return 0
