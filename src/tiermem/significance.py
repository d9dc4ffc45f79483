"""
Heuristic turn significance scoring and event detection.

Callers use this to produce the ``significance_score`` and the extracted events
that ingestion consumes. Scores are on a 0-10 scale.
"""
from __future__ import annotations

import re
from typing import Sequence

from .config import SIGNIFICANCE_THRESHOLD
from .models import EventType, ExtractedEvent
from .tokenization import count_phrase_hits, tokenize_for_matching

EMOTIONAL_KEYWORDS = (
    "love", "hate", "afraid", "scared", "angry", "furious", "sad", "happy", "excited",
    "sorry", "hurt", "betrayed", "proud", "ashamed", "lonely", "worried",
)
RELATIONSHIP_KEYWORDS = (
    "friend", "enemy", "rival", "partner", "married", "sister", "brother", "mother",
    "father", "colleague", "trust", "betrayed", "ally",
)
FACT_CUES = re.compile(
    r"\b(?:is|are|was|feels|lives in|works as|likes|loves|hates|prefers)\b",
    re.IGNORECASE,
)
_NAME_RE = re.compile(r"\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*\b")
_SENTENCE_RE = re.compile(r"[^.!?]+[.!?]*")
_NAME_STOPWORDS = {
    "I", "The", "A", "An", "He", "She", "They", "We", "You", "It", "This", "That",
    "My", "Our", "Your", "His", "Her", "Their", "But", "And", "Or", "So", "Then",
    "Yes", "No", "Oh", "Well", "Hello", "Hi", "Thanks", "Today", "Yesterday",
}


class SignificanceScorer:
    def __init__(self, threshold: float = SIGNIFICANCE_THRESHOLD):
        self.threshold = float(threshold)

    def extract_named_entities(self, text: str) -> list[str]:
        names: list[str] = []
        for match in _NAME_RE.finditer(str(text or "")):
            words = [w for w in match.group(0).split() if w not in _NAME_STOPWORDS]
            if words:
                names.append(" ".join(words))
        return list(dict.fromkeys(names))

    def score_turn(self, text: str, context: Sequence[str] = ()) -> float:
        """Scores how memorable a turn is from 0 (filler) to 10 (pivotal)."""
        tokens = tokenize_for_matching(text)
        if not tokens:
            return 0.0
        entities = self.extract_named_entities(text)
        punctuation = str(text).count("!") + str(text).count("?")

        score = 1.0
        score += min(3.0, float(count_phrase_hits(tokens, EMOTIONAL_KEYWORDS)))
        score += min(2.0, float(count_phrase_hits(tokens, RELATIONSHIP_KEYWORDS)))
        score += min(2.0, len(tokens) / 40.0)
        score += min(1.0, punctuation * 0.25)
        score += min(2.0, len(entities) * 0.5)
        if context and entities:
            recent = " ".join(context[-5:])
            if any(entity in recent for entity in entities):
                score += 0.5
        return round(min(10.0, score), 3)

    def is_significant(self, score: float) -> bool:
        return score >= self.threshold

    def detect_events(self, text: str) -> list[ExtractedEvent]:
        """Splits a turn into sentences and classifies each one as at most one event."""
        events: list[ExtractedEvent] = []
        for raw_sentence in _SENTENCE_RE.findall(str(text or "")):
            sentence = raw_sentence.strip()
            if not sentence:
                continue
            tokens = tokenize_for_matching(sentence)
            entities = self.extract_named_entities(sentence)
            relationship_hits = count_phrase_hits(tokens, RELATIONSHIP_KEYWORDS)
            emotional_hits = count_phrase_hits(tokens, EMOTIONAL_KEYWORDS)

            if relationship_hits and len(entities) >= 2:
                events.append(
                    ExtractedEvent(
                        type=EventType.RELATIONSHIP_CHANGE,
                        entities_involved=entities[:2],
                        description=sentence,
                        confidence=min(0.9, 0.5 + 0.1 * relationship_hits),
                    )
                )
            elif entities and FACT_CUES.search(sentence):
                events.append(
                    ExtractedEvent(
                        type=EventType.FACT_ASSERTION,
                        entities_involved=entities[:1],
                        description=sentence,
                        confidence=0.6,
                    )
                )
            elif emotional_hits >= 2 or (emotional_hits and "!" in sentence):
                events.append(
                    ExtractedEvent(
                        type=EventType.EMOTIONAL_PEAK,
                        entities_involved=entities,
                        description=sentence,
                        confidence=min(0.9, 0.4 + 0.15 * emotional_hits),
                    )
                )
        return events
