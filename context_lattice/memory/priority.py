"""
Priority scoring for eviction ordering.

Score = weighted sum of five sub-scores, each normalized to [0, 1]:
- recency: exponential decay over a configurable half-life
- frequency: how much the entry's topic recurs elsewhere in the session
- importance: external/LLM rating, or keyword and metadata heuristics
- user_interaction: user turns over assistant/system turns
- sentiment: emotional salience (keywords, exclamations, shouting)

Scores are only meaningful within one session's ranking and are used
only to pick eviction victims (lowest first).
"""

import asyncio
import logging
import re
from collections import Counter
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .models import ContextMessage, PriorityWeights, Role

logger = logging.getLogger(__name__)

HIGH_IMPORTANCE_KEYWORDS = [
    'important', 'remember', 'preference', 'prefer', 'name', 'goal',
    'objective', 'decided', 'decision', 'agreed', 'deadline',
]
MEDIUM_IMPORTANCE_KEYWORDS = ['like', 'want', 'need', 'should', 'must']
IMPORTANT_METADATA_TYPES = {'summary', 'fact', 'preference', 'decision'}

EMOTION_KEYWORDS = [
    'love', 'hate', 'angry', 'furious', 'upset', 'happy', 'excited',
    'thrilled', 'worried', 'afraid', 'scared', 'sad', 'frustrated',
    'disappointed', 'grateful', 'amazing', 'terrible', 'awful', 'urgent',
]

_WORD_RE = re.compile(r"[a-z0-9']+")


def _terms(text: str) -> List[str]:
    return [w for w in _WORD_RE.findall(text.lower()) if len(w) > 3]


@dataclass
class PriorityBreakdown:
    """Normalized sub-scores for one entry"""
    recency: float
    frequency: float
    importance: float
    user_interaction: float
    sentiment: float

    def weighted(self, weights: PriorityWeights) -> float:
        return (
            weights.recency * self.recency
            + weights.frequency * self.frequency
            + weights.importance * self.importance
            + weights.user_interaction * self.user_interaction
            + weights.sentiment * self.sentiment
        )


class PriorityScorer:
    """
    Weighted multi-factor importance score for context entries.

    Args:
        weights: PriorityWeights for the session
        half_life_hours: Age at which the recency sub-score halves
        embedder: Optional text -> vector callable used for frequency similarity
        llm: Optional LLMProvider used by judge_importance()
    """

    ROLE_SCORES = {
        Role.USER: 1.0,
        Role.ASSISTANT: 0.5,
        Role.SYSTEM: 0.3,
    }

    def __init__(
        self,
        weights: Optional[PriorityWeights] = None,
        half_life_hours: float = 12.0,
        embedder: Optional[Callable[[str], Sequence[float]]] = None,
        llm=None,
        llm_timeout_seconds: float = 15.0,
    ):
        self.weights = weights or PriorityWeights()
        self.half_life_hours = half_life_hours
        self.embedder = embedder
        self.llm = llm
        self.llm_timeout_seconds = llm_timeout_seconds

    # ------------------------------------------------------------------
    # Sub-scores
    # ------------------------------------------------------------------

    def recency_score(self, entry: ContextMessage, now: datetime) -> float:
        age_hours = max(0.0, (now - entry.timestamp).total_seconds() / 3600)
        if self.half_life_hours <= 0:
            return 1.0 if age_hours == 0 else 0.0
        return float(0.5 ** (age_hours / self.half_life_hours))

    def frequency_scores(self, corpus: Sequence[ContextMessage]) -> List[float]:
        """
        Mean cosine similarity of each entry to every other entry.

        Bag-of-words vectors by default; embeddings when an embedder is set.
        """
        n = len(corpus)
        if n < 2:
            return [0.0] * n

        if self.embedder is not None:
            matrix = np.array([np.asarray(self.embedder(e.content), dtype=float) for e in corpus])
        else:
            vocabulary: Dict[str, int] = {}
            counts = [Counter(_terms(e.content)) for e in corpus]
            for counter in counts:
                for term in counter:
                    vocabulary.setdefault(term, len(vocabulary))
            if not vocabulary:
                return [0.0] * n
            matrix = np.zeros((n, len(vocabulary)))
            for row, counter in enumerate(counts):
                for term, count in counter.items():
                    matrix[row, vocabulary[term]] = count

        norms = np.linalg.norm(matrix, axis=1)
        norms[norms == 0] = 1.0
        unit = matrix / norms[:, None]
        similarity = np.clip(unit @ unit.T, 0.0, 1.0)
        np.fill_diagonal(similarity, 0.0)
        return [float(v) for v in similarity.sum(axis=1) / (n - 1)]

    def keyword_importance(self, entry: ContextMessage) -> float:
        content = entry.content.lower()
        score = 0.3

        for keyword in HIGH_IMPORTANCE_KEYWORDS:
            if keyword in content:
                score += 0.2
        for keyword in MEDIUM_IMPORTANCE_KEYWORDS:
            if keyword in content:
                score += 0.1

        if entry.metadata.get("type") in IMPORTANT_METADATA_TYPES:
            score += 0.3

        return min(score, 1.0)

    def importance_score(self, entry: ContextMessage) -> float:
        rating = entry.metadata.get("importance")
        if isinstance(rating, (int, float)) and not isinstance(rating, bool):
            return float(min(max(rating, 0.0), 1.0))
        return self.keyword_importance(entry)

    def user_interaction_score(self, entry: ContextMessage) -> float:
        return self.ROLE_SCORES.get(entry.role, 0.5)

    def sentiment_score(self, entry: ContextMessage) -> float:
        content = entry.content
        lowered = content.lower()

        emotion_hits = sum(1 for word in EMOTION_KEYWORDS if word in lowered)
        exclamations = content.count('!')
        shouting = sum(1 for word in content.split() if len(word) > 2 and word.isupper())

        intensity = 0.25 * emotion_hits + 0.1 * min(exclamations, 5) + 0.1 * min(shouting, 5)
        return min(intensity, 1.0)

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def breakdown(
        self,
        entry: ContextMessage,
        now: Optional[datetime] = None,
        corpus: Optional[Sequence[ContextMessage]] = None,
        frequency: Optional[float] = None,
    ) -> PriorityBreakdown:
        now = now or datetime.now()
        if frequency is None:
            frequency = 0.0
            if corpus:
                pool = list(corpus)
                if not any(item is entry for item in pool):
                    pool.append(entry)
                scores = self.frequency_scores(pool)
                frequency = next(s for item, s in zip(pool, scores) if item is entry)

        return PriorityBreakdown(
            recency=self.recency_score(entry, now),
            frequency=frequency,
            importance=self.importance_score(entry),
            user_interaction=self.user_interaction_score(entry),
            sentiment=self.sentiment_score(entry),
        )

    def score(
        self,
        entry: ContextMessage,
        now: Optional[datetime] = None,
        corpus: Optional[Sequence[ContextMessage]] = None,
    ) -> float:
        return self.breakdown(entry, now, corpus).weighted(self.weights)

    def rank(
        self,
        entries: Sequence[ContextMessage],
        now: Optional[datetime] = None,
        corpus: Optional[Sequence[ContextMessage]] = None,
    ) -> List[Tuple[float, ContextMessage]]:
        """
        Rank entries lowest score first.

        Ties: older timestamp first, then insertion order.
        `corpus` (defaults to `entries`) is the session content used for frequency.
        """
        now = now or datetime.now()
        pool = list(corpus) if corpus is not None else list(entries)
        for entry in entries:
            if not any(item is entry for item in pool):
                pool.append(entry)

        frequencies = self.frequency_scores(pool)
        by_identity = {id(item): freq for item, freq in zip(pool, frequencies)}

        scored = []
        for index, entry in enumerate(entries):
            value = self.breakdown(entry, now, frequency=by_identity[id(entry)]).weighted(self.weights)
            scored.append((value, entry.timestamp, index, entry))

        scored.sort(key=lambda item: (item[0], item[1], item[2]))
        logger.debug(f"Ranked {len(scored)} entries for eviction")
        return [(value, entry) for value, _, _, entry in scored]

    # ------------------------------------------------------------------
    # LLM judge
    # ------------------------------------------------------------------

    async def judge_importance(self, entry: ContextMessage) -> float:
        """
        Ask the LLM for a 0..1 importance rating.
        Falls back to the keyword heuristic when unavailable or malformed.
        """
        if self.llm is None:
            return self.keyword_importance(entry)

        prompt = (
            "Rate the importance of this conversation message for future context "
            "on a scale of 0.0 to 1.0. Preferences, facts, names and decisions rate high; "
            "pleasantries rate low.\n\n"
            f"Message: \"{entry.content}\"\n\nRespond with just a number between 0.0 and 1.0."
        )
        try:
            response = await asyncio.wait_for(
                self.llm.complete(
                    [
                        {"role": "system", "content": "You rate message importance for conversation memory."},
                        {"role": "user", "content": prompt},
                    ],
                    temperature=0.1,
                    max_tokens=10,
                ),
                timeout=self.llm_timeout_seconds,
            )
            score = float((response or "").strip())
        except Exception as e:
            logger.warning(f"LLM importance judgment failed, using keyword analysis: {e}")
            return self.keyword_importance(entry)

        if not 0.0 <= score <= 1.0:
            logger.warning(f"Invalid importance score '{score}', using keyword analysis")
            return self.keyword_importance(entry)
        return score

    def weights_dict(self) -> Dict[str, float]:
        return asdict(self.weights)
