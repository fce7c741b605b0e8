"""
Deterministic text reduction used when the LLM is unavailable.

Pure functions, no I/O:
- extractive_summary: position/length scored sentence selection
- keyword_digest: frequency keywords + sentences that mention them
- dominant_topic: most frequent long word of a text
"""

import re
from collections import Counter
from typing import List, Tuple

from ..tokens import TokenEstimator

SENTENCE_SPLIT = re.compile(r'[.!?]+')
WORD_RE = re.compile(r"[A-Za-z0-9']+")

# Sentence score = POSITION_WEIGHT * (1 - i/n) + LENGTH_WEIGHT * min(len/100, 1)
POSITION_WEIGHT = 0.3
LENGTH_WEIGHT = 0.7
TOKENS_PER_SENTENCE = 20

KEYWORD_FALLBACK_LOSS = 0.7
DEFAULT_TOPIC = "general"


def split_sentences(text: str) -> List[str]:
    return [s.strip() for s in SENTENCE_SPLIT.split(text or "") if s.strip()]


def extractive_summary(text: str, target_tokens: int) -> Tuple[str, float]:
    """
    Keep the top N sentences, N = max(1, target_tokens // 20), in original order.

    Returns:
        (summary, loss_estimate) where loss = 1 - N / sentence_count
    """
    sentences = split_sentences(text)
    keep = max(1, target_tokens // TOKENS_PER_SENTENCE)

    if len(sentences) <= keep:
        return (text or "").strip(), 0.0

    n = len(sentences)
    scored = []
    for index, sentence in enumerate(sentences):
        position = 1 - index / n
        length = min(len(sentence) / 100, 1.0)
        scored.append((POSITION_WEIGHT * position + LENGTH_WEIGHT * length, index))

    # Highest score first; earlier sentence wins a tie
    top = sorted(scored, key=lambda item: (-item[0], item[1]))[:keep]
    chosen = sorted(index for _, index in top)

    summary = ". ".join(sentences[i] for i in chosen) + "."
    return summary, 1 - keep / n


def top_keywords(text: str, limit: int, min_length: int = 4) -> List[str]:
    """Most frequent lowercase words of at least min_length characters."""
    words = [w.lower() for w in WORD_RE.findall(text or "") if len(w) >= min_length]
    return [word for word, _ in Counter(words).most_common(max(1, limit))]


def keyword_digest(text: str, target_tokens: int, estimator: TokenEstimator) -> Tuple[str, List[str]]:
    """
    Keep sentences containing any of the top target_tokens // 2 keywords
    until the next sentence would exceed the budget.

    Returns:
        (digest, keywords)
    """
    keywords = top_keywords(text, max(1, target_tokens // 2))
    if not keywords:
        return "", []

    keyword_set = set(keywords)
    kept: List[str] = []
    for sentence in split_sentences(text):
        sentence_words = {w.lower() for w in WORD_RE.findall(sentence)}
        if not sentence_words & keyword_set:
            continue
        candidate = ". ".join(kept + [sentence]) + "."
        if estimator.estimate(candidate) > target_tokens:
            break
        kept.append(sentence)

    if kept:
        return ". ".join(kept) + ".", keywords
    return "Key topics: " + ", ".join(keywords), keywords


def dominant_topic(text: str) -> str:
    """Most frequent word longer than 4 characters, or 'general'."""
    topics = top_keywords(text, 1, min_length=5)
    return topics[0] if topics else DEFAULT_TOPIC
