"""Keyword/synonym scoring of insight suggestions against an utterance.

Objects ship a handful of suggested query shapes ("Open pipeline", "Closing
this quarter"). The synthesizer borrows the fields and filters of the best
suggestion when it scores at least ``AgentConfig.suggestion_min_score``.

Scoring per suggestion:
- exact title match: +100, title contains the utterance: +50
- per utterance word (longer than two characters):
  word in title +10, word in description +5,
  synonym group hit: +8 if the title contains the group key, +6 per synonym in
  the title, partial word overlap (both longer than three characters): +3
- more than one matching word: +5 per matching word
"""

import re
from dataclasses import dataclass

from orgchat.agents.contracts import QuerySuggestion


SYNONYMS: dict[str, tuple[str, ...]] = {
    "recent": ("last", "latest", "new", "current", "30", "days"),
    "pipeline": ("open", "active", "in progress", "working", "current"),
    "closing": ("close", "finish", "end", "quarter", "month"),
    "won": ("closed won", "successful", "completed", "victory"),
    "lost": ("closed lost", "failed", "unsuccessful"),
    "likelihood": ("probability", "chance", "score", "rating"),
    "high": ("top", "best", "maximum", "great", "excellent"),
    "low": ("bottom", "worst", "minimum", "poor"),
    "deals": ("opportunities", "opps", "sales", "prospects"),
    "this quarter": ("current quarter", "q1", "q2", "q3", "q4", "quarter"),
    "this month": ("current month", "monthly"),
    "this year": ("current year", "yearly", "annual"),
    "my": ("mine", "owner", "territory", "assigned to me", "owned by"),
    "rep": ("salesperson", "owner", "sales rep", "account executive", "ae"),
    "territory": ("region", "area", "book of business", "portfolio", "patch"),
    "performance": ("results", "metrics", "numbers", "stats", "kpis"),
    "team": ("group", "org", "company", "department", "everyone"),
    "at risk": ("stalled", "stuck", "overdue", "need attention", "delayed"),
    "urgent": ("due", "deadline", "asap", "priority", "immediate"),
    "proposals": ("bids", "quotes", "estimates", "rfp", "submissions"),
    "win rate": ("success rate", "close rate", "conversion", "percentage won"),
    "follow up": ("touch base", "check in", "contact", "reach out", "activity"),
}

MAX_RANKED = 5


@dataclass(frozen=True)
class ScoredSuggestion:
    suggestion: QuerySuggestion
    score: int
    matching_words: tuple[str, ...] = ()


def _words(text: str) -> list[str]:
    return [w for w in re.split(r"\s+", text.lower().strip()) if w]


def _groups_for(word: str) -> list[tuple[str, tuple[str, ...]]]:
    return [(key, syns) for key, syns in SYNONYMS.items() if key == word or word in syns]


def score_suggestion(text: str, suggestion: QuerySuggestion) -> ScoredSuggestion:
    """Score one suggestion against the utterance text."""
    query = text.lower().strip()
    title = suggestion.title.lower()
    title_words = _words(title)
    desc_words = _words(suggestion.description)
    query_words = [w.strip("?!.,") for w in _words(query)]
    query_words = [w for w in query_words if len(w) > 2]

    score = 0
    if query and title == query:
        score += 100
    if query and query in title:
        score += 50

    for word in query_words:
        if word in title_words:
            score += 10
        if word in desc_words:
            score += 5
        for key, syns in _groups_for(word):
            if key in title:
                score += 8
            score += 6 * sum(1 for syn in syns if syn in title)
        if len(word) > 3:
            for title_word in title_words:
                if len(title_word) > 3 and (word in title_word or title_word in word):
                    score += 3

    matching = tuple(
        word
        for word in query_words
        if word in title or any(key in title for key, _ in _groups_for(word))
    )
    if len(matching) > 1:
        score += 5 * len(matching)

    return ScoredSuggestion(suggestion=suggestion, score=score, matching_words=matching)


def rank_suggestions(text: str, suggestions: tuple[QuerySuggestion, ...] | list[QuerySuggestion]) -> list[ScoredSuggestion]:
    """Rank suggestions by score, best first.

    Only positive scores are kept. Ties keep the declared suggestion order, so
    ranking is deterministic.

    Args:
        text: Normalized utterance
        suggestions: Candidate suggestions from insight metadata

    Returns:
        Up to five scored suggestions
    """
    scored = [score_suggestion(text, s) for s in suggestions]
    ranked = sorted((s for s in scored if s.score > 0), key=lambda s: -s.score)
    return ranked[:MAX_RANKED]


def best_suggestion(
    text: str,
    suggestions: tuple[QuerySuggestion, ...] | list[QuerySuggestion],
    min_score: int = 20,
) -> ScoredSuggestion | None:
    """Return the top suggestion if it clears ``min_score``."""
    ranked = rank_suggestions(text, suggestions)
    if ranked and ranked[0].score >= min_score:
        return ranked[0]
    return None
