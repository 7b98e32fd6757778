"""
Category summary collaborators: the narrative writer used by resummarize jobs and the judges that
decide whether summaries alone answer a query.
"""

import json
import re
from typing import Optional, Sequence

from ..models.core import CategorySummary, MemoryRecord
from ..models.errors import CollaboratorUnavailable
from ..utils.bedrock_llm import BedrockLLM
from ..utils.json_utils import as_bool, as_float
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

SUMMARY_PROMPT = """You maintain a personal knowledge summary for one category of a user's memories.
Write a new, cohesive prose summary (2-4 sentences) that covers ALL of the listed memories.
- The memory list is the complete current state: drop anything from the current summary that is not supported by it
- Prefer the most recent information when memories disagree
- Do not invent details that are not in the memories
Write ONLY the new summary, no preamble."""

SUFFICIENCY_PROMPT = """Given a user query and the available context summaries, determine if the summaries provide ENOUGH
information to give a helpful response. Be conservative: if the query asks about specific people, dates or details not
in the summaries, mark it as insufficient.

Answer with JSON:
```json
{"sufficient": true, "confidence": 0.0, "reason": "brief explanation"}
```"""

_WORD = re.compile(r'[a-z0-9]+')
_STOPWORDS = frozenset({
    'a', 'an', 'and', 'are', 'about', 'at', 'be', 'did', 'do', 'does', 'for', 'from', 'has', 'have', 'how', 'i', 'in', 'is',
    'it', 'me', 'my', 'of', 'on', 'or', 'tell', 'that', 'the', 'their', 'to', 'was', 'what', 'when', 'where', 'who', 'why',
    'with', 'you', 'your'
})


def category_title(category: str) -> str:
    return category.replace('_', ' ').upper()


def format_members(records: Sequence[MemoryRecord]) -> str:
    return '\n'.join(f'- {record.subject_name} ({record.kind}): {record.content}' for record in records)


def query_terms(text: str) -> set:
    return {word for word in _WORD.findall((text or '').lower()) if word not in _STOPWORDS and len(word) > 2}


class BedrockSummaryWriter:
    """Rewrites category summaries with a Bedrock LLM."""

    def __init__(self, llm: BedrockLLM, max_tokens: int = 300):
        self.llm = llm
        self.max_tokens = max_tokens

    def write_summary(self, category: str, records: Sequence[MemoryRecord], previous: Optional[str] = None) -> str:
        """
        Rewrite (never append to) the summary of a category.

        Args:
            category: Category being summarized
            records: Current member records, already filtered for sensitivity
            previous: Existing summary text, if any

        Returns:
            New summary text

        Raises:
            CollaboratorUnavailable: If the model fails or returns nothing
        """
        current = f'CURRENT SUMMARY:\n{previous}\n\n' if previous else 'No existing summary yet.\n\n'
        user_text = f'Category: {category.replace("_", " ")}\n\n{current}MEMORIES:\n{format_members(records)}'
        messages = [{'role': 'user', 'content': [{'text': user_text}]}]

        response, _ = self.llm.generate_response(messages=messages, system_prompt=SUMMARY_PROMPT, max_tokens=self.max_tokens)
        summary = response.strip()
        if not summary:
            raise CollaboratorUnavailable(f'Empty summary returned for category {category}')
        return summary


class BedrockSufficiencyJudge:
    """Asks a Bedrock LLM whether summaries answer a query; any failure counts as insufficient."""

    def __init__(self, llm: BedrockLLM, min_confidence: float = 0.7):
        self.llm = llm
        self.min_confidence = min_confidence

    def is_sufficient(self, query: str, summaries: Sequence[CategorySummary]) -> bool:
        if not summaries:
            return False
        context = '\n\n'.join(f'[{category_title(s.category)}]: {s.summary_text}' for s in summaries)
        user_text = f'USER QUERY: "{query}"\n\nAVAILABLE SUMMARIES:\n{context}'
        try:
            data = self.llm.generate_json(SUFFICIENCY_PROMPT, user_text, max_tokens=200)
        except (CollaboratorUnavailable, json.JSONDecodeError) as e:
            logger.warning(f'Sufficiency check failed, falling back to records: {e}')
            return False
        if not isinstance(data, dict):
            return False

        sufficient = as_bool(data.get('sufficient', False))
        confidence = as_float(data.get('confidence'), 0.0, 1.0, default=0.0)
        logger.debug(f'Sufficiency: {sufficient} ({confidence:.2f}) {data.get("reason", "")}')
        return sufficient and confidence >= self.min_confidence


class HeuristicSufficiencyJudge:
    """Deterministic judge: summaries suffice when they mention most of the query's content words."""

    def __init__(self, min_coverage: float = 0.7):
        self.min_coverage = min_coverage

    def is_sufficient(self, query: str, summaries: Sequence[CategorySummary]) -> bool:
        if not summaries:
            return False
        terms = query_terms(query)
        if not terms:
            return False
        covered = set()
        for summary in summaries:
            covered |= terms & query_terms(summary.summary_text)
        coverage = len(covered) / len(terms)
        logger.debug(f'Summary coverage for "{query}": {coverage:.2f}')
        return coverage >= self.min_coverage
