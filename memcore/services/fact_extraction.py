"""
Fact Extraction Service: raw observation text -> candidate facts.
"""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from ..models.core import IMPORTANCE_TIERS, RECORD_KINDS, SENSITIVITY_RANK, CandidateFact
from ..models.errors import CollaboratorUnavailable
from ..utils.bedrock_llm import BedrockLLM
from ..utils.config import config
from ..utils.json_utils import as_bool, as_float
from ..utils.logging_config import get_logger
from ..utils.text_utils import CATEGORIES, categorize, normalize_predicate
from ..utils.timestamp_utils import parse_datetime, utc_now

logger = get_logger(__name__)

SYSTEM_PROMPT = """
You are a memory extraction system for a personal assistant. Extract atomic facts worth remembering
about the user and the people, places, projects and things in their life.

Today is {today}. Resolve relative dates ("next Monday", "in March") to ISO-8601 timestamps.
Known entities (reuse these exact names when the text refers to them): {known_entities}

For each fact return:
- kind: entity|fact|preference|event|goal|procedure|decision|action
- subject_name: the entity the fact is about ("user" for the user themself)
- content: a short third-person statement, e.g. "works at Stripe"
- predicate / object: set both when the fact is one value of a single-valued attribute
  (works_at -> "Stripe", lives_in -> "Berlin"); otherwise null
- is_historical: true when the text describes a past state ("used to", "previously")
- effective_from / expires_at: ISO-8601 or null
- recurrence: e.g. {{"type": "weekly", "day": "Monday"}} or null
- sensitivity: normal|sensitive|private (health, finances, intimate details are sensitive or private)
- importance: critical|high|medium|low|trivial
- sentiment: number in [-1, 1] or null
- confidence: number in [0, 1]
- category: {categories}
- do_not_remember: true ONLY when the user explicitly says to forget / not remember / delete this

NEVER extract passwords, SSNs, credit card numbers or API keys.

Return a JSON array with this exact format:
```json
[
  {{
    "kind": "fact",
    "subject_name": "Marcus",
    "content": "works at Stripe",
    "predicate": "works_at",
    "object": "Stripe",
    "is_historical": false,
    "effective_from": null,
    "expires_at": null,
    "recurrence": null,
    "sensitivity": "normal",
    "importance": "medium",
    "sentiment": null,
    "confidence": 0.9,
    "category": "work_life",
    "do_not_remember": false
  }}
]
```
Return empty array [] if nothing is worth remembering."""


class FactExtractionService:
    """Extract candidate facts from raw observations using a Bedrock LLM.

    Extraction is best effort: an unavailable model or unparsable output yields an empty list.
    """

    def __init__(self, llm: Optional[BedrockLLM] = None):
        """Initialize the fact extraction service.

        Args:
            llm: LLM client; built from the global config when omitted
        """
        self.llm = llm or BedrockLLM(config.bedrock_llm)

        logger.info('Initialized FactExtractionService')

    def extract(self, text: str, known_entities: Sequence[str] = (), now: Optional[datetime] = None) -> List[CandidateFact]:
        """Extract candidate facts from text.

        Args:
            text: Raw observation
            known_entities: Entity names already in the store, for disambiguation
            now: Reference time for resolving relative dates

        Returns:
            List of CandidateFact objects, empty on any failure
        """
        if not text or not text.strip():
            logger.warning('Empty text provided for fact extraction')
            return []

        now = now or utc_now()
        system_prompt = SYSTEM_PROMPT.format(today=now.date().isoformat(),
                                             known_entities=', '.join(known_entities) or 'none',
                                             categories='|'.join(CATEGORIES))
        try:
            items = self.llm.generate_json(system_prompt, f'Extract memories from this note:\n{text}')
        except CollaboratorUnavailable as e:
            logger.error(f'LLM error during fact extraction: {e}')
            return []
        except json.JSONDecodeError as e:
            logger.error(f'Failed to parse fact extraction JSON: {e}')
            return []
        except Exception as e:
            logger.error(f'Unexpected error during fact extraction: {e}')
            return []

        if not isinstance(items, list):
            logger.warning(f'Expected list, got {type(items)}')
            return []

        candidates = []
        for item in items:
            candidate = parse_candidate(item, source_text=text)
            if candidate is not None:
                candidates.append(candidate)

        logger.debug(f'Extracted {len(candidates)} candidate facts')
        return candidates


def parse_candidate(item: Dict[str, Any], source_text: Optional[str] = None) -> Optional[CandidateFact]:
    """Normalize one extraction item; None when required fields are missing."""
    if not isinstance(item, dict):
        return None

    subject_name = str(item.get('subject_name') or '').strip()
    content = str(item.get('content') or '').strip()
    if not subject_name or not content:
        return None

    kind = str(item.get('kind') or 'fact').strip().lower()
    if kind not in RECORD_KINDS:
        kind = 'fact'

    sensitivity = str(item.get('sensitivity') or 'normal').strip().lower()
    if sensitivity not in SENSITIVITY_RANK:
        sensitivity = 'normal'

    tier = str(item.get('importance') or item.get('importance_tier') or 'medium').strip().lower()
    if tier not in IMPORTANCE_TIERS:
        tier = 'medium'

    category = str(item.get('category') or '').strip().lower()
    if category not in CATEGORIES:
        category = categorize(content)

    predicate = normalize_predicate(str(item['predicate'])) if item.get('predicate') else None
    object_value = item.get('object', item.get('object_value'))
    recurrence = item.get('recurrence')

    return CandidateFact(kind=kind,
                         subject_name=subject_name,
                         content=content,
                         predicate=predicate,
                         object_value=str(object_value).strip() if object_value not in (None, '') else None,
                         is_historical=as_bool(item.get('is_historical', False)),
                         effective_from=parse_datetime(item.get('effective_from')),
                         expires_at=parse_datetime(item.get('expires_at')),
                         recurrence=recurrence if isinstance(recurrence, dict) else None,
                         sensitivity=sensitivity,
                         importance_tier=tier,
                         pinned=tier == 'critical' or as_bool(item.get('pinned', False)),
                         sentiment=as_float(item.get('sentiment'), -1.0, 1.0),
                         confidence=as_float(item.get('confidence'), 0.0, 1.0, default=0.0),
                         category=category,
                         do_not_remember=as_bool(item.get('do_not_remember', False)),
                         source_text=source_text)
