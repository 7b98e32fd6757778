"""
Decision collaborator: asks a Bedrock LLM which memory operation a candidate fact calls for.
"""

import json
from typing import Any, Dict, Optional, Sequence

from ..models.core import CandidateFact, Decision, MergeStrategy, Operation, SimilarRecord
from ..models.errors import CollaboratorUnavailable, DecisionUnavailable
from ..utils.bedrock_llm import BedrockLLM
from ..utils.config import config
from ..utils.json_utils import as_bool
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import to_iso

logger = get_logger(__name__)

SYSTEM_PROMPT = """You are the memory manager of a personal assistant. Compare a NEW candidate fact with EXISTING
memories and choose exactly one operation.

## Operations
- ADD: no existing memory covers this information.
- UPDATE: an existing memory is about the same thing. Pick target_id and merge_strategy:
  - replace: the existing content is wrong or imprecise; overwrite it
  - append: the candidate adds detail that is compatible with the existing content
  - supersede: the world changed (new job, moved city, relationship ended); keep the old one as history
- DELETE: the candidate says an existing memory is no longer true. hard_delete=true ONLY if the user
  explicitly said "forget", "don't remember" or "delete"; otherwise the memory is archived.
- NOOP: the candidate repeats what is already known.

## Rules
- NEVER store passwords, SSNs, credit card numbers or API keys: answer NOOP.
- Only merge memories about the same entity. If an existing memory uses a different name for the SAME
  entity (nickname, maiden name), set same_entity=true and explain why in reasoning.
- When in doubt between ADD and UPDATE, prefer ADD.

## Output format
```json
{
    "operation": "ADD|UPDATE|DELETE|NOOP",
    "merge_strategy": "replace|append|supersede|null",
    "target_id": "id of the existing memory or null",
    "hard_delete": false,
    "same_entity": false,
    "reasoning": "one or two sentences"
}
```
"""  # noqa: E501


def format_similar(similar: Sequence[SimilarRecord]) -> str:
    lines = []
    for item in similar:
        record = item.record
        lines.append(f'- id={record.id} subject={record.subject_name} predicate={record.predicate} kind={record.kind} '
                     f'similarity={item.similarity:.2f} updated={to_iso(record.updated_at)}: {record.content}')
    return '\n'.join(lines) or '(none)'


def parse_decision(data: Any) -> Decision:
    """Validate a decision payload from the collaborator.

    Raises:
        DecisionUnavailable: If the payload is not a usable decision
    """
    if not isinstance(data, dict):
        raise DecisionUnavailable(f'Decision must be a JSON object, got {type(data).__name__}')

    try:
        operation = Operation(str(data.get('operation', '')).strip().upper())
    except ValueError:
        raise DecisionUnavailable(f"Unknown operation: {data.get('operation')!r}")
    if operation == Operation.CONSOLIDATE:
        raise DecisionUnavailable('CONSOLIDATE is reserved for maintenance')

    strategy: Optional[MergeStrategy] = None
    raw_strategy = data.get('merge_strategy')
    if operation == Operation.UPDATE and raw_strategy not in (None, '', 'null'):
        try:
            strategy = MergeStrategy(str(raw_strategy).strip().lower())
        except ValueError:
            raise DecisionUnavailable(f'Unknown merge strategy: {raw_strategy!r}')

    target_id = data.get('target_id') or data.get('memory_id')
    return Decision(operation=operation,
                    merge_strategy=strategy,
                    target_id=str(target_id) if target_id not in (None, '', 'null') else None,
                    hard_delete=as_bool(data.get('hard_delete', False)),
                    same_entity=as_bool(data.get('same_entity', False)),
                    reasoning=str(data.get('reasoning') or ''))


class BedrockDecisionMaker:
    """Decision collaborator backed by a Bedrock LLM."""

    def __init__(self, llm: Optional[BedrockLLM] = None):
        self.llm = llm or BedrockLLM(config.bedrock_llm)

    def decide(self, candidate: CandidateFact, similar: Sequence[SimilarRecord]) -> Decision:
        """Choose the operation for a candidate.

        Args:
            candidate: Candidate fact being learned
            similar: Existing records most similar to it

        Returns:
            Decision as proposed by the model (not yet validated against store rules)

        Raises:
            DecisionUnavailable: If the model fails or answers with an unusable payload
        """
        candidate_info: Dict[str, Any] = candidate.to_prompt_dict()
        user_message = f"""## Existing memories
{format_similar(similar)}

## New candidate
{json.dumps(candidate_info, ensure_ascii=False)}
"""
        try:
            data = self.llm.generate_json(SYSTEM_PROMPT, user_message, max_tokens=512)
        except CollaboratorUnavailable as e:
            logger.warning(f'LLM error in memory operation decision: {e}')
            raise DecisionUnavailable(f'Decision collaborator unavailable: {e}')
        except json.JSONDecodeError as e:
            logger.warning(f'Failed to parse decision JSON: {e}')
            raise DecisionUnavailable(f'Unparsable decision: {e}')

        decision = parse_decision(data)
        logger.debug(f'LLM decided {decision.operation.value} target={decision.target_id}: {decision.reasoning}')
        return decision
