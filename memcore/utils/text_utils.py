"""
Text helpers shared by the write and read paths: normalisation, categories, secret and forget detection.
"""

import hashlib
import math
import re
from typing import Iterable, Optional

CATEGORY_KEYWORDS = {
    'work_life': ['work', 'job', 'office', 'meeting', 'project', 'deadline', 'boss', 'colleague', 'career', 'company', 'client',
                  'employer', 'hired', 'offer', 'salary'],
    'personal_life': ['home', 'family', 'weekend', 'hobby', 'vacation', 'house', 'apartment', 'moved', 'trip'],
    'health_wellness': ['health', 'exercise', 'workout', 'sleep', 'doctor', 'gym', 'diet', 'meditation', 'stress', 'therapy',
                        'allergic', 'medication'],
    'relationships': ['friend', 'partner', 'wife', 'husband', 'mom', 'dad', 'brother', 'sister', 'dating', 'married', 'girlfriend',
                      'boyfriend', 'son', 'daughter'],
    'goals_aspirations': ['goal', 'want to', 'dream', 'plan to', 'aspire', 'hope to', 'ambition', 'someday'],
    'preferences': ['prefer', 'like', 'love', 'hate', 'favorite', 'favourite', 'enjoy', 'dislike', 'rather'],
    'beliefs_values': ['believe', 'value', 'important to me', 'principle', 'faith', 'opinion'],
    'skills_expertise': ['skill', 'expert', 'learned', 'good at', 'certified', 'fluent', 'proficient'],
    'projects': ['building', 'side project', 'launch', 'prototype', 'repo', 'startup'],
    'challenges': ['struggle', 'problem', 'difficult', 'challenge', 'worried', 'anxious', 'stuck'],
}
CATEGORIES = tuple(CATEGORY_KEYWORDS) + ('general', )

_SECRET_PATTERNS = [
    re.compile(r'\b(password|passcode|passwd|pin code)\b\s*(is|:|=)', re.IGNORECASE),
    re.compile(r'\b\d{3}-\d{2}-\d{4}\b'),  # SSN
    re.compile(r'\b(?:\d[ -]?){13,16}\b'),  # card numbers
    re.compile(r'\b(sk|pk|rk)[-_][A-Za-z0-9_-]{16,}\b'),
    re.compile(r'\bAKIA[0-9A-Z]{16}\b'),
    re.compile(r'\b(api[ _-]?key|secret[ _-]?key|access[ _-]?token)\b\s*(is|:|=)', re.IGNORECASE),
]

_FORGET_PATTERN = re.compile(
    r"\b(forget (that|this|it|about|what i said|everything)|(don'?t|do not) (remember|keep|store) (that|this|it)|"
    r"stop remembering|delete (this|that|it) from (your )?memory|remove (this|that|it) from (your )?memory)\b", re.IGNORECASE)
_NOT_FORGET = re.compile(r"\b(don'?t|do not|never) forget\b", re.IGNORECASE)

_PUNCT = re.compile(r'[^\w\s]')
_SPACES = re.compile(r'\s+')


def normalize_subject(name: Optional[str]) -> str:
    """Slot key form of an entity name: lowercase, single-spaced."""
    return _SPACES.sub(' ', (name or '').strip().lower())


def normalize_predicate(predicate: Optional[str]) -> Optional[str]:
    if predicate is None:
        return None
    value = _SPACES.sub('_', predicate.strip().lower())
    return value or None


def normalize_content(text: Optional[str]) -> str:
    """Comparison form of free text, used for verbatim duplicate detection."""
    return _SPACES.sub(' ', _PUNCT.sub(' ', (text or '').lower())).strip()


def categorize(text: str, default: str = 'general') -> str:
    """Pick the category whose keywords occur most often in text."""
    lowered = (text or '').lower()
    best, best_hits = default, 0
    for category, keywords in CATEGORY_KEYWORDS.items():
        hits = sum(1 for keyword in keywords if keyword in lowered)
        if hits > best_hits:
            best, best_hits = category, hits
    return best


def categories_for_query(query: str) -> list:
    """All categories with at least one keyword hit in the query."""
    lowered = (query or '').lower()
    return [category for category, keywords in CATEGORY_KEYWORDS.items() if any(keyword in lowered for keyword in keywords)]


def contains_secret(text: Optional[str]) -> bool:
    return any(pattern.search(text or '') for pattern in _SECRET_PATTERNS)


def is_forget_request(text: Optional[str]) -> bool:
    """True when the user explicitly asks for something to be forgotten."""
    text = _NOT_FORGET.sub('', text or '')
    return bool(_FORGET_PATTERN.search(text))


def estimate_tokens(text: Optional[str]) -> int:
    """Rough token count: four characters per token."""
    return max(1, math.ceil(len(text or '') / 4))


def content_hash(parts: Iterable[str]) -> str:
    digest = hashlib.sha256()
    for part in parts:
        digest.update(part.encode('utf-8'))
        digest.update(b'\x00')
    return digest.hexdigest()


def join_append(old: str, new: str) -> str:
    """Merge text for the append strategy as "old. new"."""
    old = (old or '').strip().rstrip('.')
    new = (new or '').strip()
    if not old:
        return new
    if not new:
        return old
    return f'{old}. {new}'
