from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
import re

from tasksync.domain.models import Task, TaskStatus

MAX_SCAN_CHARS = 10000
DEFAULT_THRESHOLD = 0.3
DEFAULT_LIMIT = 5

_PHONE_RE = re.compile(
    r'\d{3}[-.\s]?\d{3}[-.\s]?\d{4}'
    r'|\(\d{3}\)[-.\s]?\d{3}[-.\s]?\d{4}'
    r'|\+?1[-.\s]?\d{3}[-.\s]?\d{3}[-.\s]?\d{4}'
)
_EMAIL_RE = re.compile(r'[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}')
_NAME_RE = re.compile(r'\b[A-Z][a-z]{1,15}(?:\s[A-Z][a-z]{1,15})?\b')
_NON_DIGIT_RE = re.compile(r'\D')

# Capitalized words that are not customer names.
_COMMON_WORDS = frozenset({
    'The', 'This', 'That', 'These', 'Those',
    'Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday', 'Sunday',
    'January', 'February', 'March', 'April', 'May', 'June', 'July', 'August',
    'September', 'October', 'November', 'December',
    'Today', 'Tomorrow', 'Next', 'Last', 'Please', 'Thanks', 'Hello', 'Dear',
    'Regards', 'Sincerely', 'Best', 'Email', 'Call', 'Meeting', 'Task', 'Todo',
    'Note', 'Important', 'Urgent', 'High', 'Low', 'Medium', 'New', 'Review',
    'Update', 'Follow', 'Check', 'Send', 'Create', 'Delete', 'Edit',
})


@dataclass(frozen=True)
class DuplicateMatch:
    task: Task
    score: float
    reasons: tuple[str, ...]


def extract_phone_numbers(text: str) -> list[str]:
    sample = str(text or '')[:MAX_SCAN_CHARS]
    digits = (_NON_DIGIT_RE.sub('', m) for m in _PHONE_RE.findall(sample))
    return [d for d in digits if 10 <= len(d) <= 15]


def extract_emails(text: str) -> list[str]:
    return [m.lower() for m in _EMAIL_RE.findall(str(text or ''))]


def extract_potential_names(text: str) -> list[str]:
    return [
        m for m in _NAME_RE.findall(str(text or ''))
        if m not in _COMMON_WORDS and m.split(' ')[0] not in _COMMON_WORDS
    ]


def string_similarity(a: str, b: str) -> float:
    """Cheap 0..1 similarity: containment or overlap of words longer than two characters."""
    if not a or not b:
        return 0.0
    s1 = a.lower()
    s2 = b.lower()
    if s1 == s2:
        return 1.0
    if s1 in s2 or s2 in s1:
        return 0.8
    words1 = {w for w in s1.split() if len(w) > 2}
    words2 = {w for w in s2.split() if len(w) > 2}
    if not words1 or not words2:
        return 0.0
    return len(words1 & words2) / max(len(words1), len(words2))


def _names_overlap(a: str, b: str) -> bool:
    x = a.lower()
    y = b.lower()
    return x == y or x in y or y in x


def find_potential_duplicates(
    text: str,
    tasks: Iterable[Task],
    *,
    threshold: float = DEFAULT_THRESHOLD,
    limit: int = DEFAULT_LIMIT,
) -> list[DuplicateMatch]:
    """Score open tasks that probably describe the same customer or request as ``text``."""
    new_phones = extract_phone_numbers(text)
    new_emails = extract_emails(text)
    new_names = extract_potential_names(text)

    matches: list[DuplicateMatch] = []
    for task in tasks:
        if task.status == TaskStatus.DONE:
            continue
        combined = f'{task.text} {task.notes or ""} {task.transcription or ""}'
        phones = extract_phone_numbers(combined)
        emails = extract_emails(combined)
        names = extract_potential_names(combined)

        score = 0.0
        reasons: list[str] = []
        if any(p == q or p.endswith(q) or q.endswith(p) for p in new_phones for q in phones):
            score += 0.5
            reasons.append('Same phone number')
        if any(e in emails for e in new_emails):
            score += 0.4
            reasons.append('Same email address')
        matched_name = next((n for n in new_names if any(_names_overlap(n, m) for m in names)), None)
        if matched_name is not None:
            score += 0.3
            reasons.append(f'Same customer: {matched_name}')
        similarity = string_similarity(text, task.text)
        if similarity > 0.3:
            score += similarity * 0.2
            reasons.append('Similar task description')

        if reasons and score >= threshold:
            matches.append(DuplicateMatch(task=task, score=round(score, 4), reasons=tuple(reasons)))

    matches.sort(key=lambda m: m.score, reverse=True)
    return matches[:max(0, int(limit))]


def should_check_for_duplicates(text: str) -> bool:
    return bool(extract_phone_numbers(text) or extract_emails(text) or extract_potential_names(text))
