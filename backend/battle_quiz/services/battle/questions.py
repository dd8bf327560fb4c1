from dataclasses import dataclass
from typing import List, Optional, Tuple

from flask import current_app

from battle_quiz.models import Question, Quiz
from .ephemeral import ExpiringStore


@dataclass(frozen=True)
class QuestionItem:
    id: int
    text: str
    options: Tuple[str, ...]
    correct_index: int
    marks: int

    def public_dict(self, index: int) -> dict:
        """Client-facing shape; never includes the answer key."""
        return {'id': self.id, 'index': index, 'text': self.text, 'options': list(self.options)}


_cache = ExpiringStore()


def get_questions(quiz_id: int) -> List[QuestionItem]:
    """Ordered question set for a quiz, capped at the quiz's question count."""
    cached = _cache.get(quiz_id)
    if cached is not None:
        return cached

    quiz = Quiz.query.filter_by(id=quiz_id).first()
    if not quiz:
        return []
    rows = (Question.query
            .filter_by(quiz_id=quiz_id)
            .order_by(Question.position, Question.id)
            .limit(quiz.question_count)
            .all())
    items = [
        QuestionItem(
            id=q.id,
            text=q.text,
            options=tuple(q.option_list),
            correct_index=q.correct_index,
            marks=q.marks if q.marks is not None else 1,
        )
        for q in rows
    ]
    ttl = int(current_app.config.get('QUESTION_CACHE_TTL_SEC', 300))
    if items and ttl > 0:
        _cache.set(quiz_id, items, ttl=ttl)
    return items


def find_question(quiz_id: int, question_id: int) -> Optional[QuestionItem]:
    for item in get_questions(quiz_id):
        if item.id == question_id:
            return item
    return None


def question_at(quiz_id: int, index: int) -> Optional[QuestionItem]:
    items = get_questions(quiz_id)
    if 0 <= index < len(items):
        return items[index]
    return None


def index_of(quiz_id: int, question_id: int) -> Optional[int]:
    for idx, item in enumerate(get_questions(quiz_id)):
        if item.id == question_id:
            return idx
    return None


def invalidate(quiz_id: Optional[int] = None) -> None:
    if quiz_id is None:
        _cache.clear()
    else:
        _cache.pop(quiz_id)
