from dataclasses import dataclass, field
from typing import Iterable, List, Optional


@dataclass
class AnswerDetail:
    question_id: str
    selected_index: Optional[int]
    is_correct: bool

    def to_dict(self):
        return {
            'questionId': self.question_id,
            'selectedIndex': self.selected_index,
            'isCorrect': self.is_correct,
        }


@dataclass
class ScoreResult:
    correct_count: int
    total_questions: int
    details: List[AnswerDetail] = field(default_factory=list)

    def to_dict(self, include_details: bool = True):
        data = {'correctCount': self.correct_count, 'totalQuestions': self.total_questions}
        if include_details:
            data['details'] = [d.to_dict() for d in self.details]
        return data


def score(questions: Iterable, answers: Iterable) -> ScoreResult:
    """Grade answers by index equality against the question set.

    `questions` need `id` and `correct_index`; `answers` need `question_id` and
    `selected_index`. The total is always the size of the question set. An answer for a
    question id that is not in the set is kept in the details as incorrect. When the same
    question is answered twice only the first answer counts.
    """
    questions = list(questions)
    correct_by_id = {str(q.id): q.correct_index for q in questions}

    seen = set()
    details = []
    for answer in answers:
        question_id = str(answer.question_id)
        if question_id in seen:
            continue
        seen.add(question_id)
        selected = answer.selected_index
        correct = correct_by_id.get(question_id)
        is_correct = correct is not None and selected is not None and int(selected) == int(correct)
        details.append(AnswerDetail(question_id=question_id, selected_index=selected, is_correct=is_correct))

    correct_count = sum(1 for d in details if d.is_correct)
    return ScoreResult(correct_count=correct_count, total_questions=len(questions), details=details)
