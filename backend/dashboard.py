import logging

from models import (
    Attempt,
    AttemptSnapshot,
    AttemptStatus,
    AuditLog,
    Event,
    Question,
    QuizStatus,
    SecondCamSnapshot,
    isoformat,
    utcnow,
)
from governor import remaining_seconds

logger = logging.getLogger(__name__)

AUDIT_LIMIT = 200


class DashboardAggregator:
    """Read-side views for the instructor monitor pages."""

    def __init__(self, session, governor, second_cam) -> None:
        self.session = session
        self.governor = governor
        self.second_cam = second_cam

    def _attempts(self, quiz_id):
        return (
            self.session.query(Attempt)
            .filter_by(quiz_id=quiz_id)
            .order_by(Attempt.started_at.desc())
            .all()
        )

    def metrics(self, quiz, now=None) -> dict:
        now = now or utcnow()
        self.governor.close_expired(quiz_id=quiz.id, now=now)
        self.session.refresh(quiz)

        attempts = self._attempts(quiz.id)
        by_status = {status: [] for status in AttemptStatus}
        for attempt in attempts:
            by_status[AttemptStatus(attempt.status)].append(attempt)
        completed = by_status[AttemptStatus.COMPLETED]

        average = 0
        if completed:
            average = sum(a.correct_count or 0 for a in completed) / len(completed)
        submitted = [a.submitted_at for a in completed if a.submitted_at]

        return {
            'totalAttempts': len(attempts),
            'activeAttempts': len(by_status[AttemptStatus.IN_PROGRESS]),
            'completedAttempts': len(completed),
            'forciblyEndedAttempts': len(by_status[AttemptStatus.FORCIBLY_ENDED]),
            'expiredAttempts': len(by_status[AttemptStatus.EXPIRED]),
            'averageScore': average,
            'lastSubmissionAt': isoformat(max(submitted)) if submitted else None,
            'endAt': isoformat(quiz.end_at),
            'remainingSeconds': remaining_seconds(quiz, now),
            'status': QuizStatus(quiz.status).value,
        }

    def audit_trail(self, quiz) -> list:
        logs = (
            self.session.query(AuditLog)
            .filter_by(quiz_id=quiz.id)
            .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
            .limit(AUDIT_LIMIT)
            .all()
        )
        events = (
            self.session.query(Event, Attempt)
            .outerjoin(Attempt, Attempt.id == Event.attempt_id)
            .filter(Event.quiz_id == quiz.id, Event.type == 'fullscreen_exit')
            .order_by(Event.timestamp.desc(), Event.id.desc())
            .limit(AUDIT_LIMIT)
            .all()
        )

        rows = []
        for log in logs:
            rows.append({
                'id': f'audit-{log.id}',
                'type': log.type,
                'message': log.message,
                'timestamp': log.created_at,
                'studentName': None,
                'studentEmail': (log.meta or {}).get('email'),
            })
        for event, attempt in events:
            rows.append({
                'id': f'event-{event.id}',
                'type': 'fullscreen_exit',
                'message': event.message or 'Fullscreen exited',
                'timestamp': event.timestamp,
                'studentName': attempt.student_name if attempt else None,
                'studentEmail': attempt.student_email if attempt else None,
            })
        rows.sort(key=lambda row: row['timestamp'], reverse=True)
        for row in rows:
            row['timestamp'] = isoformat(row['timestamp'])
        return rows

    def attempt_rows(self, quiz, now=None) -> list:
        now = now or utcnow()
        rows = []
        for attempt in self._attempts(quiz.id):
            row = attempt.to_dict()
            row['secondCamConnected'] = bool(
                quiz.enable_second_cam
                and AttemptStatus(attempt.status) == AttemptStatus.IN_PROGRESS
                and self.second_cam.is_connected(attempt.id, now)
            )
            rows.append(row)
        return rows

    def attempt_detail(self, attempt) -> dict:
        questions = {
            str(q.id): q
            for q in self.session.query(Question).filter_by(quiz_id=attempt.quiz_id).all()
        }
        answers = []
        for detail in attempt.score_details or []:
            question = questions.get(str(detail.get('questionId')))
            answers.append({
                'questionId': detail.get('questionId'),
                'question': question.text if question else 'Unknown question',
                'options': list(question.options or []) if question else [],
                'selectedIndex': detail.get('selectedIndex'),
                'correctIndex': question.correct_index if question else None,
                'isCorrect': bool(detail.get('isCorrect')),
            })

        snapshots = (
            self.session.query(AttemptSnapshot)
            .filter_by(attempt_id=attempt.id)
            .order_by(AttemptSnapshot.created_at.asc())
            .all()
        )
        cam_snapshots = (
            self.session.query(SecondCamSnapshot)
            .filter_by(attempt_id=attempt.id)
            .order_by(SecondCamSnapshot.created_at.asc())
            .all()
        )
        events = (
            self.session.query(Event)
            .filter_by(attempt_id=attempt.id)
            .order_by(Event.timestamp.asc())
            .all()
        )

        data = attempt.to_dict()
        data.update({
            'answers': answers,
            'events': [
                {'type': e.type, 'message': e.message, 'timestamp': isoformat(e.timestamp), 'extra': e.extra or {}}
                for e in events
            ],
            'snapshots': [
                {'phase': s.phase, 'mime': s.mime, 'data': s.data, 'createdAt': isoformat(s.created_at)}
                for s in snapshots
            ],
            'secondCamSnapshots': [
                {'mime': s.mime, 'data': s.data, 'createdAt': isoformat(s.created_at)}
                for s in cam_snapshots
            ],
        })
        return data
