"""
Second-camera companion tracking.

A phone opened from a signed link streams periodic snapshots for one attempt. The
session row only remembers when the device was last heard from; it counts as connected
while that was less than `stale_after` ago.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from sqlalchemy.exc import IntegrityError

from errors import Forbidden, NotFound, Unauthenticated
from models import Attempt, AttemptStatus, Quiz, SecondCamSession, SecondCamSnapshot, utcnow
from schemas import clean_image_data

logger = logging.getLogger(__name__)

TOKEN_TYPE = 'second_cam'
SESSION_IDLE_RETENTION = timedelta(hours=24)
SNAPSHOT_RETENTION = timedelta(days=5)


class SecondCamTracker:
    def __init__(
        self,
        session,
        *,
        secret: str = '',
        token_ttl: timedelta = timedelta(hours=6),
        stale_after: timedelta = timedelta(seconds=20),
    ) -> None:
        self.session = session
        self.secret = secret
        self.token_ttl = token_ttl
        self.stale_after = stale_after

    # --- tokens ---

    def issue_token(self, attempt_id) -> Optional[str]:
        if not self.secret:
            return None
        now = datetime.now(timezone.utc)
        payload = {
            'sub': str(attempt_id),
            'type': TOKEN_TYPE,
            'iat': now,
            'exp': now + self.token_ttl,
        }
        return jwt.encode(payload, self.secret, algorithm='HS256')

    def verify_token(self, token: str, attempt_id) -> bool:
        if not token or not self.secret:
            return False
        try:
            payload = jwt.decode(token, self.secret, algorithms=['HS256'])
        except jwt.PyJWTError:
            return False
        return payload.get('type') == TOKEN_TYPE and payload.get('sub') == str(attempt_id)

    # --- lookups ---

    def _load(self, attempt_id):
        attempt = self.session.get(Attempt, attempt_id)
        if attempt is None:
            raise NotFound('Attempt not found', 'AttemptNotFound')
        quiz = self.session.get(Quiz, attempt.quiz_id)
        return attempt, quiz

    @staticmethod
    def _require_active(attempt) -> None:
        if AttemptStatus(attempt.status) != AttemptStatus.IN_PROGRESS:
            raise Forbidden('Attempt not active', 'AttemptNotActive')

    @staticmethod
    def _require_enabled(quiz) -> None:
        if quiz is None or not quiz.enable_second_cam:
            raise Forbidden('Second camera disabled', 'SecondCamDisabled')

    def _require_token(self, token, attempt) -> None:
        if not self.verify_token(token, attempt.id):
            raise Unauthenticated('Invalid token', 'InvalidToken')

    def _touch(self, attempt, now) -> SecondCamSession:
        cam = self.session.query(SecondCamSession).filter_by(attempt_id=attempt.id).first()
        if cam is None:
            cam = SecondCamSession(
                attempt_id=attempt.id,
                quiz_id=attempt.quiz_id,
                student_id=attempt.student_id,
                connected_at=now,
                last_seen_at=now,
            )
            self.session.add(cam)
        else:
            cam.last_seen_at = now
        return cam

    def _commit_touch(self, attempt, now, snapshot=None) -> None:
        try:
            self._touch(attempt, now)
            if snapshot is not None:
                self.session.add(snapshot)
            self.session.commit()
        except IntegrityError:
            # A concurrent first contact created the session row; update it instead.
            self.session.rollback()
            self._touch(attempt, now)
            if snapshot is not None:
                self.session.add(snapshot)
            self.session.commit()

    # --- operations ---

    def connect(self, attempt_id, token: str, now=None) -> dict:
        now = now or utcnow()
        attempt, quiz = self._load(attempt_id)
        self._require_active(attempt)
        self._require_enabled(quiz)
        self._require_token(token, attempt)
        self._commit_touch(attempt, now)
        logger.info('Second camera connected for attempt=%s', attempt.id)
        return {'status': 'connected'}

    def heartbeat_snapshot(self, attempt_id, token: str, mime: str, data: str,
                           width: int = 320, height: int = 240, now=None) -> dict:
        now = now or utcnow()
        attempt, quiz = self._load(attempt_id)
        self._require_active(attempt)
        self._require_enabled(quiz)
        self._require_token(token, attempt)
        payload = clean_image_data(mime, data)

        self._commit_touch(attempt, now, SecondCamSnapshot(
            attempt_id=attempt.id,
            quiz_id=attempt.quiz_id,
            student_id=attempt.student_id,
            mime=mime,
            data=payload,
            width=width or 320,
            height=height or 240,
            created_at=now,
        ))
        return {'status': 'saved'}

    def is_connected(self, attempt_id, now=None) -> bool:
        now = now or utcnow()
        cam = self.session.query(SecondCamSession).filter_by(attempt_id=attempt_id).first()
        return bool(cam and cam.last_seen_at and (now - cam.last_seen_at) < self.stale_after)

    def status(self, attempt_id, now=None) -> dict:
        attempt, quiz = self._load(attempt_id)
        self._require_active(attempt)
        if quiz is None or not quiz.enable_second_cam:
            return {'connected': False}
        return {'connected': self.is_connected(attempt.id, now)}

    def purge(self, attempt_id, commit: bool = False) -> None:
        """Drop the live session row; snapshots stay for review."""
        self.session.query(SecondCamSession).filter_by(attempt_id=attempt_id).delete(synchronize_session=False)
        if commit:
            self.session.commit()

    def purge_stale(self, now=None) -> dict:
        now = now or utcnow()
        sessions = (
            self.session.query(SecondCamSession)
            .filter(SecondCamSession.last_seen_at < now - SESSION_IDLE_RETENTION)
            .delete(synchronize_session=False)
        )
        snapshots = (
            self.session.query(SecondCamSnapshot)
            .filter(SecondCamSnapshot.created_at < now - SNAPSHOT_RETENTION)
            .delete(synchronize_session=False)
        )
        self.session.commit()
        logger.info('Purged %s idle second-cam session(s) and %s old snapshot(s)', sessions, snapshots)
        return {'sessions': sessions, 'snapshots': snapshots}
