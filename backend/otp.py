"""
OTP credential store.

Codes are 6 random digits; only their SHA-256 digest is persisted on the single
Invitation row for a (quiz, student) pair. Verification fails closed on expiry, on an
exhausted guess counter and on reuse, and compares digests in constant time.
"""
import hashlib
import hmac
import logging
import secrets
from datetime import timedelta
from typing import Tuple

from sqlalchemy.exc import IntegrityError

from errors import InvalidInput, RateLimited
from models import Invitation, utcnow

logger = logging.getLogger(__name__)

OTP_DIGITS = 6
DEFAULT_OTP_TTL = timedelta(minutes=15)
DEFAULT_MAX_OTP_ATTEMPTS = 5


def generate_otp(digits: int = OTP_DIGITS) -> str:
    return str(secrets.randbelow(10 ** digits)).zfill(digits)


def hash_otp(otp: str) -> str:
    return hashlib.sha256(otp.encode('utf-8')).hexdigest()


def otp_matches(stored_hash: str, candidate: str) -> bool:
    provided = hash_otp(candidate or '')
    return hmac.compare_digest(stored_hash.encode('ascii'), provided.encode('ascii'))


class OtpStore:
    def __init__(
        self,
        session,
        *,
        ttl: timedelta = DEFAULT_OTP_TTL,
        max_attempts: int = DEFAULT_MAX_OTP_ATTEMPTS,
    ) -> None:
        self.session = session
        self.ttl = ttl
        self.max_attempts = max_attempts

    def issue(self, quiz, student, now=None, commit: bool = True) -> Tuple[Invitation, str]:
        """Upsert the invitation slot with a fresh code; returns (invitation, plaintext).

        With commit=False the new code is only flushed and the caller owns the commit,
        so the previous code stays valid if the caller rolls back.
        """
        now = now or utcnow()
        otp = generate_otp()
        try:
            invitation = self._upsert(quiz, student, otp, now)
        except IntegrityError:
            # Another request inserted the slot first; overwrite it instead.
            self.session.rollback()
            invitation = self._upsert(quiz, student, otp, now)
        if commit:
            self.session.commit()
        logger.info('OTP issued for quiz=%s student=%s', quiz.id, student.id)
        return invitation, otp

    def _upsert(self, quiz, student, otp, now) -> Invitation:
        invitation = (
            self.session.query(Invitation)
            .filter_by(quiz_id=quiz.id, student_id=student.id)
            .first()
        )
        if invitation is None:
            invitation = Invitation(quiz_id=quiz.id, student_id=student.id, max_otp_attempts=self.max_attempts)
            self.session.add(invitation)
        invitation.email = student.email
        invitation.otp_hash = hash_otp(otp)
        invitation.otp_expires_at = now + self.ttl
        invitation.last_otp_sent_at = now
        invitation.otp_attempts = 0
        invitation.verified_at = None
        self.session.flush()
        return invitation

    def verify(self, invitation: Invitation, candidate: str, now=None, commit: bool = True) -> bool:
        """Consume the code or raise.

        With commit=False a successful verification is only flushed, so the caller can
        roll it back together with its own writes. Failed guesses are always committed.
        """
        now = now or utcnow()
        if invitation.otp_expires_at < now:
            raise InvalidInput('OTP expired', 'OtpExpired')
        ceiling = invitation.max_otp_attempts or self.max_attempts
        if invitation.otp_attempts >= ceiling:
            raise RateLimited('OTP attempts exceeded', 'OtpAttemptsExceeded')
        if invitation.verified_at is not None:
            raise InvalidInput('OTP already used', 'OtpAlreadyUsed')

        if not otp_matches(invitation.otp_hash, candidate):
            # SQL-side increment so concurrent wrong guesses all count
            invitation.otp_attempts = Invitation.otp_attempts + 1
            self.session.commit()
            logger.info('Invalid OTP for invitation=%s (%s/%s)', invitation.id, invitation.otp_attempts, ceiling)
            raise InvalidInput('Invalid OTP', 'InvalidOtp')

        # Conditional write: of two requests racing on one code only one consumes it
        matched = (
            self.session.query(Invitation)
            .filter(Invitation.id == invitation.id, Invitation.verified_at.is_(None))
            .update({Invitation.verified_at: now, Invitation.otp_attempts: 0}, synchronize_session=False)
        )
        if matched != 1:
            self.session.rollback()
            raise InvalidInput('OTP already used', 'OtpAlreadyUsed')
        self.session.expire(invitation, ['verified_at', 'otp_attempts'])
        if commit:
            self.session.commit()
        else:
            self.session.flush()
        return True
