"""
Tests for the OTP credential store
"""
from datetime import timedelta

import pytest

from errors import InvalidInput, RateLimited
from models import Invitation, db, utcnow
from otp import generate_otp, hash_otp, otp_matches


class TestOtpPrimitives:
    """Code generation and hashing"""

    def test_generate_is_six_digits(self):
        for _ in range(50):
            code = generate_otp()
            assert len(code) == 6
            assert code.isdigit()

    def test_only_digest_is_compared(self):
        digest = hash_otp('123456')
        assert len(digest) == 64
        assert otp_matches(digest, '123456')
        assert not otp_matches(digest, '654321')
        assert not otp_matches(digest, '')


class TestOtpStore:
    """Issue and verify against the invitation slot"""

    def test_issue_upserts_single_slot(self, services, make_quiz, student_of):
        quiz = make_quiz()
        student = student_of(quiz)
        first, otp1 = services.otp.issue(quiz, student)
        second, otp2 = services.otp.issue(quiz, student)

        assert first.id == second.id
        assert Invitation.query.filter_by(quiz_id=quiz.id).count() == 1
        assert second.otp_hash == hash_otp(otp2)
        assert second.otp_attempts == 0
        assert second.verified_at is None

    def test_issue_sets_fifteen_minute_expiry(self, services, make_quiz, student_of):
        quiz = make_quiz()
        now = utcnow()
        invitation, _ = services.otp.issue(quiz, student_of(quiz), now=now)
        assert invitation.otp_expires_at == now + timedelta(minutes=15)

    def test_correct_code_verifies_once(self, services, make_quiz, student_of):
        quiz = make_quiz()
        invitation, otp = services.otp.issue(quiz, student_of(quiz))

        assert services.otp.verify(invitation, otp) is True
        assert invitation.verified_at is not None

        with pytest.raises(InvalidInput) as exc:
            services.otp.verify(invitation, otp)
        assert exc.value.code == 'OtpAlreadyUsed'

    def test_wrong_guess_increments_counter(self, services, make_quiz, student_of):
        quiz = make_quiz()
        invitation, otp = services.otp.issue(quiz, student_of(quiz))
        wrong = '000000' if otp != '000000' else '111111'

        with pytest.raises(InvalidInput) as exc:
            services.otp.verify(invitation, wrong)
        assert exc.value.code == 'InvalidOtp'
        db.session.refresh(invitation)
        assert invitation.otp_attempts == 1

    def test_sixth_guess_fails_even_when_correct(self, services, make_quiz, student_of):
        quiz = make_quiz()
        invitation, otp = services.otp.issue(quiz, student_of(quiz))
        wrong = '000000' if otp != '000000' else '111111'

        for _ in range(5):
            with pytest.raises(InvalidInput):
                services.otp.verify(invitation, wrong)

        with pytest.raises(RateLimited) as exc:
            services.otp.verify(invitation, otp)
        assert exc.value.code == 'OtpAttemptsExceeded'
        assert invitation.verified_at is None

    def test_expired_code_rejected(self, services, make_quiz, student_of):
        quiz = make_quiz()
        issued_at = utcnow() - timedelta(minutes=16)
        invitation, otp = services.otp.issue(quiz, student_of(quiz), now=issued_at)

        with pytest.raises(InvalidInput) as exc:
            services.otp.verify(invitation, otp)
        assert exc.value.code == 'OtpExpired'

    def test_reissue_resets_counter(self, services, make_quiz, student_of):
        quiz = make_quiz()
        student = student_of(quiz)
        invitation, otp = services.otp.issue(quiz, student)
        wrong = '000000' if otp != '000000' else '111111'
        for _ in range(5):
            with pytest.raises(InvalidInput):
                services.otp.verify(invitation, wrong)

        invitation, otp = services.otp.issue(quiz, student)
        assert invitation.otp_attempts == 0
        assert services.otp.verify(invitation, otp) is True

    def test_racing_consume_loses_to_first(self, services, make_quiz, student_of):
        quiz = make_quiz()
        invitation, otp = services.otp.issue(quiz, student_of(quiz))
        assert invitation.verified_at is None

        # A concurrent request consumes the code behind this session's back
        db.session.execute(
            Invitation.__table__.update()
            .where(Invitation.__table__.c.id == invitation.id)
            .values(verified_at=utcnow())
        )

        with pytest.raises(InvalidInput) as exc:
            services.otp.verify(invitation, otp)
        assert exc.value.code == 'OtpAlreadyUsed'

    def test_staged_issue_keeps_old_code_on_rollback(self, services, make_quiz, student_of):
        quiz = make_quiz()
        student = student_of(quiz)
        _, old = services.otp.issue(quiz, student)

        services.otp.issue(quiz, student, commit=False)
        db.session.rollback()

        invitation = Invitation.query.filter_by(quiz_id=quiz.id).one()
        assert otp_matches(invitation.otp_hash, old)
