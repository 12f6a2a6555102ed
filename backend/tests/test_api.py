"""
End-to-end tests over HTTP: instructor setup, student attempt, monitoring
"""
from app import socketio
from errors import GENERIC_STUDENT_MESSAGE, Internal
from models import Attempt, db

QUESTIONS_CSV = (
    'Question,OptionA,OptionB,OptionC,OptionD,CorrectLetter\n'
    'Capital of France?,Berlin,Paris,Rome,Madrid,B\n'
    'Largest planet?,Jupiter,Mars,Venus,Earth,A\n'
)
STUDENTS_CSV = 'Name,Email\nAlice,alice@example.com\nBob,bob@example.com\n'


def _published_quiz(client, headers, **settings):
    resp = client.post('/api/quizzes', json={'title': 'Geography', 'settings': settings}, headers=headers)
    assert resp.status_code == 201
    quiz_id = resp.get_json()['quiz']['id']
    resp = client.post(f'/api/quizzes/{quiz_id}/questions/upload', json={'csv': QUESTIONS_CSV}, headers=headers)
    assert resp.status_code == 201
    resp = client.post(f'/api/quizzes/{quiz_id}/students/upload', json={'csv': STUDENTS_CSV}, headers=headers)
    assert resp.status_code == 201
    resp = client.patch(f'/api/quizzes/{quiz_id}/status', json={'status': 'published'}, headers=headers)
    assert resp.get_json()['quiz']['status'] == 'published'
    return quiz_id


def _join(client, quiz_id, outbox_otp, headers, email='alice@example.com'):
    resp = client.post(f'/api/quizzes/{quiz_id}/invitations/send-one', json={'email': email}, headers=headers)
    assert resp.status_code == 200
    resp = client.post(f'/api/quizzes/{quiz_id}/verify-otp', json={'email': email, 'otp': outbox_otp(email)})
    assert resp.status_code == 200
    return resp.get_json()


def _correct_answers(questions):
    right = {'Capital of France?': 'Paris', 'Largest planet?': 'Jupiter'}
    answers = []
    for q in questions:
        index = next(o['index'] for o in q['options'] if o['text'] == right[q['text']])
        answers.append({'questionId': q['id'], 'selectedIndex': index})
    return answers


class TestAuthApi:
    def test_register_login_me(self, client):
        resp = client.post('/api/auth/register', json={
            'name': 'Grace', 'email': 'Grace@Example.com', 'password': 'hopper1'
        })
        assert resp.status_code == 201
        assert resp.get_json()['user']['email'] == 'grace@example.com'

        resp = client.post('/api/auth/login', json={'email': 'grace@example.com', 'password': 'hopper1'})
        token = resp.get_json()['token']
        resp = client.get('/api/auth/me', headers={'Authorization': f'Bearer {token}'})
        assert resp.get_json()['user']['name'] == 'Grace'

    def test_duplicate_registration(self, client, instructor):
        resp = client.post('/api/auth/register', json={
            'name': 'Ada', 'email': 'ada@example.com', 'password': 'secret123'
        })
        assert resp.status_code == 409
        assert resp.get_json()['code'] == 'EmailTaken'

    def test_bad_password(self, client, instructor):
        resp = client.post('/api/auth/login', json={'email': 'ada@example.com', 'password': 'wrong-one'})
        assert resp.status_code == 401
        assert resp.get_json()['code'] == 'InvalidCredentials'

    def test_missing_token(self, client):
        resp = client.get('/api/quizzes')
        assert resp.status_code == 401
        body = resp.get_json()
        assert body == {
            'success': False,
            'error': 'Unauthenticated',
            'code': 'MissingToken',
            'message': 'Missing bearer token',
        }

    def test_garbage_token(self, client):
        resp = client.get('/api/quizzes', headers={'Authorization': 'Bearer nope'})
        assert resp.status_code == 401
        assert resp.get_json()['code'] == 'InvalidToken'


class TestQuizLifecycle:
    def test_full_flow(self, client, auth_headers, outbox_otp):
        quiz_id = _published_quiz(client, auth_headers, showScoreToStudent=True)

        public = client.get(f'/api/quizzes/{quiz_id}/public').get_json()
        assert public['joinable'] is True
        assert public['settings']['showScoreToStudent'] is True

        started = _join(client, quiz_id, outbox_otp, auth_headers)
        attempt_id = started['attemptId']
        assert len(started['questions']) == 2
        assert 'correctIndex' not in started['questions'][0]

        resp = client.post(f'/api/attempts/{attempt_id}/events', json={'type': 'fullscreen_exit'})
        assert resp.get_json()['status'] == 'logged'

        resp = client.post(f'/api/attempts/{attempt_id}/finish', json={
            'answers': _correct_answers(started['questions'])
        })
        assert resp.status_code == 200
        assert resp.get_json() == {'success': True, 'correctCount': 2, 'totalQuestions': 2}

        dashboard = client.get(f'/api/quizzes/{quiz_id}/dashboard', headers=auth_headers).get_json()
        assert dashboard['completedAttempts'] == 1
        assert dashboard['averageScore'] == 2

        audit = client.get(f'/api/quizzes/{quiz_id}/audit', headers=auth_headers).get_json()
        assert {'otp_sent', 'fullscreen_exit'} <= {e['type'] for e in audit['entries']}

        resp = client.get(f'/api/quizzes/{quiz_id}/export', headers=auth_headers)
        assert resp.headers['Content-Type'].startswith('text/csv')
        assert 'alice@example.com,completed,2,2' in resp.get_data(as_text=True)

        resp = client.get(f'/api/attempts/{attempt_id}/report.pdf', headers=auth_headers)
        assert resp.status_code == 200
        assert resp.data.startswith(b'%PDF')

        status = client.get(f'/api/attempts/{attempt_id}/status').get_json()
        assert status == {'success': True, 'status': 'completed', 'forcedEndReason': None}

    def test_second_finish_conflicts(self, client, auth_headers, outbox_otp):
        quiz_id = _published_quiz(client, auth_headers)
        attempt_id = _join(client, quiz_id, outbox_otp, auth_headers)['attemptId']
        client.post(f'/api/attempts/{attempt_id}/finish', json={'answers': []})

        resp = client.post(f'/api/attempts/{attempt_id}/finish', json={'answers': []})
        assert resp.status_code == 409
        assert resp.get_json()['code'] == 'AttemptAlreadyEnded'

    def test_wrong_otp(self, client, auth_headers, outbox_otp):
        quiz_id = _published_quiz(client, auth_headers)
        client.post(f'/api/quizzes/{quiz_id}/invitations/send', headers=auth_headers)
        otp = outbox_otp('bob@example.com')
        wrong = '000000' if otp != '000000' else '111111'

        resp = client.post(f'/api/quizzes/{quiz_id}/verify-otp', json={'email': 'bob@example.com', 'otp': wrong})
        assert resp.status_code == 400
        assert resp.get_json()['code'] == 'InvalidOtp'

    def test_draft_quiz_not_joinable(self, client, auth_headers):
        quiz_id = client.post('/api/quizzes', json={'title': 'Draft'}, headers=auth_headers).get_json()['quiz']['id']
        resp = client.post(f'/api/quizzes/{quiz_id}/verify-otp', json={'email': 'a@example.com', 'otp': '123456'})
        assert resp.status_code == 403
        assert resp.get_json()['code'] == 'QuizNotPublished'

    def test_questions_locked_after_attempt(self, client, auth_headers, outbox_otp):
        quiz_id = _published_quiz(client, auth_headers)
        _join(client, quiz_id, outbox_otp, auth_headers)

        resp = client.post(f'/api/quizzes/{quiz_id}/questions/upload', json={'csv': QUESTIONS_CSV},
                           headers=auth_headers)
        assert resp.status_code == 409
        assert resp.get_json()['code'] == 'QuestionsLocked'

    def test_instructor_terminates_quiz(self, client, auth_headers, outbox_otp):
        quiz_id = _published_quiz(client, auth_headers)
        attempt_id = _join(client, quiz_id, outbox_otp, auth_headers)['attemptId']

        resp = client.patch(f'/api/quizzes/{quiz_id}/terminate', headers=auth_headers)
        assert resp.get_json()['endedAttempts'] == 1

        status = client.get(f'/api/attempts/{attempt_id}/status').get_json()
        assert status['status'] == 'forcibly_ended'
        assert status['forcedEndReason'] == 'quiz_closed'

    def test_terminate_and_delete_attempt(self, client, auth_headers, outbox_otp):
        quiz_id = _published_quiz(client, auth_headers)
        attempt_id = _join(client, quiz_id, outbox_otp, auth_headers)['attemptId']

        resp = client.patch(f'/api/attempts/{attempt_id}/terminate', json={'reason': 'phone visible'},
                            headers=auth_headers)
        assert resp.get_json()['attempt']['flags']['forcedEndReason'] == 'phone visible'

        resp = client.delete(f'/api/attempts/{attempt_id}', headers=auth_headers)
        assert resp.get_json() == {'success': True, 'status': 'deleted'}
        assert db.session.get(Attempt, attempt_id) is None

    def test_other_instructor_gets_not_found(self, client, auth_headers, make_quiz):
        quiz = make_quiz()
        resp = client.post('/api/auth/register', json={'name': 'Eve', 'email': 'eve@example.com', 'password': 'secret9'})
        assert resp.status_code == 201
        token = client.post('/api/auth/login', json={
            'email': 'eve@example.com', 'password': 'secret9'
        }).get_json()['token']

        resp = client.get(f'/api/quizzes/{quiz.id}/dashboard', headers={'Authorization': f'Bearer {token}'})
        assert resp.status_code == 404

    def test_extend_quiz(self, client, auth_headers, make_quiz):
        quiz = make_quiz()
        resp = client.patch(f'/api/quizzes/{quiz.id}/extend', json={'minutes': 15}, headers=auth_headers)
        assert resp.status_code == 200
        assert resp.get_json()['quiz']['settings']['endAt'].endswith('Z')

    def test_unknown_field_rejected(self, client, auth_headers):
        resp = client.post('/api/quizzes', json={'title': 'X', 'owner': 'me'}, headers=auth_headers)
        assert resp.status_code == 400
        assert resp.get_json()['code'] == 'UnknownFields'


class TestStudentApi:
    def test_snapshot_status_codes(self, client, make_quiz, start_attempt):
        quiz = make_quiz(enable_webcam_snapshots=True)
        attempt_id = start_attempt(quiz)['attemptId']
        body = {'phase': 'start', 'mime': 'image/png', 'data': 'aGVsbG8='}

        first = client.post(f'/api/attempts/{attempt_id}/snapshots', json=body)
        second = client.post(f'/api/attempts/{attempt_id}/snapshots', json=body)

        assert (first.status_code, first.get_json()['status']) == (201, 'saved')
        assert (second.status_code, second.get_json()['status']) == (200, 'exists')

    def test_second_cam_over_http(self, client, make_quiz, start_attempt):
        quiz = make_quiz(enable_second_cam=True, mobile_allowed=False)
        started = start_attempt(quiz)
        attempt_id, token = started['attemptId'], started['secondCamToken']

        resp = client.post(f'/api/attempts/{attempt_id}/second-cam/connect', json={'token': token})
        assert resp.get_json()['status'] == 'connected'
        resp = client.post(f'/api/attempts/{attempt_id}/second-cam/snapshots', json={
            'token': token, 'mime': 'image/jpeg', 'data': 'aGVsbG8='
        })
        assert resp.status_code == 201
        assert client.get(f'/api/attempts/{attempt_id}/second-cam/status').get_json()['connected'] is True

        resp = client.post(f'/api/attempts/{attempt_id}/second-cam/connect', json={'token': 'forged'})
        assert resp.status_code == 401

    def test_resend_otp_rate_limited(self, client, make_quiz):
        quiz = make_quiz()
        for _ in range(3):
            resp = client.post(f'/api/quizzes/{quiz.id}/invitations/resend-otp', json={'email': 'alice@example.com'})
            assert resp.status_code == 200
        resp = client.post(f'/api/quizzes/{quiz.id}/invitations/resend-otp', json={'email': 'alice@example.com'})
        assert resp.status_code == 429
        body = resp.get_json()
        assert body['error'] == 'RateLimited'
        assert body['code'] == 'ResendRateLimited'

    def test_resend_limit_keyed_on_normalized_email(self, client, make_quiz):
        quiz = make_quiz(students=('alice@example.com', 'bob@example.com'))
        url = f'/api/quizzes/{quiz.id}/invitations/resend-otp'
        for email in ('alice@example.com', ' Alice@Example.com', 'ALICE@example.com'):
            assert client.post(url, json={'email': email}).status_code == 200

        assert client.post(url, json={'email': 'alice@example.com'}).status_code == 429
        assert client.post(url, json={'email': 'bob@example.com'}).status_code == 200

    def test_resend_limit_shared_with_instructor_route(self, client, auth_headers, make_quiz):
        quiz = make_quiz()
        for _ in range(3):
            resp = client.post(
                f'/api/quizzes/{quiz.id}/invitations/resend',
                json={'email': 'alice@example.com'},
                headers=auth_headers,
            )
            assert resp.status_code == 200

        resp = client.post(f'/api/quizzes/{quiz.id}/invitations/resend-otp', json={'email': 'alice@example.com'})
        assert resp.status_code == 429

    def test_internal_errors_are_generic_for_students(self, client, services, make_quiz, start_attempt, monkeypatch):
        attempt_id = start_attempt(make_quiz())['attemptId']

        def boom(*args, **kwargs):
            raise Internal('database exploded', 'StorageFailure')

        monkeypatch.setattr(services.attempts, 'status', boom)
        resp = client.get(f'/api/attempts/{attempt_id}/status')

        assert resp.status_code == 500
        body = resp.get_json()
        assert body['code'] == 'StorageFailure'
        assert body['message'] == GENERIC_STUDENT_MESSAGE

    def test_unknown_attempt(self, client, app):
        resp = client.get('/api/attempts/999/status')
        assert resp.status_code == 404
        assert resp.get_json()['code'] == 'AttemptNotFound'


class TestSocketChannel:
    def test_finish_over_socket(self, app, make_quiz, start_attempt, answers_for):
        quiz = make_quiz()
        attempt_id = start_attempt(quiz)['attemptId']
        answers = [{'questionId': a.question_id, 'selectedIndex': a.selected_index} for a in answers_for(quiz)]
        socket = socketio.test_client(app)

        ack = socket.emit('finish_attempt', {'attemptId': attempt_id, 'answers': answers}, callback=True)
        assert ack == {'success': True, 'correctCount': 3, 'totalQuestions': 3}

        ack = socket.emit('finish_attempt', {'attemptId': attempt_id, 'answers': answers}, callback=True)
        assert ack == {'success': False, 'code': 'AttemptAlreadyEnded'}
        socket.disconnect()

    def test_suspicious_event_over_socket(self, app, make_quiz, start_attempt):
        attempt_id = start_attempt(make_quiz())['attemptId']
        socket = socketio.test_client(app)

        ack = socket.emit('suspicious_event', {'attemptId': attempt_id, 'type': 'tab_switch'}, callback=True)

        assert ack == {'success': True, 'status': 'logged'}
        assert db.session.get(Attempt, attempt_id).suspicious_events_count == 1
        socket.disconnect()
