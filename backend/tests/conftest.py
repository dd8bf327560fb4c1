import os
import sys
import json
from decimal import Decimal
import pytest

# Ensure the backend root (containing the `battle_quiz` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from flask import g
from flask.testing import FlaskClient

from battle_quiz import create_app, db, socketio


def _forget_loaded_user():
    # The test's app context (and so ``g``) outlives every request, and
    # Flask-Login caches the loaded user on ``g``
    g.pop('_login_user', None)


class SessionClient(FlaskClient):
    """Test client whose requests only ever see their own cookie session."""

    def open(self, *args, **kwargs):
        _forget_loaded_user()
        try:
            return super().open(*args, **kwargs)
        finally:
            _forget_loaded_user()


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    WTF_CSRF_ENABLED = False
    BCRYPT_LOG_ROUNDS = 4
    CORS_ORIGINS = ['http://localhost:3000']
    PAYOUT_FRACTION = '0.85'
    WAITING_TIMEOUT_SEC = 120
    DISCONNECT_GRACE_SEC = 30
    ABANDON_TIMEOUT_SEC = 600
    CONFLICT_RETRY_LIMIT = 3
    QUESTION_CACHE_TTL_SEC = 300
    SWEEP_INTERVAL_SEC = 0
    PAYOUT_MAX_RETRIES = 3


def _reset_ephemeral_state():
    from battle_quiz import socketio_events
    from battle_quiz.services.battle import presence, questions, sweeper
    questions.invalidate()
    presence.reset()
    sweeper.reset()
    socketio_events.reset()


@pytest.fixture()
def flask_app():
    application = create_app(TestConfig)
    application.test_client_class = SessionClient
    with application.app_context():
        # Ensure models are imported so tables are created
        import battle_quiz.models  # noqa: F401
        db.create_all()
        _reset_ephemeral_state()
        yield application
        db.session.remove()
        db.drop_all()
    _reset_ephemeral_state()


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def make_user(flask_app):
    from battle_quiz.models import User

    def _make(username, balance='100.00', password='password'):
        user = User(username=username, wallet_balance=Decimal(balance))
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        return user.id

    return _make


@pytest.fixture()
def make_quiz(flask_app):
    from battle_quiz.models import Quiz, Question

    def _make(entry='10.00', question_count=5, correct=None, marks=None, is_active=True, title='Duel'):
        correct = correct if correct is not None else [0] * question_count
        marks = marks if marks is not None else [1] * question_count
        quiz = Quiz(title=title, entry_amount=Decimal(entry), question_count=question_count, is_active=is_active)
        db.session.add(quiz)
        db.session.flush()
        question_ids = []
        for i in range(question_count):
            q = Question(
                quiz_id=quiz.id,
                position=i,
                text=f'Q{i + 1}',
                options=json.dumps(['a', 'b', 'c', 'd']),
                correct_index=correct[i],
                marks=marks[i],
            )
            db.session.add(q)
            db.session.flush()
            question_ids.append(q.id)
        db.session.commit()
        return quiz.id, question_ids

    return _make


@pytest.fixture()
def balance_of(flask_app):
    from battle_quiz.services.battle import wallet

    def _balance(user_id):
        return wallet.balance(user_id)

    return _balance


@pytest.fixture()
def login(flask_app):
    """Return a Flask test client logged in as ``username``."""
    def _login(username, password='password'):
        http = flask_app.test_client()
        res = http.post('/login', json={'username': username, 'password': password})
        assert res.status_code == 200
        return http

    return _login


@pytest.fixture()
def ws_client(flask_app):
    """Socket.IO test client sharing the cookies of a logged-in Flask client."""
    clients = []

    def _connect(http_client):
        _forget_loaded_user()
        try:
            test_client = socketio.test_client(
                flask_app,
                flask_test_client=http_client,
                namespace='/ws'
            )
        finally:
            _forget_loaded_user()
        clients.append(test_client)
        return test_client

    yield _connect
    for test_client in clients:
        try:
            if test_client.is_connected('/ws'):
                test_client.disconnect(namespace='/ws')
        except Exception:
            pass
