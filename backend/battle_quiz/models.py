from battle_quiz import db, bcrypt
from flask_login import UserMixin
from datetime import datetime, timezone
from decimal import Decimal
import json


def utcnow():
    """Naive UTC timestamp; SQLite drops tzinfo so everything is stored naive."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _money(value):
    if value is None:
        return None
    return str(Decimal(value).quantize(Decimal('0.01')))


def _iso(dt):
    return dt.isoformat() if dt else None


class User(UserMixin, db.Model):
    __tablename__ = 'user'
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(64), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(256), nullable=False)
    wallet_balance = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal('0.00'))

    __table_args__ = (
        db.CheckConstraint('wallet_balance >= 0', name='ck_user_wallet_non_negative'),
    )

    def set_password(self, password):
        self.password_hash = bcrypt.generate_password_hash(password).decode('utf-8')

    def check_password(self, password):
        return bcrypt.check_password_hash(self.password_hash, password)

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'wallet_balance': _money(self.wallet_balance),
        }


class Quiz(db.Model):
    __tablename__ = 'quiz'
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(128), nullable=False)
    entry_amount = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal('0.00'))
    question_count = db.Column(db.Integer, nullable=False, default=5)
    time_per_question = db.Column(db.Integer, nullable=False, default=15)
    max_players = db.Column(db.Integer, nullable=False, default=2)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    questions = db.relationship('Question', back_populates='quiz', order_by='Question.position')

    __table_args__ = (
        db.CheckConstraint('entry_amount >= 0', name='ck_quiz_entry_non_negative'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'entry_amount': _money(self.entry_amount),
            'question_count': self.question_count,
            'time_per_question': self.time_per_question,
            'max_players': self.max_players,
            'is_active': self.is_active,
        }


class Question(db.Model):
    __tablename__ = 'question'
    id = db.Column(db.Integer, primary_key=True)
    quiz_id = db.Column(db.Integer, db.ForeignKey('quiz.id'), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False, default=0)
    text = db.Column(db.Text, nullable=False)
    options = db.Column(db.Text, nullable=False)  # JSON-encoded list of 4 strings
    correct_index = db.Column(db.Integer, nullable=False)
    marks = db.Column(db.Integer, nullable=False, default=1)
    quiz = db.relationship('Quiz', back_populates='questions')

    @property
    def option_list(self):
        try:
            return json.loads(self.options or '[]')
        except ValueError:
            return []


class Participant(db.Model):
    __tablename__ = 'participant'
    WAITING = 'WAITING'
    PLAYING = 'PLAYING'
    DONE = 'DONE'
    ACTIVE_STATUSES = (WAITING, PLAYING)

    id = db.Column(db.Integer, primary_key=True)
    quiz_id = db.Column(db.Integer, db.ForeignKey('quiz.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    status = db.Column(db.String(16), nullable=False, default=WAITING)
    match_id = db.Column(db.Integer, db.ForeignKey('battle_match.id'), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # A user holds at most one WAITING/PLAYING entry per quiz
    __table_args__ = (
        db.Index(
            'uq_participant_active', 'quiz_id', 'user_id', unique=True,
            sqlite_where=db.text("status IN ('WAITING', 'PLAYING')"),
            postgresql_where=db.text("status IN ('WAITING', 'PLAYING')"),
        ),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'quiz_id': self.quiz_id,
            'user_id': self.user_id,
            'status': self.status,
            'match_id': self.match_id,
            'answers': [a.to_dict() for a in self.answers()],
        }

    def answers(self):
        if not self.match_id:
            return []
        return (AnswerRecord.query
                .filter_by(match_id=self.match_id, user_id=self.user_id)
                .order_by(AnswerRecord.id)
                .all())


class Match(db.Model):
    __tablename__ = 'battle_match'
    STARTING = 'STARTING'
    PLAYING = 'PLAYING'
    FINISHED = 'FINISHED'
    ABANDONED = 'ABANDONED'
    ACTIVE_STATUSES = (STARTING, PLAYING)

    PAYOUT_NONE = 'NONE'
    PAYOUT_PENDING = 'PENDING'
    PAYOUT_PAID = 'PAID'

    id = db.Column(db.Integer, primary_key=True)
    quiz_id = db.Column(db.Integer, db.ForeignKey('quiz.id'), nullable=False, index=True)
    player1_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    player2_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    status = db.Column(db.String(16), nullable=False, default=STARTING)
    current_round = db.Column(db.Integer, nullable=False, default=0)
    total_rounds = db.Column(db.Integer, nullable=False)
    player1_score = db.Column(db.Integer, nullable=False, default=0)
    player2_score = db.Column(db.Integer, nullable=False, default=0)
    winner_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    entry_amount = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal('0.00'))
    prize_amount = db.Column(db.Numeric(12, 2), nullable=True)
    payout_status = db.Column(db.String(16), nullable=False, default=PAYOUT_NONE)
    start_time = db.Column(db.DateTime, nullable=False, default=utcnow)
    end_time = db.Column(db.DateTime, nullable=True)
    last_activity_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    end_reason = db.Column(db.String(32), nullable=True)
    version = db.Column(db.Integer, nullable=False, default=0)

    __table_args__ = (
        db.CheckConstraint('player1_id <> player2_id', name='ck_match_distinct_players'),
        db.CheckConstraint('current_round >= 0 AND current_round <= total_rounds', name='ck_match_round_range'),
    )

    @property
    def player_ids(self):
        return (self.player1_id, self.player2_id)

    def is_player(self, user_id):
        return user_id in self.player_ids

    def opponent_of(self, user_id):
        return self.player2_id if user_id == self.player1_id else self.player1_id

    def score_of(self, user_id):
        return self.player1_score if user_id == self.player1_id else self.player2_score

    def to_dict(self):
        return {
            'id': self.id,
            'quiz_id': self.quiz_id,
            'player1_id': self.player1_id,
            'player2_id': self.player2_id,
            'status': self.status,
            'current_round': self.current_round,
            'total_rounds': self.total_rounds,
            'player1_score': self.player1_score,
            'player2_score': self.player2_score,
            'winner_id': self.winner_id,
            'prize_amount': _money(self.prize_amount),
            'payout_status': self.payout_status,
            'start_time': _iso(self.start_time),
            'end_time': _iso(self.end_time),
            'end_reason': self.end_reason,
        }


class AnswerRecord(db.Model):
    __tablename__ = 'answer_record'
    id = db.Column(db.Integer, primary_key=True)
    match_id = db.Column(db.Integer, db.ForeignKey('battle_match.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    question_id = db.Column(db.Integer, db.ForeignKey('question.id'), nullable=False)
    selected_option = db.Column(db.Integer, nullable=False)
    is_correct = db.Column(db.Boolean, nullable=False, default=False)
    points = db.Column(db.Integer, nullable=False, default=0)
    time_taken = db.Column(db.Float, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        db.UniqueConstraint('match_id', 'user_id', 'question_id', name='uq_answer_once'),
    )

    def to_dict(self):
        return {
            'question_id': self.question_id,
            'selected_option': self.selected_option,
            'is_correct': self.is_correct,
            'points': self.points,
            'time_taken': self.time_taken,
        }


class Transaction(db.Model):
    __tablename__ = 'wallet_transaction'
    ENTRY = 'BATTLE_QUIZ_ENTRY'
    WIN = 'BATTLE_QUIZ_WIN'
    REFUND = 'BATTLE_QUIZ_REFUND'
    COMPLETED = 'COMPLETED'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    kind = db.Column(db.String(32), nullable=False)
    status = db.Column(db.String(16), nullable=False, default=COMPLETED)
    quiz_id = db.Column(db.Integer, db.ForeignKey('quiz.id'), nullable=True)
    match_id = db.Column(db.Integer, db.ForeignKey('battle_match.id'), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'amount': _money(self.amount),
            'kind': self.kind,
            'status': self.status,
            'quiz_id': self.quiz_id,
            'match_id': self.match_id,
            'created_at': _iso(self.created_at),
        }


class WinnerRecord(db.Model):
    __tablename__ = 'winner_record'
    id = db.Column(db.Integer, primary_key=True)
    quiz_id = db.Column(db.Integer, db.ForeignKey('quiz.id'), nullable=False)
    match_id = db.Column(db.Integer, db.ForeignKey('battle_match.id'), nullable=False, unique=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    rank = db.Column(db.Integer, nullable=False, default=1)
    prize_amount = db.Column(db.Numeric(12, 2), nullable=False)
    paid = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)


class BattleStats(db.Model):
    __tablename__ = 'battle_stats'
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), primary_key=True)
    total_matches = db.Column(db.Integer, nullable=False, default=0)
    wins = db.Column(db.Integer, nullable=False, default=0)
    losses = db.Column(db.Integer, nullable=False, default=0)
    ties = db.Column(db.Integer, nullable=False, default=0)
    current_streak = db.Column(db.Integer, nullable=False, default=0)
    best_streak = db.Column(db.Integer, nullable=False, default=0)
    total_winnings = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal('0.00'))
    user = db.relationship('User')

    @property
    def win_rate(self):
        if not self.total_matches:
            return 0.0
        return round(100.0 * self.wins / self.total_matches, 2)

    def to_dict(self):
        return {
            'user_id': self.user_id,
            'total_matches': self.total_matches,
            'wins': self.wins,
            'losses': self.losses,
            'ties': self.ties,
            'win_rate': self.win_rate,
            'current_streak': self.current_streak,
            'best_streak': self.best_streak,
            'total_winnings': _money(self.total_winnings),
        }
