from flask import Blueprint, jsonify, request, current_app
from flask_login import login_required, current_user
from battle_quiz import db
from battle_quiz.models import Quiz, BattleStats
from battle_quiz.services.battle import matchmaker, orchestrator, questions, scoring, store, wallet
from battle_quiz.services.battle.errors import BattleError


battle = Blueprint('battle', __name__)


@battle.errorhandler(BattleError)
def handle_battle_error(exc):
    db.session.rollback()
    current_app.logger.info(f"[api-error] path={request.path} code={exc.code} message={exc.message}")
    return jsonify(exc.to_dict()), exc.status_code


def _int_arg(data, *names):
    for name in names:
        value = data.get(name)
        if value is not None:
            try:
                return int(value)
            except (TypeError, ValueError):
                return None
    return None


@battle.route('/quizzes', methods=['GET'])
@login_required
def list_quizzes():
    """Active quizzes with their entry amount and the prize a winner takes home."""
    fraction = current_app.config.get('PAYOUT_FRACTION', '0.85')
    out = []
    for quiz in Quiz.query.filter_by(is_active=True).order_by(Quiz.entry_amount, Quiz.id).all():
        payload = quiz.to_dict()
        payload['prize_amount'] = str(scoring.prize_pool(quiz.entry_amount, fraction))
        out.append(payload)
    return jsonify(out)


@battle.route('/quizzes/<int:quiz_id>/questions', methods=['GET'])
@login_required
def quiz_questions(quiz_id):
    quiz = store.get_quiz(quiz_id)
    items = questions.get_questions(quiz.id)
    return jsonify({
        'quiz': quiz.to_dict(),
        'questions': [q.public_dict(idx) for idx, q in enumerate(items)],
    })


@battle.route('/join', methods=['POST'])
@login_required
def join():
    data = request.get_json(silent=True) or {}
    quiz_id = _int_arg(data, 'quizId', 'quiz_id')
    if quiz_id is None:
        return jsonify({'error': 'bad_request', 'message': 'Quiz ID is required.'}), 400
    opponent_id = _int_arg(data, 'opponentId', 'opponent_id')
    result = matchmaker.join(quiz_id, current_user.id, opponent_id)
    if result.status == 'matched':
        message = 'Opponent found! Match starting...'
    else:
        message = 'Waiting for opponent...'
    return jsonify({'message': message, **result.to_dict()}), 200


@battle.route('/leave', methods=['POST'])
@login_required
def leave():
    data = request.get_json(silent=True) or {}
    quiz_id = _int_arg(data, 'quizId', 'quiz_id')
    if quiz_id is None:
        return jsonify({'error': 'bad_request', 'message': 'Quiz ID is required.'}), 400
    matchmaker.cancel(quiz_id, current_user.id)
    return jsonify({'message': 'Left the waiting pool; entry fee refunded.', 'quizId': quiz_id})


@battle.route('/matches/<int:match_id>', methods=['GET'])
@login_required
def match_detail(match_id):
    return jsonify({'match': orchestrator.match_view(match_id, current_user.id)})


@battle.route('/matches/<int:match_id>/submit', methods=['POST'])
@login_required
def submit_answer(match_id):
    data = request.get_json(silent=True) or {}
    question_id = _int_arg(data, 'questionId', 'question_id')
    selected = _int_arg(data, 'selectedOption', 'selected_option')
    if question_id is None or selected is None:
        return jsonify({'error': 'bad_request', 'message': 'Question ID and selected option are required.'}), 400
    outcome = orchestrator.submit_answer(match_id, current_user.id, question_id, selected,
                                         time_taken=data.get('timeTaken'))
    return jsonify({'message': 'Answer submitted successfully!', **outcome.to_dict()})


@battle.route('/wallet', methods=['GET'])
@login_required
def wallet_summary():
    return jsonify({
        'balance': str(wallet.balance(current_user.id)),
        'transactions': [t.to_dict() for t in wallet.recent_transactions(current_user.id)],
    })


@battle.route('/stats', methods=['GET'])
@login_required
def my_stats():
    stats = db.session.get(BattleStats, current_user.id)
    if not stats:
        return jsonify({
            'user_id': current_user.id, 'total_matches': 0, 'wins': 0, 'losses': 0, 'ties': 0,
            'win_rate': 0.0, 'current_streak': 0, 'best_streak': 0, 'total_winnings': '0.00',
        })
    return jsonify(stats.to_dict())


@battle.route('/leaderboard', methods=['GET'])
@login_required
def leaderboard():
    try:
        limit = min(100, max(1, int(request.args.get('limit', 50))))
    except ValueError:
        limit = 50
    return jsonify(scoring.leaderboard(limit))
