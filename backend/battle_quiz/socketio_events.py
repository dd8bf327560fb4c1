from flask_socketio import join_room, emit, disconnect
from flask_login import current_user
from battle_quiz import socketio, db
from flask import current_app, request
from battle_quiz.services.battle import matchmaker, orchestrator, presence, questions, store
from battle_quiz.services.battle.errors import BattleError, DuplicateAnswer
from battle_quiz.services.battle.notify import WS_NAMESPACE, push, user_room
from typing import Dict


_sid_to_user: Dict[str, int] = {}
_user_to_sid: Dict[int, str] = {}


def _get_sid() -> str:
    # type: ignore: request.sid exists in Socket.IO context
    return request.sid  # type: ignore


def _current_user_id():
    return _sid_to_user.get(_get_sid())


def _emit_error(exc: BattleError) -> None:
    emit('error', {'code': exc.code, 'message': exc.message})


def _int_field(data, *names):
    for name in names:
        value = (data or {}).get(name)
        if value is not None:
            try:
                return int(value)
            except (TypeError, ValueError):
                return None
    return None


def handle_connect(auth=None):
    if not current_user.is_authenticated:
        return False
    user_id = current_user.id
    sid = _get_sid()
    previous = _user_to_sid.get(user_id)
    if previous and previous != sid:
        current_app.logger.info(f"[ws-replace] user={user_id} old_sid={previous} new_sid={sid}")
        # Unmap first so the old socket's disconnect handler is a no-op
        _sid_to_user.pop(previous, None)
        disconnect(sid=previous, namespace=WS_NAMESPACE)
    _sid_to_user[sid] = user_id
    _user_to_sid[user_id] = sid
    join_room(user_room(user_id))
    emit('connected', {'userId': user_id})
    current_app.logger.info(f"[ws-connect] user={user_id} sid={sid}")

    # Re-associate with an in-progress match
    presence.mark_connected(user_id)
    match = store.find_active_match(user_id)
    if match:
        opponent_id = match.opponent_of(user_id)
        emit('match_resumed', {
            'matchId': match.id,
            'opponentId': opponent_id,
            'match': orchestrator.match_view(match.id, user_id),
        })
        push('opponent_reconnected', {'matchId': match.id}, opponent_id)


def handle_disconnect(*args):
    sid = _get_sid()
    user_id = _sid_to_user.pop(sid, None)
    if user_id is None:
        return
    if _user_to_sid.get(user_id) != sid:
        # A newer connection for this user is still live
        return
    _user_to_sid.pop(user_id, None)
    current_app.logger.info(f"[ws-disconnect] user={user_id} sid={sid}")
    # Nobody should be paired against a player who is gone
    for entry in store.waiting_entries(user_id):
        try:
            matchmaker.cancel(entry.quiz_id, user_id)
        except BattleError as exc:
            # Paired in the meantime; the match check below covers it
            db.session.rollback()
            current_app.logger.info(f"[ws-disconnect-cancel-skip] user={user_id} quiz={entry.quiz_id} error={exc.code}")
    match = store.find_active_match(user_id)
    # Without a match this only marks the user offline; the grace starts if they get paired
    deadline = presence.mark_disconnected(user_id, match.id if match else None)
    if not match:
        return
    # The match stays open; the sweeper voids it if the grace period lapses
    push('opponent_disconnected', {'matchId': match.id, 'reconnectDeadline': deadline}, match.opponent_of(user_id))


def handle_join_matchmaking(data):
    user_id = _current_user_id()
    quiz_id = _int_field(data, 'quizId', 'quiz_id')
    if quiz_id is None:
        emit('error', {'code': 'bad_request', 'message': 'quizId is required'})
        return
    opponent_id = _int_field(data, 'opponentId', 'opponent_id')
    try:
        result = matchmaker.join(quiz_id, user_id, opponent_id)
    except BattleError as exc:
        db.session.rollback()
        _emit_error(exc)
        return
    if result.status == 'waiting':
        emit('waiting', {'quizId': quiz_id, 'participantId': result.participant_id})
    # 'matched' reaches both players through their user rooms


def handle_leave_matchmaking(data):
    user_id = _current_user_id()
    quiz_id = _int_field(data, 'quizId', 'quiz_id')
    if quiz_id is None:
        emit('error', {'code': 'bad_request', 'message': 'quizId is required'})
        return
    try:
        matchmaker.cancel(quiz_id, user_id)
    except BattleError as exc:
        db.session.rollback()
        _emit_error(exc)
        return
    emit('left', {'quizId': quiz_id})


def handle_answer(data):
    user_id = _current_user_id()
    match_id = _int_field(data, 'matchId', 'match_id')
    question_index = _int_field(data, 'questionIndex', 'questionIdx')
    option_index = _int_field(data, 'optionIndex', 'answerIndex')
    if match_id is None or question_index is None or option_index is None:
        emit('error', {'code': 'bad_request', 'message': 'matchId, questionIndex and optionIndex are required'})
        return
    try:
        match = store.get_match(match_id)
        question = questions.question_at(match.quiz_id, question_index)
        if not question:
            emit('error', {'code': 'not_found', 'message': 'Question not found'})
            return
        outcome = orchestrator.submit_answer(match_id, user_id, question.id, option_index,
                                             time_taken=(data or {}).get('timeTaken'))
    except DuplicateAnswer:
        # The first answer already counted; nothing to tell the player
        db.session.rollback()
        current_app.logger.info(f"[answer-duplicate] match={match_id} user={user_id} index={question_index}")
        return
    except BattleError as exc:
        db.session.rollback()
        _emit_error(exc)
        return
    emit('answer_result', outcome.to_dict())


def handle_ping(data=None):
    emit('pong', data or {})


def register_socketio_handlers() -> None:
    """Register Socket.IO event handlers on the '/ws' namespace."""
    socketio.on_event('connect', handle_connect, namespace=WS_NAMESPACE)
    socketio.on_event('disconnect', handle_disconnect, namespace=WS_NAMESPACE)
    socketio.on_event('join_matchmaking', handle_join_matchmaking, namespace=WS_NAMESPACE)
    socketio.on_event('leave_matchmaking', handle_leave_matchmaking, namespace=WS_NAMESPACE)
    socketio.on_event('answer', handle_answer, namespace=WS_NAMESPACE)
    socketio.on_event('ping', handle_ping, namespace=WS_NAMESPACE)


def reset() -> None:
    _sid_to_user.clear()
    _user_to_sid.clear()
