from decimal import Decimal

import pytest

from battle_quiz import socketio_events
from battle_quiz.models import Match
from battle_quiz.services.battle import presence, store, sweeper


def _events(sio_client, name=None):
    received = sio_client.get_received('/ws')
    if name is None:
        return received
    return [pkt['args'][0] if pkt['args'] else None for pkt in received if pkt['name'] == name]


@pytest.fixture()
def players(make_user, make_quiz, login, ws_client):
    a = make_user('alice')
    b = make_user('bob')
    quiz_id, qids = make_quiz(question_count=2, correct=[1, 2])
    alice_http, bob_http = login('alice'), login('bob')
    alice_ws, bob_ws = ws_client(alice_http), ws_client(bob_http)
    return {
        'a': a, 'b': b, 'quiz_id': quiz_id, 'qids': qids,
        'alice_http': alice_http, 'bob_http': bob_http,
        'alice_ws': alice_ws, 'bob_ws': bob_ws,
    }


def _start(players):
    players['alice_ws'].emit('join_matchmaking', {'quizId': players['quiz_id']}, namespace='/ws')
    players['bob_ws'].emit('join_matchmaking', {'quizId': players['quiz_id']}, namespace='/ws')
    match = store.find_active_match(players['a'])
    return match.id


def test_unauthenticated_connect_refused(flask_app, make_user, login, ws_client):
    make_user('alice')
    # A logged-in client earlier in the same app context must not leak into this one
    login('alice').get('/check_login')
    try:
        anon = ws_client(flask_app.test_client())
    except (RuntimeError, ConnectionRefusedError):
        return
    assert not anon.is_connected('/ws')


def test_connect_acknowledged(players):
    connected = _events(players['alice_ws'], 'connected')
    assert connected == [{'userId': players['a']}]


def test_waiting_then_matched_for_both(players):
    _events(players['alice_ws'])
    _events(players['bob_ws'])

    players['alice_ws'].emit('join_matchmaking', {'quizId': players['quiz_id']}, namespace='/ws')
    waiting = _events(players['alice_ws'], 'waiting')
    assert waiting and waiting[0]['quizId'] == players['quiz_id']

    players['bob_ws'].emit('join_matchmaking', {'quizId': players['quiz_id']}, namespace='/ws')
    alice_matched = _events(players['alice_ws'], 'matched')
    bob_matched = _events(players['bob_ws'], 'matched')
    assert alice_matched[0]['opponentId'] == players['b']
    assert bob_matched[0]['opponentId'] == players['a']
    assert alice_matched[0]['matchId'] == bob_matched[0]['matchId']
    assert bob_matched[0]['totalRounds'] == 2


def test_join_error_is_reported(players):
    _events(players['alice_ws'])
    players['alice_ws'].emit('join_matchmaking', {'quizId': 4242}, namespace='/ws')
    errors = _events(players['alice_ws'], 'error')
    assert errors[0]['code'] == 'not_found'
    players['alice_ws'].emit('join_matchmaking', {}, namespace='/ws')
    assert _events(players['alice_ws'], 'error')[0]['code'] == 'bad_request'


def test_leave_matchmaking(players):
    players['alice_ws'].emit('join_matchmaking', {'quizId': players['quiz_id']}, namespace='/ws')
    _events(players['alice_ws'])
    players['alice_ws'].emit('leave_matchmaking', {'quizId': players['quiz_id']}, namespace='/ws')
    assert _events(players['alice_ws'], 'left') == [{'quizId': players['quiz_id']}]


def test_answers_and_final_result(players):
    match_id = _start(players)
    _events(players['alice_ws'])
    _events(players['bob_ws'])

    players['alice_ws'].emit('answer', {'matchId': match_id, 'questionIndex': 0, 'optionIndex': 1}, namespace='/ws')
    result = _events(players['alice_ws'], 'answer_result')
    assert result[0]['isCorrect'] is True
    assert result[0]['questionIndex'] == 0
    assert _events(players['bob_ws'], 'opponent_answer') == [{'matchId': match_id, 'questionIndex': 0}]

    # Resubmitting the same question is silently ignored
    players['alice_ws'].emit('answer', {'matchId': match_id, 'questionIndex': 0, 'optionIndex': 1}, namespace='/ws')
    assert _events(players['alice_ws']) == []

    players['bob_ws'].emit('answer', {'matchId': match_id, 'questionIndex': 1, 'optionIndex': 0}, namespace='/ws')
    bob_received = _events(players['bob_ws'])
    bob_result = [p['args'][0] for p in bob_received if p['name'] == 'quiz_result']
    alice_result = _events(players['alice_ws'], 'quiz_result')
    assert alice_result[0]['winner'] == 'you'
    assert alice_result[0]['yourScore'] == 1
    assert alice_result[0]['opponentScore'] == 0
    assert alice_result[0]['correctAnswers'] == [1, 2]
    assert alice_result[0]['prizeAmount'] == '17.00'
    assert bob_result[0]['winner'] == 'opponent'
    assert store.get_match(match_id, fresh=True).status == Match.FINISHED

    # Match is over: further answers are rejected
    players['bob_ws'].emit('answer', {'matchId': match_id, 'questionIndex': 0, 'optionIndex': 1}, namespace='/ws')
    assert _events(players['bob_ws'], 'error')[0]['code'] == 'invalid_transition'


def test_answer_for_unknown_index(players):
    match_id = _start(players)
    _events(players['alice_ws'])
    players['alice_ws'].emit('answer', {'matchId': match_id, 'questionIndex': 9, 'optionIndex': 0}, namespace='/ws')
    assert _events(players['alice_ws'], 'error')[0]['code'] == 'not_found'


def test_disconnect_and_resume(players, ws_client):
    match_id = _start(players)
    _events(players['alice_ws'])

    players['bob_ws'].disconnect(namespace='/ws')
    dropped = _events(players['alice_ws'], 'opponent_disconnected')
    assert dropped[0]['matchId'] == match_id
    assert presence.is_disconnected(players['b'])
    assert store.get_match(match_id, fresh=True).status == Match.PLAYING

    bob_again = ws_client(players['bob_http'])
    resumed = _events(bob_again, 'match_resumed')
    assert resumed[0]['matchId'] == match_id
    assert resumed[0]['opponentId'] == players['a']
    assert resumed[0]['match']['status'] == Match.PLAYING
    assert not presence.is_disconnected(players['b'])
    assert _events(players['alice_ws'], 'opponent_reconnected') == [{'matchId': match_id}]


def test_ping_pong(players):
    _events(players['bob_ws'])
    players['bob_ws'].emit('ping', {'t': 1}, namespace='/ws')
    assert _events(players['bob_ws'], 'pong') == [{'t': 1}]


def test_matched_delivers_questions_without_keys(players):
    players['alice_ws'].emit('join_matchmaking', {'quizId': players['quiz_id']}, namespace='/ws')
    players['bob_ws'].emit('join_matchmaking', {'quizId': players['quiz_id']}, namespace='/ws')
    for client in (players['alice_ws'], players['bob_ws']):
        matched = _events(client, 'matched')[0]
        assert matched['timePerQuestion'] == 15
        assert [q['id'] for q in matched['questions']] == players['qids']
        assert [q['index'] for q in matched['questions']] == [0, 1]
        assert matched['questions'][0]['options'] == ['a', 'b', 'c', 'd']
        assert all('correct_index' not in q for q in matched['questions'])


def test_bad_time_taken_is_reported(players):
    match_id = _start(players)
    _events(players['alice_ws'])
    players['alice_ws'].emit('answer', {'matchId': match_id, 'questionIndex': 0, 'optionIndex': 1,
                                        'timeTaken': {'x': 1}}, namespace='/ws')
    assert _events(players['alice_ws'], 'error')[0]['code'] == 'bad_request'
    # The handler survived and the answer can still be sent properly
    players['alice_ws'].emit('answer', {'matchId': match_id, 'questionIndex': 0, 'optionIndex': 1,
                                        'timeTaken': '3.5'}, namespace='/ws')
    assert _events(players['alice_ws'], 'answer_result')[0]['isCorrect'] is True


def test_dropping_while_waiting_leaves_the_pool(players, balance_of):
    players['alice_ws'].emit('join_matchmaking', {'quizId': players['quiz_id']}, namespace='/ws')
    assert balance_of(players['a']) == Decimal('90.00')

    players['alice_ws'].disconnect(namespace='/ws')
    assert balance_of(players['a']) == Decimal('100.00')
    assert store.waiting_entries(players['a']) == []

    _events(players['bob_ws'])
    players['bob_ws'].emit('join_matchmaking', {'quizId': players['quiz_id']}, namespace='/ws')
    assert _events(players['bob_ws'], 'waiting')
    assert store.find_active_match(players['b']) is None


def test_offline_player_paired_later_gets_grace(players):
    players['alice_ws'].disconnect(namespace='/ws')
    assert presence.is_disconnected(players['a'])
    assert presence.lapsed(10 ** 12) == []

    # alice queues over HTTP without a live socket
    res = players['alice_http'].post('/api/battle/join', json={'quizId': players['quiz_id']})
    assert res.get_json()['status'] == 'waiting'
    _events(players['bob_ws'])
    players['bob_ws'].emit('join_matchmaking', {'quizId': players['quiz_id']}, namespace='/ws')

    match = store.find_active_match(players['b'])
    dropped = _events(players['bob_ws'], 'opponent_disconnected')
    assert dropped[0]['matchId'] == match.id
    assert sweeper.abandon_disconnected(dropped[0]['reconnectDeadline'] + 1) == 1
    assert store.get_match(match.id, fresh=True).status == Match.ABANDONED


def test_new_connection_replaces_old_one(players, ws_client):
    first = players['bob_ws']
    second = ws_client(players['bob_http'])
    assert not first.is_connected('/ws')
    assert second.is_connected('/ws')
    assert list(socketio_events._sid_to_user.values()).count(players['b']) == 1
    assert not presence.is_disconnected(players['b'])

    _events(second)
    second.emit('ping', {}, namespace='/ws')
    assert _events(second, 'pong') == [{}]
