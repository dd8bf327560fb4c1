from battle_quiz import socketio

WS_NAMESPACE = '/ws'


def user_room(user_id: int) -> str:
    return f"user:{user_id}"


def push(event: str, payload: dict, user_id: int) -> None:
    # socketio.emit works from HTTP handlers and background tasks alike
    socketio.emit(event, payload, to=user_room(user_id), namespace=WS_NAMESPACE)
