"""Socket.IO push channel: JWT-authenticated sockets joined to per-user rooms."""
import logging

import jwt
from flask import request
from flask_socketio import ConnectionRefusedError, SocketIO, emit, join_room

from auth import bearer_token, decode_token
from database import serialize

logger = logging.getLogger(__name__)

socketio = SocketIO()


def user_room(user_id):
    return f"user:{user_id}"


def _handshake_token(auth):
    # token can come via auth payload, query string or Authorization header
    candidates = [
        (auth or {}).get("token") if isinstance(auth, dict) else None,
        request.args.get("token"),
        request.headers.get("Authorization"),
    ]
    for value in candidates:
        if isinstance(value, str) and value:
            return bearer_token(value) if value.startswith("Bearer ") else value
    return None


@socketio.on("connect")
def handle_connect(auth=None):
    token = _handshake_token(auth)
    if not token:
        logger.warning("Socket refused: no token (sid=%s)", request.sid)
        raise ConnectionRefusedError("No token")
    try:
        user = decode_token(token)
    except jwt.InvalidTokenError:
        logger.warning("Socket refused: invalid token (sid=%s)", request.sid)
        raise ConnectionRefusedError("Unauthorized")

    user_id = user.get("id")
    if user_id:
        join_room(user_room(user_id))
    logger.info("Socket connected sid=%s user=%s", request.sid, user_id)
    emit("server:hello", {"message": "Welcome to HackHost realtime"})


@socketio.on("disconnect")
def handle_disconnect(*args):
    logger.info("Socket disconnected sid=%s", request.sid)


def emit_leaderboard_update(event_id, reason):
    try:
        socketio.emit("leaderboard:update", {"event": str(event_id), "reason": reason})
    except Exception:
        logger.exception("leaderboard:update emit failed for event=%s", event_id)


def emit_notification(recipient_ids, notification):
    payload = serialize({
        "_id": notification.get("_id"),
        "title": notification.get("title"),
        "message": notification.get("message"),
        "type": notification.get("type"),
        "link": notification.get("link"),
        "eventId": notification.get("eventId"),
        "createdAt": notification.get("createdAt"),
    })
    for rid in recipient_ids:
        try:
            socketio.emit("notification:new", payload, to=user_room(rid))
        except Exception:
            logger.exception("notification:new emit failed for user=%s", rid)
