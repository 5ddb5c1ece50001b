import logging
from datetime import datetime, timedelta, timezone
from functools import wraps

import jwt
from flask import g, jsonify, request
from werkzeug.security import check_password_hash, generate_password_hash

from config import Config

logger = logging.getLogger(__name__)

ROLES = ("organizer", "participant", "judge", "admin")


# --- Passwords ---
def hash_password(password):
    return generate_password_hash(password)


def verify_password(hashed, password):
    if not hashed:
        return False
    return check_password_hash(hashed, password)


# --- Tokens ---
def create_token(user):
    payload = {
        "id": str(user["_id"]),
        "role": user.get("role", "participant"),
        "email": user.get("email"),
        "exp": datetime.now(timezone.utc) + timedelta(days=Config.JWT_EXPIRES_DAYS),
    }
    return jwt.encode(payload, Config.JWT_SECRET, algorithm="HS256")


def decode_token(token):
    return jwt.decode(token, Config.JWT_SECRET, algorithms=["HS256"])


def bearer_token(header_value):
    """Extract the token from an `Authorization: Bearer <token>` value."""
    header_value = header_value or ""
    if not header_value.startswith("Bearer "):
        return None
    return header_value[7:].strip() or None


# --- Decorators ---
def token_required(f):
    @wraps(f)
    def wrapper(*args, **kwargs):
        token = bearer_token(request.headers.get("Authorization"))
        if not token:
            return jsonify({"message": "No token provided"}), 401
        try:
            g.user = decode_token(token)
        except jwt.InvalidTokenError:
            return jsonify({"message": "Invalid token"}), 401
        return f(*args, **kwargs)
    return wrapper


def token_optional(f):
    """Attach the bearer user when the token is valid; anonymous otherwise."""
    @wraps(f)
    def wrapper(*args, **kwargs):
        g.user = None
        token = bearer_token(request.headers.get("Authorization"))
        if token:
            try:
                g.user = decode_token(token)
            except jwt.InvalidTokenError:
                logger.debug("Ignoring invalid optional token on %s", request.path)
        return f(*args, **kwargs)
    return wrapper


def roles_required(*roles):
    def decorator(f):
        @wraps(f)
        def wrapper(*args, **kwargs):
            user = getattr(g, "user", None)
            if not user or not user.get("role"):
                return jsonify({"message": "Unauthorized"}), 401
            if user["role"] not in roles:
                return jsonify({"message": "Forbidden"}), 403
            return f(*args, **kwargs)
        return wrapper
    return decorator


def current_user_id():
    user = getattr(g, "user", None)
    return user.get("id") if user else None


def current_role():
    user = getattr(g, "user", None)
    return user.get("role") if user else None
