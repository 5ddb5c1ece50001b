import hashlib
import hmac
import io
import logging
import re
import secrets
import time
from datetime import timedelta

import click
import pandas as pd
from flask import Flask, Response, g, jsonify, request
from flask_cors import CORS
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
from werkzeug.exceptions import HTTPException

from analytics import (
    activity_feed,
    dashboard_summary,
    event_metrics,
    events_overview,
    participation_trends,
    skill_distribution,
    team_suggestions,
)
from auth import (
    create_token,
    current_role,
    current_user_id,
    hash_password,
    roles_required,
    token_optional,
    token_required,
    verify_password,
)
from cloud_storage import UploadError, upload_image
from config import Config
from database import (
    as_utc,
    collection,
    ensure_indexes,
    parse_datetime,
    parse_object_id,
    serialize,
    utcnow,
)
from mailer import MailerError, invite_email, reset_link_email, send_mail
from realtime import emit_leaderboard_update, emit_notification, socketio
from scoring import (
    CRITERIA,
    CRITERION_MAX,
    REVIEW_MAX,
    average_score,
    evaluation_score,
    leaderboard,
    team_score,
    validate_criteria,
)

# --- Logging setup ---
logging.basicConfig(
    level=logging.DEBUG if Config.DEBUG else logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s"
)
logger = logging.getLogger(__name__)

app = Flask(__name__)
app.config.from_object(Config)

if Config.DEBUG or not Config.cors_origins():
    CORS(app)
else:
    CORS(app, origins=Config.cors_origins(), supports_credentials=True)

socketio.init_app(
    app,
    cors_allowed_origins="*" if Config.DEBUG or not Config.cors_origins() else Config.cors_origins(),
    async_mode="threading",
)

if Config.JWT_SECRET == "change-this-in-production" and not Config.DEBUG:
    logger.warning("JWT_SECRET is not set; tokens are signed with the default secret")

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
SELF_SERVICE_ROLES = ("participant", "organizer")
PROFILE_FIELDS = ("name", "organization", "location", "phone", "bio", "avatarUrl", "social")
SOCIAL_KEYS = ("github", "linkedin", "website")
BIO_MAX = 500
MIN_PASSWORD_LENGTH = 6

EVENT_MODES = ("online", "onsite", "hybrid")
EVENT_STATUSES = ("draft", "upcoming", "ongoing", "completed")
PARTICIPANT_TYPES = ("individual", "group")
PRIZE_TYPES = ("cash", "certificate", "goodies", "other")
EVENT_TEXT_FIELDS = (
    "title", "description", "location", "website", "contactName", "contactEmail",
    "contactPhone", "bannerUrl", "rules",
)
EVENT_DEFAULTS = {
    "mode": "onsite",
    "status": "draft",
    "fees": 0,
    "participantType": "individual",
    "minTeamSize": 1,
    "maxTeamSize": 6,
    "themes": [],
    "tracks": [],
    "rounds": [],
    "prizes": [],
    "sponsors": [],
}

REGISTRATION_TYPES = ("individual", "team")
AGREEMENTS = ("termsAccepted", "codeOfConductAccepted", "dataProcessingAccepted")
NOTIFICATION_TYPES = ("info", "update", "alert")


# --- Request hooks & error handlers ---
@app.after_request
def log_request(response):
    logger.info("%s %s %s %s", request.remote_addr, request.method, request.full_path.rstrip("?"),
                response.status_code)
    return response


@app.errorhandler(404)
def not_found(error):
    return jsonify({"message": "Route not found"}), 404


@app.errorhandler(405)
def method_not_allowed(error):
    return jsonify({"message": "Method not allowed"}), 405


@app.errorhandler(413)
def too_large(error):
    return jsonify({"message": "Request body too large"}), 413


@app.errorhandler(Exception)
def internal_error(error):
    if isinstance(error, HTTPException):
        return jsonify({"message": error.description}), error.code
    logger.exception("Unhandled error on %s %s", request.method, request.path)
    message = str(error) if Config.DEBUG else "Internal server error"
    return jsonify({"message": message}), 500


# --- Helpers ---
def normalize_email(value):
    if not isinstance(value, str):
        return ""
    return value.strip().lower()


def client_ip():
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.remote_addr


def public_user(user):
    if not user:
        return None
    return serialize({k: v for k, v in user.items() if k != "password"})


def user_summary(user):
    return {"id": str(user["_id"]), "name": user.get("name"), "email": user.get("email"), "role": user.get("role")}


def my_id():
    return parse_object_id(current_user_id())


def docs_by_id(name, ids, fields):
    ids = list({i for i in ids if i})
    if not ids:
        return {}
    projection = {f: 1 for f in fields}
    return {d["_id"]: d for d in collection(name).find({"_id": {"$in": ids}}, projection)}


def ref(lookup, oid):
    """Replace an id with the looked-up document (or None) for a response body."""
    doc = lookup.get(oid)
    return serialize(doc) if doc else None


def owns_event(event):
    return current_role() == "admin" or str(event.get("organizer")) == str(current_user_id())


def is_assigned(judge_id, event_id):
    return collection("judge_assignments").find_one({"judge": judge_id, "event": event_id}) is not None


def _number(data, key, minimum=None, integer=False):
    value = data.get(key)
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"{key} must be a number")
    try:
        value = int(value) if integer else float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{key} must be a number")
    if minimum is not None and value < minimum:
        raise ValueError(f"{key} must be at least {minimum}")
    return value


def _date(data, key):
    try:
        return parse_datetime(data.get(key))
    except ValueError:
        raise ValueError(f"Invalid date for {key}")


def _string_list(value, key):
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"{key} must be a list")
    return [str(v).strip() for v in value if str(v).strip()]


def _rounds(value):
    rounds = []
    for item in value or []:
        if not isinstance(item, dict) or not item.get("title"):
            raise ValueError("Each round needs a title")
        start, end = _date(item, "startDate"), _date(item, "endDate")
        if not start or not end:
            raise ValueError("Each round needs a startDate and endDate")
        rounds.append({"title": item["title"], "description": item.get("description", ""),
                       "startDate": start, "endDate": end})
    return rounds


def _prizes(value):
    prizes = []
    for item in value or []:
        if not isinstance(item, dict) or not item.get("title"):
            raise ValueError("Each prize needs a title")
        prize_type = item.get("type") or "cash"
        if prize_type not in PRIZE_TYPES:
            raise ValueError(f"Invalid prize type: {prize_type}")
        prizes.append({"type": prize_type, "title": item["title"], "amount": _number(item, "amount", minimum=0)})
    return prizes


def _sponsors(value):
    sponsors = []
    for item in value or []:
        if not isinstance(item, dict) or not item.get("title"):
            raise ValueError("Each sponsor needs a title")
        sponsors.append({"title": item["title"], "bannerUrl": item.get("bannerUrl")})
    return sponsors


def event_fields(data, existing=None):
    """
    Validate an event payload and return the fields to store.

    With `existing`, the payload is a partial update and the cross-field
    checks run against the merged document.

    Raises:
        ValueError: with the message returned to the client
    """
    fields = {}
    for key in EVENT_TEXT_FIELDS:
        if key in data:
            fields[key] = str(data[key]).strip() if data[key] is not None else None
    for key in ("startDate", "endDate", "registrationDeadline"):
        if key in data:
            fields[key] = _date(data, key)
    for key, allowed in (("mode", EVENT_MODES), ("status", EVENT_STATUSES),
                         ("participantType", PARTICIPANT_TYPES)):
        if key in data:
            if data[key] not in allowed:
                raise ValueError(f"{key} must be one of: {', '.join(allowed)}")
            fields[key] = data[key]
    if "fees" in data:
        fields["fees"] = _number(data, "fees", minimum=0) or 0
    for key, minimum in (("minTeamSize", 1), ("maxTeamSize", 1), ("registrationLimit", 0)):
        if key in data:
            fields[key] = _number(data, key, minimum=minimum, integer=True)
    for key in ("themes", "tracks"):
        if key in data:
            fields[key] = _string_list(data[key], key)
    if "rounds" in data:
        fields["rounds"] = _rounds(data["rounds"])
    if "prizes" in data:
        fields["prizes"] = _prizes(data["prizes"])
    if "sponsors" in data:
        fields["sponsors"] = _sponsors(data["sponsors"])

    merged = dict(EVENT_DEFAULTS, **(existing or {}))
    merged.update(fields)
    for key in ("title", "startDate", "endDate"):
        if not merged.get(key):
            raise ValueError(f"{key} is required")
    if as_utc(merged["endDate"]) < as_utc(merged["startDate"]):
        raise ValueError("endDate must not be before startDate")
    min_size = merged.get("minTeamSize") or 1
    max_size = merged.get("maxTeamSize") or 1
    if max_size < min_size:
        raise ValueError("maxTeamSize must be greater than or equal to minTeamSize")
    return fields


def _pick(source, keys):
    source = source if isinstance(source, dict) else {}
    return {k: source[k] for k in keys if k in source}


def team_doc(team, users=None):
    doc = serialize(team)
    if users is not None:
        doc["members"] = [ref(users, m) for m in team.get("members", []) if m in users]
    return doc


def upsert(name, query, update):
    """Upsert and return the stored document. A concurrent insert of the same
    unique key is retried once as a plain update."""
    try:
        return collection(name).find_one_and_update(
            query, update, upsert=True, return_document=ReturnDocument.AFTER
        )
    except DuplicateKeyError:
        return collection(name).find_one_and_update(
            query, update, upsert=True, return_document=ReturnDocument.AFTER
        )


def upsert_team(name, event, member_id=None):
    update = {
        "$set": {"eventName": event.get("title")},
        "$setOnInsert": {"name": name, "event": event["_id"], "score": 0, "createdAt": utcnow()},
    }
    if member_id:
        update["$addToSet"] = {"members": member_id}
    else:
        update["$setOnInsert"]["members"] = []
    return upsert("teams", {"name": name, "event": event["_id"]}, update)


def recalculate_team_score(event_id, team_id, reason):
    try:
        evals = list(collection("evaluations").find({"event": event_id, "team": team_id}, {"scores": 1}))
        score = team_score(evals)
        if score is not None:
            collection("teams").update_one({"_id": team_id}, {"$set": {"score": score}})
            logger.info("Team %s score set to %s", team_id, score)
    except Exception:
        logger.exception("Team score recalculation failed for team=%s", team_id)
    emit_leaderboard_update(event_id, reason)


# --- Health ---
@app.route("/api/health", methods=["GET"])
def health():
    return jsonify({"status": "ok"})


# --- Subscribers ---
@app.route("/api/subscribers", methods=["POST"])
def subscribe():
    data = request.get_json(silent=True) or {}
    email = normalize_email(data.get("email"))
    if not email or not EMAIL_RE.match(email):
        return jsonify({"message": "Valid email is required"}), 400

    now = utcnow()
    doc = {
        "email": email,
        "source": data.get("source") or "homepage",
        "createdAt": now,
    }
    meta = {"ip": client_ip(), "userAgent": request.headers.get("User-Agent")}
    try:
        before = collection("subscribers").find_one_and_update(
            {"email": email},
            {"$setOnInsert": doc, "$set": {"meta": meta, "updatedAt": now}},
            upsert=True,
            return_document=ReturnDocument.BEFORE,
        )
    except DuplicateKeyError:
        return jsonify({"message": "Already subscribed"}), 200
    except Exception:
        logger.exception("Subscribe failed for %s", email)
        return jsonify({"message": "Failed to subscribe"}), 500

    if before is not None:
        return jsonify({"message": "Already subscribed"}), 200

    created = collection("subscribers").find_one({"email": email}, {"_id": 1})
    logger.info("New subscriber %s (source=%s)", email, doc["source"])
    return jsonify({
        "message": "Subscribed successfully",
        "data": {"id": str(created["_id"]), "email": email},
    }), 201


# --- Auth ---
@app.route("/api/auth/register", methods=["POST"])
def register():
    data = request.get_json(silent=True) or {}
    name = str(data.get("name") or "").strip()
    email = normalize_email(data.get("email"))
    password = data.get("password") or ""
    role = data.get("role") or "participant"

    if not name or not email or not password:
        return jsonify({"message": "Missing required fields"}), 400
    if not EMAIL_RE.match(email):
        return jsonify({"message": "Invalid email"}), 400
    if len(password) < MIN_PASSWORD_LENGTH:
        return jsonify({"message": f"Password must be at least {MIN_PASSWORD_LENGTH} characters"}), 400
    if role not in SELF_SERVICE_ROLES:
        return jsonify({"message": "Invalid role"}), 400

    users = collection("users")
    if users.find_one({"email": email}):
        return jsonify({"message": "Email already in use"}), 409

    now = utcnow()
    user = {
        "name": name,
        "email": email,
        "password": hash_password(password),
        "role": role,
        "organization": data.get("organization"),
        "provider": "local",
        "createdAt": now,
        "updatedAt": now,
    }
    try:
        user["_id"] = users.insert_one(user).inserted_id
    except DuplicateKeyError:
        return jsonify({"message": "Email already in use"}), 409

    logger.info("User registered: %s (%s)", email, role)
    return jsonify({"user": user_summary(user), "token": create_token(user)}), 201


@app.route("/api/auth/login", methods=["POST"])
def login():
    data = request.get_json(silent=True) or {}
    email = normalize_email(data.get("email"))
    password = data.get("password") or ""
    if not email or not password:
        return jsonify({"message": "Missing credentials"}), 400

    user = collection("users").find_one({"email": email})
    if not user or not verify_password(user.get("password"), password):
        return jsonify({"message": "Invalid email or password"}), 401

    return jsonify({"user": user_summary(user), "token": create_token(user)}), 200


@app.route("/api/auth/me", methods=["GET"])
@token_required
def me():
    user = collection("users").find_one({"_id": my_id()}) if my_id() else None
    if not user:
        return jsonify({"message": "User not found"}), 404
    return jsonify({"user": public_user(user)})


@app.route("/api/auth/me", methods=["PUT"])
@token_required
def update_me():
    data = request.get_json(silent=True) or {}
    updates = {k: data[k] for k in PROFILE_FIELDS if k in data}

    if "name" in updates and not str(updates["name"] or "").strip():
        return jsonify({"message": "Name cannot be empty"}), 400
    if updates.get("bio") and len(str(updates["bio"])) > BIO_MAX:
        return jsonify({"message": f"Bio must be at most {BIO_MAX} characters"}), 400
    if "social" in updates:
        if not isinstance(updates["social"], dict):
            return jsonify({"message": "social must be an object"}), 400
        updates["social"] = _pick(updates["social"], SOCIAL_KEYS)

    updates["updatedAt"] = utcnow()
    user = collection("users").find_one_and_update(
        {"_id": my_id()}, {"$set": updates}, return_document=ReturnDocument.AFTER
    )
    if not user:
        return jsonify({"message": "User not found"}), 404
    return jsonify({"user": public_user(user)})


@app.route("/api/auth/me/avatar", methods=["POST"])
@token_required
def upload_avatar():
    file = request.files.get("avatar")
    if not file or not file.filename:
        return jsonify({"message": "No file uploaded"}), 400
    if not (file.mimetype or "").startswith("image/"):
        return jsonify({"message": "Only image files are allowed"}), 400

    content = file.read()
    if len(content) > Config.MAX_IMAGE_SIZE:
        return jsonify({"message": "Image must be 15MB or smaller"}), 400

    try:
        url, public_id = upload_image(content, file.filename, file.mimetype, folder="hackhost/avatars")
    except UploadError as e:
        logger.exception("Avatar upload failed for user=%s", current_user_id())
        return jsonify({"message": str(e)}), 500

    user = collection("users").find_one_and_update(
        {"_id": my_id()},
        {"$set": {"avatarUrl": url, "avatarPublicId": public_id, "updatedAt": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not user:
        return jsonify({"message": "User not found"}), 404
    return jsonify({"user": public_user(user), "avatarUrl": url})


@app.route("/api/auth/me/avatar", methods=["DELETE"])
@token_required
def remove_avatar():
    user = collection("users").find_one_and_update(
        {"_id": my_id()},
        {"$unset": {"avatarUrl": "", "avatarPublicId": ""}, "$set": {"updatedAt": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not user:
        return jsonify({"message": "User not found"}), 404
    return jsonify({"user": public_user(user)})


def _reset_hash(token):
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


@app.route("/api/auth/forgot-password", methods=["POST"])
def forgot_password():
    data = request.get_json(silent=True) or {}
    email = normalize_email(data.get("email"))
    if not email:
        return jsonify({"message": "Email is required"}), 400

    user = collection("users").find_one({"email": email}, {"_id": 1})
    if user:
        token = secrets.token_urlsafe(32)
        verifications = collection("email_verifications")
        verifications.delete_many({"email": email})
        verifications.insert_one({
            "email": email,
            "otpHash": _reset_hash(token),
            "expiresAt": utcnow() + timedelta(minutes=Config.RESET_TOKEN_TTL_MINUTES),
            "createdAt": utcnow(),
        })
        reset_url = f"{Config.FRONTEND_URL.rstrip('/')}/auth/reset-password?token={token}"
        text, html = reset_link_email(reset_url, Config.RESET_TOKEN_TTL_MINUTES)
        try:
            send_mail(email, "Reset your HackHost password", text=text, html=html)
        except Exception:
            logger.exception("Password reset email failed for %s", email)
    else:
        logger.info("Password reset requested for unknown email %s", email)

    return jsonify({"message": "If an account exists for that email, a reset link has been sent"}), 200


@app.route("/api/auth/reset-password", methods=["POST"])
def reset_password():
    data = request.get_json(silent=True) or {}
    token = str(data.get("token") or "").strip()
    password = data.get("password") or ""
    if not token or not password:
        return jsonify({"message": "token and password are required"}), 400
    if len(password) < MIN_PASSWORD_LENGTH:
        return jsonify({"message": f"Password must be at least {MIN_PASSWORD_LENGTH} characters"}), 400

    verifications = collection("email_verifications")
    entry = verifications.find_one({"otpHash": _reset_hash(token)})
    if not entry or as_utc(entry["expiresAt"]) < utcnow():
        return jsonify({"message": "Invalid or expired reset link"}), 400

    result = collection("users").update_one(
        {"email": entry["email"]},
        {"$set": {"password": hash_password(password), "updatedAt": utcnow()}},
    )
    verifications.delete_many({"email": entry["email"]})
    if result.matched_count == 0:
        return jsonify({"message": "Invalid or expired reset link"}), 400

    logger.info("Password reset for %s", entry["email"])
    return jsonify({"message": "Password updated"}), 200


# --- Events ---
@app.route("/api/events", methods=["GET"])
def list_events():
    events = list(collection("events").find().sort("createdAt", -1))
    organizers = docs_by_id("users", [e.get("organizer") for e in events], ("name",))
    out = []
    for ev in events:
        doc = serialize(ev)
        doc["organizer"] = ref(organizers, ev.get("organizer"))
        out.append(doc)
    return jsonify({"events": out})


@app.route("/api/events/<event_id>", methods=["GET"])
def get_event(event_id):
    oid = parse_object_id(event_id)
    if not oid:
        return jsonify({"message": "Invalid event id"}), 400
    event = collection("events").find_one({"_id": oid})
    if not event:
        return jsonify({"message": "Event not found"}), 404
    return jsonify({"event": serialize(event)})


@app.route("/api/events", methods=["POST"])
@token_required
@roles_required("organizer", "admin")
def create_event():
    data = request.get_json(silent=True) or {}
    try:
        fields = event_fields(data)
    except ValueError as e:
        return jsonify({"message": str(e)}), 400

    now = utcnow()
    event = dict(EVENT_DEFAULTS, **fields)
    event.update({"organizer": my_id(), "createdAt": now, "updatedAt": now})
    event["_id"] = collection("events").insert_one(event).inserted_id
    logger.info("Event created: %s (%s) by %s", event["title"], event["_id"], current_user_id())
    return jsonify({"event": serialize(event)}), 201


@app.route("/api/events/<event_id>", methods=["PUT"])
@token_required
@roles_required("organizer", "admin")
def update_event(event_id):
    oid = parse_object_id(event_id)
    if not oid:
        return jsonify({"message": "Invalid event id"}), 400
    event = collection("events").find_one({"_id": oid})
    if not event:
        return jsonify({"message": "Event not found"}), 404
    if not owns_event(event):
        return jsonify({"message": "Not authorized to modify this event"}), 403

    data = request.get_json(silent=True) or {}
    try:
        fields = event_fields(data, existing=event)
    except ValueError as e:
        return jsonify({"message": str(e)}), 400

    fields["updatedAt"] = utcnow()
    updated = collection("events").find_one_and_update(
        {"_id": oid}, {"$set": fields}, return_document=ReturnDocument.AFTER
    )
    logger.info("Event updated: %s", oid)
    return jsonify({"event": serialize(updated)})


@app.route("/api/events/<event_id>", methods=["DELETE"])
@token_required
@roles_required("organizer", "admin")
def delete_event(event_id):
    oid = parse_object_id(event_id)
    if not oid:
        return jsonify({"message": "Invalid event id"}), 400
    event = collection("events").find_one({"_id": oid}, {"organizer": 1})
    if not event:
        return jsonify({"message": "Event not found"}), 404
    if not owns_event(event):
        return jsonify({"message": "Not authorized to delete this event"}), 403

    collection("events").delete_one({"_id": oid})
    logger.info("Event deleted: %s", oid)
    return jsonify({"message": "Event deleted"})


@app.route("/api/events/<event_id>/register", methods=["POST"])
@token_optional
def register_for_event(event_id):
    oid = parse_object_id(event_id)
    if not oid:
        return jsonify({"message": "Invalid event id"}), 400
    event = collection("events").find_one({"_id": oid})
    if not event:
        return jsonify({"message": "Event not found"}), 404
    if not event.get("organizer"):
        return jsonify({"message": "Registration only allowed for organizer-created events"}), 400
    deadline = event.get("registrationDeadline")
    if deadline and as_utc(deadline) < utcnow():
        return jsonify({"message": "Registration deadline has passed"}), 400

    data = request.get_json(silent=True) or {}
    reg_type = data.get("registrationType")
    if reg_type not in REGISTRATION_TYPES:
        return jsonify({"message": "Invalid registration type"}), 400

    personal = data.get("personalInfo") if isinstance(data.get("personalInfo"), dict) else {}
    agreements = data.get("agreements") if isinstance(data.get("agreements"), dict) else {}
    team_info = data.get("teamInfo") if isinstance(data.get("teamInfo"), dict) else {}
    if not personal.get("firstName") or not personal.get("lastName") or not personal.get("email"):
        return jsonify({"message": "Missing required personal information"}), 400
    if not all(agreements.get(k) is True for k in AGREEMENTS):
        return jsonify({"message": "All agreements must be accepted"}), 400
    team_name = str(team_info.get("teamName") or "").strip()
    if reg_type == "team" and not team_name:
        return jsonify({"message": "Team name is required for team registration"}), 400

    registrations = collection("registrations")
    limit = event.get("registrationLimit")
    if limit and registrations.count_documents({"event": oid}) >= limit:
        return jsonify({"message": "Registration limit reached"}), 409

    email = str(personal["email"]).strip().lower()
    if registrations.find_one({"event": oid, "personalInfo.email": email}, {"_id": 1}):
        return jsonify({"message": "Already registered for this event"}), 409

    members = []
    for m in team_info.get("members") or []:
        if isinstance(m, dict):
            member = _pick(m, ("firstName", "lastName", "email", "role"))
            if member.get("email"):
                member["email"] = str(member["email"]).strip().lower()
            members.append(member)
    try:
        skills = _string_list(team_info.get("desiredSkills"), "desiredSkills")
    except ValueError as e:
        return jsonify({"message": str(e)}), 400

    payment_in = data.get("payment") if isinstance(data.get("payment"), dict) else {}
    payment = _pick(payment_in, ("status", "amount", "orderId", "paymentId", "signature"))
    payment.setdefault("status", "paid" if (event.get("fees") or 0) > 0 else "free")
    payment.setdefault("amount", event.get("fees") or 0)
    payment["currency"] = payment_in.get("currency") or "INR"

    now = utcnow()
    registration = {
        "event": oid,
        "eventName": event.get("title"),
        "registrationType": reg_type,
        "personalInfo": dict(personal, email=email),
        "teamInfo": {
            "teamName": team_name or None,
            "teamDescription": team_info.get("teamDescription"),
            "lookingForMembers": bool(team_info.get("lookingForMembers")),
            "desiredSkills": skills,
            "members": members,
        },
        "preferences": _pick(data.get("preferences"),
                             ("track", "dietaryRestrictions", "tshirtSize", "emergencyContact")),
        "agreements": {k: True for k in AGREEMENTS},
        "payment": payment,
        "createdAt": now,
        "updatedAt": now,
    }
    registration["_id"] = registrations.insert_one(registration).inserted_id

    if reg_type == "team":
        upsert_team(team_name, event, member_id=my_id() if g.user else None)

    logger.info("Registration %s for event %s (%s)", registration["_id"], oid, reg_type)
    return jsonify({"registration": serialize(registration)}), 201


# --- Registrations ---
REGISTRATION_SUMMARY_FIELDS = ("event", "eventName", "registrationType", "teamInfo.teamName", "createdAt")


@app.route("/api/registrations/mine", methods=["GET"])
@token_optional
def my_registrations():
    email = str(request.args.get("email") or "").strip().lower()
    if not email and g.user:
        email = str(g.user.get("email") or "").lower()
    if not email:
        return jsonify({"message": "email is required"}), 400

    full = request.args.get("full", "").lower() == "true"
    projection = None if full else {f: 1 for f in REGISTRATION_SUMMARY_FIELDS}
    regs = collection("registrations").find(
        {"$or": [{"personalInfo.email": email}, {"teamInfo.members.email": email}]},
        projection,
    ).sort("createdAt", -1)
    return jsonify({"registrations": serialize(list(regs))})


# --- Teams ---
@app.route("/api/teams", methods=["GET"])
@token_optional
def list_teams():
    query = {}
    event_id = request.args.get("eventId")
    if event_id:
        oid = parse_object_id(event_id)
        if not oid:
            return jsonify({"message": "Invalid eventId"}), 400
        query["event"] = oid

    teams = list(collection("teams").find(query).sort("createdAt", -1))
    users = docs_by_id("users", [m for t in teams for m in t.get("members", [])], ("name",))
    return jsonify({"teams": [team_doc(t, users) for t in teams]})


@app.route("/api/teams", methods=["POST"])
@token_required
def create_team():
    data = request.get_json(silent=True) or {}
    name = str(data.get("name") or "").strip()
    event_oid = parse_object_id(data.get("event") or data.get("eventId"))
    if not name or not event_oid:
        return jsonify({"message": "name and event are required"}), 400

    event = collection("events").find_one({"_id": event_oid}, {"title": 1})
    if not event:
        return jsonify({"message": "Event not found"}), 404
    teams = collection("teams")
    if teams.find_one({"name": name, "event": event_oid}, {"_id": 1}):
        return jsonify({"message": "A team with this name already exists for this event"}), 409

    team = {
        "name": name,
        "event": event_oid,
        "eventName": event.get("title"),
        "members": [my_id()],
        "score": 0,
        "createdAt": utcnow(),
    }
    try:
        team["_id"] = teams.insert_one(team).inserted_id
    except DuplicateKeyError:
        return jsonify({"message": "A team with this name already exists for this event"}), 409
    logger.info("Team created: %s for event %s", name, event_oid)
    return jsonify({"team": serialize(team)}), 201


@app.route("/api/teams/<team_id>/join", methods=["POST"])
@token_required
def join_team(team_id):
    oid = parse_object_id(team_id)
    if not oid:
        return jsonify({"message": "Invalid team id"}), 400
    team = collection("teams").find_one_and_update(
        {"_id": oid}, {"$addToSet": {"members": my_id()}}, return_document=ReturnDocument.AFTER
    )
    if not team:
        return jsonify({"message": "Team not found"}), 404
    users = docs_by_id("users", team.get("members", []), ("name",))
    return jsonify({"team": team_doc(team, users)})


@app.route("/api/teams/<team_id>", methods=["GET"])
def get_team(team_id):
    oid = parse_object_id(team_id)
    if not oid:
        return jsonify({"message": "Invalid team id"}), 400
    team = collection("teams").find_one({"_id": oid})
    if not team:
        return jsonify({"message": "Team not found"}), 404
    users = docs_by_id("users", team.get("members", []), ("name", "email"))
    events = docs_by_id("events", [team.get("event")], ("title",))
    doc = team_doc(team, users)
    doc["event"] = ref(events, team.get("event"))
    return jsonify({"team": doc})


@app.route("/api/teams/<team_id>/reviews", methods=["GET"])
def team_reviews(team_id):
    oid = parse_object_id(team_id)
    if not oid:
        return jsonify({"message": "Invalid team id"}), 400
    reviews = list(collection("reviews").find({"team": oid}).sort("createdAt", -1))
    judges = docs_by_id("users", [r.get("judge") for r in reviews], ("name",))
    out = []
    for r in reviews:
        doc = serialize(r)
        doc["judge"] = ref(judges, r.get("judge"))
        out.append(doc)
    return jsonify({"reviews": out, "averageScore": average_score(r.get("score") for r in reviews)})


# --- Submissions ---
@app.route("/api/submissions", methods=["GET"])
def list_submissions():
    query = {}
    event_id = request.args.get("eventId")
    if event_id:
        oid = parse_object_id(event_id)
        if not oid:
            return jsonify({"message": "Invalid eventId"}), 400
        query["event"] = oid

    subs = list(collection("submissions").find(query).sort("createdAt", -1))
    teams = docs_by_id("teams", [s.get("team") for s in subs], ("name",))
    out = []
    for s in subs:
        doc = serialize(s)
        doc["team"] = ref(teams, s.get("team"))
        out.append(doc)
    return jsonify({"submissions": out})


@app.route("/api/submissions", methods=["POST"])
@token_required
def create_submission():
    data = request.get_json(silent=True) or {}
    team_oid = parse_object_id(data.get("team"))
    event_oid = parse_object_id(data.get("event"))
    title = str(data.get("title") or "").strip()
    if not team_oid or not event_oid or not title:
        return jsonify({"message": "team, event and title are required"}), 400

    team = collection("teams").find_one({"_id": team_oid}, {"event": 1})
    if not team:
        return jsonify({"message": "Team not found"}), 404
    if team.get("event") != event_oid:
        return jsonify({"message": "Team does not belong to this event"}), 400

    now = utcnow()
    submission = {
        "team": team_oid,
        "event": event_oid,
        "title": title,
        "description": data.get("description", ""),
        "repoUrl": data.get("repoUrl"),
        "docsUrl": data.get("docsUrl"),
        "videoUrl": data.get("videoUrl"),
        "score": 0,
        "feedback": None,
        "status": "submitted",
        "submittedBy": my_id(),
        "createdAt": now,
        "updatedAt": now,
    }
    submission["_id"] = collection("submissions").insert_one(submission).inserted_id
    logger.info("Submission %s created for team %s", submission["_id"], team_oid)
    return jsonify({"submission": serialize(submission)}), 201


@app.route("/api/submissions/<submission_id>/score", methods=["PATCH"])
@token_required
@roles_required("judge", "organizer", "admin")
def score_submission(submission_id):
    oid = parse_object_id(submission_id)
    if not oid:
        return jsonify({"message": "Invalid submission id"}), 400

    data = request.get_json(silent=True) or {}
    score = data.get("score")
    if isinstance(score, bool) or not isinstance(score, (int, float)) or not 0 <= score <= REVIEW_MAX:
        return jsonify({"message": f"score must be a number between 0 and {REVIEW_MAX}"}), 400
    feedback = data.get("feedback")

    submissions = collection("submissions")
    submission = submissions.find_one({"_id": oid})
    if not submission:
        return jsonify({"message": "Submission not found"}), 404

    judge_id = my_id()
    if current_role() == "judge" and not is_assigned(judge_id, submission.get("event")):
        return jsonify({"message": "Forbidden: not assigned to this event"}), 403
    if current_role() == "organizer":
        event = collection("events").find_one({"_id": submission.get("event")}, {"organizer": 1})
        if not event or not owns_event(event):
            return jsonify({"message": "Forbidden: not your event"}), 403

    now = utcnow()
    upsert(
        "reviews",
        {"submission": oid, "judge": judge_id},
        {
            "$set": {"score": score, "feedback": feedback, "team": submission.get("team"),
                     "event": submission.get("event"), "updatedAt": now},
            "$setOnInsert": {"createdAt": now},
        },
    )
    avg = average_score(r.get("score") for r in collection("reviews").find({"submission": oid}, {"score": 1}))

    updates = {"score": avg, "status": "reviewed", "updatedAt": now}
    if feedback is not None:
        updates["feedback"] = feedback
    updated = submissions.find_one_and_update(
        {"_id": oid}, {"$set": updates}, return_document=ReturnDocument.AFTER
    )
    logger.info("Submission %s scored %s by %s (average %s)", oid, score, judge_id, avg)
    emit_leaderboard_update(submission.get("event"), "submission_scored")
    return jsonify({"submission": serialize(updated)})


# --- Judges ---
@app.route("/api/judges/my-events", methods=["GET"])
@token_required
@roles_required("judge")
def judge_my_events():
    assignments = list(collection("judge_assignments").find({"judge": my_id()}).sort("createdAt", -1))
    events = docs_by_id(
        "events", [a.get("event") for a in assignments],
        ("title", "startDate", "endDate", "status", "bannerUrl", "location"),
    )
    out = []
    for a in assignments:
        ev = events.get(a.get("event"))
        if not ev:
            continue
        out.append(serialize({
            "id": ev["_id"],
            "title": ev.get("title"),
            "startDate": ev.get("startDate"),
            "endDate": ev.get("endDate"),
            "status": ev.get("status"),
            "bannerUrl": ev.get("bannerUrl"),
            "location": ev.get("location"),
            "assignmentId": a["_id"],
            "assignedAt": a.get("createdAt"),
        }))
    return jsonify({"events": out})


def _assign(judge_id, event_id):
    return upsert(
        "judge_assignments",
        {"judge": judge_id, "event": event_id},
        {"$setOnInsert": {"judge": judge_id, "event": event_id, "createdBy": my_id(), "createdAt": utcnow()}},
    )


@app.route("/api/judges", methods=["POST"])
@token_required
@roles_required("organizer")
def create_judge():
    data = request.get_json(silent=True) or {}
    email = normalize_email(data.get("email"))
    password = data.get("password") or ""
    if not email or not password:
        return jsonify({"message": "email and password are required"}), 400
    if not EMAIL_RE.match(email):
        return jsonify({"message": "Invalid email"}), 400

    event = None
    if data.get("eventId"):
        event_oid = parse_object_id(data["eventId"])
        event = collection("events").find_one({"_id": event_oid}, {"_id": 1}) if event_oid else None
        if not event:
            return jsonify({"message": "Event not found"}), 404

    users = collection("users")
    judge = users.find_one({"email": email})
    if judge and judge.get("role") != "judge":
        return jsonify({"message": "Email already in use by a non-judge account"}), 409
    if not judge:
        now = utcnow()
        judge = {
            "name": str(data.get("name") or "").strip() or email.split("@")[0],
            "email": email,
            "password": hash_password(password),
            "role": "judge",
            "provider": "local",
            "createdAt": now,
            "updatedAt": now,
        }
        judge["_id"] = users.insert_one(judge).inserted_id
        logger.info("Judge account created: %s", email)

    assignment = _assign(judge["_id"], event["_id"]) if event else None
    return jsonify({"judge": user_summary(judge), "assignment": serialize(assignment)}), 201


@app.route("/api/judges/assign", methods=["POST"])
@token_required
@roles_required("organizer")
def assign_judge():
    data = request.get_json(silent=True) or {}
    if not data.get("judgeId") or not data.get("eventId"):
        return jsonify({"message": "judgeId and eventId are required"}), 400
    judge_oid = parse_object_id(data["judgeId"])
    event_oid = parse_object_id(data["eventId"])
    if not judge_oid or not event_oid:
        return jsonify({"message": "Invalid judgeId or eventId"}), 400

    judge = collection("users").find_one({"_id": judge_oid}, {"role": 1})
    if not judge or judge.get("role") != "judge":
        return jsonify({"message": "Judge not found"}), 404
    if not collection("events").find_one({"_id": event_oid}, {"_id": 1}):
        return jsonify({"message": "Event not found"}), 404

    assignment = _assign(judge_oid, event_oid)
    logger.info("Judge %s assigned to event %s", judge_oid, event_oid)
    return jsonify({"assignment": serialize(assignment)}), 201


@app.route("/api/judges", methods=["GET"])
@token_required
@roles_required("organizer")
def list_judges():
    judges = collection("users").find({"role": "judge"}, {"name": 1, "email": 1}).sort("createdAt", -1).limit(200)
    return jsonify({"judges": [{"id": str(j["_id"]), "name": j.get("name"), "email": j.get("email")}
                               for j in judges]})


@app.route("/api/judges/assignments", methods=["GET"])
@token_required
@roles_required("organizer")
def list_assignments():
    docs = list(collection("judge_assignments").find().sort("createdAt", -1).limit(100))
    judges = docs_by_id("users", [d.get("judge") for d in docs], ("name", "email"))
    events = docs_by_id("events", [d.get("event") for d in docs], ("title",))
    items = []
    for d in docs:
        judge, event = judges.get(d.get("judge")), events.get(d.get("event"))
        items.append(serialize({
            "id": d["_id"],
            "judge": {"id": judge["_id"], "name": judge.get("name"), "email": judge.get("email")} if judge else None,
            "event": {"id": event["_id"], "title": event.get("title")} if event else None,
            "createdAt": d.get("createdAt"),
        }))
    return jsonify({"assignments": items})


@app.route("/api/judges/<judge_id>/work", methods=["GET"])
@token_required
@roles_required("organizer")
def judge_work(judge_id):
    judge_oid = parse_object_id(judge_id)
    if not judge_oid:
        return jsonify({"message": "Invalid judge id"}), 400
    judge = collection("users").find_one({"_id": judge_oid, "role": "judge"}, {"name": 1, "email": 1})
    if not judge:
        return jsonify({"message": "Judge not found"}), 404

    my_events = {e["_id"]: e for e in collection("events").find({"organizer": my_id()}, {"title": 1})}
    reviews = list(collection("reviews").find(
        {"judge": judge_oid, "event": {"$in": list(my_events)}}
    ).sort("updatedAt", -1))
    teams = docs_by_id("teams", [r.get("team") for r in reviews], ("name",))
    subs = docs_by_id("submissions", [r.get("submission") for r in reviews], ("title",))

    items = []
    for r in reviews:
        doc = serialize(r)
        doc["team"] = ref(teams, r.get("team"))
        doc["submission"] = ref(subs, r.get("submission"))
        doc["event"] = ref(my_events, r.get("event"))
        items.append(doc)
    return jsonify({
        "judge": {"id": str(judge["_id"]), "name": judge.get("name"), "email": judge.get("email")},
        "reviews": items,
        "averageScore": average_score(r.get("score") for r in reviews),
    })


# --- Evaluations ---
def evaluation_doc(evaluation, teams, judges):
    doc = serialize(evaluation)
    doc["team"] = ref(teams, evaluation.get("team"))
    doc["judge"] = ref(judges, evaluation.get("judge"))
    return doc


def _scoped_evaluations(event_oid):
    """Evaluations a caller may read for an event; None when a judge is not assigned."""
    query = {"event": event_oid}
    if current_role() == "judge":
        if not is_assigned(my_id(), event_oid):
            return None
        query["judge"] = my_id()
    return list(collection("evaluations").find(query).sort("updatedAt", -1))


@app.route("/api/evaluations", methods=["POST"])
@token_required
@roles_required("judge")
def upsert_evaluation():
    data = request.get_json(silent=True) or {}
    if not data.get("eventId") or not data.get("teamId"):
        return jsonify({"message": "eventId and teamId are required"}), 400
    event_oid = parse_object_id(data["eventId"])
    team_oid = parse_object_id(data["teamId"])
    if not event_oid or not team_oid:
        return jsonify({"message": "Invalid eventId or teamId"}), 400

    judge_id = my_id()
    if not is_assigned(judge_id, event_oid):
        return jsonify({"message": "Forbidden: not assigned to this event"}), 403

    scores = data.get("scores") or {}
    if not isinstance(scores, dict):
        return jsonify({"message": "scores must be an object"}), 400
    error = validate_criteria(scores)
    if error:
        return jsonify({"message": error}), 400

    team = collection("teams").find_one({"_id": team_oid, "event": event_oid}, {"_id": 1})
    if not team:
        return jsonify({"message": "Team not found for this event"}), 404

    now = utcnow()
    try:
        evaluation = upsert(
            "evaluations",
            {"event": event_oid, "team": team_oid, "judge": judge_id},
            {
                "$set": {"scores": {k: scores[k] for k in CRITERIA if scores.get(k) is not None},
                         "comments": data.get("comments") or "", "status": "pending", "updatedAt": now},
                "$setOnInsert": {"createdAt": now},
            },
        )
    except Exception:
        logger.exception("Saving evaluation failed for team=%s judge=%s", team_oid, judge_id)
        return jsonify({"message": "Failed to save evaluation"}), 500

    recalculate_team_score(event_oid, team_oid, "evaluation_updated")
    teams = docs_by_id("teams", [team_oid], ("name",))
    judges = docs_by_id("users", [judge_id], ("name", "email"))
    return jsonify({"evaluation": evaluation_doc(evaluation, teams, judges)}), 200


@app.route("/api/evaluations/<event_id>", methods=["GET"])
@token_required
@roles_required("judge", "organizer")
def list_evaluations(event_id):
    event_oid = parse_object_id(event_id)
    if not event_oid:
        return jsonify({"message": "Invalid event id"}), 400
    evaluations = _scoped_evaluations(event_oid)
    if evaluations is None:
        return jsonify({"message": "Forbidden: not assigned to this event"}), 403

    teams = docs_by_id("teams", [e.get("team") for e in evaluations], ("name",))
    judges = docs_by_id("users", [e.get("judge") for e in evaluations], ("name", "email"))
    return jsonify({"evaluations": [evaluation_doc(e, teams, judges) for e in evaluations]})


@app.route("/api/evaluations/<evaluation_id>/complete", methods=["PATCH"])
@token_required
@roles_required("judge", "organizer")
def complete_evaluation(evaluation_id):
    oid = parse_object_id(evaluation_id)
    if not oid:
        return jsonify({"message": "Invalid evaluation id"}), 400
    evaluations = collection("evaluations")
    evaluation = evaluations.find_one({"_id": oid})
    if not evaluation:
        return jsonify({"message": "Evaluation not found"}), 404

    if current_role() == "judge":
        if evaluation.get("judge") != my_id():
            return jsonify({"message": "Forbidden"}), 403
        if not is_assigned(my_id(), evaluation.get("event")):
            return jsonify({"message": "Forbidden: not assigned to this event"}), 403

    evaluation = evaluations.find_one_and_update(
        {"_id": oid}, {"$set": {"status": "complete", "updatedAt": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    recalculate_team_score(evaluation["event"], evaluation["team"], "evaluation_completed")
    return jsonify({"evaluation": serialize(evaluation)})


EXPORT_COLUMNS = [
    "Team", "Judge", "Status", "Innovation", "Impact", "Feasibility", "Presentation",
    "Avg", "Repo", "Docs", "Video", "Updated At",
]


@app.route("/api/evaluations/<event_id>/export", methods=["GET"])
@token_required
@roles_required("judge", "organizer")
def export_evaluations(event_id):
    event_oid = parse_object_id(event_id)
    if not event_oid:
        return jsonify({"message": "Invalid event id"}), 400
    evaluations = _scoped_evaluations(event_oid)
    if evaluations is None:
        return jsonify({"message": "Forbidden: not assigned to this event"}), 403

    teams = docs_by_id("teams", [e.get("team") for e in evaluations], ("name",))
    judges = docs_by_id("users", [e.get("judge") for e in evaluations], ("name", "email"))
    subs_by_team = {
        s.get("team"): s
        for s in collection("submissions").find({"event": event_oid, "team": {"$in": list(teams)}})
    }

    rows = []
    for e in evaluations:
        scores = e.get("scores") or {}
        team = teams.get(e.get("team")) or {}
        judge = judges.get(e.get("judge")) or {}
        sub = subs_by_team.get(e.get("team")) or {}
        avg = evaluation_score(scores)
        rows.append([
            team.get("name", ""),
            judge.get("name") or judge.get("email") or "",
            e.get("status", ""),
            *[scores.get(c, "") for c in CRITERIA],
            round(avg / (REVIEW_MAX / CRITERION_MAX), 2) if avg is not None else "",
            sub.get("repoUrl") or "",
            sub.get("docsUrl") or "",
            sub.get("videoUrl") or "",
            serialize(e.get("updatedAt")) or "",
        ])

    buf = io.StringIO()
    pd.DataFrame(rows, columns=EXPORT_COLUMNS).to_csv(buf, index=False)
    return Response(
        buf.getvalue(),
        mimetype="text/csv",
        headers={"Content-Disposition": f'attachment; filename="evaluations-{event_id}.csv"'},
    )


# --- Invites ---
@app.route("/api/invites", methods=["POST"])
@token_required
def create_invite():
    data = request.get_json(silent=True) or {}
    recipient = normalize_email(data.get("recipientEmail"))
    if not recipient or not data.get("eventId"):
        return jsonify({"message": "recipientEmail and eventId are required"}), 400
    if not EMAIL_RE.match(recipient):
        return jsonify({"message": "Invalid recipientEmail"}), 400
    event_oid = parse_object_id(data["eventId"])
    event = collection("events").find_one({"_id": event_oid}, {"title": 1}) if event_oid else None
    if not event:
        return jsonify({"message": "Event not found"}), 404

    team_name = str(data.get("teamName") or "").strip() or None
    invite = {
        "sender": my_id(),
        "recipientEmail": recipient,
        "event": event["_id"],
        "teamName": team_name,
        "status": "pending",
        "token": secrets.token_hex(24),
        "createdAt": utcnow(),
    }
    invite["_id"] = collection("invites").insert_one(invite).inserted_id

    base = (Config.FRONTEND_URL or request.headers.get("Origin") or "").rstrip("/")
    accept_url = f"{base}/invites?token={invite['token']}"
    text, html = invite_email(event.get("title") or "", team_name, accept_url)
    try:
        send_mail(recipient, f"You are invited to join a team for {event.get('title') or 'an event'}",
                  text=text, html=html)
    except Exception:
        # the invite stays valid without the email
        logger.exception("Invite email failed for %s", recipient)

    logger.info("Invite %s sent to %s for event %s", invite["_id"], recipient, event["_id"])
    return jsonify({
        "message": "Invite sent",
        "invite": {"id": str(invite["_id"]), "token": invite["token"], "status": invite["status"]},
    })


@app.route("/api/invites/my", methods=["GET"])
@token_required
def my_invites():
    user = collection("users").find_one({"_id": my_id()}, {"email": 1}) if my_id() else None
    if not user or not user.get("email"):
        return jsonify({"invites": []})

    invites = list(collection("invites").find(
        {"recipientEmail": user["email"].lower(), "status": "pending"}
    ).sort("createdAt", -1))
    events = docs_by_id("events", [i.get("event") for i in invites], ("title", "startDate", "endDate"))
    senders = docs_by_id("users", [i.get("sender") for i in invites], ("name", "email"))
    out = []
    for inv in invites:
        doc = serialize(inv)
        doc["event"] = ref(events, inv.get("event"))
        doc["sender"] = ref(senders, inv.get("sender"))
        out.append(doc)
    return jsonify({"invites": out})


@app.route("/api/invites/accept/<token>", methods=["POST"])
@token_required
def accept_invite(token):
    invites = collection("invites")
    invite = invites.find_one({"token": token})
    if not invite:
        return jsonify({"message": "Invite not found"}), 404
    if invite.get("status") != "pending":
        return jsonify({"message": "Invite already handled"}), 400

    user = collection("users").find_one({"_id": my_id()}, {"email": 1}) if my_id() else None
    email = (user or {}).get("email") or (g.user.get("email") or "")
    if email.lower() != invite.get("recipientEmail", "").lower():
        return jsonify({"message": "This invite is not addressed to your account"}), 403

    invites.update_one({"_id": invite["_id"]}, {"$set": {"status": "accepted", "acceptedAt": utcnow()}})

    team = None
    event = collection("events").find_one({"_id": invite.get("event")}, {"title": 1})
    if invite.get("teamName") and event:
        team = upsert_team(invite["teamName"], event, member_id=my_id())

    logger.info("Invite %s accepted by %s", invite["_id"], email)
    return jsonify({
        "message": "Invite accepted",
        "eventId": str(invite.get("event")),
        "team": serialize(team),
    })


# --- Notifications ---
@app.route("/api/notifications", methods=["GET"])
@token_required
def list_notifications():
    uid = my_id()
    status = request.args.get("status", "unread")
    limit = min(max(request.args.get("limit", 20, type=int) or 20, 1), 100)

    query = {"recipientUserIds": uid}
    if status == "unread":
        query["readBy"] = {"$nin": [uid]}
    items = collection("notifications").find(query).sort("createdAt", -1).limit(limit)
    return jsonify({"notifications": [dict(serialize(n), read=uid in (n.get("readBy") or [])) for n in items]})


@app.route("/api/notifications/<notification_id>/read", methods=["PATCH"])
@token_required
def mark_notification_read(notification_id):
    oid = parse_object_id(notification_id)
    if not oid:
        return jsonify({"message": "Invalid notification id"}), 400
    uid = my_id()
    updated = collection("notifications").find_one_and_update(
        {"_id": oid, "recipientUserIds": uid},
        {"$addToSet": {"readBy": uid}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        return jsonify({"message": "Notification not found"}), 404
    return jsonify({"notification": dict(serialize(updated), read=True)})


@app.route("/api/notifications/read-all", methods=["PATCH"])
@token_required
def mark_all_notifications_read():
    uid = my_id()
    result = collection("notifications").update_many(
        {"recipientUserIds": uid, "readBy": {"$nin": [uid]}},
        {"$addToSet": {"readBy": uid}},
    )
    return jsonify({"success": True, "updated": result.modified_count})


@app.route("/api/notifications/broadcast-to-event/<event_id>", methods=["POST"])
@token_required
def broadcast_to_event(event_id):
    event_oid = parse_object_id(event_id)
    if not event_oid:
        return jsonify({"message": "Invalid event id"}), 400
    event = collection("events").find_one({"_id": event_oid}, {"organizer": 1, "title": 1})
    if not event:
        return jsonify({"message": "Event not found"}), 404
    if not event.get("organizer") or str(event["organizer"]) != str(current_user_id()):
        return jsonify({"message": "Not authorized to notify this event"}), 403

    data = request.get_json(silent=True) or {}
    title = data.get("title")
    if not title or not isinstance(title, str):
        return jsonify({"message": "title is required"}), 400
    ntype = data.get("type") or "info"
    if ntype not in NOTIFICATION_TYPES:
        return jsonify({"message": f"type must be one of: {', '.join(NOTIFICATION_TYPES)}"}), 400
    for key in ("teamIds", "userIds"):
        if data.get(key) is not None and not isinstance(data[key], list):
            return jsonify({"message": f"{key} must be a list"}), 400

    # insertion-ordered set of recipient ids
    recipients = {}
    team_ids = [parse_object_id(t) for t in data.get("teamIds") or []]
    team_filter = {"event": event_oid}
    if any(team_ids):
        team_filter["_id"] = {"$in": [t for t in team_ids if t]}
    for team in collection("teams").find(team_filter, {"members": 1}):
        for member in team.get("members") or []:
            recipients[member] = True

    emails = set()
    for reg in collection("registrations").find(
        {"event": event_oid}, {"personalInfo.email": 1, "teamInfo.members.email": 1}
    ):
        if (reg.get("personalInfo") or {}).get("email"):
            emails.add(reg["personalInfo"]["email"].lower())
        for m in (reg.get("teamInfo") or {}).get("members") or []:
            if m.get("email"):
                emails.add(m["email"].lower())
    if emails:
        for user in collection("users").find({"email": {"$in": list(emails)}}, {"_id": 1}):
            recipients[user["_id"]] = True

    for uid in data.get("userIds") or []:
        oid = parse_object_id(uid)
        if oid:
            recipients[oid] = True

    recipient_ids = list(recipients)
    if not recipient_ids:
        return jsonify({"success": True, "created": False, "recipients": 0}), 200

    notification = {
        "title": title,
        "message": data.get("message"),
        "type": ntype,
        "link": data.get("link"),
        "eventId": event_oid,
        "recipientUserIds": recipient_ids,
        "readBy": [],
        "createdBy": my_id(),
        "createdAt": utcnow(),
    }
    notification["_id"] = collection("notifications").insert_one(notification).inserted_id
    emit_notification(recipient_ids, notification)
    logger.info("Notification %s sent to %d users for event %s",
                notification["_id"], len(recipient_ids), event_oid)
    return jsonify({
        "success": True,
        "created": True,
        "notification": serialize(notification),
        "recipients": len(recipient_ids),
    }), 201


# --- Community ---
@app.route("/api/community/posts", methods=["GET"])
def list_posts():
    limit = min(max(request.args.get("limit", 50, type=int) or 50, 1), 100)
    posts = collection("posts").find().sort("createdAt", -1).limit(limit)
    return jsonify({"posts": serialize(list(posts))})


@app.route("/api/community/posts", methods=["POST"])
def create_post():
    data = request.get_json(silent=True) or {}
    title = str(data.get("title") or "").strip()
    author = str(data.get("author") or "").strip()
    if not title or not author:
        return jsonify({"message": "title and author are required"}), 400

    post = {
        "title": title,
        "author": author,
        "body": data.get("body", ""),
        "likes": 0,
        "createdAt": utcnow(),
    }
    post["_id"] = collection("posts").insert_one(post).inserted_id
    return jsonify({"post": serialize(post)}), 201


@app.route("/api/community/posts/<post_id>/like", methods=["POST"])
def like_post(post_id):
    oid = parse_object_id(post_id)
    if not oid:
        return jsonify({"message": "Invalid post id"}), 400
    post = collection("posts").find_one_and_update(
        {"_id": oid}, {"$inc": {"likes": 1}}, return_document=ReturnDocument.AFTER
    )
    if not post:
        return jsonify({"message": "Post not found"}), 404
    return jsonify({"post": serialize(post)})


# --- Mail ---
def _deliver(to, subject, text=None, html=None):
    try:
        message_id = send_mail(to, subject, text=text, html=html)
    except MailerError as e:
        logger.warning("Mail not sent to %s: %s", to, e)
        return jsonify({"message": str(e)}), 503
    except Exception:
        logger.exception("Mail delivery to %s failed", to)
        return jsonify({"message": "Failed to send email"}), 502
    return jsonify({"success": True, "messageId": message_id}), 200


@app.route("/api/mail/send", methods=["POST"])
@token_required
@roles_required("organizer", "admin")
def mail_send():
    data = request.get_json(silent=True) or {}
    to, subject = data.get("to"), data.get("subject")
    if not to or not subject or not (data.get("text") or data.get("html")):
        return jsonify({"message": "to, subject and text or html are required"}), 400
    return _deliver(to, subject, text=data.get("text"), html=data.get("html"))


@app.route("/api/mail/test", methods=["GET"])
@token_required
@roles_required("organizer", "admin")
def mail_test():
    to = request.args.get("to")
    if not to:
        return jsonify({"message": "to query parameter is required"}), 400
    return _deliver(to, "HackHost test email", text="SMTP is configured correctly.",
                    html="<p>SMTP is configured correctly.</p>")


# --- Payments (simulated) ---
@app.route("/api/payments/create-order", methods=["POST"])
def create_order():
    data = request.get_json(silent=True) or {}
    if not data.get("eventId"):
        return jsonify({"message": "eventId is required"}), 400
    event_oid = parse_object_id(data["eventId"])
    event = collection("events").find_one({"_id": event_oid}, {"fees": 1, "title": 1}) if event_oid else None
    if not event:
        return jsonify({"message": "Event not found"}), 404

    fee = float(event.get("fees") or 0)
    if fee <= 0:
        return jsonify({"order": None, "amount": 0, "currency": "INR", "free": True})

    amount = int(round(fee * 100))
    stamp = int(time.time() * 1000)
    order = {
        "id": f"order_mock_{stamp}",
        "amount": amount,
        "currency": "INR",
        "receipt": f"evt_{event_oid}_{stamp}",
        "status": "created",
        "notes": {"eventId": str(event_oid), "eventTitle": event.get("title") or ""},
    }
    logger.info("Created mock order %s for event %s (%d paise)", order["id"], event_oid, amount)
    return jsonify({"order": order, "amount": amount, "currency": "INR", "free": False, "mock": True})


@app.route("/api/payments/verify", methods=["POST"])
def verify_payment():
    data = request.get_json(silent=True) or {}
    order_id = data.get("orderId")
    if not order_id:
        return jsonify({"message": "orderId is required"}), 400

    if not Config.RAZORPAY_KEY_SECRET:
        return jsonify({"verified": True, "mock": True})

    payment_id, signature = data.get("paymentId"), data.get("signature")
    if not payment_id or not signature:
        return jsonify({"message": "paymentId and signature are required"}), 400
    expected = hmac.new(
        Config.RAZORPAY_KEY_SECRET.encode("utf-8"),
        f"{order_id}|{payment_id}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    if not hmac.compare_digest(expected, str(signature)):
        logger.warning("Payment signature mismatch for order %s", order_id)
        return jsonify({"verified": False, "message": "Invalid payment signature"}), 400
    return jsonify({"verified": True, "mock": False})


# --- Analytics ---
def _counts_by_event(event_ids):
    counts = {str(e): {"registrations": 0, "teams": 0, "submissions": 0} for e in event_ids}
    for name in ("registrations", "teams", "submissions"):
        for doc in collection(name).find({"event": {"$in": list(event_ids)}}, {"event": 1}):
            counts[str(doc["event"])][name] += 1
    return counts


def _overview(event_query):
    events = list(collection("events").find(event_query, {"title": 1, "status": 1, "startDate": 1, "endDate": 1}))
    counts = _counts_by_event([e["_id"] for e in events])
    return events_overview(events, counts, sort=request.args.get("sort", "registrations"))


def _participant_event_ids(email):
    return collection("registrations").distinct(
        "event", {"$or": [{"personalInfo.email": email}, {"teamInfo.members.email": email}]}
    )


@app.route("/api/analytics/dashboard", methods=["GET"])
def analytics_dashboard():
    events = list(collection("events").find({}, {"status": 1}))
    regs = list(collection("registrations").find({}, {"createdAt": 1}))
    teams = list(collection("teams").find({}, {"_id": 1}))
    subs = list(collection("submissions").find({}, {"status": 1, "createdAt": 1}))
    return jsonify({"success": True, "data": dashboard_summary(events, regs, teams, subs, utcnow())})


@app.route("/api/analytics/trends", methods=["GET"])
def analytics_trends():
    days = min(max(request.args.get("days", 14, type=int) or 14, 1), 90)
    regs = list(collection("registrations").find({}, {"createdAt": 1}))
    subs = list(collection("submissions").find({}, {"createdAt": 1}))
    return jsonify({"success": True, "data": {"trends": participation_trends(regs, subs, utcnow(), days=days)}})


@app.route("/api/analytics/activity", methods=["GET"])
def analytics_activity():
    limit = min(max(request.args.get("limit", 10, type=int) or 10, 1), 50)
    regs = list(collection("registrations").find({}, {"personalInfo": 1, "eventName": 1, "createdAt": 1})
                .sort("createdAt", -1).limit(limit))
    subs = list(collection("submissions").find({}, {"title": 1, "createdAt": 1}).sort("createdAt", -1).limit(limit))
    teams = list(collection("teams").find({}, {"name": 1, "createdAt": 1}).sort("createdAt", -1).limit(limit))
    return jsonify({"success": True, "data": {"activities": activity_feed(regs, subs, teams, limit=limit)}})


@app.route("/api/analytics/events/<event_id>", methods=["GET"])
def analytics_event(event_id):
    oid = parse_object_id(event_id)
    if not oid:
        return jsonify({"message": "Invalid event id"}), 400
    event = collection("events").find_one({"_id": oid})
    if not event:
        return jsonify({"message": "Event not found"}), 404
    regs = list(collection("registrations").find({"event": oid}, {"registrationType": 1, "preferences": 1}))
    teams = list(collection("teams").find({"event": oid}, {"_id": 1}))
    subs = list(collection("submissions").find({"event": oid}, {"status": 1, "score": 1}))
    return jsonify({"success": True, "data": event_metrics(event, regs, teams, subs)})


@app.route("/api/analytics/events", methods=["GET"])
def analytics_events():
    events = collection("events").find({}, {"title": 1, "status": 1, "startDate": 1}).sort("startDate", -1)
    return jsonify({"events": [
        serialize({"id": e["_id"], "title": e.get("title"), "status": e.get("status"), "startDate": e.get("startDate")})
        for e in events
    ]})


@app.route("/api/analytics/events-overview", methods=["GET"])
@token_optional
def analytics_events_overview():
    query = {}
    if g.user and g.user.get("role") == "participant":
        query["_id"] = {"$in": _participant_event_ids(str(g.user.get("email") or "").lower())}
    return jsonify({"events": _overview(query)})


@app.route("/api/analytics/my-events", methods=["GET"])
@token_required
@roles_required("participant")
def analytics_my_events():
    event_ids = _participant_event_ids(str(g.user.get("email") or "").lower())
    return jsonify({"events": _overview({"_id": {"$in": event_ids}})})


@app.route("/api/analytics/judge/leaderboard", methods=["GET"])
@token_required
@roles_required("judge", "organizer", "admin")
def analytics_judge_leaderboard():
    query = {}
    event_id = request.args.get("eventId")
    if event_id:
        event_oid = parse_object_id(event_id)
        if not event_oid:
            return jsonify({"message": "Invalid eventId"}), 400
        if current_role() == "judge" and not is_assigned(my_id(), event_oid):
            return jsonify({"message": "Forbidden: not assigned to this event"}), 403
        query["event"] = event_oid
    elif current_role() == "judge":
        assigned = collection("judge_assignments").distinct("event", {"judge": my_id()})
        query["event"] = {"$in": assigned}

    teams = collection("teams").find(query, {"name": 1, "event": 1, "eventName": 1, "score": 1, "members": 1})
    rows = [
        {
            "rank": t["rank"],
            "teamId": str(t["_id"]),
            "name": t.get("name"),
            "eventId": str(t.get("event")),
            "eventName": t.get("eventName"),
            "score": t.get("score") or 0,
            "members": len(t.get("members") or []),
        }
        for t in leaderboard(teams)
    ]
    return jsonify({"leaderboard": rows})


@app.route("/api/analytics/organizer/events-overview", methods=["GET"])
@token_required
@roles_required("organizer", "admin")
def analytics_organizer_overview():
    query = {} if current_role() == "admin" else {"organizer": my_id()}
    return jsonify({"events": _overview(query)})


@app.route("/api/analytics/skills", methods=["GET"])
def analytics_skills():
    query = {}
    event_oid = parse_object_id(request.args.get("eventId"))
    if event_oid:
        query["event"] = event_oid
    regs = collection("registrations").find(query, {"teamInfo.desiredSkills": 1, "preferences.track": 1})
    return jsonify({"categories": skill_distribution(regs)})


@app.route("/api/analytics/suggestions", methods=["GET"])
def analytics_suggestions():
    query = {"registrationType": "team"}
    event_oid = parse_object_id(request.args.get("eventId"))
    if event_oid:
        query["event"] = event_oid
    if request.args.get("eventName"):
        query["eventName"] = request.args["eventName"]
    limit = min(max(request.args.get("limit", 5, type=int) or 5, 1), 50)
    regs = collection("registrations").find(query).sort("createdAt", -1).limit(500)
    return jsonify({"suggestions": team_suggestions(regs, limit=limit)})


# --- CLI ---
@app.cli.command("init-db")
def init_db_command():
    """Create the MongoDB indexes."""
    ensure_indexes()
    click.echo("MongoDB indexes are in place.")


if __name__ == "__main__":
    ensure_indexes()
    socketio.run(app, host="0.0.0.0", port=Config.PORT, debug=Config.DEBUG, allow_unsafe_werkzeug=True)
