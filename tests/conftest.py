from datetime import timedelta

import mongomock
import pytest

import database
from app import app as flask_app
from auth import create_token, hash_password
from config import Config
from database import utcnow


@pytest.fixture
def db(monkeypatch):
    mock_db = mongomock.MongoClient()["hackhost_test"]
    monkeypatch.setattr(database, "_db", mock_db)
    monkeypatch.setattr(Config, "SMTP_HOST", "")
    monkeypatch.setattr(Config, "RAZORPAY_KEY_SECRET", "")
    database.ensure_indexes()
    return mock_db


@pytest.fixture
def app(db):
    flask_app.config["TESTING"] = True
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(role="participant", email=None, name=None, password="secret123"):
        counter["n"] += 1
        user = {
            "name": name or f"{role.title()} {counter['n']}",
            "email": email or f"{role}{counter['n']}@example.com",
            "password": hash_password(password),
            "role": role,
            "provider": "local",
            "createdAt": utcnow(),
        }
        user["_id"] = db["users"].insert_one(user).inserted_id
        return user
    return _make


@pytest.fixture
def headers_for():
    def _headers(user):
        return {"Authorization": f"Bearer {create_token(user)}"}
    return _headers


@pytest.fixture
def make_event(db):
    def _make(organizer, **overrides):
        now = utcnow()
        event = {
            "title": "Spring Hack",
            "startDate": now + timedelta(days=10),
            "endDate": now + timedelta(days=12),
            "mode": "online",
            "status": "upcoming",
            "fees": 0,
            "participantType": "individual",
            "minTeamSize": 1,
            "maxTeamSize": 4,
            "organizer": organizer["_id"] if organizer else None,
            "createdAt": now,
        }
        event.update(overrides)
        event["_id"] = db["events"].insert_one(event).inserted_id
        return event
    return _make


@pytest.fixture
def make_team(db):
    def _make(event, name="Team Rocket", members=()):
        team = {
            "name": name,
            "event": event["_id"],
            "eventName": event.get("title"),
            "members": [m["_id"] for m in members],
            "score": 0,
            "createdAt": utcnow(),
        }
        team["_id"] = db["teams"].insert_one(team).inserted_id
        return team
    return _make


@pytest.fixture
def assign(db):
    def _assign(judge, event):
        db["judge_assignments"].insert_one({"judge": judge["_id"], "event": event["_id"], "createdAt": utcnow()})
    return _assign


@pytest.fixture
def sent_mail(monkeypatch):
    """Capture outgoing mail instead of talking to SMTP."""
    import app as app_module

    outbox = []

    def fake_send_mail(to, subject, text=None, html=None, from_addr=None):
        outbox.append({"to": to, "subject": subject, "text": text, "html": html})
        return "<test@hackhost>"

    monkeypatch.setattr(app_module, "send_mail", fake_send_mail)
    return outbox
