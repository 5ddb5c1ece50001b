from bson import ObjectId

import app as app_module
from auth import create_token
from realtime import socketio


def test_invite_flow(client, db, make_user, make_event, headers_for, sent_mail):
    event = make_event(make_user(role="organizer"))
    sender = make_user()
    invitee = make_user(email="friend@example.com")

    resp = client.post("/api/invites", headers=headers_for(sender), json={
        "recipientEmail": "Friend@Example.com", "eventId": str(event["_id"]), "teamName": "Byte Club",
    })
    assert resp.status_code == 200
    invite = resp.get_json()["invite"]
    assert invite["status"] == "pending"
    assert len(invite["token"]) == 48
    assert sent_mail[0]["to"] == "friend@example.com"
    assert f"/invites?token={invite['token']}" in sent_mail[0]["html"]

    pending = client.get("/api/invites/my", headers=headers_for(invitee)).get_json()["invites"]
    assert len(pending) == 1
    assert pending[0]["event"]["title"] == "Spring Hack"
    assert pending[0]["sender"]["_id"] == str(sender["_id"])

    accepted = client.post(f"/api/invites/accept/{invite['token']}", headers=headers_for(invitee))
    assert accepted.status_code == 200
    assert accepted.get_json()["eventId"] == str(event["_id"])
    team = db["teams"].find_one({"name": "Byte Club", "event": event["_id"]})
    assert team["members"] == [invitee["_id"]]

    again = client.post(f"/api/invites/accept/{invite['token']}", headers=headers_for(invitee))
    assert again.status_code == 400
    assert client.get("/api/invites/my", headers=headers_for(invitee)).get_json()["invites"] == []


def test_invite_for_someone_else(client, make_user, make_event, headers_for, sent_mail):
    event = make_event(make_user(role="organizer"))
    resp = client.post("/api/invites", headers=headers_for(make_user()),
                       json={"recipientEmail": "friend@example.com", "eventId": str(event["_id"])})
    token = resp.get_json()["invite"]["token"]

    stranger = make_user(email="stranger@example.com")
    assert client.post(f"/api/invites/accept/{token}", headers=headers_for(stranger)).status_code == 403
    assert client.post("/api/invites/accept/unknown", headers=headers_for(stranger)).status_code == 404


def test_invite_survives_mail_failure(client, db, make_user, make_event, headers_for, monkeypatch):
    def broken_mail(*args, **kwargs):
        raise ConnectionRefusedError("smtp down")

    monkeypatch.setattr(app_module, "send_mail", broken_mail)
    event = make_event(make_user(role="organizer"))
    resp = client.post("/api/invites", headers=headers_for(make_user()),
                       json={"recipientEmail": "friend@example.com", "eventId": str(event["_id"])})
    assert resp.status_code == 200
    assert db["invites"].count_documents({}) == 1


def test_invite_validation(client, make_user, headers_for):
    headers = headers_for(make_user())
    assert client.post("/api/invites", headers=headers, json={"recipientEmail": "a@b.com"}).status_code == 400
    assert client.post("/api/invites", headers=headers,
                       json={"recipientEmail": "a@b.com", "eventId": str(ObjectId())}).status_code == 404
    assert client.post("/api/invites", headers=headers,
                       json={"recipientEmail": ["a@b.com"], "eventId": str(ObjectId())}).status_code == 400


def broadcast(client, headers, event, **body):
    return client.post(f"/api/notifications/broadcast-to-event/{event['_id']}", headers=headers, json=body)


def test_broadcast_collects_recipients(client, db, make_user, make_event, make_team, headers_for):
    organizer = make_user(role="organizer")
    event = make_event(organizer)
    member = make_user()
    registrant = make_user(email="reg@example.com")
    teammate = make_user(email="mate@example.com")
    explicit = make_user()
    make_team(event, members=[member])
    db["registrations"].insert_one({
        "event": event["_id"],
        "personalInfo": {"email": "reg@example.com"},
        "teamInfo": {"members": [{"email": "MATE@example.com"}, {"email": "nouser@example.com"}]},
    })

    resp = broadcast(client, headers_for(organizer), event, title="Kickoff", message="Starts at 9",
                     type="update", userIds=[str(explicit["_id"]), str(member["_id"]), "junk"])
    assert resp.status_code == 201
    body = resp.get_json()
    assert body["success"] is True
    assert body["created"] is True
    assert body["recipients"] == 4

    stored = db["notifications"].find_one({})
    assert set(stored["recipientUserIds"]) == {member["_id"], registrant["_id"], teammate["_id"], explicit["_id"]}
    assert stored["type"] == "update"


def test_broadcast_rules(client, make_user, make_event, headers_for):
    organizer = make_user(role="organizer")
    event = make_event(organizer)

    other = broadcast(client, headers_for(make_user(role="organizer")), event, title="Hi")
    assert other.status_code == 403
    assert broadcast(client, headers_for(organizer), event).status_code == 400
    assert broadcast(client, headers_for(organizer), event, title="Hi", type="spam").status_code == 400
    assert broadcast(client, headers_for(organizer), event, title="Hi", teamIds="abc").status_code == 400
    assert broadcast(client, headers_for(organizer), event, title="Hi", userIds="abc").status_code == 400

    empty = broadcast(client, headers_for(organizer), event, title="Anyone?")
    assert empty.status_code == 200
    assert empty.get_json() == {"success": True, "created": False, "recipients": 0}


def test_notification_inbox(client, make_user, make_event, make_team, headers_for):
    organizer = make_user(role="organizer")
    event = make_event(organizer)
    member = make_user()
    make_team(event, members=[member])
    first = broadcast(client, headers_for(organizer), event, title="One").get_json()["notification"]
    broadcast(client, headers_for(organizer), event, title="Two")
    headers = headers_for(member)

    unread = client.get("/api/notifications", headers=headers).get_json()["notifications"]
    assert {n["title"] for n in unread} == {"One", "Two"}
    assert all(n["read"] is False for n in unread)

    marked = client.patch(f"/api/notifications/{first['_id']}/read", headers=headers)
    assert marked.get_json()["notification"]["read"] is True
    unread = client.get("/api/notifications", headers=headers).get_json()["notifications"]
    assert [n["title"] for n in unread] == ["Two"]

    everything = client.get("/api/notifications?status=all", headers=headers).get_json()["notifications"]
    assert {n["title"]: n["read"] for n in everything} == {"One": True, "Two": False}

    assert client.patch("/api/notifications/read-all", headers=headers).get_json()["success"] is True
    assert client.get("/api/notifications", headers=headers).get_json()["notifications"] == []

    outsider = headers_for(make_user())
    assert client.patch(f"/api/notifications/{first['_id']}/read", headers=outsider).status_code == 404
    limited = client.get("/api/notifications?limit=1&status=all", headers=headers).get_json()["notifications"]
    assert len(limited) == 1


def test_broadcast_is_pushed_to_recipient_rooms(app, client, make_user, make_event, make_team, headers_for):
    organizer = make_user(role="organizer")
    event = make_event(organizer)
    member, bystander = make_user(), make_user()
    make_team(event, members=[member])

    member_socket = socketio.test_client(app, auth={"token": create_token(member)})
    bystander_socket = socketio.test_client(app, auth={"token": create_token(bystander)})
    member_socket.get_received()
    bystander_socket.get_received()

    broadcast(client, headers_for(organizer), event, title="Pizza is here", link="/events")

    pushed = [m for m in member_socket.get_received() if m["name"] == "notification:new"]
    assert len(pushed) == 1
    payload = pushed[0]["args"][0]
    assert payload["title"] == "Pizza is here"
    assert payload["eventId"] == str(event["_id"])
    assert [m for m in bystander_socket.get_received() if m["name"] == "notification:new"] == []

    member_socket.disconnect()
    bystander_socket.disconnect()
