from bson import ObjectId


def event_payload(**overrides):
    payload = {
        "title": "Hack the Planet",
        "description": "48 hours of building",
        "startDate": "2030-03-01T09:00:00Z",
        "endDate": "2030-03-03T18:00:00Z",
        "mode": "hybrid",
        "themes": ["AI", "Climate"],
        "prizes": [{"title": "Winner", "amount": 50000}],
    }
    payload.update(overrides)
    return payload


def test_create_event_applies_defaults(client, db, make_user, headers_for):
    organizer = make_user(role="organizer")
    resp = client.post("/api/events", headers=headers_for(organizer), json=event_payload())
    assert resp.status_code == 201
    event = resp.get_json()["event"]
    assert event["organizer"] == str(organizer["_id"])
    assert event["status"] == "draft"
    assert event["participantType"] == "individual"
    assert event["minTeamSize"] == 1
    assert event["maxTeamSize"] == 6
    assert event["startDate"] == "2030-03-01T09:00:00Z"
    assert event["prizes"] == [{"type": "cash", "title": "Winner", "amount": 50000.0}]
    assert db["events"].count_documents({}) == 1


def test_create_event_requires_organizer_or_admin(client, make_user, headers_for):
    assert client.post("/api/events", json=event_payload()).status_code == 401
    participant = make_user()
    assert client.post("/api/events", headers=headers_for(participant), json=event_payload()).status_code == 403
    admin = make_user(role="admin")
    assert client.post("/api/events", headers=headers_for(admin), json=event_payload()).status_code == 201


def test_create_event_validation(client, make_user, headers_for):
    headers = headers_for(make_user(role="organizer"))
    cases = [
        (event_payload(title=""), "title is required"),
        ({"title": "No dates"}, "startDate is required"),
        (event_payload(mode="underwater"), "mode must be one of: online, onsite, hybrid"),
        (event_payload(minTeamSize=4, maxTeamSize=2), "maxTeamSize must be greater than or equal to minTeamSize"),
        (event_payload(minTeamSize=0), "minTeamSize must be at least 1"),
        (event_payload(fees=-5), "fees must be at least 0"),
        (event_payload(startDate="next tuesday"), "Invalid date for startDate"),
        (event_payload(endDate="2030-02-01T00:00:00Z"), "endDate must not be before startDate"),
        (event_payload(prizes=[{"title": "Swag", "type": "yacht"}]), "Invalid prize type: yacht"),
    ]
    for payload, message in cases:
        resp = client.post("/api/events", headers=headers, json=payload)
        assert resp.status_code == 400, payload
        assert resp.get_json()["message"] == message


def test_list_events_newest_first_with_organizer_name(client, make_user, make_event):
    organizer = make_user(role="organizer", name="Olive")
    older = make_event(organizer, title="Older")
    newer = make_event(organizer, title="Newer", createdAt=older["createdAt"].replace(year=older["createdAt"].year + 1))

    events = client.get("/api/events").get_json()["events"]
    assert [e["title"] for e in events] == ["Newer", "Older"]
    assert events[0]["_id"] == str(newer["_id"])
    assert events[0]["organizer"] == {"_id": str(organizer["_id"]), "name": "Olive"}


def test_get_event(client, make_user, make_event):
    event = make_event(make_user(role="organizer"))
    assert client.get(f"/api/events/{event['_id']}").get_json()["event"]["title"] == "Spring Hack"
    assert client.get("/api/events/not-an-id").status_code == 400
    assert client.get(f"/api/events/{ObjectId()}").status_code == 404


def test_update_event_by_owner(client, make_user, make_event, headers_for):
    organizer = make_user(role="organizer")
    event = make_event(organizer)
    resp = client.put(f"/api/events/{event['_id']}", headers=headers_for(organizer),
                      json={"status": "ongoing", "maxTeamSize": 5})
    assert resp.status_code == 200
    body = resp.get_json()["event"]
    assert body["status"] == "ongoing"
    assert body["maxTeamSize"] == 5


def test_update_event_checks_merged_team_sizes(client, make_user, make_event, headers_for):
    organizer = make_user(role="organizer")
    event = make_event(organizer, minTeamSize=3, maxTeamSize=4)
    resp = client.put(f"/api/events/{event['_id']}", headers=headers_for(organizer), json={"maxTeamSize": 2})
    assert resp.status_code == 400


def test_only_owner_or_admin_can_modify(client, make_user, make_event, headers_for):
    event = make_event(make_user(role="organizer"))
    other = make_user(role="organizer")
    assert client.put(f"/api/events/{event['_id']}", headers=headers_for(other),
                      json={"title": "Mine now"}).status_code == 403
    assert client.delete(f"/api/events/{event['_id']}", headers=headers_for(other)).status_code == 403

    admin = make_user(role="admin")
    assert client.delete(f"/api/events/{event['_id']}", headers=headers_for(admin)).status_code == 200
    assert client.get(f"/api/events/{event['_id']}").status_code == 404


def test_unknown_route(client):
    resp = client.get("/api/nowhere")
    assert resp.status_code == 404
    assert resp.get_json() == {"message": "Route not found"}


def test_health(client):
    assert client.get("/api/health").get_json() == {"status": "ok"}
