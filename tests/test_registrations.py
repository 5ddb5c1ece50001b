from datetime import timedelta

from database import utcnow

AGREED = {"termsAccepted": True, "codeOfConductAccepted": True, "dataProcessingAccepted": True}


def registration(**overrides):
    payload = {
        "registrationType": "individual",
        "personalInfo": {"firstName": "Lin", "lastName": "Chen", "email": "Lin@Example.com"},
        "preferences": {"track": "Web", "tshirtSize": "M"},
        "agreements": dict(AGREED),
    }
    payload.update(overrides)
    return payload


def test_individual_registration(client, db, make_user, make_event):
    event = make_event(make_user(role="organizer"))
    resp = client.post(f"/api/events/{event['_id']}/register", json=registration())
    assert resp.status_code == 201
    reg = resp.get_json()["registration"]
    assert reg["event"] == str(event["_id"])
    assert reg["eventName"] == "Spring Hack"
    assert reg["personalInfo"]["email"] == "lin@example.com"
    assert reg["payment"] == {"status": "free", "amount": 0, "currency": "INR"}
    assert db["teams"].count_documents({}) == 0


def test_team_registration_upserts_team(client, db, make_user, make_event, headers_for):
    event = make_event(make_user(role="organizer"))
    member = make_user()
    payload = registration(
        registrationType="team",
        teamInfo={"teamName": "Byte Club", "desiredSkills": ["React", "Figma"],
                  "members": [{"firstName": "Sam", "lastName": "Ng", "email": "SAM@example.com"}]},
    )
    resp = client.post(f"/api/events/{event['_id']}/register", json=payload, headers=headers_for(member))
    assert resp.status_code == 201
    assert resp.get_json()["registration"]["teamInfo"]["members"][0]["email"] == "sam@example.com"

    payload["personalInfo"] = {"firstName": "Kim", "lastName": "Lee", "email": "kim@example.com"}
    assert client.post(f"/api/events/{event['_id']}/register", json=payload).status_code == 201

    teams = list(db["teams"].find({"event": event["_id"]}))
    assert len(teams) == 1
    assert teams[0]["name"] == "Byte Club"
    assert teams[0]["eventName"] == "Spring Hack"
    assert teams[0]["members"] == [member["_id"]]


def test_registration_rules(client, make_user, make_event):
    event = make_event(make_user(role="organizer"))
    url = f"/api/events/{event['_id']}/register"
    cases = [
        (registration(registrationType="duo"), "Invalid registration type"),
        (registration(personalInfo={"firstName": "Lin", "email": "lin@example.com"}),
         "Missing required personal information"),
        (registration(agreements=dict(AGREED, codeOfConductAccepted=False)), "All agreements must be accepted"),
        (registration(agreements={}), "All agreements must be accepted"),
        (registration(registrationType="team", teamInfo={"teamName": "  "}),
         "Team name is required for team registration"),
    ]
    for payload, message in cases:
        resp = client.post(url, json=payload)
        assert resp.status_code == 400
        assert resp.get_json()["message"] == message


def test_registration_after_deadline(client, make_user, make_event):
    event = make_event(make_user(role="organizer"), registrationDeadline=utcnow() - timedelta(hours=1))
    resp = client.post(f"/api/events/{event['_id']}/register", json=registration())
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "Registration deadline has passed"


def test_registration_requires_organizer_event(client, make_event):
    event = make_event(None)
    assert client.post(f"/api/events/{event['_id']}/register", json=registration()).status_code == 400


def test_registration_limit_and_duplicates(client, make_user, make_event):
    event = make_event(make_user(role="organizer"), registrationLimit=2)
    url = f"/api/events/{event['_id']}/register"
    assert client.post(url, json=registration()).status_code == 201

    duplicate = client.post(url, json=registration(personalInfo={
        "firstName": "Lin", "lastName": "Chen", "email": "lin@example.com"}))
    assert duplicate.status_code == 409

    second = registration(personalInfo={"firstName": "Ana", "lastName": "Ruiz", "email": "ana@example.com"})
    assert client.post(url, json=second).status_code == 201

    third = registration(personalInfo={"firstName": "Bo", "lastName": "Li", "email": "bo@example.com"})
    resp = client.post(url, json=third)
    assert resp.status_code == 409
    assert resp.get_json()["message"] == "Registration limit reached"


def test_my_registrations_by_email(client, make_user, make_event):
    event = make_event(make_user(role="organizer"))
    url = f"/api/events/{event['_id']}/register"
    client.post(url, json=registration())
    client.post(url, json=registration(
        registrationType="team",
        personalInfo={"firstName": "Kim", "lastName": "Lee", "email": "kim@example.com"},
        teamInfo={"teamName": "Byte Club", "members": [{"firstName": "Lin", "email": "lin@example.com"}]},
    ))

    resp = client.get("/api/registrations/mine?email=LIN@example.com")
    assert resp.status_code == 200
    regs = resp.get_json()["registrations"]
    assert len(regs) == 2
    assert "personalInfo" not in regs[0]
    assert {r["registrationType"] for r in regs} == {"individual", "team"}

    full = client.get("/api/registrations/mine?email=lin@example.com&full=true").get_json()["registrations"]
    assert all("personalInfo" in r for r in full)


def test_my_registrations_falls_back_to_token_email(client, make_user, make_event, headers_for):
    event = make_event(make_user(role="organizer"))
    user = make_user(email="lin@example.com")
    client.post(f"/api/events/{event['_id']}/register", json=registration())

    resp = client.get("/api/registrations/mine", headers=headers_for(user))
    assert len(resp.get_json()["registrations"]) == 1
    assert client.get("/api/registrations/mine").status_code == 400
