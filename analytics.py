"""
Analytics builders for the dashboards.

Every function here takes documents already fetched from MongoDB and returns
plain dicts, so the routes in app.py stay thin and these stay easy to test.
"""
from collections import Counter, OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

from database import as_utc, serialize
from scoring import average_score

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

SKILL_TO_CATEGORY = [
    ("frontend", ["react", "next", "frontend", "html", "css", "javascript", "typescript", "vue", "angular"]),
    ("backend", ["backend", "node", "express", "python", "django", "flask", "java", "spring",
                 "postgres", "mongodb", "sql", "api"]),
    ("design", ["design", "ui", "ux", "figma", "prototyping", "wireframe"]),
    ("mobile", ["mobile", "react native", "ios", "android", "flutter", "kotlin", "swift"]),
]
CATEGORY_NAMES = OrderedDict([
    ("frontend", "Frontend"),
    ("backend", "Backend"),
    ("design", "Design"),
    ("mobile", "Mobile"),
])


def categorize_skill(raw) -> Optional[str]:
    s = str(raw or "").lower().strip()
    if not s:
        return None
    for key, names in SKILL_TO_CATEGORY:
        if any(n in s for n in names):
            return key
    return None


def _desired_skills(reg) -> List[str]:
    skills = (reg.get("teamInfo") or {}).get("desiredSkills")
    return skills if isinstance(skills, list) else []


def skill_distribution(registrations: Iterable[Dict]) -> List[Dict]:
    """Count registrations per skill category, falling back to the chosen track."""
    counts = Counter()
    for reg in registrations:
        cats = {categorize_skill(s) for s in _desired_skills(reg)}
        cats.add(categorize_skill((reg.get("preferences") or {}).get("track")))
        cats.discard(None)
        for c in cats:
            counts[c] += 1
    return [{"key": key, "name": name, "count": counts[key]} for key, name in CATEGORY_NAMES.items()]


def _full_name(first, last, fallback):
    name = " ".join(p for p in (first, last) if p).strip()
    return name or fallback


def team_suggestions(registrations: Iterable[Dict], limit: int = 5) -> List[Dict]:
    """
    Group team registrations by (event, team name) and score each group.

    Compatibility is 80 plus up to 16 for skill-category diversity plus up to
    10 for team size, capped to 0..100.
    """
    groups = OrderedDict()
    for reg in registrations:
        team_name = ((reg.get("teamInfo") or {}).get("teamName") or "").strip()
        if not team_name:
            continue
        ev = reg.get("eventName") or str(reg.get("event") or "") or "Unknown Event"
        groups.setdefault((ev, team_name), []).append(reg)

    suggestions = []
    for (ev_name, team_name), regs in groups.items():
        regs = sorted(regs, key=lambda r: as_utc(r.get("createdAt")) or EPOCH)
        members = []
        seen = set()
        for reg in regs:
            role = (reg.get("preferences") or {}).get("track") or "Member"
            skills = _desired_skills(reg)[:3]
            listed = (reg.get("teamInfo") or {}).get("members") or []
            people = listed if listed else [reg.get("personalInfo") or {}]
            for person in people:
                email = (person.get("email") or "").lower()
                ident = email or f"{person.get('firstName')}-{person.get('lastName')}"
                if ident in seen:
                    continue
                seen.add(ident)
                members.append({
                    "name": _full_name(person.get("firstName"), person.get("lastName"), email or "Member"),
                    "role": role,
                    "avatar": None,
                    "skills": skills,
                })

        categories = {categorize_skill(s) for reg in regs for s in _desired_skills(reg)}
        categories.discard(None)
        diversity = min(4, len(categories))
        size_factor = min(5, len(members))
        compatibility = round(80 + diversity * 4 + size_factor * 2)

        strengths = []
        if diversity >= 3:
            strengths.append("Balanced skill set")
        if size_factor >= 3:
            strengths.append("High collaboration score")
        if diversity >= 2 and size_factor >= 2:
            strengths.append("Complementary experience levels")

        leader_name = members[0]["name"] if members else None
        suggestions.append({
            "id": f"{ev_name}::{team_name}",
            "name": team_name,
            "eventName": ev_name,
            "leaderName": leader_name,
            "compatibility": max(0, min(100, compatibility)),
            "members": members[:8],
            "strengths": strengths or ["Strong potential composition"],
            "projectFit": f"Good fit for {ev_name}",
        })

    suggestions.sort(key=lambda s: -s["compatibility"])
    return suggestions[:limit]


def percent_change(current: int, previous: int) -> float:
    if previous == 0:
        return 100.0 if current > 0 else 0.0
    return round((current - previous) / previous * 100, 1)


def _rate(part: int, whole: int) -> float:
    if whole <= 0:
        return 0.0
    return round(min(100.0, part / whole * 100), 1)


def _created_between(docs, start, end):
    return sum(1 for d in docs if d.get("createdAt") and start <= as_utc(d["createdAt"]) < end)


def dashboard_summary(events, registrations, teams, submissions, now) -> Dict:
    """Headline numbers plus week-over-week change for the analytics dashboard."""
    week_ago = now - timedelta(days=7)
    two_weeks_ago = now - timedelta(days=14)
    reviewed = sum(1 for s in submissions if s.get("status") == "reviewed")
    return {
        "activeEvents": sum(1 for e in events if e.get("status") in ("upcoming", "ongoing")),
        "totalParticipants": len(registrations),
        "projectsSubmitted": len(submissions),
        "teamsFormed": len(teams),
        "successRate": _rate(reviewed, len(submissions)),
        "engagementRate": _rate(len(submissions), len(teams)),
        "changes": {
            "participants": percent_change(
                _created_between(registrations, week_ago, now),
                _created_between(registrations, two_weeks_ago, week_ago),
            ),
            "submissions": percent_change(
                _created_between(submissions, week_ago, now),
                _created_between(submissions, two_weeks_ago, week_ago),
            ),
        },
        "lastUpdated": serialize(now),
    }


def participation_trends(registrations, submissions, now, days: int = 14) -> List[Dict]:
    start = (now - timedelta(days=days - 1)).date()
    buckets = OrderedDict(
        ((start + timedelta(days=i)).isoformat(), {"registrations": 0, "submissions": 0})
        for i in range(days)
    )
    for key, docs in (("registrations", registrations), ("submissions", submissions)):
        for doc in docs:
            created = doc.get("createdAt")
            if not created:
                continue
            day = as_utc(created).date().isoformat()
            if day in buckets:
                buckets[day][key] += 1
    return [dict(date=day, **counts) for day, counts in buckets.items()]


def activity_feed(registrations, submissions, teams, limit: int = 10) -> List[Dict]:
    items = []
    for reg in registrations:
        info = reg.get("personalInfo") or {}
        who = _full_name(info.get("firstName"), info.get("lastName"), info.get("email") or "Someone")
        items.append({
            "type": "registration",
            "message": f"{who} registered for {reg.get('eventName') or 'an event'}",
            "timestamp": reg.get("createdAt"),
            "icon": "user-plus",
        })
    for sub in submissions:
        items.append({
            "type": "submission",
            "message": f"New submission: {sub.get('title') or 'Untitled project'}",
            "timestamp": sub.get("createdAt"),
            "icon": "upload",
        })
    for team in teams:
        items.append({
            "type": "team_formed",
            "message": f"Team {team.get('name')} was formed",
            "timestamp": team.get("createdAt"),
            "icon": "users",
        })
    items = [i for i in items if i["timestamp"]]
    items.sort(key=lambda i: as_utc(i["timestamp"]), reverse=True)
    return serialize(items[:limit])


def event_metrics(event, registrations, teams, submissions) -> Dict:
    by_type = Counter(r.get("registrationType") or "individual" for r in registrations)
    tracks = Counter(
        (r.get("preferences") or {}).get("track") for r in registrations
        if (r.get("preferences") or {}).get("track")
    )
    reviewed = [s for s in submissions if s.get("status") == "reviewed"]
    return {
        "eventId": str(event["_id"]),
        "title": event.get("title"),
        "status": event.get("status"),
        "registrations": len(registrations),
        "individualRegistrations": by_type.get("individual", 0),
        "teamRegistrations": by_type.get("team", 0),
        "teams": len(teams),
        "submissions": len(submissions),
        "reviewedSubmissions": len(reviewed),
        "averageScore": average_score(s.get("score") for s in reviewed),
        "tracks": [{"track": t, "count": c} for t, c in tracks.most_common()],
    }


OVERVIEW_SORTS = {
    "registrations": lambda e: -e["registrations"],
    "submissions": lambda e: -e["submissions"],
    "teams": lambda e: -e["teams"],
    "title": lambda e: str(e.get("title") or "").lower(),
    "startDate": lambda e: str(e.get("startDate") or ""),
}


def events_overview(events, counts_by_event: Dict[str, Dict], sort: str = "registrations") -> List[Dict]:
    rows = []
    for ev in events:
        counts = counts_by_event.get(str(ev["_id"]), {})
        rows.append({
            "id": str(ev["_id"]),
            "title": ev.get("title"),
            "status": ev.get("status"),
            "startDate": serialize(ev.get("startDate")),
            "endDate": serialize(ev.get("endDate")),
            "registrations": counts.get("registrations", 0),
            "teams": counts.get("teams", 0),
            "submissions": counts.get("submissions", 0),
        })
    rows.sort(key=OVERVIEW_SORTS.get(sort, OVERVIEW_SORTS["registrations"]))
    return rows
