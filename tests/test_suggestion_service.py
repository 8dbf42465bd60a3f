"""
Suggestion service tests.

Guards against:
1. Regeneration creating duplicates for the same day
2. Broadcast vs personal suggestions leaking across branches or owners
3. Feedback stats being computed from the truncated recent list
4. Partial writes from a bad ingest batch
5. The same ingested row hashing differently when ids arrive as strings
6. Trend windows drifting off the Sunday week start or leaking other branches
"""
from datetime import datetime, timedelta

import pytest

from kpi_coach.models.suggestion import Suggestion, SuggestionFeedback
from kpi_coach.services.errors import ConflictError, ForbiddenError, ValidationError
from kpi_coach.services.feedback_service import FeedbackService
from kpi_coach.services.scope import resolve_scope
from kpi_coach.services.suggestion_service import SuggestionService

DATE_KEY = "2026-03-10"


def _feedback(db, actor, suggestion_id, feedback_type="HELPFUL", reason="de_lam_theo"):
    return FeedbackService(db).submit(actor, suggestion_id, feedback_type, reason)


def _manual(db, actor, title="Call back yesterday's leads", severity="YELLOW", **kwargs):
    kwargs.setdefault("date_key", DATE_KEY)
    return SuggestionService(db).create_manual(
        actor, role=kwargs.pop("role", "telesales"), title=title, content="Work the list before noon",
        severity=severity, **kwargs
    )


def _age_feedback(db, start=datetime(2026, 3, 10, 3, 0)):
    """Spread feedback timestamps one minute apart in insertion order."""
    for i, fb in enumerate(db.query(SuggestionFeedback).order_by(SuggestionFeedback.id).all()):
        fb.created_at = start + timedelta(minutes=i)
    db.commit()


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------

def test_branch_backlog_generates_one_red_broadcast(db, make, as_actor):
    branch_a = make.branch()
    make.branch()
    t1 = make.user("telesales", branch=branch_a)
    t2 = make.user("telesales", branch=branch_a)
    admin = make.user("admin")
    make.leads(12, branch_a, owner=t1, status="HAS_PHONE")

    service = SuggestionService(db)
    first = service.ensure_generated(DATE_KEY, resolve_scope(db, as_actor(admin)))
    second = service.ensure_generated(DATE_KEY, resolve_scope(db, as_actor(admin)))

    assert first["created"] == 1
    assert second["created"] == 0
    assert second["skipped"] == 1
    assert db.query(Suggestion).count() == 1

    items = service.list_suggestions(as_actor(t2), date_key=DATE_KEY)["items"]
    assert len(items) == 1
    assert items[0]["severity"] == "RED"
    assert "12" in items[0]["title"]
    assert items[0]["owner_id"] is None
    assert items[0]["branch_id"] == branch_a.id

    _feedback(db, as_actor(t2), items[0]["id"])
    with pytest.raises(ConflictError):
        _feedback(db, as_actor(t2), items[0]["id"], feedback_type="DONE")


def test_listing_generates_for_the_day(db, make, as_actor):
    branch = make.branch()
    manager = make.user("manager", branch=branch)
    make.leads(6, branch, status="ARRIVED")

    items = SuggestionService(db).list_suggestions(as_actor(manager), date_key=DATE_KEY)["items"]

    assert [i["severity"] for i in items] == ["RED"]
    assert items[0]["source"] == "rule_skeleton_v2"
    assert "arrived_not_signed=6" in items[0]["engine_notes"]


def test_owner_generation_is_personal(db, make, as_actor):
    branch = make.branch()
    rep = make.user("telesales", branch=branch)
    other = make.user("telesales", branch=branch)
    make.leads(3, branch, owner=rep, status="HAS_PHONE")
    make.leads(20, branch, owner=other, status="HAS_PHONE")

    items = SuggestionService(db).list_suggestions(as_actor(rep), date_key=DATE_KEY)["items"]

    assert len(items) == 1
    assert items[0]["owner_id"] == rep.id
    assert items[0]["severity"] == "YELLOW"
    assert items[0]["title"].startswith("3 ")


def test_quiet_day_generates_nothing(db, make, as_actor):
    make.branch()
    admin = make.user("admin")

    result = SuggestionService(db).ensure_generated(DATE_KEY, resolve_scope(db, as_actor(admin)))

    assert result["created"] == 0
    assert result["run_id"]


# ---------------------------------------------------------------------------
# Listing scope and ordering
# ---------------------------------------------------------------------------

def test_manager_does_not_see_other_branch(db, make, as_actor):
    branch_a = make.branch()
    branch_b = make.branch()
    admin = make.user("admin")
    manager_b = make.user("manager", branch=branch_b)
    make.leads(12, branch_a, status="HAS_PHONE")
    SuggestionService(db).ensure_generated(DATE_KEY, resolve_scope(db, as_actor(admin)))

    items = SuggestionService(db).list_suggestions(as_actor(manager_b), date_key=DATE_KEY)["items"]

    assert items == []
    with pytest.raises(ForbiddenError):
        SuggestionService(db).list_suggestions(as_actor(manager_b), date_key=DATE_KEY, branch_id=branch_a.id)


def test_owner_cannot_filter_on_another_owner(db, make, as_actor):
    branch = make.branch()
    rep = make.user("telesales", branch=branch)
    other = make.user("telesales", branch=branch)

    with pytest.raises(ForbiddenError):
        SuggestionService(db).list_suggestions(as_actor(rep), date_key=DATE_KEY, owner_id=other.id)


def test_owner_does_not_see_peer_personal_suggestions(db, make, as_actor):
    branch = make.branch()
    manager = make.user("manager", branch=branch)
    rep = make.user("telesales", branch=branch)
    other = make.user("telesales", branch=branch)
    _manual(db, as_actor(manager), title="For the rep", owner_id=other.id)
    _manual(db, as_actor(manager), title="For everyone")

    items = SuggestionService(db).list_suggestions(as_actor(rep), date_key=DATE_KEY)["items"]

    assert [i["title"] for i in items] == ["For everyone"]


def test_list_orders_by_severity_then_newest(db, make, as_actor):
    branch = make.branch()
    manager = make.user("manager", branch=branch)
    _manual(db, as_actor(manager), title="Old yellow", severity="YELLOW")
    _manual(db, as_actor(manager), title="Green", severity="GREEN")
    _manual(db, as_actor(manager), title="Red", severity="RED")
    _manual(db, as_actor(manager), title="New yellow", severity="YELLOW")

    items = SuggestionService(db).list_suggestions(as_actor(manager), date_key=DATE_KEY)["items"]

    assert [i["title"] for i in items] == ["Red", "New yellow", "Old yellow", "Green"]


def test_list_filters_by_role_and_skips_archived(db, make, as_actor):
    branch = make.branch()
    manager = make.user("manager", branch=branch)
    kept = _manual(db, as_actor(manager), title="Phone capture", role="direct_page")
    _manual(db, as_actor(manager), title="Calls", role="telesales")
    archived = _manual(db, as_actor(manager), title="Old", role="direct_page")
    db.query(Suggestion).filter(Suggestion.id == archived["id"]).update({"status": "ARCHIVED"})
    db.commit()

    items = SuggestionService(db).list_suggestions(as_actor(manager), date_key=DATE_KEY, role="direct_page")["items"]

    assert [i["id"] for i in items] == [kept["id"]]


def test_list_rejects_bad_date_and_role(db, make, as_actor):
    admin = make.user("admin")
    service = SuggestionService(db)

    with pytest.raises(ValidationError):
        service.list_suggestions(as_actor(admin), date_key="10/03/2026")
    with pytest.raises(ValidationError):
        service.list_suggestions(as_actor(admin), date_key=DATE_KEY, role="accountant")


# ---------------------------------------------------------------------------
# Feedback annotation
# ---------------------------------------------------------------------------

def test_stats_are_exact_beyond_recent_feedback_limit(db, make, as_actor):
    branch = make.branch()
    manager = make.user("manager", branch=branch)
    suggestion = _manual(db, as_actor(manager))
    reps = [make.user("telesales", branch=branch) for _ in range(7)]
    for i, rep in enumerate(reps):
        _feedback(db, as_actor(rep), suggestion["id"], feedback_type="NOT_HELPFUL" if i < 2 else "HELPFUL",
                  reason="thieu_du_lieu" if i < 2 else "de_lam_theo")
    _age_feedback(db)

    item = SuggestionService(db).list_suggestions(as_actor(reps[0]), date_key=DATE_KEY)["items"][0]

    assert item["feedback_stats"] == {"total": 7, "helpful": 5, "not_helpful": 2, "done": 0}
    assert [f["user_id"] for f in item["recent_feedback"]] == [r.id for r in reversed(reps[2:])]
    # the actor's own entry is older than every recent one
    assert item["my_feedback"]["user_id"] == reps[0].id
    assert item["my_feedback"]["feedback_type"] == "NOT_HELPFUL"


def test_recent_feedback_is_capped_per_suggestion(db, make, as_actor):
    branch = make.branch()
    manager = make.user("manager", branch=branch)
    first = _manual(db, as_actor(manager), title="First")
    second = _manual(db, as_actor(manager), title="Second")
    reps = [make.user("telesales", branch=branch) for _ in range(6)]
    for rep in reps:
        _feedback(db, as_actor(rep), first["id"])
    _feedback(db, as_actor(reps[0]), second["id"], feedback_type="DONE")
    _age_feedback(db)

    items = SuggestionService(db).list_suggestions(as_actor(manager), date_key=DATE_KEY)["items"]
    by_title = {i["title"]: i for i in items}

    assert len(by_title["First"]["recent_feedback"]) == 5
    assert by_title["First"]["feedback_stats"]["total"] == 6
    assert [f["feedback_type"] for f in by_title["Second"]["recent_feedback"]] == ["DONE"]
    assert by_title["First"]["my_feedback"] is None


def test_my_feedback_is_none_before_responding(db, make, as_actor):
    branch = make.branch()
    manager = make.user("manager", branch=branch)
    _manual(db, as_actor(manager))

    item = SuggestionService(db).list_suggestions(as_actor(manager), date_key=DATE_KEY)["items"][0]

    assert item["my_feedback"] is None
    assert item["feedback_stats"]["total"] == 0
    assert item["recent_feedback"] == []


# ---------------------------------------------------------------------------
# Manual creation
# ---------------------------------------------------------------------------

def test_manual_suggestion_defaults_to_actor_branch(db, make, as_actor):
    branch = make.branch()
    manager = make.user("manager", branch=branch)

    created = _manual(db, as_actor(manager), severity="red")

    assert created["branch_id"] == branch.id
    assert created["severity"] == "RED"
    assert created["source"] == "manual"


def test_manual_suggestion_repeat_returns_existing_row(db, make, as_actor):
    branch = make.branch()
    manager = make.user("manager", branch=branch)

    first = _manual(db, as_actor(manager))
    again = _manual(db, as_actor(manager))

    assert first["id"] == again["id"]
    assert db.query(Suggestion).count() == 1


@pytest.mark.parametrize("override", [
    {"title": "   "},
    {"severity": "ORANGE"},
    {"role": "accountant"},
    {"date_key": "2026-13-01"},
])
def test_manual_suggestion_validation(db, make, as_actor, override):
    branch = make.branch()
    manager = make.user("manager", branch=branch)

    with pytest.raises(ValidationError):
        _manual(db, as_actor(manager), **override)


def test_manual_suggestion_rejects_unknown_action_kind(db, make, as_actor):
    branch = make.branch()
    manager = make.user("manager", branch=branch)

    with pytest.raises(ValidationError):
        _manual(db, as_actor(manager), actions=[{"kind": "SEND_EMAIL", "label": "Email"}])


def test_manual_suggestion_owner_must_belong_to_branch(db, make, as_actor):
    branch = make.branch()
    elsewhere = make.branch()
    manager = make.user("manager", branch=branch)
    outsider = make.user("telesales", branch=elsewhere)

    with pytest.raises(ValidationError):
        _manual(db, as_actor(manager), owner_id=outsider.id)


def test_owner_cannot_create_for_peer(db, make, as_actor):
    branch = make.branch()
    rep = make.user("telesales", branch=branch)
    peer = make.user("telesales", branch=branch)

    with pytest.raises(ForbiddenError):
        _manual(db, as_actor(rep), owner_id=peer.id)


def test_manual_suggestion_outside_scope_is_forbidden(db, make, as_actor):
    branch = make.branch()
    other = make.branch()
    manager = make.user("manager", branch=branch)

    with pytest.raises(ForbiddenError):
        _manual(db, as_actor(manager), branch_id=other.id)


# ---------------------------------------------------------------------------
# External ingestion
# ---------------------------------------------------------------------------

def _ingest_row(branch, title="Push appointment confirmations", **overrides):
    row = {
        "date_key": DATE_KEY,
        "role": "telesales",
        "branch_id": branch.id,
        "title": title,
        "content": "Confirm tomorrow's appointments by Zalo",
        "severity": "YELLOW",
        "actions": [{"kind": "CREATE_TASK", "label": "Confirm appointments"}],
        "evidence": {"appointments_tomorrow": 14},
    }
    row.update(overrides)
    return row


def test_ingest_inserts_and_dedupes(db, make):
    branch = make.branch()
    service = SuggestionService(db)
    batch = [_ingest_row(branch), _ingest_row(branch, title="Second")]

    first = service.ingest_external("n8n", "run-1", batch)
    second = service.ingest_external("n8n", "run-2", batch)

    assert first == {"count": 2, "skipped": 0}
    assert second == {"count": 0, "skipped": 2}
    rows = db.query(Suggestion).all()
    assert {r.source for r in rows} == {"n8n"}
    assert {r.run_id for r in rows} == {"run-1"}


@pytest.mark.parametrize("source", ["zapier", "N8N", ""])
def test_ingest_rejects_untrusted_source(db, make, source):
    branch = make.branch()

    with pytest.raises(ValidationError):
        SuggestionService(db).ingest_external(source, "run-1", [_ingest_row(branch)])


def test_ingest_bad_row_writes_nothing(db, make):
    branch = make.branch()
    batch = [_ingest_row(branch), _ingest_row(branch, title="Bad", severity="PURPLE")]

    with pytest.raises(ValidationError, match=r"suggestions\[1\]"):
        SuggestionService(db).ingest_external("n8n", "run-1", batch)

    assert db.query(Suggestion).count() == 0


def test_ingest_rejects_unknown_branch(db, make):
    branch = make.branch()

    with pytest.raises(ValidationError):
        SuggestionService(db).ingest_external("n8n", "run-1", [_ingest_row(branch, branch_id=9999)])


def test_ingest_requires_rows(db):
    with pytest.raises(ValidationError):
        SuggestionService(db).ingest_external("n8n", "run-1", [])


def test_ingest_string_ids_dedupe_with_int_ids(db, make):
    branch = make.branch()
    rep = make.user("telesales", branch=branch)
    service = SuggestionService(db)

    first = service.ingest_external("n8n", "run-1", [
        _ingest_row(branch, branch_id=f" {branch.id} ", owner_id=str(rep.id)),
    ])
    second = service.ingest_external("n8n", "run-2", [_ingest_row(branch, owner_id=rep.id)])

    assert first == {"count": 1, "skipped": 0}
    assert second == {"count": 0, "skipped": 1}
    row = db.query(Suggestion).one()
    assert (row.branch_id, row.owner_id) == (branch.id, rep.id)


@pytest.mark.parametrize("field", ["branch_id", "owner_id"])
@pytest.mark.parametrize("value", ["abc", 1.5, True, "-3", 0])
def test_ingest_rejects_malformed_ids(db, make, field, value):
    branch = make.branch()

    with pytest.raises(ValidationError, match=rf"suggestions\[0\]: {field}"):
        SuggestionService(db).ingest_external("n8n", "run-1", [_ingest_row(branch, **{field: value})])

    assert db.query(Suggestion).count() == 0


# ---------------------------------------------------------------------------
# Summary and analytics
# ---------------------------------------------------------------------------

def test_summary_picks_most_urgent(db, make, as_actor):
    branch = make.branch()
    manager = make.user("manager", branch=branch)
    _manual(db, as_actor(manager), title="Tidy the pipeline", severity="YELLOW")
    _manual(db, as_actor(manager), title="Tuition overdue", severity="RED")

    summary = SuggestionService(db).get_summary(as_actor(manager), date_key=DATE_KEY)

    assert summary["has_summary"]
    assert summary["summary"] == "[RED] Tuition overdue (+1 more)"
    assert summary["total_active"] == 2


def test_summary_empty_day(db, make, as_actor):
    admin = make.user("admin")

    summary = SuggestionService(db).get_summary(as_actor(admin), date_key=DATE_KEY)

    assert summary["has_summary"] is False
    assert summary["top_suggestion"] is None


def test_analytics_aggregates_feedback_in_scope(db, make, as_actor):
    branch = make.branch()
    other = make.branch()
    manager = make.user("manager", branch=branch)
    other_manager = make.user("manager", branch=other)
    first = _manual(db, as_actor(manager), title="First")
    second = _manual(db, as_actor(manager), title="Second")
    hidden = _manual(db, as_actor(other_manager), title="Other branch")
    reps = [make.user("telesales", branch=branch) for _ in range(3)]
    _feedback(db, as_actor(reps[0]), first["id"])
    _feedback(db, as_actor(reps[1]), first["id"])
    _feedback(db, as_actor(reps[2]), second["id"], feedback_type="NOT_HELPFUL", reason="chua_sat_thuc_te")
    _feedback(db, as_actor(other_manager), hidden["id"], feedback_type="DONE")

    data = SuggestionService(db).get_analytics(as_actor(manager), date_from=DATE_KEY, date_to=DATE_KEY)

    assert data["total"] == 3
    assert data["by_type"] == {"HELPFUL": 2, "NOT_HELPFUL": 1, "DONE": 0}
    assert data["by_reason"] == {"de_lam_theo": 2, "chua_sat_thuc_te": 1}
    assert data["avg_rating"] == round(11 / 3, 2)
    assert data["applied_rate"] == round(2 / 3, 4)
    assert data["top_helpful"][0]["suggestion_id"] == first["id"]
    assert data["top_helpful"][0]["count"] == 2
    assert data["top_not_helpful"][0]["suggestion_id"] == second["id"]


def test_analytics_without_feedback(db, make, as_actor):
    admin = make.user("admin")

    data = SuggestionService(db).get_analytics(as_actor(admin))

    assert data["total"] == 0
    assert data["avg_rating"] is None
    assert data["applied_rate"] is None


# ---------------------------------------------------------------------------
# Trend
# ---------------------------------------------------------------------------

def _feedback_at(db, actor, suggestion_id, when, feedback_type="HELPFUL"):
    created = _feedback(db, actor, suggestion_id, feedback_type=feedback_type)
    db.query(SuggestionFeedback).filter(SuggestionFeedback.id == created["id"]).update({"created_at": when})
    db.commit()


def test_trend_compares_weeks_and_months_in_scope(db, make, as_actor):
    branch = make.branch()
    other = make.branch()
    manager = make.user("manager", branch=branch)
    other_manager = make.user("manager", branch=other)
    reps = [make.user("telesales", branch=branch) for _ in range(3)]
    today = _manual(db, as_actor(manager), title="Today", severity="RED")
    sunday = _manual(db, as_actor(manager), title="Sunday", date_key="2026-03-08")
    saturday = _manual(db, as_actor(manager), title="Saturday", date_key="2026-03-07")
    _manual(db, as_actor(manager), title="February", severity="GREEN", date_key="2026-02-20")
    _manual(db, as_actor(manager), title="Tomorrow", severity="RED", date_key="2026-03-11")
    hidden = _manual(db, as_actor(other_manager), title="Other branch", severity="RED")

    _feedback_at(db, as_actor(reps[0]), today["id"], datetime(2026, 3, 9, 3, 0))
    # 00:30 local on Sunday the 8th is already this week
    _feedback_at(db, as_actor(reps[1]), sunday["id"], datetime(2026, 3, 7, 17, 30))
    _feedback_at(db, as_actor(reps[2]), saturday["id"], datetime(2026, 3, 7, 16, 30))
    _feedback_at(db, as_actor(reps[0]), saturday["id"], datetime(2026, 3, 10, 2, 0), feedback_type="NOT_HELPFUL")
    _feedback_at(db, as_actor(other_manager), hidden["id"], datetime(2026, 3, 9, 3, 0))

    trend = SuggestionService(db).get_trend(as_actor(manager), date_key=DATE_KEY)

    assert trend["week_start"] == "2026-03-08"
    assert trend["weekly"] == {"current": 2, "previous": 1, "change_pct": 100}
    assert trend["monthly"] == {"current": 3, "previous": 1, "change_pct": 200}
    assert trend["feedback"] == {
        "helpful_this_week": 2,
        "helpful_prev_week": 1,
        "helpful_change_pct": 100,
        "not_helpful_this_week": 1,
        "not_helpful_prev_week": 0,
        "not_helpful_change_pct": 100,
    }
    assert trend["severity_distribution"] == {"RED": 1, "YELLOW": 1, "GREEN": 0}


def test_trend_on_empty_history(db, make, as_actor):
    admin = make.user("admin")

    trend = SuggestionService(db).get_trend(as_actor(admin), date_key=DATE_KEY)

    assert trend["weekly"] == {"current": 0, "previous": 0, "change_pct": 0}
    assert trend["feedback"]["helpful_change_pct"] == 0
    assert trend["severity_distribution"] == {"RED": 0, "YELLOW": 0, "GREEN": 0}


def test_trend_respects_branch_filter(db, make, as_actor):
    manager = make.user("manager", branch=make.branch())

    with pytest.raises(ForbiddenError):
        SuggestionService(db).get_trend(as_actor(manager), date_key=DATE_KEY, branch_id=make.branch().id)
