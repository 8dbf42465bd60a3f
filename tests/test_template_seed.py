"""
Template seeding tests.

Guards against:
1. Rules referencing template keys that are never seeded
2. Reseeding duplicating templates
"""
from kpi_coach.models.enums import Severity
from kpi_coach.models.outbound import MessageTemplate
from kpi_coach.services.actions import CreateOutboundJobAction, decode_actions
from kpi_coach.services.suggestion_rules import RULES
from kpi_coach.services.template_seed import DEFAULT_TEMPLATES, seed_templates


def test_seed_is_repeatable(db):
    assert seed_templates(db) == len(DEFAULT_TEMPLATES)
    seed_templates(db)

    assert db.query(MessageTemplate).count() == len(DEFAULT_TEMPLATES)


def test_seed_reactivates_and_refreshes(db, make):
    make.template("remind_appointment", "stale body", is_active=False)

    seed_templates(db)
    db.expire_all()

    row = db.query(MessageTemplate).filter(MessageTemplate.key == "remind_appointment").one()
    assert row.is_active
    assert row.body != "stale body"


def test_rule_templates_are_seeded():
    seeded = {t["key"] for t in DEFAULT_TEMPLATES}
    for rule in RULES:
        for severity in (Severity.RED, Severity.YELLOW):
            for action in decode_actions([a.model_dump(mode="json") for a in rule.actions(severity)]):
                if isinstance(action, CreateOutboundJobAction):
                    assert action.template_key in seeded, rule.key
