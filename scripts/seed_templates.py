"""
Seed the default outbound message templates.
Safe to run multiple times (upserts by template key).
"""
import sys
sys.path.insert(0, '.')

from kpi_coach.models.base import SessionLocal, init_db
from kpi_coach.services.template_seed import seed_templates


def main():
    init_db()
    db = SessionLocal()
    try:
        count = seed_templates(db)
        print(f"Seeded {count} templates")
    finally:
        db.close()


if __name__ == "__main__":
    main()
