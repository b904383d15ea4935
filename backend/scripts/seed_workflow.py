#!/usr/bin/env python3
"""
Workflow Seed Script
Installs the default six-step collection workflow templates.

Usage:
    python -m scripts.seed_workflow

The database is taken from DATABASE_URL. Running it twice is harmless.
"""
import sys

from sqlalchemy.orm import Session
from app.database import SessionLocal, init_db
from app.services.collection import seed_default_workflow


def seed_workflow() -> bool:
    """Create the workflow tables (if needed) and seed the templates."""
    init_db()

    db: Session = SessionLocal()
    try:
        templates = seed_default_workflow(db)
        db.commit()

        print("Workflow templates installed:")
        for reference in sorted(templates):
            step = templates[reference]
            successors = ", ".join(
                f"{t.to_step.reference} (+{t.after_days}d)" for t in step.transitions
            ) or "-"
            print(f"  {reference}: {step.name} -> {successors}")
        return True

    except Exception as e:
        print(f"Error seeding workflow: {e}")
        db.rollback()
        return False
    finally:
        db.close()


def main():
    success = seed_workflow()
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
