#!/usr/bin/env python3
"""
Database management script for deployment.
Run this during the build/deployment pipeline to apply migrations and to give
existing events a settings record for every module added since they were
created.
"""
import os
import sys

# Add current directory to path so we can import eventhub
sys.path.append(os.getcwd())

from flask_migrate import upgrade

from eventhub.app import create_app
from eventhub.models import db, Event

MIGRATIONS_DIR = 'migrations'


def backfill_modules(app):
    """Create missing (inactive) module records for every event."""
    created_total = 0
    for event_id, in db.session.query(Event.id).all():
        created = app.modules.ensure_records(event_id)
        if created:
            print(f"  event {event_id}: added {', '.join(created)}")
        created_total += len(created)
    print(f"✓ Module settings backfilled ({created_total} records).")


def deploy():
    """Run deployment tasks."""
    print("Starting database migration...")
    app = create_app()
    with app.app_context():
        if os.path.isdir(MIGRATIONS_DIR):
            # Run Alembic upgrade to apply migrations
            try:
                upgrade()
                print("✓ Database migrations applied.")
            except Exception as e:
                print(f"Error applying migrations: {e}")
                sys.exit(1)
        else:
            db.create_all()
            print("✓ Tables created (no migrations directory).")

        backfill_modules(app)


if __name__ == '__main__':
    deploy()
