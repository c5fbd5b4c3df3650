#!/usr/bin/env python3
"""
Database Setup Script

Creates every table of the rewards core from the ORM models:
- profiles, transactions, settlements, payout_requests
- reward_logs, daily_reward_caps
- device_fingerprints, abuse_logs, account_activity_logs

Usage:
    docker-compose exec api python scripts/create_tables.py
"""
from viewtrust.db.database import Base, engine
from viewtrust.db import models  # noqa: F401 - registers tables


def create_tables():
    """Create all tables that do not exist yet"""
    print("=" * 60)
    print("Creating ViewTrust Tables")
    print("=" * 60)

    Base.metadata.create_all(bind=engine)
    for table_name in Base.metadata.tables:
        print(f"  ✓ {table_name}")

    print("\n" + "=" * 60)
    print("Setup Complete!")
    print("=" * 60)


if __name__ == "__main__":
    create_tables()
