#!/usr/bin/env python3
"""
Initialize the multisig payout service database.

This script creates all database tables without starting the web server.
Useful for development and testing.
"""

from app import app
from db.database import db

if __name__ == '__main__':
    print("Initializing multisig payout database...")
    with app.app_context():
        db.create_all()
    print("Database initialized successfully!")
    print(f"Database location: {app.config.get('SQLALCHEMY_DATABASE_URI', 'sqlite:///multisig_approvals.db')}")
