"""
Create the first administrator and the maintenance settings row.

Usage:
    python scripts/create_admin.py --name "Workshop Admin" --email admin@example.com --password secret [--api-key KEY]
"""
import argparse
import os
import sys

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from slugify import slugify

from workshop.auth.security import get_password_hash
from workshop.db import Base, SessionLocal, engine
from workshop.models.models import MaintenanceSettings, User


def create_admin(name: str, email: str, password: str, api_key: str = None):
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        email = email.lower()
        user = db.query(User).filter(User.email == email).first()
        if user:
            print(f"User {email} already exists (role: {user.role})")
        else:
            user = User(
                name=name,
                username=slugify(name, separator="."),
                email=email,
                password_hash=get_password_hash(password),
                role="administrator",
                is_active=True,
            )
            db.add(user)
            print(f"Created administrator {user.username}")

        settings_row = db.query(MaintenanceSettings).filter(MaintenanceSettings.id == 1).first()
        if settings_row is None:
            settings_row = MaintenanceSettings(id=1, is_under_maintenance=False)
            db.add(settings_row)
        if api_key:
            settings_row.api_key = api_key
            settings_row.last_api_key_validation_at = None
            settings_row.last_api_key_validation_success = None
            print("API key stored")
        db.commit()
    finally:
        db.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create the first administrator")
    parser.add_argument("--name", required=True)
    parser.add_argument("--email", required=True)
    parser.add_argument("--password", required=True)
    parser.add_argument("--api-key", default=None)
    args = parser.parse_args()
    create_admin(args.name, args.email, args.password, args.api_key)
