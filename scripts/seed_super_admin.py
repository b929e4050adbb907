#!/usr/bin/env python3
"""
Seed the first super-admin operator and print a token for the webhook remediation endpoints.

Reads SUPER_ADMIN_EMAIL and SUPER_ADMIN_PASSWORD from .env file.
Run from project root: python scripts/seed_super_admin.py
"""

import sys
import os

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)

# Load .env file
from dotenv import load_dotenv
load_dotenv(os.path.join(project_root, ".env"))

import bcrypt as bcrypt_lib
from src.auth import create_super_admin_token
from src.db import supabase


def hash_password(password: str) -> str:
    """Hash password using bcrypt directly."""
    return bcrypt_lib.hashpw(password.encode(), bcrypt_lib.gensalt()).decode()


def main():
    email = os.getenv("SUPER_ADMIN_EMAIL")
    password = os.getenv("SUPER_ADMIN_PASSWORD")

    if not email or not password:
        print("Error: SUPER_ADMIN_EMAIL and SUPER_ADMIN_PASSWORD must be set in .env")
        sys.exit(1)

    existing = supabase.table("super_admins").select("id, email").eq("email", email).execute()
    if existing.data:
        super_admin = existing.data[0]
        print(f"Super-admin with email '{email}' already exists.")
    else:
        result = supabase.table("super_admins").insert({
            "email": email,
            "password_hash": hash_password(password),
            "name": "Super Admin",
        }).execute()
        if not result.data:
            print("Error: Failed to create super-admin")
            sys.exit(1)
        super_admin = result.data[0]
        print(f"Created super-admin:")
        print(f"  ID: {super_admin['id']}")
        print(f"  Email: {super_admin['email']}")

    print(f"  Token: {create_super_admin_token(super_admin['id'])}")


if __name__ == "__main__":
    main()
