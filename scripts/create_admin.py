"""
Create (or reset) an admin-panel user.

Usage:
    python scripts/create_admin.py admin@example.com 'StrongPassword123!' --role admin
"""
import argparse
import asyncio

from sqlalchemy import select

from app.auth import hash_password, UserRole
from app.database import AsyncSessionLocal, init_db
from app.models import User


async def create_user(email: str, password: str, full_name: str, role: str):
    await init_db()

    async with AsyncSessionLocal() as db:
        result = await db.execute(select(User).where(User.email == email.lower()))
        user = result.scalar_one_or_none()

        if user:
            user.password_hash = hash_password(password)
            user.role = role
            user.is_active = True
            print(f"Updated existing user {email} ({role})")
        else:
            db.add(User(
                email=email.lower(),
                password_hash=hash_password(password),
                full_name=full_name,
                role=role,
                is_active=True
            ))
            print(f"Created user {email} ({role})")

        await db.commit()


def main():
    parser = argparse.ArgumentParser(description="Create or reset an admin-panel user")
    parser.add_argument("email")
    parser.add_argument("password")
    parser.add_argument("--name", default="Admin User")
    parser.add_argument("--role", default=UserRole.ADMIN.value, choices=[r.value for r in UserRole])
    args = parser.parse_args()

    asyncio.run(create_user(args.email, args.password, args.name, args.role))


if __name__ == "__main__":
    main()
