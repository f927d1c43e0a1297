# scripts/create_user.py
# Run: python scripts/create_user.py admin@example.com "Admin" secret123 --role admin
#
# Creates the tables when missing (no migrations) and adds one staff user.

import argparse
import asyncio
import sys

from sqlalchemy import select

from medcenter.db import engine, session_scope
from medcenter.models import Base, User, UserRole
from medcenter.security import hash_password


async def main(email: str, name: str, password: str, role: str) -> int:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with session_scope() as session:
        existing = (await session.execute(select(User).where(User.email == email.lower()))).scalars().first()
        if existing is not None:
            print(f"[SKIP] user {email} already exists")
            return 0
        session.add(User(name=name, email=email.lower(), password_hash=hash_password(password), role=role))

    print(f"[OK] created {role} {email}")
    await engine.dispose()
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create a staff user")
    parser.add_argument("email")
    parser.add_argument("name")
    parser.add_argument("password")
    parser.add_argument("--role", default=UserRole.ADMIN.value, choices=[r.value for r in UserRole])
    args = parser.parse_args()
    sys.exit(asyncio.run(main(args.email, args.name, args.password, args.role)))
