"""
Bootstrap tool: create the first admin account.

Usage:
  python create_admin.py <email> <password> [name]

Example:
  python create_admin.py admin@agency.example mySecurePassword123 "Agency Admin"
"""
import asyncio
import sys

from sqlalchemy import select

from portal.core.database import AsyncSessionLocal, create_tables
from portal.core.security import hash_password
from portal.models.user import User, UserRole


async def main(email: str, password: str, name: str = "") -> None:
    if len(password) < 8:
        print("Error: password must be at least 8 characters long.")
        sys.exit(1)

    await create_tables()
    async with AsyncSessionLocal() as db:
        existing = await db.execute(select(User).where(User.email == email))
        if existing.scalar_one_or_none():
            print(f"User '{email}' already exists.")
            sys.exit(0)

        admin = User(
            email=email,
            name=name,
            hashed_password=hash_password(password),
            role=UserRole.ADMIN.value,
        )
        db.add(admin)
        await db.commit()
        await db.refresh(admin)
        print(f"✓ Admin '{email}' created (ID: {admin.id})")


if __name__ == "__main__":
    if len(sys.argv) not in (3, 4):
        print("Usage: python create_admin.py <email> <password> [name]")
        sys.exit(1)

    asyncio.run(main(*sys.argv[1:]))
