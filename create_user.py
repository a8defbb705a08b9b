#!/usr/bin/env python3
"""
Seed a marketplace account directly in the database.

Admins can only be created this way: the API never grants the admin role, and
the seller role is only granted by an approved verification.

Usage:
  python3 create_user.py <username> <email> [user|admin]

Example:
  python3 create_user.py alice alice@example.com admin
"""

import sys
from sqlalchemy import select, or_
from common.security import mint_user_jwt
from settlement_service.db import SessionLocal, engine
from settlement_service.models import Base, User

def create_user(username: str, email: str, role: str = "user"):
    if role not in ("user", "admin"):
        print(f'❌ Role must be "user" or "admin", got "{role}"')
        return None

    Base.metadata.create_all(bind=engine)
    with SessionLocal() as db:
        if db.scalar(select(User.id).where(or_(User.username == username, User.email == email))):
            print(f'❌ User "{username}" or email "{email}" already exists')
            return None

        user = User(username=username, email=email, role=role)
        db.add(user)
        db.commit()

    print(f'✅ Created {role} "{username}" ({user.id})')
    print(f'   token: {mint_user_jwt(sub=user.id, claims={"scope": "user"})}')
    return user

if __name__ == "__main__":
    if len(sys.argv) < 3:
        print(__doc__)
        sys.exit(1)
    created = create_user(sys.argv[1], sys.argv[2], sys.argv[3] if len(sys.argv) > 3 else "user")
    sys.exit(0 if created else 1)
