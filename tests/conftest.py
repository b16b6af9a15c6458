"""
Shared fixtures: databases, a controllable clock, and a small data builder.
"""
import os
import tempfile

# Configure before cms_backend.core.config is imported anywhere
_DB_DIR = tempfile.mkdtemp(prefix="cms-backend-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_DB_DIR, 'api.db')}"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["JWT_ALGORITHM"] = "HS256"

from collections import Counter
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from cms_backend.core.database.engine import init_db
from cms_backend.features.permissions.identifiers import split_identifier
from cms_backend.features.permissions.models import Permission, Role
from cms_backend.features.users.models import User


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class CountingResolver:
    """Stands in for PermissionResolver; counts calls per user."""

    def __init__(self, sets=None, holders=None):
        self.sets = {user_id: frozenset(perms) for user_id, perms in (sets or {}).items()}
        self.holders = holders or {}
        self.calls = Counter()

    async def calculate_user_permissions(self, user_id: str) -> frozenset[str]:
        self.calls[user_id] += 1
        return self.sets.get(user_id, frozenset())

    async def get_role_user_ids(self, role_id: str) -> set[str]:
        return set(self.holders.get(role_id, ()))


class Store:
    """Creates users, roles and permissions, one committed session per call."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory
        self._emails = 0

    async def _permission(self, db: AsyncSession, identifier: str) -> Permission:
        result = await db.execute(select(Permission).where(Permission.identifier == identifier))
        permission = result.scalars().first()
        if permission is None:
            resource, action = split_identifier(identifier)
            permission = Permission(resource=resource, action=action, name=identifier)
            db.add(permission)
            await db.flush()
        return permission

    async def permission(self, identifier: str, is_system: bool = False) -> Permission:
        async with self.session_factory() as db:
            permission = await self._permission(db, identifier)
            permission.is_system = is_system
            await db.commit()
            return permission

    async def role(self, code: str, permissions=(), parent: Role | None = None, is_active: bool = True) -> Role:
        async with self.session_factory() as db:
            role = Role(
                code=code,
                name=code.replace("_", " ").title(),
                is_active=is_active,
                parent_role_id=parent.id if parent else None,
            )
            role.permissions = [await self._permission(db, identifier) for identifier in permissions]
            db.add(role)
            await db.commit()
            return role

    async def user(
        self,
        roles=(),
        permissions=(),
        is_admin: bool = False,
        is_active: bool = True,
        email: str | None = None,
    ) -> User:
        self._emails += 1
        async with self.session_factory() as db:
            user = User(
                email=email or f"user{self._emails}@example.com",
                name=f"User {self._emails}",
                is_admin=is_admin,
                is_active=is_active,
            )
            user.roles = [await db.get(Role, role.id) for role in roles]
            user.direct_permissions = [await self._permission(db, identifier) for identifier in permissions]
            db.add(user)
            await db.commit()
            return user

    async def grant(self, role: Role, identifier: str) -> None:
        async with self.session_factory() as db:
            db_role = await db.get(Role, role.id)
            db_role.permissions.append(await self._permission(db, identifier))
            await db.commit()


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def store(session_factory) -> Store:
    return Store(session_factory)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def make_token(user_id: str, is_admin: bool = False, expires_in: timedelta = timedelta(hours=1), **claims) -> str:
    payload = {
        "sub": user_id,
        "is_admin": is_admin,
        "exp": datetime.now(timezone.utc) + expires_in,
        **claims,
    }
    return jwt.encode(payload, "test-secret", algorithm="HS256")


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {make_token(user.id, is_admin=user.is_admin, email=user.email)}"}
