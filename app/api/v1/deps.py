"""
FastAPI dependencies — acting identity, role guards, database session and
the Employee Directory client.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from typing import Optional

from fastapi import Cookie, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.ext.asyncio import AsyncSession

from app.clients.employee_directory import EmployeeDirectory
from app.core.security import decode_access_token
from app.db.session import async_session_factory

# Tokens are issued by the Users service; auto_error=False so the cookie can be tried too
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login", auto_error=False)

FINANCE_ROLES = frozenset({"admin", "finance"})


@dataclass(frozen=True)
class Actor:
    """Authenticated identity acting on a request."""

    id: uuid.UUID
    name: str | None
    role: str

    @property
    def is_finance(self) -> bool:
        return self.role in FINANCE_ROLES


# ── Database session ────────────────────────────────────────────────
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


# ── Collaborators ───────────────────────────────────────────────────
async def get_employee_directory() -> AsyncGenerator[EmployeeDirectory, None]:
    """One client per HTTP request, so its lookup cache is request-scoped."""
    directory = EmployeeDirectory()
    try:
        yield directory
    finally:
        await directory.aclose()


# ── Auth dependencies ───────────────────────────────────────────────
async def get_current_actor(
    token: Optional[str] = Depends(oauth2_scheme),
    access_token: Optional[str] = Cookie(default=None),
) -> Actor:
    """Decode JWT from Header OR Cookie into the acting identity."""
    final_token = token
    if not final_token and access_token:
        if access_token.startswith("Bearer "):
            final_token = access_token.split(" ", 1)[1]
        else:
            final_token = access_token

    credentials_exc = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if not final_token:
        raise credentials_exc

    payload = decode_access_token(final_token)
    if payload is None:
        raise credentials_exc

    try:
        actor_id = uuid.UUID(str(payload.get("sub")))
    except ValueError:
        raise credentials_exc from None

    return Actor(
        id=actor_id,
        name=payload.get("name"),
        role=str(payload.get("role") or "employee"),
    )


async def require_finance(
    actor: Actor = Depends(get_current_actor),
) -> Actor:
    """Only admin / finance roles may approve, reject and pay."""
    if not actor.is_finance:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Finance privileges required",
        )
    return actor
