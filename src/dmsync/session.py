from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable


async def _no_sign_out() -> None:
    return None


@dataclass
class AuthSession:
    """The authenticated user as handed over by the auth collaborator."""

    user_id: str
    email: str | None = None
    sign_out: Callable[[], Awaitable[None]] = _no_sign_out
