from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class UserContext:
    """Identity resolved upstream by the authenticator."""

    user_id: str
    email: Optional[str] = None

    @property
    def display(self) -> str:
        return self.email or self.user_id
