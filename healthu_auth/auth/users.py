"""
User directory keyed by the IdP subject identifier.

The IdP is the source of truth: email and affiliation are overwritten from
the latest verified login. Writes for one subject are last-write-wins; no
guarantee is made for the same subject logging in concurrently from two
devices.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

from pydantic import BaseModel, Field

from healthu_auth.auth.storage import InMemoryStore, KeyValueStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(BaseModel):
    """Local account linked to one IdP subject."""

    id: str = Field(..., description="Locally generated stable identifier")
    sub: str = Field(..., description="IdP subject identifier (immutable)")
    email: str
    is_student: bool
    created_at: datetime
    last_login_at: Optional[datetime] = None


class UserDirectory:
    """Upserts users by subject into an injected KeyValueStore."""

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store if store is not None else InMemoryStore()
        self._clock = clock

    def upsert(self, sub: str, email: str, is_student: bool) -> User:
        """
        Create the user for sub, or refresh an existing one.

        Args:
            sub: IdP subject identifier
            email: Normalized email from the latest assertion
            is_student: Affiliation from the latest assertion

        Returns:
            The stored user
        """
        existing = self._store.get(sub)

        if existing is None:
            user = User(
                id=str(uuid.uuid4()),
                sub=sub,
                email=email,
                is_student=is_student,
                created_at=self._clock(),
            )
            logger.info("Created user", extra={"user_id": user.id})
        else:
            user = existing.model_copy(
                update={
                    "email": email,
                    "is_student": is_student,
                    "last_login_at": self._clock(),
                }
            )
            logger.debug("Updated user on repeat login", extra={"user_id": user.id})

        self._store.set(sub, user)
        return user

    def get_by_sub(self, sub: str) -> Optional[User]:
        return self._store.get(sub)

    def __len__(self) -> int:
        return len(self._store)
