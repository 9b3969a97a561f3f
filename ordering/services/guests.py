"""
Guest Identity Resolver

Maps an anonymous session identifier to a persisted guest user, and owns
the rest of the guest lifecycle:

    - resolve:  get-or-create on first cart interaction
    - promote:  turn the guest into a customer in place
    - cleanup:  sweep guests inactive longer than the retention window

Session identifiers look like ``guest_<epoch-ms>_<random-hex>``.

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
import re
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from passlib.context import CryptContext
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ordering.core.config import Settings, get_settings
from ordering.core.errors import ConflictError, InvalidArgumentError, NotFoundError
from ordering.core.permissions import Role
from ordering.database import utcnow
from ordering.models import Cart, Order, User

logger = logging.getLogger(__name__)

SESSION_ID_PATTERN = re.compile(r"^guest_\d+_[0-9a-fA-F]+$")
PLACEHOLDER_EMAIL_PATTERN = re.compile(r"^guest_\d+@temp\.com$")
PLACEHOLDER_EMAIL_DOMAIN = "temp.com"


def generate_session_id() -> str:
    """New opaque guest session identifier."""
    return f"guest_{int(time.time() * 1000)}_{secrets.token_hex(16)}"


def validate_session_id(session_id: Optional[str]) -> str:
    if not session_id or not SESSION_ID_PATTERN.match(session_id):
        raise InvalidArgumentError("Malformed guest session id")
    return session_id


def is_placeholder_email(email: Optional[str]) -> bool:
    """True for the synthetic address given to guests who never supplied one."""
    return not email or bool(PLACEHOLDER_EMAIL_PATTERN.match(email))


def build_password_context(settings: Settings) -> CryptContext:
    return CryptContext(schemes=settings.password_schemes_list, deprecated="auto")


@dataclass
class GuestContact:
    """Contact details a guest may supply at any point."""
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    def is_empty(self) -> bool:
        return not (self.name or self.email or self.phone)


@dataclass
class CleanupResult:
    deleted_users: int
    deleted_carts: int
    cutoff: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "deleted_users": self.deleted_users,
            "deleted_carts": self.deleted_carts,
            "cutoff": self.cutoff.isoformat(),
        }


class GuestIdentityResolver:
    """Guest lookups and lifecycle over one database session."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
        password_context: Optional[CryptContext] = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.clock = clock
        self.password_context = password_context or build_password_context(self.settings)

    # =========================================================================
    # LOOKUP
    # =========================================================================

    async def _find(self, session_id: str) -> Optional[User]:
        result = await self.session.execute(
            select(User)
            .where(User.session_id == session_id, User.role == Role.GUEST)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def lookup(self, session_id: str) -> User:
        """
        Find the guest for a session.

        Raises:
            NotFoundError: No guest holds this session id
        """
        validate_session_id(session_id)
        guest = await self._find(session_id)
        if guest is None:
            raise NotFoundError("Guest session not found")
        return guest

    async def resolve(self, session_id: str, contact: Optional[GuestContact] = None) -> User:
        """
        Return the guest for ``session_id``, creating it on first use.

        Every call counts as activity and refreshes ``updated_at``.
        """
        validate_session_id(session_id)
        contact = contact or GuestContact()

        guest = await self._find(session_id)
        if guest is not None:
            self._apply_contact(guest, contact)
            guest.updated_at = self.clock()
            await self.session.commit()
            return guest

        stamp = int(time.time() * 1000)
        now = self.clock()
        guest = User(
            name=contact.name or f"Guest_{stamp}",
            email=contact.email or f"guest_{stamp}@{PLACEHOLDER_EMAIL_DOMAIN}",
            phone=contact.phone,
            role=Role.GUEST,
            session_id=session_id,
            is_active=True,
            is_email_verified=False,
            created_at=now,
            updated_at=now,
        )
        self.session.add(guest)
        try:
            await self.session.commit()
        except IntegrityError:
            # Same session created by a concurrent request
            await self.session.rollback()
            existing = await self._find(session_id)
            if existing is None:
                raise
            return existing

        logger.info(f"Created guest user #{guest.id}")
        return guest

    async def update_contact(self, session_id: str, contact: GuestContact) -> User:
        guest = await self.lookup(session_id)
        self._apply_contact(guest, contact)
        guest.updated_at = self.clock()
        await self.session.commit()
        return guest

    @staticmethod
    def _apply_contact(guest: User, contact: GuestContact) -> None:
        if contact.name:
            guest.name = contact.name
        if contact.email:
            guest.email = contact.email
        if contact.phone:
            guest.phone = contact.phone

    # =========================================================================
    # PROMOTION
    # =========================================================================

    async def promote(
        self,
        session_id: str,
        password: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
    ) -> User:
        """
        Turn a guest into a customer account in place.

        Sets the password, clears the session id and marks the email
        unverified. The user id, cart and past orders are kept.

        Raises:
            NotFoundError: No guest holds this session id
            InvalidArgumentError: Weak password, or no real email on record
            ConflictError: Email already belongs to a registered account
        """
        guest = await self.lookup(session_id)

        if not password or len(password) < self.settings.password_min_length:
            raise InvalidArgumentError(
                f"Password must be at least {self.settings.password_min_length} characters"
            )

        new_email = email or guest.email
        if is_placeholder_email(new_email):
            raise InvalidArgumentError("An email address is required to create an account")

        taken = await self.session.execute(
            select(User.id).where(
                func.lower(User.email) == new_email.lower(),
                User.role != Role.GUEST,
                User.id != guest.id,
            )
        )
        if taken.first() is not None:
            raise ConflictError("An account with this email already exists")

        guest.email = new_email
        if name:
            guest.name = name
        guest.password_hash = self.password_context.hash(password)
        guest.role = Role.CUSTOMER
        guest.session_id = None
        guest.is_email_verified = False
        guest.updated_at = self.clock()
        await self.session.commit()

        logger.info(f"Promoted guest #{guest.id} to customer")
        return guest

    # =========================================================================
    # MAINTENANCE
    # =========================================================================

    async def cleanup_stale(self, now: Optional[datetime] = None) -> CleanupResult:
        """
        Delete guests not updated within the retention window, and their carts.

        Orders they placed are kept, detached from the deleted user.
        """
        now = now or self.clock()
        cutoff = now - timedelta(days=self.settings.guest_retention_days)

        result = await self.session.execute(
            select(User.id).where(User.role == Role.GUEST, User.updated_at < cutoff)
        )
        stale_ids = [row[0] for row in result.all()]
        if not stale_ids:
            await self.session.commit()
            return CleanupResult(deleted_users=0, deleted_carts=0, cutoff=cutoff)

        carts = await self.session.execute(
            delete(Cart).where(Cart.owner_id.in_(stale_ids))
        )
        await self.session.execute(
            update(Order).where(Order.user_id.in_(stale_ids)).values(user_id=None)
        )
        users = await self.session.execute(
            delete(User).where(User.id.in_(stale_ids))
        )
        deleted_carts, deleted_users = carts.rowcount, users.rowcount
        await self.session.commit()

        logger.info(
            f"Guest cleanup: removed {deleted_users} guests and "
            f"{deleted_carts} carts idle since {cutoff.isoformat()}"
        )
        return CleanupResult(
            deleted_users=deleted_users,
            deleted_carts=deleted_carts,
            cutoff=cutoff,
        )

    async def stats(self, now: Optional[datetime] = None) -> dict[str, int]:
        now = now or self.clock()
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        week_ago = now - timedelta(days=7)

        async def count(*criteria) -> int:
            result = await self.session.execute(
                select(func.count(User.id)).where(User.role == Role.GUEST, *criteria)
            )
            return result.scalar() or 0

        return {
            "total_guest_users": await count(),
            "active_today": await count(User.updated_at >= day_start),
            "active_this_week": await count(User.updated_at >= week_ago),
        }
