"""User registration and credential checks against the cached user table.

A user registers under the name the CRM knows them by. Registration copies
the CRM user into the cache and stores a bcrypt hash of the chosen
password; later user syncs only merge CRM fields, so the hash survives.
"""

from __future__ import annotations

import structlog

from src.fulfillment.core.security import hash_password, verify_password
from src.fulfillment.deals.crm.adapter import CRMGateway
from src.fulfillment.deals.crm.field_mapping import user_from_remote
from src.fulfillment.deals.permissions import resolve_actor
from src.fulfillment.deals.repository import DealStore
from src.fulfillment.deals.schemas import UserRead, UserUpdate
from src.fulfillment.errors import NotFoundError, ValidationError

logger = structlog.get_logger(__name__)


class AccountService:
    """Registers CRM users locally and checks their passwords.

    Args:
        gateway: Remote CRM gateway used to look up registering users.
        store: Local deal cache holding users and password hashes.
    """

    def __init__(self, gateway: CRMGateway, store: DealStore) -> None:
        self._gateway = gateway
        self._store = store

    async def register_user(self, name: str, last_name: str, password: str) -> UserRead:
        """Cache the CRM user called ``name last_name`` with a new password.

        Registering again replaces the password.

        Raises:
            ValidationError: If the password is empty.
            NotFoundError: If the CRM has no user with that name.
            RemoteServiceError: If the CRM lookup fails.
        """
        if not password:
            raise ValidationError("Password must not be empty", name=name, last_name=last_name)

        matches = await self._gateway.list_users_by_filter(
            {"NAME": name, "LAST_NAME": last_name}
        )
        if not matches:
            raise NotFoundError(
                f"User {name} {last_name} not found", name=name, last_name=last_name
            )

        # First match wins, as for any CRM lookup by name
        user = user_from_remote(matches[0])
        await self._store.upsert_users([user])
        registered = await self._store.update_user(
            user.id, UserUpdate(password=hash_password(password))
        )

        logger.info("accounts.user_registered", user_id=registered.id)
        return registered

    async def verify_credentials(self, name: str, last_name: str, password: str) -> UserRead:
        """Return the cached user if ``password`` matches their stored hash.

        Raises:
            NotFoundError: If no cached user has that name.
            ValidationError: If the user never registered or the password is wrong.
        """
        user = await resolve_actor(self._store, f"{name} {last_name}")

        hashed = await self._store.get_password_hash(user.id)
        if not hashed:
            logger.warning("accounts.login_rejected", user_id=user.id, reason="no_password")
            raise ValidationError("User has not registered a password", user_id=user.id)

        if not verify_password(password, hashed):
            logger.warning("accounts.login_rejected", user_id=user.id, reason="bad_password")
            raise ValidationError("Invalid credentials for user", user_id=user.id)

        logger.info("accounts.user_logged_in", user_id=user.id)
        return user
