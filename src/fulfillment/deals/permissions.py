"""Department-based capability checks for installer and warehouse actors.

Membership in the installation department grants the installation-crew
capability; membership in the warehouse department grants the
warehouse-manager capability. This is a coarse role check over cached
department ids, not authentication.
"""

from __future__ import annotations

import structlog

from src.fulfillment.config import Settings, get_settings
from src.fulfillment.deals.repository import DealStore
from src.fulfillment.deals.schemas import Capability, UserRead
from src.fulfillment.errors import NotFoundError, PermissionDeniedError

logger = structlog.get_logger(__name__)


def capabilities_for(user: UserRead, settings: Settings | None = None) -> set[Capability]:
    """Return the capabilities granted by the user's departments."""
    settings = settings or get_settings()
    departments = set(user.department_ids)

    granted: set[Capability] = set()
    if settings.INSTALLATION_DEPARTMENT_ID in departments:
        granted.add(Capability.INSTALLATION_CREW)
    if settings.WAREHOUSE_DEPARTMENT_ID in departments:
        granted.add(Capability.WAREHOUSE_MANAGER)
    return granted


def require_capability(
    user: UserRead,
    capability: Capability,
    settings: Settings | None = None,
) -> None:
    """Raise PermissionDeniedError unless the user holds ``capability``."""
    if capability not in capabilities_for(user, settings):
        logger.warning(
            "permissions.denied",
            user_id=user.id,
            capability=capability.value,
        )
        raise PermissionDeniedError(
            "User not allowed",
            user_id=user.id,
            capability=capability.value,
        )


async def resolve_actor(store: DealStore, full_name: str) -> UserRead:
    """Look up the cached user behind an actor's "Name LastName".

    Raises:
        NotFoundError: If no cached user has that name.
    """
    user = await store.get_user_by_full_name(full_name)
    if user is None:
        raise NotFoundError(f"No user {full_name} in db", full_name=full_name)
    return user
