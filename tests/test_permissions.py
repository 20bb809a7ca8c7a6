"""Tests for department-based capability checks and actor lookup."""

from __future__ import annotations

import pytest

from src.fulfillment.deals.permissions import capabilities_for, require_capability, resolve_actor
from src.fulfillment.deals.schemas import Capability, UserUpsert
from src.fulfillment.errors import NotFoundError, PermissionDeniedError


class TestCapabilities:
    def test_installation_department(self, installer, settings):
        assert capabilities_for(installer, settings) == {Capability.INSTALLATION_CREW}

    def test_warehouse_department(self, manager, settings):
        assert capabilities_for(manager, settings) == {Capability.WAREHOUSE_MANAGER}

    def test_no_matching_department(self, outsider, settings):
        assert capabilities_for(outsider, settings) == set()

    def test_require_capability_denies(self, installer, settings):
        with pytest.raises(PermissionDeniedError) as exc_info:
            require_capability(installer, Capability.WAREHOUSE_MANAGER, settings)

        assert exc_info.value.code == "access_denied"
        assert exc_info.value.public_message == "User not allowed"

    def test_require_capability_allows(self, manager, settings):
        require_capability(manager, Capability.WAREHOUSE_MANAGER, settings)


class TestResolveActor:
    async def test_known_user(self, store):
        await store.upsert_users([UserUpsert(id=7, name="Ivan", last_name="Petrov", department_ids=[27])])

        actor = await resolve_actor(store, "Ivan Petrov")

        assert actor.id == 7
        assert actor.department_ids == [27]

    async def test_unknown_user(self, store):
        with pytest.raises(NotFoundError, match="No user Nobody Here in db"):
            await resolve_actor(store, "Nobody Here")
