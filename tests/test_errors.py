"""Tests for the error taxonomy and logging setup."""

from __future__ import annotations

import structlog

from src.fulfillment.config import Environment, get_settings
from src.fulfillment.core.logging import configure_structlog
from src.fulfillment.errors import (
    GENERIC_FAILURE_MESSAGE,
    FulfillmentError,
    NotFoundError,
    PermissionDeniedError,
    RemoteServiceError,
    StorageError,
    ValidationError,
)


class TestErrorTaxonomy:
    def test_codes(self):
        assert ValidationError("x").code == "validation_error"
        assert NotFoundError("x").code == "not_found"
        assert PermissionDeniedError("x").code == "access_denied"
        assert RemoteServiceError("crm.deal.get", "x").code == "remote_error"
        assert StorageError("x").code == "storage_error"

    def test_actor_errors_expose_their_message(self):
        err = NotFoundError("No user Ivan Petrov in db", full_name="Ivan Petrov")
        assert err.public_message == "No user Ivan Petrov in db"
        assert err.context == {"full_name": "Ivan Petrov"}

    def test_infrastructure_errors_hide_detail(self):
        remote = RemoteServiceError("crm.deal.list", "transport error: timeout", start=50)
        assert remote.public_message == GENERIC_FAILURE_MESSAGE
        assert str(remote) == "crm.deal.list: transport error: timeout"
        assert remote.context == {"method": "crm.deal.list", "start": 50}
        assert StorageError("upsert_deals failed").public_message == GENERIC_FAILURE_MESSAGE

    def test_all_share_a_base(self):
        for cls in (ValidationError, NotFoundError, PermissionDeniedError, RemoteServiceError, StorageError):
            assert issubclass(cls, FulfillmentError)


class TestLogging:
    def test_configure_structlog(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", Environment.production.value)
        get_settings.cache_clear()
        try:
            configure_structlog()
            processors = structlog.get_config()["processors"]
            assert isinstance(processors[-1], structlog.processors.JSONRenderer)
        finally:
            get_settings.cache_clear()
            structlog.reset_defaults()
