"""Tests for the admin quota endpoints.

Gift grants, service cost management and the cache refresh hook. All
endpoints are gated on User.is_admin.
"""

import uuid
from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from httpx import AsyncClient

from quota_ledger.models.service_cost import ServiceCost
from quota_ledger.models.user import User
from quota_ledger.services.service_cost_cache import ServiceCostCache

_BASE = "/api/v1/admin"
_UPDATED_AT = datetime(2026, 5, 1, 9, 30, tzinfo=UTC)


def _user_result(user: User) -> MagicMock:
    result = MagicMock()
    result.scalar_one_or_none.return_value = user
    return result


def _cost_row(service_type: str, scene: str, dollar: str, unit: str) -> ServiceCost:
    return ServiceCost(
        id=uuid.uuid4(),
        service_type=service_type,
        scene=scene,
        dollar_cost=Decimal(dollar),
        unit_cost=Decimal(unit),
        display_name=None,
        description=None,
        is_active=True,
        updated_at=_UPDATED_AT,
    )


def _rows_result(rows: list[ServiceCost]) -> MagicMock:
    result = MagicMock()
    result.scalars.return_value.all.return_value = rows
    return result


def _row_result(row: ServiceCost | None) -> MagicMock:
    result = MagicMock()
    result.scalar_one_or_none.return_value = row
    return result


# =============================================================================
# Admin gate
# =============================================================================


class TestAdminGate:
    @pytest.mark.parametrize(
        ("method", "path"),
        [
            ("get", "/service-costs"),
            ("post", "/service-costs/cache-refresh"),
        ],
    )
    async def test_non_admin_forbidden(
        self, api_client: AsyncClient, fake_db, user: User, method, path
    ):
        fake_db.execute.return_value = _user_result(user)

        response = await getattr(api_client, method)(f"{_BASE}{path}")

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "ADMIN_REQUIRED"

    async def test_non_admin_cannot_grant(
        self, api_client: AsyncClient, fake_db, ledger, user: User
    ):
        fake_db.execute.return_value = _user_result(user)

        response = await api_client.post(
            f"{_BASE}/users/{user.id}/quota-grants",
            json={"pool_type": "paygo", "measurement_type": "unit", "amount": "5"},
        )

        assert response.status_code == 403
        assert ledger.grants() == []

    async def test_unknown_user_unauthorized(self, api_client: AsyncClient, fake_db):
        fake_db.execute.return_value = _user_result(None)

        response = await api_client.get(f"{_BASE}/service-costs")

        assert response.status_code == 401


# =============================================================================
# Gift grants
# =============================================================================


class TestCreateQuotaGrant:
    async def test_gift_grant(
        self, api_client: AsyncClient, as_admin: User, fake_db, ledger
    ):
        response = await api_client.post(
            f"{_BASE}/users/{as_admin.id}/quota-grants",
            json={
                "pool_type": "paygo",
                "measurement_type": "dollar",
                "amount": "12.5",
                "valid_days": 30,
                "description": "Support credit",
            },
        )

        assert response.status_code == 201
        data = response.json()["data"]
        [grant] = ledger.grants()
        assert data["id"] == str(grant.id)
        assert data["user_id"] == str(as_admin.id)
        assert data["pool_type"] == "paygo"
        assert data["measurement_type"] == "dollar"
        assert data["amount"] == "12.500000"
        assert data["expires_at"] is not None
        assert grant.transaction_scene == "gift"
        assert grant.description == "Support credit"
        fake_db.commit.assert_awaited_once()

    async def test_never_expiring_gift(
        self, api_client: AsyncClient, as_admin: User
    ):
        response = await api_client.post(
            f"{_BASE}/users/{as_admin.id}/quota-grants",
            json={"pool_type": "trial", "measurement_type": "unit", "amount": "3"},
        )

        assert response.status_code == 201
        assert response.json()["data"]["expires_at"] is None

    async def test_unknown_user(self, api_client: AsyncClient, as_admin: User):
        response = await api_client.post(
            f"{_BASE}/users/{uuid.uuid4()}/quota-grants",
            json={"pool_type": "trial", "measurement_type": "unit", "amount": "3"},
        )

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    @pytest.mark.parametrize(
        "body",
        [
            {"pool_type": "trial", "measurement_type": "unit", "amount": "0"},
            {"pool_type": "trial", "measurement_type": "unit", "amount": "-1"},
            {"pool_type": "trial", "measurement_type": "unit", "amount": "abc"},
            {"pool_type": "trial", "measurement_type": "unit", "amount": "NaN"},
            {"pool_type": "bonus", "measurement_type": "unit", "amount": "1"},
            {"pool_type": "trial", "measurement_type": "credits", "amount": "1"},
            {
                "pool_type": "trial",
                "measurement_type": "unit",
                "amount": "1",
                "valid_days": -1,
            },
            {
                "pool_type": "trial",
                "measurement_type": "unit",
                "amount": "1",
                "extra": True,
            },
        ],
    )
    async def test_invalid_body(
        self, api_client: AsyncClient, as_admin: User, ledger, body
    ):
        response = await api_client.post(
            f"{_BASE}/users/{as_admin.id}/quota-grants", json=body
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"
        assert ledger.grants() == []

    async def test_amount_below_ledger_precision(
        self, api_client: AsyncClient, as_admin: User, ledger
    ):
        response = await api_client.post(
            f"{_BASE}/users/{as_admin.id}/quota-grants",
            json={
                "pool_type": "trial",
                "measurement_type": "unit",
                "amount": "0.0000001",
            },
        )

        assert response.status_code == 400
        assert ledger.grants() == []


# =============================================================================
# Service costs
# =============================================================================


class TestServiceCosts:
    async def test_list(self, api_client: AsyncClient, as_admin: User, fake_db):
        rows = [
            _cost_row("ai-image", "", "0.04", "1"),
            _cost_row("ai-image", "text-to-image", "0.05", "2"),
        ]
        fake_db.execute.side_effect = [_user_result(as_admin), _rows_result(rows)]

        response = await api_client.get(f"{_BASE}/service-costs")

        assert response.status_code == 200
        data = response.json()["data"]
        assert [(d["service_type"], d["scene"]) for d in data] == [
            ("ai-image", ""),
            ("ai-image", "text-to-image"),
        ]
        assert data[1]["dollar_cost"] == "0.050000"
        assert data[1]["unit_cost"] == "2.000000"

    async def test_upsert_updates_and_invalidates(
        self,
        api_client: AsyncClient,
        as_admin: User,
        fake_db,
        cost_cache: ServiceCostCache,
    ):
        row = _cost_row("ai-video", "", "5", "40")
        fake_db.execute.side_effect = [_user_result(as_admin), _row_result(row)]

        response = await api_client.put(
            f"{_BASE}/service-costs",
            json={
                "service_type": "ai-video",
                "dollar_cost": "7",
                "unit_cost": "50",
                "display_name": "Video generation",
            },
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["dollar_cost"] == "7.000000"
        assert data["unit_cost"] == "50.000000"
        assert data["display_name"] == "Video generation"
        assert row.unit_cost == Decimal("50")
        assert cost_cache.get_stats().invalidations == 1
        fake_db.commit.assert_awaited_once()

    @pytest.mark.parametrize(
        "body",
        [
            {"service_type": "", "dollar_cost": "1", "unit_cost": "1"},
            {"service_type": "ai-image", "dollar_cost": "-1", "unit_cost": "1"},
            {"service_type": "ai-image", "dollar_cost": "1", "unit_cost": "Infinity"},
            {"service_type": "ai-image", "dollar_cost": "1" * 21, "unit_cost": "1"},
            {"service_type": "ai-image", "scene": "s" * 51, "dollar_cost": "1", "unit_cost": "1"},
        ],
    )
    async def test_upsert_invalid_body(
        self, api_client: AsyncClient, as_admin: User, body
    ):
        response = await api_client.put(f"{_BASE}/service-costs", json=body)
        assert response.status_code == 400

    async def test_cache_refresh(
        self, api_client: AsyncClient, as_admin: User, cost_cache: ServiceCostCache
    ):
        response = await api_client.post(f"{_BASE}/service-costs/cache-refresh")

        assert response.status_code == 200
        assert response.json()["data"] == {
            "message": "Service cost cache invalidated",
            "ttl_seconds": 300.0,
            "invalidations": 1,
        }
        assert cost_cache.get_stats().invalidations == 1
