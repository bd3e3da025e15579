"""HTTP layer for /api/v1/units via httpx over ASGI."""
from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.exc import IntegrityError

from serialstock.config import get_settings
from serialstock.core.security import create_access_token
from serialstock.db.session import get_db
from serialstock.main import app
from serialstock.models import OrderStatus, UnitStatus
from serialstock.services.unit_repository import UnitRepository

BASE = "/api/v1/units"


@pytest.fixture
async def client(session_maker):
    async def _get_db():
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def headers_for(tenant):
    def _headers(role: str = "ADMIN", sub: str = "user-1", tenant_id=None) -> dict:
        token = create_access_token(sub, str(tenant_id or tenant.id), extra_claims={"role": role})
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def admin(headers_for):
    return headers_for()


class TestAuth:
    async def test_missing_token(self, client):
        response = await client.get(BASE)
        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "UNAUTHORIZED"

    async def test_garbage_token(self, client):
        response = await client.get(BASE, headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    async def test_floor_associate_cannot_create(self, client, headers_for, make_product):
        product = await make_product()
        response = await client.post(
            BASE,
            json={"serial_number": "SN-1", "product_id": str(product.id)},
            headers=headers_for("FLOOR_ASSOCIATE"),
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "FORBIDDEN"

    async def test_manager_cannot_reconcile(self, client, headers_for):
        response = await client.post(f"{BASE}/sync-stock", headers=headers_for("MANAGER"))
        assert response.status_code == 403

    async def test_health_is_public(self, client):
        response = await client.get("/health")
        assert response.status_code == 200


class TestCreateAndRead:
    async def test_create(self, client, admin, make_product, stock_of):
        product = await make_product()
        response = await client.post(
            BASE,
            json={"serial_number": "SN-1", "product_id": str(product.id), "location": "A-1"},
            headers=admin,
        )

        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        assert body["data"]["serial_number"] == "SN-1"
        assert body["data"]["status"] == "in_stock"
        assert await stock_of(product) == 1

    async def test_duplicate_is_409(self, client, admin, make_product, make_unit):
        product = await make_product()
        await make_unit(product, "SN-1")

        response = await client.post(
            BASE, json={"serial_number": "SN-1", "product_id": str(product.id)}, headers=admin
        )

        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "DUPLICATE_SERIAL"
        assert error["kind"] == "conflict"

    async def test_missing_field_is_400(self, client, admin):
        response = await client.post(BASE, json={"serial_number": "SN-1"}, headers=admin)

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert any(e["field"] == "product_id" for e in error["field_errors"])

    async def test_reserved_status_is_400(self, client, admin, make_product):
        product = await make_product()
        response = await client.post(
            BASE,
            json={"serial_number": "SN-1", "product_id": str(product.id), "status": "reserved"},
            headers=admin,
        )
        assert response.status_code == 400

    async def test_unknown_product_is_404(self, client, admin):
        response = await client.post(
            BASE,
            json={"serial_number": "SN-1", "product_id": "00000000-0000-0000-0000-000000000001"},
            headers=admin,
        )
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    async def test_list_with_filters(self, client, admin, make_product, make_unit):
        product = await make_product(name="Laptop 14in")
        await make_unit(product, "LAP-1")
        await make_unit(product, "LAP-2", status=UnitStatus.SOLD, customer_reference="cust-1")
        await make_unit(product, "LAP-3")

        response = await client.get(BASE, params={"status": "in_stock", "limit": 1}, headers=admin)
        body = response.json()
        assert response.status_code == 200
        assert len(body["data"]) == 1
        assert body["meta"] == {"page": 1, "limit": 1, "total": 2, "pages": 2}

        response = await client.get(BASE, params={"customer_id": "cust-1"}, headers=admin)
        assert [u["serial_number"] for u in response.json()["data"]] == ["LAP-2"]

        response = await client.get(BASE, params={"search": "laptop"}, headers=admin)
        assert response.json()["meta"]["total"] == 3

    async def test_get_one(self, client, admin, make_product, make_unit):
        product = await make_product()
        unit = await make_unit(product, "SN-1")

        response = await client.get(f"{BASE}/{unit.id}", headers=admin)
        assert response.status_code == 200
        assert response.json()["data"]["id"] == str(unit.id)

    async def test_get_other_tenant_is_404(self, client, headers_for, other_tenant, make_product, make_unit):
        product = await make_product()
        unit = await make_unit(product, "SN-1")

        response = await client.get(f"{BASE}/{unit.id}", headers=headers_for(tenant_id=other_tenant.id))
        assert response.status_code == 404

    async def test_malformed_id_is_400(self, client, admin):
        response = await client.get(f"{BASE}/not-a-uuid", headers=admin)
        assert response.status_code == 400

    async def test_by_product(self, client, admin, make_product, make_unit):
        product = await make_product()
        await make_unit(product, "SN-1")
        await make_unit(product, "SN-2", status=UnitStatus.DEFECTIVE)

        response = await client.get(f"{BASE}/by-product/{product.id}", params={"status": "defective"}, headers=admin)
        assert [u["serial_number"] for u in response.json()["data"]] == ["SN-2"]

    async def test_stats_search_lookup(self, client, admin, make_product, make_unit):
        product = await make_product()
        await make_unit(product, "ABC-100")
        await make_unit(product, "XYZ-200", status=UnitStatus.SOLD)

        stats = (await client.get(f"{BASE}/stats", headers=admin)).json()["data"]
        assert stats["in_stock"] == 1
        assert stats["sold"] == 1
        assert stats["total"] == 2

        found = (await client.get(f"{BASE}/search", params={"q": "abc"}, headers=admin)).json()["data"]
        assert [u["serial_number"] for u in found] == ["ABC-100"]

        response = await client.get(f"{BASE}/lookup/XYZ-200", headers=admin)
        assert response.json()["data"]["status"] == "sold"
        assert (await client.get(f"{BASE}/lookup/NOPE", headers=admin)).status_code == 404

    async def test_export_csv(self, client, admin, make_product, make_unit):
        product = await make_product()
        await make_unit(product, "SN-1")
        await make_unit(product, "SN-2")

        response = await client.get(f"{BASE}/export", headers=admin)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        lines = response.text.strip().splitlines()
        assert lines[0].startswith("serial_number,product_id,status")
        assert len(lines) == 3


class TestUpdateAndDelete:
    async def test_sell_via_put(self, client, admin, make_product, make_unit, stock_of):
        product = await make_product()
        unit = await make_unit(product, "SN-1")

        response = await client.put(
            f"{BASE}/{unit.id}", json={"status": "sold", "customer_reference": "cust-1"}, headers=admin
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "sold"
        assert data["customer_reference"] == "cust-1"
        assert data["warranty_end_date"] is not None
        assert await stock_of(product) == 0

    async def test_illegal_transition_is_400(self, client, admin, make_product, make_unit, stock_of):
        product = await make_product()
        unit = await make_unit(product, "SN-1", status=UnitStatus.SCRAPPED)

        response = await client.put(f"{BASE}/{unit.id}", json={"status": "sold"}, headers=admin)

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "ILLEGAL_TRANSITION"
        assert error["details"] == {"old": "scrapped", "new": "sold"}
        assert await stock_of(product) == 0

    async def test_delete(self, client, admin, make_product, make_unit, stock_of):
        product = await make_product()
        unit = await make_unit(product, "SN-1")

        response = await client.delete(f"{BASE}/{unit.id}", headers=admin)

        assert response.status_code == 200
        assert response.json()["data"]["deleted"] is True
        assert await stock_of(product) == 0
        assert (await client.get(f"{BASE}/{unit.id}", headers=admin)).status_code == 404


class TestBulkImport:
    async def test_per_item_results(self, client, admin, make_product, stock_of):
        product = await make_product()
        items = [
            {"serial_number": "SN-1", "product_id": str(product.id)},
            {"serial_number": "SN-1", "product_id": str(product.id)},
            {"serial_number": "SN-2"},
            {"serial_number": "SN-3", "product_id": "00000000-0000-0000-0000-000000000001"},
            {"serial_number": "SN-4", "product_id": str(product.id), "status": "defective"},
        ]

        response = await client.post(f"{BASE}/bulk-import", json=items, headers=admin)

        assert response.status_code == 200
        results = response.json()["data"]
        assert [r["success"] for r in results] == [True, False, False, False, True]
        assert results[1]["error"]["code"] == "DUPLICATE_SERIAL"
        assert results[2]["error"]["code"] == "VALIDATION_ERROR"
        assert results[3]["error"]["code"] == "NOT_FOUND"
        assert await stock_of(product) == 1

    async def test_storage_failure_stays_with_its_item(self, client, admin, make_product, stock_of, monkeypatch):
        product = await make_product()
        original = UnitRepository.create

        async def _create(session, tenant_id, data, **kwargs):
            if data["serial_number"] == "SN-BAD":
                raise IntegrityError("INSERT INTO serialized_units", {}, Exception("CHECK constraint failed"))
            return await original(session, tenant_id, data, **kwargs)

        monkeypatch.setattr(UnitRepository, "create", staticmethod(_create))
        items = [
            {"serial_number": "SN-1", "product_id": str(product.id)},
            {"serial_number": "SN-BAD", "product_id": str(product.id)},
            {"serial_number": "SN-3", "product_id": str(product.id)},
        ]

        response = await client.post(f"{BASE}/bulk-import", json=items, headers=admin)
        monkeypatch.undo()

        assert response.status_code == 200
        results = response.json()["data"]
        assert [r["success"] for r in results] == [True, False, True]
        assert results[1]["index"] == 1
        assert results[1]["error"]["code"] == "STORE_UNAVAILABLE"
        assert results[1]["error"]["details"] == {"reason": "IntegrityError"}
        assert await stock_of(product) == 2

    async def test_empty_batch_is_400(self, client, admin):
        response = await client.post(f"{BASE}/bulk-import", json=[], headers=admin)
        assert response.status_code == 400


class TestTracking:
    async def test_track_sold_unit(self, client, admin, make_product, make_unit, make_order):
        product = await make_product(sku="LAP-14", name="Laptop 14in")
        order = await make_order(product, 1, customer_name="Initech")
        unit = await make_unit(
            product, "SN-1", status=UnitStatus.SOLD, order_id=order.id, customer_reference="Initech"
        )

        response = await client.get(f"{BASE}/{unit.id}/track", headers=admin)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["unit"]["serial_number"] == "SN-1"
        assert data["product_name"] == "Laptop 14in"
        assert data["product_sku"] == "LAP-14"
        assert data["order"]["id"] == str(order.id)
        assert data["order"]["customer_name"] == "Initech"
        assert data["order"]["status"] == "COMPLETED"
        assert data["allowed_transitions"] == ["in_stock"]
        assert data["warranty_active"] is True

    async def test_track_stock_unit(self, client, admin, make_product, make_unit):
        product = await make_product()
        unit = await make_unit(product, "SN-1")

        data = (await client.get(f"{BASE}/{unit.id}/track", headers=admin)).json()["data"]

        assert data["order"] is None
        assert data["warranty_active"] is False
        assert data["allowed_transitions"] == ["defective", "scrapped", "sold", "warranty"]

    async def test_track_unknown_unit(self, client, admin):
        response = await client.get(f"{BASE}/00000000-0000-0000-0000-000000000001/track", headers=admin)
        assert response.status_code == 404

    async def test_qrcode_links_to_warranty_check(self, client, admin, make_product, make_unit):
        product = await make_product(name="Laptop 14in")
        unit = await make_unit(product, "SN/1 A")

        response = await client.get(f"{BASE}/{unit.id}/qrcode", headers=admin)

        assert response.status_code == 200
        data = response.json()["data"]
        base = get_settings().FRONTEND_URL.rstrip("/")
        assert data["warranty_check_url"] == f"{base}/warranty-check?serial=SN%2F1%20A"
        assert data["qr_data"] == data["warranty_check_url"]
        assert data["product_name"] == "Laptop 14in"


class TestReservations:
    async def test_reserve_and_release(self, client, headers_for, make_product, make_unit, stock_of):
        product = await make_product()
        await make_unit(product, "SN-1")
        await make_unit(product, "SN-2")
        clerk = headers_for("FLOOR_ASSOCIATE", sub="clerk-1")

        response = await client.post(
            f"{BASE}/reserve",
            json={"product_id": str(product.id), "quantity": 1, "timeout_minutes": 15},
            headers=clerk,
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["count"] == 1
        assert data["reserved"][0]["serial_number"] == "SN-1"
        assert data["reserved"][0]["reserved_by"] == "clerk-1"
        assert await stock_of(product) == 2
        unit_id = data["reserved"][0]["id"]

        other = headers_for("FLOOR_ASSOCIATE", sub="clerk-2")
        response = await client.post(f"{BASE}/release", json={"unit_ids": [unit_id]}, headers=other)
        assert response.json()["data"]["released_count"] == 0

        response = await client.post(f"{BASE}/release", json={"unit_ids": [unit_id]}, headers=clerk)
        assert response.json()["data"]["released_count"] == 1

    async def test_insufficient_stock_is_400(self, client, admin, make_product):
        product = await make_product()
        response = await client.post(
            f"{BASE}/reserve", json={"product_id": str(product.id), "quantity": 1}, headers=admin
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INSUFFICIENT_STOCK"

    async def test_named_serial_taken_is_409(self, client, headers_for, make_product, make_unit):
        product = await make_product()
        await make_unit(product, "SN-1")
        body = {"product_id": str(product.id), "serial_numbers": ["SN-1", "SN-1"]}

        first = await client.post(f"{BASE}/reserve", json=body, headers=headers_for(sub="a"))
        second = await client.post(f"{BASE}/reserve", json=body, headers=headers_for(sub="b"))

        assert first.status_code == 200
        assert first.json()["data"]["count"] == 1
        assert second.status_code == 409
        assert second.json()["error"]["code"] == "ALREADY_RESERVED"

    async def test_release_expired(self, client, admin, db, tenant, make_product, make_unit):
        product = await make_product()
        unit = await make_unit(product, "SN-1")
        now = datetime.now(timezone.utc)
        await UnitRepository.try_hold(db, tenant.id, unit.id, "gone", now - timedelta(days=1), now)
        await db.commit()

        response = await client.post(f"{BASE}/release-expired", headers=admin)

        assert response.json()["data"]["released_count"] == 1


class TestJobs:
    async def test_auto_generate_then_sync(self, client, admin, make_product, stock_of, in_stock_count):
        product = await make_product(stock=2, sku="CAM")

        response = await client.post(f"{BASE}/auto-generate", headers=admin)
        report = response.json()["data"]
        assert [c["serial_number"] for c in report["changed"]] == ["CAM-0001", "CAM-0002"]
        assert await in_stock_count(product) == 2

        response = await client.post(f"{BASE}/sync-stock", headers=admin)
        assert response.json()["data"]["changed"] == []
        assert await stock_of(product) == 2

    async def test_sold_status_and_warranty_backfill(self, client, admin, make_product, make_unit, make_order):
        product = await make_product()
        await make_unit(product, "SN-1")
        await make_order(product, 1, status=OrderStatus.PROCESSING)

        sold = (await client.post(f"{BASE}/sync-sold-status", headers=admin)).json()["data"]
        assert [c["serial_number"] for c in sold["changed"]] == ["SN-1"]

        warranty = (
            await client.post(f"{BASE}/sync-warranty-dates", json={"default_months": 12}, headers=admin)
        ).json()["data"]
        assert warranty["processed"] == 0

    async def test_auto_generate_unknown_product(self, client, admin):
        response = await client.post(
            f"{BASE}/auto-generate",
            json={"product_id": "00000000-0000-0000-0000-000000000001"},
            headers=admin,
        )
        assert response.status_code == 404
