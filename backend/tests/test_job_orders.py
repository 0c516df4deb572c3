from types import SimpleNamespace

import pytest
from sqlalchemy import select

import job_order_service
from audit_service import AuditTrail, get_audit_trail
from auth import build_authenticated_user
from exceptions import Conflict
from main import app
from models import AuditLog, CatalogItem, JobOrder, JobOrderHistory, JobOrderStatus
from schemas import JobOrderCreate


async def history_actions(session_maker, order_id):
    async with session_maker() as session:
        rows = (await session.execute(
            select(JobOrderHistory)
            .where(JobOrderHistory.job_order_id == order_id)
            .order_by(JobOrderHistory.id)
        )).scalars().all()
    return [row.action for row in rows]


class TestCreate:
    async def test_totals_and_snapshot(self, create_order, seed):
        order = await create_order()

        assert order["status"] == "created"
        assert order["order_number"] == f"JO-MNL-{order['id']:06d}"
        # (500 + 150 + 50) x 1 + 100 x 2
        assert order["total_amount"] == 900.0
        assert sum(item["line_total"] for item in order["items"]) == order["total_amount"]

        oil, wash = order["items"]
        assert (oil["base_price"], oil["labor_price"], oil["packaging_price"]) == (500.0, 150.0, 50.0)
        assert (wash["labor_price"], wash["packaging_price"]) == (None, None)
        assert wash["catalog_item_name"] == "Car Wash"
        assert len(order["warnings"]) == 2
        assert order["created_by"] == seed.receptionist.id

    async def test_quantity_defaults_to_one(self, create_order, order_payload):
        order_payload["items"] = [{"catalog_item_id": order_payload["items"][0]["catalog_item_id"]}]
        order = await create_order(order_payload)
        assert order["items"][0]["quantity"] == 1
        assert order["total_amount"] == 700.0

    async def test_catalog_changes_do_not_touch_existing_orders(self, create_order, client, seed, auth_headers, session_maker):
        order = await create_order()

        async with session_maker() as session:
            item = await session.get(CatalogItem, seed.oil_change.id)
            item.base_price = 999.0
            await session.commit()

        response = await client.get(f"/api/job-orders/{order['id']}", headers=auth_headers(seed.receptionist))
        body = response.json()
        assert body["items"][0]["base_price"] == 500.0
        assert body["total_amount"] == 900.0

    async def test_records_create_history(self, create_order, session_maker):
        order = await create_order()
        assert await history_actions(session_maker, order["id"]) == ["CREATE"]

    @pytest.mark.parametrize("mutate, field", [
        (lambda p, s: p.update(items=[]), "items"),
        (lambda p, s: p["items"][0].update(quantity=0), "items[0].quantity"),
        (lambda p, s: p.update(vehicle_id=s.other_vehicle.id), "vehicle_id"),
        (lambda p, s: p.update(customer_id=s.cebu_customer.id), "customer_id"),
    ])
    async def test_validation_errors_name_the_field(self, client, seed, auth_headers, order_payload, mutate, field):
        mutate(order_payload, seed)
        response = await client.post("/api/job-orders", json=order_payload, headers=auth_headers(seed.receptionist))
        assert response.status_code == 400
        assert response.json()["field"] == field

    async def test_unknown_catalog_item(self, client, seed, auth_headers, order_payload):
        order_payload["items"].append({"catalog_item_id": seed.retired.id})
        response = await client.post("/api/job-orders", json=order_payload, headers=auth_headers(seed.receptionist))
        assert response.status_code == 404

    async def test_nothing_is_written_on_failure(self, client, seed, auth_headers, order_payload, session_maker):
        order_payload["items"].append({"catalog_item_id": seed.cebu_only.id})
        response = await client.post("/api/job-orders", json=order_payload, headers=auth_headers(seed.receptionist))
        assert response.status_code == 404

        async with session_maker() as session:
            assert (await session.execute(select(JobOrder))).first() is None

    async def test_foreign_branch_is_denied(self, client, seed, auth_headers):
        payload = {
            "branch_id": seed.ceb.id,
            "customer_id": seed.cebu_customer.id,
            "vehicle_id": seed.cebu_vehicle.id,
            "items": [{"catalog_item_id": seed.oil_change.id}],
        }
        response = await client.post("/api/job-orders", json=payload, headers=auth_headers(seed.receptionist))
        assert response.status_code == 403

    @pytest.mark.parametrize("role_user", ["technician", "hm"])
    async def test_roles_without_create_permission(self, client, seed, auth_headers, order_payload, role_user):
        response = await client.post(
            "/api/job-orders", json=order_payload, headers=auth_headers(getattr(seed, role_user))
        )
        assert response.status_code == 403


class TestLifecycle:
    async def test_happy_path(self, create_order, client, seed, auth_headers, session_maker):
        order = await create_order()
        url = f"/api/job-orders/{order['id']}"

        response = await client.patch(f"{url}/request-approval", headers=auth_headers(seed.js))
        assert response.status_code == 200
        assert response.json()["status"] == "pending_approval"

        response = await client.patch(
            f"{url}/record-approval",
            json={"decision": "approved", "notes": "Customer approved by phone"},
            headers=auth_headers(seed.receptionist),
        )
        body = response.json()
        assert response.status_code == 200
        assert body["status"] == "approved"
        assert body["approved_at"] is not None
        assert body["approved_by"] == seed.receptionist.id
        assert body["approval_notes"] == "Customer approved by phone"

        response = await client.patch(
            f"{url}/record-approval",
            json={"decision": "rejected"},
            headers=auth_headers(seed.receptionist),
        )
        assert response.status_code == 409
        assert response.json()["current_status"] == "approved"

        assert await history_actions(session_maker, order["id"]) == ["CREATE", "REQUEST_APPROVAL", "APPROVE"]

    async def test_rejection_and_re_request(self, create_order, client, seed, auth_headers):
        order = await create_order()
        url = f"/api/job-orders/{order['id']}"
        headers = auth_headers(seed.poc)

        await client.patch(f"{url}/request-approval", headers=headers)
        response = await client.patch(f"{url}/record-approval", json={"decision": "rejected"}, headers=headers)
        assert response.json()["status"] == "rejected"

        response = await client.patch(f"{url}/request-approval", headers=headers)
        assert response.status_code == 200
        assert response.json()["status"] == "pending_approval"

    async def test_cancellation_is_terminal(self, create_order, client, seed, auth_headers):
        order = await create_order()
        url = f"/api/job-orders/{order['id']}"
        headers = auth_headers(seed.poc)

        response = await client.patch(f"{url}/cancel", json={"reason": "Customer left"}, headers=headers)
        assert response.json()["status"] == "cancelled"

        attempts = [
            client.patch(f"{url}/request-approval", headers=headers),
            client.patch(f"{url}/record-approval", json={"decision": "approved"}, headers=headers),
            client.patch(f"{url}/cancel", headers=headers),
        ]
        for attempt in attempts:
            response = await attempt
            assert response.status_code == 409
            assert response.json()["current_status"] == "cancelled"

        response = await client.get(url, headers=headers)
        assert response.json()["status"] == "cancelled"

    async def test_approval_requires_pending(self, create_order, client, seed, auth_headers):
        order = await create_order()
        response = await client.patch(
            f"/api/job-orders/{order['id']}/record-approval",
            json={"decision": "approved"},
            headers=auth_headers(seed.receptionist),
        )
        assert response.status_code == 409
        assert response.json()["current_status"] == "created"

    @pytest.mark.parametrize("role_user", ["js", "technician"])
    async def test_only_front_desk_records_decisions(self, create_order, client, seed, auth_headers, role_user):
        order = await create_order()
        url = f"/api/job-orders/{order['id']}"
        await client.patch(f"{url}/request-approval", headers=auth_headers(seed.receptionist))

        response = await client.patch(
            f"{url}/record-approval",
            json={"decision": "approved"},
            headers=auth_headers(getattr(seed, role_user)),
        )
        assert response.status_code == 403

    async def test_stale_transition_is_rejected(self, create_order, db, seed, monkeypatch):
        order = await create_order()
        user = build_authenticated_user(seed.receptionist)
        await job_order_service.request_approval(db, user, order["id"], AuditTrail())

        stale = SimpleNamespace(
            id=order["id"],
            branch_id=seed.mnl.id,
            status=JobOrderStatus.CREATED,
            order_number=order["order_number"],
        )

        async def stale_read(*args):
            return stale

        monkeypatch.setattr(job_order_service, "get_job_order", stale_read)
        with pytest.raises(Conflict) as exc_info:
            await job_order_service.request_approval(db, user, order["id"], AuditTrail())
        assert exc_info.value.current_status == "pending_approval"


class TestNotesAndDelete:
    async def test_technician_can_edit_notes(self, create_order, client, seed, auth_headers, session_maker):
        order = await create_order()
        response = await client.put(
            f"/api/job-orders/{order['id']}",
            json={"notes": "  Found worn brake pads  "},
            headers=auth_headers(seed.technician),
        )
        assert response.status_code == 200
        assert response.json()["notes"] == "Found worn brake pads"
        assert response.json()["total_amount"] == 900.0
        assert await history_actions(session_maker, order["id"]) == ["CREATE", "UPDATE"]

    async def test_notes_locked_after_approval(self, create_order, client, seed, auth_headers):
        order = await create_order()
        url = f"/api/job-orders/{order['id']}"
        headers = auth_headers(seed.poc)
        await client.patch(f"{url}/request-approval", headers=headers)
        await client.patch(f"{url}/record-approval", json={"decision": "approved"}, headers=headers)

        response = await client.put(url, json={"notes": "late edit"}, headers=headers)
        assert response.status_code == 409

    async def test_empty_update_is_rejected(self, create_order, client, seed, auth_headers):
        order = await create_order()
        response = await client.put(f"/api/job-orders/{order['id']}", json={}, headers=auth_headers(seed.poc))
        assert response.status_code == 400

    async def test_delete_is_audited(self, create_order, client, seed, auth_headers, session_maker):
        order = await create_order()
        response = await client.delete(f"/api/job-orders/{order['id']}", headers=auth_headers(seed.poc))
        assert response.status_code == 200

        response = await client.get(f"/api/job-orders/{order['id']}", headers=auth_headers(seed.poc))
        assert response.status_code == 404

        async with session_maker() as session:
            log = (await session.execute(
                select(AuditLog).where(AuditLog.entity_type == "JOB_ORDER", AuditLog.action == "DELETE")
            )).scalar_one()
            remaining_history = (await session.execute(select(JobOrderHistory))).scalars().all()
        assert log.entity_id == str(order["id"])
        assert log.old_values["order_number"] == order["order_number"]
        assert remaining_history == []


class TestBranchIsolation:
    async def test_other_branch_cannot_see_or_touch(self, create_order, client, seed, auth_headers):
        order = await create_order()
        outsider = auth_headers(seed.receptionist_cebu)

        listing = await client.get("/api/job-orders", headers=outsider)
        assert listing.json()["pagination"]["total"] == 0

        for response in [
            await client.get(f"/api/job-orders/{order['id']}", headers=outsider),
            await client.get(f"/api/job-orders/{order['id']}/history", headers=outsider),
            await client.patch(f"/api/job-orders/{order['id']}/request-approval", headers=outsider),
            await client.delete(f"/api/job-orders/{order['id']}", headers=outsider),
        ]:
            assert response.status_code == 404

    async def test_scope_is_checked_before_the_body(self, create_order, client, seed, auth_headers):
        order = await create_order()
        response = await client.put(
            f"/api/job-orders/{order['id']}", json={}, headers=auth_headers(seed.receptionist_cebu)
        )
        assert response.status_code == 404

    async def test_head_manager_sees_every_branch(self, create_order, client, seed, auth_headers):
        order = await create_order()
        response = await client.get("/api/job-orders", headers=auth_headers(seed.hm))
        assert [row["id"] for row in response.json()["data"]] == [order["id"]]


class TestListing:
    async def test_filters_and_pagination(self, create_order, client, seed, auth_headers):
        first = await create_order()
        second = await create_order()
        headers = auth_headers(seed.receptionist)
        await client.patch(f"/api/job-orders/{first['id']}/request-approval", headers=headers)

        response = await client.get("/api/job-orders", params={"status": "pending_approval"}, headers=headers)
        assert [row["id"] for row in response.json()["data"]] == [first["id"]]

        response = await client.get("/api/job-orders", params={"search": second["order_number"]}, headers=headers)
        assert [row["id"] for row in response.json()["data"]] == [second["id"]]

        response = await client.get("/api/job-orders", params={"limit": 1, "offset": 0}, headers=headers)
        body = response.json()
        assert body["pagination"] == {"total": 2, "limit": 1, "offset": 0}
        assert len(body["data"]) == 1

    async def test_history_timeline(self, create_order, client, seed, auth_headers):
        order = await create_order()
        headers = auth_headers(seed.poc)
        await client.patch(f"/api/job-orders/{order['id']}/request-approval", headers=headers)

        response = await client.get(f"/api/job-orders/{order['id']}/history", headers=headers)
        rows = response.json()
        assert [row["action"] for row in rows] == ["CREATE", "REQUEST_APPROVAL"]
        assert rows[1]["from_status"] == "created"
        assert rows[1]["to_status"] == "pending_approval"
        assert rows[1]["performed_by"] == seed.poc.id


class TestAuditIsolation:
    async def test_audit_write_failure_does_not_fail_the_request(self, client, seed, auth_headers, order_payload, session_maker):
        def broken_session_factory():
            raise RuntimeError("audit store unavailable")

        app.dependency_overrides[get_audit_trail] = lambda: AuditTrail(broken_session_factory)

        response = await client.post("/api/job-orders", json=order_payload, headers=auth_headers(seed.receptionist))
        assert response.status_code == 201

        response = await client.patch(
            f"/api/job-orders/{response.json()['id']}/request-approval",
            headers=auth_headers(seed.receptionist),
        )
        assert response.status_code == 200
        assert response.json()["status"] == "pending_approval"

        async with session_maker() as session:
            assert (await session.execute(select(JobOrderHistory))).first() is None

    async def test_committed_history_survives_a_late_failure(self, db, seed, order_payload, session_maker, monkeypatch):
        user = build_authenticated_user(seed.receptionist)
        trail = AuditTrail(session_maker)

        async def failing_reload(*args):
            raise RuntimeError("connection reset")

        monkeypatch.setattr(job_order_service, "load_job_order", failing_reload)
        with pytest.raises(RuntimeError):
            async with trail.track_failures(user, "CREATE", "JOB_ORDER"):
                await job_order_service.create_job_order(db, user, JobOrderCreate(**order_payload), trail)

        async with session_maker() as session:
            order = (await session.execute(select(JobOrder))).scalar_one()
            failed = (await session.execute(select(AuditLog))).scalar_one()
        assert await history_actions(session_maker, order.id) == ["CREATE"]
        assert failed.status == "FAILED"
        assert failed.new_values == {"error": "connection reset"}
