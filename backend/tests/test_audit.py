import pytest
from sqlalchemy import select

from audit_service import AuditEvent, AuditTrail, HistoryEvent
from auth import build_authenticated_user
from exceptions import NotFound
from models import AuditLog


class TestAuditTrail:
    async def test_events_wait_for_dispatch(self, session_maker, seed):
        trail = AuditTrail(session_maker)
        trail.emit(AuditEvent.by(build_authenticated_user(seed.poc), "UPDATE", "BRANCH", seed.mnl.id))
        assert len(trail.pending) == 1

        assert await trail.dispatch() == 1
        assert trail.pending == ()

        async with session_maker() as session:
            log = (await session.execute(select(AuditLog))).scalar_one()
        assert log.entity_id == str(seed.mnl.id)
        assert log.performed_by_branch_id == seed.mnl.id
        assert log.status == "SUCCESS"

    async def test_failed_write_is_swallowed(self):
        def broken_session_factory():
            raise RuntimeError("audit store unavailable")

        trail = AuditTrail(broken_session_factory)
        trail.emit(HistoryEvent(job_order_id=1, action="CREATE", performed_by=1))
        trail.emit(AuditEvent(action="DELETE", entity_type="JOB_ORDER", entity_id="1",
                              performed_by_user_id=1, performed_by_branch_id=None))

        assert await trail.dispatch() == 0

    async def test_unexpected_errors_are_recorded_as_failed(self, session_maker, seed):
        trail = AuditTrail(session_maker)
        user = build_authenticated_user(seed.poc)

        with pytest.raises(RuntimeError):
            async with trail.track_failures(user, "CREATE", "JOB_ORDER"):
                trail.emit(AuditEvent.by(user, "CREATE", "JOB_ORDER", 1))
                raise RuntimeError("connection reset")

        async with session_maker() as session:
            logs = (await session.execute(select(AuditLog).order_by(AuditLog.id))).scalars().all()
        assert [log.status for log in logs] == ["SUCCESS", "FAILED"]
        assert logs[1].new_values == {"error": "connection reset"}

    async def test_service_errors_pass_through_unrecorded(self, session_maker, seed):
        trail = AuditTrail(session_maker)

        with pytest.raises(NotFound):
            async with trail.track_failures(build_authenticated_user(seed.poc), "UPDATE", "JOB_ORDER", 1):
                raise NotFound("Job order not found")

        assert trail.pending == ()
        async with session_maker() as session:
            assert (await session.execute(select(AuditLog))).first() is None


class TestAuditQueries:
    @pytest.fixture
    async def pricing_changes(self, client, seed, auth_headers):
        await client.put(f"/api/pricing/{seed.labor.id}", json={"price": 160.0}, headers=auth_headers(seed.poc))
        await client.put(f"/api/pricing/{seed.packaging.id}", json={"price": 55.0}, headers=auth_headers(seed.hm))

    async def test_hm_sees_everything(self, client, seed, auth_headers, pricing_changes):
        response = await client.get(
            "/api/audit", params={"entity_type": "PRICING_MATRIX"}, headers=auth_headers(seed.hm)
        )
        body = response.json()
        assert body["pagination"]["total"] == 2
        assert body["data"][0]["performed_by_user_id"] == seed.hm.id

    async def test_poc_sees_own_branches_only(self, client, seed, auth_headers, pricing_changes):
        response = await client.get("/api/audit", headers=auth_headers(seed.poc))
        assert [log["performed_by_user_id"] for log in response.json()["data"]] == [seed.poc.id]

        response = await client.get("/api/audit", headers=auth_headers(seed.poc_cebu))
        assert response.json()["pagination"]["total"] == 0

    async def test_user_filter(self, client, seed, auth_headers, pricing_changes):
        response = await client.get("/api/audit", params={"user_id": seed.poc.id}, headers=auth_headers(seed.hm))
        assert response.json()["pagination"]["total"] == 1

    async def test_entity_history(self, client, seed, auth_headers, pricing_changes):
        response = await client.get(
            f"/api/audit/entity/PRICING_MATRIX/{seed.labor.id}", headers=auth_headers(seed.hm)
        )
        logs = response.json()
        assert len(logs) == 1
        assert logs[0]["new_values"]["price"] == 160.0

    async def test_user_history(self, client, seed, auth_headers, pricing_changes):
        response = await client.get(f"/api/audit/user/{seed.hm.id}", headers=auth_headers(seed.hm))
        assert [log["entity_id"] for log in response.json()] == [str(seed.packaging.id)]

    async def test_stats(self, client, seed, auth_headers, pricing_changes):
        response = await client.get("/api/audit/stats", params={"days": 1}, headers=auth_headers(seed.hm))
        body = response.json()
        assert body["total"] == 2
        assert body["failed"] == 0
        assert body["by_action"] == {"UPDATE": 2}
        assert body["by_entity_type"] == {"PRICING_MATRIX": 2}

    async def test_details_are_hm_only(self, client, seed, auth_headers):
        response = await client.get("/api/audit/stats", headers=auth_headers(seed.poc))
        assert response.status_code == 403

    async def test_receptionist_has_no_audit_access(self, client, seed, auth_headers):
        response = await client.get("/api/audit", headers=auth_headers(seed.receptionist))
        assert response.status_code == 403
