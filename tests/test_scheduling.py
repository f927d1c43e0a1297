"""
tests/test_scheduling.py

Appointment conflict detection and the status lifecycle:
  - half-open overlap rule
  - create / update / reactivate against occupied slots
  - concurrent creates for the same slot
  - permissive status changes
"""
from __future__ import annotations

import asyncio
import uuid
from datetime import date, time

import pytest

from conftest import make_appointment, make_patient, make_user
from medcenter.core.errors import Conflict, NotFound, ValidationFailed
from medcenter.db import session_scope
from medcenter.services.scheduling import AppointmentService, SlotLocks, intervals_overlap


def _payload(patient, start, end, day="2024-06-10", **extra):
    body = {
        "patient_id": str(patient.id),
        "category": "individual_therapy",
        "title": "Therapy session",
        "date": day,
        "start_time": start,
        "end_time": end,
    }
    body.update(extra)
    return body


# ═══════════════════════════════════════════════════════════════════
# 1. OVERLAP RULE
# ═══════════════════════════════════════════════════════════════════

@pytest.mark.parametrize(
    "a,b,expected",
    [
        ((time(9, 0), time(9, 30)), (time(9, 15), time(9, 45)), True),
        ((time(9, 0), time(9, 30)), (time(9, 30), time(10, 0)), False),
        ((time(9, 30), time(10, 0)), (time(9, 0), time(9, 30)), False),
        ((time(9, 0), time(12, 0)), (time(10, 0), time(10, 15)), True),
        ((time(10, 0), time(10, 15)), (time(9, 0), time(12, 0)), True),
        ((time(8, 0), time(8, 59)), (time(9, 0), time(9, 30)), False),
    ],
)
def test_intervals_overlap(a, b, expected):
    assert intervals_overlap(*a, *b) is expected


# ═══════════════════════════════════════════════════════════════════
# 2. CREATE
# ═══════════════════════════════════════════════════════════════════

async def test_overlap_rejected_and_back_to_back_allowed(client, patient):
    r1 = await client.post("/api/appointments", json=_payload(patient, "09:00", "09:30"))
    assert r1.status_code == 201, r1.text
    assert r1.json()["data"]["status"] == "scheduled"
    assert r1.json()["data"]["patient"]["code"] == "P0001"

    r2 = await client.post("/api/appointments", json=_payload(patient, "09:15", "09:45"))
    assert r2.status_code == 409
    body = r2.json()
    assert body["success"] is False
    assert body["error"] == "SLOT_OCCUPIED"

    r3 = await client.post("/api/appointments", json=_payload(patient, "09:30", "10:00"))
    assert r3.status_code == 201, r3.text

    listing = await client.get("/api/appointments/day/2024-06-10")
    starts = [a["start_time"] for a in listing.json()["data"]["appointments"]]
    assert starts == ["09:00:00", "09:30:00"]


async def test_cancelled_appointment_does_not_block(client, session_factory, user, patient):
    await make_appointment(session_factory, user, patient, status="cancelled")

    resp = await client.post("/api/appointments", json=_payload(patient, "09:00", "09:30"))
    assert resp.status_code == 201, resp.text


async def test_other_owner_can_book_same_slot(client, session_factory, patient):
    other = await make_user(session_factory, email="other@example.com")
    await make_appointment(session_factory, other, patient)

    resp = await client.post("/api/appointments", json=_payload(patient, "09:00", "09:30"))
    assert resp.status_code == 201, resp.text


async def test_same_slot_on_another_day_is_free(client, session_factory, user, patient):
    await make_appointment(session_factory, user, patient)

    resp = await client.post("/api/appointments", json=_payload(patient, "09:00", "09:30", day="2024-06-11"))
    assert resp.status_code == 201, resp.text


async def test_end_before_start_is_rejected(client, patient):
    resp = await client.post("/api/appointments", json=_payload(patient, "10:00", "09:00"))
    assert resp.status_code == 422
    assert resp.json()["error"] == "VALIDATION_ERROR"


async def test_inactive_patient_cannot_be_booked(client, session_factory):
    inactive = await make_patient(session_factory, code="P0009", active=False)

    resp = await client.post("/api/appointments", json=_payload(inactive, "09:00", "09:30"))
    assert resp.status_code == 404


async def test_service_rejects_unknown_category(session_factory, user, patient):
    async with session_scope(session_factory) as session:
        svc = AppointmentService(session, locks=SlotLocks())
        with pytest.raises(ValidationFailed):
            await svc.create(
                user.id,
                patient_id=patient.id,
                category="yoga",
                title="x",
                date="2024-06-10",
                start_time=time(9, 0),
                end_time=time(9, 30),
            )


# ═══════════════════════════════════════════════════════════════════
# 3. UPDATE
# ═══════════════════════════════════════════════════════════════════

async def test_update_into_occupied_slot_is_rejected(client, session_factory, user, patient):
    await make_appointment(session_factory, user, patient, start=time(9, 0), end=time(9, 30))
    second = await make_appointment(session_factory, user, patient, start=time(10, 0), end=time(10, 30))

    resp = await client.put(
        f"/api/appointments/{second.id}",
        json={"start_time": "09:15", "end_time": "09:45"},
    )
    assert resp.status_code == 409
    assert resp.json()["error"] == "SLOT_OCCUPIED"

    unchanged = await client.get(f"/api/appointments/{second.id}")
    assert unchanged.json()["data"]["start_time"] == "10:00:00"


async def test_update_overlapping_itself_is_allowed(client, session_factory, user, patient):
    appt = await make_appointment(session_factory, user, patient, start=time(9, 0), end=time(9, 30))

    resp = await client.put(f"/api/appointments/{appt.id}", json={"end_time": "09:50"})
    assert resp.status_code == 200, resp.text
    data = resp.json()["data"]
    assert data["start_time"] == "09:00:00"
    assert data["end_time"] == "09:50:00"


async def test_partial_time_update_uses_stored_values(client, session_factory, user, patient):
    appt = await make_appointment(session_factory, user, patient, start=time(9, 0), end=time(9, 30))

    # only the start moves; the stored end makes the interval empty
    resp = await client.put(f"/api/appointments/{appt.id}", json={"start_time": "09:30"})
    assert resp.status_code == 400


async def test_update_to_other_day_checks_that_day(client, session_factory, user, patient):
    await make_appointment(session_factory, user, patient, day=date(2024, 6, 11))
    appt = await make_appointment(session_factory, user, patient)

    resp = await client.put(f"/api/appointments/{appt.id}", json={"date": "2024-06-11"})
    assert resp.status_code == 409


async def test_update_without_time_fields_skips_conflict_check(client, session_factory, user, patient):
    appt = await make_appointment(session_factory, user, patient)

    resp = await client.put(f"/api/appointments/{appt.id}", json={"title": "  Follow-up  ", "notes": "bring x-rays"})
    assert resp.status_code == 200
    assert resp.json()["data"]["title"] == "Follow-up"
    assert resp.json()["data"]["notes"] == "bring x-rays"


async def test_reactivating_into_taken_slot_is_rejected(client, session_factory, user, patient):
    cancelled = await make_appointment(session_factory, user, patient, status="cancelled")
    await make_appointment(session_factory, user, patient, start=time(9, 15), end=time(9, 45))

    via_put = await client.put(f"/api/appointments/{cancelled.id}", json={"status": "scheduled"})
    assert via_put.status_code == 409

    via_patch = await client.patch(f"/api/appointments/{cancelled.id}/status", json={"status": "scheduled"})
    assert via_patch.status_code == 409


async def test_appointment_of_other_owner_is_not_found(client, session_factory, patient):
    other = await make_user(session_factory, email="other@example.com")
    theirs = await make_appointment(session_factory, other, patient)

    assert (await client.get(f"/api/appointments/{theirs.id}")).status_code == 404
    assert (await client.delete(f"/api/appointments/{theirs.id}")).status_code == 404


# ═══════════════════════════════════════════════════════════════════
# 4. STATUS LIFECYCLE
# ═══════════════════════════════════════════════════════════════════

async def test_status_transitions_are_permissive(client, session_factory, user, patient):
    appt = await make_appointment(session_factory, user, patient)

    for status in ("completed", "scheduled", "in_progress", "no_show", "cancelled", "completed"):
        resp = await client.patch(f"/api/appointments/{appt.id}/status", json={"status": status})
        assert resp.status_code == 200, (status, resp.text)
        assert resp.json()["data"]["status"] == status


async def test_invalid_status_is_rejected(client, session_factory, user, patient):
    appt = await make_appointment(session_factory, user, patient)

    resp = await client.patch(f"/api/appointments/{appt.id}/status", json={"status": "archived"})
    assert resp.status_code == 400
    assert "scheduled" in resp.json()["message"]


async def test_status_change_keeps_notes(client, session_factory, user, patient):
    appt = await make_appointment(session_factory, user, patient)

    resp = await client.patch(
        f"/api/appointments/{appt.id}/status",
        json={"status": "completed", "notes": "went well"},
    )
    assert resp.json()["data"]["notes"] == "went well"


async def test_delete_frees_the_slot(client, session_factory, user, patient):
    appt = await make_appointment(session_factory, user, patient)

    assert (await client.delete(f"/api/appointments/{appt.id}")).status_code == 200
    resp = await client.post("/api/appointments", json=_payload(patient, "09:00", "09:30"))
    assert resp.status_code == 201


async def test_list_filters_by_status(client, session_factory, user, patient):
    await make_appointment(session_factory, user, patient, status="completed")
    await make_appointment(session_factory, user, patient, start=time(11, 0), end=time(11, 30))

    resp = await client.get("/api/appointments", params={"status": "completed"})
    data = resp.json()["data"]
    assert data["pagination"]["total"] == 1
    assert data["appointments"][0]["status"] == "completed"


# ═══════════════════════════════════════════════════════════════════
# 5. CONCURRENT CREATES
# ═══════════════════════════════════════════════════════════════════

async def test_concurrent_creates_for_same_slot_admit_one(session_factory, user, patient):
    locks = SlotLocks()

    async def attempt(start, end):
        async with session_scope(session_factory) as session:
            svc = AppointmentService(session, locks=locks)
            appt = await svc.create(
                user.id,
                patient_id=patient.id,
                category="consultation",
                title="Race",
                date=date(2024, 6, 10),
                start_time=start,
                end_time=end,
            )
            # widen the window between check and commit
            await asyncio.sleep(0.05)
            return appt

    results = await asyncio.gather(
        attempt(time(9, 0), time(9, 30)),
        attempt(time(9, 15), time(9, 45)),
        return_exceptions=True,
    )

    created = [r for r in results if not isinstance(r, BaseException)]
    conflicts = [r for r in results if isinstance(r, Conflict)]
    assert len(created) == 1
    assert len(conflicts) == 1
    assert len(locks) == 0


async def test_slot_lock_released_after_rollback(session_factory, user, patient):
    locks = SlotLocks()

    with pytest.raises(NotFound):
        async with session_scope(session_factory) as session:
            svc = AppointmentService(session, locks=locks)
            await svc.create(
                user.id, patient_id=patient.id, category="consultation", title="x",
                date=date(2024, 6, 10), start_time=time(9, 0), end_time=time(9, 30),
            )
            raise NotFound("abort after the write")

    assert len(locks) == 0

    async with session_scope(session_factory) as session:
        svc = AppointmentService(session, locks=locks)
        appt = await svc.create(
            user.id, patient_id=patient.id, category="consultation", title="x",
            date=date(2024, 6, 10), start_time=time(9, 0), end_time=time(9, 30),
        )
    assert appt.id is not None


async def test_unknown_patient_id_is_not_found(client):
    resp = await client.post(
        "/api/appointments",
        json={
            "patient_id": str(uuid.uuid4()),
            "category": "consultation",
            "title": "x",
            "date": "2024-06-10",
            "start_time": "09:00",
            "end_time": "09:30",
        },
    )
    assert resp.status_code == 404
