"""
HTTP tests for the consultation endpoints: envelope, access rules, PATCH
check order, optimistic concurrency and audit co-commit.
"""

import inspect
from datetime import timedelta

import pytest
from fastapi.routing import APIRoute

from telehealth.main import app
from telehealth.models import AuditEventType, ConsultationStatus, Specialty

from conftest import audit_events, auth_headers, fetch_consultation

BASE = "/api/v1/consultations"


def _iso(value):
    return value.isoformat()


class TestAuthentication:
    def test_missing_token(self, client):
        response = client.get(BASE)
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "UNAUTHORIZED"

    def test_garbage_token(self, client):
        response = client.get(BASE, headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "UNAUTHORIZED"


class TestRouteDispatch:
    @pytest.mark.parametrize("route", [
        r for r in app.routes
        if isinstance(r, APIRoute) and r.methods & {"POST", "PATCH", "PUT", "DELETE"}
    ], ids=lambda r: r.name)
    def test_write_routes_run_in_threadpool(self, route):
        # Blocking database and provider calls must stay off the event loop
        assert not inspect.iscoroutinefunction(route.endpoint)


class TestCreate:
    def test_patient_books_consultation(self, client, db_session, clock, patient):
        scheduled = clock.now + timedelta(hours=1)

        response = client.post(
            BASE,
            json={"specialty": "CARDIOLOGY", "scheduledStartAt": _iso(scheduled)},
            headers=auth_headers(patient)
        )

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "CREATED"
        assert body["effectiveStatus"] == "CREATED"
        assert body["patientId"] == patient.id
        assert body["doctorId"] is None
        assert body["specialty"] == "CARDIOLOGY"

        events = audit_events(db_session, body["id"])
        assert len(events) == 1
        assert events[0].event_type == AuditEventType.CONSULT_CREATED.value
        assert events[0].event_metadata == {"specialty": "CARDIOLOGY", "scheduledStartAt": _iso(scheduled)}

    def test_timezone_aware_start_is_normalized_to_utc(self, client, clock, patient):
        response = client.post(
            BASE,
            json={"specialty": "GENERAL", "scheduledStartAt": "2030-01-15T12:00:00+02:00"},
            headers=auth_headers(patient)
        )

        assert response.status_code == 201
        assert response.json()["scheduledStartAt"] == "2030-01-15T10:00:00"

    def test_invalid_specialty(self, client, patient):
        response = client.post(BASE, json={"specialty": "ASTROLOGY"}, headers=auth_headers(patient))

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert "CARDIOLOGY" in error["details"]["validOptions"]

    def test_start_in_the_past(self, client, clock, patient):
        response = client.post(
            BASE,
            json={"specialty": "GENERAL", "scheduledStartAt": _iso(clock.now - timedelta(minutes=1))},
            headers=auth_headers(patient)
        )

        assert response.status_code == 400
        assert response.json()["error"]["details"] == {"field": "scheduledStartAt"}

    def test_missing_body_field(self, client, patient):
        response = client.post(BASE, json={}, headers=auth_headers(patient))

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    @pytest.mark.parametrize("role_fixture", ["doctor", "admin"])
    def test_only_patients_book(self, request, client, role_fixture):
        user = request.getfixturevalue(role_fixture)
        response = client.post(BASE, json={"specialty": "GENERAL"}, headers=auth_headers(user))

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "FORBIDDEN"


class TestRead:
    def test_participants_and_admin_can_read(self, client, patient, doctor, admin, make_consultation):
        consultation_id = make_consultation(doctor=doctor)
        for user in (patient, doctor, admin):
            response = client.get(f"{BASE}/{consultation_id}", headers=auth_headers(user))
            assert response.status_code == 200
            assert response.json()["id"] == consultation_id

    def test_stranger_is_forbidden(self, client, other_patient, other_doctor, make_consultation, doctor):
        consultation_id = make_consultation(doctor=doctor)
        for user in (other_patient, other_doctor):
            response = client.get(f"{BASE}/{consultation_id}", headers=auth_headers(user))
            assert response.status_code == 403

    def test_not_found(self, client, patient):
        response = client.get(f"{BASE}/missing", headers=auth_headers(patient))

        assert response.status_code == 404
        assert response.json() == {"error": {"code": "NOT_FOUND", "message": "Consultation not found"}}

    def test_overdue_paid_reads_as_expired(self, client, db_session, clock, patient, make_consultation):
        consultation_id = make_consultation(
            status=ConsultationStatus.PAID, scheduled_start_at=clock.now + timedelta(minutes=10)
        )
        clock.advance(minutes=41)

        body = client.get(f"{BASE}/{consultation_id}", headers=auth_headers(patient)).json()

        assert body["status"] == "PAID"
        assert body["effectiveStatus"] == "EXPIRED"
        assert fetch_consultation(db_session, consultation_id).status is ConsultationStatus.PAID


class TestList:
    def test_visibility_by_role(self, client, patient, other_patient, doctor, admin, make_consultation):
        mine = make_consultation(doctor=doctor)
        make_consultation(owner=other_patient)

        patient_ids = [c["id"] for c in client.get(BASE, headers=auth_headers(patient)).json()["data"]]
        doctor_ids = [c["id"] for c in client.get(BASE, headers=auth_headers(doctor)).json()["data"]]
        admin_body = client.get(BASE, headers=auth_headers(admin)).json()

        assert patient_ids == [mine]
        assert doctor_ids == [mine]
        assert admin_body["pagination"]["total"] == 2

    def test_filters_and_pagination(self, client, clock, patient, make_consultation):
        for _ in range(3):
            make_consultation(specialty=Specialty.DERMATOLOGY)
            clock.advance(seconds=1)
        make_consultation(specialty=Specialty.GENERAL, status=ConsultationStatus.CANCELLED)

        body = client.get(
            BASE, params={"specialty": "DERMATOLOGY", "limit": 2, "offset": 0}, headers=auth_headers(patient)
        ).json()
        assert len(body["data"]) == 2
        assert body["pagination"] == {"total": 3, "limit": 2, "offset": 0, "hasMore": True}

        cancelled = client.get(BASE, params={"status": "CANCELLED"}, headers=auth_headers(patient)).json()
        assert [c["specialty"] for c in cancelled["data"]] == ["GENERAL"]

    def test_limit_is_capped(self, client, patient):
        body = client.get(BASE, params={"limit": 500}, headers=auth_headers(patient)).json()
        assert body["pagination"]["limit"] == 100

    def test_bad_status_filter(self, client, patient):
        response = client.get(BASE, params={"status": "SLEEPING"}, headers=auth_headers(patient))
        assert response.status_code == 400


class TestUpdate:
    def _patch(self, client, consultation_id, user, **body):
        return client.patch(f"{BASE}/{consultation_id}", json=body, headers=auth_headers(user))

    def test_doctor_moves_status_and_audits_once(self, client, db_session, doctor, make_consultation):
        consultation_id = make_consultation(doctor=doctor)

        response = self._patch(client, consultation_id, doctor, status="PAYMENT_PENDING")

        assert response.status_code == 200
        assert response.json()["status"] == "PAYMENT_PENDING"
        events = audit_events(db_session, consultation_id, AuditEventType.CONSULT_STATUS_CHANGED.value)
        assert [e.event_metadata for e in events] == [{"from": "CREATED", "to": "PAYMENT_PENDING"}]

    def test_empty_update_is_rejected(self, client, doctor, make_consultation):
        consultation_id = make_consultation(doctor=doctor)
        response = self._patch(client, consultation_id, doctor)
        assert response.status_code == 400

    def test_patient_cannot_change_status(self, client, patient, make_consultation):
        consultation_id = make_consultation()
        response = self._patch(client, consultation_id, patient, status="CANCELLED")
        assert response.status_code == 403

    def test_missing_consultation_checked_before_role(self, client, patient):
        response = self._patch(client, "missing", patient, status="CANCELLED")
        assert response.status_code == 404

    def test_invalid_status_value(self, client, doctor, make_consultation):
        consultation_id = make_consultation(doctor=doctor)

        response = self._patch(client, consultation_id, doctor, status="DONE")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_illegal_transition(self, client, db_session, doctor, make_consultation):
        consultation_id = make_consultation(doctor=doctor)

        response = self._patch(client, consultation_id, doctor, status="IN_CALL")

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "INVALID_STATUS_TRANSITION"
        assert error["details"] == {"from": "CREATED", "to": "IN_CALL"}
        assert audit_events(db_session, consultation_id) == []

    def test_stale_updated_at_is_a_conflict(self, client, db_session, clock, doctor, make_consultation):
        consultation_id = make_consultation(doctor=doctor)
        stale = client.get(f"{BASE}/{consultation_id}", headers=auth_headers(doctor)).json()["updatedAt"]

        clock.advance(seconds=5)
        assert self._patch(client, consultation_id, doctor, status="PAYMENT_PENDING", updatedAt=stale).status_code == 200

        response = self._patch(client, consultation_id, doctor, status="CANCELLED", updatedAt=stale)

        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "CONFLICT"
        assert set(error["details"]) == {"serverUpdatedAt", "clientUpdatedAt"}
        assert fetch_consultation(db_session, consultation_id).status is ConsultationStatus.PAYMENT_PENDING

    def test_current_updated_at_is_accepted(self, client, doctor, make_consultation):
        consultation_id = make_consultation(doctor=doctor)
        current = client.get(f"{BASE}/{consultation_id}", headers=auth_headers(doctor)).json()["updatedAt"]

        response = self._patch(client, consultation_id, doctor, status="CANCELLED", updatedAt=current)

        assert response.status_code == 200

    def test_admin_assigns_doctor(self, client, db_session, admin, doctor, make_consultation):
        consultation_id = make_consultation()

        response = self._patch(client, consultation_id, admin, doctorId=doctor.id)

        assert response.status_code == 200
        assert response.json()["doctorId"] == doctor.id
        events = audit_events(db_session, consultation_id, AuditEventType.CONSULT_DOCTOR_ASSIGNED.value)
        assert [e.event_metadata for e in events] == [{"from": None, "to": doctor.id}]

    def test_doctor_cannot_assign_doctors(self, client, doctor, other_doctor, make_consultation):
        consultation_id = make_consultation(doctor=doctor)
        response = self._patch(client, consultation_id, doctor, doctorId=other_doctor.id)
        assert response.status_code == 403

    def test_assign_unknown_user(self, client, admin, make_consultation):
        consultation_id = make_consultation()
        response = self._patch(client, consultation_id, admin, doctorId="nobody")
        assert response.status_code == 404

    def test_assign_non_doctor(self, client, admin, other_patient, make_consultation):
        consultation_id = make_consultation()
        response = self._patch(client, consultation_id, admin, doctorId=other_patient.id)
        assert response.status_code == 400
        assert response.json()["error"]["details"] == {"field": "doctorId"}

    def test_reschedule(self, client, db_session, clock, doctor, make_consultation):
        original = clock.now + timedelta(hours=1)
        consultation_id = make_consultation(doctor=doctor, scheduled_start_at=original)
        new_start = clock.now + timedelta(hours=3)

        response = self._patch(client, consultation_id, doctor, scheduledStartAt=_iso(new_start))

        assert response.status_code == 200
        events = audit_events(db_session, consultation_id, AuditEventType.CONSULT_RESCHEDULED.value)
        assert [e.event_metadata for e in events] == [{"from": _iso(original), "to": _iso(new_start)}]

    def test_reschedule_into_past(self, client, clock, doctor, make_consultation):
        consultation_id = make_consultation(doctor=doctor)
        response = self._patch(client, consultation_id, doctor, scheduledStartAt=_iso(clock.now))
        assert response.status_code == 400

    def test_combined_update_audits_each_aspect(self, client, db_session, clock, admin, doctor, make_consultation):
        consultation_id = make_consultation()
        new_start = clock.now + timedelta(hours=2)

        response = self._patch(
            client, consultation_id, admin,
            status="PAYMENT_PENDING", doctorId=doctor.id, scheduledStartAt=_iso(new_start)
        )

        assert response.status_code == 200
        kinds = sorted(e.event_type for e in audit_events(db_session, consultation_id))
        assert kinds == sorted([
            AuditEventType.CONSULT_STATUS_CHANGED.value,
            AuditEventType.CONSULT_DOCTOR_ASSIGNED.value,
            AuditEventType.CONSULT_RESCHEDULED.value,
        ])

    def test_double_booked_confirmed_slot_is_a_conflict(self, client, clock, admin, doctor, make_consultation):
        slot = clock.now + timedelta(hours=2)
        make_consultation(status=ConsultationStatus.PAID, doctor=doctor, scheduled_start_at=slot)
        pending_id = make_consultation(
            status=ConsultationStatus.PAYMENT_PENDING, doctor=doctor, scheduled_start_at=slot
        )

        response = self._patch(client, pending_id, admin, status="PAID")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "CONFLICT"

    def test_slot_held_by_another_consultation(self, client, slot_lock, clock, admin, doctor, make_consultation):
        slot = clock.now + timedelta(hours=2)
        consultation_id = make_consultation(scheduled_start_at=slot)
        slot_lock.try_acquire(doctor.id, slot, "someone-else")

        response = self._patch(client, consultation_id, admin, doctorId=doctor.id)

        assert response.status_code == 409
        assert response.json()["error"]["details"]["doctorId"] == doctor.id

    def test_slot_lock_released_once_paid(self, client, slot_lock, fake_redis, clock, admin, doctor,
                                          make_consultation):
        slot = clock.now + timedelta(hours=2)
        consultation_id = make_consultation(status=ConsultationStatus.PAYMENT_PENDING, scheduled_start_at=slot)

        assert self._patch(client, consultation_id, admin, doctorId=doctor.id).status_code == 200
        assert fake_redis.get(slot_lock.key_for(doctor.id, slot)) == consultation_id

        assert self._patch(client, consultation_id, admin, status="PAID").status_code == 200
        assert fake_redis.get(slot_lock.key_for(doctor.id, slot)) is None


class TestJoinEndpoint:
    def test_join_returns_tokenized_url(self, client, clock, patient, doctor, make_consultation):
        consultation_id = make_consultation(
            status=ConsultationStatus.PAID, doctor=doctor, scheduled_start_at=clock.now + timedelta(minutes=3)
        )

        response = client.post(f"{BASE}/{consultation_id}/join", headers=auth_headers(patient))

        assert response.status_code == 200
        body = response.json()
        assert set(body) == {"joinUrl", "roomUrl", "token", "expiresAt"}
        assert body["joinUrl"] == f"{body['roomUrl']}?t={body['token']}"

    def test_join_outside_window_reports_boundary(self, client, clock, patient, make_consultation):
        scheduled = clock.now + timedelta(hours=1)
        consultation_id = make_consultation(status=ConsultationStatus.PAID, scheduled_start_at=scheduled)

        response = client.post(f"{BASE}/{consultation_id}/join", headers=auth_headers(patient))

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["details"]["opensAt"] == _iso(scheduled - timedelta(minutes=5))

    def test_provider_failure_is_sanitized(self, client, video_provider, patient, make_consultation):
        consultation_id = make_consultation(status=ConsultationStatus.PAID)
        video_provider.fail_create = True

        response = client.post(f"{BASE}/{consultation_id}/join", headers=auth_headers(patient))

        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "INTERNAL_ERROR"
        assert error["message"] == "An error occurred processing your request"
        assert len(error["details"]["errorId"]) == 8

    def test_unexpected_commit_failure_compensates_and_returns_500(
        self, client, db_session, video_provider, patient, make_consultation
    ):
        from unittest.mock import patch
        from telehealth.services.audit_logger import AuditRecorder

        consultation_id = make_consultation(status=ConsultationStatus.PAID)

        with patch.object(AuditRecorder, "log_status_changed", side_effect=RuntimeError("disk full")):
            response = client.post(f"{BASE}/{consultation_id}/join", headers=auth_headers(patient))

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "INTERNAL_ERROR"
        assert "disk full" not in response.text
        assert video_provider.rooms == {}
        assert fetch_consultation(db_session, consultation_id).status is ConsultationStatus.PAID

    def test_close_endpoint(self, client, clock, patient, doctor, make_consultation):
        consultation_id = make_consultation(status=ConsultationStatus.PAID, doctor=doctor)
        client.post(f"{BASE}/{consultation_id}/join", headers=auth_headers(patient))

        response = client.post(f"{BASE}/{consultation_id}/close", headers=auth_headers(doctor))

        assert response.status_code == 200
        assert response.json()["status"] == "COMPLETED"
        assert response.json()["videoSession"]["endedAt"] is not None
