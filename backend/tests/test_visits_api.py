def _create_visit(client, headers, patient_id, **extra):
    response = client.post("/visits", headers=headers, json={"patient_id": patient_id, **extra})
    assert response.status_code == 201, response.text
    return response.json()


def _to_ready_for_doctor(client, receptionist_headers, nurse_headers, patient_id):
    visit = _create_visit(client, receptionist_headers, patient_id)
    assert client.post(f"/visits/{visit['id']}/nurse/start", headers=nurse_headers).status_code == 200
    response = client.put(
        f"/visits/{visit['id']}/nurse",
        headers=nurse_headers,
        json={"vitals": {"temperature": 38.4}, "chief_complaints": "fever since 2 days"},
    )
    assert response.status_code == 200
    response = client.post(f"/visits/{visit['id']}/nurse/complete", headers=nurse_headers)
    assert response.status_code == 200
    return response.json()


def test_two_stage_visit_end_to_end(client, receptionist_headers, nurse_headers, doctor_headers, patient_id, seeded_users):
    visit = _create_visit(client, receptionist_headers, patient_id, visit_date="2024-06-03")
    assert visit["status"] == "pending"
    assert visit["visit_date"] == "2024-06-03"
    assert visit["allowed_transitions"] == ["start_pre_consultation", "cancel_visit"]
    visit_id = visit["id"]

    started = client.post(f"/visits/{visit_id}/nurse/start", headers=nurse_headers)
    assert started.status_code == 200
    assert started.json()["status"] == "with-nurse"
    assert started.json()["active_owner_id"] == seeded_users["nurse"]["id"]

    updated = client.put(
        f"/visits/{visit_id}/nurse",
        headers=nurse_headers,
        json={
            "vitals": {"pulse_rate": 72, "blood_pressure": {"systolic": 118, "diastolic": 76}},
            "chief_complaints": "fever",
            "general_examination": {"pallor": False},
        },
    )
    assert updated.status_code == 200
    assert updated.json()["vitals"]["blood_pressure"] == {"systolic": 118, "diastolic": 76}

    completed = client.post(f"/visits/{visit_id}/nurse/complete", headers=nurse_headers)
    assert completed.status_code == 200
    body = completed.json()
    assert body["status"] == "ready-for-doctor"
    assert body["active_owner_id"] is None
    assert body["audit"]["entered_by"]["nurse_name"] == seeded_users["nurse"]["name"]
    assert body["audit"]["timestamps"]["nurse_completed_at"] is not None

    assert client.post(f"/visits/{visit_id}/doctor/start", headers=doctor_headers).status_code == 200
    consult = client.put(
        f"/visits/{visit_id}/doctor",
        headers=doctor_headers,
        json={
            "systemic_examination": {"cvs": "S1 S2 normal", "rs": "clear"},
            "diagnosis": "viral fever",
            "treatment": "paracetamol 500mg",
            "review_date": "2024-06-10",
        },
    )
    assert consult.status_code == 200
    assert consult.json()["review_date"] == "2024-06-10"

    final = client.post(f"/visits/{visit_id}/doctor/finalize", headers=doctor_headers)
    assert final.status_code == 200
    body = final.json()
    assert body["status"] == "completed"
    assert body["is_terminal"] is True
    assert body["allowed_transitions"] == []
    assert body["audit"]["entered_by"]["doctor_id"] == seeded_users["doctor"]["id"]

    late = client.put(f"/visits/{visit_id}/doctor", headers=doctor_headers, json={"advice": "rest"})
    assert late.status_code == 422
    assert late.json()["error"] == "invalid_transition"
    assert late.json()["current_status"] == "completed"

    detail = client.get(f"/visits/{visit_id}", headers=doctor_headers)
    assert detail.status_code == 200
    assert detail.json()["patient"]["name"] == "Patient One"
    assert detail.json()["assigned_nurse_name"] == seeded_users["nurse"]["name"]
    assert detail.json()["assigned_doctor_name"] == seeded_users["doctor"]["name"]

    events = client.get(f"/visits/{visit_id}/events", headers=doctor_headers)
    assert events.status_code == 200
    rows = events.json()
    assert [row["transition"] for row in rows] == [
        "create",
        "start_pre_consultation",
        "update_pre_consultation",
        "complete_pre_consultation",
        "start_consultation",
        "update_consultation",
        "finalize_visit",
    ]
    assert rows[1]["actor_name"] == seeded_users["nurse"]["name"]
    assert rows[-1]["previous_status"] == "with-doctor"
    assert rows[-1]["new_status"] == "completed"


def test_unknown_visit_is_404(client, nurse_headers):
    response = client.post("/visits/9999/nurse/start", headers=nurse_headers)
    assert response.status_code == 404
    assert response.json()["error"] == "not_found"


def test_other_nurse_gets_403(client, receptionist_headers, nurse_headers, nurse2_headers, patient_id):
    visit = _create_visit(client, receptionist_headers, patient_id)
    client.post(f"/visits/{visit['id']}/nurse/start", headers=nurse_headers)

    blocked = client.put(
        f"/visits/{visit['id']}/nurse",
        headers=nurse2_headers,
        json={"chief_complaints": "not my patient"},
    )
    assert blocked.status_code == 403
    assert blocked.json()["error"] == "ownership_violation"

    second_start = client.post(f"/visits/{visit['id']}/nurse/start", headers=nurse2_headers)
    assert second_start.status_code == 403


def test_wrong_role_gets_403(client, receptionist_headers, doctor_headers, patient_id):
    visit = _create_visit(client, receptionist_headers, patient_id)
    response = client.post(f"/visits/{visit['id']}/nurse/start", headers=doctor_headers)
    assert response.status_code == 403
    assert response.json()["error"] == "role_violation"


def test_start_consultation_before_nurse_stage_is_422(client, receptionist_headers, doctor_headers, patient_id):
    visit = _create_visit(client, receptionist_headers, patient_id)
    response = client.post(f"/visits/{visit['id']}/doctor/start", headers=doctor_headers)
    assert response.status_code == 422
    assert response.json()["allowed_statuses"] == ["ready-for-doctor"]


def test_incomplete_stage_reports_missing_fields(client, receptionist_headers, nurse_headers, doctor_headers, patient_id):
    visit = _create_visit(client, receptionist_headers, patient_id)
    client.post(f"/visits/{visit['id']}/nurse/start", headers=nurse_headers)
    client.put(f"/visits/{visit['id']}/nurse", headers=nurse_headers, json={"chief_complaints": "cough"})

    response = client.post(f"/visits/{visit['id']}/nurse/complete", headers=nurse_headers)
    assert response.status_code == 422
    assert response.json()["error"] == "validation_failed"
    assert response.json()["missing_fields"] == ["vitals"]

    client.put(f"/visits/{visit['id']}/nurse", headers=nurse_headers, json={"vitals": {"spo2": 98}})
    assert client.post(f"/visits/{visit['id']}/nurse/complete", headers=nurse_headers).status_code == 200

    client.post(f"/visits/{visit['id']}/doctor/start", headers=doctor_headers)
    response = client.post(f"/visits/{visit['id']}/doctor/finalize", headers=doctor_headers)
    assert response.status_code == 422
    assert response.json()["missing_fields"] == ["diagnosis", "treatment"]
    assert client.get(f"/visits/{visit['id']}", headers=doctor_headers).json()["status"] == "with-doctor"


def test_unknown_payload_fields_are_rejected(client, receptionist_headers, nurse_headers, patient_id):
    visit = _create_visit(client, receptionist_headers, patient_id)
    client.post(f"/visits/{visit['id']}/nurse/start", headers=nurse_headers)

    response = client.put(
        f"/visits/{visit['id']}/nurse",
        headers=nurse_headers,
        json={"chief_complaints": "fever", "diagnosis": "nurses cannot diagnose"},
    )
    assert response.status_code == 422

    response = client.put(
        f"/visits/{visit['id']}/nurse",
        headers=nurse_headers,
        json={"vitals": {"pulse_rate": 72, "weight": 70}},
    )
    assert response.status_code == 422
    assert client.get(f"/visits/{visit['id']}", headers=nurse_headers).json()["chief_complaints"] is None


def test_explicit_null_clears_field(client, receptionist_headers, nurse_headers, patient_id):
    visit = _create_visit(client, receptionist_headers, patient_id)
    client.post(f"/visits/{visit['id']}/nurse/start", headers=nurse_headers)
    client.put(
        f"/visits/{visit['id']}/nurse",
        headers=nurse_headers,
        json={"chief_complaints": "fever", "family_history": "diabetes"},
    )

    response = client.put(f"/visits/{visit['id']}/nurse", headers=nurse_headers, json={"family_history": None})
    assert response.status_code == 200
    assert response.json()["family_history"] is None
    assert response.json()["chief_complaints"] == "fever"


def test_cancel_visit(client, receptionist_headers, nurse_headers, admin_headers, patient_id):
    visit = _create_visit(client, receptionist_headers, patient_id)
    client.post(f"/visits/{visit['id']}/nurse/start", headers=nurse_headers)

    blocked = client.post(f"/visits/{visit['id']}/cancel", headers=receptionist_headers, json={"reason": "dup"})
    assert blocked.status_code == 403

    missing_reason = client.post(f"/visits/{visit['id']}/cancel", headers=admin_headers, json={"reason": ""})
    assert missing_reason.status_code == 422

    cancelled = client.post(
        f"/visits/{visit['id']}/cancel",
        headers=admin_headers,
        json={"reason": "patient left before consultation"},
    )
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"
    assert cancelled.json()["cancel_reason"] == "patient left before consultation"

    again = client.post(f"/visits/{visit['id']}/nurse/complete", headers=nurse_headers)
    assert again.status_code == 422

    events = client.get(f"/visits/{visit['id']}/events", headers=admin_headers).json()
    assert events[-1]["transition"] == "cancel_visit"
    assert events[-1]["notes"] == "patient left before consultation"


def test_doctor_skip_path(client, doctor_headers, doctor2_headers, patient_id):
    visit = _create_visit(client, doctor_headers, patient_id, start_immediately=True)
    assert visit["status"] == "draft"
    assert visit["audit"]["is_nurse_assisted_visit"] is False
    assert visit["allowed_transitions"] == ["start_direct_consultation", "cancel_visit"]

    assert client.post(f"/visits/{visit['id']}/doctor/start-direct", headers=doctor2_headers).status_code == 403

    started = client.post(f"/visits/{visit['id']}/doctor/start-direct", headers=doctor_headers)
    assert started.status_code == 200
    assert started.json()["status"] == "with-doctor"

    client.put(
        f"/visits/{visit['id']}/doctor",
        headers=doctor_headers,
        json={"diagnosis": "ankle sprain", "treatment": "RICE"},
    )
    final = client.post(f"/visits/{visit['id']}/doctor/finalize", headers=doctor_headers)
    assert final.status_code == 200
    assert final.json()["status"] == "completed"
    assert final.json()["nurse_completed_at"] is None


def test_receptionist_cannot_start_immediately(client, receptionist_headers, admin_headers, patient_id):
    response = client.post(
        "/visits",
        headers=receptionist_headers,
        json={"patient_id": patient_id, "start_immediately": True},
    )
    assert response.status_code == 403

    response = client.post("/visits", headers=admin_headers, json={"patient_id": patient_id})
    assert response.status_code == 403


def test_create_visit_for_unknown_patient(client, receptionist_headers):
    response = client.post("/visits", headers=receptionist_headers, json={"patient_id": 4321})
    assert response.status_code == 404
    assert response.json()["entity"] == "Patient"


def test_other_hospital_cannot_see_visit(client, receptionist_headers, outside_nurse_headers, patient_id):
    visit = _create_visit(client, receptionist_headers, patient_id)
    assert client.get(f"/visits/{visit['id']}", headers=outside_nurse_headers).status_code == 404
    assert client.post(f"/visits/{visit['id']}/nurse/start", headers=outside_nurse_headers).status_code == 404


def test_patient_visit_history(client, receptionist_headers, nurse_headers, patient_id):
    first = _create_visit(client, receptionist_headers, patient_id, visit_date="2024-01-10")
    second = _create_visit(client, receptionist_headers, patient_id, visit_date="2024-03-02")

    response = client.get(f"/visits/patient/{patient_id}", headers=nurse_headers)
    assert response.status_code == 200
    assert [row["id"] for row in response.json()] == [second["id"], first["id"]]

    assert client.get("/visits/patient/999", headers=nurse_headers).status_code == 404


def test_versioned_prefix_serves_same_routes(client, receptionist_headers, nurse_headers, patient_id):
    response = client.post("/api/v1/visits", headers=receptionist_headers, json={"patient_id": patient_id})
    assert response.status_code == 201
    visit_id = response.json()["id"]

    started = client.post(f"/api/v1/visits/{visit_id}/nurse/start", headers=nurse_headers)
    assert started.status_code == 200
    assert started.headers["cache-control"] == "no-store, max-age=0"


def test_missing_token_is_401(client, patient_id):
    assert client.get("/visits/nurse/queue").status_code == 401
    assert client.post("/visits", json={"patient_id": patient_id}).status_code == 401
