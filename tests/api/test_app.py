"""HTTP API tests."""

from datetime import UTC, datetime

import pytest
from fastapi.testclient import TestClient

from feeledger.api import create_app
from feeledger.billing.application.services import BalanceService
from feeledger.exceptions import TransientStorageError

ADMIN = {"X-Actor-Id": "registrar", "X-Actor-Role": "admin"}


def as_student(student_id: int) -> dict[str, str]:
    return {"X-Actor-Id": str(student_id), "X-Actor-Role": "student"}


@pytest.fixture
def client(test_settings, session_factory, event_bus) -> TestClient:
    app = create_app(test_settings, session_factory=session_factory, event_bus=event_bus)
    return TestClient(app)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


class TestFees:
    def test_bulk_issue(self, client, students, fee_template):
        response = client.post(
            "/fees/bulk", json={"students": students, "fee": fee_template()}, headers=ADMIN
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["count"] == 3
        assert len(body["balanceIds"]) == 3

    def test_invalid_students(self, client, students, fee_template):
        response = client.post(
            "/fees/bulk", json={"students": [students[0], 999], "fee": fee_template()}
        )

        assert response.status_code == 400
        assert response.json() == {"error": "Invalid student IDs", "invalidIds": [999]}

    def test_field_errors(self, client, students):
        response = client.post(
            "/fees/bulk",
            json={"students": students, "fee": {"type": "", "amount": -1, "description": "x"}},
        )

        assert response.status_code == 400
        fields = response.json()["fields"]
        assert {"type", "amount", "dueDate"} <= set(fields)

    def test_students_cannot_issue(self, client, students, fee_template):
        response = client.post(
            "/fees/bulk",
            json={"students": students, "fee": fee_template()},
            headers=as_student(students[0]),
        )
        assert response.status_code == 403

    def test_idempotent_replay(self, client, students, fee_template):
        payload = {"students": students[:1], "fee": fee_template()}
        headers = {**ADMIN, "Idempotency-Key": "term-1"}

        first = client.post("/fees/bulk", json=payload, headers=headers)
        second = client.post("/fees/bulk", json=payload, headers=headers)

        assert first.json()["balanceIds"] == second.json()["balanceIds"]
        listed = client.get(f"/students/{students[0]}/balances")
        assert len(listed.json()) == 1

    def test_key_reused_for_other_fee(self, client, students, fee_template):
        headers = {**ADMIN, "Idempotency-Key": "term-1"}
        client.post("/fees/bulk", json={"students": students[:1], "fee": fee_template()}, headers=headers)

        response = client.post(
            "/fees/bulk",
            json={"students": students[:1], "fee": fee_template(amount=900)},
            headers=headers,
        )

        assert response.status_code == 409
        assert response.json()["currentState"] == "used"


class TestPayments:
    def test_single_payment(self, client, students, issue_balances):
        balance_id = issue_balances(students[:1])[0]

        response = client.post(
            "/payments",
            json={"balanceId": balance_id, "paymentMethod": "gcash"},
            headers=as_student(students[0]),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["amount"] == 15000.0
        assert body["isGroup"] is False
        assert client.get(f"/balances/{balance_id}").json()["status"] == "paid"

    def test_group_payment(self, client, students, issue_balances):
        first = issue_balances(students[:1])[0]
        second = issue_balances(students[:1], type="Lab Fee", amount=500)[0]

        response = client.post(
            "/payments",
            json={"balanceIds": [first, second], "paymentMethod": "maya"},
        )

        assert response.status_code == 200
        assert response.json()["amount"] == 15500.0
        assert response.json()["balanceIds"] == [first, second]

    def test_exactly_one_target(self, client):
        response = client.post(
            "/payments", json={"balanceId": 1, "balanceIds": [1], "paymentMethod": "gcash"}
        )
        assert response.status_code == 400
        assert "balanceId" in response.json()["fields"]

    def test_unknown_balance(self, client):
        response = client.post("/payments", json={"balanceId": 42, "paymentMethod": "gcash"})
        assert response.status_code == 404
        assert response.json()["missingIds"] == [42]

    def test_already_paid(self, client, students, issue_balances):
        balance_id = issue_balances(students[:1])[0]
        payload = {"balanceId": balance_id, "paymentMethod": "cash"}
        client.post("/payments", json=payload)

        response = client.post("/payments", json=payload)

        assert response.status_code == 409
        assert response.json()["currentState"] == "paid"

    def test_other_students_balance(self, client, students, issue_balances):
        balance_id = issue_balances(students[:1])[0]
        response = client.post(
            "/payments",
            json={"balanceId": balance_id, "paymentMethod": "gcash"},
            headers=as_student(students[1]),
        )
        assert response.status_code == 403


class TestBalances:
    def test_add_list_cancel(self, client, students):
        added = client.post(
            "/balances",
            json={"studentId": students[1], "type": "ID Fee", "amount": "250.00"},
            headers=ADMIN,
        )
        assert added.status_code == 200
        balance_id = added.json()["id"]

        cancelled = client.post(f"/balances/{balance_id}/cancel", json={"reason": "waived"})
        again = client.post(f"/balances/{balance_id}/cancel")

        assert cancelled.json()["status"] == "cancelled"
        assert again.status_code == 409
        listed = client.get(f"/students/{students[1]}/balances", params={"status": "cancelled"})
        assert [b["id"] for b in listed.json()] == [balance_id]

    def test_summary_and_directory(self, client, students, issue_balances):
        issue_balances(students[:1])

        summary = client.get(f"/students/{students[0]}/summary", headers=as_student(students[0]))
        student = client.get(f"/students/{students[0]}")

        assert summary.json()["pending"] == {"count": 1, "total": 15000.0}
        assert student.json()["fullName"] == "Ana Santos"

    def test_list_students(self, client, students, make_student):
        duplicate = make_student(" BEN@School.edu ", "Ben Cruz")

        everyone = client.get("/students", headers=ADMIN)
        matches = client.get("/students", params={"email": "ben@school.edu"}, headers=ADMIN)
        denied = client.get("/students", headers=as_student(students[0]))

        assert [s["id"] for s in everyone.json()] == [*students, duplicate]
        assert [s["id"] for s in matches.json()] == [students[1], duplicate]
        assert denied.status_code == 403

    def test_unknown_student(self, client):
        assert client.get("/students/77").status_code == 404

    def test_bad_actor_headers(self, client, students):
        response = client.get(f"/students/{students[0]}", headers={"X-Actor-Role": "system"})
        assert response.status_code == 400
        assert "X-Actor-Role" in response.json()["fields"]

    def test_transient_failure_is_retryable(self, client, mocker):
        mocker.patch.object(
            BalanceService, "get_balance", side_effect=TransientStorageError("database is locked")
        )

        response = client.get("/balances/1")

        assert response.status_code == 503
        assert response.headers["retry-after"] == "1"
        assert response.json()["retryable"] is True


class TestRemindersAndNotifications:
    def test_run_and_read(self, client, students, issue_balances):
        issue_balances(students[:1], days=3)

        run = client.post("/reminders/run", json={"daysThreshold": 7}, headers=ADMIN)
        inbox = client.get(
            f"/students/{students[0]}/notifications", headers=as_student(students[0])
        )

        assert run.status_code == 200
        assert run.json()["reminderCount"] == 1
        [record] = inbox.json()
        assert record["type"] == "payment_reminder"

        read = client.post(f"/notifications/{record['id']}/read", headers=as_student(students[0]))
        assert read.json()["status"] == "read"
        unread = client.get(f"/students/{students[0]}/notifications", params={"status": "unread"})
        assert unread.json() == []

    def test_run_all(self, client, students, issue_balances):
        issue_balances(students, days=2)

        response = client.post("/reminders/run", json={"runAll": True})

        assert response.json()["reminderCount"] == 3
        assert response.json()["nextCursor"] is None

    def test_run_all_refuses_idempotency_key(self, client, students, issue_balances):
        issue_balances(students, days=2)

        response = client.post(
            "/reminders/run", json={"runAll": True}, headers={"Idempotency-Key": "nightly"}
        )

        assert response.status_code == 400
        assert "Idempotency-Key" in response.json()["fields"]
        inbox = client.get(f"/students/{students[0]}/notifications")
        assert inbox.json() == []

    def test_invalid_threshold(self, client):
        response = client.post("/reminders/run", json={"daysThreshold": -1})
        assert response.status_code == 400
        assert "daysThreshold" in response.json()["fields"]


def test_reconcile(client, students, make_student):
    newer = make_student(" Ana@School.edu ", "Ana Santos", created_at=datetime(2025, 1, 1, tzinfo=UTC))

    planned = client.post("/students/reconcile", json={"dryRun": True}, headers=ADMIN)
    applied = client.post("/students/reconcile", headers=ADMIN)

    assert planned.json()["plan"] == [
        {"email": "ana@school.edu", "canonicalId": newer, "duplicateIds": [students[0]]}
    ]
    assert applied.json()["removedIds"] == [students[0]]
    assert client.get(f"/students/{students[0]}").status_code == 404
