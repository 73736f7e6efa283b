import importlib

import pytest

import app
from notifications import tasks
from notifications.models import DeliveryRecord


@pytest.fixture
def db_app(monkeypatch, tmp_path):
    monkeypatch.setenv("USE_DATABASE", "1")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'attendance.db'}")
    module = importlib.reload(app)
    monkeypatch.setattr(module, "SETTINGS_FILE", str(tmp_path / "settings.json"))
    assert module.DB_ENABLED
    yield module
    module.engine.dispose()
    monkeypatch.undo()
    importlib.reload(app)


def _record(code, outcome="Sent"):
    return DeliveryRecord(
        recipient_id=code,
        recipient_name=f"Student {code}",
        kind="Late",
        outcome=outcome,
        reason="sent" if outcome == "Sent" else "routes_exhausted",
        detail="ok",
    )


def test_roster_roundtrip_keeps_order(db_app):
    db_app.save_students(db_app.DEMO_STUDENTS)

    students = db_app.load_students()
    assert [s["studentCode"] for s in students] == ["S1001", "S1002", "S1003", "S1101"]
    assert students[0]["parentPhone"] == "+971500000001"
    assert db_app.find_student("S1003")["fcmToken"] == ""


def test_single_student_updates(db_app):
    db_app.save_students(db_app.DEMO_STUDENTS)

    assert db_app.update_student_status("S1001", "Absent")["status"] == "Absent"
    assert db_app.update_student_token("S1003", " token_john_789 ")["fcmToken"] == "token_john_789"
    assert db_app.mark_notified("S1001") is True
    assert db_app.find_student("S1001")["notificationSent"] is True

    db_app.update_student_status("S1001", "Present")
    assert db_app.find_student("S1001")["notificationSent"] is False
    assert db_app.mark_notified("S1001") is False
    assert db_app.find_student("S1001")["notificationSent"] is False

    assert db_app.update_student_status("S9999", "Late") is None
    with pytest.raises(LookupError):
        db_app.mark_notified("S9999")


def test_mark_notified_leaves_other_rows_alone(db_app):
    db_app.save_students(db_app.DEMO_STUDENTS)
    db_app.update_student_status("S1001", "Absent")
    snapshot = db_app.load_recipients()

    db_app.update_student_status("S1002", "Late")
    db_app.mark_notified(snapshot[0].id)

    assert db_app.find_student("S1002")["status"] == "Late"
    assert db_app.find_student("S1001")["notificationSent"] is True


def test_reset_daily_attendance(db_app):
    db_app.save_students(db_app.DEMO_STUDENTS)
    db_app.update_student_status("S1001", "Absent")
    db_app.update_student_status("S1002", "Late")

    assert db_app.reset_daily_attendance() == 2
    assert {s["status"] for s in db_app.load_students()} == {"Present"}


def test_save_students_replaces_roster(db_app):
    db_app.save_students(db_app.DEMO_STUDENTS)
    db_app.save_students(db_app.DEMO_STUDENTS[:2])
    assert [s["studentCode"] for s in db_app.load_students()] == ["S1001", "S1002"]


def test_history_newest_first(db_app):
    db_app.append_notification_logs([_record("S1"), _record("S2", outcome="Failed")])
    db_app.append_notification_logs([_record("S3")])

    logs = db_app.load_notification_logs()
    assert [entry["recipientId"] for entry in logs] == ["S3", "S2", "S1"]
    assert logs[1]["reason"] == "routes_exhausted"
    assert [entry["recipientId"] for entry in db_app.load_notification_logs(limit=2)] == ["S3", "S2"]


def test_users_are_found_case_insensitively(db_app):
    db_app.add_user({
        "username": "principal",
        "display_name": "Principal",
        "password": db_app.generate_password_hash("pw"),
        "role": "admin",
    })

    record = db_app.find_user_record("  Principal ")
    assert record["role"] == "admin"
    assert db_app.check_password_hash(record["password"], "pw")
    assert db_app.find_user_record("nobody") is None
    assert [u["username"] for u in db_app.load_users()] == ["principal"]


def test_alert_batch_against_database(db_app, monkeypatch):
    monkeypatch.setenv("PUSH_SIMULATED_DELAY", "0")
    db_app.save_students(db_app.DEMO_STUDENTS)
    db_app.update_student_status("S1001", "Absent")
    db_app.update_student_status("S1003", "Late")

    report = tasks.run_alert_batch()

    assert [r.reason for r in report.records] == ["simulated", "no_address"]
    assert db_app.find_student("S1001")["notificationSent"] is True
    assert [entry["recipientId"] for entry in db_app.load_notification_logs()] == ["S1003", "S1001"]
