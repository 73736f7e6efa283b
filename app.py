# app.py
from flask import Flask, request, session, jsonify, abort
import json, os, secrets, contextlib, tempfile
import logging
from datetime import datetime, timedelta
from functools import wraps
from flask_login import (
    LoginManager,
    UserMixin,
    login_user,
    logout_user,
    current_user,
    login_required,
)
from werkzeug.security import generate_password_hash, check_password_hash
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    String,
    Text,
    create_engine,
)
from sqlalchemy.orm import declarative_base, sessionmaker

from notifications.config import (
    ALERT_STATUSES,
    STATUS_PRESENT,
    VALID_STATUSES,
    DispatchSettings,
)
from notifications.models import DeliveryRecord, Recipient
from notifications.service import summarize_report
from notifications.transport import resolve_dialect


try:
    import fcntl  # type: ignore[import]
except ImportError:
    fcntl = None

try:
    import portalocker  # type: ignore[import]
except ImportError:
    portalocker = None

LOGGER = logging.getLogger(__name__)

app = Flask(__name__)
app.secret_key = os.getenv("SECRET_KEY", "dev-only-key")
app.config.update(
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=os.getenv("FLASK_ENV") == "production",
)

login_manager = LoginManager()
login_manager.init_app(app)

DEBUG = os.getenv("FLASK_ENV") != "production"

APP_MODE = os.environ.get("APP_MODE", "prod").lower()
DEMO = APP_MODE == "demo"
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DATA_DIR = os.environ.get("DATA_DIR", BASE_DIR)

os.makedirs(DATA_DIR, exist_ok=True)


def data_path(name: str) -> str:
    return os.path.join(DATA_DIR, name)

# ------------------------------- Paths / Config -------------------------------
STUDENTS_FILE          = data_path("students.json")
USERS_FILE             = data_path("users.json")
NOTIFICATION_LOG_FILE  = data_path("notification_logs.json")
SETTINGS_FILE          = data_path("settings.json")

MAX_HISTORY = int(os.getenv("NOTIFICATION_HISTORY_LIMIT", "500"))

USE_DATABASE = os.getenv("USE_DATABASE", "1").strip().lower() not in {"0", "false", "no"}
DATABASE_URL = os.getenv("DATABASE_URL") or os.getenv("SQLALCHEMY_DATABASE_URI")
DEFAULT_SQLITE_URL = f"sqlite:///{data_path('attendance.db')}"

if not DATABASE_URL and USE_DATABASE:
    DATABASE_URL = DEFAULT_SQLITE_URL

DB_ENABLED = bool(USE_DATABASE and DATABASE_URL)

SessionLocal: Optional[sessionmaker] | None = None
UserModel = None
StudentModel = None
NotificationLogModel = None
Base = None

if DB_ENABLED:
    engine_kwargs: dict[str, Any] = {"future": True}
    if str(DATABASE_URL).startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        pool_pre_ping = False
    else:
        pool_pre_ping = True
    engine = create_engine(DATABASE_URL, pool_pre_ping=pool_pre_ping, **engine_kwargs)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
    Base = declarative_base()

    class UserModel(Base):
        __tablename__ = "users"
        username = Column(String(80), primary_key=True)
        display_name = Column(String(120))
        password_hash = Column(String(255))
        role = Column(String(20), default="staff", nullable=False)
        join_date = Column(DateTime, default=datetime.utcnow, nullable=False)

    class StudentModel(Base):
        __tablename__ = "students"
        student_code = Column(String(40), primary_key=True)
        student_name = Column(String(160), nullable=False)
        grade = Column(String(20), default="")
        class_name = Column(String(20), default="")
        parent_name = Column(String(160), default="")
        parent_phone = Column(String(40), default="")
        fcm_token = Column(Text, default="")
        status = Column(String(16), default=STATUS_PRESENT, nullable=False)
        notification_sent = Column(Boolean, default=False, nullable=False)
        position = Column(Integer, default=0, nullable=False)
        updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    class NotificationLogModel(Base):
        __tablename__ = "notification_logs"
        id = Column(String(32), primary_key=True)
        student_code = Column(String(40), nullable=False, index=True)
        student_name = Column(String(160))
        kind = Column(String(16), nullable=False)
        timestamp = Column(String(32), nullable=False)
        outcome = Column(String(16), nullable=False)
        reason = Column(String(40))
        detail = Column(Text)
        attempts = Column(Integer, default=0, nullable=False)
        created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    Base.metadata.create_all(bind=engine)
else:
    Base = None
    SessionLocal = None

# ------------------------------- Auth model -------------------------------
class AppUser(UserMixin):
    def __init__(self, username: str, role: str = "staff", display_name: str | None = None):
        self.id = username
        self.username = username
        self.role = (role or "staff").lower()
        self.display_name = display_name or username.title()

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @classmethod
    def from_record(cls, record: dict):
        username = record.get("username")
        if not username:
            raise ValueError("User record missing username")
        return cls(
            username=username,
            role=record.get("role", "staff"),
            display_name=record.get("display_name"),
        )


def current_username() -> str | None:
    if current_user.is_authenticated:
        return current_user.username
    return None


def current_role() -> str:
    if current_user.is_authenticated:
        return getattr(current_user, "role", "staff")
    return "staff"


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({"error": "Login required"}), 401


@contextlib.contextmanager
def with_json_lock(path: str):
    lock_path = f"{path}.lock"
    os.makedirs(os.path.dirname(lock_path) or ".", exist_ok=True)
    lock_file = open(lock_path, "a+")
    locked_via = None
    try:
        if portalocker is not None:
            portalocker.lock(lock_file, portalocker.LOCK_EX)
            locked_via = "portalocker"
        elif fcntl is not None:
            fcntl.flock(lock_file, fcntl.LOCK_EX)
            locked_via = "fcntl"
        yield
    finally:
        try:
            if locked_via == "portalocker":
                portalocker.unlock(lock_file)
            elif locked_via == "fcntl":
                fcntl.flock(lock_file, fcntl.LOCK_UN)
        finally:
            lock_file.close()


def _write_json(path, data):
    """Atomic replace; caller holds the lock."""
    directory = os.path.dirname(path) or "."
    os.makedirs(directory, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=".tmp-", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    finally:
        try:
            os.remove(tmp)
        except OSError:
            pass


def _read_json(path):
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def save_json_atomic(path, data):
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with with_json_lock(path):
        _write_json(path, data)


def load_json(path, default):
    try:
        with with_json_lock(path):
            return _read_json(path)
    except FileNotFoundError:
        save_json_atomic(path, default)
        return default
    except json.JSONDecodeError:
        LOGGER.warning("Ignoring corrupt JSON file %s", path)
        return default
    except OSError:
        return default


def save_json(path, data):
    save_json_atomic(path, data)


def csrf_token():
    return session.get("_csrf", "")


@app.before_request
def ensure_csrf_token():
    session["_csrf"] = session.get("_csrf") or secrets.token_urlsafe(32)
    if request.method in {"POST", "PUT", "PATCH", "DELETE"}:
        token = session.get("_csrf")
        submitted = request.headers.get("X-CSRF-Token") or request.form.get("csrf_token")
        if not token or not submitted or not secrets.compare_digest(submitted, token):
            abort(400)


def admin_required(f):
    @wraps(f)
    def wrapper(*args, **kwargs):
        if not current_user.is_authenticated:
            return login_manager.unauthorized()
        if getattr(current_user, "role", "staff") != "admin":
            return jsonify({"error": "Admins only"}), 403
        return f(*args, **kwargs)
    return wrapper

def demo_guard(fn):
    @wraps(fn)
    def _w(*args, **kwargs):
        if DEMO and request.method in {"POST", "PUT", "PATCH", "DELETE"}:
            return jsonify({"error": "Demo mode: mutations are disabled."}), 403
        return fn(*args, **kwargs)
    return _w


def _norm(s):
    return (s or "").strip().lower()

# ------------------------------- Roster store -------------------------------
def normalize_student(record: Dict[str, Any]) -> Dict[str, Any]:
    """Fill in roster defaults; keys follow the student document shape."""
    status = record.get("status") or STATUS_PRESENT
    if status not in VALID_STATUSES:
        status = STATUS_PRESENT
    return {
        "studentCode": str(record.get("studentCode") or "").strip(),
        "studentName": record.get("studentName") or "Unknown Student",
        "grade": str(record.get("grade") or "1"),
        "className": str(record.get("className") or "1"),
        "parentName": record.get("parentName") or "",
        "parentPhone": str(record.get("parentPhone") or ""),
        "fcmToken": record.get("fcmToken") or "",
        "status": status,
        "notificationSent": bool(record.get("notificationSent", False)),
    }


def _student_to_dict(model: "StudentModel") -> Dict[str, Any]:
    return {
        "studentCode": model.student_code,
        "studentName": model.student_name,
        "grade": model.grade or "",
        "className": model.class_name or "",
        "parentName": model.parent_name or "",
        "parentPhone": model.parent_phone or "",
        "fcmToken": model.fcm_token or "",
        "status": model.status or STATUS_PRESENT,
        "notificationSent": bool(model.notification_sent),
    }


def load_students() -> List[Dict[str, Any]]:
    if not DB_ENABLED or SessionLocal is None:
        records = load_json(STUDENTS_FILE, [])
        return [normalize_student(dict(r)) for r in records if isinstance(r, dict)]
    with SessionLocal() as db:
        rows = db.query(StudentModel).order_by(StudentModel.position, StudentModel.student_code).all()
        return [_student_to_dict(row) for row in rows]


def save_students(students: List[Dict[str, Any]]):
    normalized = []
    seen = set()
    for record in students or []:
        if not isinstance(record, dict):
            continue
        item = normalize_student(record)
        if not item["studentCode"] or item["studentCode"] in seen:
            continue
        seen.add(item["studentCode"])
        normalized.append(item)

    if not DB_ENABLED or SessionLocal is None:
        save_json(STUDENTS_FILE, normalized)
        return

    with SessionLocal.begin() as db:
        existing = {row.student_code: row for row in db.query(StudentModel).all()}
        for idx, item in enumerate(normalized):
            row = existing.pop(item["studentCode"], None)
            if row is None:
                row = StudentModel(student_code=item["studentCode"])
                db.add(row)
            row.student_name = item["studentName"]
            row.grade = item["grade"]
            row.class_name = item["className"]
            row.parent_name = item["parentName"]
            row.parent_phone = item["parentPhone"]
            row.fcm_token = item["fcmToken"]
            row.status = item["status"]
            row.notification_sent = item["notificationSent"]
            row.position = idx
        for stale in existing.values():
            db.delete(stale)


def find_student(code: str | None) -> Optional[Dict[str, Any]]:
    if not code:
        return None
    for record in load_students():
        if record["studentCode"] == code:
            return record
    return None


def _read_students_file() -> List[Dict[str, Any]]:
    """Roster as stored on disk; caller holds the students lock."""
    try:
        records = _read_json(STUDENTS_FILE)
    except FileNotFoundError:
        return []
    except json.JSONDecodeError:
        LOGGER.warning("Ignoring corrupt JSON file %s", STUDENTS_FILE)
        return []
    return [normalize_student(dict(r)) for r in records if isinstance(r, dict)]


def _update_student(code: str, mutate: Callable[[Dict[str, Any]], None]) -> Optional[Dict[str, Any]]:
    """Apply ``mutate`` to one student inside a single locked write.

    Other students are never rewritten from a stale copy. Returns the updated
    record, or None for an unknown code.
    """
    if not DB_ENABLED or SessionLocal is None:
        with with_json_lock(STUDENTS_FILE):
            students = _read_students_file()
            for record in students:
                if record["studentCode"] == code:
                    mutate(record)
                    _write_json(STUDENTS_FILE, students)
                    return record
        return None

    with SessionLocal.begin() as db:
        row = db.get(StudentModel, code, with_for_update=True)
        if row is None:
            return None
        record = _student_to_dict(row)
        mutate(record)
        row.status = record["status"]
        row.fcm_token = record["fcmToken"]
        row.notification_sent = record["notificationSent"]
        return record


def update_student_status(code: str, status: str) -> Optional[Dict[str, Any]]:
    """Set attendance; going back to Present re-arms the daily alert."""
    if status not in VALID_STATUSES:
        raise ValueError(f"Invalid attendance status: {status!r}")

    def _apply(record):
        record["status"] = status
        if status == STATUS_PRESENT:
            record["notificationSent"] = False

    return _update_student(code, _apply)


def update_student_token(code: str, token: str) -> Optional[Dict[str, Any]]:
    token = (token or "").strip()

    def _apply(record):
        record["fcmToken"] = token

    return _update_student(code, _apply)


def mark_notified(code: str) -> bool:
    """Flag today's alert as delivered.

    Returns False when the student was marked Present while the alert was in
    flight; the flag stays clear so a later absence alerts again.
    """
    flagged = []

    def _apply(record):
        if record["status"] != STATUS_PRESENT:
            record["notificationSent"] = True
            flagged.append(code)

    if _update_student(code, _apply) is None:
        raise LookupError(f"Unknown student {code}")
    return bool(flagged)


def _reset_record(record: Dict[str, Any]) -> bool:
    if record["status"] == STATUS_PRESENT and not record["notificationSent"]:
        return False
    record["status"] = STATUS_PRESENT
    record["notificationSent"] = False
    return True


def reset_daily_attendance() -> int:
    if not DB_ENABLED or SessionLocal is None:
        with with_json_lock(STUDENTS_FILE):
            students = _read_students_file()
            changed = sum(1 for record in students if _reset_record(record))
            if changed:
                _write_json(STUDENTS_FILE, students)
        return changed

    with SessionLocal.begin() as db:
        changed = 0
        for row in db.query(StudentModel).all():
            if row.status != STATUS_PRESENT or row.notification_sent:
                row.status = STATUS_PRESENT
                row.notification_sent = False
                changed += 1
        return changed


def load_recipients() -> List[Recipient]:
    return [Recipient.from_record(record) for record in load_students()]

# ------------------------------- Notification history -------------------------------
def _log_to_dict(model: "NotificationLogModel") -> Dict[str, Any]:
    return {
        "id": model.id,
        "recipientId": model.student_code,
        "recipientName": model.student_name,
        "kind": model.kind,
        "timestamp": model.timestamp,
        "outcome": model.outcome,
        "reason": model.reason,
        "detail": model.detail,
        "attempts": int(model.attempts or 0),
    }


def utc_today() -> str:
    """ISO day on the same clock as ``DeliveryRecord.timestamp``."""
    return datetime.utcnow().date().isoformat()


def load_notification_logs(limit: int | None = None) -> List[Dict[str, Any]]:
    """Newest first."""
    if not DB_ENABLED or SessionLocal is None:
        logs = load_json(NOTIFICATION_LOG_FILE, [])
        return logs[:limit] if limit else logs
    with SessionLocal() as db:
        query = db.query(NotificationLogModel).order_by(NotificationLogModel.created_at.desc())
        if limit:
            query = query.limit(limit)
        return [_log_to_dict(row) for row in query.all()]


def append_notification_logs(records: Iterable[DeliveryRecord]) -> int:
    """Store Absent/Late alert records; anything else is not an alert."""
    entries = []
    for record in records:
        if record.kind not in ALERT_STATUSES:
            LOGGER.debug("Not logging %s record for %s", record.kind, record.recipient_id)
            continue
        entries.append(record.to_dict())
    if not entries:
        return 0

    if not DB_ENABLED or SessionLocal is None:
        with with_json_lock(NOTIFICATION_LOG_FILE):
            try:
                logs = _read_json(NOTIFICATION_LOG_FILE)
            except (FileNotFoundError, json.JSONDecodeError):
                logs = []
            logs = list(reversed(entries)) + list(logs if isinstance(logs, list) else [])
            _write_json(NOTIFICATION_LOG_FILE, logs[:MAX_HISTORY])
        return len(entries)

    with SessionLocal.begin() as db:
        now = datetime.utcnow()
        for offset, entry in enumerate(entries):
            db.add(
                NotificationLogModel(
                    id=entry["id"],
                    student_code=entry["recipientId"],
                    student_name=entry["recipientName"],
                    kind=entry["kind"],
                    timestamp=entry["timestamp"],
                    outcome=entry["outcome"],
                    reason=entry["reason"],
                    detail=entry["detail"],
                    attempts=entry["attempts"],
                    created_at=now + timedelta(microseconds=offset),
                )
            )
    return len(entries)

# ------------------------------- Push settings -------------------------------
def load_settings():          return load_json(SETTINGS_FILE, {})
def save_settings(s):         save_json(SETTINGS_FILE, s)


def load_push_settings() -> Dict[str, Any]:
    settings_all = load_settings()
    push = settings_all.get("push") if isinstance(settings_all, dict) else None
    return dict(push) if isinstance(push, dict) else {}


def save_push_settings(credential: str | None, project_id: str | None) -> Dict[str, Any]:
    settings_all = load_settings()
    if not isinstance(settings_all, dict):
        settings_all = {}
    push = {
        "credential": (credential or "").strip(),
        "project_id": (project_id or "").strip(),
        "updated_at": datetime.utcnow().isoformat(timespec="seconds"),
    }
    settings_all["push"] = push
    save_settings(settings_all)
    return push


def build_dispatch_settings() -> DispatchSettings:
    stored = load_push_settings()
    return DispatchSettings.from_env(
        overrides={"credential": stored.get("credential"), "project_id": stored.get("project_id")}
    )


def mask_credential(secret: str | None) -> str:
    secret = (secret or "").strip()
    if not secret:
        return ""
    if len(secret) <= 8:
        return "*" * len(secret)
    return f"{secret[:4]}...{secret[-4:]}"

# ------------------------------- Users -------------------------------
def _user_to_dict(model: "UserModel") -> Dict[str, Any]:
    return {
        "username": model.username,
        "display_name": model.display_name,
        "password": model.password_hash,
        "role": (model.role or "staff"),
    }


def load_users() -> List[Dict[str, Any]]:
    if not DB_ENABLED or SessionLocal is None:
        return load_json(USERS_FILE, [])
    with SessionLocal() as db:
        rows = db.query(UserModel).order_by(UserModel.username).all()
        return [_user_to_dict(row) for row in rows]


def add_user(record: Dict[str, Any]) -> None:
    if not DB_ENABLED or SessionLocal is None:
        users = load_json(USERS_FILE, [])
        users.append(record)
        save_json(USERS_FILE, users)
        return
    with SessionLocal.begin() as db:
        db.add(
            UserModel(
                username=record["username"],
                display_name=record.get("display_name"),
                password_hash=record.get("password"),
                role=record.get("role", "staff"),
            )
        )


def find_user_record(username: str | None):
    if not username:
        return None
    uname = _norm(username)
    if not uname:
        return None

    if DB_ENABLED and SessionLocal is not None:
        with SessionLocal() as db:
            record = db.get(UserModel, uname)
            if record:
                return _user_to_dict(record)
            return None

    for record in load_json(USERS_FILE, []):
        if _norm(record.get("username")) == uname:
            return record
    return None


@login_manager.user_loader
def load_logged_in_user(user_id: str):
    record = find_user_record(user_id)
    if record:
        return AppUser.from_record(record)
    return None


DEMO_STUDENTS = [
    {"studentCode": "S1001", "studentName": "Ahmed Ali", "grade": "1", "className": "1",
     "parentName": "Mohamed Ali", "parentPhone": "+971500000001", "fcmToken": "token_ahmed_123"},
    {"studentCode": "S1002", "studentName": "Sara Khan", "grade": "1", "className": "1",
     "parentName": "Yusuf Khan", "parentPhone": "+971500000002", "fcmToken": "token_sara_456"},
    {"studentCode": "S1003", "studentName": "John Doe", "grade": "1", "className": "2",
     "parentName": "Jane Doe", "parentPhone": "+971500000003", "fcmToken": ""},
    {"studentCode": "S1101", "studentName": "Fatima Omar", "grade": "2", "className": "1",
     "parentName": "Omar Hassan", "parentPhone": "+971500000004", "fcmToken": "token_fatima_101"},
]


def seed_demo_data():
    if not DEMO:
        return
    if load_users() or load_students():
        return

    admin_pw_source = os.getenv("DEMO_ADMIN_PASSWORD") or secrets.token_urlsafe(24)
    add_user({
        "username": "demo_admin",
        "display_name": "Demo Admin",
        "password": generate_password_hash(admin_pw_source),
        "role": "admin",
    })
    save_students(DEMO_STUDENTS)


seed_demo_data()


@app.get("/robots.txt")
def robots():
    return "User-agent: *\nDisallow: /\n", 200, {"Content-Type": "text/plain"}

@app.get("/healthz")
def healthz():
    return {"ok": True, "mode": APP_MODE}, 200


@app.get("/api/csrf")
def csrf():
    return jsonify({"csrf_token": csrf_token()})

# ------------------------------- Auth -------------------------------
def _form_or_json() -> Dict[str, Any]:
    if request.is_json:
        return request.get_json(silent=True) or {}
    return request.form.to_dict()


@app.route("/signup", methods=["POST"])
@demo_guard
def signup():
    data = _form_or_json()
    raw = str(data.get("username") or "").strip()
    password = str(data.get("password") or "")
    uname = raw.lower()
    if not uname or not password:
        return jsonify({"error": "Username and password are required."}), 400
    users = load_users()
    if any(u["username"] == uname for u in users):
        return jsonify({"error": "Username already exists."}), 409
    role = "admin" if not users else "staff"
    add_user({
        "username": uname,
        "display_name": raw.title(),
        "password": generate_password_hash(password),
        "role": role,
    })
    return jsonify({"ok": True, "username": uname, "role": role}), 201

@app.route("/login", methods=["POST"])
def login():
    data = _form_or_json()
    uname = str(data.get("username") or "").strip().lower()
    pwd = str(data.get("password") or "")
    record = find_user_record(uname)
    if record and check_password_hash(record["password"], pwd):
        login_user(AppUser.from_record(record))
        return jsonify({"ok": True, "username": record["username"], "role": record.get("role", "staff")})
    return jsonify({"error": "Invalid credentials."}), 401

@app.route("/logout", methods=["POST"])
@login_required
def logout():
    logout_user()
    session.clear()
    return jsonify({"ok": True})

# ------------------------------- Students -------------------------------
@app.route("/api/students")
@login_required
def students_index():
    grade = request.args.get("grade")
    class_name = request.args.get("class_name")
    students = load_students()
    if grade:
        students = [s for s in students if s["grade"] == grade]
    if class_name:
        students = [s for s in students if s["className"] == class_name]
    return jsonify(students)


@app.route("/api/students/eligible")
@login_required
def students_eligible():
    eligible = [r for r in load_students() if Recipient.from_record(r).is_eligible]
    return jsonify(eligible)


@app.route("/api/students/<code>/status", methods=["POST"])
@login_required
@demo_guard
def student_status(code):
    payload = request.get_json(silent=True) or {}
    status = str(payload.get("status") or "").strip().title()
    try:
        record = update_student_status(code, status)
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    if record is None:
        return jsonify({"error": "Student not found"}), 404
    if status in ALERT_STATUSES and len((record.get("fcmToken") or "").strip()) < build_dispatch_settings().min_address_length:
        record = dict(record, needsDeviceAddress=True)
    return jsonify(record)


@app.route("/api/students/<code>/token", methods=["POST"])
@login_required
@demo_guard
def student_token(code):
    payload = request.get_json(silent=True) or {}
    token = str(payload.get("token") or "").strip()
    if not token:
        return jsonify({"error": "Missing token"}), 400
    record = update_student_token(code, token)
    if record is None:
        return jsonify({"error": "Student not found"}), 404
    return jsonify(record)

# ------------------------------- Notifications -------------------------------
@app.route("/api/notifications/send", methods=["POST"])
@login_required
@demo_guard
def send_notifications():
    from celery_app import celery_app  # noqa: F401  configures the default app
    from notifications.tasks import dispatch_pending_alerts, run_alert_batch

    payload = request.get_json(silent=True) or {}
    codes = payload.get("student_codes")
    if codes is not None and (not isinstance(codes, list) or not all(isinstance(c, str) for c in codes)):
        return jsonify({"error": "student_codes must be a list of strings"}), 400

    if payload.get("background"):
        result = dispatch_pending_alerts.delay(codes)
        return jsonify({"queued": True, "task_id": result.id}), 202

    try:
        report = run_alert_batch(codes)
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    body = report.to_dict()
    body["summary"] = summarize_report(report)
    return jsonify(body)


@app.route("/api/notifications/history")
@login_required
def notification_history():
    try:
        limit = max(1, min(MAX_HISTORY, int(request.args.get("limit", 100))))
    except (TypeError, ValueError):
        return jsonify({"error": "Invalid limit"}), 400
    return jsonify(load_notification_logs(limit))


@app.route("/api/dashboard")
@login_required
def dashboard():
    students = load_students()
    counts = {status: 0 for status in sorted(VALID_STATUSES)}
    for record in students:
        counts[record["status"]] = counts.get(record["status"], 0) + 1

    today = utc_today()
    sent_today = failed_today = 0
    for entry in load_notification_logs():
        if not str(entry.get("timestamp", "")).startswith(today):
            continue
        if entry.get("outcome") == "Sent":
            sent_today += 1
        else:
            failed_today += 1

    return jsonify({
        "total": len(students),
        "attendance": counts,
        "eligible": sum(1 for r in students if Recipient.from_record(r).is_eligible),
        "notifications_today": {"sent": sent_today, "failed": failed_today},
    })

# ------------------------------- Settings -------------------------------
@app.route("/api/settings/push", methods=["GET", "POST"])
@admin_required
@demo_guard
def push_settings():
    if request.method == "POST":
        payload = request.get_json(silent=True) or {}
        credential = payload.get("credential")
        project_id = payload.get("project_id")
        if any(v is not None and not isinstance(v, str) for v in (credential, project_id)):
            return jsonify({"error": "credential and project_id must be strings"}), 400
        stored = save_push_settings(credential, project_id)
        LOGGER.info("Push settings updated by %s", current_username())
    else:
        stored = load_push_settings()

    try:
        dispatch_settings = build_dispatch_settings()
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400

    return jsonify({
        "credential": mask_credential(stored.get("credential")),
        "project_id": stored.get("project_id") or "",
        "dialect": resolve_dialect(dispatch_settings.credential).dialect.value,
        "relays": [relay.name for relay in dispatch_settings.relays],
    })


# ------------- Run -------------
if __name__ == "__main__":
    app.run(debug=DEBUG)
