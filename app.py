import os, secrets, argparse, functools, hmac, hashlib, logging
from datetime import timedelta
from logging.handlers import RotatingFileHandler
from flask import (
    Flask, Blueprint, current_app, request, session, jsonify, abort,
)
from werkzeug.exceptions import HTTPException
from dotenv import load_dotenv

from models import db, Student, User, Question, StudentHelpRecord, utcnow
from help_store import HelpStore
from help_reconciler import HelpReconciler, HelpPolicy, BatchAlreadyRunning
from help_queries import (
    list_unresolved, summarize, count_unresolved, student_help_detail,
    teacher_can_view, teacher_can_view_student, update_notes,
)
from submissions import record_answer
from task_supervisor import TaskSupervisor, UnknownTask

load_dotenv()

logger = logging.getLogger(__name__)

# --------------------------------------------------------------------
# Config
# --------------------------------------------------------------------
APP_SECRET = os.environ.get("APP_SECRET") or secrets.token_hex(32)
DB_PATH = os.path.abspath(os.environ.get("CLASSVOTE_DB", "classvote.db"))
DB_URI  = os.environ.get("DATABASE_URL") or f"sqlite:///{DB_PATH}"
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.environ.get("LOG_FILE")  # optional rotating log file

HELP_SCHEDULER_ENABLED = os.environ.get("HELP_SCHEDULER_ENABLED", "0") == "1"
HELP_JOB_INTERVAL_MINUTES = int(os.environ.get("HELP_JOB_INTERVAL_MINUTES", "60"))
HELP_RESOLUTION_MODE = os.environ.get("HELP_RESOLUTION_MODE", "resolve")
HELP_SEVERITY_POLICY = os.environ.get("HELP_SEVERITY_POLICY", "elapsed")
HELP_MAX_WORKERS = int(os.environ.get("HELP_MAX_WORKERS", "1"))
HELP_REFRESH_STATS = os.environ.get("HELP_REFRESH_STATS", "1")

HELP_TASK_KEY = "students-needing-help"

def configure_logging(level=LOG_LEVEL, log_file=LOG_FILE):
    handlers = [logging.StreamHandler()]
    if log_file:
        fh = RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8")
        fh.setLevel(level)
        handlers.append(fh)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
    )
    logging.getLogger("werkzeug").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)

def run_help_job(app):
    """Scheduled entry point: run the batch and log the outcome."""
    with app.app_context():
        reconciler = app.extensions["help_reconciler"]
        try:
            summary = reconciler.run_batch()
        except BatchAlreadyRunning:
            logger.warning("Skipping scheduled help analysis, previous run still active")
            return None
        except Exception:
            logger.exception("Scheduled students needing help analysis failed")
            return None
        for err in summary.errors:
            logger.error("Help analysis error: %s", err)
        return summary

def create_app(db_path=DB_URI, start_scheduler=None):
    app = Flask(__name__)
    app.config["SECRET_KEY"] = APP_SECRET
    app.config["SQLALCHEMY_DATABASE_URI"] = db_path
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(days=30)
    app.config["SESSION_COOKIE_NAME"] = "classvote_session"
    app.config["SESSION_COOKIE_SAMESITE"] = "Lax"
    app.config["HELP_JOB_INTERVAL_MINUTES"] = HELP_JOB_INTERVAL_MINUTES
    app.config["HELP_RESOLUTION_MODE"] = HELP_RESOLUTION_MODE
    app.config["HELP_SEVERITY_POLICY"] = HELP_SEVERITY_POLICY
    app.config["HELP_MAX_WORKERS"] = HELP_MAX_WORKERS
    app.config["HELP_REFRESH_STATS"] = HELP_REFRESH_STATS
    db.init_app(app)
    with app.app_context():
        db.create_all()

    app.extensions["help_reconciler"] = HelpReconciler(policy=HelpPolicy.from_config(app.config), app=app)

    supervisor = TaskSupervisor()
    supervisor.register(HELP_TASK_KEY, "Students Needing Help Analysis",
                        functools.partial(run_help_job, app),
                        minutes=app.config["HELP_JOB_INTERVAL_MINUTES"])
    app.extensions["task_supervisor"] = supervisor
    if start_scheduler is None:
        start_scheduler = HELP_SCHEDULER_ENABLED
    if start_scheduler:
        supervisor.start_all()
        supervisor.install_shutdown_hook()

    app.register_blueprint(api)
    app.register_error_handler(HTTPException, _http_error_json)
    return app

def _http_error_json(exc):
    return jsonify({"ok": False, "error": exc.description or exc.name}), exc.code

api = Blueprint("api", __name__)

# --------------------------------------------------------------------
# CSRF helpers (JSON header)
# --------------------------------------------------------------------
def _csrf_key():
    if "csrf_key" not in session:
        session["csrf_key"] = secrets.token_hex(16)
    return session["csrf_key"]

def csrf_token():
    secret = current_app.config["SECRET_KEY"].encode()
    key = _csrf_key().encode()
    return hmac.new(secret, key, hashlib.sha256).hexdigest()

def verify_csrf(header="X-CSRF"):
    sent = request.headers.get(header, "")
    return hmac.compare_digest(sent, csrf_token())

# --------------------------------------------------------------------
# Auth/session helpers
# --------------------------------------------------------------------
def current_user():
    uid = session.get("user_id")
    return db.session.get(User, uid) if uid else None

def current_student():
    sid = session.get("student_id")
    return HelpStore().get_student(sid) if sid else None

def logout_everyone():
    session.pop("user_id", None)
    session.pop("user_role", None)
    session.pop("student_id", None)
    session.pop("student_name", None)

def require_user(role=None):
    def deco(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            u = current_user()
            if not u:
                abort(401)
            if role and u.role != role:
                abort(403)
            return fn(*args, **kwargs)
        return wrapper
    return deco

def require_student():
    def deco(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            if not current_student():
                abort(401)
            return fn(*args, **kwargs)
        return wrapper
    return deco

def require_csrf():
    if not verify_csrf():
        abort(400, "bad csrf")

# --------------------------------------------------------------------
# Login / Logout
# --------------------------------------------------------------------
@api.route("/api/session")
def session_info():
    u = current_user()
    s = current_student()
    who = None
    if u:
        who = {"kind": "user", "id": u.id, "name": u.name, "role": u.role}
    elif s:
        who = {"kind": "student", "id": s.id, "name": s.name}
    return jsonify({"csrf": csrf_token(), "account": who})

@api.route("/login", methods=["POST"])
def login():
    require_csrf()
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    pw    = data.get("password") or ""

    acct_user = User.query.filter_by(email=email).first()
    acct_student = None if acct_user else Student.query.filter_by(email=email).first()

    if acct_user:
        if not acct_user.check_password(pw):
            abort(401, "Invalid credentials")
        logout_everyone()
        session["user_id"] = acct_user.id
        session["user_role"] = acct_user.role
        acct_user.last_login = utcnow()
        db.session.commit()
        return jsonify({"ok": True, "kind": "user", "role": acct_user.role})
    if acct_student:
        if not acct_student.check_password(pw):
            abort(401, "Invalid credentials")
        logout_everyone()
        session["student_id"] = acct_student.id
        session["student_name"] = acct_student.name
        acct_student.last_login = utcnow()
        db.session.commit()
        return jsonify({"ok": True, "kind": "student"})
    abort(404, "Account not found")

@api.route("/logout", methods=["POST"])
def logout():
    logout_everyone()
    return jsonify({"ok": True})

# --------------------------------------------------------------------
# Students needing help
# --------------------------------------------------------------------
@api.route("/api/students-needing-help")
@require_user()
def students_needing_help():
    items = list_unresolved(current_user())
    return jsonify({"students": items, "summary": summarize(items)})

@api.route("/api/students-needing-help/count")
@require_user()
def students_needing_help_count():
    return jsonify({"count": count_unresolved()})

@api.route("/api/students-needing-help/<int:record_id>/notes", methods=["PATCH"])
@require_user()
def students_needing_help_notes(record_id):
    require_csrf()
    record = db.session.get(StudentHelpRecord, record_id)
    if record is None:
        abort(404)
    if not teacher_can_view(current_user(), record):
        abort(403)
    data = request.get_json(silent=True) or {}
    actions = data.get("actionsTaken")
    if actions is not None and not isinstance(actions, list):
        abort(400, "actionsTaken must be a list")
    update_notes(record, teacher_notes=data.get("teacherNotes"), actions_taken=actions)
    db.session.commit()
    return jsonify({"ok": True, "record": record.to_dict()})

@api.route("/api/students-needing-help/run", methods=["POST"])
@require_user(role="admin")
def students_needing_help_run():
    require_csrf()
    reconciler = current_app.extensions["help_reconciler"]
    try:
        summary = reconciler.run_batch()
    except BatchAlreadyRunning as e:
        return jsonify({"ok": False, "error": str(e)}), 409
    except Exception as e:
        logger.exception("Manual students needing help analysis failed")
        return jsonify({"ok": False, "error": str(e)}), 500
    return jsonify({"ok": True, "summary": summary.to_dict()})

@api.route("/api/students/<int:student_id>/help")
@require_user()
def student_help(student_id):
    u = current_user()
    student = HelpStore().get_student(student_id)
    if student is None:
        abort(404)
    if not teacher_can_view_student(u, student.id):
        abort(403)
    return jsonify(student_help_detail(student))

# --------------------------------------------------------------------
# Answer submission
# --------------------------------------------------------------------
@api.route("/api/questions/<int:question_id>/answer", methods=["POST"])
@require_student()
def answer_question(question_id):
    require_csrf()
    student = current_student()
    question = db.session.get(Question, question_id)
    if question is None:
        abort(404)
    store = HelpStore()
    if question.assignment_id not in {a.id for a in store.assignments_for_student(student.id)}:
        abort(403)
    data = request.get_json(silent=True) or {}
    if "isCorrect" not in data:
        abort(400, "isCorrect is required")
    reconciler = current_app.extensions["help_reconciler"]
    progress, result = record_answer(store, reconciler, student.id, question, bool(data["isCorrect"]))
    db.session.commit()
    return jsonify({"ok": True, "attempts": progress.attempts, "helpStatus": result.to_dict()})

# --------------------------------------------------------------------
# Scheduled tasks
# --------------------------------------------------------------------
@api.route("/api/tasks")
@require_user(role="admin")
def tasks_health():
    return jsonify(current_app.extensions["task_supervisor"].health())

@api.route("/api/tasks/<key>/<action>", methods=["POST"])
@require_user(role="admin")
def tasks_control(key, action):
    require_csrf()
    supervisor = current_app.extensions["task_supervisor"]
    ops = {"start": supervisor.start, "stop": supervisor.stop, "restart": supervisor.restart}
    if action not in ops:
        abort(404)
    try:
        changed = ops[action](key)
    except UnknownTask:
        abort(404, f"Task {key} not found")
    return jsonify({"ok": True, "changed": bool(changed), "tasks": supervisor.status()})

# Scheduler only runs from main(); importers (manage.py, scripts) never start it.
app = create_app(start_scheduler=False)

# --------------------------------------------------------------------
# Dev entry
# --------------------------------------------------------------------
def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=5000)
    parser.add_argument("--scheduler", action="store_true", help="run the help analysis job in-process")
    args = parser.parse_args()
    configure_logging()
    if args.scheduler or HELP_SCHEDULER_ENABLED:
        supervisor = app.extensions["task_supervisor"]
        supervisor.start_all()
        supervisor.install_shutdown_hook()
    app.run(host=args.host, port=args.port)

if __name__ == "__main__":
    main()
