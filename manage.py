import argparse, json, secrets, string, sys
from app import create_app, configure_logging
from models import db, User, Student
from help_store import HelpStore
from help_reconciler import BatchAlreadyRunning
from student_stats import refresh_all_stats

def rand_password(n=10):
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(n))

def _load(json_path):
    with open(json_path, "r", encoding="utf-8") as f:
        return json.load(f)

def seed_students(app, json_path):
    with app.app_context():
        out = []
        for it in _load(json_path):
            name = it["name"].strip()
            email = it["email"].strip().lower()
            pw = it.get("password") or rand_password()
            s = Student.query.filter_by(email=email).first()
            if not s:
                s = Student(name=name, email=email)
                db.session.add(s)
                action = "created"
            else:
                s.name = name
                action = "updated"
            s.set_password(pw)
            out.append({"email": email, "password": pw, "action": action})
        db.session.commit()
        print("Seeded/updated:", len(out))
        for r in out:
            print(f"{r['email']}: {r['password']} ({r['action']})")

def seed_users(app, json_path):
    """
    JSON: [{"name":"Prof X","email":"x@school.edu","role":"teacher|admin","password":"..."}]
    If password omitted, one is generated.
    """
    with app.app_context():
        out = []
        for it in _load(json_path):
            name = it["name"].strip()
            email = it["email"].strip().lower()
            role = (it.get("role") or "teacher").strip().lower()
            if role not in ("teacher", "admin"):
                raise SystemExit(f"unknown role {role!r} for {email}")
            pw = it.get("password") or rand_password()
            u = User.query.filter_by(email=email).first()
            if not u:
                u = User(name=name, email=email, role=role)
                db.session.add(u)
                action = "created"
            else:
                u.name = name
                u.role = role
                action = "updated"
            u.set_password(pw)
            out.append({"email": email, "password": pw, "role": role, "action": action})
        db.session.commit()
        print("Seeded/updated:", len(out))
        for r in out:
            print(f"{r['email']} ({r['role']}): {r['password']} ({r['action']})")

def analyze_help(app):
    """Run the students-needing-help analysis once and print the summary."""
    with app.app_context():
        try:
            summary = app.extensions["help_reconciler"].run_batch()
        except BatchAlreadyRunning as e:
            print(f"Skipped: {e}")
            return 1
        print(f"Processed {summary.students_processed}/{summary.total_students} students, "
              f"{summary.currently_needing_help} currently need help")
        for err in summary.errors:
            print(f"  error: {err}")
        return 1 if summary.errors else 0

def refresh_stats(app):
    with app.app_context():
        refreshed, errors = refresh_all_stats(HelpStore())
        print(f"Refreshed stats for {refreshed} students")
        for err in errors:
            print(f"  error: {err}")
        return 1 if errors else 0

if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("cmd", choices=["seed-students", "seed-users", "analyze-help", "refresh-stats"])
    parser.add_argument("json_path", nargs="?")
    args = parser.parse_args()

    configure_logging()
    app = create_app(start_scheduler=False)
    if args.cmd in ("seed-students", "seed-users") and not args.json_path:
        parser.error(f"{args.cmd} needs a json_path")
    if args.cmd == "seed-students":
        seed_students(app, args.json_path)
    elif args.cmd == "seed-users":
        seed_users(app, args.json_path)
    elif args.cmd == "analyze-help":
        sys.exit(analyze_help(app))
    else:
        sys.exit(refresh_stats(app))
