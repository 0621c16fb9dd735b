"""
Migration script to add the students-needing-help tables and student_stats.
Run this after pulling the new code: python migrate/migrate_add_help_records.py
"""
import sqlite3
import os

DB_PATH = os.path.abspath(os.environ.get("CLASSVOTE_DB", "classvote.db"))

TABLES = {
    "student_stats": """
        CREATE TABLE student_stats (
            student_id INTEGER PRIMARY KEY REFERENCES students(id) ON DELETE CASCADE,
            total_assignments INTEGER NOT NULL DEFAULT 0,
            completed_assignments INTEGER NOT NULL DEFAULT 0,
            total_answers INTEGER NOT NULL DEFAULT 0,
            total_correct_answers INTEGER NOT NULL DEFAULT 0,
            completion_rate FLOAT NOT NULL DEFAULT 0,
            accuracy_rate FLOAT NOT NULL DEFAULT 0,
            average_score FLOAT NOT NULL DEFAULT 0,
            last_activity_at DATETIME,
            last_updated DATETIME NOT NULL
        )""",
    "students_needing_help": """
        CREATE TABLE students_needing_help (
            id INTEGER PRIMARY KEY,
            student_id INTEGER NOT NULL REFERENCES students(id) ON DELETE CASCADE,
            reasons TEXT NOT NULL,
            needs_help_since DATETIME NOT NULL,
            days_needing_help INTEGER NOT NULL DEFAULT 1,
            overdue_assignments INTEGER NOT NULL DEFAULT 0,
            average_score FLOAT NOT NULL DEFAULT 0,
            completion_rate FLOAT NOT NULL DEFAULT 0,
            severity VARCHAR(16) NOT NULL DEFAULT 'RECENT',
            is_resolved BOOLEAN NOT NULL DEFAULT 0,
            resolved_at DATETIME,
            teacher_notes TEXT,
            actions_taken TEXT,
            created_at DATETIME NOT NULL,
            updated_at DATETIME NOT NULL
        )""",
    "students_needing_help_classes": """
        CREATE TABLE students_needing_help_classes (
            help_record_id INTEGER NOT NULL REFERENCES students_needing_help(id) ON DELETE CASCADE,
            class_id INTEGER NOT NULL REFERENCES classes(id) ON DELETE CASCADE,
            PRIMARY KEY (help_record_id, class_id)
        )""",
    "students_needing_help_teachers": """
        CREATE TABLE students_needing_help_teachers (
            help_record_id INTEGER NOT NULL REFERENCES students_needing_help(id) ON DELETE CASCADE,
            teacher_user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            PRIMARY KEY (help_record_id, teacher_user_id)
        )""",
}

INDEXES = {
    "ix_students_needing_help_student_id":
        "CREATE INDEX ix_students_needing_help_student_id ON students_needing_help (student_id)",
    "uq_help_student_unresolved":
        "CREATE UNIQUE INDEX uq_help_student_unresolved ON students_needing_help (student_id) WHERE is_resolved = 0",
}

def migrate():
    print(f"Migrating database: {DB_PATH}")

    conn = sqlite3.connect(DB_PATH)
    cursor = conn.cursor()

    cursor.execute("SELECT name FROM sqlite_master WHERE type='table'")
    tables = {row[0] for row in cursor.fetchall()}
    cursor.execute("SELECT name FROM sqlite_master WHERE type='index'")
    indexes = {row[0] for row in cursor.fetchall()}

    migrations = [sql for name, sql in TABLES.items() if name not in tables]
    migrations += [sql for name, sql in INDEXES.items() if name not in indexes]

    if not migrations:
        print("✓ Database already up to date!")
        conn.close()
        return

    print(f"Applying {len(migrations)} migration(s)...")

    for sql in migrations:
        print(f"  - {' '.join(sql.split())[:80]}")
        cursor.execute(sql)

    conn.commit()
    conn.close()

    print("✓ Migration complete!")

if __name__ == "__main__":
    migrate()
