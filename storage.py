# storage.py
import sqlite3

from models import Job, utcnow

DEFAULT_DB_PATH = "mini-hpc.db"

JOB_COLUMNS = (
    "id", "name", "command", "status", "cpu", "memory", "image", "log",
    "timeout_seconds", "exit_code", "error",
    "created_at", "updated_at", "started_at", "finished_at",
)

# Columns added after the first schema; older databases get them via ALTER TABLE
_LATER_COLUMNS = {
    "timeout_seconds": "INTEGER",
    "exit_code": "INTEGER",
    "error": "TEXT",
    "created_at": "TEXT",
    "updated_at": "TEXT",
    "started_at": "TEXT",
    "finished_at": "TEXT",
}


class JobNotFoundError(LookupError):
    pass


class Storage:
    def __init__(self, db_path=DEFAULT_DB_PATH):
        self.db_path = db_path
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row

        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")

        self._init_schema()

    def _init_schema(self):
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS jobs (
            id TEXT PRIMARY KEY,
            name TEXT,
            command TEXT,
            status TEXT,
            cpu INTEGER,
            memory INTEGER,
            image TEXT,
            log TEXT
        )
        """)
        existing = {row["name"] for row in self.conn.execute("PRAGMA table_info(jobs)")}
        for column, col_type in _LATER_COLUMNS.items():
            if column not in existing:
                self.conn.execute(f"ALTER TABLE jobs ADD COLUMN {column} {col_type}")

        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS config (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """)

        self.conn.commit()

    def close(self):
        self.conn.close()

    # ---------------- Jobs ----------------
    @staticmethod
    def _row_to_job(row):
        data = {col: row[col] for col in JOB_COLUMNS}
        data["log"] = data["log"] or ""
        # rows written by the first schema have no timestamps
        data["created_at"] = data["created_at"] or ""
        data["updated_at"] = data["updated_at"] or ""
        return Job(**data)

    def insert_job(self, job):
        """Durably create ``job``; raises sqlite3.IntegrityError on a duplicate ID."""
        placeholders = ", ".join("?" for _ in JOB_COLUMNS)
        with self.conn:
            self.conn.execute(
                f"INSERT INTO jobs ({', '.join(JOB_COLUMNS)}) VALUES ({placeholders})",
                tuple(getattr(job, col) for col in JOB_COLUMNS),
            )

    def update_job(self, job):
        """Overwrite the whole record keyed by ``job.id``."""
        job.updated_at = utcnow()
        columns = [col for col in JOB_COLUMNS if col != "id"]
        assignments = ", ".join(f"{col}=?" for col in columns)
        with self.conn:
            updated = self.conn.execute(
                f"UPDATE jobs SET {assignments} WHERE id=?",
                (*(getattr(job, col) for col in columns), job.id),
            ).rowcount
        if updated != 1:
            raise JobNotFoundError(f"job {job.id} does not exist")

    def load_all(self):
        cur = self.conn.execute(f"SELECT {', '.join(JOB_COLUMNS)} FROM jobs ORDER BY rowid")
        return [self._row_to_job(row) for row in cur.fetchall()]

    def get_job(self, job_id):
        cur = self.conn.execute(f"SELECT {', '.join(JOB_COLUMNS)} FROM jobs WHERE id=?", (job_id,))
        row = cur.fetchone()
        return self._row_to_job(row) if row else None

    def list_jobs(self, status=None, limit=None, newest_first=False):
        sql = f"SELECT {', '.join(JOB_COLUMNS)} FROM jobs"
        params = []
        if status:
            sql += " WHERE status=?"
            params.append(status)
        sql += " ORDER BY rowid DESC" if newest_first else " ORDER BY rowid"
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        return [self._row_to_job(row) for row in self.conn.execute(sql, params).fetchall()]

    def count_by_status(self):
        cur = self.conn.execute("SELECT status, COUNT(*) AS count FROM jobs GROUP BY status")
        return {row["status"]: row["count"] for row in cur.fetchall()}

    # ---------------- Config helpers ----------------
    def get_config(self, key, default=None):
        row = self.conn.execute("SELECT value FROM config WHERE key=?", (key,)).fetchone()
        return row["value"] if row is not None else default

    def set_config(self, key, value):
        with self.conn:
            self.conn.execute(
                "INSERT INTO config (key, value, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at",
                (key, str(value), utcnow()),
            )

    def list_config(self):
        cur = self.conn.execute("SELECT key, value, updated_at FROM config ORDER BY key")
        return [dict(row) for row in cur.fetchall()]
