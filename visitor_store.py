"""
Visitor Store for the Visitor Gate System
=========================================

SQLite persistence for registered visitors and their entry/exit logs.
Provides the candidate pools the matching engine scans, the open-entry
lookup behind "is inside", and aggregate stats for the dashboard.
"""

import logging
import math
import pickle
import sqlite3
import time
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from threading import Lock
from typing import Dict, List, Optional

import numpy as np

from matching import VisitorRecord

logger = logging.getLogger(__name__)

ENTRY_METHODS = ("qr", "face", "fingerprint", "manual")

_VISITOR_COLUMNS = """
    visitor_id, name, phone, email, purpose, person_to_meet, department, photo,
    qr_code, face_descriptor, thumbprint_template, thumbprint, status
"""

SCHEMA = """
    -- Registered visitors and their captured biometrics
    CREATE TABLE IF NOT EXISTS visitors (
        visitor_id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        phone TEXT DEFAULT '',
        email TEXT DEFAULT '',
        purpose TEXT DEFAULT '',
        person_to_meet TEXT DEFAULT '',
        department TEXT DEFAULT '',
        photo TEXT DEFAULT '',
        qr_code TEXT UNIQUE,
        face_descriptor BLOB,
        thumbprint_template BLOB,
        thumbprint TEXT DEFAULT '',
        status TEXT NOT NULL DEFAULT 'pending'
            CHECK(status IN ('pending', 'approved', 'rejected', 'checked-in', 'checked-out')),
        check_in_time REAL,
        check_out_time REAL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    -- One row per visit; exit_time stays NULL while the visitor is inside
    CREATE TABLE IF NOT EXISTS entry_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        visitor_id TEXT NOT NULL,
        visitor_name TEXT NOT NULL,
        visitor_phone TEXT,
        entry_time REAL NOT NULL,
        exit_time REAL,
        entry_method TEXT NOT NULL DEFAULT 'qr',
        exit_method TEXT,
        purpose TEXT,
        person_to_meet TEXT,
        status TEXT NOT NULL DEFAULT 'inside' CHECK(status IN ('inside', 'exited')),
        approved_by TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (visitor_id) REFERENCES visitors(visitor_id)
    );

    CREATE INDEX IF NOT EXISTS idx_entry_logs_time ON entry_logs(entry_time);
    CREATE INDEX IF NOT EXISTS idx_entry_logs_visitor ON entry_logs(visitor_id);
    CREATE INDEX IF NOT EXISTS idx_entry_logs_status ON entry_logs(status);
    -- At most one open entry per visitor
    CREATE UNIQUE INDEX IF NOT EXISTS idx_entry_logs_open ON entry_logs(visitor_id) WHERE exit_time IS NULL;
"""


def _dump(values) -> Optional[bytes]:
    if not values:
        return None
    return pickle.dumps(list(values))


def _load(blob) -> list:
    if blob is None:
        return []
    return list(pickle.loads(blob))


def _row_to_visitor(row) -> VisitorRecord:
    (visitor_id, name, phone, email, purpose, person_to_meet, department, photo,
     qr_code, face_blob, template_blob, thumbprint, status) = row
    return VisitorRecord(
        id=visitor_id,
        name=name,
        phone=phone or "",
        email=email or "",
        purpose=purpose or "",
        person_to_meet=person_to_meet or "",
        department=department or "",
        photo=photo or "",
        qr_token=qr_code,
        face_descriptor=[float(v) for v in _load(face_blob)],
        fingerprint_template=_load(template_blob),
        fingerprint_image=thumbprint or "",
        status=status,
    )


def _log_to_dict(row) -> dict:
    (log_id, visitor_id, visitor_name, visitor_phone, entry_time, exit_time,
     entry_method, exit_method, purpose, person_to_meet, status, approved_by) = row
    return {
        "id": log_id,
        "visitorId": visitor_id,
        "visitorName": visitor_name,
        "visitorPhone": visitor_phone,
        "entryTime": datetime.fromtimestamp(entry_time).isoformat(),
        "exitTime": datetime.fromtimestamp(exit_time).isoformat() if exit_time else None,
        "entryMethod": entry_method,
        "exitMethod": exit_method,
        "purpose": purpose,
        "personToMeet": person_to_meet,
        "status": status,
        "approvedBy": approved_by,
    }


_LOG_COLUMNS = """
    id, visitor_id, visitor_name, visitor_phone, entry_time, exit_time,
    entry_method, exit_method, purpose, person_to_meet, status, approved_by
"""


class VisitorStore:
    """
    SQLite-backed visitor and entry log store.
    Each operation opens its own connection so the store can be shared across threads.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.lock = Lock()
        self._init_database()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _init_database(self):
        """Create tables if they don't exist."""
        conn = self._connect()
        try:
            conn.executescript(SCHEMA)
            conn.commit()
        finally:
            conn.close()
        logger.info(f"Visitor store ready at {self.db_path}")

    # ---------- visitors ----------

    def add_visitor(self, visitor: VisitorRecord) -> VisitorRecord:
        """Insert a visitor; an empty id gets a generated one."""
        if not visitor.id:
            visitor.id = uuid.uuid4().hex
        with self.lock:
            conn = self._connect()
            try:
                conn.execute(f"""
                    INSERT INTO visitors ({_VISITOR_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    visitor.id, visitor.name, visitor.phone, visitor.email, visitor.purpose,
                    visitor.person_to_meet, visitor.department, visitor.photo,
                    visitor.qr_token or None,
                    _dump(visitor.face_descriptor),
                    _dump(visitor.fingerprint_template),
                    visitor.fingerprint_image,
                    visitor.status,
                ))
                conn.commit()
            finally:
                conn.close()
        logger.info(f"Registered visitor {visitor.name} (ID: {visitor.id})")
        return visitor

    def _fetch_visitors(self, where: str = "", params: tuple = ()) -> List[VisitorRecord]:
        conn = self._connect()
        try:
            cursor = conn.execute(
                f"SELECT {_VISITOR_COLUMNS} FROM visitors {where} ORDER BY rowid",
                params,
            )
            return [_row_to_visitor(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def get_visitor(self, visitor_id: str) -> Optional[VisitorRecord]:
        rows = self._fetch_visitors("WHERE visitor_id = ?", (visitor_id,))
        return rows[0] if rows else None

    def find_by_qr(self, token: str) -> Optional[VisitorRecord]:
        if not token:
            return None
        rows = self._fetch_visitors("WHERE qr_code = ?", (token,))
        return rows[0] if rows else None

    def all_visitors(self) -> List[VisitorRecord]:
        return self._fetch_visitors()

    def candidates_with_face(self) -> List[VisitorRecord]:
        """Visitors with a captured face descriptor, in registration order."""
        return self._fetch_visitors("WHERE face_descriptor IS NOT NULL")

    def candidates_with_fingerprint(self) -> List[VisitorRecord]:
        """Visitors with a thumbprint template or image, in registration order."""
        return self._fetch_visitors(
            "WHERE thumbprint_template IS NOT NULL OR (thumbprint IS NOT NULL AND thumbprint != '')"
        )

    def set_status(self, visitor_id: str, status: str) -> bool:
        column = {"checked-in": "check_in_time", "checked-out": "check_out_time"}.get(status)
        with self.lock:
            conn = self._connect()
            try:
                if column:
                    cursor = conn.execute(
                        f"UPDATE visitors SET status = ?, {column} = ? WHERE visitor_id = ?",
                        (status, time.time(), visitor_id),
                    )
                else:
                    cursor = conn.execute(
                        "UPDATE visitors SET status = ? WHERE visitor_id = ?",
                        (status, visitor_id),
                    )
                conn.commit()
                return cursor.rowcount > 0
            finally:
                conn.close()

    def update_visitor(self, visitor_id: str, **fields) -> Optional[VisitorRecord]:
        """
        Overwrite profile fields of a visitor. Empty values keep the stored value.
        Returns the updated visitor, or None if it does not exist.
        """
        columns = {
            "name": "name", "email": "email", "phone": "phone", "purpose": "purpose",
            "department": "department", "person_to_meet": "person_to_meet",
            "photo": "photo", "status": "status",
        }
        unknown = set(fields) - set(columns)
        if unknown:
            raise ValueError(f"Unknown visitor fields: {sorted(unknown)}")
        changes = {columns[k]: v for k, v in fields.items() if v}
        with self.lock:
            conn = self._connect()
            try:
                if changes:
                    assignments = ", ".join(f"{column} = ?" for column in changes)
                    conn.execute(
                        f"UPDATE visitors SET {assignments} WHERE visitor_id = ?",
                        list(changes.values()) + [visitor_id],
                    )
                    conn.commit()
            finally:
                conn.close()
        return self.get_visitor(visitor_id)

    def delete_visitor(self, visitor_id: str) -> bool:
        """Remove a visitor. Entry logs are kept as history."""
        with self.lock:
            conn = self._connect()
            try:
                cursor = conn.execute("DELETE FROM visitors WHERE visitor_id = ?", (visitor_id,))
                conn.commit()
                deleted = cursor.rowcount > 0
            finally:
                conn.close()
        if deleted:
            logger.info(f"Removed visitor {visitor_id}")
        return deleted

    def count_visitors(self) -> int:
        conn = self._connect()
        try:
            return conn.execute("SELECT COUNT(*) FROM visitors").fetchone()[0]
        finally:
            conn.close()

    # ---------- entry logs ----------

    def has_open_entry(self, visitor_id: str) -> bool:
        conn = self._connect()
        try:
            cursor = conn.execute(
                "SELECT 1 FROM entry_logs WHERE visitor_id = ? AND exit_time IS NULL LIMIT 1",
                (visitor_id,),
            )
            return cursor.fetchone() is not None
        finally:
            conn.close()

    def open_entry(self, visitor: VisitorRecord, method: str = "qr",
                   approved_by: Optional[str] = None, timestamp: Optional[float] = None) -> Optional[int]:
        """
        Log an entry and mark the visitor checked in. Returns the log id,
        or None if the visitor already has an open entry.
        """
        if method not in ENTRY_METHODS:
            raise ValueError(f"Unknown entry method: {method}")
        now = timestamp if timestamp is not None else time.time()
        with self.lock:
            conn = self._connect()
            try:
                already_inside = conn.execute(
                    "SELECT 1 FROM entry_logs WHERE visitor_id = ? AND exit_time IS NULL LIMIT 1",
                    (visitor.id,),
                ).fetchone()
                if already_inside:
                    return None
                cursor = conn.execute("""
                    INSERT INTO entry_logs (visitor_id, visitor_name, visitor_phone, entry_time,
                                            entry_method, purpose, person_to_meet, status, approved_by)
                    VALUES (?, ?, ?, ?, ?, ?, ?, 'inside', ?)
                """, (visitor.id, visitor.name, visitor.phone, now, method,
                      visitor.purpose, visitor.person_to_meet, approved_by))
                conn.execute(
                    "UPDATE visitors SET status = 'checked-in', check_in_time = ? WHERE visitor_id = ?",
                    (now, visitor.id),
                )
                conn.commit()
                log_id = cursor.lastrowid
            except sqlite3.IntegrityError:
                # Another process opened an entry between the check and the insert
                conn.rollback()
                return None
            finally:
                conn.close()
        logger.info(f"Entry logged: {visitor.id} via {method} at {now}")
        return log_id

    def close_entry(self, visitor_id: str, method: str = "qr",
                    timestamp: Optional[float] = None) -> Optional[int]:
        """Close the open entry for a visitor. Returns the log id, or None if nobody was inside."""
        if method not in ENTRY_METHODS:
            raise ValueError(f"Unknown exit method: {method}")
        now = timestamp if timestamp is not None else time.time()
        with self.lock:
            conn = self._connect()
            try:
                row = conn.execute("""
                    SELECT id FROM entry_logs
                    WHERE visitor_id = ? AND exit_time IS NULL
                    ORDER BY entry_time DESC LIMIT 1
                """, (visitor_id,)).fetchone()
                if row is None:
                    return None
                log_id = row[0]
                conn.execute("""
                    UPDATE entry_logs SET exit_time = ?, exit_method = ?, status = 'exited'
                    WHERE id = ?
                """, (now, method, log_id))
                conn.execute(
                    "UPDATE visitors SET status = 'checked-out', check_out_time = ? WHERE visitor_id = ?",
                    (now, visitor_id),
                )
                conn.commit()
            finally:
                conn.close()
        logger.info(f"Exit logged: {visitor_id} via {method} at {now}")
        return log_id

    def get_log(self, log_id: int) -> Optional[dict]:
        conn = self._connect()
        try:
            row = conn.execute(f"SELECT {_LOG_COLUMNS} FROM entry_logs WHERE id = ?", (log_id,)).fetchone()
            return _log_to_dict(row) if row else None
        finally:
            conn.close()

    def list_logs(self, status: Optional[str] = None, date: Optional[str] = None,
                  page: int = 1, limit: int = 20) -> dict:
        """Paginated entry logs, newest first. `date` is YYYY-MM-DD in local time."""
        clauses, params = [], []
        if status:
            clauses.append("status = ?")
            params.append(status)
        if date:
            start = datetime.strptime(date, "%Y-%m-%d")
            end = start + timedelta(days=1)
            clauses.append("entry_time >= ? AND entry_time < ?")
            params.extend([start.timestamp(), end.timestamp()])
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        page = max(1, page)
        limit = max(1, limit)

        conn = self._connect()
        try:
            total = conn.execute(f"SELECT COUNT(*) FROM entry_logs {where}", params).fetchone()[0]
            rows = conn.execute(f"""
                SELECT {_LOG_COLUMNS} FROM entry_logs {where}
                ORDER BY entry_time DESC, id DESC
                LIMIT ? OFFSET ?
            """, params + [limit, (page - 1) * limit]).fetchall()
        finally:
            conn.close()

        return {
            "logs": [_log_to_dict(row) for row in rows],
            "totalPages": math.ceil(total / limit),
            "currentPage": page,
            "total": total,
        }

    def logs_for_visitor(self, visitor_id: str) -> List[dict]:
        conn = self._connect()
        try:
            rows = conn.execute(f"""
                SELECT {_LOG_COLUMNS} FROM entry_logs
                WHERE visitor_id = ?
                ORDER BY entry_time DESC, id DESC
            """, (visitor_id,)).fetchall()
            return [_log_to_dict(row) for row in rows]
        finally:
            conn.close()

    # ---------- stats ----------

    def get_stats(self, now: Optional[datetime] = None) -> Dict[str, object]:
        """Aggregate entry statistics relative to `now` (local time)."""
        now = now or datetime.now()
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        tomorrow = today + timedelta(days=1)
        # Weeks start on Sunday
        week_start = today - timedelta(days=(today.weekday() + 1) % 7)
        month_start = today.replace(day=1)

        t_today, t_tomorrow = today.timestamp(), tomorrow.timestamp()

        conn = self._connect()
        try:
            cursor = conn.cursor()

            def count(where: str, params: tuple = ()) -> int:
                cursor.execute(f"SELECT COUNT(*) FROM entry_logs {where}", params)
                return cursor.fetchone()[0] or 0

            stats = {
                "todayVisitors": count("WHERE entry_time >= ? AND entry_time < ?", (t_today, t_tomorrow)),
                "weekVisitors": count("WHERE entry_time >= ?", (week_start.timestamp(),)),
                "monthVisitors": count("WHERE entry_time >= ?", (month_start.timestamp(),)),
                "totalVisitors": count(""),
                "currentlyInside": count("WHERE status = 'inside'"),
                "todayExits": count("WHERE exit_time >= ? AND exit_time < ?", (t_today, t_tomorrow)),
            }

            cursor.execute("""
                SELECT purpose, COUNT(*) FROM entry_logs
                GROUP BY purpose
                ORDER BY COUNT(*) DESC, purpose
            """)
            stats["purposeStats"] = [{"purpose": p, "count": c} for p, c in cursor.fetchall()]

            cursor.execute(
                "SELECT entry_time FROM entry_logs WHERE entry_time >= ? AND entry_time < ?",
                (t_today, t_tomorrow),
            )
            hourly: Dict[int, int] = {}
            for (entry_time,) in cursor.fetchall():
                hour = datetime.fromtimestamp(entry_time).hour
                hourly[hour] = hourly.get(hour, 0) + 1
            stats["hourlyStats"] = [{"hour": h, "count": hourly[h]} for h in sorted(hourly)]

            cursor.execute("SELECT entry_time, exit_time FROM entry_logs WHERE exit_time IS NOT NULL")
            dwell_times = [exit_t - entry_t for entry_t, exit_t in cursor.fetchall() if exit_t > entry_t]
        finally:
            conn.close()

        if dwell_times:
            stats["avgDwellMinutes"] = round(float(np.mean(dwell_times)) / 60, 2)
        else:
            stats["avgDwellMinutes"] = 0.0
        return stats
