#!/usr/bin/env python3
"""
Database Initialization for the Visitor Gate System
Creates the SQLite schema and imports registered visitors from a roster file

Usage:
    python database_init.py [--roster roster.json] [--reset]

This script:
1. Creates the SQLite database with required tables
2. Loads visitors (profile, QR code, face descriptor, thumbprint) from a JSON roster
3. Logs a summary of the database contents

Roster format: a JSON list of objects using the API's field names, e.g.
    [{"name": "Asha Rao", "phone": "9876543210", "qrCode": "VIS-001",
      "faceDescriptor": [0.01, ...], "thumbprintTemplate": [1, 0, 1], "status": "approved"}]
"""

import argparse
import json
import logging
import sqlite3
from pathlib import Path

from config import DB_PATH, ROSTER_PATH
from matching import VISITOR_STATUSES, VisitorRecord
from visitor_store import VisitorStore

# Setup logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


def create_database(db_path: Path = DB_PATH) -> VisitorStore:
    """Create SQLite database with required schema"""
    store = VisitorStore(db_path)
    logger.info(f"Database created/verified at {db_path}")
    return store


def visitor_from_entry(entry: dict) -> VisitorRecord:
    """Build a visitor record from one roster object"""
    status = entry.get("status", "pending")
    if status not in VISITOR_STATUSES:
        raise ValueError(f"Invalid status '{status}'")
    if not entry.get("name"):
        raise ValueError("Visitor name is required")
    return VisitorRecord(
        id=str(entry.get("id", "")),
        name=entry["name"].strip(),
        phone=entry.get("phone", "").strip(),
        email=entry.get("email", "").strip().lower(),
        purpose=entry.get("purpose", ""),
        person_to_meet=entry.get("personToMeet", "").strip(),
        department=entry.get("department", ""),
        photo=entry.get("photo", ""),
        qr_token=entry.get("qrCode") or None,
        face_descriptor=[float(v) for v in entry.get("faceDescriptor", [])],
        fingerprint_template=list(entry.get("thumbprintTemplate", [])),
        fingerprint_image=entry.get("thumbprint", ""),
        status=status,
    )


def load_roster(store: VisitorStore, roster_path: Path, reset: bool = False) -> int:
    """
    Reads the roster file and stores every valid visitor.
    Entries that fail validation or collide on QR code are skipped and logged.
    """
    roster_path = Path(roster_path)
    if not roster_path.exists():
        logger.warning(f"Roster not found at: {roster_path}")
        return 0

    with open(roster_path) as f:
        entries = json.load(f)
    if not isinstance(entries, list):
        raise ValueError("Roster must be a JSON list of visitors")

    if reset:
        logger.info("Clearing old visitors and entry logs from the database...")
        conn = sqlite3.connect(store.db_path)
        conn.execute("DELETE FROM entry_logs")
        conn.execute("DELETE FROM visitors")
        conn.commit()
        conn.close()

    descriptor_length = None
    loaded = 0
    for index, entry in enumerate(entries):
        try:
            visitor = visitor_from_entry(entry)
        except (ValueError, TypeError, AttributeError) as e:
            logger.error(f"Skipping roster entry {index}: {e}")
            continue

        if visitor.has_face:
            if descriptor_length is None:
                descriptor_length = len(visitor.face_descriptor)
            elif len(visitor.face_descriptor) != descriptor_length:
                logger.warning(f"{visitor.name}: face descriptor length {len(visitor.face_descriptor)} "
                               f"differs from {descriptor_length}, it will never match")

        try:
            store.add_visitor(visitor)
            loaded += 1
        except sqlite3.IntegrityError as e:
            logger.error(f"Skipping {visitor.name}: {e}")

    logger.info(f"Successfully loaded {loaded} of {len(entries)} visitors.")
    return loaded


def verify_database(store: VisitorStore):
    """Verify database contents"""
    visitors = store.all_visitors()
    with_face = sum(1 for v in visitors if v.has_face)
    with_thumbprint = sum(1 for v in visitors if v.has_fingerprint)

    logger.info("Database Statistics:")
    logger.info(f"  - Visitors: {len(visitors)}")
    logger.info(f"  - With face data: {with_face}")
    logger.info(f"  - With thumbprint data: {with_thumbprint}")
    logger.info(f"  - Currently inside: {store.get_stats()['currentlyInside']}")

    if visitors:
        logger.info("Registered visitors:")
        for visitor in visitors:
            logger.info(f"  - {visitor.name} (ID: {visitor.id}, status: {visitor.status})")


def main():
    """Main initialization routine"""
    parser = argparse.ArgumentParser(description="Initialize the visitor gate database")
    parser.add_argument("--db", type=Path, default=DB_PATH, help="SQLite database path")
    parser.add_argument("--roster", type=Path, default=ROSTER_PATH, help="JSON roster of visitors to import")
    parser.add_argument("--reset", action="store_true", help="Delete existing visitors and logs before importing")
    args = parser.parse_args()

    logger.info("=== Visitor Gate Database Initialization ===")

    store = create_database(args.db)

    logger.info(f"Loading visitors from: {args.roster}")
    load_roster(store, args.roster, reset=args.reset)

    verify_database(store)

    logger.info("=== Database initialization complete ===")


if __name__ == "__main__":
    main()
