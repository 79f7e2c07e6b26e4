# Configuration settings for the Visitor Gate System

import os
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

BASE_DIR = Path(__file__).resolve().parent

# --- Matching Thresholds ---
FACE_MATCH_THRESHOLD = float(os.getenv("FACE_MATCH_THRESHOLD", "0.6"))  # Max Euclidean distance between face descriptors for a match.
FINGERPRINT_MATCH_THRESHOLD = float(os.getenv("FINGERPRINT_MATCH_THRESHOLD", "0.7"))  # Min positional similarity between thumbprint templates.

# --- Storage ---
DB_PATH = Path(os.getenv("DB_PATH", str(BASE_DIR / "visitor_gate.db")))
ROSTER_PATH = Path(os.getenv("ROSTER_PATH", str(BASE_DIR / "roster.json")))  # JSON list of visitors imported by database_init.py

# --- API ---
PORT = int(os.getenv("PORT", "5002"))
CORS_ALLOW_ORIGINS = os.getenv("CORS_ALLOW_ORIGINS", "").split(",") if os.getenv("CORS_ALLOW_ORIGINS") else []
LOG_PAGE_SIZE = int(os.getenv("LOG_PAGE_SIZE", "20"))  # Default page size for /api/entry/logs
