#!/usr/bin/env python3
"""
Visitor Gate API
================

HTTP surface for the campus visitor gate: verifies visitors by QR code,
face descriptor or thumbprint, records entries and exits, and serves entry
logs and aggregate stats for the staff dashboard.

Usage:
------
1. Initialize the database and import the visitor roster:
   ```bash
   python database_init.py --roster roster.json
   ```

2. Run the API:
   ```bash
   python main.py
   ```

3. Verify a visitor:
   ```bash
   curl -X POST http://localhost:5002/api/scan/verify \
        -H 'Content-Type: application/json' -d '{"qrCode": "abc123"}'
   ```

Configuration:
--------------
- FACE_MATCH_THRESHOLD: max descriptor distance for a face match (default: 0.6)
- FINGERPRINT_MATCH_THRESHOLD: min template similarity for a thumbprint match (default: 0.7)
- DB_PATH, PORT, CORS_ALLOW_ORIGINS: see config.py
"""

import logging
import signal
import sys
from datetime import datetime
from threading import Lock
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from config import (
    CORS_ALLOW_ORIGINS,
    DB_PATH,
    FACE_MATCH_THRESHOLD,
    FINGERPRINT_MATCH_THRESHOLD,
    LOG_PAGE_SIZE,
    PORT,
)
from gate import GateError, GateService, visitor_details
from matching import VerificationEngine, VisitorRecord
from visitor_store import VisitorStore

# Setup logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

app = FastAPI(title="Visitor Gate API", version="1.0.0")
_gate_lock = Lock()

# Upper bounds for log pagination
MAX_LOG_PAGE = 10000
MAX_LOG_LIMIT = 100

if CORS_ALLOW_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ALLOW_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=True,
    )


class VerifyRequest(BaseModel):
    qrCode: Optional[str] = None
    visitorId: Optional[str] = None
    faceDescriptor: Optional[List[float]] = None
    thumbprintTemplate: Optional[List[Any]] = None
    thumbprint: Optional[str] = None
    method: Optional[str] = None


class FaceVerifyRequest(BaseModel):
    faceDescriptor: Optional[List[float]] = None


class ThumbprintVerifyRequest(BaseModel):
    thumbprintTemplate: Optional[List[Any]] = None
    thumbprint: Optional[str] = None


class EntryRequest(BaseModel):
    qrCode: Optional[str] = None
    visitorId: Optional[str] = None
    entryMethod: Optional[str] = None
    approvedBy: Optional[str] = None


class ExitRequest(BaseModel):
    qrCode: Optional[str] = None
    visitorId: Optional[str] = None
    exitMethod: Optional[str] = None


class VisitorCreateRequest(BaseModel):
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    purpose: Optional[str] = None
    department: Optional[str] = None
    personToMeet: Optional[str] = None
    photo: Optional[str] = None
    faceDescriptor: Optional[List[float]] = None
    thumbprintTemplate: Optional[List[Any]] = None
    thumbprint: Optional[str] = None


class VisitorUpdateRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    purpose: Optional[str] = None
    department: Optional[str] = None
    personToMeet: Optional[str] = None
    status: Optional[str] = None


class StatsResponse(BaseModel):
    todayVisitors: int
    weekVisitors: int
    monthVisitors: int
    totalVisitors: int
    currentlyInside: int
    todayExits: int
    avgDwellMinutes: float
    purposeStats: List[Dict[str, Any]]
    hourlyStats: List[Dict[str, Any]]
    timestamp: str


def get_gate() -> GateService:
    """Gate service attached to the app; built from config on first use."""
    gate = getattr(app.state, "gate", None)
    if gate is not None:
        return gate
    with _gate_lock:
        gate = getattr(app.state, "gate", None)
        if gate is None:
            engine = VerificationEngine(
                face_threshold=FACE_MATCH_THRESHOLD,
                fingerprint_threshold=FINGERPRINT_MATCH_THRESHOLD,
            )
            gate = GateService(VisitorStore(DB_PATH), engine)
            app.state.gate = gate
    return gate


def _server_error(action: str, exc: Exception) -> HTTPException:
    logger.error(f"Error during {action}: {exc}")
    return HTTPException(status_code=500, detail="Server error")


@app.post("/api/scan/verify")
def verify(request: VerifyRequest):
    """Verify a visitor by QR code, face descriptor or thumbprint"""
    try:
        status_code, body = get_gate().verify(
            qr_code=request.qrCode,
            face_descriptor=request.faceDescriptor,
            thumbprint_template=request.thumbprintTemplate,
            thumbprint=request.thumbprint,
            method=request.method,
        )
    except Exception as e:
        raise _server_error("verification", e)
    return JSONResponse(status_code=status_code, content=body)


@app.post("/api/scan/verify/face")
def verify_face(request: FaceVerifyRequest):
    """Verify a visitor by face descriptor only"""
    try:
        status_code, body = get_gate().verify_face(request.faceDescriptor)
    except Exception as e:
        raise _server_error("face verification", e)
    return JSONResponse(status_code=status_code, content=body)


@app.post("/api/scan/verify/thumbprint")
def verify_thumbprint(request: ThumbprintVerifyRequest):
    """Verify a visitor by thumbprint template or image"""
    try:
        status_code, body = get_gate().verify_fingerprint(request.thumbprintTemplate, request.thumbprint)
    except Exception as e:
        raise _server_error("thumbprint verification", e)
    return JSONResponse(status_code=status_code, content=body)


@app.post("/api/scan/entry")
def record_entry(request: EntryRequest):
    """Check a visitor in"""
    try:
        body = get_gate().record_entry(
            qr_code=request.qrCode,
            visitor_id=request.visitorId,
            method=request.entryMethod,
            approved_by=request.approvedBy,
        )
    except GateError as e:
        return JSONResponse(status_code=e.status_code, content={"message": e.message})
    except Exception as e:
        raise _server_error("entry", e)
    return JSONResponse(status_code=201, content=body)


@app.post("/api/scan/exit")
def record_exit(request: ExitRequest):
    """Check a visitor out"""
    try:
        body = get_gate().record_exit(
            qr_code=request.qrCode,
            visitor_id=request.visitorId,
            method=request.exitMethod,
        )
    except GateError as e:
        return JSONResponse(status_code=e.status_code, content={"message": e.message})
    except Exception as e:
        raise _server_error("exit", e)
    return body


@app.get("/api/entry/logs")
def list_logs(status: Optional[str] = None, date: Optional[str] = None,
              page: int = Query(1, ge=1, le=MAX_LOG_PAGE),
              limit: int = Query(LOG_PAGE_SIZE, ge=1, le=MAX_LOG_LIMIT)):
    """Paginated entry logs, newest first"""
    try:
        return get_gate().store.list_logs(status=status, date=date, page=page, limit=limit)
    except ValueError:
        raise HTTPException(status_code=400, detail="date must be YYYY-MM-DD")
    except Exception as e:
        raise _server_error("log listing", e)


@app.get("/api/entry/stats", response_model=StatsResponse)
def get_stats():
    """Get current entry statistics"""
    try:
        stats = get_gate().store.get_stats()
    except Exception as e:
        raise _server_error("stats", e)
    return StatsResponse(timestamp=datetime.now().isoformat(), **stats)


@app.get("/api/entry/visitor/{visitor_id}")
def visitor_logs(visitor_id: str):
    """All entry logs for one visitor"""
    try:
        return get_gate().store.logs_for_visitor(visitor_id)
    except Exception as e:
        raise _server_error("visitor log lookup", e)


@app.get("/api/entry/{log_id}")
def get_log(log_id: int):
    """Single entry log"""
    try:
        log = get_gate().store.get_log(log_id)
    except Exception as e:
        raise _server_error("log lookup", e)
    if log is None:
        return JSONResponse(status_code=404, content={"message": "Entry log not found"})
    return log


@app.get("/api/visitor")
def list_visitors():
    """All registered visitors, newest first"""
    try:
        visitors = get_gate().store.all_visitors()
    except Exception as e:
        raise _server_error("visitor listing", e)
    return [visitor_details(v) for v in reversed(visitors)]


@app.get("/api/visitor/qr/{qr_code}")
def get_visitor_by_qr(qr_code: str):
    try:
        visitor = get_gate().get_visitor_by_qr(qr_code)
    except GateError as e:
        return JSONResponse(status_code=e.status_code, content={"message": e.message})
    except Exception as e:
        raise _server_error("visitor lookup", e)
    return visitor_details(visitor)


@app.get("/api/visitor/{visitor_id}")
def get_visitor(visitor_id: str):
    try:
        visitor = get_gate().get_visitor(visitor_id)
    except GateError as e:
        return JSONResponse(status_code=e.status_code, content={"message": e.message})
    except Exception as e:
        raise _server_error("visitor lookup", e)
    return visitor_details(visitor)


@app.post("/api/visitor")
def register_visitor(request: VisitorCreateRequest):
    """Register a visitor; a QR code is issued and approval is pending"""
    visitor = VisitorRecord(
        id="",
        name=request.name.strip(),
        email=(request.email or "").strip().lower(),
        phone=request.phone or "",
        purpose=request.purpose or "",
        department=request.department or "",
        person_to_meet=request.personToMeet or "",
        photo=request.photo or "",
        face_descriptor=list(request.faceDescriptor or []),
        fingerprint_template=list(request.thumbprintTemplate or []),
        fingerprint_image=request.thumbprint or "",
    )
    try:
        visitor = get_gate().register_visitor(visitor)
    except GateError as e:
        return JSONResponse(status_code=e.status_code, content={"message": e.message})
    except Exception as e:
        raise _server_error("registration", e)
    return JSONResponse(status_code=201, content={
        "message": "Visitor registered successfully",
        "visitor": visitor_details(visitor),
    })


@app.put("/api/visitor/{visitor_id}")
def update_visitor(visitor_id: str, request: VisitorUpdateRequest):
    try:
        visitor = get_gate().update_visitor(
            visitor_id,
            name=request.name,
            email=request.email,
            phone=request.phone,
            purpose=request.purpose,
            department=request.department,
            person_to_meet=request.personToMeet,
            status=request.status,
        )
    except GateError as e:
        return JSONResponse(status_code=e.status_code, content={"message": e.message})
    except Exception as e:
        raise _server_error("visitor update", e)
    return visitor_details(visitor)


@app.put("/api/visitor/{visitor_id}/approve")
def approve_visitor(visitor_id: str):
    try:
        visitor = get_gate().approve_visitor(visitor_id)
    except GateError as e:
        return JSONResponse(status_code=e.status_code, content={"message": e.message})
    except Exception as e:
        raise _server_error("approval", e)
    return {"message": "Visitor approved", "visitor": visitor_details(visitor)}


@app.put("/api/visitor/{visitor_id}/reject")
def reject_visitor(visitor_id: str):
    try:
        visitor = get_gate().reject_visitor(visitor_id)
    except GateError as e:
        return JSONResponse(status_code=e.status_code, content={"message": e.message})
    except Exception as e:
        raise _server_error("rejection", e)
    return {"message": "Visitor rejected", "visitor": visitor_details(visitor)}


@app.delete("/api/visitor/{visitor_id}")
def delete_visitor(visitor_id: str):
    try:
        get_gate().delete_visitor(visitor_id)
    except GateError as e:
        return JSONResponse(status_code=e.status_code, content={"message": e.message})
    except Exception as e:
        raise _server_error("visitor removal", e)
    return {"message": "Visitor removed"}


@app.get("/api/health")
def health():
    return {"status": "ok", "message": "Visitor Gate API is running"}


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Visitor Gate API",
        "version": "1.0.0",
        "endpoints": {
            "/api/scan": "Verification, entry and exit",
            "/api/entry": "Entry logs and stats",
            "/api/visitor": "Visitor registration and approval",
            "/api/health": "Health check",
        },
    }


def signal_handler(sig, frame):
    """Handle shutdown signal"""
    logger.info("Shutting down...")
    sys.exit(0)


def main():
    """Main entry point"""
    signal.signal(signal.SIGINT, signal_handler)

    if not DB_PATH.exists():
        logger.error(f"Database not found at {DB_PATH}")
        logger.error("Please run 'python database_init.py' first to initialize the database")
        sys.exit(1)

    gate = get_gate()
    logger.info(f"Loaded {gate.store.count_visitors()} registered visitors "
                f"(face threshold {gate.engine.face_threshold}, "
                f"thumbprint threshold {gate.engine.fingerprint_threshold})")

    uvicorn.run(app, host="0.0.0.0", port=PORT, log_level="info")


if __name__ == "__main__":
    main()
