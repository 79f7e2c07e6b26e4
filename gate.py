"""
Gate Service
============

Runs verifications against the visitor store and records entries and exits.
Results are shaped for the scan API: verified flag, method, confidence,
visitor summary and whether the visitor is currently inside.
"""

import logging
import uuid
from typing import Any, Dict, List, Optional, Sequence, Tuple

from matching import (
    METHOD_FACE,
    METHOD_FINGERPRINT,
    METHOD_QR,
    OUTCOME_INPUT_MISSING,
    FaceProbe,
    FingerprintProbe,
    MatchResult,
    QrProbe,
    VISITOR_STATUSES,
    VerificationEngine,
    VisitorRecord,
    probe_from_request,
)
from visitor_store import ENTRY_METHODS, VisitorStore

logger = logging.getLogger(__name__)

# Wire names for verification methods
WIRE_METHODS = {METHOD_QR: "qr", METHOD_FACE: "face", METHOD_FINGERPRINT: "thumbprint"}


class GateError(Exception):
    """Base class for entry/exit failures, carries the HTTP status to report."""
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class VisitorNotFound(GateError):
    status_code = 404

    def __init__(self, message: str = "Visitor not found"):
        super().__init__(message)


class AlreadyInside(GateError):
    def __init__(self, message: str = "Visitor is already inside"):
        super().__init__(message)


class AccessDenied(GateError):
    def __init__(self, message: str = "Visitor access denied"):
        super().__init__(message)


class NoActiveEntry(GateError):
    def __init__(self, message: str = "No active entry found for this visitor"):
        super().__init__(message)


def _log_method(method: Optional[str]) -> str:
    method = method or "qr"
    if method == "thumbprint":
        method = METHOD_FINGERPRINT
    if method not in ENTRY_METHODS:
        raise GateError(f"Unknown method: {method}")
    return method


def visitor_summary(visitor: VisitorRecord) -> Dict[str, Any]:
    return {
        "id": visitor.id,
        "name": visitor.name,
        "phone": visitor.phone,
        "email": visitor.email,
        "purpose": visitor.purpose,
        "personToMeet": visitor.person_to_meet,
        "status": visitor.status,
        "photo": visitor.photo,
    }


def visitor_details(visitor: VisitorRecord) -> Dict[str, Any]:
    details = visitor_summary(visitor)
    details.update({
        "department": visitor.department,
        "qrCode": visitor.qr_token,
        "hasFaceData": visitor.has_face,
        "hasThumbprintData": visitor.has_fingerprint,
    })
    return details


class GateService:
    def __init__(self, store: VisitorStore, engine: Optional[VerificationEngine] = None):
        self.store = store
        self.engine = engine or VerificationEngine()

    # ---------- visitor lifecycle ----------

    def register_visitor(self, visitor: VisitorRecord) -> VisitorRecord:
        """Register a new visitor with a fresh QR token; status starts as pending."""
        if not visitor.name:
            raise GateError("Visitor name is required")
        visitor.id = ""
        visitor.qr_token = str(uuid.uuid4())
        visitor.status = "pending"
        return self.store.add_visitor(visitor)

    def get_visitor(self, visitor_id: str) -> VisitorRecord:
        visitor = self.store.get_visitor(visitor_id)
        if visitor is None:
            raise VisitorNotFound()
        return visitor

    def get_visitor_by_qr(self, qr_code: str) -> VisitorRecord:
        visitor = self.store.find_by_qr(qr_code)
        if visitor is None:
            raise VisitorNotFound()
        return visitor

    def update_visitor(self, visitor_id: str, **fields) -> VisitorRecord:
        status = fields.get("status")
        if status and status not in VISITOR_STATUSES:
            raise GateError(f"Invalid status: {status}")
        visitor = self.store.update_visitor(visitor_id, **fields)
        if visitor is None:
            raise VisitorNotFound()
        return visitor

    def approve_visitor(self, visitor_id: str) -> VisitorRecord:
        visitor = self.update_visitor(visitor_id, status="approved")
        logger.info(f"Approved visitor {visitor.name} (ID: {visitor.id})")
        return visitor

    def reject_visitor(self, visitor_id: str) -> VisitorRecord:
        visitor = self.update_visitor(visitor_id, status="rejected")
        logger.warning(f"Rejected visitor {visitor.name} (ID: {visitor.id})")
        return visitor

    def delete_visitor(self, visitor_id: str):
        if not self.store.delete_visitor(visitor_id):
            raise VisitorNotFound()

    # ---------- verification ----------

    def _candidates_for(self, probe) -> List[VisitorRecord]:
        if isinstance(probe, QrProbe):
            visitor = self.store.find_by_qr(probe.token)
            return [visitor] if visitor else []
        if isinstance(probe, FaceProbe):
            return self.store.candidates_with_face()
        if isinstance(probe, FingerprintProbe):
            return self.store.candidates_with_fingerprint()
        return []

    def _respond(self, result: MatchResult) -> Tuple[int, Dict[str, Any]]:
        if not result.accepted:
            status_code = 400 if result.outcome == OUTCOME_INPUT_MISSING else 404
            logger.info(f"Verification failed ({result.method}): {result.message}")
            return status_code, {"verified": False, "message": result.message}

        visitor = result.visitor
        is_inside = self.store.has_open_entry(visitor.id)
        logger.info(f"Verified {visitor.name} (ID: {visitor.id}) via {result.method} "
                    f"confidence={result.confidence:.3f} inside={is_inside}")
        return 200, {
            "verified": True,
            "verificationMethod": WIRE_METHODS[result.method],
            "matchConfidence": result.confidence,
            "visitor": visitor_summary(visitor),
            "isInside": is_inside,
            "message": result.message,
        }

    def verify(self, qr_code: Optional[str] = None,
               face_descriptor: Optional[Sequence[float]] = None,
               thumbprint_template: Optional[Sequence[Any]] = None,
               thumbprint: Optional[str] = None,
               method: Optional[str] = None) -> Tuple[int, Dict[str, Any]]:
        """Verify with whichever probe the request carries (or the one the method hint names)."""
        probe = probe_from_request(qr_code, face_descriptor, thumbprint_template, thumbprint, method)
        result = self.engine.verify(probe, self._candidates_for(probe))
        return self._respond(result)

    def verify_face(self, face_descriptor: Optional[Sequence[float]]) -> Tuple[int, Dict[str, Any]]:
        probe = FaceProbe(list(face_descriptor or []))
        return self._respond(self.engine.verify(probe, self._candidates_for(probe)))

    def verify_fingerprint(self, thumbprint_template: Optional[Sequence[Any]],
                           thumbprint: Optional[str]) -> Tuple[int, Dict[str, Any]]:
        probe = FingerprintProbe(list(thumbprint_template or []), thumbprint or "")
        return self._respond(self.engine.verify(probe, self._candidates_for(probe)))

    def _resolve(self, qr_code: Optional[str], visitor_id: Optional[str]) -> VisitorRecord:
        visitor = None
        if qr_code:
            visitor = self.store.find_by_qr(qr_code)
        elif visitor_id:
            visitor = self.store.get_visitor(visitor_id)
        if visitor is None:
            raise VisitorNotFound()
        return visitor

    def record_entry(self, qr_code: Optional[str] = None, visitor_id: Optional[str] = None,
                     method: str = "qr", approved_by: Optional[str] = None) -> Dict[str, Any]:
        visitor = self._resolve(qr_code, visitor_id)
        if self.store.has_open_entry(visitor.id):
            raise AlreadyInside()
        if visitor.status == "rejected":
            logger.warning(f"Entry refused for rejected visitor {visitor.id}")
            raise AccessDenied()

        log_id = self.store.open_entry(visitor, method=_log_method(method), approved_by=approved_by)
        if log_id is None:
            raise AlreadyInside()
        visitor = self.store.get_visitor(visitor.id)
        return {
            "message": "Entry recorded successfully",
            "visitor": visitor_summary(visitor),
            "entryLog": self.store.get_log(log_id),
        }

    def record_exit(self, qr_code: Optional[str] = None, visitor_id: Optional[str] = None,
                    method: str = "qr") -> Dict[str, Any]:
        visitor = self._resolve(qr_code, visitor_id)
        log_id = self.store.close_entry(visitor.id, method=_log_method(method))
        if log_id is None:
            raise NoActiveEntry()

        visitor = self.store.get_visitor(visitor.id)
        return {
            "message": "Exit recorded successfully",
            "visitor": visitor_summary(visitor),
            "entryLog": self.store.get_log(log_id),
        }
