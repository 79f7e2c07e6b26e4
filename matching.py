"""
Visitor Identity Matching
=========================

Matches a live probe (QR token, face descriptor or thumbprint) against the
registered visitors and decides whether the best candidate is confident
enough to accept.

- QR: exact token lookup, no scoring.
- Face: Euclidean distance between descriptors, lowest distance wins,
  accepted when distance <= face threshold.
- Thumbprint: positional equality ratio between templates (or exact image
  equality), highest score wins, accepted when score >= fingerprint threshold.

Ties go to the first candidate in pool order. The engine performs no I/O;
candidate pools are supplied by the caller.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Sequence, Union

import numpy as np

from config import FACE_MATCH_THRESHOLD, FINGERPRINT_MATCH_THRESHOLD

logger = logging.getLogger(__name__)

# Verification methods
METHOD_QR = "qr"
METHOD_FACE = "face"
METHOD_FINGERPRINT = "fingerprint"

# Match outcomes
OUTCOME_MATCHED = "matched"
OUTCOME_INPUT_MISSING = "input-missing"
OUTCOME_NO_CANDIDATES = "no-candidates"
OUTCOME_BELOW_THRESHOLD = "below-threshold"
OUTCOME_NOT_FOUND = "not-found"

VISITOR_STATUSES = ("pending", "approved", "rejected", "checked-in", "checked-out")


@dataclass
class VisitorRecord:
    id: str
    name: str = ""
    phone: str = ""
    email: str = ""
    purpose: str = ""
    person_to_meet: str = ""
    department: str = ""
    photo: str = ""
    qr_token: Optional[str] = None
    face_descriptor: List[float] = field(default_factory=list)
    fingerprint_template: List[Any] = field(default_factory=list)
    fingerprint_image: str = ""
    status: str = "pending"

    @property
    def has_face(self) -> bool:
        return len(self.face_descriptor) > 0

    @property
    def has_fingerprint(self) -> bool:
        return len(self.fingerprint_template) > 0 or bool(self.fingerprint_image)


@dataclass
class MatchResult:
    method: str
    visitor: Optional[VisitorRecord] = None
    confidence: float = 0.0
    accepted: bool = False
    outcome: str = OUTCOME_BELOW_THRESHOLD
    message: str = ""


@dataclass(frozen=True)
class QrProbe:
    token: str


@dataclass(frozen=True)
class FaceProbe:
    descriptor: Sequence[float]


@dataclass(frozen=True)
class FingerprintProbe:
    template: Sequence[Any] = ()
    image: str = ""


Probe = Union[QrProbe, FaceProbe, FingerprintProbe]


def euclidean_distance(a: Sequence[float], b: Sequence[float]) -> float:
    """Distance between two face descriptors; inf when lengths differ."""
    if a is None or b is None or len(a) != len(b):
        return math.inf
    diff = np.asarray(a, dtype=np.float64) - np.asarray(b, dtype=np.float64)
    return float(np.sqrt(np.dot(diff, diff)))


def _same_value(a: Any, b: Any) -> bool:
    # Booleans never equal numbers (True == 1 in Python)
    if isinstance(a, bool) or isinstance(b, bool):
        return type(a) is type(b) and a == b
    return a == b


def template_similarity(probe: Sequence[Any], stored: Sequence[Any]) -> float:
    """
    Fraction of positions where both templates hold the same value.
    Positions past the shorter template only count in the denominator.
    """
    longest = max(len(probe), len(stored))
    if longest == 0:
        return 0.0
    matches = sum(1 for p, s in zip(probe, stored) if _same_value(p, s))
    return matches / longest


def fingerprint_score(template: Sequence[Any], image: str, candidate: VisitorRecord) -> float:
    if len(template) > 0 and len(candidate.fingerprint_template) > 0:
        return template_similarity(template, candidate.fingerprint_template)
    # Byte-exact image comparison; two independent scans will almost never match
    if image and image == candidate.fingerprint_image:
        return 1.0
    return 0.0


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def probe_from_request(qr_code: Optional[str] = None,
                       face_descriptor: Optional[Sequence[float]] = None,
                       thumbprint_template: Optional[Sequence[Any]] = None,
                       thumbprint: Optional[str] = None,
                       method: Optional[str] = None) -> Optional[Probe]:
    """
    Build a probe from loose request fields.

    An explicit method hint picks the probe type directly (its field may be
    empty, which the engine reports as missing input). Without a hint the
    precedence is QR token, then face descriptor, then thumbprint data.
    """
    if method == METHOD_QR:
        return QrProbe(qr_code or "")
    if method == METHOD_FACE:
        return FaceProbe(list(face_descriptor or []))
    if method in ("thumbprint", METHOD_FINGERPRINT):
        return FingerprintProbe(list(thumbprint_template or []), thumbprint or "")

    if qr_code:
        return QrProbe(qr_code)
    if face_descriptor:
        return FaceProbe(list(face_descriptor))
    if thumbprint_template or thumbprint:
        return FingerprintProbe(list(thumbprint_template or []), thumbprint or "")
    return None


class VerificationEngine:
    """Nearest-candidate matcher with per-method acceptance thresholds."""

    def __init__(self, face_threshold: float = FACE_MATCH_THRESHOLD,
                 fingerprint_threshold: float = FINGERPRINT_MATCH_THRESHOLD):
        if face_threshold <= 0:
            raise ValueError("face_threshold must be positive")
        if not 0 < fingerprint_threshold <= 1:
            raise ValueError("fingerprint_threshold must be in (0, 1]")
        self.face_threshold = face_threshold
        self.fingerprint_threshold = fingerprint_threshold

    def verify_by_qr(self, token: str, candidates: Iterable[VisitorRecord]) -> Optional[VisitorRecord]:
        if not token:
            return None
        for candidate in candidates:
            if candidate.qr_token == token:
                return candidate
        return None

    def verify_by_face(self, probe_descriptor: Sequence[float],
                       candidates: Sequence[VisitorRecord]) -> MatchResult:
        if probe_descriptor is None or len(probe_descriptor) == 0:
            return MatchResult(METHOD_FACE, outcome=OUTCOME_INPUT_MISSING,
                               message="No face descriptor provided")
        if not candidates:
            return MatchResult(METHOD_FACE, outcome=OUTCOME_NO_CANDIDATES,
                               message="No registered visitors with face data")

        best_match = None
        best_distance = math.inf

        for candidate in candidates:
            distance = euclidean_distance(probe_descriptor, candidate.face_descriptor)
            if distance < best_distance and distance <= self.face_threshold:
                best_distance = distance
                best_match = candidate

        if best_match is None:
            logger.debug(f"Face probe rejected against {len(candidates)} candidates")
            return MatchResult(METHOD_FACE, outcome=OUTCOME_BELOW_THRESHOLD,
                               message="Face not recognized")

        confidence = _clamp(1 - best_distance / self.face_threshold)
        logger.debug(f"Face matched to {best_match.id} at distance {best_distance:.4f}")
        return MatchResult(METHOD_FACE, visitor=best_match, confidence=confidence,
                           accepted=True, outcome=OUTCOME_MATCHED,
                           message="Face verified")

    def verify_by_fingerprint(self, probe_template: Optional[Sequence[Any]], probe_image: Optional[str],
                              candidates: Sequence[VisitorRecord]) -> MatchResult:
        template = probe_template or []
        image = probe_image or ""
        if len(template) == 0 and not image:
            return MatchResult(METHOD_FINGERPRINT, outcome=OUTCOME_INPUT_MISSING,
                               message="No thumbprint data provided")
        if not candidates:
            return MatchResult(METHOD_FINGERPRINT, outcome=OUTCOME_NO_CANDIDATES,
                               message="No registered visitors with thumbprint data")

        best_match = None
        best_score = 0.0

        for candidate in candidates:
            score = fingerprint_score(template, image, candidate)
            if score > best_score and score >= self.fingerprint_threshold:
                best_score = score
                best_match = candidate

        if best_match is None:
            logger.debug(f"Thumbprint probe rejected against {len(candidates)} candidates")
            return MatchResult(METHOD_FINGERPRINT, outcome=OUTCOME_BELOW_THRESHOLD,
                               message="Thumbprint not recognized")

        logger.debug(f"Thumbprint matched to {best_match.id} with score {best_score:.3f}")
        return MatchResult(METHOD_FINGERPRINT, visitor=best_match, confidence=_clamp(best_score),
                           accepted=True, outcome=OUTCOME_MATCHED,
                           message="Thumbprint verified")

    def verify(self, probe: Optional[Probe], candidates: Iterable[VisitorRecord]) -> MatchResult:
        """Dispatch on the probe type. Biometric pools are narrowed to records carrying that data."""
        if probe is None:
            return MatchResult(METHOD_QR, outcome=OUTCOME_INPUT_MISSING,
                               message="No verification data provided")

        if isinstance(probe, QrProbe):
            if not probe.token:
                return MatchResult(METHOD_QR, outcome=OUTCOME_INPUT_MISSING,
                                   message="No QR code provided")
            visitor = self.verify_by_qr(probe.token, candidates)
            if visitor is None:
                return MatchResult(METHOD_QR, outcome=OUTCOME_NOT_FOUND,
                                   message="Visitor not found")
            return MatchResult(METHOD_QR, visitor=visitor, confidence=1.0, accepted=True,
                               outcome=OUTCOME_MATCHED, message="QR code verified")

        if isinstance(probe, FaceProbe):
            pool = [c for c in candidates if c.has_face]
            return self.verify_by_face(probe.descriptor, pool)

        if isinstance(probe, FingerprintProbe):
            pool = [c for c in candidates if c.has_fingerprint]
            return self.verify_by_fingerprint(probe.template, probe.image, pool)

        raise TypeError(f"Unsupported probe type: {type(probe).__name__}")
