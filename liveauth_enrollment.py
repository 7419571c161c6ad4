"""
LiveAuth - Enrollment & Verification
====================================
Keeps one face baseline and a liveness-completed flag per user and
answers match requests against it.

Flow:
  - First successful liveness session: descriptor stored as baseline
  - Later sessions: fresh descriptor compared to the baseline with the
    fixed-threshold matcher

Errors carry an HTTP-like status so a web layer can map them directly:
  400 invalid / incompatible descriptor
  403 user has not completed liveness
  404 unknown user
"""

from __future__ import annotations

import logging
import math
import os
import threading
import time
from dataclasses import replace
from numbers import Real
from typing import Optional, Sequence

import numpy as np

from liveauth_crypto import BiometricEncryptor, DecryptionError, load_or_create_key
from liveauth_matcher import match_descriptors
from liveauth_types import EnrollmentRecord, IncompatibleDescriptors, MatchResult

_log = logging.getLogger("EnrollmentService")


class EnrollmentError(Exception):
    """Rejected enrollment/verification request."""

    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.message = message
        self.status = status


class EnrollmentStoreError(Exception):
    """The persisted store cannot be read or written."""


# ===================================================================
# Stores
# ===================================================================

class EnrollmentStore:
    """In-memory store. Subclasses persist via `_persist`."""

    def __init__(self) -> None:
        self._records: dict[str, EnrollmentRecord] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str) -> Optional[EnrollmentRecord]:
        with self._lock:
            record = self._records.get(user_id)
            return replace(record) if record is not None else None

    def add_user(self, user_id: str) -> EnrollmentRecord:
        """Create an empty record. Returns the existing one if present."""
        with self._lock:
            if user_id not in self._records:
                self._commit(EnrollmentRecord(user_id=user_id))
            return replace(self._records[user_id])

    def save(self, record: EnrollmentRecord) -> None:
        with self._lock:
            self._commit(replace(record))

    def _commit(self, record: EnrollmentRecord) -> None:
        """Apply one record change; memory is rolled back if persisting fails."""
        previous = self._records.get(record.user_id)
        self._records[record.user_id] = record
        try:
            self._persist()
        except Exception:
            if previous is None:
                del self._records[record.user_id]
            else:
                self._records[record.user_id] = previous
            raise

    def _persist(self) -> None:
        pass


class EncryptedEnrollmentStore(EnrollmentStore):
    """AES-256-GCM encrypted JSON file store."""

    def __init__(self, db_path: str, key_path: str) -> None:
        super().__init__()
        self.db_path = db_path
        self._encryptor = BiometricEncryptor(load_or_create_key(key_path))
        self._load()

    def _load(self) -> None:
        if not os.path.exists(self.db_path):
            return
        with open(self.db_path, "rb") as f:
            blob = f.read()
        try:
            data = self._encryptor.decrypt_data(blob)
        except (DecryptionError, ValueError) as e:
            _log.error("Failed to load enrollment DB %s: %s", self.db_path, e)
            raise EnrollmentStoreError(f"Cannot read enrollment DB {self.db_path}: {e}") from e

        self._records = {
            uid: EnrollmentRecord(**fields) for uid, fields in data.items()
        }
        _log.info("Enrollment DB loaded - %d users", len(self._records))

    def _persist(self) -> None:
        data = {uid: record.to_dict() for uid, record in self._records.items()}
        blob = self._encryptor.encrypt_data(data)

        tmp_path = self.db_path + ".tmp"
        try:
            db_dir = os.path.dirname(self.db_path)
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)
            with open(tmp_path, "wb") as f:
                f.write(blob)
            os.replace(tmp_path, self.db_path)
        except OSError as e:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            _log.error("Failed to write enrollment DB %s: %s", self.db_path, e)
            raise EnrollmentStoreError(f"Cannot write enrollment DB {self.db_path}: {e}") from e


# ===================================================================
# Service
# ===================================================================

def _validate_descriptor(descriptor, message: str) -> list[float]:
    if isinstance(descriptor, np.ndarray):
        descriptor = descriptor.tolist()
    if not isinstance(descriptor, (list, tuple)) or len(descriptor) == 0:
        raise EnrollmentError(message, 400)
    values = []
    for v in descriptor:
        if isinstance(v, bool) or not isinstance(v, Real) or not math.isfinite(v):
            raise EnrollmentError(message, 400)
        values.append(float(v))
    return values


def describe_match(result: MatchResult) -> str:
    if result.is_match:
        return "Face matched successfully."
    return "Face did not match stored descriptor."


class EnrollmentService:
    """Save, status and match operations over an EnrollmentStore."""

    def __init__(self, store: EnrollmentStore, audit_logger=None) -> None:
        self.store = store
        self.audit = audit_logger

    def register_user(self, user_id: str) -> EnrollmentRecord:
        return self.store.add_user(user_id)

    def save_liveness_data(self, user_id: str, descriptor: Sequence[float]) -> EnrollmentRecord:
        """Store `descriptor` as the user's baseline and mark liveness complete."""
        values = _validate_descriptor(descriptor, "Valid face descriptor is required.")
        record = self._require_user(user_id)

        record.face_descriptor = values
        record.liveness_complete = True
        record.updated_at = time.time()
        self.store.save(record)

        _log.info("Liveness data saved - user=%s dim=%d", user_id, len(values))
        self._audit("liveness_data_saved", user_id=user_id, descriptor_dim=len(values))
        return record

    def liveness_status(self, user_id: str) -> dict:
        record = self._require_user(user_id)
        return {
            "livenessComplete": record.liveness_complete,
            "faceDescriptor": record.face_descriptor,
        }

    def verify_face_match(self, user_id: str, descriptor: Sequence[float]) -> MatchResult:
        """Compare a live descriptor to the stored baseline.

        Raises:
            EnrollmentError: 400 invalid input, 403 not enrolled, 404 unknown user.
            IncompatibleDescriptors: baseline and live lengths differ.
        """
        values = _validate_descriptor(
            descriptor, "Current face descriptor is required for verification.")
        record = self.require_enrolled(user_id)

        try:
            result = match_descriptors(record.face_descriptor, values)
        except IncompatibleDescriptors:
            self._audit("face_match_rejected", user_id=user_id,
                        stored_dim=len(record.face_descriptor), live_dim=len(values))
            raise

        _log.info("Face match - user=%s match=%s distance=%.4f",
                  user_id, result.is_match, result.distance)
        self._audit("face_match", user_id=user_id, **result.to_dict())
        return result

    def complete_liveness(self, user_id: str, descriptor: Sequence[float]) -> Optional[MatchResult]:
        """Enroll on the first success, verify on every later one.

        Returns None after enrolling, otherwise the MatchResult.
        """
        record = self._require_user(user_id)
        if not record.liveness_complete:
            self.save_liveness_data(user_id, descriptor)
            return None
        return self.verify_face_match(user_id, descriptor)

    def require_enrolled(self, user_id: str) -> EnrollmentRecord:
        """Record of a user who can be verified.

        Raises:
            EnrollmentError: 404 unknown user, 403 no stored baseline.
        """
        record = self._require_user(user_id)
        if not record.liveness_complete or not record.face_descriptor:
            raise EnrollmentError(
                "User has not completed liveness check or no face descriptor is stored.", 403)
        return record

    # ── Internals ─────────────────────────────────────────────

    def _require_user(self, user_id: str) -> EnrollmentRecord:
        record = self.store.get(user_id)
        if record is None:
            raise EnrollmentError("User not found.", 404)
        return record

    def _audit(self, event: str, **data) -> None:
        if self.audit is not None:
            self.audit.log({"event": event, **data})
