"""
Credential matcher: resolves at most one principal for a presented credential.
"""
from typing import Optional, Sequence

from auth.security import verify_access_code
from core.face_recognizer import Descriptor, FaceRecognizer
from database.models import User


class CredentialMatcher:
    """Matches access codes and face descriptors against candidate principals."""

    def __init__(self, recognizer: FaceRecognizer):
        self.recognizer = recognizer

    @staticmethod
    def match_code(access_code: str, candidates: Sequence[User]) -> Optional[User]:
        """
        Return the first candidate whose stored hash verifies the code.

        Several principals may share a code on one door, so every candidate is
        a possible match; the scan stops at the first verified hash.
        """
        for candidate in candidates:
            if verify_access_code(access_code, candidate.access_code_hash):
                return candidate
        return None

    def match_face(self, descriptor: Descriptor, candidates: Sequence[User]) -> Optional[User]:
        """Return the recognizer's single best match above threshold, or None."""
        enrolled = {
            candidate.id: candidate.face_descriptor
            for candidate in candidates
            if candidate.face_descriptor
        }
        match_id, _ = self.recognizer.match_face(descriptor, enrolled)
        if match_id is None:
            return None
        return next(c for c in candidates if c.id == match_id)

    @staticmethod
    def verify_code_for(access_code: str, principal: User) -> bool:
        return verify_access_code(access_code, principal.access_code_hash)

    def verify_face_for(self, descriptor: Descriptor, principal: User) -> bool:
        if not principal.face_descriptor:
            return False
        return self.recognizer.verify_face(descriptor, principal.face_descriptor)
