"""
Durable local state for attempts in progress.

Each document is a JSON file scoped by (kind, exam id, attempt id), so
attempts of different exams never collide. Documents can be encrypted at
rest with Fernet, using either a key or a passphrase.
"""

import os
import json
import base64
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import StorageError

RESPONSES = "responses"
TIMER = "timer"
SEAL = "seal"
VIOLATIONS = "violations"

KINDS = (RESPONSES, TIMER, SEAL, VIOLATIONS)

SALT_FILE = ".salt"


def derive_key_from_password(password: str, salt: bytes) -> bytes:
    """Derive a Fernet key from a password using PBKDF2."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=480000,  # OWASP recommendation for 2024
    )
    key_material = kdf.derive(password.encode('utf-8'))
    return base64.urlsafe_b64encode(key_material)


def _safe(part: str) -> str:
    return "".join(c if c.isalnum() or c in "-_" else '_' for c in str(part))


class LocalStore:
    """Best-effort durable key/value store backed by a directory."""

    def __init__(self, directory: Path, key: Optional[bytes] = None):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._fernet = Fernet(key) if key else None

    @classmethod
    def with_password(cls, directory: Path, password: str) -> 'LocalStore':
        """Open a store encrypted with a passphrase-derived key."""
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        salt_path = directory / SALT_FILE
        if salt_path.exists():
            salt = salt_path.read_bytes()
        else:
            salt = os.urandom(16)
            salt_path.write_bytes(salt)
        return cls(directory, derive_key_from_password(password, salt))

    @property
    def encrypted(self) -> bool:
        return self._fernet is not None

    def path_for(self, kind: str, exam_id: str, attempt_id: str) -> Path:
        if kind not in KINDS:
            raise ValueError(f"Unknown document kind: {kind}")
        suffix = ".enc" if self._fernet else ".json"
        return self.directory / f"{kind}_{_safe(exam_id)}_{_safe(attempt_id)}{suffix}"

    def save(self, kind: str, exam_id: str, attempt_id: str, data: dict):
        """
        Write a document atomically.

        Raises:
            StorageError: If the document cannot be written
        """
        path = self.path_for(kind, exam_id, attempt_id)
        payload = json.dumps(data, sort_keys=True).encode('utf-8')
        if self._fernet:
            payload = self._fernet.encrypt(payload)

        tmp_path = path.with_name(path.name + ".tmp")
        try:
            with open(tmp_path, 'wb') as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError as e:
            raise StorageError(f"Failed to write {path.name}: {e}") from e

    def load(self, kind: str, exam_id: str, attempt_id: str) -> Optional[dict]:
        """
        Read a document, or None if it does not exist.

        Raises:
            StorageError: If the document is unreadable, corrupt or cannot be decrypted
        """
        path = self.path_for(kind, exam_id, attempt_id)
        if not path.exists():
            return None
        return self._read(path)

    def remove(self, kind: str, exam_id: str, attempt_id: str):
        path = self.path_for(kind, exam_id, attempt_id)
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageError(f"Failed to remove {path.name}: {e}") from e

    def clear_attempt(self, exam_id: str, attempt_id: str):
        """Remove every document of one attempt."""
        for kind in KINDS:
            self.remove(kind, exam_id, attempt_id)

    def has_attempt(self, exam_id: str, attempt_id: str) -> bool:
        return any(self.path_for(kind, exam_id, attempt_id).exists() for kind in KINDS)

    def find_seals(self, exam_id: str) -> List[Tuple[str, dict]]:
        """
        List sealed snapshots left for an exam by a previous run.

        Returns:
            List of (attempt_id, document) pairs, unreadable documents skipped
        """
        suffix = ".enc" if self._fernet else ".json"
        prefix = f"{SEAL}_{_safe(exam_id)}_"
        found = []
        for path in sorted(self.directory.glob(f"{prefix}*{suffix}")):
            attempt_id = path.name[len(prefix):-len(suffix)]
            try:
                found.append((attempt_id, self._read(path)))
            except StorageError:
                continue
        return found

    def dump(self, exam_id: str, attempt_id: str) -> Dict[str, Optional[dict]]:
        """Return every document of an attempt, keyed by kind."""
        return {kind: self.load(kind, exam_id, attempt_id) for kind in KINDS}

    def _read(self, path: Path) -> dict:
        try:
            payload = path.read_bytes()
            if self._fernet:
                payload = self._fernet.decrypt(payload)
            return json.loads(payload)
        except InvalidToken as e:
            raise StorageError(f"Cannot decrypt {path.name}: invalid key or corrupted file") from e
        except (OSError, ValueError) as e:
            raise StorageError(f"Cannot read {path.name}: {e}") from e
