"""
Signing Key Management

HMAC signing keys for usage records and invoices are derived from a master
secret with PBKDF2, one key per key id. Rotation adds a new active key id;
retired ids stay available for verification of older records.
"""

import hashlib
import hmac
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import structlog
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = structlog.get_logger()

KDF_SALT_PREFIX = b"wilsy-metering-v1:"


class SigningKeyring:
    """
    Keyring of derived HMAC-SHA256 keys.

    Key material never leaves this object: to_dict() exposes key ids only.
    """

    def __init__(
        self,
        master_secret: Optional[str] = None,
        active_key_id: Optional[str] = None,
        iterations: int = 100_000,
    ):
        secret = master_secret or os.environ.get("USAGE_SIGNING_SECRET", "")
        if not secret:
            logger.warning(
                "signing_secret_default",
                message="USAGE_SIGNING_SECRET not set. Using development secret.",
            )
            secret = "wilsy-metering-dev-secret"

        self._master = secret.encode("utf-8")
        self._iterations = iterations
        self._keys: Dict[str, bytes] = {}
        self._created: Dict[str, str] = {}
        self.active_key_id = active_key_id or os.environ.get("USAGE_SIGNING_KEY_ID", "usage-k1")
        self._derive(self.active_key_id)

    def _derive(self, key_id: str) -> bytes:
        if key_id not in self._keys:
            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=32,
                salt=KDF_SALT_PREFIX + key_id.encode("utf-8"),
                iterations=self._iterations,
            )
            self._keys[key_id] = kdf.derive(self._master)
            self._created[key_id] = datetime.now(timezone.utc).isoformat()
        return self._keys[key_id]

    @property
    def key_ids(self) -> List[str]:
        return list(self._keys)

    def sign(self, data: bytes, key_id: Optional[str] = None) -> Tuple[str, str]:
        """Sign data. Returns (hex signature, key id used)."""
        key_id = key_id or self.active_key_id
        signature = hmac.new(self._derive(key_id), data, hashlib.sha256).hexdigest()
        return signature, key_id

    def verify(self, data: bytes, signature: str, key_id: str) -> bool:
        """Verify a signature made by any known key id."""
        if not key_id or key_id not in self._keys:
            return False
        expected = hmac.new(self._keys[key_id], data, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature or "")

    def rotate(self, new_key_id: str) -> str:
        """Make new_key_id the signing key. Old keys keep verifying."""
        old = self.active_key_id
        self._derive(new_key_id)
        self.active_key_id = new_key_id
        logger.info("signing_key_rotated", old_key_id=old, new_key_id=new_key_id)
        return new_key_id

    def add_verification_key(self, key_id: str) -> None:
        """Derive a retired key id so records signed with it still verify."""
        self._derive(key_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "active_key_id": self.active_key_id,
            "keys": [
                {"key_id": key_id, "derived_at": self._created[key_id]}
                for key_id in self._keys
            ],
        }
