"""Credential store — durable, atomic persistence of session credentials.

The credential blob is opaque here (its shape belongs to the transport).
It is wrapped in a small envelope with a SHA-256 checksum so a torn or
tampered file is detected on load and treated as "no credentials".
"""

import hashlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from .errors import PersistenceError

logger = logging.getLogger("wagate.credentials")

CREDS_FILENAME = "creds.json"
_ENVELOPE_VERSION = 1


def _checksum(creds: dict) -> str:
    payload = json.dumps(creds, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class CredentialStore:
    """File-backed credential store.

    Writes go to a temp file in the same directory and are moved over
    the target with os.replace, so a crash leaves either the old file or
    the new one, never a partial write.
    """

    def __init__(self, auth_dir: str, filename: str = CREDS_FILENAME):
        self.auth_dir = Path(os.path.expanduser(auth_dir))
        self.path = self.auth_dir / filename

    def exists(self) -> bool:
        return self.path.is_file()

    def load(self) -> Optional[dict]:
        """Load credentials.

        Returns None on first run (no file) and on any read/parse/checksum
        failure. Failures are logged; the caller falls back to pairing.
        """
        if not self.path.is_file():
            logger.info(f"No stored credentials at {self.path} — pairing required")
            return None

        try:
            with open(self.path, encoding="utf-8") as f:
                envelope = json.load(f)
            creds = envelope["creds"]
            checksum = envelope["checksum"]
            if not isinstance(creds, dict):
                raise PersistenceError("credential payload is not an object")
            if _checksum(creds) != checksum:
                raise PersistenceError("checksum mismatch")
        except (OSError, ValueError, KeyError, TypeError, PersistenceError) as e:
            logger.error(f"Failed to load credentials from {self.path}: {e}. Treating as unpaired.")
            return None

        logger.debug(f"Loaded credentials from {self.path}")
        return creds

    def save(self, creds: dict) -> None:
        """Atomically replace stored credentials.

        Raises:
            PersistenceError: if the write could not be completed. The
                previous file, if any, is left untouched.
        """
        try:
            envelope = {
                "version": _ENVELOPE_VERSION,
                "checksum": _checksum(creds),
                "creds": creds,
            }
            data = json.dumps(envelope, indent=2, sort_keys=True)
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"Credentials are not serializable: {e}") from e

        temp_path = None
        old_umask = os.umask(0o077)
        try:
            self.auth_dir.mkdir(parents=True, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(
                dir=self.auth_dir,
                prefix=".tmp_creds_",
                suffix=".json",
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())

            os.replace(temp_path, self.path)
            temp_path = None
            self._fsync_dir()
        except OSError as e:
            raise PersistenceError(f"Failed to save credentials to {self.path}: {e}") from e
        finally:
            os.umask(old_umask)
            if temp_path and os.path.exists(temp_path):
                try:
                    os.unlink(temp_path)
                except OSError:
                    pass

        logger.debug(f"Credentials saved to {self.path}")

    def clear(self) -> None:
        """Remove stored credentials (next start will pair again)."""
        try:
            self.path.unlink()
            logger.info(f"Cleared credentials at {self.path}")
        except FileNotFoundError:
            pass
        except OSError as e:
            raise PersistenceError(f"Failed to clear credentials at {self.path}: {e}") from e

    def _fsync_dir(self):
        """Persist the rename itself (POSIX only)."""
        if os.name != "posix":
            return
        try:
            dir_fd = os.open(self.auth_dir, os.O_RDONLY)
        except OSError:
            return
        try:
            os.fsync(dir_fd)
        except OSError:
            pass
        finally:
            os.close(dir_fd)
