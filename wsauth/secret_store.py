# MIT License
# Copyright (c) 2025 Gordon Trevorrow
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
# The above copyright notice and this permission notice shall be included in all
# copies or substantial portions of the Software.
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.
# Author: Gordon Trevorrow

"""Local persistence for opaque token blobs keyed by (identity_domain, subject).

Two backends share the same contract:

* ``FileSecretStore``: one JSON envelope per key under ``<root>/<domain>/<subject>.json``,
  AES-GCM encrypted when a passphrase is configured.
* ``KeyringSecretStore``: the platform credential store through ``keyring``.

Reads never raise for missing or corrupt records; they log and return ``None`` so
the caller falls back to re-authentication.
"""

import base64
import json
import logging
import os
from pathlib import Path
from typing import Optional, Tuple
from urllib.parse import quote

import keyring
import keyring.errors
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import StoreCorrupt, StoreWriteFailed
from .fileio import advisory_lock, atomic_write_bytes, ensure_private_dir

LOG = logging.getLogger(__name__)

Key = Tuple[str, str]

ENVELOPE_VERSION = 1
KDF_ITERATIONS = 200_000
KEYRING_SERVICE = "wsauth"


# ---------- Envelope encryption ----------

def derive_key(passphrase: str, salt: bytes, iterations: int = KDF_ITERATIONS) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
        backend=default_backend(),
    )
    return kdf.derive(passphrase.encode("utf-8"))


def _aad(key: Key) -> bytes:
    # binds the ciphertext to its key so records cannot be swapped between files
    return f"{key[0]}:{key[1]}".encode("utf-8")


def seal(key: Key, blob: bytes, passphrase: Optional[str], iterations: int = KDF_ITERATIONS) -> bytes:
    if not passphrase:
        payload = {
            "version": ENVELOPE_VERSION,
            "enc": "none",
            "data": base64.b64encode(blob).decode(),
        }
        return json.dumps(payload).encode("utf-8")
    salt = os.urandom(16)
    nonce = os.urandom(12)
    ct = AESGCM(derive_key(passphrase, salt, iterations)).encrypt(nonce, blob, _aad(key))
    payload = {
        "version": ENVELOPE_VERSION,
        "enc": "AESGCM",
        "kdf": "PBKDF2-HMAC-SHA256",
        "iter": iterations,
        "salt": base64.b64encode(salt).decode(),
        "nonce": base64.b64encode(nonce).decode(),
        "ct": base64.b64encode(ct).decode(),
    }
    return json.dumps(payload).encode("utf-8")


def unseal(key: Key, content: bytes, passphrase: Optional[str]) -> bytes:
    """Inverse of :func:`seal`. Raises :class:`StoreCorrupt` for anything unreadable."""
    try:
        obj = json.loads(content.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise StoreCorrupt(key, f"not a valid envelope: {e}") from e
    if not isinstance(obj, dict) or obj.get("version") != ENVELOPE_VERSION:
        raise StoreCorrupt(key, "unsupported envelope version")
    try:
        if obj.get("enc") == "none":
            return base64.b64decode(obj["data"], validate=True)
        if obj.get("enc") != "AESGCM":
            raise StoreCorrupt(key, f"unsupported encryption {obj.get('enc')!r}")
        if not passphrase:
            raise StoreCorrupt(key, "record is encrypted and no passphrase is configured")
        salt = base64.b64decode(obj["salt"])
        nonce = base64.b64decode(obj["nonce"])
        ct = base64.b64decode(obj["ct"])
        secret = derive_key(passphrase, salt, int(obj.get("iter", KDF_ITERATIONS)))
        return AESGCM(secret).decrypt(nonce, ct, _aad(key))
    except StoreCorrupt:
        raise
    except InvalidTag as e:
        raise StoreCorrupt(key, "decryption failed (wrong passphrase or tampered record)") from e
    except (KeyError, ValueError, TypeError) as e:
        raise StoreCorrupt(key, f"malformed envelope: {e}") from e


# ---------- Backends ----------

class SecretStore:
    """get/put/delete of opaque blobs. Implementations never interpret the blob."""

    def get(self, key: Key) -> Optional[bytes]:
        raise NotImplementedError

    def put(self, key: Key, blob: bytes) -> None:
        raise NotImplementedError

    def delete(self, key: Key) -> None:
        raise NotImplementedError


class FileSecretStore(SecretStore):
    def __init__(self, root, passphrase: Optional[str] = None, iterations: int = KDF_ITERATIONS):
        self.root = Path(root)
        self.passphrase = passphrase
        self.iterations = iterations

    def path_for(self, key: Key) -> Path:
        domain, subject = key
        return self.root / quote(domain, safe="") / f"{quote(subject, safe='')}.json"

    def get(self, key: Key) -> Optional[bytes]:
        path = self.path_for(key)
        try:
            content = path.read_bytes()
        except FileNotFoundError:
            LOG.debug("No stored record for %s", key)
            return None
        except OSError as e:
            LOG.warning("Could not read stored record for %s: %s; treating as absent.", key, e)
            return None
        try:
            return unseal(key, content, self.passphrase)
        except StoreCorrupt as e:
            LOG.warning("%s; treating as absent.", e)
            return None

    def put(self, key: Key, blob: bytes) -> None:
        path = self.path_for(key)
        content = seal(key, blob, self.passphrase, self.iterations)
        try:
            ensure_private_dir(self.root)
            ensure_private_dir(path.parent)
            with advisory_lock(path):
                atomic_write_bytes(path, content, mode=0o600)
        except OSError as e:
            raise StoreWriteFailed(key, str(e)) from e
        LOG.debug("Stored record for %s at %s", key, path)

    def delete(self, key: Key) -> None:
        path = self.path_for(key)
        if not path.parent.exists():
            return
        try:
            with advisory_lock(path):
                path.unlink()
            LOG.debug("Deleted stored record for %s", key)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StoreWriteFailed(key, str(e)) from e


class KeyringSecretStore(SecretStore):
    def __init__(self, service: str = KEYRING_SERVICE):
        self.service = service

    @staticmethod
    def entry_name(key: Key) -> str:
        return f"{key[0]}:{key[1]}"

    def get(self, key: Key) -> Optional[bytes]:
        try:
            value = keyring.get_password(self.service, self.entry_name(key))
        except keyring.errors.KeyringError as e:
            LOG.warning("Keyring error reading %s: %s; treating as absent.", key, e)
            return None
        if value is None:
            return None
        try:
            return base64.b64decode(value, validate=True)
        except ValueError:
            LOG.warning("%s; treating as absent.", StoreCorrupt(key, "keyring entry is not base64"))
            return None

    def put(self, key: Key, blob: bytes) -> None:
        try:
            keyring.set_password(self.service, self.entry_name(key), base64.b64encode(blob).decode())
        except keyring.errors.KeyringError as e:
            raise StoreWriteFailed(key, str(e)) from e

    def delete(self, key: Key) -> None:
        try:
            keyring.delete_password(self.service, self.entry_name(key))
        except keyring.errors.PasswordDeleteError:
            pass
        except keyring.errors.KeyringError as e:
            raise StoreWriteFailed(key, str(e)) from e


def open_secret_store(backend: str, root, passphrase: Optional[str] = None) -> SecretStore:
    if backend == "keyring":
        return KeyringSecretStore()
    if backend == "file":
        return FileSecretStore(root, passphrase=passphrase)
    raise ValueError(f"unknown secret backend {backend!r} (expected 'file' or 'keyring')")
