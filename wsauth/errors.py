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

"""Typed errors raised by the authentication core.

Every error carries a ``category`` so callers can tell the user which remedy
applies: log in again, wait for an unreachable provider, or look at a local
file that could not be safely updated.
"""

from typing import Optional

REAUTH = "reauth"
UNREACHABLE = "unreachable"
LOCAL_FILE = "local-file"
CONFIG = "config"


class WsAuthError(Exception):
    category = CONFIG


class ConfigError(WsAuthError):
    category = CONFIG


# ---------- Secret store ----------

class StoreCorrupt(WsAuthError):
    """A stored record could not be decoded. Logged and treated as absent."""

    category = LOCAL_FILE

    def __init__(self, key, reason: str):
        super().__init__(f"stored record for {key} is corrupt: {reason}")
        self.key = key
        self.reason = reason


class StoreWriteFailed(WsAuthError):
    category = LOCAL_FILE

    def __init__(self, key, reason: str):
        super().__init__(f"unable to persist record for {key}: {reason}")
        self.key = key
        self.reason = reason


# ---------- Token lifecycle ----------

class RefreshRejected(WsAuthError):
    """The identity provider refused the refresh token (revoked, expired, invalid)."""

    category = REAUTH

    def __init__(self, reason: str):
        super().__init__(f"refresh rejected: {reason}")
        self.reason = reason


class ReauthRequired(WsAuthError):
    category = REAUTH

    def __init__(self, domain: str, reason: str, hint: Optional[str] = None):
        message = f"{domain}: re-authentication required ({reason})"
        if hint:
            message += f"; {hint}"
        super().__init__(message)
        self.domain = domain
        self.reason = reason
        self.hint = hint


class TransientNetworkError(WsAuthError):
    category = UNREACHABLE

    def __init__(self, target: str, reason: str):
        super().__init__(f"{target} is unreachable: {reason}")
        self.target = target
        self.reason = reason


# ---------- Interactive login ----------

class HandshakeCancelled(WsAuthError):
    category = REAUTH

    def __init__(self, reason: str = "cancelled by user"):
        super().__init__(f"login cancelled: {reason}")
        self.reason = reason


class HandshakeTimedOut(WsAuthError):
    category = REAUTH

    def __init__(self, waited: float):
        super().__init__(f"login timed out after {int(waited)}s")
        self.waited = waited


class ProviderRejected(WsAuthError):
    """A provider (identity or cloud) refused the request; reason is verbatim."""

    category = UNREACHABLE

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class EnumerationPartialFailure(WsAuthError):
    category = UNREACHABLE

    def __init__(self, account: str, reason: str):
        super().__init__(f"{account}: {reason}")
        self.account = account
        self.reason = reason


# ---------- Config files ----------

class MergeTargetUnparseable(WsAuthError):
    category = LOCAL_FILE

    def __init__(self, path: str, reason: str):
        super().__init__(f"refusing to update {path}: cannot parse existing file ({reason})")
        self.path = path
        self.reason = reason


class AtomicWriteFailed(WsAuthError):
    category = LOCAL_FILE

    def __init__(self, path: str, reason: str):
        super().__init__(f"unable to write {path}: {reason}; original file preserved")
        self.path = path
        self.reason = reason
