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

"""Lifecycle of one identity domain's token.

The repository is the only component that mutates or persists a domain's
TokenRecord. It hands out a currently valid access token, refreshing it once
when it is inside the safety margin, and otherwise raises ``ReauthRequired``
so the interactive caller can decide whether to run a login.
"""

import dataclasses
import logging
import threading
from concurrent.futures import Future
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from .errors import ReauthRequired, RefreshRejected, StoreCorrupt
from .models import IdentityDomain, TokenRecord, TokenState, utcnow
from .openid import decode_jwt_claims
from .secret_store import SecretStore

LOG = logging.getLogger(__name__)

Refresher = Callable[[TokenRecord], TokenRecord]
SeedSource = Callable[[], Optional[TokenRecord]]


class TokenRepository:
    def __init__(
        self,
        domain: IdentityDomain,
        store: SecretStore,
        refresher: Refresher,
        seed: Optional[SeedSource] = None,
        safety_margin: int = 60,
        clock: Callable[[], datetime] = utcnow,
        reauth_hint: Optional[str] = None,
    ):
        self.domain = domain
        self.store = store
        self.refresher = refresher
        self.seed = seed
        self.margin = timedelta(seconds=safety_margin)
        self.clock = clock
        self.reauth_hint = reauth_hint
        self._lock = threading.Lock()
        self._record: Optional[TokenRecord] = None
        self._loaded = False
        self._reauth_reason: Optional[str] = None
        self._inflight: Optional[Future] = None

    # ---------- state ----------

    @property
    def state(self) -> TokenState:
        with self._lock:
            if self._inflight is not None:
                return TokenState.REFRESHING
            if self._reauth_reason is not None:
                return TokenState.REAUTH_REQUIRED
            self._load()
            if self._record is None:
                return TokenState.NO_TOKEN
            now = self.clock()
            if self._record.is_expired(now):
                return TokenState.EXPIRED
            if self._record.expires_within(self.margin, now):
                return TokenState.EXPIRING_SOON
            return TokenState.VALID

    def _load(self) -> None:
        # caller holds self._lock
        if self._loaded:
            return
        record = None
        blob = self.store.get(self.domain.key)
        if blob is not None:
            try:
                record = TokenRecord.from_blob(blob)
            except (ValueError, KeyError, TypeError) as e:
                LOG.warning("%s; treating as absent.", StoreCorrupt(self.domain.key, str(e)))
        if self.seed is not None:
            seeded = self.seed()
            if seeded is not None and (record is None or seeded.expires_at > record.expires_at):
                LOG.debug("Adopting newer external token for %s (expires %s)", self.domain, seeded.expires_at.isoformat())
                record = seeded
        self._record = record
        # an absent record is looked up again next time
        self._loaded = record is not None

    def _reauth(self, reason: str) -> ReauthRequired:
        return ReauthRequired(str(self.domain), reason, self.reauth_hint)

    # ---------- reads ----------

    def current(self) -> Optional[TokenRecord]:
        """The stored record as-is, without refreshing."""
        with self._lock:
            self._load()
            return self._record

    def claims(self) -> Dict[str, Any]:
        record = self.current()
        if record is None:
            return {}
        return decode_jwt_claims(record.id_token) or decode_jwt_claims(record.access_token)

    def get_valid_record(self) -> TokenRecord:
        with self._lock:
            if self._reauth_reason is not None:
                raise self._reauth(self._reauth_reason)
            self._load()
            record = self._record
            if record is None:
                raise self._reauth("no token")
            now = self.clock()
            if not record.expires_within(self.margin, now):
                return record
            if not record.can_refresh:
                if record.is_expired(now):
                    self._reauth_reason = "token expired and no refresh token is available"
                    raise self._reauth(self._reauth_reason)
                return record
            future = self._inflight
            owner = future is None
            if owner:
                future = Future()
                self._inflight = future
        if owner:
            self._refresh(record, future)
        return future.result()

    def get_valid_token(self) -> str:
        return self.get_valid_record().access_token

    def _refresh(self, record: TokenRecord, future: Future) -> None:
        LOG.info("Token for %s expires at %s; refreshing.", self.domain, record.expires_at.isoformat())
        try:
            new = self._normalize(self.refresher(record))
        except RefreshRejected as e:
            LOG.warning("Refresh for %s rejected: %s", self.domain, e.reason)
            with self._lock:
                self._reauth_reason = e.reason
                self._inflight = None
            future.set_exception(self._reauth(e.reason))
            return
        except BaseException as e:
            with self._lock:
                self._inflight = None
            future.set_exception(e)
            if not isinstance(e, Exception):
                raise
            return

        with self._lock:
            self._record = new
            self._inflight = None
        try:
            self.store.put(self.domain.key, new.to_blob())
        except Exception as e:
            # in-memory record stays usable for this process
            future.set_exception(e)
            return
        LOG.info("Token for %s refreshed; valid until %s", self.domain, new.expires_at.isoformat())
        future.set_result(new)

    # ---------- writes ----------

    def _normalize(self, record: TokenRecord) -> TokenRecord:
        if (record.identity_domain, record.subject) != self.domain.key:
            record = dataclasses.replace(record, identity_domain=self.domain.name, subject=self.domain.subject)
        return record

    def accept(self, record: TokenRecord) -> TokenRecord:
        """Persist a record obtained by an interactive login and leave ReauthRequired."""
        record = self._normalize(record)
        self.store.put(self.domain.key, record.to_blob())
        with self._lock:
            self._record = record
            self._loaded = True
            self._reauth_reason = None
        LOG.info("Stored new token for %s; valid until %s", self.domain, record.expires_at.isoformat())
        return record

    def clear(self) -> None:
        self.store.delete(self.domain.key)
        with self._lock:
            self._record = None
            self._loaded = False
            self._reauth_reason = None
        LOG.info("Removed stored token for %s", self.domain)
