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

"""Data model shared by the repository, login flow, synthesizers and merge engine."""

import enum
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional, Tuple, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # naive timestamps are taken to already be UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class IdentityDomain:
    name: str
    subject: str = "default"

    @property
    def key(self) -> Tuple[str, str]:
        return (self.name, self.subject)

    def __str__(self) -> str:
        if self.subject == "default":
            return self.name
        return f"{self.name} ({self.subject})"


CENTRAL_DOMAIN = IdentityDomain("oidc")


def organization_domain(organization_id: str) -> IdentityDomain:
    return IdentityDomain(f"{CENTRAL_DOMAIN.name}/org/{organization_id}")


@dataclass(frozen=True)
class TokenRecord:
    identity_domain: str
    subject: str
    access_token: str
    refresh_token: Optional[str]
    expires_at: datetime
    scopes: frozenset = frozenset()
    id_token: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict, compare=True)

    def __post_init__(self):
        object.__setattr__(self, "expires_at", as_utc(self.expires_at))
        object.__setattr__(self, "scopes", frozenset(self.scopes or ()))

    def __repr__(self) -> str:
        return (
            f"TokenRecord(identity_domain={self.identity_domain!r}, subject={self.subject!r}, "
            f"expires_at={self.expires_at.isoformat()}, refreshable={self.can_refresh})"
        )

    @property
    def can_refresh(self) -> bool:
        return bool(self.refresh_token)

    def expires_within(self, margin: timedelta, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return self.expires_at <= now + margin

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return self.expires_at <= now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity_domain": self.identity_domain,
            "subject": self.subject,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "id_token": self.id_token,
            "expires_at": self.expires_at.isoformat(),
            "scopes": sorted(self.scopes),
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TokenRecord":
        return cls(
            identity_domain=data["identity_domain"],
            subject=data["subject"],
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            id_token=data.get("id_token"),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            scopes=frozenset(data.get("scopes") or ()),
            metadata=dict(data.get("metadata") or {}),
        )

    def to_blob(self) -> bytes:
        return json.dumps(self.to_dict(), sort_keys=True).encode("utf-8")

    @classmethod
    def from_blob(cls, blob: bytes) -> "TokenRecord":
        return cls.from_dict(json.loads(blob.decode("utf-8")))


class TokenState(enum.Enum):
    NO_TOKEN = "no-token"
    VALID = "valid"
    EXPIRING_SOON = "expiring-soon"
    EXPIRED = "expired"
    REFRESHING = "refreshing"
    REAUTH_REQUIRED = "reauth-required"


# ---------- Login outcomes ----------

@dataclass(frozen=True)
class LoginSuccess:
    record: TokenRecord
    kind = "success"


@dataclass(frozen=True)
class LoginCancelled:
    reason: str = "cancelled by user"
    kind = "cancelled"


@dataclass(frozen=True)
class LoginTimedOut:
    waited: float = 0.0
    kind = "timed-out"


@dataclass(frozen=True)
class LoginRejected:
    reason: str
    kind = "rejected"


LoginOutcome = Union[LoginSuccess, LoginCancelled, LoginTimedOut, LoginRejected]


# ---------- Cloud bindings ----------

class Provider(enum.Enum):
    AWS = "aws"
    AZURE = "azure"
    PLATFORM = "platform"


@dataclass(frozen=True)
class ClusterRef:
    name: str
    endpoint: str
    auth_hint: Mapping[str, Any] = field(default_factory=dict)
    certificate_authority_data: Optional[str] = None


@dataclass(frozen=True)
class CloudAccountBinding:
    provider: Provider
    account_id: str
    display_name: str
    role_or_scope: str
    clusters: Tuple[ClusterRef, ...] = ()

    def sort_key(self):
        return (self.account_id, self.display_name)


@dataclass(frozen=True)
class PartialFailure:
    account: str
    reason: str
    account_id: Optional[str] = None


@dataclass(frozen=True)
class SynthesisResult:
    provider: Provider
    bindings: Tuple[CloudAccountBinding, ...] = ()
    partial_failures: Tuple[PartialFailure, ...] = ()


@dataclass(frozen=True)
class Context:
    """The active environment and organization, passed explicitly to each call."""

    environment: str = "prod"
    organization: Optional[str] = None

    def with_organization(self, organization: Optional[str]) -> "Context":
        return Context(environment=self.environment, organization=organization)
