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

"""AWS IAM Identity Center: accounts, roles and EKS clusters.

The federated credential is the Identity Center access token of one
``sso-session``. It lives in its own identity domain (``aws-sso/<session>``):
seeded from the AWS CLI's SSO cache after ``aws sso login`` and refreshed
through ``sso-oidc:CreateToken`` with the client registration the CLI cached
alongside it.
"""

import hashlib
import json
import logging
import os
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

import boto3
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from ..config import Settings
from ..errors import ProviderRejected, ReauthRequired, RefreshRejected, TransientNetworkError, WsAuthError
from ..merge import FileKind, MergeTarget, Ownership
from ..models import (
    CloudAccountBinding,
    ClusterRef,
    IdentityDomain,
    Provider,
    SynthesisResult,
    TokenRecord,
    as_utc,
    utcnow,
)
from .base import AccountRef, Projection, Synthesizer, exec_user, slugify

LOG = logging.getLogger(__name__)

SSO_SCOPE = "sso:account:access"
# Lower index is higher priority; roles not listed rank below all of these
ROLE_HIERARCHY = ("administrator", "AdministratorAccess", "owner", "developer")
REJECTED_CODES = (
    "InvalidGrantException",
    "ExpiredTokenException",
    "InvalidClientException",
    "UnauthorizedClientException",
    "AccessDeniedException",
)
THROTTLE_CODES = ("ThrottlingException", "TooManyRequestsException", "SlowDownException")


def cache_file(cache_dir: str, session_name: str) -> str:
    digest = hashlib.sha1(session_name.encode("utf-8")).hexdigest()
    return os.path.join(os.path.expanduser(cache_dir), f"{digest}.json")


def parse_aws_timestamp(value: str) -> datetime:
    value = value.strip().replace("UTC", "+00:00")
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(value))


def role_rank(role_name: str) -> int:
    if role_name in ROLE_HIERARCHY:
        return ROLE_HIERARCHY.index(role_name)
    return len(ROLE_HIERARCHY)


def pick_role(role_names: Sequence[str]) -> Optional[str]:
    if not role_names:
        return None
    return min(role_names, key=lambda r: (role_rank(r), r))


def email_to_slug(email: Optional[str], prefix: Optional[str], suffix: Optional[str]) -> Optional[str]:
    """``platform+aws-acme@example.com`` -> ``acme`` for prefix ``platform+aws-`` and suffix ``@example.com``."""
    if not email or not (prefix or suffix):
        return None
    local = email
    if prefix:
        if not local.startswith(prefix):
            return None
        local = local[len(prefix):]
    if suffix:
        if not local.endswith(suffix):
            return None
        local = local[: -len(suffix)]
    return slugify(local) if local else None


def botocore_error(e: Exception, target: str) -> WsAuthError:
    if isinstance(e, (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError)):
        return TransientNetworkError(target, str(e))
    if isinstance(e, ClientError):
        err = e.response.get("Error", {})
        code = err.get("Code", "")
        if code in THROTTLE_CODES:
            return TransientNetworkError(target, code)
        return ProviderRejected(f"{target}: {code}: {err.get('Message', '')}".rstrip(": "))
    return ProviderRejected(f"{target}: {e}")


class AwsSsoSynthesizer(Synthesizer):
    provider = Provider.AWS

    def __init__(self, settings: Settings, max_workers: Optional[int] = None, session_factory=boto3.session.Session):
        super().__init__(settings, max_workers)
        self.session_factory = session_factory

    @property
    def session_name(self) -> str:
        return self.settings.aws_sso_session

    @property
    def reauth_hint(self) -> str:
        return f"run `aws sso login --sso-session {self.session_name}`"

    def _client(self, service: str, region: Optional[str] = None, **credentials):
        # sessions are not thread-safe; one per call
        return self.session_factory(**credentials).client(service, region_name=region or self.settings.aws_sso_region)

    # ---------- federated identity domain ----------

    def identity_domain(self) -> IdentityDomain:
        return IdentityDomain(f"aws-sso/{self.session_name}")

    def seed(self) -> Optional[TokenRecord]:
        path = cache_file(self.settings.aws_cache_dir, self.session_name)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            expires_at = parse_aws_timestamp(data["expiresAt"])
            access_token = data["accessToken"]
        except FileNotFoundError:
            LOG.debug("No AWS SSO cache at %s", path)
            return None
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            LOG.warning("Ignoring unreadable AWS SSO cache %s: %s", path, e)
            return None
        domain = self.identity_domain()
        metadata = {
            "client_id": data.get("clientId"),
            "client_secret": data.get("clientSecret"),
            "registration_expires_at": data.get("registrationExpiresAt"),
            "region": data.get("region") or self.settings.aws_sso_region,
            "start_url": data.get("startUrl"),
        }
        return TokenRecord(
            identity_domain=domain.name,
            subject=domain.subject,
            access_token=access_token,
            refresh_token=data.get("refreshToken"),
            expires_at=expires_at,
            scopes=frozenset([SSO_SCOPE]),
            metadata={k: v for k, v in metadata.items() if v},
        )

    def refresh(self, record: TokenRecord) -> TokenRecord:
        md = record.metadata
        if not (md.get("client_id") and md.get("client_secret")):
            raise RefreshRejected("no cached client registration")
        if md.get("registration_expires_at") and parse_aws_timestamp(md["registration_expires_at"]) <= utcnow():
            raise RefreshRejected("client registration expired")
        try:
            resp = self._client("sso-oidc", md.get("region")).create_token(
                clientId=md["client_id"],
                clientSecret=md["client_secret"],
                grantType="refresh_token",
                refreshToken=record.refresh_token,
            )
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in REJECTED_CODES:
                raise RefreshRejected(f"{code}: {e.response.get('Error', {}).get('Message', '')}") from e
            raise botocore_error(e, "sso-oidc:CreateToken") from e
        except BotoCoreError as e:
            raise botocore_error(e, "sso-oidc:CreateToken") from e
        return TokenRecord(
            identity_domain=record.identity_domain,
            subject=record.subject,
            access_token=resp["accessToken"],
            refresh_token=resp.get("refreshToken") or record.refresh_token,
            expires_at=utcnow() + timedelta(seconds=int(resp.get("expiresIn", 3600))),
            scopes=record.scopes,
            metadata=record.metadata,
        )

    # ---------- enumeration ----------

    def list_accounts(self, access_token: str) -> List[AccountRef]:
        accounts: List[AccountRef] = []
        slugs = set()
        try:
            paginator = self._client("sso").get_paginator("list_accounts")
            for page in paginator.paginate(accessToken=access_token):
                for acct in page.get("accountList", []):
                    account_id = acct["accountId"]
                    slug = email_to_slug(acct.get("emailAddress"), self.settings.aws_email_prefix,
                                         self.settings.aws_email_suffix)
                    if not slug or slug in slugs:
                        slug = f"acct-{account_id}"
                    slugs.add(slug)
                    accounts.append(AccountRef(account_id, slug, details=acct))
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "UnauthorizedException":
                raise ReauthRequired(str(self.identity_domain()), "Identity Center token not accepted",
                                     self.reauth_hint) from e
            raise botocore_error(e, "sso:ListAccounts") from e
        except BotoCoreError as e:
            raise botocore_error(e, "sso:ListAccounts") from e
        return accounts

    def describe(self, access_token: str, account: AccountRef) -> CloudAccountBinding:
        try:
            sso = self._client("sso")
            roles = []
            for page in sso.get_paginator("list_account_roles").paginate(
                accessToken=access_token, accountId=account.account_id
            ):
                roles.extend(r["roleName"] for r in page.get("roleList", []))
            role = pick_role(roles)
            if role is None:
                raise ProviderRejected("no roles assigned")
            creds = sso.get_role_credentials(
                roleName=role, accountId=account.account_id, accessToken=access_token
            )["roleCredentials"]
            clusters = self._clusters(creds)
        except ClientError as e:
            raise botocore_error(e, account.display_name) from e
        except BotoCoreError as e:
            raise botocore_error(e, account.display_name) from e
        return CloudAccountBinding(Provider.AWS, account.account_id, account.display_name, role, tuple(clusters))

    def _clusters(self, creds: Dict[str, Any]) -> List[ClusterRef]:
        clusters = []
        for region in self.settings.eks_regions():
            eks = self._client(
                "eks",
                region,
                aws_access_key_id=creds["accessKeyId"],
                aws_secret_access_key=creds["secretAccessKey"],
                aws_session_token=creds["sessionToken"],
            )
            for page in eks.get_paginator("list_clusters").paginate():
                for name in page.get("clusters", []):
                    cluster = eks.describe_cluster(name=name)["cluster"]
                    if not cluster.get("endpoint"):
                        LOG.info("aws: %s in %s has no endpoint yet; skipping", name, region)
                        continue
                    clusters.append(ClusterRef(
                        name=name,
                        endpoint=cluster["endpoint"],
                        auth_hint={"region": region},
                        certificate_authority_data=(cluster.get("certificateAuthority") or {}).get("data"),
                    ))
        return clusters

    # ---------- projection ----------

    def profile_name(self, slug: str) -> str:
        return f"{self.settings.owned_prefix}{slug}"

    @property
    def session_section(self) -> str:
        return f"sso-session {self.session_name}"

    def profile_sections(self, result: SynthesisResult) -> Dict[str, Dict[str, str]]:
        sections = {}
        if self.settings.aws_sso_start_url:
            sections[self.session_section] = {
                "sso_start_url": self.settings.aws_sso_start_url,
                "sso_region": self.settings.aws_sso_region,
                "sso_registration_scopes": SSO_SCOPE,
            }
        for binding in result.bindings:
            sections[f"profile {self.profile_name(binding.display_name)}"] = {
                "sso_session": self.session_name,
                "sso_account_id": binding.account_id,
                "sso_role_name": binding.role_or_scope,
                "region": self.settings.eks_regions()[0],
                "output": "json",
            }
        return sections

    def profile_ownership(self, result: SynthesisResult) -> Ownership:
        names = frozenset([self.session_section]) if self.settings.aws_sso_start_url else frozenset()
        keep = frozenset(f"profile {self.profile_name(f.account)}" for f in result.partial_failures)
        return Ownership(prefixes=(f"profile {self.settings.owned_prefix}",), names=names, keep_names=keep)

    def kube_user(self, binding: CloudAccountBinding, cluster: ClusterRef) -> Dict[str, Any]:
        region = cluster.auth_hint.get("region", self.settings.aws_sso_region)
        return exec_user(
            "aws",
            ["--region", region, "eks", "get-token", "--cluster-name", cluster.name, "--output", "json"],
            env={"AWS_PROFILE": self.profile_name(binding.display_name)},
        )

    def projections(self, result: SynthesisResult) -> List[Projection]:
        profiles = Projection(
            MergeTarget(self.settings.aws_config_file, FileKind.INI, self.profile_ownership(result)),
            self.profile_sections(result),
        )
        return [profiles] + super().projections(result)
