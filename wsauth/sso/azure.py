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

"""Azure subscriptions and AKS clusters through the ``az`` CLI.

``az`` owns the Azure login; its access token for the tenant is tracked as the
``azure/<tenant>`` identity domain so an expired ``az login`` surfaces as
ReauthRequired before any enumeration starts. ``az`` is never allowed to
write kubeconfig itself: cluster credentials are requested on stdout.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import yaml

from ..config import Settings
from ..errors import ProviderRejected, RefreshRejected, WsAuthError
from ..models import CloudAccountBinding, ClusterRef, IdentityDomain, Provider, TokenRecord, as_utc
from .base import AccountRef, Synthesizer, exec_user, run_command, run_json

LOG = logging.getLogger(__name__)

# AKS AAD server application id used by kubelogin
KUBELOGIN_SERVER_ID = "6dae42f8-4368-4678-94ff-3960e28e3630"
# az keeps the real refresh token in its own cache; asking it again renews the access token
AZ_CLI_REFRESH = "az-cli"


def parse_az_expiry(data: Dict[str, Any]) -> datetime:
    if data.get("expires_on"):
        return datetime.fromtimestamp(int(data["expires_on"]), tz=timezone.utc)
    # expiresOn is local wall-clock time without an offset
    local = datetime.fromisoformat(str(data["expiresOn"]))
    if local.tzinfo is None:
        local = local.astimezone()
    return as_utc(local)


class AzureSynthesizer(Synthesizer):
    provider = Provider.AZURE
    reauth_hint = "run `az login`"

    def __init__(self, settings: Settings, max_workers: Optional[int] = None,
                 runner: Callable[..., Any] = run_json, text_runner: Callable[..., str] = run_command):
        super().__init__(settings, max_workers)
        self.runner = runner
        self.text_runner = text_runner

    # ---------- federated identity domain ----------

    def identity_domain(self) -> IdentityDomain:
        return IdentityDomain(f"azure/{self.settings.azure_tenant or 'default'}")

    def _access_token(self) -> TokenRecord:
        args = ["az", "account", "get-access-token", "--output", "json"]
        if self.settings.azure_tenant:
            args += ["--tenant", self.settings.azure_tenant]
        data = self.runner(args)
        try:
            expires_at = parse_az_expiry(data)
            access_token = data["accessToken"]
        except (KeyError, ValueError, TypeError) as e:
            raise ProviderRejected(f"unexpected az get-access-token output: {e}") from e
        domain = self.identity_domain()
        return TokenRecord(
            identity_domain=domain.name,
            subject=domain.subject,
            access_token=access_token,
            refresh_token=AZ_CLI_REFRESH,
            expires_at=expires_at,
            metadata={"tenant": data.get("tenant") or self.settings.azure_tenant},
        )

    def seed(self) -> Optional[TokenRecord]:
        try:
            return self._access_token()
        except WsAuthError as e:
            LOG.debug("No usable az login: %s", e)
            return None

    def refresh(self, record: TokenRecord) -> TokenRecord:
        try:
            return self._access_token()
        except ProviderRejected as e:
            raise RefreshRejected(e.reason) from e

    # ---------- enumeration ----------

    def federate(self, credential: TokenRecord) -> Optional[str]:
        return credential.metadata.get("tenant")

    def list_accounts(self, tenant: Optional[str]) -> List[AccountRef]:
        accounts = []
        for sub in self.runner(["az", "account", "list", "--all", "--output", "json"]):
            if sub.get("state") == "Disabled":
                LOG.debug("azure: skipping disabled subscription %s", sub.get("name"))
                continue
            if tenant and sub.get("tenantId") not in (None, tenant):
                continue
            accounts.append(AccountRef(sub["id"], sub.get("name") or sub["id"], details=sub))
        return accounts

    def describe(self, tenant: Optional[str], account: AccountRef) -> CloudAccountBinding:
        clusters = []
        aks = self.runner(["az", "aks", "list", "--subscription", account.account_id, "--output", "json"])
        for item in aks:
            clusters.append(self._cluster(account.account_id, item["name"], item["resourceGroup"]))
        return CloudAccountBinding(
            Provider.AZURE, account.account_id, account.display_name,
            f"/subscriptions/{account.account_id}", tuple(clusters),
        )

    def _cluster(self, subscription: str, name: str, resource_group: str) -> ClusterRef:
        out = self.text_runner([
            "az", "aks", "get-credentials",
            "--subscription", subscription,
            "--resource-group", resource_group,
            "--name", name,
            "--file", "-",
        ])
        try:
            entry = yaml.safe_load(out)["clusters"][0]["cluster"]
            server = entry["server"]
        except (yaml.YAMLError, KeyError, IndexError, TypeError) as e:
            raise ProviderRejected(f"unexpected kubeconfig from az aks get-credentials for {name}") from e
        return ClusterRef(
            name=name,
            endpoint=server,
            auth_hint={"subscription": subscription, "resource_group": resource_group},
            certificate_authority_data=entry.get("certificate-authority-data"),
        )

    # ---------- projection ----------

    def kube_user(self, binding: CloudAccountBinding, cluster: ClusterRef) -> Dict[str, Any]:
        return exec_user(
            "kubelogin",
            ["get-token", "--login", "azurecli", "--server-id", KUBELOGIN_SERVER_ID],
        )
