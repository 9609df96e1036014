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

"""Clusters published in the platform's own app catalogue.

Apps carrying the ``login:kubernetes`` scope are Kubernetes API servers that
accept the central OIDC token. Their kube users call back into this tool
(``<cli> --org <org> token --output k8s-auth``) for credentials.
"""

import base64
import logging
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import unquote, urlparse

from ..config import Settings
from ..errors import ConfigError, ProviderRejected, ReauthRequired
from ..models import CloudAccountBinding, ClusterRef, Provider, TokenRecord
from ..openid import OidcClient
from .base import AccountRef, Synthesizer, exec_user, slugify

LOG = logging.getLogger(__name__)

KUBERNETES_SCOPE = "login:kubernetes"
CA_ORIGIN_PATH = "/certificate-authority"


def certificate_authority(origins: Iterable[str]) -> Optional[str]:
    """Base64 CA bundle from an ``https://meta.<host>/certificate-authority#<pem>`` origin."""
    for origin in origins:
        parsed = urlparse(origin)
        if parsed.scheme != "https" or not parsed.netloc.startswith("meta.") or parsed.path != CA_ORIGIN_PATH:
            continue
        if not parsed.fragment:
            return None
        pem = unquote(parsed.fragment)
        if pem.lstrip().startswith("-----BEGIN"):
            return base64.b64encode(pem.encode("utf-8")).decode()
        return pem
    return None


class PlatformSynthesizer(Synthesizer):
    provider = Provider.PLATFORM

    def __init__(self, settings: Settings, client: OidcClient, max_workers: Optional[int] = None):
        super().__init__(settings, max_workers)
        self.client = client

    @property
    def reauth_hint(self) -> str:
        return f"run `{self.settings.cli_name} login`"

    def federate(self, credential: TokenRecord) -> str:
        if not credential.id_token:
            raise ReauthRequired(credential.identity_domain, "no ID token on record", self.reauth_hint)
        return credential.id_token

    def list_accounts(self, id_token: str) -> List[AccountRef]:
        if not self.settings.apps_uri:
            raise ConfigError("apps_uri is not configured")
        apps = self.client.fetch_json(self.settings.apps_uri, id_token)
        if not isinstance(apps, list):
            raise ProviderRejected(f"{self.settings.apps_uri} did not return a list of apps")
        accounts = []
        for app in apps:
            if KUBERNETES_SCOPE not in (app.get("scopes") or []):
                continue
            accounts.append(AccountRef(app["clientId"], app.get("org") or slugify(app.get("name", "")), details=app))
        return accounts

    def describe(self, id_token: str, account: AccountRef) -> CloudAccountBinding:
        app = account.details
        org = app.get("org")
        if not org:
            raise ProviderRejected("missing org")
        ca = certificate_authority(app.get("origins") or [])
        if not ca:
            raise ProviderRejected("missing certificate authority")
        cluster = ClusterRef(
            name=slugify(app["name"]),
            endpoint=app["url"],
            auth_hint={"org": org, "client_id": app["clientId"]},
            certificate_authority_data=ca,
        )
        LOG.debug("found kube app %s at %s", cluster.name, cluster.endpoint)
        return CloudAccountBinding(Provider.PLATFORM, account.account_id, org, KUBERNETES_SCOPE, (cluster,))

    def kube_user(self, binding: CloudAccountBinding, cluster: ClusterRef) -> Dict[str, Any]:
        return exec_user(
            self.settings.cli_name,
            ["--org", cluster.auth_hint["org"], "token", "--output", "k8s-auth"],
            interactive_mode="Always",
        )
