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

"""Shared machinery for the per-provider SSO synthesizers.

A synthesizer turns one valid credential into ``CloudAccountBinding`` values:
``federate`` exchanges the credential for provider-scoped access,
``list_accounts`` enumerates what the identity can reach and ``describe``
inspects one account. ``synthesize`` runs the per-account work concurrently and
records each failing account as a ``PartialFailure`` instead of aborting.
"""

import json
import logging
import re
import subprocess
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..config import Settings
from ..errors import EnumerationPartialFailure, ProviderRejected, RefreshRejected, TransientNetworkError
from ..merge import FileKind, MergeTarget, Ownership, Projection
from ..models import (
    CloudAccountBinding,
    ClusterRef,
    IdentityDomain,
    PartialFailure,
    Provider,
    SynthesisResult,
    TokenRecord,
)

LOG = logging.getLogger(__name__)

EXEC_API_VERSION = "client.authentication.k8s.io/v1beta1"
COMMAND_TIMEOUT = 120


@dataclass(frozen=True)
class AccountRef:
    account_id: str
    display_name: str
    details: Mapping[str, Any] = field(default_factory=dict, compare=False)


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9._-]+", "-", value.strip().lower()).strip("-")
    return slug or "unnamed"


def run_command(args: Sequence[str], timeout: int = COMMAND_TIMEOUT) -> str:
    LOG.debug("Executing: %s", " ".join(args))
    try:
        proc = subprocess.run(list(args), capture_output=True, text=True, timeout=timeout)
    except FileNotFoundError as e:
        raise ProviderRejected(f"{args[0]} not found on PATH; install it and retry") from e
    except subprocess.TimeoutExpired as e:
        raise TransientNetworkError(" ".join(args[:3]), f"timed out after {timeout}s") from e
    if proc.returncode != 0:
        detail = proc.stderr.strip() or f"exit status {proc.returncode}"
        raise ProviderRejected(f"`{' '.join(args[:3])}` failed: {detail}")
    return proc.stdout


def run_json(args: Sequence[str], timeout: int = COMMAND_TIMEOUT) -> Any:
    out = run_command(args, timeout)
    try:
        return json.loads(out)
    except ValueError as e:
        raise ProviderRejected(f"`{' '.join(args[:3])}` did not return JSON") from e


def exec_user(command: str, args: Sequence[str], env: Optional[Mapping[str, str]] = None,
              interactive_mode: str = "IfAvailable") -> Dict[str, Any]:
    spec: Dict[str, Any] = {
        "apiVersion": EXEC_API_VERSION,
        "command": command,
        "args": list(args),
    }
    if env:
        spec["env"] = [{"name": k, "value": v} for k, v in sorted(env.items())]
    spec["interactiveMode"] = interactive_mode
    spec["provideClusterInfo"] = False
    return {"exec": spec}


def kube_section(name: str, cluster: ClusterRef, user: Dict[str, Any]) -> Dict[str, Any]:
    cluster_body: Dict[str, Any] = {"server": cluster.endpoint}
    if cluster.certificate_authority_data:
        cluster_body["certificate-authority-data"] = cluster.certificate_authority_data
    return {
        "cluster": cluster_body,
        "context": {"cluster": name, "user": name},
        "user": user,
    }


class Synthesizer:
    provider: Provider
    reauth_hint: Optional[str] = None

    def __init__(self, settings: Settings, max_workers: Optional[int] = None):
        self.settings = settings
        self.max_workers = max_workers or settings.max_workers

    # ---------- federated identity domain ----------

    def identity_domain(self) -> Optional[IdentityDomain]:
        """Domain of the provider credential; None means the central OIDC token is used."""
        return None

    def seed(self) -> Optional[TokenRecord]:
        return None

    def refresh(self, record: TokenRecord) -> TokenRecord:
        raise RefreshRejected(f"{self.provider.value} credentials cannot be refreshed here")

    # ---------- enumeration ----------

    def federate(self, credential: TokenRecord) -> Any:
        return credential.access_token

    def list_accounts(self, federated: Any) -> List[AccountRef]:
        raise NotImplementedError

    def describe(self, federated: Any, account: AccountRef) -> CloudAccountBinding:
        raise NotImplementedError

    def synthesize(self, credential: TokenRecord) -> SynthesisResult:
        federated = self.federate(credential)
        accounts = self.list_accounts(federated)
        LOG.info("%s: %d account(s) to inspect", self.provider.value, len(accounts))
        bindings = []
        failures = []
        with ThreadPoolExecutor(max_workers=self.max_workers,
                                thread_name_prefix=f"sso-{self.provider.value}") as pool:
            futures = [(account, pool.submit(self.describe, federated, account)) for account in accounts]
            for account, future in futures:
                try:
                    binding = future.result()
                except Exception as e:
                    err = EnumerationPartialFailure(account.display_name, str(e))
                    LOG.warning("%s: %s skipped (%s)", self.provider.value, err, account.account_id)
                    failures.append(PartialFailure(err.account, err.reason, account.account_id))
                    continue
                LOG.info("%s: %s: %s, %d cluster(s)", self.provider.value, binding.display_name,
                         binding.role_or_scope, len(binding.clusters))
                bindings.append(replace(binding, clusters=tuple(sorted(binding.clusters, key=lambda c: c.name))))
        bindings.sort(key=CloudAccountBinding.sort_key)
        failures.sort(key=lambda f: (f.account_id or "", f.account))
        return SynthesisResult(self.provider, tuple(bindings), tuple(failures))

    # ---------- projection ----------

    @property
    def kube_prefix(self) -> str:
        return f"{self.settings.owned_prefix}{self.provider.value}:"

    def account_prefix(self, account_id: str) -> str:
        """Account ids are unique where display names are not."""
        return f"{self.kube_prefix}{account_id}:"

    def kube_name(self, binding: CloudAccountBinding, cluster_name: str) -> str:
        return f"{self.account_prefix(binding.account_id)}{slugify(binding.display_name)}:{cluster_name}"

    def kube_user(self, binding: CloudAccountBinding, cluster: ClusterRef) -> Dict[str, Any]:
        raise NotImplementedError

    def kube_sections(self, result: SynthesisResult) -> Dict[str, Any]:
        sections = {}
        for binding in result.bindings:
            for cluster in binding.clusters:
                name = self.kube_name(binding, cluster.name)
                sections[name] = kube_section(name, cluster, self.kube_user(binding, cluster))
        return sections

    def kube_ownership(self, result: SynthesisResult) -> Ownership:
        keep = tuple(self.account_prefix(f.account_id or f.account) for f in result.partial_failures)
        return Ownership(prefixes=(self.kube_prefix,), keep_prefixes=keep)

    def projections(self, result: SynthesisResult) -> List[Projection]:
        target = MergeTarget(self.settings.kubeconfig, FileKind.KUBECONFIG, self.kube_ownership(result))
        return [Projection(target, self.kube_sections(result))]
