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

"""Caller-facing surface of the authentication core.

``AuthCore`` owns one TokenRepository per identity domain and wires the
login flow, the SSO synthesizers and the merge engine together. Work on
independent domains, providers and accounts runs concurrently; a failure in
one is reported for that one and never aborts the others.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import requests

from .config import Settings, resolve_passphrase
from .errors import ConfigError, ReauthRequired, WsAuthError
from .merge import MergeReport, MergeTarget, Projection, apply as merge_apply
from .models import (
    CENTRAL_DOMAIN,
    Context,
    IdentityDomain,
    LoginOutcome,
    LoginRejected,
    LoginSuccess,
    Provider,
    SynthesisResult,
    TokenRecord,
    organization_domain,
)
from .openid import OidcClient, acr_values, claims_mismatch, decode_jwt_claims, make_login_flow
from .registries import registry_projections
from .secret_store import SecretStore, open_secret_store
from .sso import AwsSsoSynthesizer, AzureSynthesizer, PlatformSynthesizer, Synthesizer
from .sso.base import EXEC_API_VERSION
from .token_repository import TokenRepository

LOG = logging.getLogger(__name__)

Outcome = Union[Any, WsAuthError]


def resolve_organization_id(claims: Mapping[str, Any], organization: str, namespace: str) -> Optional[str]:
    """Match ``organization`` against the id or the name in the ``<namespace>/orgs`` claim."""
    orgs = claims.get(f"{namespace}/orgs") or {}
    if not isinstance(orgs, dict):
        return None
    for org_id, name in sorted(orgs.items()):
        if organization in (org_id, name):
            return org_id
    return None


@dataclass
class SyncReport:
    results: Dict[Provider, Union[SynthesisResult, WsAuthError]] = field(default_factory=dict)
    merges: List[Tuple[str, Union[MergeReport, WsAuthError]]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        if any(isinstance(r, WsAuthError) for r in self.results.values()):
            return False
        return not any(isinstance(m, WsAuthError) for _, m in self.merges)


class AuthCore:
    def __init__(
        self,
        settings: Settings,
        context: Optional[Context] = None,
        store: Optional[SecretStore] = None,
        http: Optional[requests.Session] = None,
        oidc: Optional[OidcClient] = None,
        synthesizers: Optional[Mapping[Provider, Synthesizer]] = None,
    ):
        self.settings = settings
        self.context = context or Context(environment=settings.environment)
        if store is None:
            store = open_secret_store(settings.secret_backend, settings.auth_dir, resolve_passphrase(settings))
        self.store = store
        self.oidc = oidc or OidcClient(settings, http)
        if synthesizers is None:
            synthesizers = {
                Provider.AWS: AwsSsoSynthesizer(settings),
                Provider.AZURE: AzureSynthesizer(settings),
                Provider.PLATFORM: PlatformSynthesizer(settings, self.oidc),
            }
        self.synthesizers = dict(synthesizers)
        self._repos: Dict[IdentityDomain, TokenRepository] = {}
        self._lock = threading.Lock()

    # ---------- identity domains ----------

    def central_domain(self, context: Optional[Context] = None) -> IdentityDomain:
        context = context or self.context
        if context.organization:
            return organization_domain(context.organization)
        return CENTRAL_DOMAIN

    def _login_hint(self, domain: IdentityDomain) -> str:
        if domain == CENTRAL_DOMAIN:
            return f"run `{self.settings.cli_name} login`"
        return f"run `{self.settings.cli_name} login --org {domain.name.rsplit('/', 1)[-1]}`"

    def repository(self, domain: IdentityDomain) -> TokenRepository:
        with self._lock:
            repo = self._repos.get(domain)
            if repo is not None:
                return repo
            if domain == CENTRAL_DOMAIN or domain.name.startswith(f"{CENTRAL_DOMAIN.name}/"):
                refresher, seed, hint = self.oidc.refresh, None, self._login_hint(domain)
            else:
                owner = next((s for s in self.synthesizers.values() if s.identity_domain() == domain), None)
                if owner is None:
                    raise ConfigError(f"unknown identity domain {domain}")
                refresher, seed, hint = owner.refresh, owner.seed, owner.reauth_hint
            repo = TokenRepository(domain, self.store, refresher, seed=seed,
                                   safety_margin=self.settings.safety_margin, reauth_hint=hint)
            self._repos[domain] = repo
            return repo

    def ensure_authenticated(self, domain: Optional[IdentityDomain] = None) -> TokenRecord:
        """Currently valid record for ``domain``; raises ReauthRequired when a login is needed."""
        return self.repository(domain or self.central_domain()).get_valid_record()

    def ensure_all(self, domains: Iterable[IdentityDomain]) -> Dict[IdentityDomain, Union[TokenRecord, WsAuthError]]:
        domains = list(dict.fromkeys(domains))
        return self._concurrently(domains, self.ensure_authenticated)

    def _concurrently(self, items, fn) -> Dict[Any, Outcome]:
        results: Dict[Any, Outcome] = {}
        if not items:
            return results
        with ThreadPoolExecutor(max_workers=min(len(items), self.settings.max_workers)) as pool:
            futures = [(item, pool.submit(fn, item)) for item in items]
            for item, future in futures:
                try:
                    results[item] = future.result()
                except WsAuthError as e:
                    LOG.warning("%s: %s", getattr(item, "value", item), e)
                    results[item] = e
        return results

    # ---------- login / logout ----------

    def login(self, context: Optional[Context] = None, method: Optional[str] = None, force: bool = False,
              cancel_event: Optional[threading.Event] = None, flow=None) -> LoginOutcome:
        context = context or self.context
        domain = self.central_domain(context)
        repo = self.repository(domain)
        if not force:
            try:
                record = repo.get_valid_record()
                LOG.info("Already logged in to %s; valid until %s", domain, record.expires_at.isoformat())
                return LoginSuccess(record)
            except ReauthRequired:
                pass

        scopes = list(self.settings.scopes)
        extra: Dict[str, str] = {}
        desired: Dict[str, Any] = {}
        if context.organization:
            central = self.ensure_authenticated(CENTRAL_DOMAIN)
            claims = decode_jwt_claims(central.id_token) or decode_jwt_claims(central.access_token)
            org_id = resolve_organization_id(claims, context.organization, self.settings.claims_namespace)
            if org_id is None:
                return LoginRejected(f"organization {context.organization} is not in your token's orgs claim")
            scopes.append(f"org:{org_id}")
            extra["acr_values"] = acr_values(scopes, org_id)
            desired[f"{self.settings.claims_namespace}/org"] = context.organization

        flow = flow or make_login_flow(self.oidc, method)
        outcome = flow.run(domain, scopes, extra, cancel_event)
        if not isinstance(outcome, LoginSuccess):
            LOG.info("Login to %s ended: %s", domain, outcome.kind)
            return outcome
        record = outcome.record
        mismatch = claims_mismatch(decode_jwt_claims(record.id_token) or decode_jwt_claims(record.access_token), desired)
        if mismatch:
            return LoginRejected(mismatch)
        return LoginSuccess(repo.accept(record))

    def logout(self, context: Optional[Context] = None) -> IdentityDomain:
        domain = self.central_domain(context)
        self.repository(domain).clear()
        return domain

    def whoami(self, context: Optional[Context] = None) -> Dict[str, Any]:
        return self.repository(self.central_domain(context)).claims()

    def exec_credential(self, context: Optional[Context] = None) -> Dict[str, Any]:
        """Kubernetes ``ExecCredential`` for exec-plugin kube users."""
        record = self.ensure_authenticated(self.central_domain(context))
        return {
            "apiVersion": EXEC_API_VERSION,
            "kind": "ExecCredential",
            "spec": {},
            "status": {
                "token": record.access_token,
                "expirationTimestamp": record.expires_at.strftime("%Y-%m-%dT%H:%M:%SZ"),
            },
        }

    # ---------- synthesis / projection ----------

    def synthesizer(self, provider: Provider) -> Synthesizer:
        try:
            return self.synthesizers[provider]
        except KeyError:
            raise ConfigError(f"no synthesizer configured for {provider.value}") from None

    def synthesize(self, provider: Provider, context: Optional[Context] = None) -> SynthesisResult:
        synthesizer = self.synthesizer(provider)
        domain = synthesizer.identity_domain() or self.central_domain(context)
        credential = self.ensure_authenticated(domain)
        return synthesizer.synthesize(credential)

    def synthesize_all(self, providers: Iterable[Provider],
                       context: Optional[Context] = None) -> Dict[Provider, Union[SynthesisResult, WsAuthError]]:
        return self._concurrently(list(providers), lambda p: self.synthesize(p, context))

    def apply(self, target: MergeTarget, sections: Mapping[str, Any]) -> MergeReport:
        return merge_apply(target, sections)

    def apply_all(self, projections: Iterable[Projection]) -> List[Tuple[str, Union[MergeReport, WsAuthError]]]:
        # sequential: several projections may share one file
        reports = []
        for projection in projections:
            try:
                reports.append((projection.target.path, self.apply(projection.target, projection.sections)))
            except WsAuthError as e:
                LOG.error("%s", e)
                reports.append((projection.target.path, e))
        return reports

    def sync(self, providers: Iterable[Provider], context: Optional[Context] = None) -> SyncReport:
        report = SyncReport(results=self.synthesize_all(providers, context))
        projections = []
        for provider, result in report.results.items():
            if isinstance(result, SynthesisResult):
                projections.extend(self.synthesizer(provider).projections(result))
        report.merges = self.apply_all(projections)
        return report

    def configure_registries(self, context: Optional[Context] = None,
                             environ: Optional[Mapping[str, str]] = None) -> List[Tuple[str, Union[MergeReport, WsAuthError]]]:
        return self.apply_all(registry_projections(self.settings, context or self.context, environ))

    def render_context(self, results: Mapping[Provider, Union[SynthesisResult, WsAuthError]],
                       context: Optional[Context] = None) -> Dict[str, Any]:
        """Plain-data view of synthesis results for config templates."""
        context = context or self.context
        rendered: Dict[str, Any] = {
            "environment": context.environment,
            "organization": context.organization,
            "providers": {},
        }
        for provider, result in results.items():
            if isinstance(result, WsAuthError):
                rendered["providers"][provider.value] = {"error": str(result), "bindings": [], "partial_failures": []}
                continue
            rendered["providers"][provider.value] = {
                "bindings": [
                    {
                        "account_id": b.account_id,
                        "display_name": b.display_name,
                        "role_or_scope": b.role_or_scope,
                        "clusters": [
                            {"name": c.name, "endpoint": c.endpoint, "auth_hint": dict(c.auth_hint)}
                            for c in b.clusters
                        ],
                    }
                    for b in result.bindings
                ],
                "partial_failures": [
                    {"account": f.account, "account_id": f.account_id, "reason": f.reason}
                    for f in result.partial_failures
                ],
            }
        return rendered
