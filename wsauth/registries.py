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

"""Package-manager credentials for the active organization (npm, poetry)."""

import logging
import os
from typing import List, Mapping, Optional

from .config import Settings
from .errors import ConfigError
from .merge import FileKind, MergeTarget, Ownership, Projection
from .models import Context

LOG = logging.getLogger(__name__)


def poetry_source_name(organization: str) -> str:
    return organization.replace("-", "_")


def registry_projections(settings: Settings, context: Context,
                         environ: Optional[Mapping[str, str]] = None) -> List[Projection]:
    environ = os.environ if environ is None else environ
    org = context.organization
    if not org:
        raise ConfigError("an organization is required (--org)")
    token = environ.get(settings.registry_token_env)
    if not token:
        raise ConfigError(f"{settings.registry_token_env} is not set")
    username = environ.get(settings.registry_username_env)

    projections = []
    if settings.npm_registry:
        host = settings.npm_registry.format(org=org).split("://", 1)[-1]
        if not host.endswith("/"):
            host += "/"
        npm = {
            f"@{org}:registry": f"https://{host}",
            f"//{host}:_authToken": token,
        }
        projections.append(Projection(
            MergeTarget(settings.npmrc, FileKind.NPMRC, Ownership(names=frozenset(npm))), npm
        ))
    else:
        LOG.info("npm_registry is not configured; leaving %s alone", settings.npmrc)

    source = f"http-basic.{poetry_source_name(org)}"
    poetry = {source: {"username": username or org, "password": token}}
    projections.append(Projection(
        MergeTarget(settings.poetry_auth, FileKind.TOML, Ownership(names=frozenset(poetry))), poetry
    ))
    return projections
