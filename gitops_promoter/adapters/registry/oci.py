"""
OCI registry client — image existence over the distribution HTTP API.

    HEAD /v2/<name>/manifests/<tag>   → 200 exists, 404 absent
    GET  /v2/<name>/tags/list         → paginated through ``Link: <...>; rel="next"``

Anonymous or token auth: a 401 carrying a ``Bearer`` challenge is
answered by fetching a token from the challenge realm (using
PROMOTER_REGISTRY_TOKEN as the basic-auth password when set) and
retrying once.

404 is the only "absent" answer. 429, 5xx, timeouts and connection
errors raise RegistryUnavailableError so the resolver can retry.
"""

from __future__ import annotations

import base64
import json
import logging
import os
import re
import threading
import urllib.error
import urllib.parse
import urllib.request
from typing import Any

from gitops_promoter import __version__
from gitops_promoter.adapters.base import ArtifactRegistry
from gitops_promoter.core.errors import ExternalToolError, RegistryUnavailableError

logger = logging.getLogger(__name__)

TOKEN_ENV = "PROMOTER_REGISTRY_TOKEN"
USERNAME_ENV = "PROMOTER_REGISTRY_USER"

MANIFEST_TYPES = ", ".join([
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.docker.distribution.manifest.v2+json",
])

_CHALLENGE_RE = re.compile(r'(\w+)="([^"]*)"')
_LINK_RE = re.compile(r'<([^>]+)>\s*;\s*rel="?next"?')

_DOCKER_HUB = "docker.io"
_DOCKER_HUB_API = "registry-1.docker.io"


def split_repository(repository: str) -> tuple[str, str]:
    """Split ``ghcr.io/acme/ledger`` into (API host, repository path)."""
    first, _, rest = repository.partition("/")
    if rest and ("." in first or ":" in first or first == "localhost"):
        host, path = first, rest
    else:
        host, path = _DOCKER_HUB, repository
    if host == _DOCKER_HUB:
        host = _DOCKER_HUB_API
        if "/" not in path:
            path = f"library/{path}"
    return host, path


def parse_challenge(header: str) -> dict[str, str]:
    """Parse ``Bearer realm="...",service="...",scope="..."``."""
    scheme, _, params = header.partition(" ")
    if scheme.lower() != "bearer":
        return {}
    return dict(_CHALLENGE_RE.findall(params))


class OCIRegistryClient(ArtifactRegistry):
    """ArtifactRegistry speaking the OCI distribution API over HTTPS."""

    def __init__(
        self,
        token: str | None = None,
        username: str | None = None,
        timeout: float = 10.0,
        scheme: str = "https",
    ):
        self._token = token if token is not None else os.environ.get(TOKEN_ENV)
        self._username = username or os.environ.get(USERNAME_ENV, "promoter")
        self._timeout = timeout
        self._scheme = scheme
        self._bearer: dict[tuple[str, str], str] = {}
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return "oci"

    # ── HTTP ─────────────────────────────────────────────────────

    def _open(self, url: str, method: str, headers: dict[str, str]) -> tuple[int, Any, bytes]:
        """Perform one request; HTTP errors come back as a status, not an exception."""
        req = urllib.request.Request(
            url,
            method=method,
            headers={"User-Agent": f"gitops-promoter/{__version__}", **headers},
        )
        try:
            with urllib.request.urlopen(req, timeout=self._timeout) as resp:
                return resp.status, resp.headers, resp.read() if method != "HEAD" else b""
        except urllib.error.HTTPError as e:
            return e.code, e.headers, b""
        except (urllib.error.URLError, TimeoutError, OSError) as e:
            host = urllib.parse.urlsplit(url).netloc
            raise RegistryUnavailableError(f"Cannot reach registry {host}: {e}", host=host) from e

    def _fetch_token(self, challenge: dict[str, str]) -> str | None:
        realm = challenge.get("realm")
        if not realm:
            return None
        query = {k: v for k, v in challenge.items() if k in ("service", "scope")}
        url = f"{realm}?{urllib.parse.urlencode(query)}" if query else realm
        headers = {}
        if self._token:
            basic = base64.b64encode(f"{self._username}:{self._token}".encode()).decode()
            headers["Authorization"] = f"Basic {basic}"
        status, _, body = self._open(url, "GET", headers)
        if status != 200:
            logger.debug("Token endpoint %s answered %d", realm, status)
            return None
        data = _json_body(body, urllib.parse.urlsplit(realm).netloc, "token response")
        return data.get("token") or data.get("access_token")

    def _request(self, host: str, path: str, method: str, accept: str = "") -> tuple[int, Any, bytes]:
        url = f"{self._scheme}://{host}{path}"
        scope_key = (host, path.split("/manifests/")[0].split("/tags/")[0])
        headers = {"Accept": accept} if accept else {}

        with self._lock:
            bearer = self._bearer.get(scope_key)
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        elif self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        status, resp_headers, body = self._open(url, method, headers)
        if status == 401:
            challenge = parse_challenge(resp_headers.get("WWW-Authenticate", "") if resp_headers else "")
            token = self._fetch_token(challenge) if challenge else None
            if token:
                with self._lock:
                    self._bearer[scope_key] = token
                headers["Authorization"] = f"Bearer {token}"
                status, resp_headers, body = self._open(url, method, headers)

        if status == 429 or status >= 500:
            raise RegistryUnavailableError(
                f"Registry {host} answered {status} for {method} {path}", host=host, status=status
            )
        if status in (401, 403):
            raise ExternalToolError(
                f"Registry {host} denied access to {path} ({status}); check {TOKEN_ENV}",
                host=host,
                status=status,
            )
        return status, resp_headers, body

    # ── ArtifactRegistry ─────────────────────────────────────────

    def manifest_exists(self, repository: str, tag: str) -> bool:
        host, path = split_repository(repository)
        status, _, _ = self._request(host, f"/v2/{path}/manifests/{tag}", "HEAD", MANIFEST_TYPES)
        if status == 404:
            return False
        if 200 <= status < 300:
            return True
        raise RegistryUnavailableError(
            f"Unexpected status {status} for {repository}:{tag}", host=host, status=status
        )

    def list_tags(self, repository: str) -> set[str]:
        host, path = split_repository(repository)
        tags: set[str] = set()
        next_path: str | None = f"/v2/{path}/tags/list?n=1000"
        while next_path:
            status, headers, body = self._request(host, next_path, "GET")
            if status == 404:
                return tags
            data = _json_body(body, host, f"tag list of {repository}")
            tags.update(data.get("tags") or [])
            link = headers.get("Link", "") if headers else ""
            match = _LINK_RE.search(link)
            next_path = None
            if match:
                target = urllib.parse.urlsplit(match.group(1))
                next_path = target.path + (f"?{target.query}" if target.query else "")
        return tags


def _json_body(body: bytes, host: str, what: str) -> dict[str, Any]:
    """Decode a JSON object; anything else (proxy or captive pages) is a transient failure."""
    try:
        data = json.loads(body or b"{}")
    except (ValueError, UnicodeDecodeError) as e:
        raise RegistryUnavailableError(f"Unreadable {what} from {host}: {e}", host=host) from e
    if not isinstance(data, dict):
        raise RegistryUnavailableError(f"Unexpected {what} from {host}: {type(data).__name__}", host=host)
    return data
