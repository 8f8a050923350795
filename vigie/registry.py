import re
from logging import getLogger
from typing import Optional

import requests
from docker import auth as docker_auth
from docker.errors import DockerException

from .config import Settings
from .container import DEFAULT_REGISTRY, ImageReference

LOG = getLogger(__name__)

REQUEST_TIMEOUT = 10
DOCKER_HUB_HOST = "registry-1.docker.io"
MANIFEST_ACCEPT_HEADER = ", ".join(
    (
        "application/vnd.docker.distribution.manifest.list.v2+json",
        "application/vnd.docker.distribution.manifest.v2+json",
        "application/vnd.oci.image.index.v1+json",
        "application/vnd.oci.image.manifest.v1+json",
    )
)
_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')


class RegistryError(Exception):
    pass


def parse_challenge(header: Optional[str]) -> tuple[str, dict[str, str]]:
    if not header:
        return "", {}
    scheme, _, params = header.strip().partition(" ")
    return scheme.lower(), dict(_CHALLENGE_PARAM.findall(params))


def registry_host(registry: str) -> str:
    if registry == DEFAULT_REGISTRY:
        return DOCKER_HUB_HOST
    return registry


class Credentials:
    def __init__(self, username: Optional[str] = None, password: Optional[str] = None, config_path: Optional[str] = None):
        self._username = username
        self._password = password
        self._config_path = config_path
        self._config = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "Credentials":
        return cls(settings.repo_user, settings.repo_pass)

    def _auth_config(self):
        if self._config is None:
            self._config = docker_auth.load_config(config_path=self._config_path)
        return self._config

    def for_registry(self, registry: str) -> Optional[dict]:
        if self._username and self._password:
            return {"username": self._username, "password": self._password}
        lookup = None if registry == DEFAULT_REGISTRY else registry
        try:
            resolved = docker_auth.resolve_authconfig(self._auth_config(), registry=lookup)
        except (DockerException, OSError, ValueError) as error:
            LOG.debug("Could not resolve credentials for %s: %s", registry, error)
            return None
        if not resolved:
            return None
        if resolved.get("Username") or resolved.get("username"):
            return {
                "username": resolved.get("Username") or resolved.get("username"),
                "password": resolved.get("Password") or resolved.get("password"),
            }
        return None


class RegistryProbe:
    def __init__(self, credentials: Credentials, session: Optional[requests.Session] = None, timeout: float = REQUEST_TIMEOUT):
        self._credentials = credentials
        self._session = session or requests.Session()
        self._timeout = timeout

    def _manifest_url(self, reference: ImageReference) -> str:
        return f"https://{registry_host(reference.registry)}/v2/{reference.repository}/manifests/{reference.tag}"

    def _basic_auth(self, registry: str) -> Optional[tuple[str, str]]:
        creds = self._credentials.for_registry(registry)
        if creds:
            return creds["username"], creds["password"]
        return None

    def _bearer_token(self, params: dict[str, str], reference: ImageReference) -> str:
        realm = params.get("realm")
        if not realm:
            raise RegistryError("bearer challenge without realm")
        query = {"scope": params.get("scope") or f"repository:{reference.repository}:pull"}
        if params.get("service"):
            query["service"] = params["service"]
        response = self._session.get(
            realm,
            params=query,
            auth=self._basic_auth(reference.registry),
            timeout=self._timeout,
        )
        response.raise_for_status()
        payload = response.json()
        token = payload.get("token") or payload.get("access_token")
        if not token:
            raise RegistryError(f"token endpoint {realm} returned no token")
        return token

    def manifest_digest(self, reference: ImageReference) -> str:
        if reference.pinned:
            return reference.digest
        url = self._manifest_url(reference)
        headers = {"Accept": MANIFEST_ACCEPT_HEADER}
        response = self._session.head(url, headers=headers, timeout=self._timeout)
        if response.status_code == 401:
            scheme, params = parse_challenge(response.headers.get("WWW-Authenticate"))
            if scheme == "bearer":
                headers["Authorization"] = f"Bearer {self._bearer_token(params, reference)}"
                response = self._session.head(url, headers=headers, timeout=self._timeout)
            elif scheme == "basic":
                response = self._session.head(
                    url, headers=headers, auth=self._basic_auth(reference.registry), timeout=self._timeout
                )
            else:
                raise RegistryError(f"unsupported auth challenge from {reference.registry}")
        response.raise_for_status()
        digest = response.headers.get("Docker-Content-Digest")
        if not digest:
            raise RegistryError(f"{url} returned no digest header")
        return digest

    def close(self) -> None:
        self._session.close()
