# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Registry client resolving image tags to digests.
Implements the manifest endpoints of the Docker Registry HTTP API V2.
"""

import base64
import hashlib
import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Dict, List, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
    wait_fixed,
)

from ..errors import ImageNotFoundError, RegistryLookupError
from .base import ArtifactRegistry
from .image_reference import ImageReference

logger = logging.getLogger(__name__)

MANIFEST_MEDIA_TYPES = [
    "application/vnd.docker.distribution.manifest.v2+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.oci.image.index.v1+json",
]

_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')
# Keys docker login writes for Docker Hub
_DOCKER_HUB_ALIASES = ("index.docker.io", "registry-1.docker.io")


def registry_host(name: str) -> str:
    """
    The registry host of a docker config key or an image prefix:
    'https://index.docker.io/v1/' -> 'docker.io', 'registry.local/team' -> 'registry.local'.
    """
    host = name.split("://", 1)[-1].split("/", 1)[0]
    return ImageReference.DEFAULT_REGISTRY if host in _DOCKER_HUB_ALIASES else host


class TransientRegistryError(Exception):
    """A lookup failure worth retrying (connectivity, throttling, 5xx)."""


@dataclass
class RegistryAuth:
    """Authentication credentials for a registry."""

    username: Optional[str] = None
    password: Optional[str] = None

    def basic_header(self) -> Optional[str]:
        if not (self.username and self.password):
            return None
        raw = f"{self.username}:{self.password}".encode()
        return f"Basic {base64.b64encode(raw).decode()}"


class RegistryClient(ArtifactRegistry):
    """
    Client for OCI-compatible registries.

    Transient failures are retried with exponential backoff; a 404 is reported
    as ImageNotFoundError and everything else as RegistryLookupError.
    """

    def __init__(
        self,
        timeout: float = 30.0,
        max_attempts: int = 3,
        visibility_timeout: float = 30.0,
        poll_interval: float = 1.0,
    ):
        """
        Initialize the registry client.

        Args:
            timeout: Socket timeout for each request, in seconds.
            max_attempts: Attempts per lookup before a transient error is surfaced.
            visibility_timeout: How long `register` waits for a pushed tag to appear.
            poll_interval: Delay between visibility checks.
        """
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.visibility_timeout = visibility_timeout
        self.poll_interval = poll_interval

        self._auth_tokens: Dict[str, str] = {}
        self._credentials: Dict[str, RegistryAuth] = {}

    def set_credentials(self, registry: str, username: str, password: str) -> None:
        """
        Set credentials for a registry.

        Args:
            registry: Registry hostname (e.g., 'registry.example.com')
            username: Username
            password: Password or access token
        """
        self._credentials[registry] = RegistryAuth(username=username, password=password)

    def load_docker_config(self, path: Optional[str] = None) -> int:
        """
        Read credentials stored by `docker login` from a docker config.json.

        Only inline `auths` entries are used; credential helpers are not
        consulted. Credentials already set take precedence.

        Args:
            path: config.json to read. Defaults to ~/.docker/config.json

        Returns:
            Number of registries credentials were loaded for.
        """
        path = path or os.path.join(os.path.expanduser("~"), ".docker", "config.json")
        if not os.path.isfile(path):
            return 0
        try:
            with open(path, "r") as f:
                auths = json.load(f).get("auths") or {}
        except (OSError, ValueError, AttributeError) as e:
            logger.warning("Ignoring unreadable docker config %s: %s", path, e)
            return 0

        loaded = 0
        for key, entry in auths.items():
            if not isinstance(entry, dict):
                continue
            username, password = entry.get("username"), entry.get("password")
            if entry.get("auth"):
                try:
                    decoded = base64.b64decode(entry["auth"]).decode()
                except (ValueError, UnicodeDecodeError):
                    logger.warning("Ignoring malformed credentials for %s in %s", key, path)
                    continue
                username, _, password = decoded.partition(":")
            host = registry_host(key)
            if username and password and host not in self._credentials:
                self._credentials[host] = RegistryAuth(username=username, password=password)
                loaded += 1
        return loaded

    def resolve_digest(self, tag: str) -> str:
        try:
            ref = ImageReference.parse(tag)
        except ValueError as e:
            raise RegistryLookupError(f"invalid image reference '{tag}': {e}", tag)

        retryer = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=0.5, max=8),
            retry=retry_if_exception_type(TransientRegistryError),
            reraise=True,
        )
        try:
            return retryer(self._fetch_digest, ref)
        except TransientRegistryError as e:
            raise RegistryLookupError(
                f"registry lookup for {ref.tagged_name} failed after "
                f"{self.max_attempts} attempts: {e}",
                tag,
            )

    def register(self, tag: str, build_args: List[str], digest: Optional[str] = None) -> None:
        """
        Wait until a pushed image is visible in the registry.

        The builder pushes the image itself; registering confirms that the
        registry serves it so the next decision for this tag observes it.
        """
        retryer = Retrying(
            stop=stop_after_delay(self.visibility_timeout),
            wait=wait_fixed(self.poll_interval),
            retry=retry_if_exception_type(ImageNotFoundError),
            reraise=True,
        )
        try:
            found = retryer(self.resolve_digest, tag)
        except ImageNotFoundError:
            raise RegistryLookupError(
                f"{tag} was built but did not appear in the registry "
                f"within {self.visibility_timeout:.0f}s",
                tag,
            )
        if digest and found != digest:
            logger.warning("Registry reports %s for %s, builder reported %s", found, tag, digest)
        logger.debug("Registered %s (%s) with build args %s", tag, found, build_args)

    def _fetch_digest(self, ref: ImageReference) -> str:
        """Fetch the manifest digest, negotiating auth at most once."""
        reference = ref.digest or ref.tag
        url = f"{ref.registry_url}/v2/{ref.repository}/manifests/{reference}"

        try:
            return self._request_digest(url, ref)
        except HTTPError as e:
            if e.code != 401:
                raise self._classify(e, ref)
            challenge = e.headers.get("WWW-Authenticate", "") if e.headers else ""
            if not self._authenticate(ref, challenge):
                raise RegistryLookupError(f"unauthorized to read {ref.tagged_name}", ref.tagged_name)

        try:
            return self._request_digest(url, ref)
        except HTTPError as e:
            raise self._classify(e, ref)

    def _request_digest(self, url: str, ref: ImageReference) -> str:
        for method in ("HEAD", "GET"):
            request = Request(url, method=method)
            request.add_header("Accept", ", ".join(MANIFEST_MEDIA_TYPES))
            auth = self._auth_header(ref)
            if auth:
                request.add_header("Authorization", auth)
            try:
                with urlopen(request, timeout=self.timeout) as response:
                    digest = response.headers.get("Docker-Content-Digest")
                    if digest:
                        return digest
                    if method == "GET":
                        return f"sha256:{hashlib.sha256(response.read()).hexdigest()}"
            except HTTPError:
                raise
            except (URLError, OSError) as e:
                raise TransientRegistryError(str(e))
        raise RegistryLookupError(f"registry did not report a digest for {ref.tagged_name}")

    def _classify(self, error: HTTPError, ref: ImageReference) -> Exception:
        if error.code == 404:
            return ImageNotFoundError(ref.tagged_name)
        if error.code == 429 or error.code >= 500:
            return TransientRegistryError(f"HTTP {error.code} from {ref.registry}")
        return RegistryLookupError(
            f"registry {ref.registry} answered HTTP {error.code} for {ref.tagged_name}",
            ref.tagged_name,
        )

    def _auth_header(self, ref: ImageReference) -> Optional[str]:
        cache_key = f"{ref.registry}/{ref.repository}"
        if cache_key in self._auth_tokens:
            return self._auth_tokens[cache_key]
        creds = self._credentials.get(ref.registry)
        return creds.basic_header() if creds else None

    def _authenticate(self, ref: ImageReference, challenge: str) -> bool:
        """Obtain a token for the scheme named by a WWW-Authenticate challenge."""
        cache_key = f"{ref.registry}/{ref.repository}"
        self._auth_tokens.pop(cache_key, None)
        creds = self._credentials.get(ref.registry, RegistryAuth())

        if challenge.lower().startswith("basic"):
            header = creds.basic_header()
            if header:
                self._auth_tokens[cache_key] = header
            return header is not None

        params = dict(_CHALLENGE_PARAM.findall(challenge))
        realm = params.pop("realm", None)
        if not realm:
            return False
        params.setdefault("scope", f"repository:{ref.repository}:pull")

        request = Request(f"{realm}?{urlencode(params)}")
        basic = creds.basic_header()
        if basic:
            request.add_header("Authorization", basic)
        try:
            with urlopen(request, timeout=self.timeout) as response:
                data = json.loads(response.read().decode())
        except HTTPError as e:
            raise RegistryLookupError(f"token request to {realm} failed: HTTP {e.code}", ref.tagged_name)
        except (URLError, OSError) as e:
            raise TransientRegistryError(str(e))
        except ValueError as e:
            raise RegistryLookupError(f"invalid token response from {realm}: {e}", ref.tagged_name)

        token = data.get("token") or data.get("access_token")
        if not token:
            return False
        self._auth_tokens[cache_key] = f"Bearer {token}"
        return True
