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
Container image names as the build and deploy engine sees them.

'api:dev', 'registry.local:5000/team/api:dev' and
'registry.local/team/api@sha256:...' all parse into an ImageReference.
"""

from dataclasses import dataclass, replace
from typing import Optional, Tuple

DOCKER_HUB_API = "https://registry-1.docker.io"


def _split_digest(text: str) -> Tuple[str, Optional[str]]:
    if "@" not in text:
        return text, None
    name, digest = text.rsplit("@", 1)
    if not digest:
        raise ValueError(f"Empty digest in image reference: {text}@")
    return name, digest


def _split_tag(text: str) -> Tuple[str, Optional[str]]:
    # 'host:5000/api' has a colon but no tag: a tag never contains '/'
    head, sep, tail = text.rpartition(":")
    if not sep or "/" in tail:
        return text, None
    return head, tail


def _looks_like_host(component: str) -> bool:
    return component == "localhost" or "." in component or ":" in component


@dataclass(frozen=True)
class ImageReference:
    """
    An image name split into registry, repository, tag and digest.

    The digest, when present, pins the reference to one immutable artifact;
    a bare tag is mutable and only means something once a registry has
    resolved it.

        api                          -> docker.io/library/api:latest
        team/api:v1                  -> docker.io/team/api:v1
        localhost:5000/api:dev       -> localhost:5000/api:dev
        gcr.io/proj/api@sha256:abc.. -> gcr.io/proj/api@sha256:abc..
    """

    registry: str
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None
    # False when `digest` is a daemon image id: it identifies the content but
    # cannot be pulled as name@digest, so the image is addressed by tag
    pullable_digest: bool = True

    DEFAULT_REGISTRY = "docker.io"
    DEFAULT_TAG = "latest"
    # Images that only exist in the local daemon, addressed by image id
    LOCAL_REGISTRY = "local"

    @classmethod
    def parse(cls, reference: str) -> "ImageReference":
        """
        Parse `reference`, filling in Docker Hub and 'latest' where the name
        leaves them out. Raises ValueError for blank or malformed names.
        """
        text = (reference or "").strip()
        if not text:
            raise ValueError("Empty image reference")

        name, digest = _split_digest(text)
        name, tag = _split_tag(name)

        host, _, remainder = name.partition("/")
        if remainder and _looks_like_host(host):
            registry, repository = host, remainder
        elif remainder:
            registry, repository = cls.DEFAULT_REGISTRY, name
        else:
            registry, repository = cls.DEFAULT_REGISTRY, "library/" + name

        if not repository or repository.endswith("/"):
            raise ValueError(f"Missing repository in image reference: {text}")

        if not tag and not digest:
            tag = cls.DEFAULT_TAG
        return cls(registry, repository, tag or None, digest)

    @classmethod
    def local(cls, name: str, image_id: str) -> "ImageReference":
        """Reference to an untagged image known only by its local image id."""
        return cls(registry=cls.LOCAL_REGISTRY, repository=name, digest=image_id)

    @property
    def is_local(self) -> bool:
        return self.registry == self.LOCAL_REGISTRY

    @property
    def is_resolved(self) -> bool:
        return bool(self.digest)

    def with_digest(self, digest: str) -> "ImageReference":
        return replace(self, digest=digest, pullable_digest=True)

    def with_image_id(self, image_id: str) -> "ImageReference":
        """Attach the local daemon's image id without pinning the name to it."""
        return replace(self, digest=image_id, pullable_digest=False)

    @property
    def tagged_name(self) -> str:
        """Registry, repository and tag, never the digest."""
        base = self.registry + "/" + self.repository
        return base + ":" + self.tag if self.tag else base

    @property
    def full_name(self) -> str:
        """
        The name to hand to a deploy: pinned to the digest when the registry
        reported one. Local images are addressed by their image id alone.
        """
        if self.is_local:
            return self.digest or self.repository
        if self.digest and self.pullable_digest:
            return f"{self.registry}/{self.repository}@{self.digest}"
        return self.tagged_name

    @property
    def display_name(self) -> str:
        """The name as a user would type it, without docker.io/library/."""
        if self.registry != self.DEFAULT_REGISTRY:
            return self.full_name
        repository = self.repository
        if repository.startswith("library/"):
            repository = repository[len("library/"):]
        pinned = self.digest and self.pullable_digest
        suffix = "@" + self.digest if pinned else (":" + self.tag if self.tag else "")
        return repository + suffix

    @property
    def registry_url(self) -> str:
        """Base URL of the registry's v2 API."""
        if self.registry == self.DEFAULT_REGISTRY:
            return DOCKER_HUB_API
        if "://" in self.registry:
            return self.registry
        plain = self.registry.startswith(("localhost", "127.0.0.1"))
        return ("http://" if plain else "https://") + self.registry

    def __str__(self) -> str:
        return self.display_name

    def __repr__(self) -> str:
        return f"<ImageReference {self.full_name}>"
