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
Capability interface for artifact registries.
"""
from abc import ABC, abstractmethod
from typing import List, Optional

from .image_reference import ImageReference


class ArtifactRegistry(ABC):
    """
    Resolves image tags to content digests and records freshly built images.

    Implementations own all registry state. A tag passed to `register` must be
    visible to the next `resolve_digest` call made from the same process.
    """

    # False for registries that only index images kept by the local daemon
    remote = True

    @abstractmethod
    def resolve_digest(self, tag: str) -> str:
        """
        Resolve an image tag to its content digest.

        :param tag: Image reference to look up.
        :return: The digest, e.g. 'sha256:...'.
        :raises ImageNotFoundError: If the registry has no such image.
        :raises RegistryLookupError: On any other failure.
        """

    @abstractmethod
    def register(self, tag: str, build_args: List[str], digest: Optional[str] = None) -> None:
        """
        Record a freshly built image.

        :param tag: Image reference that was built.
        :param build_args: The KEY=VALUE build arguments used.
        :param digest: Digest reported by the builder, when it has one.
        :raises RegistryLookupError: If the image cannot be registered.
        """

    def reference(self, tag: str, digest: str) -> ImageReference:
        """
        The reference a deployment uses for `tag` once resolved to `digest`.
        """
        return ImageReference.parse(tag).with_digest(digest)

