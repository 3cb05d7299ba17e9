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
Deciding whether a component's image has to be built.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..errors import ImageNotFoundError
from ..MODELS.build_spec import BuildSpec
from ..REGISTRY.base import ArtifactRegistry
from ..REGISTRY.image_reference import ImageReference

logger = logging.getLogger(__name__)


class BuildAction(str, Enum):
    SKIP = "skip"
    BUILD = "build"
    FORCE_REBUILD = "force-rebuild"


@dataclass(frozen=True)
class BuildDecision:
    """
    Outcome of a decision for one component.

    `reference` is set only for SKIP and carries the digest the registry
    reported, which is what the deployment will use.
    """
    component: str
    action: BuildAction
    reference: Optional[ImageReference] = None
    reason: str = ""

    @property
    def needs_build(self) -> bool:
        return self.action is not BuildAction.SKIP


class BuildDecisionEngine:
    """
    Chooses SKIP, BUILD or FORCE_REBUILD for a BuildSpec.

    The engine keeps nothing between calls: every answer reflects what the
    registry knows at the time of the call, so it can be shared across threads.
    """

    def __init__(self, registry: ArtifactRegistry):
        self.registry = registry

    def decide(self, spec: BuildSpec, force_all: bool = False) -> BuildDecision:
        """
        :param spec: The component to decide for.
        :param force_all: Rebuild every component regardless of the registry.
        :return: The decision.
        :raises RegistryLookupError: If the registry cannot answer. This is
            never turned into a rebuild.
        """
        if force_all or spec.force_rebuild:
            logger.info("force build from manifest definition for service '%s'", spec.name)
            reason = "--build requested" if force_all else "no_cache set in manifest"
            return BuildDecision(spec.name, BuildAction.FORCE_REBUILD, reason=reason)

        if not spec.has_tag:
            logger.debug("Service '%s' has no image tag, building", spec.name)
            return BuildDecision(spec.name, BuildAction.BUILD, reason="no image tag to look up")

        try:
            digest = self.registry.resolve_digest(spec.tag)
        except ImageNotFoundError:
            logger.debug("Image %s for service '%s' not found, building", spec.tag, spec.name)
            return BuildDecision(spec.name, BuildAction.BUILD, reason=f"{spec.tag} not in registry")

        reference = self.registry.reference(spec.tag, digest)
        logger.info("Skipping build for image for service '%s': %s already exists", spec.name, reference.full_name)
        return BuildDecision(spec.name, BuildAction.SKIP, reference=reference, reason=f"{spec.tag} already built")
