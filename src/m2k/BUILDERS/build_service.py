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
Running the builds a deploy needs and registering what they produced.
"""
import logging
import threading
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from typing import Dict, Optional, Sequence

from ..errors import BuildError, DeployCancelledError, M2KError
from ..MODELS.build_spec import BuildSpec
from ..REGISTRY.base import ArtifactRegistry
from ..REGISTRY.image_reference import ImageReference
from ..RUNNERS.dependency_resolver import DependencyResolver
from .image_builder import ImageBuilder

logger = logging.getLogger(__name__)


class ImageBuildService:
    """
    Builds components and makes the results visible to later decisions.
    """

    def __init__(self, registry: ArtifactRegistry, builder: ImageBuilder, max_workers: int = 1):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.registry = registry
        self.builder = builder
        self.max_workers = max_workers
        self.resolver = DependencyResolver()

    def build(self, spec: BuildSpec) -> ImageReference:
        """
        Builds one component.

        A tagged image is registered and its digest resolved again, so the
        returned reference is backed by the registry and the next decision for
        the same tag is a skip. Untagged images are returned as built.

        :raises BuildError: If the build fails.
        :raises RegistryLookupError: If the built image cannot be registered.
        """
        reference = self.builder.build(spec)
        if not spec.has_tag:
            logger.info("Built service '%s' as %s", spec.name, reference.full_name)
            return reference

        self.registry.register(spec.tag, spec.build_args(), reference.digest)
        digest = self.registry.resolve_digest(spec.tag)
        resolved = self.registry.reference(spec.tag, digest)
        logger.info("Built service '%s' as %s", spec.name, resolved.full_name)
        return resolved

    def build_all(self,
                  specs: Dict[str, BuildSpec],
                  selected: Sequence[str],
                  cancel_event: Optional[threading.Event] = None) -> Dict[str, ImageReference]:
        """
        Builds the selected components, concurrently within each dependency wave.

        The first failure stops the run: builds not started yet are cancelled,
        running ones are waited for, and the failure is raised. Images built
        before the failure stay registered.

        :param specs: Every build spec of the manifest, keyed by component.
        :param selected: Components that have to be built.
        :param cancel_event: Checked before each build is dispatched.
        :return: Built references keyed by component.
        :raises BuildError: Naming the first component that failed.
        :raises DeployCancelledError: If `cancel_event` was set.
        """
        built: Dict[str, ImageReference] = {}
        waves = self.resolver.resolve_waves(specs, selected)

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="m2k-build") as pool:
            for wave in waves:
                futures = {}
                for name in wave:
                    if cancel_event is not None and cancel_event.is_set():
                        for future in futures:
                            future.cancel()
                        wait(futures)
                        raise DeployCancelledError(f"cancelled before building '{name}'")
                    futures[pool.submit(self.build, specs[name])] = name

                done, pending = wait(futures, return_when=FIRST_EXCEPTION)
                failed = [f for f in done if f.exception() is not None]
                if failed:
                    for future in pending:
                        future.cancel()
                    wait(pending)
                    # Report the failure of the earliest declared component
                    first = min(failed, key=lambda f: wave.index(futures[f]))
                    raise self._as_build_error(futures[first], first.exception())

                for future in done:
                    built[futures[future]] = future.result()

        return built

    @staticmethod
    def _as_build_error(component: str, error: BaseException) -> M2KError:
        if isinstance(error, M2KError):
            return error
        return BuildError(component, str(error))
