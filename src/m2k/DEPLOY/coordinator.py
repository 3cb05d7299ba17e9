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
Coordination of deploy, destroy and build runs for one pipeline.
"""
import logging
import threading
from typing import Callable, Dict, List, Optional, Tuple

from ..BUILDERS.build_service import ImageBuildService
from ..BUILDERS.decision import BuildDecision, BuildDecisionEngine
from ..errors import DeployCancelledError, ManifestError
from ..MANIFEST.locator import ManifestLocation, locate_manifest
from ..MODELS.build_spec import BuildSpec
from ..MODELS.deploy import (ClusterContext, DeployOptions, DeployResult, DeployStage,
                             DestroyOptions, DestroyResult)
from ..MODELS.manifest import Manifest
from ..MODELS.pipeline import PipelineRecord
from ..PARSERS.manifest_parser import ManifestParser
from ..PIPELINE.naming import infer_app_name, translate_pipeline_name
from ..PIPELINE.state_store import PipelineStateStore
from ..REGISTRY.base import ArtifactRegistry
from ..REGISTRY.image_reference import ImageReference
from ..RUNNERS.command_runner import CommandRunner
from ..UTILS.git import current_branch, remote_url
from .deployer import Deployer
from .renderer import render_deploy, render_destroy

logger = logging.getLogger(__name__)

# Tag given to components without an explicit image when a registry is configured
DEFAULT_TAG = "m2k"


def _stored_reference(component: str, image: str) -> ImageReference:
    # Untagged local builds are stored as their bare image id
    if image.startswith("sha256:"):
        return ImageReference.local(component, image)
    return ImageReference.parse(image)


class _Run:
    """
    Stage bookkeeping for a single invocation.
    """

    def __init__(self, kind: str, cancel_event: Optional[threading.Event],
                 listener: Optional[Callable[[DeployStage], None]]):
        self.kind = kind
        self.cancel_event = cancel_event
        self.listener = listener
        self.stages: List[DeployStage] = []
        self.subject = ""

    @property
    def current(self) -> Optional[DeployStage]:
        return self.stages[-1] if self.stages else None

    def check_cancelled(self):
        if self.cancel_event is not None and self.cancel_event.is_set():
            stage = self.current.value if self.current else "start"
            raise DeployCancelledError(f"{self.kind} cancelled during stage '{stage}'")

    def enter(self, stage: DeployStage):
        if stage is not DeployStage.DONE:
            self.check_cancelled()
        self._record(stage)

    def fail(self, error: Exception):
        failed_at = self.current.value if self.current else "start"
        logger.error("%s of %s failed at stage '%s': %s", self.kind, self.subject or "pipeline", failed_at, error)
        self._record(DeployStage.FAILED)

    def _record(self, stage: DeployStage):
        logger.debug("%s: entering stage '%s'", self.kind, stage.value)
        self.stages.append(stage)
        if self.listener:
            self.listener(stage)


class DeployCoordinator:
    """
    Drives a pipeline through resolving, deciding, building, applying and
    recording.

    Every collaborator is injected. Errors propagate unchanged after the run
    is marked failed; nothing is retried here. The pipeline record is written
    only after a successful apply and deleted only after a successful teardown.
    Concurrent runs against the same pipeline must be serialized by the caller.
    """

    def __init__(self,
                 context: ClusterContext,
                 registry: ArtifactRegistry,
                 build_service: ImageBuildService,
                 deployer: Deployer,
                 store: PipelineStateStore,
                 parser: Optional[ManifestParser] = None,
                 git_runner: Optional[CommandRunner] = None,
                 on_stage: Optional[Callable[[DeployStage], None]] = None):
        """
        :param context: Namespace and registry the pipeline is deployed to.
        :param registry: Registry the build decisions are made against.
        :param build_service: Builds and registers images.
        :param deployer: Applies and tears down deploy steps.
        :param store: Holds the pipeline records.
        :param parser: Manifest parser.
        :param git_runner: Runner used for git queries.
        :param on_stage: Called with every stage a run enters, FAILED included.
        """
        self.context = context
        self.registry = registry
        self.engine = BuildDecisionEngine(registry)
        self.build_service = build_service
        self.deployer = deployer
        self.store = store
        self.parser = parser or ManifestParser()
        self.git_runner = git_runner or CommandRunner()
        self.on_stage = on_stage

    def deploy(self, options: DeployOptions, cancel_event: Optional[threading.Event] = None) -> DeployResult:
        """
        Deploys a pipeline.

        :raises PathResolutionError: If the manifest cannot be located.
        :raises ManifestError: If the manifest is missing or invalid.
        :raises RegistryLookupError: If a build decision cannot be made.
        :raises BuildError: Naming the first component whose build failed.
        :raises ApplyError: If a deploy step failed.
        :raises StateStoreError: If the record cannot be read or written.
        :raises DeployCancelledError: If `cancel_event` was set.
        """
        run = _Run("deploy", cancel_event, self.on_stage)
        try:
            return self._deploy(options, run)
        except Exception as e:
            run.fail(e)
            raise

    def destroy(self, options: DestroyOptions, cancel_event: Optional[threading.Event] = None) -> DestroyResult:
        """
        Tears a pipeline down and removes its record.

        Destroying a pipeline that has no record is not an error.
        """
        run = _Run("destroy", cancel_event, self.on_stage)
        try:
            return self._destroy(options, run)
        except Exception as e:
            run.fail(e)
            raise

    def build(self, options: DeployOptions, cancel_event: Optional[threading.Event] = None) -> DeployResult:
        """
        Decides and builds without applying anything or touching the record.
        """
        run = _Run("build", cancel_event, self.on_stage)
        try:
            run.enter(DeployStage.RESOLVING)
            location, manifest = self._load(options.workdir, options.manifest_path, required=True)
            pipeline = self._pipeline_name(options.name, manifest, location)
            run.subject = pipeline

            decisions, images = self._decide_and_build(manifest, pipeline, options, run)
            run.enter(DeployStage.DONE)
        except Exception as e:
            run.fail(e)
            raise

        return DeployResult(
            pipeline=pipeline,
            canonical_path=location.canonical_path,
            decisions={name: d.action.value for name, d in decisions.items()},
            images={name: ref.full_name for name, ref in images.items()},
            stages=run.stages,
        )

    def _deploy(self, options: DeployOptions, run: _Run) -> DeployResult:
        run.enter(DeployStage.RESOLVING)
        location, manifest = self._load(options.workdir, options.manifest_path, required=True)
        pipeline = self._pipeline_name(options.name, manifest, location)
        run.subject = pipeline

        previous = self.store.get(pipeline)
        if previous is not None and previous.filename != location.canonical_path:
            logger.warning(
                "Pipeline '%s' was deployed from manifest '%s', now deploying from '%s'",
                pipeline, previous.filename or "<default>", location.canonical_path or "<default>",
            )

        decisions, images = self._decide_and_build(manifest, pipeline, options, run)

        run.enter(DeployStage.APPLYING)
        rendered = render_deploy(manifest, pipeline, images, self.context, options.variables, location.locator.workdir)
        self.deployer.apply(rendered)

        run.enter(DeployStage.RECORDING)
        record = self._record(pipeline, location, images)
        if previous is None or not previous.same_identity(record):
            logger.info("Recording pipeline '%s' from manifest '%s'", pipeline, record.filename or "<default>")
        self.store.put(pipeline, record)

        run.enter(DeployStage.DONE)
        logger.info("Pipeline '%s' deployed", pipeline)
        return DeployResult(
            pipeline=pipeline,
            canonical_path=location.canonical_path,
            decisions={name: d.action.value for name, d in decisions.items()},
            images=record.images,
            stages=run.stages,
            previous_filename=previous.filename if previous is not None else None,
        )

    def _destroy(self, options: DestroyOptions, run: _Run) -> DestroyResult:
        run.enter(DeployStage.RESOLVING)
        location, manifest = self._load(options.workdir, options.manifest_path, required=False)
        pipeline = self._pipeline_name(options.name, manifest, location)
        run.subject = pipeline

        record = self.store.get(pipeline)
        images: Dict[str, ImageReference] = {}
        if record is not None:
            if record.filename != location.canonical_path:
                logger.warning(
                    "Pipeline '%s' was deployed from manifest '%s', destroying with '%s'",
                    pipeline, record.filename or "<default>", location.canonical_path or "<default>",
                )
            images = {name: _stored_reference(name, ref) for name, ref in record.images.items()}
        else:
            logger.info("Pipeline '%s' has no record", pipeline)

        run.enter(DeployStage.TEARING_DOWN)
        self.deployer.teardown(render_destroy(manifest, pipeline, images, self.context, location.locator.workdir))

        run.enter(DeployStage.RECORDING)
        self.store.delete(pipeline)

        run.enter(DeployStage.DONE)
        logger.info("Pipeline '%s' destroyed", pipeline)
        return DestroyResult(
            pipeline=pipeline,
            canonical_path=location.canonical_path,
            record_existed=record is not None,
            stages=run.stages,
        )

    def _load(self, workdir: str, manifest_path: str, required: bool) -> Tuple[ManifestLocation, Optional[Manifest]]:
        location = locate_manifest(workdir, manifest_path)
        if location.manifest_file is None:
            if required:
                raise ManifestError(f"no manifest found in {location.locator.workdir}", location.locator.workdir)
            return location, None
        logger.debug("Manifest %s has canonical path '%s'", location.manifest_file, location.canonical_path)
        return location, self.parser.parse(location.manifest_file)

    def _pipeline_name(self, name: Optional[str], manifest: Optional[Manifest], location: ManifestLocation) -> str:
        if not name:
            name = infer_app_name(manifest, location.locator.repo_root, location.locator.workdir, self.git_runner)
        try:
            return translate_pipeline_name(name)
        except ValueError as e:
            raise ManifestError(str(e), location.manifest_file)

    def _decide_and_build(self, manifest: Manifest, pipeline: str, options: DeployOptions,
                          run: _Run) -> Tuple[Dict[str, BuildDecision], Dict[str, ImageReference]]:
        run.enter(DeployStage.DECIDING)
        specs = self.build_specs(manifest, pipeline)
        names = self._selected(specs, options.components)

        decisions: Dict[str, BuildDecision] = {}
        for name in names:
            run.check_cancelled()
            decisions[name] = self.engine.decide(specs[name], force_all=options.force_build)

        run.enter(DeployStage.BUILDING)
        required = [name for name in names if decisions[name].needs_build]
        built = self.build_service.build_all(specs, required, run.cancel_event) if required else {}

        images: Dict[str, ImageReference] = {}
        for name in names:
            images[name] = decisions[name].reference if not decisions[name].needs_build else built[name]
        return decisions, images

    def build_specs(self, manifest: Manifest, pipeline: str) -> Dict[str, BuildSpec]:
        """
        The manifest's build specs, with default tags filled in when a
        registry is configured and built images are published to it.
        """
        if not self.context.registry or not self.registry.remote:
            return dict(manifest.build)
        specs: Dict[str, BuildSpec] = {}
        for name, spec in manifest.build.items():
            if not spec.has_tag:
                tag = f"{self.context.registry}/{self.context.namespace}/{pipeline}-{name}:{DEFAULT_TAG}"
                spec = spec.model_copy(update={"tag": tag})
            specs[name] = spec
        return specs

    @staticmethod
    def _selected(specs: Dict[str, BuildSpec], components: List[str]) -> List[str]:
        if not components:
            return list(specs)
        unknown = [name for name in components if name not in specs]
        if unknown:
            raise ManifestError(f"unknown components: {', '.join(unknown)}")
        return [name for name in specs if name in components]

    def _record(self, pipeline: str, location: ManifestLocation, images: Dict[str, ImageReference]) -> PipelineRecord:
        repo_root = location.locator.repo_root
        return PipelineRecord(
            name=pipeline,
            filename=location.canonical_path,
            repository=remote_url(repo_root, self.git_runner) if repo_root else "",
            branch=current_branch(repo_root, self.git_runner) if repo_root else "",
            images={name: ref.full_name for name, ref in images.items()},
        )
