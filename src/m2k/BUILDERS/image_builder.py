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
Image builders: the local docker daemon, or a buildx builder that may run in a
remote build environment.
"""
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from typing import List, Optional

from ..errors import BuildError
from ..MODELS.build_spec import BuildSpec
from ..PARSERS.dockerfile_parser import DockerfileParser, declared_build_args, stage_names
from ..REGISTRY.image_reference import ImageReference
from ..RUNNERS.command_runner import CommandRunner

logger = logging.getLogger(__name__)


class ImageBuilder(ABC):
    """
    Executes the build of one component and reports the produced image.
    """

    def __init__(self, runner: Optional[CommandRunner] = None, docker: str = "docker"):
        """
        Initializes the builder.

        :param runner: Runs the docker CLI.
        :param docker: Name or path of the docker executable.
        """
        self.runner = runner or CommandRunner()
        self.docker = docker
        self.parser = DockerfileParser()

    def build(self, spec: BuildSpec) -> ImageReference:
        """
        Builds the image described by `spec`.

        :param spec: Context, dockerfile, tag, build args and cache settings.
        :return: The produced image. Tagged builds return the tag, pinned to a
            digest when the builder reports one; untagged builds return the
            local image id.
        :raises BuildError: If the inputs are invalid or the build fails.
        """
        dockerfile = self.check_inputs(spec)
        return self._build(spec, dockerfile)

    @abstractmethod
    def _build(self, spec: BuildSpec, dockerfile: str) -> ImageReference:
        """Runs the actual build."""

    def check_inputs(self, spec: BuildSpec) -> str:
        """
        Verifies the context and Dockerfile before any work is dispatched.

        :return: Absolute path of the Dockerfile.
        """
        if not os.path.isdir(spec.context):
            raise BuildError(spec.name, f"build context {spec.context} is not a directory")

        dockerfile = spec.dockerfile
        if not os.path.isabs(dockerfile):
            dockerfile = os.path.join(spec.context, dockerfile)
        if not os.path.isfile(dockerfile):
            raise BuildError(spec.name, f"Dockerfile {dockerfile} not found")

        try:
            ast = self.parser.parse(dockerfile)
        except (OSError, UnicodeDecodeError) as e:
            raise BuildError(spec.name, f"cannot read {dockerfile}: {e}")

        declared = declared_build_args(ast)
        for arg in spec.args:
            if arg.name not in declared:
                logger.warning("[%s] build arg '%s' is not declared in %s", spec.name, arg.name, dockerfile)

        if spec.target and spec.target not in stage_names(ast):
            raise BuildError(spec.name, f"target stage '{spec.target}' not found in {dockerfile}")

        return dockerfile

    def _common_args(self, spec: BuildSpec, dockerfile: str) -> List[str]:
        args = ["-f", dockerfile]
        if spec.tag:
            args += ["-t", spec.tag]
        if spec.target:
            args += ["--target", spec.target]
        for build_arg in spec.build_args():
            args += ["--build-arg", build_arg]
        if spec.force_rebuild:
            args.append("--no-cache")
        return args

    def _run(self, spec: BuildSpec, command: List[str]):
        logger.info("Building image for service '%s'", spec.name)
        result = self.runner.run(command, cwd=spec.context)
        if not result.ok:
            raise BuildError(spec.name, result.output or f"exit code {result.exit_code}")
        return result


class DockerBuilder(ImageBuilder):
    """
    Builds with the classic builder of the local docker daemon.
    """

    def __init__(self, runner: Optional[CommandRunner] = None, docker: str = "docker", push: bool = False):
        super().__init__(runner, docker)
        self.push = push

    def _build(self, spec: BuildSpec, dockerfile: str) -> ImageReference:
        if spec.export_cache:
            logger.warning("[%s] export_cache needs buildx; ignoring %s", spec.name, ", ".join(spec.export_cache))

        with tempfile.TemporaryDirectory(prefix="m2k-build-") as tmp:
            iidfile = os.path.join(tmp, "iid")
            command = [self.docker, "build", "--iidfile", iidfile]
            command += self._common_args(spec, dockerfile)
            for ref in spec.cache_from:
                command += ["--cache-from", ref]
            command.append(spec.context)

            self._run(spec, command)
            with open(iidfile, 'r') as f:
                image_id = f.read().strip()

        if not spec.tag:
            return ImageReference.local(spec.name, image_id)

        reference = ImageReference.parse(spec.tag)
        if not self.push:
            return reference.with_image_id(image_id)

        result = self.runner.run([self.docker, "push", spec.tag])
        if not result.ok:
            raise BuildError(spec.name, f"push of {spec.tag} failed: {result.output}")
        # The pushed manifest digest, not the local image id, is what the registry resolves
        return reference


class BuildxBuilder(ImageBuilder):
    """
    Builds with `docker buildx`, optionally on a named (remote) builder.

    Tagged images are pushed as part of the build and registry caches are
    imported and exported.
    """

    def __init__(self, runner: Optional[CommandRunner] = None, docker: str = "docker", builder: Optional[str] = None):
        super().__init__(runner, docker)
        self.builder = builder

    def _build(self, spec: BuildSpec, dockerfile: str) -> ImageReference:
        with tempfile.TemporaryDirectory(prefix="m2k-build-") as tmp:
            metadata_file = os.path.join(tmp, "metadata.json")
            command = [self.docker, "buildx", "build", "--metadata-file", metadata_file]
            if self.builder:
                command += ["--builder", self.builder]
            command += self._common_args(spec, dockerfile)
            for ref in spec.cache_from:
                command += ["--cache-from", f"type=registry,ref={ref}"]
            for ref in spec.export_cache:
                command += ["--cache-to", f"type=registry,ref={ref},mode=max"]
            command.append("--push" if spec.tag else "--load")
            command.append(spec.context)

            self._run(spec, command)
            metadata = self._read_metadata(spec, metadata_file)

        digest = metadata.get("containerimage.digest")
        if not spec.tag:
            image_id = metadata.get("containerimage.config.digest") or digest
            if not image_id:
                raise BuildError(spec.name, "builder did not report an image id")
            return ImageReference.local(spec.name, image_id)

        reference = ImageReference.parse(spec.tag)
        return reference.with_digest(digest) if digest else reference

    @staticmethod
    def _read_metadata(spec: BuildSpec, metadata_file: str) -> dict:
        try:
            with open(metadata_file, 'r') as f:
                return json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            raise BuildError(spec.name, f"unreadable build metadata: {e}")
