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
Deployers apply rendered deploy steps to the cluster and tear them down again.
"""
import logging
import os
from abc import ABC, abstractmethod
from typing import List, Optional

from ..errors import ApplyError
from ..MODELS.manifest import DeployCommand
from ..RUNNERS.command_runner import CommandRunner
from .kubeconfig import scoped_kubeconfig
from .renderer import RenderedManifest

logger = logging.getLogger(__name__)

# Mount point of the working directory when steps run inside an image
CONTAINER_WORKDIR = "/m2k"
# Where kubeconfig files are mounted inside a deploy image
CONTAINER_KUBE_DIR = "/m2k-kube"


class Deployer(ABC):
    """
    Applies and removes a pipeline's resources.

    Neither operation rolls back on failure: resources created by steps that
    succeeded stay in place.
    """

    @abstractmethod
    def apply(self, rendered: RenderedManifest) -> None:
        """
        :raises ApplyError: If a deploy step fails.
        """

    @abstractmethod
    def teardown(self, rendered: RenderedManifest) -> None:
        """
        :raises ApplyError: If a destroy step fails.
        """


class CommandDeployer(Deployer):
    """
    Runs each step as `<shell> -c <command>`, on the host or inside the
    manifest's deploy image, stopping at the first failing step.

    Output goes to `.m2k/logs/<pipeline>.log` under the working directory.
    Steps see KUBECONFIG pinned to the configured context and namespace.
    """

    def __init__(self,
                 shell: str = "sh",
                 docker: str = "docker",
                 runner: Optional[CommandRunner] = None,
                 log_dir: Optional[str] = None):
        """
        :param shell: Shell used to run each step.
        :param docker: Docker executable, used when the manifest names a deploy image.
        :param runner: Runner to use instead of one logging to the pipeline's log file.
        :param log_dir: Directory for log files, instead of `<workdir>/.m2k/logs`.
        """
        self.shell = shell
        self.docker = docker
        self.runner = runner
        self.log_dir = log_dir

    def apply(self, rendered: RenderedManifest) -> None:
        if not rendered.commands:
            logger.warning("Pipeline '%s' has no deploy commands", rendered.pipeline)
        self._run_all(rendered, rendered.commands)

    def teardown(self, rendered: RenderedManifest) -> None:
        if not rendered.commands:
            logger.info("Pipeline '%s' has no destroy commands", rendered.pipeline)
        self._run_all(rendered, rendered.commands)

    def log_file(self, rendered: RenderedManifest) -> str:
        log_dir = self.log_dir or os.path.join(rendered.workdir or os.getcwd(), ".m2k", "logs")
        return os.path.join(log_dir, f"{rendered.pipeline}.log")

    def command_line(self,
                     rendered: RenderedManifest,
                     command: str,
                     kubeconfigs: Optional[List[str]] = None) -> List[str]:
        """
        The argument list that runs one step.
        """
        if not rendered.image:
            return [self.shell, "-c", command]

        line = [self.docker, "run", "--rm"]
        if rendered.workdir:
            line += ["-v", f"{rendered.workdir}:{CONTAINER_WORKDIR}", "-w", CONTAINER_WORKDIR]
        mounted = []
        for i, path in enumerate(kubeconfigs or []):
            mounted.append(f"{CONTAINER_KUBE_DIR}/config-{i}")
            line += ["-v", f"{path}:{mounted[-1]}:ro"]
        if mounted:
            line += ["-e", "KUBECONFIG=" + ":".join(mounted)]
        for key in sorted(rendered.environment):
            line += ["-e", f"{key}={rendered.environment[key]}"]
        return line + [rendered.image, self.shell, "-c", command]

    def _run_all(self, rendered: RenderedManifest, commands: List[DeployCommand]):
        if not commands:
            return
        runner = self.runner or CommandRunner(log_file=self.log_file(rendered))
        environment = {**os.environ, **rendered.environment}
        with scoped_kubeconfig(rendered.pipeline, rendered.namespace,
                               rendered.kube_context, rendered.kubeconfig, environ=os.environ) as kubeconfigs:
            if kubeconfigs:
                environment["KUBECONFIG"] = os.pathsep.join(kubeconfigs)
            for step in commands:
                logger.info("Running '%s'", step.name)
                line = self.command_line(rendered, step.command, kubeconfigs)
                result = runner.run(line, env=environment, cwd=rendered.workdir)
                if not result.ok:
                    raise ApplyError(
                        f"command '{step.name}' failed with exit code {result.exit_code}: {result.output}",
                        command=step.command,
                    )
