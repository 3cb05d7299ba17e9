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
Shared fakes for the collaborators of the build and deploy engine.
"""
import hashlib
import logging
import os
import threading
from typing import Dict, List, Optional

import pytest

from m2k.BUILDERS.build_service import ImageBuildService
from m2k.BUILDERS.image_builder import ImageBuilder
from m2k.DEPLOY.coordinator import DeployCoordinator
from m2k.DEPLOY.deployer import Deployer
from m2k.errors import ApplyError, BuildError, ImageNotFoundError
from m2k.MODELS.build_spec import BuildSpec
from m2k.MODELS.deploy import ClusterContext
from m2k.PIPELINE.state_store import PipelineStateStore
from m2k.REGISTRY.base import ArtifactRegistry
from m2k.REGISTRY.image_reference import ImageReference
from m2k.RUNNERS.command_runner import CommandResult


class FakeRegistry(ArtifactRegistry):
    """
    In-memory registry counting calls. `error`, when set, is raised by every lookup.
    `remote=False` makes it behave like an index of daemon-local images.
    """

    def __init__(self, images: Optional[Dict[str, str]] = None, remote: bool = True):
        self.remote = remote
        self.images: Dict[str, str] = {}
        self.build_args: Dict[str, List[str]] = {}
        self.lookups: List[str] = []
        self.registered: List[str] = []
        self.error: Optional[Exception] = None
        self._lock = threading.Lock()
        for tag, digest in (images or {}).items():
            self.images[ImageReference.parse(tag).tagged_name] = digest

    def resolve_digest(self, tag: str) -> str:
        with self._lock:
            self.lookups.append(tag)
            if self.error is not None:
                raise self.error
            key = ImageReference.parse(tag).tagged_name
            if key not in self.images:
                raise ImageNotFoundError(tag)
            return self.images[key]

    def register(self, tag: str, build_args: List[str], digest: Optional[str] = None) -> None:
        with self._lock:
            key = ImageReference.parse(tag).tagged_name
            self.registered.append(tag)
            self.build_args[key] = list(build_args)
            self.images[key] = digest or "sha256:" + hashlib.sha256(key.encode()).hexdigest()


class FakeBuilder(ImageBuilder):
    """
    Records builds instead of running docker. Components listed in `fail`
    raise BuildError.
    """

    def __init__(self, fail: Optional[List[str]] = None):
        super().__init__(runner=None)
        self.built: List[str] = []
        self.fail = set(fail or [])
        self._lock = threading.Lock()

    def build(self, spec: BuildSpec) -> ImageReference:
        with self._lock:
            self.built.append(spec.name)
        if spec.name in self.fail:
            raise BuildError(spec.name, "exit code 1")
        image_id = "sha256:" + hashlib.sha256(spec.name.encode()).hexdigest()
        if not spec.tag:
            return ImageReference.local(spec.name, image_id)
        return ImageReference.parse(spec.tag).with_digest(image_id)

    def _build(self, spec, dockerfile):
        raise NotImplementedError


class FakeDeployer(Deployer):
    def __init__(self, fail_apply: bool = False, fail_teardown: bool = False):
        self.applied = []
        self.torn_down = []
        self.fail_apply = fail_apply
        self.fail_teardown = fail_teardown

    def apply(self, rendered):
        self.applied.append(rendered)
        if self.fail_apply:
            raise ApplyError("command 'kubectl apply' failed with exit code 1", command="kubectl apply")

    def teardown(self, rendered):
        self.torn_down.append(rendered)
        if self.fail_teardown:
            raise ApplyError("command 'kubectl delete' failed with exit code 1", command="kubectl delete")


class MemoryStateStore(PipelineStateStore):
    def __init__(self):
        self.records = {}
        self.puts = 0

    def get(self, pipeline_name):
        return self.records.get(pipeline_name)

    def put(self, pipeline_name, record):
        self.puts += 1
        self.records[pipeline_name] = record

    def delete(self, pipeline_name):
        self.records.pop(pipeline_name, None)


class ScriptedRunner:
    """
    Stands in for CommandRunner. Each call returns the first scripted result
    whose key is a prefix of the command; unmatched commands fail with 1.
    """

    def __init__(self, script: Optional[Dict[tuple, CommandResult]] = None):
        self.script = script or {}
        self.calls: List[dict] = []

    def run(self, command, env=None, cwd=None, input=None, timeout=None):
        self.calls.append({"command": list(command), "env": env, "cwd": cwd, "input": input})
        for prefix, result in self.script.items():
            if tuple(command[:len(prefix)]) == prefix:
                return CommandResult(list(command), result.exit_code, result.stdout, result.stderr)
        return CommandResult(list(command), 1, "", "unexpected command")

    @property
    def commands(self) -> List[List[str]]:
        return [call["command"] for call in self.calls]


@pytest.fixture
def fake_registry():
    return FakeRegistry()


@pytest.fixture
def fake_builder():
    return FakeBuilder()


@pytest.fixture
def fake_deployer():
    return FakeDeployer()


@pytest.fixture
def memory_store():
    return MemoryStateStore()


@pytest.fixture
def make_coordinator(fake_registry, fake_builder, fake_deployer, memory_store):
    """
    Builds a coordinator over the fakes. Stages entered are collected in the
    returned coordinator's `seen_stages`.
    """

    def factory(registry=None, builder=None, deployer=None, store=None, context=None, max_workers=2):
        registry = registry or fake_registry
        seen = []
        coordinator = DeployCoordinator(
            context=context or ClusterContext(namespace="dev"),
            registry=registry,
            build_service=ImageBuildService(registry, builder or fake_builder, max_workers),
            deployer=deployer or fake_deployer,
            store=store or memory_store,
            git_runner=ScriptedRunner(),
            on_stage=seen.append,
        )
        coordinator.seen_stages = seen
        return coordinator

    return factory


@pytest.fixture
def repo(tmp_path):
    """
    A repository with a default manifest at its root and a nested one at
    subdirA/subdirB/m2k.yml, each building 'api' from its own directory.
    """
    root = tmp_path / "shop"
    (root / ".git").mkdir(parents=True)
    nested = root / "subdirA" / "subdirB"
    nested.mkdir(parents=True)

    manifest = (
        "build:\n"
        "  api:\n"
        "    context: .\n"
        "    image: registry.local/team/api:dev\n"
        "deploy:\n"
        "  - kubectl apply -f k8s.yml\n"
        "destroy:\n"
        "  - kubectl delete -f k8s.yml\n"
    )
    for directory in (root, nested):
        (directory / "m2k.yml").write_text(manifest)
        (directory / "Dockerfile").write_text("FROM alpine\n")
    return root


@pytest.fixture
def chdir():
    """Changes the working directory for the duration of a test."""
    original = os.getcwd()

    def change(path):
        os.chdir(path)

    yield change
    os.chdir(original)


@pytest.fixture(autouse=True)
def reset_m2k_logger():
    """Undoes configure_logging calls made by CLI tests."""
    logger = logging.getLogger("m2k")
    yield
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)
    logger.propagate = True


@pytest.fixture(autouse=True)
def no_user_kubeconfig(tmp_path, monkeypatch):
    """Keeps deploy steps from picking up the kubeconfig of the machine running the tests."""
    monkeypatch.setenv("KUBECONFIG", str(tmp_path / "no-kubeconfig"))
