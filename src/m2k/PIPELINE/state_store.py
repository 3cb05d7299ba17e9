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
Persistence of pipeline records.

A record is owned by its store: callers read and write it through `get`,
`put` and `delete` and never keep a copy across invocations.
"""
import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

from jinja2 import Environment, StrictUndefined
from pydantic import ValidationError

from ..errors import StateStoreError
from ..MODELS.pipeline import PipelineRecord
from ..RUNNERS.command_runner import CommandRunner
from .naming import record_name

logger = logging.getLogger(__name__)

GIT_DEPLOY_LABEL = "dev.m2k.io/git-deploy"

CONFIGMAP_TEMPLATE = """\
apiVersion: v1
kind: ConfigMap
metadata:
  name: {{ name | tojson }}
  namespace: {{ namespace | tojson }}
  labels:
    {{ label | tojson }}: "true"
data:
{%- for key, value in data | dictsort %}
  {{ key | tojson }}: {{ value | tojson }}
{%- endfor %}
"""


class PipelineStateStore(ABC):
    """
    Keyed storage of pipeline records.
    """

    @abstractmethod
    def get(self, pipeline_name: str) -> Optional[PipelineRecord]:
        """
        :return: The stored record, or None when the pipeline was never deployed.
        :raises StateStoreError: If the record cannot be read.
        """

    @abstractmethod
    def put(self, pipeline_name: str, record: PipelineRecord) -> None:
        """
        Creates or replaces the record. Writing an unchanged record twice
        leaves exactly one record behind.

        :raises StateStoreError: If the record cannot be written.
        """

    @abstractmethod
    def delete(self, pipeline_name: str) -> None:
        """
        Removes the record. Deleting a missing record is not an error.

        :raises StateStoreError: If the record cannot be removed.
        """


class FileStateStore(PipelineStateStore):
    """
    Stores one JSON document per pipeline in a directory.
    """

    def __init__(self, state_dir: Optional[str] = None):
        """
        :param state_dir: Directory holding the records. Defaults to ~/.m2k/pipelines
        """
        if state_dir:
            self.state_dir = Path(state_dir)
        else:
            self.state_dir = Path.home() / ".m2k" / "pipelines"

    def _path(self, pipeline_name: str) -> Path:
        return self.state_dir / f"{record_name(pipeline_name)}.json"

    def get(self, pipeline_name: str) -> Optional[PipelineRecord]:
        path = self._path(pipeline_name)
        if not path.exists():
            return None
        try:
            with open(path, 'r') as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("record is not a mapping")
            return PipelineRecord.from_data(data)
        except (OSError, ValueError, KeyError, ValidationError) as e:
            raise StateStoreError(f"cannot read pipeline record {path}: {e}")

    def put(self, pipeline_name: str, record: PipelineRecord) -> None:
        path = self._path(pipeline_name)
        tmp_path = path.with_suffix(".tmp")
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, 'w') as f:
                json.dump(record.to_data(), f, indent=2, sort_keys=True)
            os.replace(tmp_path, path)
        except OSError as e:
            raise StateStoreError(f"cannot write pipeline record {path}: {e}")
        logger.debug("Stored pipeline record %s", path)

    def delete(self, pipeline_name: str) -> None:
        path = self._path(pipeline_name)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as e:
            raise StateStoreError(f"cannot delete pipeline record {path}: {e}")

    def list_names(self) -> List[str]:
        if not self.state_dir.exists():
            return []
        prefix = record_name("")
        return sorted(p.stem[len(prefix):] for p in self.state_dir.glob(f"{prefix}*.json"))


class KubectlStateStore(PipelineStateStore):
    """
    Stores each pipeline as a ConfigMap in the target namespace, using kubectl.

    The canonical manifest path lives under the `filename` key so other tools
    can inspect it.
    """

    def __init__(self,
                 namespace: str,
                 runner: Optional[CommandRunner] = None,
                 kubectl: str = "kubectl",
                 context: Optional[str] = None,
                 kubeconfig: Optional[str] = None):
        self.namespace = namespace
        self.runner = runner or CommandRunner()
        self.kubectl = kubectl
        self.context = context
        self.kubeconfig = kubeconfig
        self.template = Environment(undefined=StrictUndefined).from_string(CONFIGMAP_TEMPLATE)

    def _base_command(self) -> List[str]:
        command = [self.kubectl]
        if self.kubeconfig:
            command += ["--kubeconfig", self.kubeconfig]
        if self.context:
            command += ["--context", self.context]
        return command + ["--namespace", self.namespace]

    def render(self, pipeline_name: str, record: PipelineRecord) -> str:
        """
        Renders the ConfigMap document for a record.
        """
        return self.template.render(
            name=record_name(pipeline_name),
            namespace=self.namespace,
            label=GIT_DEPLOY_LABEL,
            data=record.to_data(),
        )

    def get(self, pipeline_name: str) -> Optional[PipelineRecord]:
        name = record_name(pipeline_name)
        result = self.runner.run(self._base_command() + ["get", "configmap", name, "-o", "json"])
        if not result.ok:
            if "NotFound" in result.output or "not found" in result.output:
                return None
            raise StateStoreError(f"cannot read configmap {name}: {result.output}")
        try:
            document = json.loads(result.stdout)
            if not isinstance(document, dict):
                raise ValueError("not a JSON object")
            data = document.get("data") or {}
            return PipelineRecord.from_data(data)
        except (ValueError, KeyError, ValidationError) as e:
            raise StateStoreError(f"configmap {name} does not hold a pipeline record: {e}")

    def put(self, pipeline_name: str, record: PipelineRecord) -> None:
        document = self.render(pipeline_name, record)
        result = self.runner.run(self._base_command() + ["apply", "-f", "-"], input=document)
        if not result.ok:
            raise StateStoreError(f"cannot write configmap {record_name(pipeline_name)}: {result.output}")
        logger.debug("Applied configmap %s", record_name(pipeline_name))

    def delete(self, pipeline_name: str) -> None:
        name = record_name(pipeline_name)
        result = self.runner.run(
            self._base_command() + ["delete", "configmap", name, "--ignore-not-found"]
        )
        if not result.ok:
            raise StateStoreError(f"cannot delete configmap {name}: {result.output}")
