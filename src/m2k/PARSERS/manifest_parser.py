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
Parser for m2k application manifests.

A manifest looks like:

    name: my-app
    build:
      api:
        context: api
        image: registry.example.com/team/api:dev
        args:
          VERSION: "1.0"
    deploy:
      - kubectl apply -f k8s.yml
    destroy:
      - kubectl delete -f k8s.yml
"""
import logging
import os
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError

from ..errors import ManifestError
from ..MODELS.build_spec import BuildArg, BuildSpec
from ..MODELS.manifest import DeployCommand, DeploySection, Manifest
from ..UTILS.string_interpolation import EnvironmentInterpolator

logger = logging.getLogger(__name__)


class ManifestParser:
    """
    Parser for m2k.yml files.
    """
    def __init__(self, context: Optional[Dict[str, str]] = None):
        """
        Initializes the parser with an optional environment context for interpolation.

        :param context: A dictionary of environment variables for interpolation.
        """
        self.context = context if context is not None else dict(os.environ)

    def parse(self, manifest_path: str) -> Manifest:
        """
        Parses a manifest file from a path.

        Relative build contexts are resolved against the manifest's directory.

        :param manifest_path: Path to the manifest file.
        :return: Parsed manifest.
        """
        manifest_path = os.path.abspath(manifest_path)
        try:
            with open(manifest_path, 'r') as f:
                content = f.read()
        except OSError as e:
            raise ManifestError(f"cannot read manifest: {e}", manifest_path)
        manifest = self.parse_from_string(content, base_dir=os.path.dirname(manifest_path))
        manifest.path = manifest_path
        logger.debug("Parsed %s: %d buildable components", manifest_path, len(manifest.build))
        return manifest

    def parse_from_string(self, content: str, base_dir: Optional[str] = None) -> Manifest:
        """
        Parses a manifest from a string.

        :param content: YAML content of the manifest.
        :param base_dir: Directory relative build contexts are resolved against.
        :return: Parsed manifest.
        """
        try:
            data = yaml.safe_load(content)
        except (yaml.YAMLError, ValueError) as e:
            # Scalars such as impossible dates fail in the constructor with ValueError
            raise ManifestError(f"invalid manifest YAML: {e}")
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ManifestError("manifest must be a mapping")

        try:
            build = {}
            for name, spec in (self._mapping(data.get('build'), 'build')).items():
                build[str(name)] = self._parse_build(str(name), spec, base_dir)

            return Manifest(
                name=self._interpolate(str(data['name'])) if data.get('name') else None,
                build=build,
                deploy=self._parse_deploy(data.get('deploy')),
                destroy=self._parse_commands(data.get('destroy'), 'destroy'),
            )
        except ValidationError as e:
            raise ManifestError(f"invalid manifest: {e}")

    def _parse_build(self, name: str, spec: Any, base_dir: Optional[str]) -> BuildSpec:
        """
        Parses a single build entry. A bare string is shorthand for the context.
        """
        if isinstance(spec, str):
            spec = {'context': spec}
        spec = self._mapping(spec, f"build.{name}")

        context = self._interpolate(str(spec.get('context', '.')))
        if base_dir and not os.path.isabs(context):
            context = os.path.normpath(os.path.join(base_dir, context))

        return BuildSpec(
            name=name,
            context=context,
            dockerfile=self._interpolate(str(spec.get('dockerfile', 'Dockerfile'))),
            tag=self._interpolate(str(spec.get('image') or '')),
            target=spec.get('target'),
            args=self._parse_args(spec.get('args')),
            cache_from=[self._interpolate(v) for v in self._to_list(spec.get('cache_from'))],
            export_cache=[self._interpolate(v) for v in self._to_list(spec.get('export_cache'))],
            force_rebuild=False if spec.get('no_cache') is None else spec['no_cache'],
            depends_on=self._to_list(spec.get('depends_on')),
        )

    def _parse_args(self, args: Any) -> List[BuildArg]:
        """
        Build args come either as a mapping or as a list of KEY=VALUE strings.
        Declaration order is preserved.
        """
        parsed = []
        if isinstance(args, dict):
            for k, v in args.items():
                parsed.append(BuildArg(name=str(k), value=self._interpolate('' if v is None else str(v))))
        else:
            for item in self._to_list(args):
                k, _, v = item.partition('=')
                parsed.append(BuildArg(name=k, value=self._interpolate(v)))
        return parsed

    def _parse_deploy(self, deploy: Any) -> DeploySection:
        if deploy is None:
            return DeploySection()
        if isinstance(deploy, dict):
            return DeploySection(
                commands=self._parse_commands(deploy.get('commands'), 'deploy.commands'),
                image=deploy.get('image'),
            )
        return DeploySection(commands=self._parse_commands(deploy, 'deploy'))

    def _parse_commands(self, commands: Any, where: str) -> List[DeployCommand]:
        parsed = []
        if commands is None:
            return parsed
        if not isinstance(commands, list):
            raise ManifestError(f"'{where}' must be a list of commands")
        for item in commands:
            if isinstance(item, str):
                parsed.append(DeployCommand(name=item, command=item))
            elif isinstance(item, dict) and 'command' in item:
                command = str(item['command'])
                parsed.append(DeployCommand(name=str(item.get('name') or command), command=command))
            else:
                raise ManifestError(f"invalid command in '{where}': {item!r}")
        return parsed

    def _interpolate(self, value: str) -> str:
        try:
            return EnvironmentInterpolator.interpolate(value, self.context, strict=False)
        except KeyError as e:
            raise ManifestError(f"missing required variable: {e.args[0]}")

    def _mapping(self, value: Any, where: str) -> Dict[str, Any]:
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ManifestError(f"'{where}' must be a mapping")
        return value

    def _to_list(self, val: Any) -> List[str]:
        """
        Helper to ensure a value is a list of strings.

        :param val: The value to convert.
        :return: A list of strings.
        """
        if val is None:
            return []
        if isinstance(val, (list, tuple, dict)):
            return [str(v) for v in val]
        return [str(val)]
