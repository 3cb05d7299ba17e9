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
Error taxonomy for deploy and destroy runs.

Every error the CLI can surface carries its own process exit status so that
scripts can tell a build failure from an apply failure without parsing output.
"""
from typing import Optional


class M2KError(Exception):
    """Base class for all errors reported by m2k."""

    exit_code = 1


class PathResolutionError(M2KError):
    """The manifest is unreachable or its canonical path cannot be computed."""

    exit_code = 3

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class RegistryLookupError(M2KError):
    """The registry could not answer a digest lookup (not a 'not found')."""

    exit_code = 4

    def __init__(self, message: str, tag: Optional[str] = None):
        super().__init__(message)
        self.tag = tag


class BuildError(M2KError):
    """Building the image of a named component failed."""

    exit_code = 5

    def __init__(self, component: str, message: str):
        super().__init__(f"build of '{component}' failed: {message}")
        self.component = component


class ApplyError(M2KError):
    """Applying (or tearing down) the deployment failed."""

    exit_code = 6

    def __init__(self, message: str, command: Optional[str] = None):
        super().__init__(message)
        self.command = command


class StateStoreError(M2KError):
    """Reading or writing a pipeline record failed."""

    exit_code = 7


class ManifestError(M2KError):
    """The manifest could not be read or does not match the expected schema."""

    exit_code = 8

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class DeployCancelledError(M2KError):
    """The run observed a cancellation request and stopped."""

    exit_code = 130


class ImageNotFoundError(LookupError):
    """
    The registry has no image for a tag.

    This is an input to the build decision, not a failure, which is why it is
    not an M2KError.
    """

    def __init__(self, tag: str):
        super().__init__(f"image not found: {tag}")
        self.tag = tag
