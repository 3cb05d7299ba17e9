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
Local image index.
Records images built against the local daemon so that redeploys can skip
them without a remote registry.
"""

import hashlib
import json
import logging
import os
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..errors import ImageNotFoundError, RegistryLookupError
from ..RUNNERS.command_runner import CommandRunner
from .base import ArtifactRegistry
from .image_reference import ImageReference

logger = logging.getLogger(__name__)


@dataclass
class IndexedImage:
    """Information about an indexed image."""
    reference: str
    digest: str
    build_args: List[str] = field(default_factory=list)
    registered_at: str = ""


class LocalImageIndex(ArtifactRegistry):
    """
    Content-addressable index of locally built images, persisted as JSON.

    A damaged index raises RegistryLookupError, it never reads as empty.
    Digests are daemon image ids, so references are addressed by tag.
    """

    remote = False

    def __init__(self,
                 index_file: Optional[str] = None,
                 runner: Optional[CommandRunner] = None,
                 docker: str = "docker"):
        """
        Initialize the image index.

        Args:
            index_file: Path of the index document. Defaults to ~/.m2k/images/index.json
            runner: When given, each hit is confirmed with `docker image inspect`
                so images removed from the daemon read as missing.
            docker: Docker executable used for the confirmation.
        """
        self.runner = runner
        self.docker = docker
        if index_file:
            self.index_file = Path(index_file)
        else:
            self.index_file = Path.home() / ".m2k" / "images" / "index.json"
        self._lock = threading.Lock()

    def _load_index(self) -> Dict[str, Any]:
        if not self.index_file.exists():
            return {"images": {}}
        try:
            with open(self.index_file, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise RegistryLookupError(f"image index {self.index_file} is unreadable: {e}")
        if not isinstance(data, dict) or not isinstance(data.get("images"), dict):
            raise RegistryLookupError(f"image index {self.index_file} is malformed")
        return data

    def _save_index(self, index: Dict[str, Any]) -> None:
        tmp_file = self.index_file.with_suffix(".tmp")
        try:
            self.index_file.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_file, "w") as f:
                json.dump(index, f, indent=2)
            os.replace(tmp_file, self.index_file)
        except OSError as e:
            raise RegistryLookupError(f"cannot write image index {self.index_file}: {e}")

    @staticmethod
    def _key(tag: str) -> str:
        try:
            return ImageReference.parse(tag).tagged_name
        except ValueError as e:
            raise RegistryLookupError(f"invalid image reference '{tag}': {e}", tag)

    def resolve_digest(self, tag: str) -> str:
        key = self._key(tag)
        with self._lock:
            entry = self._load_index()["images"].get(key)
        if not entry:
            raise ImageNotFoundError(key)
        if self.runner is not None:
            self._confirm_present(key)
        return entry["digest"]

    def _confirm_present(self, key: str) -> None:
        result = self.runner.run([self.docker, "image", "inspect", "--format", "{{.Id}}", key])
        if result.ok:
            return
        if "no such" in result.output.lower():
            logger.info("Indexed image %s is no longer in the docker daemon", key)
            raise ImageNotFoundError(key)
        raise RegistryLookupError(f"cannot inspect {key}: {result.output or f'exit code {result.exit_code}'}", key)

    def reference(self, tag: str, digest: str) -> ImageReference:
        return ImageReference.parse(tag).with_image_id(digest)

    def register(self, tag: str, build_args: List[str], digest: Optional[str] = None) -> None:
        """
        Add or replace an image in the index.

        Without a builder-reported digest, a content key is derived from the
        tag and build arguments.
        """
        key = self._key(tag)
        if not digest:
            payload = json.dumps({"tag": key, "args": list(build_args)}, sort_keys=True)
            digest = f"sha256:{hashlib.sha256(payload.encode()).hexdigest()}"

        entry = IndexedImage(
            reference=key,
            digest=digest,
            build_args=list(build_args),
            registered_at=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        )
        with self._lock:
            index = self._load_index()
            index["images"][key] = asdict(entry)
            self._save_index(index)
        logger.debug("Indexed %s as %s", key, digest)

    def remove(self, tag: str) -> bool:
        """
        Remove an image from the index.

        Returns:
            True if removed, False if not found
        """
        key = self._key(tag)
        with self._lock:
            index = self._load_index()
            if key not in index["images"]:
                return False
            del index["images"][key]
            self._save_index(index)
        return True

    def list_images(self) -> List[IndexedImage]:
        """List all indexed images, sorted by reference."""
        with self._lock:
            images = self._load_index()["images"]
        return [IndexedImage(**images[key]) for key in sorted(images)]
