"""
Models for pipeline identity and the persisted pipeline record.
"""
import json
from datetime import datetime, timezone
from typing import Dict, Optional
from pydantic import BaseModel, Field


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class ManifestLocator(BaseModel):
    """
    Everything needed to locate a manifest independently of where the
    command was invoked from.
    """
    workdir: str
    manifest_path: str = ""
    repo_root: Optional[str] = None


class PipelineStatus:
    """
    Values stored in the record's `status` field.
    """
    DEPLOYED = "deployed"


class PipelineRecord(BaseModel):
    """
    The persisted identity of one deployed application.

    `filename` holds the canonical manifest path: relative to the repository
    root, empty when the default manifest was used.
    """
    name: str
    filename: str = ""
    repository: str = ""
    branch: str = ""
    status: str = PipelineStatus.DEPLOYED
    images: Dict[str, str] = {}
    updated: str = Field(default_factory=_utcnow)

    def to_data(self) -> Dict[str, str]:
        """
        Flattens the record into the string map held by a cluster key/value
        record.
        """
        return {
            "name": self.name,
            "filename": self.filename,
            "repository": self.repository,
            "branch": self.branch,
            "status": self.status,
            "images": json.dumps(self.images, sort_keys=True),
            "updated": self.updated,
        }

    @classmethod
    def from_data(cls, data: Dict[str, str]) -> "PipelineRecord":
        images = data.get("images") or "{}"
        return cls(
            name=data["name"],
            filename=data.get("filename", ""),
            repository=data.get("repository", ""),
            branch=data.get("branch", ""),
            status=data.get("status", PipelineStatus.DEPLOYED),
            images=json.loads(images),
            updated=data.get("updated") or _utcnow(),
        )

    def same_identity(self, other: "PipelineRecord") -> bool:
        """
        True when both records describe the same pipeline deployed from the
        same manifest. Timestamps and images are not part of the identity.
        """
        return self.name == other.name and self.filename == other.filename
