"""
Models for a parsed application manifest.
"""
from typing import Dict, List, Optional
from pydantic import BaseModel
from .build_spec import BuildSpec


class DeployCommand(BaseModel):
    """
    A named shell command run while deploying or destroying.
    """
    name: str
    command: str


class DeploySection(BaseModel):
    """
    The deploy steps of a manifest.
    """
    commands: List[DeployCommand] = []
    image: Optional[str] = None


class Manifest(BaseModel):
    """
    Complete definition of a deployable application.

    `build` keeps the manifest's declaration order so that build and skip
    decisions are always reported in the same sequence.
    """
    name: Optional[str] = None
    build: Dict[str, BuildSpec] = {}
    deploy: DeploySection = DeploySection()
    destroy: List[DeployCommand] = []

    # Absolute path of the file this manifest was read from
    path: Optional[str] = None

    def component_names(self) -> List[str]:
        return list(self.build.keys())
