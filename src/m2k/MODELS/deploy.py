"""
Options and results of deploy, destroy and build runs.
"""
from enum import Enum
from typing import Dict, List, Optional
from pydantic import BaseModel


class DeployStage(str, Enum):
    """
    Stages of the deploy and destroy state machines.
    """
    RESOLVING = "resolving"
    DECIDING = "deciding"
    BUILDING = "building"
    APPLYING = "applying"
    TEARING_DOWN = "tearing-down"
    RECORDING = "recording"
    DONE = "done"
    FAILED = "failed"


class ClusterContext(BaseModel):
    """
    Where a pipeline is deployed. Passed explicitly to every component that
    needs it; nothing reads a process-wide current context.
    """
    namespace: str = "default"
    registry: Optional[str] = None
    kube_context: Optional[str] = None
    kubeconfig: Optional[str] = None


class DeployOptions(BaseModel):
    """
    What the user asked for on the command line.
    """
    workdir: str
    manifest_path: str = ""
    name: Optional[str] = None
    force_build: bool = False
    components: List[str] = []
    variables: Dict[str, str] = {}


class DestroyOptions(BaseModel):
    workdir: str
    manifest_path: str = ""
    name: Optional[str] = None


class DeployResult(BaseModel):
    """
    Outcome of a deploy (or build-only) run.
    """
    pipeline: str
    canonical_path: str
    decisions: Dict[str, str] = {}
    images: Dict[str, str] = {}
    stages: List[DeployStage] = []
    previous_filename: Optional[str] = None

    @property
    def built(self) -> List[str]:
        return [name for name, action in self.decisions.items() if action != "skip"]

    @property
    def drifted(self) -> bool:
        """
        True when an earlier deploy of this pipeline used a different manifest.
        """
        return self.previous_filename is not None and self.previous_filename != self.canonical_path


class DestroyResult(BaseModel):
    pipeline: str
    canonical_path: str
    record_existed: bool = False
    stages: List[DeployStage] = []
