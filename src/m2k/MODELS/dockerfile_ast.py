"""
What a build needs to know about a Dockerfile: its instructions in order,
grouped into build stages.
"""
from typing import List, Optional
from pydantic import BaseModel


class Instruction(BaseModel):
    instruction: str
    arguments: List[str]
    raw: str
    # Index of the FROM that opened the enclosing stage; -1 for global ARGs
    stage: int = -1


class DockerfileAST(BaseModel):
    instructions: List[Instruction] = []

    def find(self, instruction: str, stage: Optional[int] = None) -> List[Instruction]:
        """Instructions named `instruction`, optionally limited to one stage."""
        return [
            i for i in self.instructions
            if i.instruction == instruction and (stage is None or i.stage == stage)
        ]

    @property
    def stage_count(self) -> int:
        return len(self.find("FROM"))
