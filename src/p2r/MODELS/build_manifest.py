"""
Models for the build manifest (Dockerfile) and its build stages.
"""
from typing import List, Dict, Optional
from pydantic import BaseModel

ROOT_USERS = {"", "root", "0"}


def is_root_user(user: Optional[str]) -> bool:
    """
    Tells whether a USER value resolves to a root-equivalent identity.

    A missing user means the image default, which is root. Only the user part
    of ``user:group`` decides.
    """
    if user is None:
        return True
    name = user.strip().split(":", 1)[0].strip()
    return name in ROOT_USERS


class Instruction(BaseModel):
    """
    Represents a single instruction in a Dockerfile.
    """
    instruction: str
    arguments: List[str]
    raw: str
    line: int = 0


class CopyStep(BaseModel):
    sources: List[str]
    destination: str
    from_stage: Optional[str] = None


class BuildStage(BaseModel):
    """
    One FROM block of a manifest. USER, WORKDIR and ENV never leak across
    stages.
    """
    base_image: str
    name: Optional[str] = None

    working_directory: Optional[str] = None
    copies: List[CopyStep] = []
    run_commands: List[str] = []
    user: Optional[str] = None

    env_vars: Dict[str, str] = {}
    build_args: Dict[str, Optional[str]] = {}
    labels: Dict[str, str] = {}
    exposed_ports: List[str] = []

    cmd: List[str] = []
    entrypoint: List[str] = []

    instructions: List[Instruction] = []

    @property
    def runs_as_root(self) -> bool:
        return is_root_user(self.user)

    @property
    def startup_command(self) -> List[str]:
        """ENTRYPOINT followed by CMD, the way the runtime combines them."""
        if self.entrypoint:
            return self.entrypoint + self.cmd
        return self.cmd


class BuildManifest(BaseModel):
    """
    A parsed build manifest. Only the final stage ends up in the image.
    """
    path: Optional[str] = None
    global_args: Dict[str, Optional[str]] = {}
    stages: List[BuildStage] = []

    @property
    def final_stage(self) -> BuildStage:
        return self.stages[-1]

    @property
    def base_image(self) -> str:
        return self.final_stage.base_image

    @property
    def runtime_user(self) -> Optional[str]:
        return self.final_stage.user

    @property
    def runs_as_root(self) -> bool:
        return self.final_stage.runs_as_root
