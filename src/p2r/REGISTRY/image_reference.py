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
Image reference parsing for tags that get built, pushed and released,
e.g. 'registry.heroku.com/congratulator/worker:latest'.
"""

import re
from dataclasses import dataclass
from typing import List, Optional

_COMPONENT = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$")
_TAG = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")


@dataclass(frozen=True)
class ImageReference:
    """
    Parsed image reference.

    Examples:
        - worker -> docker.io/library/worker:latest
        - registry.heroku.com/congratulator/worker -> tag 'latest'
        - localhost:5000/app:v1 -> registry 'localhost:5000'
    """

    registry: str
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    DEFAULT_REGISTRY = "docker.io"
    DEFAULT_TAG = "latest"

    @classmethod
    def parse(cls, reference: str) -> "ImageReference":
        """
        Parse an image reference string.

        Args:
            reference: Image reference string (e.g., 'app:v1', 'host/org/app:v1')

        Returns:
            Parsed ImageReference object.

        Raises:
            ValueError: If the reference is empty or malformed.
        """
        reference = (reference or "").strip()
        if not reference:
            raise ValueError("Empty image reference")

        name, digest = reference, None
        if "@" in name:
            name, digest = name.rsplit("@", 1)
            if not digest.startswith("sha256:"):
                raise ValueError(f"Unsupported digest in {reference!r}")

        # a colon after the last slash separates the tag; before it, a port
        tag = None
        last_slash = name.rfind("/")
        last_colon = name.rfind(":")
        if last_colon > last_slash:
            name, tag = name[:last_colon], name[last_colon + 1:]
            if not _TAG.match(tag):
                raise ValueError(f"Invalid tag {tag!r} in {reference!r}")

        parts = name.split("/")
        if len(parts) > 1 and ("." in parts[0] or ":" in parts[0] or parts[0] == "localhost"):
            registry, path = parts[0], parts[1:]
        else:
            registry, path = cls.DEFAULT_REGISTRY, parts
            if len(path) == 1:
                path = ["library"] + path

        for component in path:
            if not _COMPONENT.match(component):
                raise ValueError(f"Invalid repository component {component!r} in {reference!r}")

        if not tag and not digest:
            tag = cls.DEFAULT_TAG
        return cls(registry=registry, repository="/".join(path), tag=tag, digest=digest)

    @property
    def path(self) -> List[str]:
        return self.repository.split("/")

    @property
    def full_name(self) -> str:
        """Full image name with registry."""
        name = f"{self.registry}/{self.repository}"
        if self.digest:
            return f"{name}@{self.digest}"
        if self.tag:
            return f"{name}:{self.tag}"
        return name

    @property
    def short_name(self) -> str:
        """Image name without the registry when it is the default one."""
        if self.registry != self.DEFAULT_REGISTRY:
            return self.full_name
        repo = self.repository
        if repo.startswith("library/"):
            repo = repo[len("library/"):]
        if self.digest:
            return f"{repo}@{self.digest}"
        if self.tag:
            return f"{repo}:{self.tag}"
        return repo

    def __str__(self) -> str:
        return self.short_name

    def __repr__(self) -> str:
        return f"ImageReference({self.full_name})"
