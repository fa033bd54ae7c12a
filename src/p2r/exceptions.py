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
Exception hierarchy for p2r.

Load-time problems (manifest, pipeline definition, settings, expressions)
are raised before any step runs. Step failures are grouped by the category
of the step that failed; every category is fatal to the run.
"""
from typing import Optional


class P2RError(Exception):
    """Base class for all p2r errors."""


class ConfigError(P2RError):
    """Invalid release settings."""


class ManifestError(P2RError):
    """The build manifest cannot be read or is ill-formed."""


class PipelineDefinitionError(P2RError):
    """The pipeline definition cannot be read or is ill-formed."""


class ExpressionError(P2RError):
    """A ${{ ... }} expression references an unknown context or key."""


class LedgerError(P2RError):
    """The run ledger file is unreadable."""


class PipelineStepError(P2RError):
    """
    A pipeline step failed.

    :param message: Human readable description.
    :param step: Name of the failing step.
    :param exit_code: Exit status of the failing command.
    """
    category = "step"

    def __init__(self, message: str, step: Optional[str] = None, exit_code: int = 1):
        super().__init__(message)
        self.step = step
        self.exit_code = exit_code or 1


class ToolchainError(PipelineStepError):
    category = "toolchain"


class StaticVerificationError(PipelineStepError):
    category = "static-verification"


class TestFailureError(PipelineStepError):
    category = "test"
    __test__ = False


class ImageBuildError(PipelineStepError):
    category = "image-build"


class PrivilegeError(ImageBuildError):
    """The image would run its main process as a root-equivalent user."""
    category = "privilege"


class RegistryAuthError(PipelineStepError):
    category = "registry-auth"


class PublishError(PipelineStepError):
    category = "publish"


class ReleaseError(PipelineStepError):
    category = "release"


class PipelineInterruptedError(PipelineStepError):
    category = "interrupted"


ERRORS_BY_CATEGORY = {
    cls.category: cls
    for cls in (
        PipelineStepError,
        ToolchainError,
        StaticVerificationError,
        TestFailureError,
        ImageBuildError,
        PrivilegeError,
        RegistryAuthError,
        PublishError,
        ReleaseError,
        PipelineInterruptedError,
    )
}
