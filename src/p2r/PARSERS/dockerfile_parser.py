"""
Parsers for Dockerfiles, extracting instructions and build stages.
"""
import json
import logging
import posixpath
import re
import shlex
from typing import Dict, Iterator, List, Optional, Tuple

from ..MODELS.build_manifest import BuildManifest, BuildStage, CopyStep, Instruction
from ..UTILS.string_interpolation import EnvironmentInterpolator
from ..exceptions import ManifestError

logger = logging.getLogger(__name__)

KNOWN_INSTRUCTIONS = {
    "ADD", "ARG", "CMD", "COPY", "ENTRYPOINT", "ENV", "EXPOSE", "FROM",
    "HEALTHCHECK", "LABEL", "MAINTAINER", "ONBUILD", "RUN", "SHELL",
    "STOPSIGNAL", "USER", "VOLUME", "WORKDIR",
}
EXEC_FORM_INSTRUCTIONS = {"CMD", "ENTRYPOINT", "RUN", "SHELL", "VOLUME", "COPY", "ADD"}

_INSTRUCTION_LINE = re.compile(r'^([A-Za-z]+)(?:\s+(.*))?$')


class DockerfileParser:
    """
    Parser for Dockerfile instructions.
    """
    def parse(self, dockerfile_path: str) -> List[Instruction]:
        """
        Parses a Dockerfile from a file path.

        Args:
            dockerfile_path (str): Path to the Dockerfile.

        Returns:
            List[Instruction]: List of parsed instructions.
        """
        try:
            with open(dockerfile_path, 'r') as f:
                content = f.read()
        except OSError as e:
            raise ManifestError(f"Cannot read build manifest {dockerfile_path}: {e}") from e
        return self.parse_from_string(content)

    def parse_manifest(self, dockerfile_path: str, build_args: Optional[Dict[str, str]] = None) -> BuildManifest:
        """
        Parses a Dockerfile into a BuildManifest with one entry per stage.
        """
        manifest = self.build_manifest(self.parse(dockerfile_path), build_args)
        manifest.path = dockerfile_path
        return manifest

    def parse_from_string(self, content: str) -> List[Instruction]:
        """
        Parses a Dockerfile from a string content.

        Args:
            content (str): Content of the Dockerfile.

        Returns:
            List[Instruction]: List of parsed instructions.
        """
        instructions = []
        for line_no, logical_line in self._logical_lines(content):
            match = _INSTRUCTION_LINE.match(logical_line)
            if not match:
                raise ManifestError(f"line {line_no}: cannot parse {logical_line[:60]!r}")

            inst = match.group(1).upper()
            args_str = (match.group(2) or "").strip()
            if inst not in KNOWN_INSTRUCTIONS:
                raise ManifestError(f"line {line_no}: unknown instruction {match.group(1)!r}")
            if not args_str:
                raise ManifestError(f"line {line_no}: {inst} requires arguments")

            instructions.append(Instruction(
                instruction=inst,
                arguments=self._arguments(inst, args_str),
                raw=logical_line,
                line=line_no,
            ))
        return instructions

    def build_manifest(self,
                       instructions: List[Instruction],
                       build_args: Optional[Dict[str, str]] = None) -> BuildManifest:
        """
        Groups instructions into stages and resolves each stage's effective
        configuration (working directory, user, environment, startup command).

        Args:
            instructions (List[Instruction]): Parsed instructions.
            build_args (Optional[Dict[str, str]]): --build-arg values; they
                override the defaults of the ARGs they name.
        """
        overrides = dict(build_args or {})
        manifest = BuildManifest()
        stage: Optional[BuildStage] = None
        variables: Dict[str, str] = {}

        for inst in instructions:
            cmd = inst.instruction
            args = inst.arguments

            if stage is None:
                if cmd == "ARG":
                    for name, default in self._args(args):
                        default = overrides.get(name, default)
                        manifest.global_args[name] = default
                        if default is not None:
                            variables[name] = default
                    continue
                if cmd != "FROM":
                    raise ManifestError(f"line {inst.line}: {cmd} before the first FROM")

            if cmd == "FROM":
                base_image, name = self._from(args, inst.line)
                stage = BuildStage(
                    base_image=self._substitute(base_image, variables),
                    name=name,
                )
                manifest.stages.append(stage)
                # only global ARGs and nothing else carries over into a new stage
                variables = {k: v for k, v in manifest.global_args.items() if v is not None}
                stage.instructions.append(inst)
                continue

            stage.instructions.append(inst)
            if cmd == "WORKDIR":
                path = self._substitute(args[0], variables)
                stage.working_directory = posixpath.join(stage.working_directory or "/", path)
            elif cmd == "ENV":
                for key, value in self._pairs(args, inst.line):
                    value = self._substitute(value, variables)
                    stage.env_vars[key] = value
                    variables[key] = value
            elif cmd == "ARG":
                for name, default in self._args(args):
                    if name in overrides:
                        default = overrides[name]
                    elif default is None and name in manifest.global_args:
                        default = manifest.global_args[name]
                    stage.build_args[name] = default
                    if default is not None:
                        variables[name] = default
            elif cmd == "LABEL":
                for key, value in self._pairs(args, inst.line):
                    stage.labels[key] = value
            elif cmd == "USER":
                stage.user = self._substitute(args[0].strip(), variables)
            elif cmd in ("COPY", "ADD"):
                stage.copies.append(self._copy(args, inst.line))
            elif cmd == "RUN":
                stage.run_commands.append(" ".join(args))
            elif cmd == "EXPOSE":
                stage.exposed_ports.extend(" ".join(args).split())
            elif cmd == "CMD":
                stage.cmd = args
            elif cmd == "ENTRYPOINT":
                stage.entrypoint = args

        if not manifest.stages:
            raise ManifestError("build manifest has no FROM instruction")
        return manifest

    @staticmethod
    def _logical_lines(content: str) -> Iterator[Tuple[int, str]]:
        """
        Yields (first line number, joined line) with comments removed and
        backslash continuations folded into a single line.
        """
        buffer: List[str] = []
        start = 0
        for number, line in enumerate(content.splitlines(), start=1):
            stripped = line.strip()
            if stripped.startswith('#'):
                continue
            if not stripped:
                continue
            if not buffer:
                start = number
            if stripped.endswith('\\'):
                buffer.append(stripped[:-1].strip())
                continue
            buffer.append(stripped)
            yield start, " ".join(part for part in buffer if part)
            buffer = []
        if buffer:
            yield start, " ".join(part for part in buffer if part)

    @staticmethod
    def _arguments(inst: str, args_str: str) -> List[str]:
        if inst in EXEC_FORM_INSTRUCTIONS and args_str.startswith('[') and args_str.endswith(']'):
            try:
                args = json.loads(args_str)
            except json.JSONDecodeError:
                # Not valid JSON, treat as shell form
                return [args_str]
            if isinstance(args, list) and all(isinstance(a, str) for a in args):
                return args
            return [args_str]
        if inst in ("ENV", "LABEL", "ARG", "COPY", "ADD", "FROM"):
            try:
                return shlex.split(args_str)
            except ValueError:
                return args_str.split()
        return [args_str]

    @staticmethod
    def _pairs(args: List[str], line: int) -> List[Tuple[str, str]]:
        """ENV/LABEL arguments: KEY=VALUE pairs, or the legacy 'KEY VALUE' form."""
        if args and '=' not in args[0]:
            if len(args) < 2:
                raise ManifestError(f"line {line}: missing value for {args[0]}")
            return [(args[0], " ".join(args[1:]))]
        pairs = []
        for arg in args:
            if '=' not in arg:
                raise ManifestError(f"line {line}: expected KEY=VALUE, got {arg!r}")
            key, value = arg.split('=', 1)
            pairs.append((key, value))
        return pairs

    @staticmethod
    def _args(args: List[str]) -> List[Tuple[str, Optional[str]]]:
        result = []
        for arg in args:
            if '=' in arg:
                name, default = arg.split('=', 1)
                result.append((name, default))
            else:
                result.append((arg, None))
        return result

    @staticmethod
    def _from(args: List[str], line: int) -> Tuple[str, Optional[str]]:
        args = [a for a in args if not a.startswith("--")]
        if len(args) == 1:
            return args[0], None
        if len(args) == 3 and args[1].upper() == "AS":
            return args[0], args[2]
        raise ManifestError(f"line {line}: malformed FROM {' '.join(args)!r}")

    @staticmethod
    def _copy(args: List[str], line: int) -> CopyStep:
        from_stage = None
        paths = []
        for arg in args:
            if arg.startswith("--from="):
                from_stage = arg.split("=", 1)[1]
            elif arg.startswith("--"):
                continue
            else:
                paths.append(arg)
        if len(paths) < 2:
            raise ManifestError(f"line {line}: COPY needs at least one source and a destination")
        return CopyStep(sources=paths[:-1], destination=paths[-1], from_stage=from_stage)

    @staticmethod
    def _substitute(value: str, variables: Dict[str, str]) -> str:
        return EnvironmentInterpolator.interpolate_shell(value, variables)
