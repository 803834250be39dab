#!/usr/bin/env python3
import argparse
import enum
import os
import subprocess
import sys
from dataclasses import dataclass, field
from typing import Callable

FRONTEND = ["cargo", "run"]
LLC = "llc"
LD = "ld"
HELPER_OBJECT = "./helper/flush_stdout.o"
DYNAMIC_LINKER = "/lib64/ld-linux-x86-64.so.2"
OPT_LEVEL = 3
IR_FILE = "out.ll"
OBJECT_FILE = "out.o"
OUTPUT = "hello"

# Exit codes used when there is no tool status to pass through
EXIT_NOT_STARTED = 127
EXIT_NO_STATUS = 1


class Stage(enum.Enum):
    CODEGEN = "Running frontend"
    ASSEMBLE = "Compiling"
    LINK = "Linking"


class State(enum.Enum):
    IDLE = "idle"
    CODEGEN = "codegen"
    ASSEMBLE = "assemble"
    LINK = "link"
    DONE = "done"
    ABORTED = "aborted"


class PipelineError(Exception):
    def __init__(self, stage: Stage | None, exit_code: int, diagnostics: str) -> None:
        super().__init__(diagnostics)
        self.stage = stage
        self.exit_code = exit_code
        self.diagnostics = diagnostics


class ToolInvocationError(PipelineError):
    """The tool could not be located or started."""


class CompilationError(PipelineError):
    """The frontend or the code generator ran and failed."""


class LinkError(PipelineError):
    """The linker failed, or one of its input objects is missing."""


class WorkspaceError(PipelineError):
    """A directory or artifact could not be created."""


@dataclass
class CommandResult:
    argv: list[str]
    exit_code: int
    stdout: bytes = b""
    stderr: bytes = b""

    @property
    def diagnostics(self) -> str:
        # surrogateescape keeps undecodable bytes so _passthrough can restore them
        return self.stderr.decode("utf-8", errors="surrogateescape")


Runner = Callable[[list[str]], CommandResult]


@dataclass
class Toolchain:
    frontend: list[str] = field(default_factory=lambda: list(FRONTEND))
    codegen: str = LLC
    linker: str = LD
    helper_object: str = HELPER_OBJECT
    dynamic_linker: str = DYNAMIC_LINKER
    opt_level: int = OPT_LEVEL
    workdir: str = "."
    ir_name: str = IR_FILE
    object_name: str = OBJECT_FILE
    output: str = OUTPUT

    def __post_init__(self) -> None:
        if self.opt_level not in (0, 1, 2, 3):
            raise ValueError(f"Invalid optimization level: {self.opt_level}")

    @property
    def ir_path(self) -> str:
        return os.path.join(self.workdir, self.ir_name)

    @property
    def object_path(self) -> str:
        return os.path.join(self.workdir, self.object_name)


def run_command(argv: list[str]) -> CommandResult:
    try:
        proc = subprocess.run(argv, capture_output=True)
    except OSError as e:
        raise ToolInvocationError(None, EXIT_NOT_STARTED, f"Failed to invoke {argv[0]}: {e}\n")
    exit_code = proc.returncode
    if exit_code < 0:
        # Killed by a signal, reported the way the shell does
        exit_code = 128 - exit_code
    return CommandResult(argv, exit_code, proc.stdout, proc.stderr)


def main() -> None:
    parser = argparse.ArgumentParser(description="Build an executable using the frontend, llc, and ld")
    parser.add_argument("src", nargs="?", help="Source program passed to the frontend (default: the frontend's own)", default=None)
    args = parser.parse_args()

    exit_code, output = compile(args.src)
    _passthrough(output.encode("utf-8", errors="surrogateescape"))
    sys.exit(exit_code)


def compile(src: str | None = None, toolchain: Toolchain | None = None, quiet: bool = False, runner: Runner = run_command) -> tuple[int, str]:
    pipeline = Pipeline(toolchain or Toolchain(), runner, quiet)
    try:
        pipeline.build(src)
    except PipelineError as e:
        return e.exit_code, e.diagnostics
    return 0, ""


class Pipeline:
    def __init__(self, toolchain: Toolchain, runner: Runner = run_command, quiet: bool = False) -> None:
        self.toolchain = toolchain
        self.runner = runner
        self.quiet = quiet
        self.state = State.IDLE

    def build(self, src: str | None = None) -> str:
        """Run every stage in order and return the executable's path.

        Artifacts left by an earlier failed build are removed first, so each
        stage only ever sees what the previous stage of this build wrote.
        The first failing stage aborts the build with its error. The IR and
        object files are left in place in that case; they are removed only
        once the executable has been linked.
        """
        tc = self.toolchain
        _rm(tc.ir_path, tc.object_path, tc.output)
        _makedirs(tc.workdir, os.path.dirname(tc.output))

        # Source to IR, IR to object, object to executable
        steps = [
            (State.CODEGEN, Stage.CODEGEN, lambda: frontend(self._run, tc, src)),
            (State.ASSEMBLE, Stage.ASSEMBLE, lambda: llc(self._run, tc)),
            (State.LINK, Stage.LINK, lambda: ld(self._run, tc)),
        ]
        for state, stage, step in steps:
            self.state = state
            self._announce(stage)
            try:
                step()
            except PipelineError as e:
                if e.stage is None:
                    e.stage = stage
                self.state = State.ABORTED
                raise

        self.state = State.DONE
        _rm(tc.ir_path, tc.object_path)
        return tc.output

    def _run(self, argv: list[str]) -> CommandResult:
        result = self.runner(argv)
        # Warnings from a successful tool; a failing tool's stderr travels with its error
        if result.exit_code == 0 and result.stderr and not self.quiet:
            _passthrough(result.stderr)
        return result

    def _announce(self, stage: Stage) -> None:
        if not self.quiet:
            print(f"{stage.value}...", file=sys.stderr)


def frontend(runner: Runner, tc: Toolchain, src: str | None = None) -> str:
    argv = list(tc.frontend)
    if src is not None:
        argv.append(src)
    result = runner(argv)
    if result.exit_code != 0:
        raise CompilationError(Stage.CODEGEN, result.exit_code, result.diagnostics)

    try:
        with open(tc.ir_path, "wb") as f:
            f.write(result.stdout)
            f.flush()
            os.fsync(f.fileno())
    except OSError as e:
        raise WorkspaceError(Stage.CODEGEN, EXIT_NO_STATUS, f"Failed to write IR file {tc.ir_path}: {e}\n")
    return tc.ir_path


def llc(runner: Runner, tc: Toolchain) -> str:
    if not os.path.exists(tc.ir_path):
        raise CompilationError(Stage.ASSEMBLE, EXIT_NO_STATUS, f"Missing IR file {tc.ir_path}\n")

    result = runner([tc.codegen, "-o", tc.object_path, tc.ir_path, "-filetype=obj", f"-O{tc.opt_level}"])
    if result.exit_code != 0:
        raise CompilationError(Stage.ASSEMBLE, result.exit_code, result.diagnostics)
    if not os.path.exists(tc.object_path):
        raise CompilationError(Stage.ASSEMBLE, EXIT_NO_STATUS, f"{tc.codegen} did not produce {tc.object_path}\n")
    return tc.object_path


def ld(runner: Runner, tc: Toolchain) -> str:
    for path in (tc.object_path, tc.helper_object):
        if not os.path.exists(path):
            raise LinkError(Stage.LINK, EXIT_NO_STATUS, f"Missing input object {path}\n")

    result = runner([
        tc.linker,
        "-o", tc.output,
        "-dynamic-linker", tc.dynamic_linker,
        tc.object_path,
        tc.helper_object,
        "-lc",
    ])
    if result.exit_code != 0:
        raise LinkError(Stage.LINK, result.exit_code, result.diagnostics)
    return tc.output


def _makedirs(*dirs: str) -> None:
    for d in dirs:
        if not d:
            continue
        try:
            os.makedirs(d, exist_ok=True)
        except OSError as e:
            raise WorkspaceError(None, EXIT_NO_STATUS, f"Failed to create directory {d}: {e}\n")


def _passthrough(data: bytes) -> None:
    sys.stderr.flush()
    sys.stderr.buffer.write(data)
    sys.stderr.buffer.flush()


def _rm(*files: str) -> None:
    for file in files:
        try:
            os.remove(file)
        except OSError:
            pass


if __name__ == "__main__":
    main()
