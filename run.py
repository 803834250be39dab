#!/usr/bin/env python3
import argparse
import os
import subprocess
import sys

from compile import compile, Toolchain

# Shell status for a file that exists but cannot be executed
EXIT_NOT_EXECUTABLE = 126


def main() -> None:
    parser = argparse.ArgumentParser(description="Build an executable with the pipeline and run it")
    parser.add_argument("src", nargs="?", help="Source program passed to the frontend", default=None)
    args = parser.parse_args()

    exit_code, output = run(args.src)
    print(output, end="")
    sys.exit(exit_code)


def run(src: str | None = None, toolchain: Toolchain | None = None, quiet: bool = False) -> tuple[int, str]:
    toolchain = toolchain or Toolchain()
    exit_code, output = compile(src, toolchain, quiet)
    if exit_code != 0:
        print(output, end="", file=sys.stderr)
        return exit_code, ""

    try:
        proc = subprocess.run([os.path.abspath(toolchain.output)], capture_output=True, text=True)
    except OSError as e:
        print(f"Failed to execute {toolchain.output}: {e}", file=sys.stderr)
        return EXIT_NOT_EXECUTABLE, ""
    return proc.returncode, proc.stdout


if __name__ == "__main__":
    main()
