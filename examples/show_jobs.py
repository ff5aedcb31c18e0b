#!/usr/bin/env python3

"""
In this example irscope is used to print the jobs a compiler invocation
runs, together with the artifact each of them writes.

./show_jobs.py "clang++ -O2 -o a.out main.cpp"
"""

import argparse
import asyncio
import logging

from irscope.command import Command, LeafCommand, RustcCommand
from irscope.dryrun import DryRunSetting


def describe(cmd: Command, depth: int) -> str:
    phase = f" [{cmd.phase.name}]" if isinstance(cmd, LeafCommand) else ""
    paths = f"{cmd.get_input_path()} -> {cmd.get_output_path()}"
    return "  " * depth + f"{cmd.get_type()}{phase}: {paths}"


def print_tree(cmd: Command, depth: int = 0) -> None:
    print(describe(cmd, depth))
    print("  " * depth + "  $ " + cmd.to_string())
    for sub_command in cmd.sub_commands:
        print_tree(sub_command, depth + 1)


async def main(line: str, filter: str | None, timeout: float) -> None:
    cmd = await Command.create_from_string(
        line, setting=DryRunSetting(timeout_s=timeout)
    )
    if isinstance(cmd, RustcCommand):
        cmd.set_filter(filter)
        print(f"LLVM IR: {cmd.get_llvm_ir_path()}")
        print(f"assembly: {cmd.get_asm_path()}")
    print_tree(cmd)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("line", help="the compiler invocation")
    parser.add_argument("--filter", help="rustc: only print IR changes of")
    parser.add_argument("--timeout", type=float, default=30.0)
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()
    if args.verbose:
        logging.basicConfig(level=logging.DEBUG)
    asyncio.run(main(args.line, args.filter, args.timeout))
