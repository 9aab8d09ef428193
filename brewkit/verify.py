# Copyright 2022-2025 Broadcom.
# SPDX-License-Identifier: Apache-2.0
"""
The ``brewkit test`` command.
"""
from __future__ import annotations

import argparse
import sys

from .common import BrewkitException, work_dirs
from .install import add_common_arguments, error_exit_code, logging_to, make_orchestrator
from .orchestrator import EXIT_TEST
from .records import TEST_FAILED


def setup_parser(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> None:
    """
    Setup the subparser for the ``test`` command.

    :param subparsers: The subparsers object returned from ``add_subparsers``
    :type subparsers: argparse._SubParsersAction
    """
    subparser = subparsers.add_parser(
        "test", description="Run the test of an installed formula"
    )
    subparser.set_defaults(func=main)
    subparser.add_argument("formula", help="The formula to test")
    add_common_arguments(subparser)


def main(args: argparse.Namespace) -> None:
    """
    The entrypoint into the ``brewkit test`` command.

    :param args: The args passed to the command
    :type args: argparse.Namespace
    """
    dirs = work_dirs(args.prefix)
    with logging_to(dirs, args.log_level):
        try:
            result = make_orchestrator(args, dirs).test(args.formula)
        except BrewkitException as exc:
            print(f"Error: {exc}", file=sys.stderr)
            sys.exit(error_exit_code(exc))
    print(f"==> {result.name} {result.version}: test {result.status}")
    if result.status == TEST_FAILED:
        print(result.error, file=sys.stderr)
        sys.exit(EXIT_TEST)
