# Copyright 2022-2025 Broadcom.
# SPDX-License-Identifier: Apache-2.0
"""
The ``brewkit bottle`` command.
"""
from __future__ import annotations

import argparse
import pathlib
import sys

from .common import BrewkitException, work_dirs
from .fetch import sha256sum
from .install import add_common_arguments, error_exit_code, logging_to, make_orchestrator


def setup_parser(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> None:
    """
    Setup the subparser for the ``bottle`` command.

    :param subparsers: The subparsers object returned from ``add_subparsers``
    :type subparsers: argparse._SubParsersAction
    """
    subparser = subparsers.add_parser(
        "bottle", description="Pack an installed formula into a bottle"
    )
    subparser.set_defaults(func=main)
    subparser.add_argument("formula", help="The formula to bottle")
    subparser.add_argument(
        "--output",
        default=".",
        type=pathlib.Path,
        help="The directory to write the bottle to [default: %(default)s]",
    )
    add_common_arguments(subparser)


def main(args: argparse.Namespace) -> None:
    """
    The entrypoint into the ``brewkit bottle`` command.

    :param args: The args passed to the command
    :type args: argparse.Namespace
    """
    dirs = work_dirs(args.prefix)
    with logging_to(dirs, args.log_level):
        try:
            archive = make_orchestrator(args, dirs).bottle(args.formula, args.output)
        except BrewkitException as exc:
            print(f"Error: {exc}", file=sys.stderr)
            sys.exit(error_exit_code(exc))
    print(archive)
    print(f"sha256 {sha256sum(archive)}")
