# Copyright 2022-2025 Broadcom.
# SPDX-License-Identifier: Apache-2.0
"""
The ``brewkit install`` command.
"""
from __future__ import annotations

import argparse
import contextlib
import logging
import os
import pathlib
import sys
from typing import Dict, Iterator, List, Optional, Tuple

from . import formulas as builtin_formulas  # noqa: F401
from .common import (
    BrewkitException,
    FetchError,
    FormulaError,
    GraphError,
    PlatformError,
    WorkDirs,
    default_jobs,
    skip_tests_default,
    work_dirs,
)
from .fetch import ArtifactFetcher
from .formula import FormulaRegistry, formulas
from .orchestrator import EXIT_BUILD, EXIT_FETCH, EXIT_GRAPH, InstallOrchestrator

log = logging.getLogger(__name__)

LOG_LEVELS = ("error", "warning", "info", "debug")


def system_package(value: str) -> Tuple[str, pathlib.Path]:
    """
    Parse a ``NAME=PATH`` argument.
    """
    name, sep, path = value.partition("=")
    if not sep or not name or not path:
        raise argparse.ArgumentTypeError(f"expected NAME=PATH, got {value!r}")
    return name, pathlib.Path(path).expanduser()


def add_common_arguments(subparser: argparse.ArgumentParser) -> None:
    """
    Arguments shared by every command working on an installation.
    """
    subparser.add_argument(
        "--prefix",
        default=None,
        help="The directory brewkit installs into [default: $BREWKIT_DATA or ~/.local/brewkit]",
    )
    subparser.add_argument(
        "--formula-dir",
        dest="formula_dirs",
        metavar="DIR",
        action="append",
        default=[],
        help="Load the JSON formula documents in DIR, can be given more than once.",
    )
    subparser.add_argument(
        "--use-system",
        dest="system",
        metavar="NAME=PATH",
        type=system_package,
        action="append",
        default=[],
        help="Satisfy dependencies on NAME with the package installed at PATH.",
    )
    subparser.add_argument(
        "--devel",
        default=False,
        action="store_true",
        help="Use the devel variant of the formula.",
    )
    subparser.add_argument(
        "--log-level",
        default="warning",
        choices=LOG_LEVELS,
        help="Log level determines how verbose the logs will be.",
    )


def setup_parser(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> None:
    """
    Setup the subparser for the ``install`` command.

    :param subparsers: The subparsers object returned from ``add_subparsers``
    :type subparsers: argparse._SubParsersAction
    """
    subparser = subparsers.add_parser(
        "install", description="Install formulas and their dependencies"
    )
    subparser.set_defaults(func=main)
    subparser.add_argument("formula", nargs="+", help="The formulas to install")
    add_common_arguments(subparser)
    subparser.add_argument(
        "--build-from-source",
        "-s",
        default=False,
        action="store_true",
        help="Build from source even when a bottle is available.",
    )
    subparser.add_argument(
        "--HEAD",
        dest="head",
        default=False,
        action="store_true",
        help="Install the development head, refused as it has no checksum.",
    )
    subparser.add_argument(
        "--skip-tests",
        default=skip_tests_default(),
        action="store_true",
        help="Do not run formula tests after installing [default: $BREWKIT_SKIP_TESTS]",
    )
    subparser.add_argument(
        "--jobs",
        "-j",
        default=default_jobs(),
        type=int,
        help="Formulas to install at the same time [default: %(default)s]",
    )
    subparser.add_argument(
        "--with",
        dest="with_options",
        metavar="OPTION",
        action="append",
        default=[],
        help="Enable a build option of the requested formulas.",
    )
    subparser.add_argument(
        "--without",
        dest="without_options",
        metavar="OPTION",
        action="append",
        default=[],
        help="Disable a build option of the requested formulas, e.g. test.",
    )


@contextlib.contextmanager
def logging_to(dirs: WorkDirs, log_level: str) -> Iterator[None]:
    """
    Send log records to stderr at ``log_level`` and to ``logs/brewkit.log``.
    """
    root_log = logging.getLogger(None)
    root_log.setLevel(logging.NOTSET)
    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(logging.getLevelName(log_level.upper()))
    root_log.addHandler(stream_handler)

    os.makedirs(dirs.logs, exist_ok=True)
    file_handler = logging.FileHandler(dirs.logs / "brewkit.log")
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s %(name)s %(levelname)s %(message)s")
    )
    root_log.addHandler(file_handler)
    try:
        yield
    finally:
        root_log.removeHandler(stream_handler)
        root_log.removeHandler(file_handler)
        file_handler.close()


def load_registry(args: argparse.Namespace) -> FormulaRegistry:
    """
    The registry with the built in formulas plus those named on the command line.
    """
    registry = formulas
    for path in args.formula_dirs:
        loaded = registry.load_directory(path)
        log.info("Loaded %d formulas from %s", len(loaded), path)
    for name, prefix in args.system:
        log.info("Using the system %s at %s", name, prefix)
        registry.provide_system(name, prefix)
    return registry


def build_options(args: argparse.Namespace) -> Dict[str, List[str]]:
    """
    Options from ``--with`` and ``--without``, applied to every requested formula.
    """
    requested = [f"with-{_}" for _ in args.with_options]
    requested += [f"without-{_}" for _ in args.without_options]
    if not requested:
        return {}
    return {name: list(requested) for name in args.formula}


def error_exit_code(exc: BrewkitException) -> int:
    if isinstance(exc, FetchError):
        return EXIT_FETCH
    if isinstance(exc, (GraphError, FormulaError, PlatformError)):
        return EXIT_GRAPH
    return EXIT_BUILD


def make_orchestrator(
    args: argparse.Namespace, dirs: WorkDirs, **kwargs: object
) -> InstallOrchestrator:
    return InstallOrchestrator(
        load_registry(args),
        dirs=dirs,
        fetcher=ArtifactFetcher(dirs.cache),
        devel=args.devel,
        **kwargs,  # type: ignore[arg-type]
    )


def main(args: argparse.Namespace) -> None:
    """
    The entrypoint into the ``brewkit install`` command.

    :param args: The args passed to the command
    :type args: argparse.Namespace
    """
    dirs = work_dirs(args.prefix)
    orchestrator: Optional[InstallOrchestrator] = None
    with logging_to(dirs, args.log_level):
        try:
            if args.head:
                raise FormulaError(
                    "Installing HEAD is not supported, it has no checksum to verify"
                )
            orchestrator = make_orchestrator(
                args,
                dirs,
                skip_tests=args.skip_tests,
                jobs=args.jobs,
                options=build_options(args),
                build_from_source=args.build_from_source,
            )
            report = orchestrator.install(args.formula)
        except BrewkitException as exc:
            print(f"Error: {exc}", file=sys.stderr)
            sys.exit(error_exit_code(exc))
        except KeyboardInterrupt:
            if orchestrator is not None and orchestrator.report is not None:
                print(orchestrator.report.format())
            print("Interrupted", file=sys.stderr)
            sys.exit(130)
    print(report.format())
    if report.exit_code:
        sys.exit(report.exit_code)
