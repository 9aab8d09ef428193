# Copyright 2022-2025 Broadcom.
# SPDX-License-Identifier: Apache-2.0
"""
The view of an installation that recipes and hooks work against.
"""
from __future__ import annotations

import logging
import os
import pathlib
import shutil
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional, Sequence

from .common import PathLike, WorkDirs
from .formula import build_with

if TYPE_CHECKING:
    from .fetch import ArtifactFetcher
    from .formula import FormulaDescriptor
    from .profile import PlatformProfile
    from .sandbox import Sandbox, StepResult

log = logging.getLogger(__name__)


class Context:
    """
    Paths, platform facts and helpers handed to a formula's recipe and hooks.

    :param formula: The formula being installed
    :param version: The version being installed
    :param profile: The platform profile of this run
    :param dirs: The brewkit directories
    :param sandbox: Runs this formula's commands
    :param fetcher: Fetches resources on demand
    :param deps: Install prefix of every resolved dependency, by name
    :param options: Build options requested for this formula
    """

    def __init__(
        self,
        formula: "FormulaDescriptor",
        version: str,
        profile: "PlatformProfile",
        dirs: WorkDirs,
        sandbox: "Sandbox",
        fetcher: "ArtifactFetcher",
        deps: Optional[Mapping[str, pathlib.Path]] = None,
        options: Sequence[str] = (),
        buildpath: Optional[pathlib.Path] = None,
        testpath: Optional[pathlib.Path] = None,
    ) -> None:
        self.formula = formula
        self.name = formula.name
        self.version = version
        self.profile = profile
        self.dirs = dirs
        self.sandbox = sandbox
        self.fetcher = fetcher
        self.deps: Dict[str, pathlib.Path] = dict(deps or {})
        self.options = list(options)
        self.buildpath = buildpath
        self.testpath = testpath
        self.env: Dict[str, Optional[str]] = {}
        self.step = 0

    @property
    def prefix(self) -> pathlib.Path:
        """The keg this version installs into."""
        return self.dirs.cellar / self.name / self.version

    @property
    def bin(self) -> pathlib.Path:
        return self.prefix / "bin"

    @property
    def sbin(self) -> pathlib.Path:
        return self.prefix / "sbin"

    @property
    def lib(self) -> pathlib.Path:
        return self.prefix / "lib"

    @property
    def include(self) -> pathlib.Path:
        return self.prefix / "include"

    @property
    def libexec(self) -> pathlib.Path:
        return self.prefix / "libexec"

    @property
    def share(self) -> pathlib.Path:
        return self.prefix / "share"

    @property
    def pkgshare(self) -> pathlib.Path:
        return self.share / self.name

    @property
    def man(self) -> pathlib.Path:
        return self.share / "man"

    @property
    def bash_completion(self) -> pathlib.Path:
        return self.prefix / "etc" / "bash_completion.d"

    @property
    def zsh_completion(self) -> pathlib.Path:
        return self.share / "zsh" / "site-functions"

    @property
    def etc(self) -> pathlib.Path:
        """The shared configuration directory, outside any keg."""
        return self.dirs.etc

    @property
    def pkgetc(self) -> pathlib.Path:
        """This formula's configuration directory."""
        return self.dirs.etc / self.name

    @property
    def opt_prefix(self) -> pathlib.Path:
        return self.dirs.opt / self.name

    @property
    def opt_bin(self) -> pathlib.Path:
        return self.opt_prefix / "bin"

    @property
    def params(self) -> Dict[str, Any]:
        """
        Values ``Command`` arguments are formatted with.
        """
        return {
            "name": self.name,
            "version": self.version,
            "prefix": self.prefix,
            "bin": self.bin,
            "sbin": self.sbin,
            "lib": self.lib,
            "include": self.include,
            "libexec": self.libexec,
            "share": self.share,
            "pkgshare": self.pkgshare,
            "man": self.man,
            "etc": self.etc,
            "pkgetc": self.pkgetc,
            "opt_prefix": self.opt_prefix,
            "opt_bin": self.opt_bin,
            "root": self.dirs.root,
            "buildpath": self.buildpath or "",
            "testpath": self.testpath or "",
            "deps": dict(self.deps),
        }

    def build_with(self, option: str) -> bool:
        """True when ``option`` is enabled for this build."""
        return build_with(option, self.options)

    def setenv(self, key: str, value: PathLike) -> None:
        """Set a variable for every following step."""
        self.env[key] = os.fspath(value)

    def unsetenv(self, key: str) -> None:
        """Remove a variable from the environment of every following step."""
        self.env[key] = None

    def deparallelize(self) -> None:
        """Force serial ``make`` for every following step."""
        self.env["MAKEFLAGS"] = "-j1"

    def which(self, cmd: str) -> Optional[pathlib.Path]:
        """Find a command on the ``PATH`` steps run with."""
        path = self.sandbox.environment(self.env).get("PATH")
        found = shutil.which(cmd, path=path)
        return pathlib.Path(found) if found else None

    def resource_path(self, name: str) -> pathlib.Path:
        """
        Fetch one of the formula's resources and return the verified file.
        """
        return self.fetcher.fetch_resource(self.formula.resource(name))

    def caveats(self) -> str:
        """The formula's caveats with paths filled in."""
        if not self.formula.caveats:
            return ""
        return self.formula.caveats.format_map(self.params).strip()

    def run(
        self,
        args: Sequence[PathLike],
        env: Optional[Mapping[str, Optional[str]]] = None,
        cwd: Optional[PathLike] = None,
        input: Optional[str] = None,
        check: bool = True,
        step: Optional[int] = None,
    ) -> "StepResult":
        """
        Run a command in this formula's sandbox.

        The working directory defaults to the build directory, or the test
        directory while testing. Failures are reported against the recipe
        step currently running unless ``step`` is given.
        """
        overlay = dict(self.env)
        if env:
            overlay.update(env)
        if cwd is None:
            cwd = self.testpath or self.buildpath
        return self.sandbox.run(
            args,
            env=overlay,
            cwd=cwd,
            input=input,
            check=check,
            step=self.step if step is None else step,
        )
