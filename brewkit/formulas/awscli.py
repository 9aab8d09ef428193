# Copyright 2022-2025 Broadcom.
# SPDX-License-Identifier: Apache-2.0
"""
The official Amazon AWS command-line interface, installed into a virtualenv.
"""
from __future__ import annotations

import logging
import shutil
from typing import Sequence

from ..common import DARWIN, FormulaError, TestFailed
from ..context import Context
from ..formula import (
    CELLAR_ANY_SKIP_RELOCATION,
    PLATFORM,
    BottleSet,
    Call,
    Command,
    FormulaDescriptor,
    HeadSpec,
    Resource,
    Step,
    depends_on,
    formulas,
    unless_on,
)

log = logging.getLogger(__name__)

NAME = "awscli"
VERSION = "1.16.140"

# Scripts pip installs that are not linked, the completers are installed below.
UNLINKED_SCRIPTS = ("aws.cmd", "aws_bash_completer", "aws_zsh_completer.sh")

ZSH_COMPLETION = """\
#compdef aws
_aws () {
  local e
  e=$(dirname ${funcsourcetrace[1]%:*})/aws_zsh_completer.sh
  if [[ -f $e ]]; then source $e; fi
}
"""

CAVEATS = """
The "examples" directory has been installed to:
  {opt_prefix}/share/awscli/examples
"""


def link_scripts(ctx: Context) -> None:
    """
    Link the virtualenv's aws scripts into the keg's bin directory.
    """
    venv_bin = ctx.libexec / "bin"
    ctx.bin.mkdir(parents=True, exist_ok=True)
    for script in sorted(venv_bin.glob("aws*")):
        if script.name in UNLINKED_SCRIPTS:
            continue
        dest = ctx.bin / script.name
        if dest.is_symlink() or dest.exists():
            dest.unlink()
        dest.symlink_to(script)


def install_examples(ctx: Context) -> None:
    assert ctx.buildpath is not None
    dest = ctx.pkgshare / "examples"
    if dest.exists():
        shutil.rmtree(dest)
    shutil.copytree(ctx.buildpath / "awscli" / "examples", dest)


def install_completions(ctx: Context) -> None:
    assert ctx.buildpath is not None
    ctx.bash_completion.mkdir(parents=True, exist_ok=True)
    shutil.copy2(ctx.buildpath / "bin" / "aws_bash_completer", ctx.bash_completion)
    ctx.zsh_completion.mkdir(parents=True, exist_ok=True)
    shutil.copy2(ctx.buildpath / "bin" / "aws_zsh_completer.sh", ctx.zsh_completion)
    (ctx.zsh_completion / "_aws").write_text(ZSH_COMPLETION)


def install(ctx: Context) -> Sequence[Step]:
    if "python" not in ctx.deps:
        raise FormulaError(f"{ctx.name} needs a python dependency")
    pip = "{libexec}/bin/pip"
    return [
        Command(["{deps[python]}/bin/python3", "-m", "venv", "{libexec}"]),
        Command(
            [pip, "install", "-v", "--no-binary", ":all:", "--ignore-installed", "{buildpath}"]
        ),
        Command([pip, "uninstall", "-y", "awscli"]),
        Command(
            [pip, "install", "-v", "--no-deps", "--ignore-installed", "{buildpath}"]
        ),
        Call(link_scripts, "link scripts"),
        Call(install_examples, "install examples"),
        Call(install_completions, "install completions"),
    ]


def test(ctx: Context) -> None:
    aws = ctx.bin / "aws"
    if ctx.profile.is_macos:
        result = ctx.run([aws, "help"])
        if "topics" not in result.stdout:
            raise TestFailed("'aws help' did not list any topics")
    else:
        # Displaying the help needs groff, which is not a dependency.
        ctx.run([aws, "--version"])


formula = formulas.add(
    FormulaDescriptor(
        name=NAME,
        version=VERSION,
        desc="Official Amazon AWS command-line interface",
        homepage="https://aws.amazon.com/cli/",
        source=Resource(
            NAME,
            "https://github.com/aws/aws-cli/archive/{version}.tar.gz",
            "1d18e3e89fd4363caec20853ecca7cd189d537ae07da6de037416c51b8357732",
            version=VERSION,
        ),
        head=HeadSpec("https://github.com/aws/aws-cli.git", branch="develop"),
        bottle=BottleSet(
            {
                "mojave": "19d8fcd0b354aa21192451ceb9dd120a9192cf69aed1685aa13eb3c2a9b65021",
                "high_sierra": "916e31bdbf8d7229dee2f0d7e7387e081952e8ec006c22817975833d8c98bd57",
                "sierra": "e6929aae730d4b658ce6ea9327cd6ee6c89fa952861360a5d44ffc87acb96cdf",
                "x86_64_linux": "f4872acd7247218d66673d349c7dd40937b5f059e25ae28898b34226030b0d55",
            },
            root_url="https://linuxbrew.bintray.com/bottles",
            cellar=CELLAR_ANY_SKIP_RELOCATION,
        ),
        # Some AWS APIs need TLS 1.2, which old system pythons lack.
        dependencies=[
            depends_on("python"),
            depends_on("libyaml", PLATFORM, when=unless_on(DARWIN)),
        ],
        install=install,
        test=test,
        caveats=CAVEATS,
    )
)
