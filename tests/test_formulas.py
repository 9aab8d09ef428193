# Copyright 2022-2025 Broadcom.
# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import pathlib

import pytest

import brewkit.formulas  # noqa: F401
from brewkit.common import DARWIN, LINUX, FormulaError, PlatformError, TestFailed, WorkDirs
from brewkit.context import Context
from brewkit.formula import Call, Command, FormulaRegistry, formulas
from brewkit.formulas import awscli, openssl
from brewkit.graph import DependencyGraph
from brewkit.profile import PlatformProfile
from brewkit.sandbox import Sandbox, StepResult
from brewkit.trust import split_pem

from tests.helpers import FakeSandbox, pem


class StaticFetcher:
    """
    Hands out local files instead of downloading resources.
    """

    def __init__(self, files):
        self.files = files

    def fetch_resource(self, resource):
        return self.files[resource.name]


def make_context(formula, profile, dirs, sandbox=None, fetcher=None, deps=None, options=()):
    return Context(
        formula,
        formula.version,
        profile,
        dirs,
        sandbox or Sandbox({"PATH": "/usr/bin"}),
        fetcher,  # type: ignore[arg-type]
        deps=deps,
        options=options,
    )


def test_builtin_formulas_are_registered() -> None:
    assert formulas.get("openssl@1.1") is openssl.formula
    assert formulas.get("awscli") is awscli.formula


@pytest.mark.parametrize(
    "profile,target",
    [
        (PlatformProfile(DARWIN, "10.13.6", "17.7.0", "x86_64"), ["darwin64-x86_64-cc", "enable-ec_nistp_64_gcc_128"]),
        (PlatformProfile(DARWIN, "14.1", "23.1.0", "arm64"), ["darwin64-arm64-cc"]),
        (PlatformProfile(DARWIN, "10.6", "10.8.0", "i386", False), ["darwin-i386-cc"]),
        (PlatformProfile(LINUX, "22.04", "5.15.0", "x86_64"), ["linux-x86_64"]),
        (PlatformProfile(LINUX, "22.04", "5.15.0", "aarch64"), ["linux-aarch64"]),
        (PlatformProfile(LINUX, "9", "4.19.0", "i386", False), ["linux-generic32"]),
    ],
)
def test_openssl_configure_target(profile: PlatformProfile, target: list) -> None:
    assert openssl.configure_target(profile) == target


def test_openssl_configure_target_unsupported() -> None:
    with pytest.raises(PlatformError):
        openssl.configure_target(PlatformProfile("freebsd", "13", "13.2", "x86_64"))


def test_openssl_install_steps_linux(dirs: WorkDirs, linux_profile: PlatformProfile) -> None:
    sandbox = Sandbox({"PATH": "/usr/bin", "CFLAGS": "-O2 -DX={1}", "LDFLAGS": "-L/opt/lib"})
    ctx = make_context(openssl.formula, linux_profile, dirs, sandbox=sandbox)
    steps = openssl.install(ctx)
    assert all(isinstance(_, Command) for _ in steps)
    assert [_.args[:2] for _ in steps] == [
        ["perl", "./Configure"],
        ["make"],
        ["make", "test"],
        ["make", "install"],
    ]
    configure = steps[0].render(ctx.params)
    assert f"--prefix={ctx.prefix}" in configure
    assert f"--openssldir={dirs.etc / 'openssl@1.1'}" in configure
    assert "-O2 -DX={1} -L/opt/lib" in configure
    assert configure[-1] == "linux-x86_64"
    assert steps[-1].render(ctx.params) == ["make", "install", f"MANDIR={ctx.man}", "MANSUFFIX=ssl"]
    assert ctx.env["OPENSSL_LOCAL_CONFIG_DIR"] is None
    assert ctx.env["MAKEFLAGS"] == "-j1"


def test_openssl_install_without_test(dirs: WorkDirs, macos_profile: PlatformProfile) -> None:
    ctx = make_context(openssl.formula, macos_profile, dirs, options=["without-test"])
    steps = openssl.install(ctx)
    assert ["make", "test"] not in [list(_.args) for _ in steps]
    configure = steps[0].render(ctx.params)
    assert configure[-2:] == ["darwin64-x86_64-cc", "enable-ec_nistp_64_gcc_128"]


def test_openssl_perl_dependency(registry: FormulaRegistry) -> None:
    registry.add(openssl.formula)
    old_mac = PlatformProfile(DARWIN, "10.8.5", "12.6.0", "x86_64")
    new_mac = PlatformProfile(DARWIN, "10.13.6", "17.7.0", "x86_64")
    linux = PlatformProfile(LINUX, "22.04", "5.15.0", "x86_64")
    assert DependencyGraph(registry).edges(openssl.formula, old_mac) == ["perl"]
    assert DependencyGraph(registry).edges(openssl.formula, new_mac) == []
    assert DependencyGraph(registry).edges(openssl.formula, linux) == []
    graph = DependencyGraph(registry, options={"openssl@1.1": ["without-test"]})
    assert graph.edges(openssl.formula, old_mac) == []


def test_openssl_bottles() -> None:
    bottle = openssl.formula.bottle
    assert bottle is not None
    assert bottle.url_for(openssl.NAME, openssl.VERSION, "high_sierra") == (
        "https://homebrew.bintray.com/bottles/openssl@1.1-1.1.0h.high_sierra.bottle.tar.gz"
    )
    assert "linuxbrew" in bottle.url_for(openssl.NAME, openssl.VERSION, "x86_64_linux")
    assert openssl.formula.keg_only
    assert openssl.formula.variant(devel=True)[0] == "1.1.1-pre3"


def test_openssl_post_install_bundled_cacert(
    dirs: WorkDirs, linux_profile: PlatformProfile, tmp_path: pathlib.Path
) -> None:
    cacert = tmp_path / "cacert.pem"
    cacert.write_text(pem("mozilla") + "\n")
    ctx = make_context(
        openssl.formula, linux_profile, dirs, fetcher=StaticFetcher({"cacert": cacert})
    )
    openssl.post_install(ctx)
    assert (dirs.etc / "openssl@1.1" / "cert.pem").read_text() == pem("mozilla") + "\n"


def test_openssl_post_install_system_keychain(dirs: WorkDirs) -> None:
    profile = PlatformProfile(DARWIN, "10.13.6", "17.7.0", "x86_64", True, True)

    def answer(args, input):
        if args[0] == "security":
            return StepResult(0, "\n".join([pem("valid"), pem("expired"), pem("valid-too")]), "")
        return StepResult(0 if "valid" in input else 1, "", "")

    sandbox = FakeSandbox(answer)
    ctx = make_context(openssl.formula, profile, dirs, sandbox=sandbox)  # type: ignore[arg-type]
    openssl.post_install(ctx)
    bundle = (dirs.etc / "openssl@1.1" / "cert.pem").read_text()
    assert split_pem(bundle) == [pem("valid"), pem("valid-too")]
    verify_args = sandbox.calls[1][0]
    assert verify_args[0] == str(ctx.bin / "openssl")


def test_openssl_test_requires_cnf(dirs: WorkDirs, linux_profile: PlatformProfile, tmp_path: pathlib.Path) -> None:
    ctx = make_context(openssl.formula, linux_profile, dirs)
    ctx.testpath = tmp_path
    with pytest.raises(TestFailed, match="openssl.cnf"):
        openssl.test(ctx)


def test_openssl_caveats(dirs: WorkDirs, macos_profile: PlatformProfile) -> None:
    ctx = make_context(openssl.formula, macos_profile, dirs)
    caveats = ctx.caveats()
    assert f"{dirs.etc / 'openssl@1.1'}/certs" in caveats
    assert f"{dirs.opt / 'openssl@1.1' / 'bin'}/c_rehash" in caveats


def test_awscli_dependencies(
    registry: FormulaRegistry, linux_profile: PlatformProfile, macos_profile: PlatformProfile
) -> None:
    registry.add(awscli.formula)
    graph = DependencyGraph(registry)
    assert graph.edges(awscli.formula, macos_profile) == ["python"]
    assert graph.edges(awscli.formula, linux_profile) == ["python", "libyaml"]
    registry.provide_system("python", "/usr")
    registry.provide_system("libyaml", "/usr")
    assert [_.name for _ in graph.resolve(awscli.formula, linux_profile)] == ["awscli"]


def test_awscli_bottle_is_not_relocated() -> None:
    assert awscli.formula.bottle is not None
    assert not awscli.formula.bottle.relocatable
    assert awscli.formula.head is not None


def test_awscli_install_requires_python(dirs: WorkDirs, linux_profile: PlatformProfile) -> None:
    ctx = make_context(awscli.formula, linux_profile, dirs)
    with pytest.raises(FormulaError):
        awscli.install(ctx)


def test_awscli_install_steps(dirs: WorkDirs, linux_profile: PlatformProfile) -> None:
    ctx = make_context(awscli.formula, linux_profile, dirs, deps={"python": pathlib.Path("/usr")})
    steps = awscli.install(ctx)
    assert steps[0].render(ctx.params) == ["/usr/bin/python3", "-m", "venv", str(ctx.libexec)]
    assert [_.describe() for _ in steps if isinstance(_, Call)] == [
        "link scripts",
        "install examples",
        "install completions",
    ]


def test_awscli_link_scripts(dirs: WorkDirs, linux_profile: PlatformProfile) -> None:
    ctx = make_context(awscli.formula, linux_profile, dirs)
    venv_bin = ctx.libexec / "bin"
    venv_bin.mkdir(parents=True)
    for name in ("aws", "aws.cmd", "aws_completer", "aws_zsh_completer.sh", "pip"):
        (venv_bin / name).write_text("")
    awscli.link_scripts(ctx)
    assert sorted(_.name for _ in ctx.bin.iterdir()) == ["aws", "aws_completer"]


def test_awscli_completions_and_examples(
    dirs: WorkDirs, linux_profile: PlatformProfile, tmp_path: pathlib.Path
) -> None:
    ctx = make_context(awscli.formula, linux_profile, dirs)
    ctx.buildpath = tmp_path / "aws-cli-1.16.140"
    (ctx.buildpath / "bin").mkdir(parents=True)
    (ctx.buildpath / "bin" / "aws_bash_completer").write_text("complete -C aws_completer aws\n")
    (ctx.buildpath / "bin" / "aws_zsh_completer.sh").write_text("# zsh\n")
    (ctx.buildpath / "awscli" / "examples" / "s3").mkdir(parents=True)
    (ctx.buildpath / "awscli" / "examples" / "s3" / "ls.rst").write_text("ls\n")
    awscli.install_examples(ctx)
    awscli.install_completions(ctx)
    assert (ctx.pkgshare / "examples" / "s3" / "ls.rst").exists()
    assert (ctx.bash_completion / "aws_bash_completer").exists()
    assert (ctx.zsh_completion / "_aws").read_text().startswith("#compdef aws")
    assert f"{dirs.opt / 'awscli'}/share/awscli/examples" in ctx.caveats()
