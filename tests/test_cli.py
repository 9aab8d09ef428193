# Copyright 2022-2025 Broadcom.
# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import json
import logging
import pathlib
import sys

import pytest

from brewkit.__main__ import main, setup_cli
from brewkit.formula import FormulaRegistry
from brewkit.install import build_options
from brewkit.profile import PlatformProfile

from tests.helpers import make_tarball, sha256

WRITE_HELLO = (
    "import pathlib, sys\n"
    "p = pathlib.Path(sys.argv[1])\n"
    "p.parent.mkdir(parents=True, exist_ok=True)\n"
    "p.write_text('hello')\n"
)


@pytest.fixture
def cli_env(
    monkeypatch: pytest.MonkeyPatch,
    registry: FormulaRegistry,
    linux_profile: PlatformProfile,
    tmp_path: pathlib.Path,
) -> FormulaRegistry:
    monkeypatch.setattr("brewkit.install.formulas", registry)
    monkeypatch.setattr("brewkit.orchestrator.detect", lambda: linux_profile)
    monkeypatch.setenv("BREWKIT_CACHE", str(tmp_path / "cache"))
    return registry


@pytest.fixture
def formula_dir(tmp_path: pathlib.Path) -> pathlib.Path:
    srv = tmp_path / "srv"
    srv.mkdir()
    tarball, checksum = make_tarball(srv / "hello-1.0.tar.gz", {"hello-1.0/README": "hi\n"})
    doc = {
        "name": "hello",
        "version": "1.0",
        "url": tarball.as_uri(),
        "sha256": checksum,
        "install": [[sys.executable, "-c", WRITE_HELLO, "{bin}/hello"]],
        "test": [[sys.executable, "-c", "import sys; sys.exit(0)"]],
    }
    path = tmp_path / "formulas"
    path.mkdir()
    (path / "hello.json").write_text(json.dumps(doc))
    broken = dict(doc, name="broken", install=[[sys.executable, "-c", "raise SystemExit(9)"]])
    (path / "broken.json").write_text(json.dumps(broken))
    return path


def cli(prefix: pathlib.Path, formula_dir: pathlib.Path, *argv: str) -> list:
    return list(argv) + ["--prefix", str(prefix), "--formula-dir", str(formula_dir)]


def exit_code(argv: list) -> int:
    with pytest.raises(SystemExit) as excinfo:
        main(argv)
    return excinfo.value.code  # type: ignore[return-value]


def test_parse_install_arguments() -> None:
    args = setup_cli().parse_args(
        [
            "install",
            "awscli",
            "--use-system",
            "python=/usr",
            "--without",
            "test",
            "-j",
            "2",
            "-s",
        ]
    )
    assert args.formula == ["awscli"]
    assert args.system == [("python", pathlib.Path("/usr"))]
    assert args.jobs == 2
    assert args.build_from_source
    assert not args.head
    assert build_options(args) == {"awscli": ["without-test"]}


def test_skip_tests_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BREWKIT_SKIP_TESTS", "1")
    args = setup_cli().parse_args(["install", "awscli"])
    assert args.skip_tests


def test_bad_system_package() -> None:
    with pytest.raises(SystemExit) as excinfo:
        setup_cli().parse_args(["install", "awscli", "--use-system", "python"])
    assert excinfo.value.code == 2


def test_no_subcommand(capsys: pytest.CaptureFixture[str]) -> None:
    assert exit_code([]) == 1
    assert "No subcommand given" in capsys.readouterr().err


def test_install(
    cli_env: FormulaRegistry,
    formula_dir: pathlib.Path,
    tmp_path: pathlib.Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    prefix = tmp_path / "prefix"
    main(cli(prefix, formula_dir, "install", "hello"))
    out = capsys.readouterr().out
    assert "==> hello 1.0: installed-from-source" in out
    assert "test: passed" in out
    assert (prefix / "bin" / "hello").read_text() == "hello"
    assert (prefix / "logs" / "brewkit.log").exists()
    # Handlers added for the command are removed again.
    assert not any(
        isinstance(_, logging.FileHandler) for _ in logging.getLogger().handlers
    )


def test_install_build_failure(
    cli_env: FormulaRegistry,
    formula_dir: pathlib.Path,
    tmp_path: pathlib.Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    assert exit_code(cli(tmp_path / "prefix", formula_dir, "install", "broken")) == 3
    out = capsys.readouterr().out
    assert "==> broken 1.0: failed" in out
    assert "BuildStepFailed" in out


def test_install_unknown_formula(
    cli_env: FormulaRegistry,
    formula_dir: pathlib.Path,
    tmp_path: pathlib.Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    assert exit_code(cli(tmp_path / "prefix", formula_dir, "install", "nope")) == 5
    assert "nope" in capsys.readouterr().err


def test_install_head_is_refused(
    cli_env: FormulaRegistry, formula_dir: pathlib.Path, tmp_path: pathlib.Path
) -> None:
    assert exit_code(cli(tmp_path / "prefix", formula_dir, "install", "hello", "--HEAD")) == 5
    assert not (tmp_path / "prefix" / "Cellar").exists()


def test_install_with_system_dependency(
    cli_env: FormulaRegistry,
    formula_dir: pathlib.Path,
    tmp_path: pathlib.Path,
) -> None:
    doc = json.loads((formula_dir / "hello.json").read_text())
    doc.update(name="app", dependencies=["python"])
    (formula_dir / "app.json").write_text(json.dumps(doc))
    prefix = tmp_path / "prefix"
    assert exit_code(cli(prefix, formula_dir, "install", "app")) == 5
    main(cli(prefix, formula_dir, "install", "app", "--use-system", "python=/usr"))
    assert (prefix / "Cellar" / "app" / "1.0").is_dir()


def test_test_command(
    cli_env: FormulaRegistry,
    formula_dir: pathlib.Path,
    tmp_path: pathlib.Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    prefix = tmp_path / "prefix"
    assert exit_code(cli(prefix, formula_dir, "test", "hello")) == 5
    main(cli(prefix, formula_dir, "install", "hello", "--skip-tests"))
    capsys.readouterr()
    main(cli(prefix, formula_dir, "test", "hello"))
    assert "==> hello 1.0: test passed" in capsys.readouterr().out


def test_bottle_command(
    cli_env: FormulaRegistry,
    formula_dir: pathlib.Path,
    tmp_path: pathlib.Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    prefix = tmp_path / "prefix"
    main(cli(prefix, formula_dir, "install", "hello"))
    capsys.readouterr()
    main(cli(prefix, formula_dir, "bottle", "hello", "--output", str(tmp_path / "bottles")))
    archive, checksum = capsys.readouterr().out.splitlines()
    assert pathlib.Path(archive) == tmp_path / "bottles" / "hello-1.0.x86_64_linux.bottle.tar.gz"
    assert checksum == f"sha256 {sha256(archive)}"
