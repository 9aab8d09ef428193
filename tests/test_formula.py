# Copyright 2022-2025 Broadcom.
# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import json
import pathlib

import pytest

from brewkit.common import FormulaError, UnresolvedDependency
from brewkit.formula import (
    BUILD,
    CELLAR_ANY_SKIP_RELOCATION,
    OPTIONAL,
    PLATFORM,
    BottleEntry,
    BottleSet,
    Command,
    Dependency,
    FormulaDescriptor,
    FormulaRegistry,
    Resource,
    build_with,
    depends_on,
    from_dict,
    load,
    only_on,
    unless_on,
)
from brewkit.profile import PlatformProfile

import tests.helpers

SHA = "a" * 64


def _formula(**kwargs: object) -> FormulaDescriptor:
    kwargs.setdefault("source", Resource("foo", "https://example.com/foo-{version}.tar.gz", SHA, version="1.0"))
    return FormulaDescriptor(name="foo", version="1.0", **kwargs)  # type: ignore[arg-type]


def test_resource_urls(monkeypatch: pytest.MonkeyPatch) -> None:
    resource = Resource(
        "foo",
        "https://example.com/foo-{version}.tar.gz",
        SHA.upper(),
        mirrors=["https://mirror.example/foo-{version}.tar.gz"],
        version="1.0",
    )
    assert resource.checksum == SHA
    assert resource.filename == "foo-1.0.tar.gz"
    assert resource.urls == [
        "https://example.com/foo-1.0.tar.gz",
        "https://mirror.example/foo-1.0.tar.gz",
    ]
    monkeypatch.setenv("BREWKIT_MIRRORS", "https://alt.example/bottles/")
    assert resource.urls[-1] == "https://alt.example/bottles/foo-1.0.tar.gz"


@pytest.mark.parametrize("checksum", [None, "", "abc", "z" * 64])
def test_resource_requires_sha256(checksum: object) -> None:
    with pytest.raises(FormulaError):
        Resource("foo", "https://example.com/foo.tar.gz", checksum)  # type: ignore[arg-type]


def test_dependency_kinds() -> None:
    with pytest.raises(FormulaError):
        depends_on("foo", "sometimes")
    with pytest.raises(FormulaError):
        depends_on("foo", PLATFORM)
    dep = depends_on("libyaml", PLATFORM, when=unless_on("darwin"))
    assert dep.kind == PLATFORM


def test_dependency_applies(linux_profile: PlatformProfile, macos_profile: PlatformProfile) -> None:
    libyaml = depends_on("libyaml", PLATFORM, when=unless_on("darwin"))
    assert libyaml.applies(linux_profile)
    assert not libyaml.applies(macos_profile)
    mac_only = depends_on("mac-thing", PLATFORM, when=only_on("darwin"))
    assert mac_only.applies(macos_profile)
    assert not mac_only.applies(linux_profile)

    optional = depends_on("extra", OPTIONAL)
    assert not optional.applies(linux_profile)
    assert optional.applies(linux_profile, ["with-extra"])

    gated = depends_on("perl", BUILD, option="test")
    assert gated.applies(linux_profile)
    assert not gated.applies(linux_profile, ["without-test"])


def test_build_with() -> None:
    assert build_with("test", [])
    assert not build_with("test", ["without-test"])
    assert build_with("docs", ["with-docs"])


def test_bottle_set() -> None:
    bottle = BottleSet(
        {
            "mojave": SHA,
            "x86_64_linux": BottleEntry("b" * 64, "https://other.example/foo.tar.gz"),
        },
        root_url="https://bottles.example/",
        cellar=CELLAR_ANY_SKIP_RELOCATION,
    )
    assert bottle.for_tag("mojave") is not None
    assert bottle.for_tag("sierra") is None
    assert bottle.tags == ["mojave", "x86_64_linux"]
    assert not bottle.relocatable
    assert bottle.url_for("foo", "1.0", "mojave") == "https://bottles.example/foo-1.0.mojave.bottle.tar.gz"
    assert bottle.url_for("foo", "1.0", "x86_64_linux") == "https://other.example/foo.tar.gz"
    assert bottle.for_tag("sierra") is None


def test_bottle_set_requires_checksums_and_url() -> None:
    with pytest.raises(FormulaError):
        BottleSet({"mojave": "nope"}, root_url="https://bottles.example")
    with pytest.raises(FormulaError):
        BottleSet({"mojave": SHA})


def test_command_render() -> None:
    cmd = Command(["make", "install", "MANDIR={man}", "{deps[python]}/bin/python3"])
    rendered = cmd.render({"man": pathlib.Path("/p/share/man"), "deps": {"python": pathlib.Path("/opt/python")}})
    assert rendered == ["make", "install", "MANDIR=/p/share/man", "/opt/python/bin/python3"]
    assert cmd.describe() == "make install MANDIR={man} {deps[python]}/bin/python3"


def test_formula_is_immutable() -> None:
    formula = _formula()
    with pytest.raises(AttributeError):
        formula.version = "2.0"


def test_formula_validation() -> None:
    with pytest.raises(FormulaError):
        _formula(dependencies=[depends_on("foo")])
    with pytest.raises(FormulaError):
        _formula(dependencies=[Dependency("bar", "weird")])
    with pytest.raises(FormulaError):
        _formula(dependencies=[Dependency("bar", PLATFORM)])
    with pytest.raises(FormulaError):
        FormulaDescriptor("foo", "", Resource("foo", "https://example.com/x", SHA))


def test_formula_variants() -> None:
    devel = Resource("foo", "https://example.com/foo-{version}.tar.gz", "b" * 64, version="1.1-pre1")
    formula = _formula(devel=devel)
    assert formula.variant() == ("1.0", formula.source)
    assert formula.variant(devel=True) == ("1.1-pre1", devel)
    with pytest.raises(FormulaError):
        _formula().variant(devel=True)


def test_formula_resource_lookup() -> None:
    cacert = Resource("cacert", "https://example.com/cacert.pem", SHA)
    formula = _formula(resources=[cacert])
    assert formula.resource("cacert") is cacert
    with pytest.raises(FormulaError):
        formula.resource("missing")


def test_registry(registry: FormulaRegistry) -> None:
    formula = registry.add(_formula())
    assert registry.get("foo") is formula
    assert "foo" in registry
    assert list(registry) == [formula]
    with pytest.raises(UnresolvedDependency) as excinfo:
        registry.get("bar", required_by="foo")
    assert excinfo.value.required_by == "foo"
    registry.provide_system("python", "/usr")
    assert registry.is_system("python")
    assert "python" in registry
    assert not registry.is_system("foo")


DOC = {
    "name": "hello",
    "version": "2.12",
    "url": "https://ftp.gnu.org/gnu/hello/hello-{version}.tar.gz",
    "mirrors": ["https://ftpmirror.gnu.org/hello/hello-{version}.tar.gz"],
    "sha256": "c" * 64,
    "desc": "Program providing model for GNU coding standards",
    "head": {"url": "https://git.savannah.gnu.org/git/hello.git", "branch": "master"},
    "devel": {"url": "https://alpha.gnu.org/hello-{version}.tar.gz", "sha256": "d" * 64, "version": "2.13-rc1"},
    "resources": {"extra": {"url": "https://example.com/extra.txt", "sha256": "e" * 64}},
    "dependencies": [
        "gettext",
        {"name": "libiconv", "os": "macos"},
        {"name": "make", "kind": "build"},
    ],
    "bottle": {"root_url": "https://bottles.example", "sha256": {"x86_64_linux": "f" * 64}},
    "options": ["without-test", {"name": "with-docs", "description": "Build docs"}],
    "keg_only": "provided by the system",
    "caveats": "Config lives in {pkgetc}",
    "install": [["./configure", "--prefix={prefix}"], ["make", "install"]],
    "test": [["{bin}/hello", "--version"]],
}


def test_from_dict(linux_profile: PlatformProfile, macos_profile: PlatformProfile) -> None:
    formula = from_dict(DOC)
    assert formula.name == "hello"
    assert formula.source.url == "https://ftp.gnu.org/gnu/hello/hello-2.12.tar.gz"
    assert formula.source.mirrors == ["https://ftpmirror.gnu.org/hello/hello-2.12.tar.gz"]
    assert formula.head.branch == "master"  # type: ignore[union-attr]
    assert formula.devel.version == "2.13-rc1"  # type: ignore[union-attr]
    assert formula.bottle is not None and formula.bottle.for_tag("x86_64_linux") is not None
    assert [_.name for _ in formula.options] == ["without-test", "with-docs"]
    assert formula.keg_only == "provided by the system"
    deps = {_.name: _ for _ in formula.dependencies}
    assert deps["libiconv"].kind == PLATFORM
    assert deps["libiconv"].applies(macos_profile)
    assert not deps["libiconv"].applies(linux_profile)
    assert deps["make"].kind == BUILD
    steps = formula.install(None)  # type: ignore[arg-type]
    assert [_.args for _ in steps] == [["./configure", "--prefix={prefix}"], ["make", "install"]]
    assert formula.test is not None
    assert formula.post_install is None


def test_from_dict_errors() -> None:
    with pytest.raises(FormulaError):
        from_dict({"name": "x", "version": "1"})
    doc = dict(DOC)
    doc["sha256"] = None
    with pytest.raises(FormulaError):
        from_dict(doc)
    doc = dict(DOC)
    doc["install"] = ["make install"]
    with pytest.raises(FormulaError):
        from_dict(doc)
    doc = dict(DOC)
    doc["dependencies"] = [{"name": "x", "os": "beos"}]
    with pytest.raises(FormulaError):
        from_dict(doc)
    doc = dict(DOC)
    doc["post_install"] = "no_colon"
    with pytest.raises(FormulaError):
        from_dict(doc)


def test_from_dict_post_install_hook() -> None:
    doc = dict(DOC)
    doc["post_install"] = "tests.helpers:sha256"
    assert from_dict(doc).post_install is tests.helpers.sha256
    doc["post_install"] = "tests.helpers:missing"
    with pytest.raises(FormulaError):
        from_dict(doc)


def test_load_and_load_directory(tmp_path: pathlib.Path, registry: FormulaRegistry) -> None:
    (tmp_path / "hello.json").write_text(json.dumps(DOC))
    other = dict(DOC, name="other")
    (tmp_path / "other.json").write_text(json.dumps(other))
    assert load(tmp_path / "hello.json").name == "hello"
    loaded = registry.load_directory(tmp_path)
    assert [_.name for _ in loaded] == ["hello", "other"]
    assert registry.get("other").version == "2.12"


def test_load_invalid(tmp_path: pathlib.Path) -> None:
    (tmp_path / "bad.json").write_text("{not json")
    with pytest.raises(FormulaError):
        load(tmp_path / "bad.json")
    (tmp_path / "list.json").write_text("[]")
    with pytest.raises(FormulaError):
        load(tmp_path / "list.json")
