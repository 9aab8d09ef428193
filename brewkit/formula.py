# Copyright 2022-2025 Broadcom.
# SPDX-License-Identifier: Apache-2.0
"""
Formula descriptors: the data describing one installable package.
"""
from __future__ import annotations

import importlib
import json
import logging
import os
import pathlib
import re
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Dict,
    Iterator,
    List,
    Mapping,
    NamedTuple,
    Optional,
    Sequence,
    Union,
)

from .common import (
    DARWIN,
    LINUX,
    FormulaError,
    PathLike,
    UnresolvedDependency,
    extra_mirrors,
)

if TYPE_CHECKING:
    from .context import Context
    from .profile import PlatformProfile

log = logging.getLogger(__name__)

SHA256_RE = re.compile(r"^[0-9a-f]{64}$")

REQUIRED = "required"
BUILD = "build"
OPTIONAL = "optional"
PLATFORM = "platform"
DEPENDENCY_KINDS = (REQUIRED, BUILD, OPTIONAL, PLATFORM)

CELLAR_ANY = "any"
CELLAR_ANY_SKIP_RELOCATION = "any_skip_relocation"

Predicate = Callable[["PlatformProfile"], bool]


def _check_sha256(value: Optional[str], what: str) -> str:
    if not value:
        raise FormulaError(f"{what} has no sha256 checksum")
    value = value.lower()
    if not SHA256_RE.match(value):
        raise FormulaError(f"{what} has a malformed sha256 checksum: {value!r}")
    return value


class Resource:
    """
    Something to be downloaded: a source archive or an auxiliary artifact.

    :param name: The name of the resource
    :type name: str
    :param url: The url of the resource, may contain ``{version}``
    :type url: str
    :param checksum: The sha256 sum of the resource
    :type checksum: str
    :param mirrors: Alternate urls, tried in order after ``url``
    :type mirrors: list
    :param version: The version of the content to download
    :type version: str
    """

    def __init__(
        self,
        name: str,
        url: str,
        checksum: Optional[str],
        mirrors: Sequence[str] = (),
        version: str = "",
    ) -> None:
        self.name = name
        self.url_tpl = url
        self.mirror_tpls = tuple(mirrors)
        self.version = version
        self.checksum = _check_sha256(checksum, f"Resource {name!r}")

    def __repr__(self) -> str:
        return f"Resource({self.name!r}, {self.url!r})"

    @property
    def url(self) -> str:
        """Get the formatted download URL."""
        return self.url_tpl.format(version=self.version)

    @property
    def mirrors(self) -> List[str]:
        """Get the formatted mirror URLs."""
        return [_.format(version=self.version) for _ in self.mirror_tpls]

    @property
    def urls(self) -> List[str]:
        """
        Every url this resource may be fetched from, in the order to try them.
        """
        urls = [self.url] + self.mirrors
        name = self.url.rsplit("/", 1)[-1]
        for base in extra_mirrors():
            urls.append("{}/{}".format(base.rstrip("/"), name))
        return urls

    @property
    def filename(self) -> str:
        """Get the file name of the primary URL."""
        return self.url.rsplit("/", 1)[-1]


class HeadSpec(NamedTuple):
    """
    Pointer to an unversioned development checkout. Never installable.
    """

    url: str
    branch: Optional[str] = None


class Option(NamedTuple):
    """
    A build option, e.g. ``without-test``.
    """

    name: str
    description: str = ""


class Dependency(NamedTuple):
    """
    An edge from the owning formula to another formula.

    :param name: The formula depended on
    :param kind: One of ``required``, ``build``, ``optional`` or ``platform``
    :param when: Predicate over the platform profile; the edge exists only when it is true
    :param option: Option of the owning formula that must be enabled for the edge to exist
    """

    name: str
    kind: str = REQUIRED
    when: Optional[Predicate] = None
    option: Optional[str] = None

    def applies(self, profile: "PlatformProfile", options: Sequence[str] = ()) -> bool:
        """
        True when this edge is part of the graph for ``profile`` and ``options``.
        """
        if self.when is not None and not self.when(profile):
            return False
        if self.kind == OPTIONAL and f"with-{self.name}" not in options:
            return False
        if self.option is not None and not build_with(self.option, options):
            return False
        return True


def depends_on(
    name: str,
    kind: str = REQUIRED,
    when: Optional[Predicate] = None,
    option: Optional[str] = None,
) -> Dependency:
    """
    Declare a dependency, validating its kind.
    """
    if kind not in DEPENDENCY_KINDS:
        raise FormulaError(f"Unknown dependency kind {kind!r} for {name!r}")
    if kind == PLATFORM and when is None:
        raise FormulaError(f"Platform dependency {name!r} needs a predicate")
    return Dependency(name, kind, when, option)


def only_on(os_family: str) -> Predicate:
    """Predicate true on the given OS family."""
    return lambda profile: profile.os_family == os_family


def unless_on(os_family: str) -> Predicate:
    """Predicate true everywhere except the given OS family."""
    return lambda profile: profile.os_family != os_family


def build_with(option: str, options: Sequence[str]) -> bool:
    """
    Evaluate ``build.with?`` style checks.

    An option is on when ``with-<option>`` was requested, or when it was not
    explicitly disabled with ``without-<option>``.
    """
    if f"with-{option}" in options:
        return True
    return f"without-{option}" not in options


class BottleEntry(NamedTuple):
    """
    One precompiled artifact of a bottle set.
    """

    sha256: str
    url: Optional[str] = None


class BottleSet:
    """
    Precompiled artifacts of a formula keyed by platform tag.

    :param entries: Mapping of platform tag to sha256 or ``BottleEntry``
    :type entries: dict
    :param root_url: Where bottles without an explicit url are stored
    :type root_url: str
    :param cellar: ``any``, ``any_skip_relocation`` or the cellar path the bottle was built for
    :type cellar: str
    """

    def __init__(
        self,
        entries: Mapping[str, Union[str, BottleEntry]],
        root_url: str = "",
        cellar: str = CELLAR_ANY,
    ) -> None:
        self.root_url = root_url.rstrip("/")
        self.cellar = cellar
        self.entries: Dict[str, BottleEntry] = {}
        for tag, entry in entries.items():
            if isinstance(entry, str):
                entry = BottleEntry(entry)
            sha = _check_sha256(entry.sha256, f"Bottle {tag!r}")
            if entry.url is None and not self.root_url:
                raise FormulaError(f"Bottle {tag!r} has no url and no root_url")
            self.entries[tag] = BottleEntry(sha, entry.url)

    @property
    def tags(self) -> List[str]:
        return list(self.entries)

    @property
    def relocatable(self) -> bool:
        """False when poured bottles need their placeholders rewritten."""
        return self.cellar != CELLAR_ANY_SKIP_RELOCATION

    def url_for(self, name: str, version: str, tag: str) -> str:
        """
        The url of the bottle for ``tag``, falling back to the well-known store key.
        """
        entry = self.entries[tag]
        if entry.url:
            return entry.url
        return f"{self.root_url}/{name}-{version}.{tag}.bottle.tar.gz"

    def for_tag(self, tag: str) -> Optional[BottleEntry]:
        return self.entries.get(tag)


class Command(NamedTuple):
    """
    A subprocess recipe step. Arguments are formatted against the context parameters.
    """

    args: Sequence[str]
    env: Mapping[str, Optional[str]] = {}
    cwd: Optional[str] = None

    def render(self, params: Mapping[str, Any]) -> List[str]:
        return [str(_).format_map(params) for _ in self.args]

    def describe(self) -> str:
        return " ".join(str(_) for _ in self.args)


class Call(NamedTuple):
    """
    An in-process recipe step.
    """

    func: Callable[["Context"], None]
    name: str = ""

    def describe(self) -> str:
        return self.name or getattr(self.func, "__name__", repr(self.func))


Step = Union[Command, Call]
Recipe = Callable[["Context"], Sequence[Step]]
Hook = Callable[["Context"], None]


def no_recipe(ctx: "Context") -> Sequence[Step]:
    """
    The recipe of formulas that can only be poured from bottles.
    """
    raise FormulaError(f"{ctx.name} has no build recipe")


class FormulaDescriptor:
    """
    Everything needed to install one package.

    Behaviour is attached as strategies: ``install`` returns the ordered
    recipe steps for a context, ``post_install`` and ``test`` are hooks
    called with the context after the keg exists.
    """

    def __init__(
        self,
        name: str,
        version: str,
        source: Resource,
        install: Recipe = no_recipe,
        dependencies: Sequence[Dependency] = (),
        resources: Sequence[Resource] = (),
        bottle: Optional[BottleSet] = None,
        post_install: Optional[Hook] = None,
        test: Optional[Hook] = None,
        caveats: str = "",
        options: Sequence[Option] = (),
        keg_only: Optional[str] = None,
        devel: Optional[Resource] = None,
        head: Optional[HeadSpec] = None,
        version_scheme: int = 0,
        desc: str = "",
        homepage: str = "",
    ) -> None:
        if not name:
            raise FormulaError("Formula name is required")
        if not version:
            raise FormulaError(f"Formula {name!r} has no version")
        self._frozen = False
        self.name = name
        self.version = version
        self.source = source
        self.install = install
        self.dependencies = tuple(dependencies)
        self.resources = {_.name: _ for _ in resources}
        self.bottle = bottle
        self.post_install = post_install
        self.test = test
        self.caveats = caveats
        self.options = tuple(options)
        self.keg_only = keg_only
        self.devel = devel
        self.head = head
        self.version_scheme = version_scheme
        self.desc = desc
        self.homepage = homepage
        self.validate()
        self._frozen = True

    def __setattr__(self, key: str, value: Any) -> None:
        if getattr(self, "_frozen", False):
            raise AttributeError(f"Formula {self.name!r} is immutable")
        super().__setattr__(key, value)

    def __repr__(self) -> str:
        return f"<Formula {self.name} {self.version}>"

    def validate(self) -> None:
        """
        Make sure every artifact this formula can fetch is checksummed.

        :raises FormulaError: If the formula is not valid
        """
        for dep in self.dependencies:
            if dep.kind not in DEPENDENCY_KINDS:
                raise FormulaError(f"{self.name}: unknown dependency kind {dep.kind!r}")
            if dep.kind == PLATFORM and dep.when is None:
                raise FormulaError(
                    f"{self.name}: platform dependency {dep.name!r} needs a predicate"
                )
            if dep.name == self.name:
                raise FormulaError(f"{self.name} depends on itself")
        artifacts = [self.source] + list(self.resources.values())
        if self.devel is not None:
            artifacts.append(self.devel)
        for artifact in artifacts:
            _check_sha256(artifact.checksum, f"{self.name}: resource {artifact.name!r}")

    def variant(self, devel: bool = False) -> tuple[str, Resource]:
        """
        Return the version and source to install.

        :raises FormulaError: If the requested variant does not exist
        """
        if devel:
            if self.devel is None:
                raise FormulaError(f"{self.name} has no devel variant")
            return self.devel.version or self.version, self.devel
        return self.version, self.source

    def resource(self, name: str) -> Resource:
        try:
            return self.resources[name]
        except KeyError:
            raise FormulaError(f"{self.name} has no resource named {name!r}")


class FormulaRegistry:
    """
    The set of formulas dependency names are resolved against.
    """

    def __init__(self) -> None:
        self.formulas: Dict[str, FormulaDescriptor] = {}
        self.system: Dict[str, pathlib.Path] = {}

    def __contains__(self, name: object) -> bool:
        return name in self.formulas or name in self.system

    def __iter__(self) -> Iterator[FormulaDescriptor]:
        return iter(self.formulas.values())

    def __len__(self) -> int:
        return len(self.formulas)

    def add(self, formula: FormulaDescriptor) -> FormulaDescriptor:
        """Add a formula, replacing any formula of the same name."""
        if formula.name in self.formulas:
            log.debug("Replacing formula %s", formula.name)
        self.formulas[formula.name] = formula
        return formula

    def get(self, name: str, required_by: Optional[str] = None) -> FormulaDescriptor:
        """
        Look up a formula by name.

        :raises UnresolvedDependency: If the registry has no such formula
        """
        try:
            return self.formulas[name]
        except KeyError:
            raise UnresolvedDependency(name, required_by)

    def provide_system(self, name: str, prefix: PathLike) -> None:
        """
        Satisfy dependencies on ``name`` with a package the system already has.
        """
        self.system[name] = pathlib.Path(prefix)

    def is_system(self, name: str) -> bool:
        return name in self.system and name not in self.formulas

    def load_directory(self, path: PathLike) -> List[FormulaDescriptor]:
        """
        Load every ``*.json`` formula document in a directory.
        """
        loaded = []
        for doc in sorted(pathlib.Path(path).glob("*.json")):
            loaded.append(self.add(load(doc)))
        return loaded


def _import_hook(spec: str) -> Hook:
    module_name, _, attr = spec.partition(":")
    if not attr:
        raise FormulaError(f"Hook {spec!r} must look like 'module:function'")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise FormulaError(f"Hook {spec!r} can not be imported: {exc}")
    try:
        hook = getattr(module, attr)
    except AttributeError:
        raise FormulaError(f"Hook {spec!r} not found")
    if not callable(hook):
        raise FormulaError(f"Hook {spec!r} is not callable")
    return hook


def _commands(templates: Sequence[Sequence[str]]) -> List[Command]:
    commands = []
    for template in templates:
        if isinstance(template, str) or not template:
            raise FormulaError(f"Commands must be non empty argument lists: {template!r}")
        commands.append(Command(list(template)))
    return commands


def _dependency(data: Union[str, Mapping[str, Any]]) -> Dependency:
    if isinstance(data, str):
        return depends_on(data)
    when: Optional[Predicate] = None
    if "os" in data:
        when = only_on(_os_family(data["os"]))
    elif "unless_os" in data:
        when = unless_on(_os_family(data["unless_os"]))
    kind = data.get("kind", PLATFORM if when is not None else REQUIRED)
    return depends_on(data["name"], kind, when, data.get("option"))


def _os_family(value: str) -> str:
    aliases = {"mac": DARWIN, "macos": DARWIN, "darwin": DARWIN, "linux": LINUX}
    try:
        return aliases[value.lower()]
    except KeyError:
        raise FormulaError(f"Unknown OS family {value!r}")


def from_dict(data: Mapping[str, Any]) -> FormulaDescriptor:
    """
    Build a formula from a declarative document.

    :raises FormulaError: If the document is not a valid formula
    """
    try:
        name = data["name"]
        version = data["version"]
        source = Resource(
            name,
            data["url"],
            data.get("sha256"),
            mirrors=data.get("mirrors", ()),
            version=version,
        )
    except KeyError as exc:
        raise FormulaError(f"Formula document is missing {exc}")

    resources = [
        Resource(
            res_name,
            res["url"],
            res.get("sha256"),
            mirrors=res.get("mirrors", ()),
            version=res.get("version", ""),
        )
        for res_name, res in data.get("resources", {}).items()
    ]

    bottle = None
    if data.get("bottle"):
        spec = data["bottle"]
        bottle = BottleSet(
            spec.get("sha256", {}),
            root_url=spec.get("root_url", ""),
            cellar=spec.get("cellar", CELLAR_ANY),
        )

    devel = None
    if data.get("devel"):
        spec = data["devel"]
        devel = Resource(
            name,
            spec["url"],
            spec.get("sha256"),
            mirrors=spec.get("mirrors", ()),
            version=spec.get("version", ""),
        )

    head = None
    if data.get("head"):
        spec = data["head"]
        if isinstance(spec, str):
            head = HeadSpec(spec)
        else:
            head = HeadSpec(spec["url"], spec.get("branch"))

    install_steps = _commands(data.get("install", []))
    test_steps = _commands(data.get("test", []))

    def install(ctx: "Context") -> Sequence[Step]:
        return install_steps

    def test(ctx: "Context") -> None:
        for index, step in enumerate(test_steps):
            ctx.run(step.render(ctx.params), env=step.env, check=True, step=index)

    return FormulaDescriptor(
        name=name,
        version=version,
        source=source,
        install=install if install_steps else no_recipe,
        dependencies=[_dependency(_) for _ in data.get("dependencies", [])],
        resources=resources,
        bottle=bottle,
        post_install=_import_hook(data["post_install"]) if data.get("post_install") else None,
        test=test if test_steps else None,
        caveats=data.get("caveats", ""),
        options=[
            Option(_) if isinstance(_, str) else Option(_["name"], _.get("description", ""))
            for _ in data.get("options", [])
        ],
        keg_only=data.get("keg_only"),
        devel=devel,
        head=head,
        version_scheme=data.get("version_scheme", 0),
        desc=data.get("desc", ""),
        homepage=data.get("homepage", ""),
    )


def load(path: PathLike) -> FormulaDescriptor:
    """
    Load a formula from a JSON document.
    """
    path = pathlib.Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise FormulaError(f"Unable to read formula {os.fspath(path)}: {exc}")
    if not isinstance(data, dict):
        raise FormulaError(f"Formula {os.fspath(path)} is not a JSON object")
    return from_dict(data)


formulas = FormulaRegistry()
