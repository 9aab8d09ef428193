# Copyright 2022-2025 Broadcom.
# SPDX-License-Identifier: Apache-2.0
"""
Drive every node of a resolved graph from pending to done or failed.
"""
from __future__ import annotations

import concurrent.futures
import contextlib
import logging
import os
import pathlib
import shutil
import tempfile
import threading
from typing import IO, Dict, Iterator, List, Mapping, NamedTuple, Optional, Sequence

from .common import (
    BottleError,
    BrewkitException,
    BuildStepFailed,
    FetchError,
    FormulaError,
    Interrupted,
    OrchestratorError,
    PlatformError,
    PostInstallFailed,
    TestFailed,
    WorkDirs,
    extract_archive,
    tail,
    work_dirs,
)
from .context import Context
from .fetch import ArtifactFetcher
from .formula import (
    OPTIONAL,
    Call,
    Command,
    FormulaDescriptor,
    FormulaRegistry,
    Resource,
)
from .graph import DependencyGraph, GraphNode
from .keg import Keg
from .profile import PlatformProfile, detect
from .records import (
    FAILED,
    INSTALLED_FROM_BOTTLE,
    INSTALLED_FROM_SOURCE,
    SKIPPED,
    TEST_FAILED,
    TEST_PASSED,
    TEST_SKIPPED,
    InstallationRecord,
    RecordStore,
)
from .sandbox import Sandbox

log = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FETCH = 2
EXIT_BUILD = 3
EXIT_TEST = 4
EXIT_GRAPH = 5

PENDING = "pending"
RESOLVED_BOTTLE = "resolved-bottle"
RESOLVED_SOURCE = "resolved-source"
BUILDING = "building"
POST_INSTALL = "post-install"
TESTED = "tested"
DONE = "done"
NODE_FAILED = "failed"

TRANSITIONS: Dict[str, Sequence[str]] = {
    PENDING: (RESOLVED_BOTTLE, RESOLVED_SOURCE, DONE, NODE_FAILED),
    RESOLVED_BOTTLE: (POST_INSTALL, NODE_FAILED),
    RESOLVED_SOURCE: (BUILDING, NODE_FAILED),
    BUILDING: (POST_INSTALL, NODE_FAILED),
    POST_INSTALL: (TESTED, NODE_FAILED),
    TESTED: (DONE, NODE_FAILED),
    DONE: (),
    NODE_FAILED: (),
}

# Failure categories, most severe first.
CATEGORY_FETCH = "fetch"
CATEGORY_BUILD = "build"
CATEGORY_INTERRUPTED = "interrupted"
CATEGORY_DEPENDENCY = "dependency"


class NodeRun:
    """
    The state of one node while it is processed.
    """

    def __init__(
        self,
        node: GraphNode,
        version: str,
        source: Resource,
        devel: bool = False,
    ) -> None:
        self.node = node
        self.formula: FormulaDescriptor = node.formula
        self.version = version
        self.source = source
        self.devel = devel
        self.state = PENDING
        self.record = InstallationRecord(
            self.formula.name, version, self.formula.version_scheme
        )
        self.sandbox = Sandbox()
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"<NodeRun {self.name} {self.state}>"

    @property
    def name(self) -> str:
        return self.formula.name

    @property
    def finished(self) -> bool:
        return self.state in (DONE, NODE_FAILED)

    def transition(self, state: str) -> None:
        """
        Move to ``state``.

        :raises OrchestratorError: If the transition is not allowed
        """
        with self._lock:
            if state not in TRANSITIONS[self.state]:
                raise OrchestratorError(
                    f"{self.name}: illegal transition {self.state} -> {state}"
                )
            log.debug("%s: %s -> %s", self.name, self.state, state)
            self.state = state


class TestResult(NamedTuple):
    """
    The result of running a formula's test on its own.
    """

    __test__ = False

    name: str
    version: str
    status: str
    error: Optional[str] = None


class InstallReport:
    """
    The outcome of every node of an install run, in installation order.
    """

    def __init__(self, records: Sequence[InstallationRecord]) -> None:
        self.records = list(records)

    def __iter__(self) -> Iterator[InstallationRecord]:
        return iter(self.records)

    def __getitem__(self, name: str) -> InstallationRecord:
        for record in self.records:
            if record.name == name:
                return record
        raise KeyError(name)

    @property
    def failed(self) -> List[InstallationRecord]:
        return [_ for _ in self.records if _.failed]

    @property
    def ok(self) -> bool:
        return self.exit_code == EXIT_OK

    @property
    def exit_code(self) -> int:
        categories = {(_.failure or {}).get("category") for _ in self.failed}
        if CATEGORY_FETCH in categories:
            return EXIT_FETCH
        if self.failed:
            return EXIT_BUILD
        if any(_.test_status == TEST_FAILED for _ in self.records):
            return EXIT_TEST
        return EXIT_OK

    def format(self, output_size: int = 2048) -> str:
        """
        Render the report for the terminal.
        """
        lines = []
        for record in self.records:
            outcome = record.outcome or "unfinished"
            if record.bottle_tag:
                outcome = f"{outcome} ({record.bottle_tag})"
            lines.append(f"==> {record.name} {record.version}: {outcome}")
            if record.bottle_error:
                lines.append(f"    bottle unavailable: {record.bottle_error}")
            if record.failure:
                failure = record.failure
                lines.append(f"    state: {failure.get('state')}")
                lines.append(f"    error: {failure.get('error')}: {failure.get('message')}")
                if failure.get("step") is not None:
                    lines.append(f"    step: {failure['step']}")
                output = failure.get("output")
                if output:
                    lines.append("    output:")
                    for line in tail(output, output_size).splitlines():
                        lines.append(f"      {line}")
            if record.post_install_error:
                lines.append(f"    post-install failed: {record.post_install_error}")
            if record.test_status:
                lines.append(f"    test: {record.test_status}")
            if record.test_error:
                lines.append(f"    test error: {record.test_error}")
        for record in self.records:
            if record.caveats and record.installed:
                lines.append(f"==> Caveats for {record.name}")
                lines.append(record.caveats)
        return "\n".join(lines)


def _source_root(builddir: pathlib.Path) -> pathlib.Path:
    """
    The directory an extracted source tree should be built in.
    """
    entries = list(builddir.iterdir())
    if len(entries) == 1 and entries[0].is_dir():
        return entries[0]
    return builddir


def _failure_output(exc: BaseException) -> str:
    if isinstance(exc, BuildStepFailed):
        return tail(exc.output)
    return ""


class InstallOrchestrator:
    """
    Install formulas and their dependencies.

    :param registry: The formulas to resolve names against
    :type registry: ``brewkit.formula.FormulaRegistry``
    :param profile: The platform to install for, detected when omitted
    :type profile: ``brewkit.profile.PlatformProfile``
    :param dirs: The brewkit directories
    :type dirs: ``brewkit.common.WorkDirs``
    :param fetcher: Retrieves sources, resources and bottles
    :type fetcher: ``brewkit.fetch.ArtifactFetcher``
    :param records: Where installation records are persisted
    :type records: ``brewkit.records.RecordStore``
    :param skip_tests: Do not run test hooks
    :type skip_tests: bool
    :param jobs: How many independent nodes may be processed at once
    :type jobs: int
    :param options: Build options per formula name
    :type options: dict
    :param build_from_source: Never pour bottles
    :type build_from_source: bool
    :param devel: Install the devel variant of the requested formulas
    :type devel: bool
    """

    def __init__(
        self,
        registry: FormulaRegistry,
        profile: Optional[PlatformProfile] = None,
        dirs: Optional[WorkDirs] = None,
        fetcher: Optional[ArtifactFetcher] = None,
        records: Optional[RecordStore] = None,
        skip_tests: bool = False,
        jobs: int = 1,
        options: Optional[Mapping[str, Sequence[str]]] = None,
        build_from_source: bool = False,
        devel: bool = False,
    ) -> None:
        self.registry = registry
        self.profile = profile if profile is not None else detect()
        self.dirs = dirs if dirs is not None else work_dirs()
        self.fetcher = fetcher if fetcher is not None else ArtifactFetcher()
        self.records = records if records is not None else RecordStore(self.dirs.records)
        self.skip_tests = skip_tests
        self.jobs = max(1, jobs)
        self.options: Dict[str, List[str]] = {
            k: list(v) for k, v in (options or {}).items()
        }
        self.build_from_source = build_from_source
        self.devel = devel
        self.report: Optional[InstallReport] = None
        self._devel_roots: set[str] = set()

    def _use_devel(self, formula: FormulaDescriptor) -> bool:
        return formula.name in self._devel_roots

    def _installed(self, formula: FormulaDescriptor) -> bool:
        version, _ = formula.variant(self._use_devel(formula))
        return self.records.is_installed(formula.name, version)

    def resolve(self, names: Sequence[str]) -> List[GraphNode]:
        """
        Resolve the requested formulas into an installation order.

        Nothing on disk is changed.

        :raises GraphError: If the formulas can not be ordered
        :raises FormulaError: If a requested variant does not exist
        """
        roots = [self.registry.get(_) for _ in names]
        self._devel_roots = {_.name for _ in roots} if self.devel else set()
        for root in roots:
            known = {_.name for _ in root.options}
            known.update(f"with-{_.name}" for _ in root.dependencies if _.kind == OPTIONAL)
            for option in self.options.get(root.name, ()):
                if option not in known:
                    log.warning("%s has no option %s", root.name, option)
        graph = DependencyGraph(self.registry, self.options, self._installed)
        return graph.resolve_many(roots, self.profile)

    def dependency_paths(self, formula: FormulaDescriptor) -> Dict[str, pathlib.Path]:
        """
        Install prefix of every dependency of ``formula`` on this platform.
        """
        options = self.options.get(formula.name, ())
        paths = {}
        for dep in formula.dependencies:
            if not dep.applies(self.profile, options):
                continue
            if self.registry.is_system(dep.name):
                paths[dep.name] = self.registry.system[dep.name]
            else:
                paths[dep.name] = self.dirs.opt / dep.name
        return paths

    def _context(
        self, formula: FormulaDescriptor, version: str, sandbox: Sandbox
    ) -> Context:
        return Context(
            formula,
            version,
            self.profile,
            self.dirs,
            sandbox,
            self.fetcher,
            deps=self.dependency_paths(formula),
            options=self.options.get(formula.name, ()),
        )

    def _path_prefixes(self, formula: FormulaDescriptor) -> List[pathlib.Path]:
        return [_ / "bin" for _ in self.dependency_paths(formula).values()]

    @contextlib.contextmanager
    def _node_log(self, name: str, kind: str) -> Iterator[IO[str]]:
        logdir = self.dirs.logs / name
        logdir.mkdir(parents=True, exist_ok=True)
        with open(logdir / f"{kind}.log", "w", encoding="utf-8") as logfp:
            yield logfp

    def install(self, names: Sequence[str]) -> InstallReport:
        """
        Install formulas and everything they depend on.

        :param names: The formulas to install
        :type names: list

        :raises GraphError: If the graph can not be resolved, before anything is installed
        :raises FormulaError: If a requested variant does not exist
        :raises KeyboardInterrupt: After running steps were stopped and their nodes failed

        :return: The report of every node
        :rtype: ``InstallReport``
        """
        order = self.resolve(names)
        runs: Dict[str, NodeRun] = {}
        for node in order:
            devel = self._use_devel(node.formula)
            version, source = node.formula.variant(devel)
            runs[node.name] = NodeRun(node, version, source, devel)
        log.info("Install order: %s", ", ".join(_.name for _ in order))

        for path in (self.dirs.root, self.dirs.tmp, self.dirs.logs):
            path.mkdir(parents=True, exist_ok=True)
        try:
            self._schedule(order, runs)
        finally:
            self.report = InstallReport([runs[_.name].record for _ in order])
        return self.report

    def _schedule(self, order: Sequence[GraphNode], runs: Dict[str, NodeRun]) -> None:
        waiting = [_.name for _ in order]
        futures: Dict[concurrent.futures.Future[None], NodeRun] = {}
        with concurrent.futures.ThreadPoolExecutor(max_workers=self.jobs) as pool:
            try:
                while waiting or futures:
                    for name in list(waiting):
                        run = runs[name]
                        deps = [runs[_] for _ in run.node.dependencies]
                        failed = [_ for _ in deps if _.state == NODE_FAILED]
                        if failed:
                            waiting.remove(name)
                            self._fail_by_ancestor(run, failed[0])
                        elif all(_.state == DONE for _ in deps):
                            waiting.remove(name)
                            futures[pool.submit(self._process, run)] = run
                    if not futures:
                        if waiting:
                            raise OrchestratorError(
                                "Nodes can never start: {}".format(", ".join(waiting))
                            )
                        break
                    done, _ = concurrent.futures.wait(
                        futures, return_when=concurrent.futures.FIRST_COMPLETED
                    )
                    for future in done:
                        futures.pop(future)
                        future.result()
            except KeyboardInterrupt:
                log.error("Interrupted, stopping running steps")
                for future in futures:
                    future.cancel()
                for run in runs.values():
                    run.sandbox.cancel()
                concurrent.futures.wait(futures)
                for run in runs.values():
                    if not run.finished:
                        self._fail(run, Interrupted(f"{run.name} was interrupted"))
                raise

    def _fail(
        self,
        run: NodeRun,
        exc: BaseException,
        category: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        if run.finished:
            return
        if category is None:
            if isinstance(exc, FetchError):
                category = CATEGORY_FETCH
            elif isinstance(exc, Interrupted):
                category = CATEGORY_INTERRUPTED
            else:
                category = CATEGORY_BUILD
        failure = {
            "state": run.state,
            "category": category,
            "error": error or type(exc).__name__,
            "message": str(exc),
            "step": getattr(exc, "step", None),
            "output": _failure_output(exc),
        }
        log.error("%s failed while %s: %s", run.name, run.state, exc)
        run.transition(NODE_FAILED)
        if run.record.finalized:
            started = run.record.started
            run.record = InstallationRecord(
                run.name, run.version, run.formula.version_scheme
            )
            run.record.started = started
        run.record.finalize(FAILED, failure=failure)

    def _fail_by_ancestor(self, run: NodeRun, ancestor: NodeRun) -> None:
        self._fail(
            run,
            BrewkitException(f"dependency {ancestor.name} failed"),
            category=CATEGORY_DEPENDENCY,
            error="AncestorFailed",
        )

    def _process(self, run: NodeRun) -> None:
        """
        Run one node through the state machine. Failures end up in the node's record.
        """
        run.record.start()
        if run.node.installed:
            log.info("%s %s is already installed", run.name, run.version)
            run.transition(DONE)
            run.record.finalize(SKIPPED, path=Keg(self.dirs, run.name, run.version).path)
            return
        try:
            with self._node_log(run.name, "install") as logfp:
                run.sandbox.logfp = logfp
                run.sandbox.path_prefixes = [
                    os.fspath(_) for _ in self._path_prefixes(run.formula)
                ]
                self._install_node(run)
        except KeyboardInterrupt:
            self._fail(run, Interrupted(f"{run.name} was interrupted"))
            raise
        except BrewkitException as exc:
            self._fail(run, exc)
        except Exception as exc:
            log.exception("Unexpected failure installing %s", run.name)
            self._fail(run, exc)

    def _install_node(self, run: NodeRun) -> None:
        formula = run.formula
        keg = Keg(self.dirs, run.name, run.version)
        ctx = self._context(formula, run.version, run.sandbox)

        archive = self._bottle(run)
        if archive is not None:
            run.transition(RESOLVED_BOTTLE)
            keg.remove()
            assert formula.bottle is not None
            keg.pour(archive, relocate=formula.bottle.relocatable)
            outcome = INSTALLED_FROM_BOTTLE
        else:
            run.transition(RESOLVED_SOURCE)
            self._build(run, ctx, keg)
            outcome = INSTALLED_FROM_SOURCE

        keg.optlink()
        if formula.keg_only:
            log.info("%s is keg-only: %s", run.name, formula.keg_only)
        else:
            keg.link()

        run.transition(POST_INSTALL)
        ctx.env.clear()
        self._post_install(run, ctx)

        run.transition(TESTED)
        if formula.test is None:
            pass
        elif self.skip_tests:
            run.record.test_status = TEST_SKIPPED
        else:
            status, error = self._run_test(ctx)
            run.record.test_status = status
            run.record.test_error = error

        try:
            run.record.caveats = ctx.caveats()
        except (KeyError, IndexError, ValueError) as exc:
            raise FormulaError(f"{run.name}: unable to render caveats: {exc}")
        run.record.finalize(outcome, path=keg.path)
        self.records.save(run.record)
        run.transition(DONE)
        log.info("%s %s: %s", run.name, run.version, outcome)

    def _bottle(self, run: NodeRun) -> Optional[pathlib.Path]:
        """
        Fetch the bottle for this platform when the node may use one.
        """
        bottle = run.formula.bottle
        if bottle is None:
            return None
        if self.build_from_source or run.devel or self.options.get(run.name):
            log.info("%s: building from source as requested", run.name)
            return None
        try:
            tag = self.profile.tag
        except PlatformError as exc:
            log.info("%s: no bottle tag for this platform: %s", run.name, exc)
            return None
        entry = bottle.for_tag(tag)
        if entry is None:
            log.info("%s: no bottle for %s", run.name, tag)
            return None
        url = bottle.url_for(run.name, run.version, tag)
        try:
            archive = self.fetcher.fetch([url], entry.sha256, name=f"{run.name} bottle")
        except FetchError as exc:
            log.warning("%s: bottle unavailable, building from source: %s", run.name, exc)
            run.record.bottle_error = str(exc)
            return None
        run.record.bottle_tag = tag
        return archive

    def _build(self, run: NodeRun, ctx: Context, keg: Keg) -> None:
        archive = self.fetcher.fetch_resource(run.source)
        run.transition(BUILDING)
        builddir = pathlib.Path(
            tempfile.mkdtemp(prefix=f"{run.name}-{run.version}-", dir=self.dirs.tmp)
        )
        try:
            extract_archive(builddir, archive)
            ctx.buildpath = _source_root(builddir)
            keg.remove()
            keg.path.mkdir(parents=True)
            steps = run.formula.install(ctx)
            for index, step in enumerate(steps):
                ctx.step = index
                self._run_step(ctx, index, step)
        finally:
            ctx.buildpath = None
            shutil.rmtree(builddir, ignore_errors=True)

    def _run_step(self, ctx: Context, index: int, step: object) -> None:
        if isinstance(step, Command):
            log.info("%s: step %d: %s", ctx.name, index, step.describe())
            cwd = None
            if step.cwd:
                cwd = pathlib.Path(step.cwd.format_map(ctx.params))
                if not cwd.is_absolute() and ctx.buildpath is not None:
                    cwd = ctx.buildpath / cwd
            ctx.run(step.render(ctx.params), env=step.env, cwd=cwd, step=index)
        elif isinstance(step, Call):
            log.info("%s: step %d: %s", ctx.name, index, step.describe())
            try:
                step.func(ctx)
            except BrewkitException:
                raise
            except Exception as exc:
                raise BuildStepFailed(index, [step.describe()], 1, "", str(exc)) from exc
        else:
            raise FormulaError(f"{ctx.name}: step {index} is not a Command or Call: {step!r}")

    def _post_install(self, run: NodeRun, ctx: Context) -> None:
        hook = run.formula.post_install
        if hook is None:
            return
        log.info("%s: running post install", run.name)
        try:
            hook(ctx)
        except Interrupted:
            raise
        except Exception as exc:
            error = PostInstallFailed(f"{run.name} post install failed: {exc}")
            log.error("%s", error)
            output = _failure_output(exc)
            run.record.post_install_error = (
                f"{error}\n{output}" if output else str(error)
            )

    def _run_test(self, ctx: Context) -> tuple[str, Optional[str]]:
        assert ctx.formula.test is not None
        log.info("%s: running test", ctx.name)
        testpath = pathlib.Path(
            tempfile.mkdtemp(prefix=f"{ctx.name}-test-", dir=self.dirs.tmp)
        )
        ctx.testpath = testpath
        try:
            ctx.formula.test(ctx)
        except Interrupted:
            raise
        except Exception as exc:
            error = TestFailed(f"{ctx.name} test failed: {exc}")
            log.error("%s", error)
            output = _failure_output(exc)
            return TEST_FAILED, f"{error}\n{output}" if output else str(error)
        finally:
            ctx.testpath = None
            shutil.rmtree(testpath, ignore_errors=True)
        return TEST_PASSED, None

    def test(self, name: str) -> TestResult:
        """
        Run the test of an installed formula.

        :raises FormulaError: If the formula is not installed
        """
        formula = self.registry.get(name)
        self._devel_roots = {name} if self.devel else set()
        version, _ = formula.variant(self.devel)
        if not self.records.is_installed(name, version):
            raise FormulaError(f"{name} {version} is not installed")
        if formula.test is None:
            log.info("%s has no test", name)
            return TestResult(name, version, TEST_SKIPPED)
        self.dirs.tmp.mkdir(parents=True, exist_ok=True)
        with self._node_log(name, "test") as logfp:
            sandbox = Sandbox(path_prefixes=self._path_prefixes(formula), logfp=logfp)
            ctx = self._context(formula, version, sandbox)
            status, error = self._run_test(ctx)
        return TestResult(name, version, status, error)

    def bottle(self, name: str, dest: pathlib.Path) -> pathlib.Path:
        """
        Pack the installed keg of ``name`` into a bottle for this platform.

        :raises FormulaError: If the formula is not installed
        :raises PlatformError: If this platform has no bottle tag
        """
        formula = self.registry.get(name)
        version, _ = formula.variant(self.devel)
        if not self.records.is_installed(name, version):
            raise FormulaError(f"{name} {version} is not installed")
        keg = Keg(self.dirs, name, version)
        try:
            return keg.bottle(self.profile.tag, dest)
        except OSError as exc:
            raise BottleError(f"Unable to bottle {name}: {exc}")
