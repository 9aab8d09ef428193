# Copyright 2022-2025 Broadcom.
# SPDX-License-Identifier: Apache-2.0
"""
Common classes and values used around brewkit.
"""
from __future__ import annotations

import http.client
import logging
import os
import pathlib
import platform
import tarfile
import time
from typing import BinaryIO, Literal, Optional, Sequence, Union

# brewkit package version
__version__ = "0.1.0"

log = logging.getLogger(__name__)

LINUX = "linux"
DARWIN = "darwin"

arches = {
    LINUX: (
        "x86_64",
        "aarch64",
        "i386",
    ),
    DARWIN: ("x86_64", "arm64", "i386"),
}

REQUEST_HEADERS = {"User-Agent": f"brewkit {__version__}"}

DATA_ENV = "BREWKIT_DATA"
CACHE_ENV = "BREWKIT_CACHE"
MIRRORS_ENV = "BREWKIT_MIRRORS"
SKIP_TESTS_ENV = "BREWKIT_SKIP_TESTS"
JOBS_ENV = "BREWKIT_JOBS"

DEFAULT_DATA_DIR = pathlib.Path.home() / ".local" / "brewkit"

PathLike = Union[str, os.PathLike[str]]


class BrewkitException(Exception):
    """
    Base class for exeptions generated from brewkit.
    """


class FormulaError(BrewkitException):
    """
    Raised when a formula description is invalid.
    """


class PlatformError(BrewkitException):
    """
    Raised when the current platform can not be handled.
    """


class GraphError(BrewkitException):
    """
    Base class for dependency resolution failures.
    """


class CycleDetected(GraphError):
    """
    Raised when the dependency graph contains a cycle.
    """

    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = list(cycle)
        super().__init__("Dependency cycle detected: {}".format(" -> ".join(cycle)))


class UnresolvedDependency(GraphError):
    """
    Raised when a dependency names a formula the registry does not know.
    """

    def __init__(self, name: str, required_by: Optional[str] = None) -> None:
        self.name = name
        self.required_by = required_by
        if required_by:
            msg = f"No formula named {name!r} (required by {required_by!r})"
        else:
            msg = f"No formula named {name!r}"
        super().__init__(msg)


class FetchError(BrewkitException):
    """
    Base class for artifact retrieval failures.
    """


class IntegrityViolation(FetchError):
    """
    Raised when a downloaded artifact does not match its declared checksum.
    """

    def __init__(self, source: str, expected: str, found: str) -> None:
        self.source = source
        self.expected = expected
        self.found = found
        super().__init__(
            f"checksum verification failed for {source}. expected={expected} found={found}"
        )


class FetchExhausted(FetchError):
    """
    Raised when every source of an artifact has failed.
    """

    def __init__(self, name: str, attempts: Sequence[tuple[str, str]]) -> None:
        self.name = name
        self.attempts = list(attempts)
        lines = [f"Unable to fetch {name} from any source:"]
        for url, reason in self.attempts:
            lines.append(f"  {url}: {reason}")
        super().__init__("\n".join(lines))


class BuildStepFailed(BrewkitException):
    """
    Raised when a recipe step exits with a non zero code.
    """

    def __init__(
        self,
        step: int,
        args: Sequence[str],
        returncode: int,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        self.step = step
        self.command = [str(_) for _ in args]
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(
            "Build step {} '{}' failed with exit code {}".format(
                step, " ".join(self.command), returncode
            )
        )

    @property
    def output(self) -> str:
        """Combined captured output of the failed step."""
        return "\n".join(_ for _ in (self.stdout, self.stderr) if _)


class PostInstallFailed(BrewkitException):
    """
    Raised when a post install hook fails. Never fatal to an installation.
    """


class TestFailed(BrewkitException):
    """
    Raised when a formula's test hook fails. Never fatal to an installation.
    """

    __test__ = False


class Interrupted(BrewkitException):
    """
    Raised when a step is cancelled by the user.
    """


class RecordError(BrewkitException):
    """
    Raised on an invalid use of an installation record.
    """


class OrchestratorError(BrewkitException):
    """
    Raised when the install state machine is driven incorrectly.
    """


class BottleError(BrewkitException):
    """
    Raised when a bottle can not be poured or created.
    """


def data_dir() -> pathlib.Path:
    """
    Get the root directory brewkit installs into.
    """
    return pathlib.Path(os.environ.get(DATA_ENV, DEFAULT_DATA_DIR)).expanduser().resolve()


def cache_root() -> pathlib.Path:
    """
    Get the root of the content addressed download cache.
    """
    override = os.environ.get(CACHE_ENV)
    if override:
        return pathlib.Path(override).expanduser()
    cache_home = os.environ.get("XDG_CACHE_HOME")
    if cache_home:
        base = pathlib.Path(cache_home)
    else:
        base = pathlib.Path.home() / ".cache"
    return base / "brewkit"


def extra_mirrors() -> list[str]:
    """
    Alternate mirror base urls from the environment.
    """
    return os.environ.get(MIRRORS_ENV, "").split()


def skip_tests_default() -> bool:
    """
    True when test hooks should be skipped by default.
    """
    return os.environ.get(SKIP_TESTS_ENV, "0").strip().lower() in ("1", "true", "yes")


def default_jobs() -> int:
    """
    Number of formulas that may be installed concurrently.
    """
    try:
        return max(int(os.environ.get(JOBS_ENV, "1")), 1)
    except ValueError:
        log.warning("Ignoring invalid %s value %r", JOBS_ENV, os.environ[JOBS_ENV])
        return 1


def build_arch() -> str:
    """
    Return the current machine.
    """
    machine = platform.machine()
    return machine.lower()


class WorkDirs:
    """
    Simple class used to hold references to the directories brewkit uses relative to a given root.

    :param root: The root of the working directories tree
    :type root: str
    """

    def __init__(
        self: "WorkDirs",
        root: Optional[PathLike] = None,
        cache: Optional[PathLike] = None,
    ) -> None:
        self.root: pathlib.Path = (
            pathlib.Path(root).resolve() if root is not None else data_dir()
        )
        self.cellar: pathlib.Path = self.root / "Cellar"
        self.opt: pathlib.Path = self.root / "opt"
        self.bin: pathlib.Path = self.root / "bin"
        self.etc: pathlib.Path = self.root / "etc"
        self.records: pathlib.Path = self.root / "var" / "db" / "records"
        self.logs: pathlib.Path = self.root / "logs"
        self.tmp: pathlib.Path = self.root / "tmp"
        self.cache: pathlib.Path = (
            pathlib.Path(cache) if cache is not None else cache_root()
        )

    def to_dict(self) -> dict[str, pathlib.Path]:
        """
        Get a dictionary representation of the directories in this collection.
        """
        return {
            x: getattr(self, x)
            for x in [
                "root",
                "cellar",
                "opt",
                "bin",
                "etc",
                "records",
                "logs",
                "tmp",
                "cache",
            ]
        }


def work_dirs(
    root: Optional[PathLike] = None, cache: Optional[PathLike] = None
) -> WorkDirs:
    """
    Returns a WorkDirs instance based on the given root.

    :param root: The desired root of brewkit's directories
    :type root: str

    :return: A WorkDirs instance based on the given root
    :rtype: ``brewkit.common.WorkDirs``
    """
    return WorkDirs(root, cache)


def extract_archive(to_dir: PathLike, archive: PathLike) -> None:
    """
    Extract an archive to a specific location.

    :param to_dir: The directory to extract to
    :type to_dir: str
    :param archive: The archive to extract
    :type archive: str
    """
    archive_path = pathlib.Path(archive)
    archive_str = str(archive_path)
    to_path = pathlib.Path(to_dir)
    TarReadMode = Literal["r:gz", "r:xz", "r:bz2", "r"]
    read_type: TarReadMode = "r"
    if archive_str.endswith(".tgz"):
        log.debug("Found tgz archive")
        read_type = "r:gz"
    elif archive_str.endswith(".tar.gz"):
        log.debug("Found tar.gz archive")
        read_type = "r:gz"
    elif archive_str.endswith(".xz"):
        log.debug("Found xz archive")
        read_type = "r:xz"
    elif archive_str.endswith(".bz2"):
        log.debug("Found bz2 archive")
        read_type = "r:bz2"
    else:
        log.warning("Found unknown archive type: %s", archive_path)
    with tarfile.open(str(archive_path), mode=read_type) as tar:
        if hasattr(tarfile, "data_filter"):
            # Refuse members escaping to_dir, absolute links and device files.
            tar.extractall(str(to_path), filter="data")
        else:
            tar.extractall(str(to_path))


def fetch_url(url: str, fp: BinaryIO, timeout: float = 60) -> None:
    """
    Fetch the contents of a url.

    This method will store the contents in the given file like object. A
    single attempt is made; callers fall back to other mirrors instead.
    """
    import urllib.error
    import urllib.request

    last = time.time()
    req = urllib.request.Request(url, headers=REQUEST_HEADERS)
    try:
        response = urllib.request.urlopen(req, timeout=timeout)
    except (
        urllib.error.HTTPError,
        urllib.error.URLError,
        http.client.RemoteDisconnected,
        OSError,
    ) as exc:
        raise FetchError(f"Error fetching url {url} {exc}")
    log.info("url opened %s", url)
    try:
        total = 0
        block = response.read(1024 * 300)
        while block:
            total += len(block)
            if time.time() - last > 10:
                log.info("%s > %d", url, total)
                last = time.time()
            fp.write(block)
            block = response.read(10240)
    except (OSError, http.client.HTTPException) as exc:
        raise FetchError(f"Error reading url {url} {exc}")
    finally:
        response.close()
    log.info("Download complete %s", url)


def tail(text: str, size: int = 4096) -> str:
    """
    Return the last ``size`` characters of some captured output.
    """
    if len(text) <= size:
        return text
    return text[-size:]


class Version:
    """
    Version comparisons.
    """

    def __init__(self, data: str) -> None:
        major, minor, micro = self.parse_string(data)
        self.major: int = major
        self.minor: Optional[int] = minor
        self.micro: Optional[int] = micro
        self._data: str = data

    def __str__(self: "Version") -> str:
        """
        Version as string.
        """
        result = f"{self.major}"
        if self.minor is not None:
            result += f".{self.minor}"
            if self.micro is not None:
                result += f".{self.micro}"
        return result

    def __repr__(self: "Version") -> str:
        return f"Version({str(self)!r})"

    def __hash__(self: "Version") -> int:
        """
        Hash of the version.

        Hash the major, minor, and micro attributes.
        """
        return hash(self._key())

    @staticmethod
    def parse_string(data: str) -> tuple[int, Optional[int], Optional[int]]:
        """
        Parse a version string into major, minor, and micro integers.

        Trailing non numeric parts of a component are ignored, so kernel
        releases like ``5.15.0-91-generic`` parse as ``5.15.0``.
        """
        parts = [_ for _ in data.split(".") if _][:3]
        numbers: list[int] = []
        for part in parts:
            digits = ""
            for char in part:
                if not char.isdigit():
                    break
                digits += char
            if not digits:
                break
            numbers.append(int(digits))
            if len(digits) != len(part):
                break
        if not numbers:
            raise ValueError(f"Unable to parse version {data!r}")
        while len(numbers) < 3:
            numbers.append(-1)
        major, minor, micro = numbers
        return (
            major,
            None if minor < 0 else minor,
            None if micro < 0 else micro,
        )

    def _key(self) -> tuple[int, int, int]:
        return (
            self.major,
            0 if self.minor is None else self.minor,
            0 if self.micro is None else self.micro,
        )

    def __eq__(self: "Version", other: object) -> bool:
        """
        Equality comparisons.
        """
        if not isinstance(other, Version):
            return NotImplemented
        return self._key() == other._key()

    def __lt__(self: "Version", other: object) -> bool:
        """
        Less than comparrison.
        """
        if not isinstance(other, Version):
            return NotImplemented
        return self._key() < other._key()

    def __le__(self: "Version", other: object) -> bool:
        """
        Less than or equal to comparrison.
        """
        if not isinstance(other, Version):
            return NotImplemented
        return self._key() <= other._key()

    def __gt__(self: "Version", other: object) -> bool:
        """
        Greater than comparrison.
        """
        if not isinstance(other, Version):
            return NotImplemented
        return self._key() > other._key()

    def __ge__(self: "Version", other: object) -> bool:
        """
        Greater than or equal to comparrison.
        """
        if not isinstance(other, Version):
            return NotImplemented
        return self._key() >= other._key()
