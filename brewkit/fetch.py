# Copyright 2022-2025 Broadcom.
# SPDX-License-Identifier: Apache-2.0
"""
Checksum verified retrieval of sources, resources and bottles.
"""
from __future__ import annotations

import hashlib
import logging
import os
import pathlib
import tempfile
import threading
import urllib.parse
from typing import TYPE_CHECKING, Iterable, Optional, Sequence

from .common import (
    FetchError,
    FetchExhausted,
    FormulaError,
    IntegrityViolation,
    PathLike,
    cache_root,
    extra_mirrors,
    fetch_url,
)

if TYPE_CHECKING:
    from .formula import Resource

log = logging.getLogger(__name__)


def _hasher(checksum: str) -> "hashlib._Hash":
    # SHA-1: 40 hex chars, SHA-256: 64 hex chars
    if len(checksum) == 64:
        return hashlib.sha256()
    elif len(checksum) == 40:
        return hashlib.sha1()
    raise FormulaError(
        f"Invalid checksum length {len(checksum)}. Expected 40 (SHA-1) or 64 (SHA-256)"
    )


def _digest(file: PathLike, hash_algo: "hashlib._Hash") -> str:
    with open(file, "rb") as fp:
        for chunk in iter(lambda: fp.read(1024 * 1024), b""):
            hash_algo.update(chunk)
    return hash_algo.hexdigest()


def file_checksum(file: PathLike, checksum: str) -> str:
    """
    Compute the digest of a file with the algorithm matching ``checksum``.
    """
    return _digest(file, _hasher(checksum))


def sha256sum(file: PathLike) -> str:
    """
    Compute the SHA-256 of a file.
    """
    return _digest(file, hashlib.sha256())


def verify_checksum(file: PathLike, checksum: Optional[str], source: str = "") -> bool:
    """
    Verify the checksum of a file.

    Supports both SHA-1 (40 hex chars) and SHA-256 (64 hex chars) checksums.
    The hash algorithm is auto-detected based on checksum length.

    :param file: The path to the file to check.
    :type file: str
    :param checksum: The checksum to verify against (SHA-1 or SHA-256)
    :type checksum: str

    :raises FormulaError: If no usable checksum was given
    :raises IntegrityViolation: If the checksum verification failed

    :return: True if it succeeded
    :rtype: bool
    """
    if not checksum:
        raise FormulaError(f"Refusing to verify {file} without a checksum")
    checksum = checksum.lower()
    found = file_checksum(file, checksum)
    if found != checksum:
        raise IntegrityViolation(source or os.fspath(file), checksum, found)
    return True


def url_basename(url: str) -> str:
    """
    The file name portion of a url.
    """
    path = urllib.parse.urlparse(url).path
    name = os.path.basename(path.rstrip("/"))
    return name or "download"


def mirror_urls(url: str, mirrors: Iterable[str]) -> list[str]:
    """
    Build alternate urls for ``url`` from a list of mirror base urls.
    """
    name = url_basename(url)
    return ["{}/{}".format(base.rstrip("/"), name) for base in mirrors]


class ArtifactFetcher:
    """
    Fetch artifacts from an ordered list of urls into a content addressed cache.

    :param cache_dir: Where verified artifacts are stored, keyed by checksum
    :type cache_dir: str
    :param mirrors: Alternate mirror base urls tried after an artifact's own urls
    :type mirrors: list
    :param timeout: Socket timeout for each download
    :type timeout: float
    """

    def __init__(
        self,
        cache_dir: Optional[PathLike] = None,
        mirrors: Optional[Sequence[str]] = None,
        timeout: float = 60,
    ) -> None:
        self.cache_dir = pathlib.Path(cache_dir) if cache_dir else cache_root()
        self.mirrors = list(mirrors) if mirrors is not None else extra_mirrors()
        self.timeout = timeout
        self._locks: dict[str, threading.Lock] = {}
        self._locks_lock = threading.Lock()

    def _lock_for(self, checksum: str) -> threading.Lock:
        with self._locks_lock:
            lock = self._locks.get(checksum)
            if lock is None:
                lock = self._locks[checksum] = threading.Lock()
            return lock

    def cache_path(self, checksum: str, url: str) -> pathlib.Path:
        """
        Location of a verified artifact in the cache.
        """
        return self.cache_dir / f"{checksum.lower()}--{url_basename(url)}"

    def cached(self, checksum: str) -> Optional[pathlib.Path]:
        """
        Return a cached artifact with this checksum that still verifies.

        The file name the artifact was first fetched under does not matter.
        """
        if not self.cache_dir.is_dir():
            return None
        for path in sorted(self.cache_dir.glob(f"{checksum.lower()}--*")):
            try:
                verify_checksum(path, checksum)
            except IntegrityViolation as exc:
                log.warning("Discarding corrupt cache entry %s: %s", path, exc)
                path.unlink()
                continue
            return path
        return None

    def _download(self, url: str, checksum: str) -> pathlib.Path:
        """
        Download one url into the cache, verifying before it becomes visible.
        """
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        target = self.cache_path(checksum, url)
        fd, tmp = tempfile.mkstemp(dir=self.cache_dir, prefix=".partial-")
        try:
            with os.fdopen(fd, "wb") as fp:
                fetch_url(url, fp, timeout=self.timeout)
            verify_checksum(tmp, checksum, source=url)
            os.replace(tmp, target)
        except BaseException:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise
        return target

    def fetch(
        self,
        sources: Sequence[str],
        checksum: Optional[str],
        name: Optional[str] = None,
    ) -> pathlib.Path:
        """
        Fetch an artifact, trying each source in order.

        A download whose checksum does not match is never retried from the
        same url; the next mirror is tried instead.

        :param sources: The primary url followed by its mirrors
        :type sources: list
        :param checksum: The expected SHA-256 (or SHA-1) of the artifact
        :type checksum: str
        :param name: A name for the artifact used in messages
        :type name: str

        :raises FormulaError: If no checksum was given
        :raises FetchExhausted: If every source failed

        :return: The path to the verified artifact
        :rtype: ``pathlib.Path``
        """
        if not checksum:
            raise FormulaError(f"Refusing to fetch {name or sources} without a checksum")
        if not sources:
            raise FetchExhausted(name or checksum, [])
        name = name or url_basename(sources[0])
        urls: list[str] = []
        for url in list(sources) + mirror_urls(sources[0], self.mirrors):
            if url not in urls:
                urls.append(url)

        with self._lock_for(checksum.lower()):
            path = self.cached(checksum)
            if path is not None:
                log.debug("%s already downloaded, skipping.", name)
                return path

            attempts: list[tuple[str, str]] = []
            for url in urls:
                log.info("Fetching %s from %s", name, url)
                try:
                    return self._download(url, checksum)
                except IntegrityViolation as exc:
                    log.error("Integrity violation for %s: %s", name, exc)
                    attempts.append((url, str(exc)))
                except FetchError as exc:
                    log.warning("Download of %s failed from %s: %s", name, url, exc)
                    attempts.append((url, str(exc)))
        raise FetchExhausted(name, attempts)

    def fetch_resource(self, resource: "Resource") -> pathlib.Path:
        """
        Fetch a formula ``Resource``.
        """
        return self.fetch(resource.urls, resource.checksum, resource.name)
