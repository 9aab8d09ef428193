# Copyright 2022-2025 Broadcom.
# SPDX-License-Identifier: Apache-2.0
#
from __future__ import annotations

import logging
import pathlib
from typing import Iterator

import pytest

from brewkit.common import DARWIN, LINUX, WorkDirs, work_dirs
from brewkit.fetch import ArtifactFetcher
from brewkit.formula import FormulaRegistry
from brewkit.profile import PlatformProfile
from brewkit.records import RecordStore

log = logging.getLogger(__name__)

BREWKIT_ENV = (
    "BREWKIT_DATA",
    "BREWKIT_CACHE",
    "BREWKIT_MIRRORS",
    "BREWKIT_SKIP_TESTS",
    "BREWKIT_JOBS",
)


@pytest.fixture(autouse=True)
def clean_environ(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in BREWKIT_ENV:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def dirs(tmp_path: pathlib.Path) -> WorkDirs:
    return work_dirs(tmp_path / "prefix", tmp_path / "cache")


@pytest.fixture
def fetcher(dirs: WorkDirs) -> ArtifactFetcher:
    return ArtifactFetcher(dirs.cache, mirrors=[])


@pytest.fixture
def records(dirs: WorkDirs) -> RecordStore:
    return RecordStore(dirs.records)


@pytest.fixture
def registry() -> FormulaRegistry:
    return FormulaRegistry()


@pytest.fixture
def linux_profile() -> PlatformProfile:
    return PlatformProfile(LINUX, "22.04", "5.15.0-91-generic", "x86_64")


@pytest.fixture
def macos_profile() -> PlatformProfile:
    return PlatformProfile(DARWIN, "10.13.6", "17.7.0", "x86_64")


@pytest.fixture
def artifacts(tmp_path: pathlib.Path) -> Iterator[pathlib.Path]:
    path = tmp_path / "artifacts"
    path.mkdir()
    yield path
