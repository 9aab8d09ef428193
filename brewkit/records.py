# Copyright 2022-2025 Broadcom.
# SPDX-License-Identifier: Apache-2.0
"""
Installation records and their persistence.
"""
from __future__ import annotations

import json
import logging
import os
import pathlib
import tempfile
import time
from typing import Any, Dict, Optional

from .common import PathLike, RecordError

log = logging.getLogger(__name__)

INSTALLED_FROM_BOTTLE = "installed-from-bottle"
INSTALLED_FROM_SOURCE = "installed-from-source"
SKIPPED = "skipped-already-installed"
FAILED = "failed"
OUTCOMES = (INSTALLED_FROM_BOTTLE, INSTALLED_FROM_SOURCE, SKIPPED, FAILED)
INSTALLED = (INSTALLED_FROM_BOTTLE, INSTALLED_FROM_SOURCE)

TEST_PASSED = "passed"
TEST_FAILED = "failed"
TEST_SKIPPED = "skipped"

_FIELDS = (
    "name",
    "version",
    "version_scheme",
    "started",
    "finished",
    "outcome",
    "path",
    "bottle_tag",
    "bottle_error",
    "failure",
    "post_install_error",
    "test_status",
    "test_error",
    "caveats",
)


class InstallationRecord:
    """
    The result of processing one formula.

    A record is finalized exactly once; after that it can not change.
    """

    def __init__(self, name: str, version: str, version_scheme: int = 0) -> None:
        self._final = False
        self.name = name
        self.version = version
        self.version_scheme = version_scheme
        self.started: Optional[float] = None
        self.finished: Optional[float] = None
        self.outcome: Optional[str] = None
        self.path: Optional[str] = None
        self.bottle_tag: Optional[str] = None
        self.bottle_error: Optional[str] = None
        self.failure: Optional[Dict[str, Any]] = None
        self.post_install_error: Optional[str] = None
        self.test_status: Optional[str] = None
        self.test_error: Optional[str] = None
        self.caveats: str = ""

    def __setattr__(self, key: str, value: Any) -> None:
        if getattr(self, "_final", False):
            raise RecordError(f"Record for {self.name} {self.version} is finalized")
        super().__setattr__(key, value)

    def __repr__(self) -> str:
        return f"<InstallationRecord {self.name} {self.version} {self.outcome}>"

    def start(self) -> None:
        """Mark the start of this node's processing."""
        self.started = time.time()

    @property
    def finalized(self) -> bool:
        return self._final

    @property
    def installed(self) -> bool:
        return self.outcome in INSTALLED

    @property
    def failed(self) -> bool:
        return self.outcome == FAILED

    @property
    def quality_ok(self) -> bool:
        """False when the post install hook or the test failed."""
        return self.post_install_error is None and self.test_status != TEST_FAILED

    def finalize(
        self,
        outcome: str,
        path: Optional[PathLike] = None,
        failure: Optional[Dict[str, Any]] = None,
    ) -> "InstallationRecord":
        """
        Set the terminal outcome.

        :raises RecordError: If the outcome is unknown or the record was already finalized
        """
        if outcome not in OUTCOMES:
            raise RecordError(f"Unknown outcome {outcome!r}")
        self.outcome = outcome
        if path is not None:
            self.path = os.fspath(path)
        if failure is not None:
            self.failure = failure
        self.finished = time.time()
        self._final = True
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {x: getattr(self, x) for x in _FIELDS}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InstallationRecord":
        record = cls(data["name"], data["version"], data.get("version_scheme", 0))
        for key in _FIELDS:
            if key in data and key not in ("name", "version", "version_scheme"):
                setattr(record, key, data[key])
        record._final = data.get("outcome") is not None
        return record


class RecordStore:
    """
    Persist records at ``<root>/<name>/<version>.json``.
    """

    def __init__(self, root: PathLike) -> None:
        self.root = pathlib.Path(root)

    def path_for(self, name: str, version: str) -> pathlib.Path:
        return self.root / name / f"{version}.json"

    def load(self, name: str, version: str) -> Optional[InstallationRecord]:
        path = self.path_for(name, version)
        if not path.exists():
            return None
        try:
            with path.open(encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            log.warning("Ignoring unreadable record %s: %s", path, exc)
            return None
        if not isinstance(data, dict):
            return None
        return InstallationRecord.from_dict(data)

    def is_installed(self, name: str, version: str) -> bool:
        """
        True when a persisted record says the version is installed and its keg still exists.
        """
        record = self.load(name, version)
        if record is None or not record.installed:
            return False
        return record.path is not None and pathlib.Path(record.path).is_dir()

    def save(self, record: InstallationRecord) -> pathlib.Path:
        """
        Write a finalized record, replacing any previous one atomically.
        """
        if not record.finalized:
            raise RecordError(f"Refusing to save unfinalized record {record!r}")
        path = self.path_for(record.name, record.version)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".record-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(record.to_dict(), handle, indent=2, sort_keys=True)
                handle.write("\n")
            os.replace(tmp, path)
        except BaseException:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise
        log.debug("Saved record %s", path)
        return path
