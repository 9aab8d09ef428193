# Copyright 2022-2025 Broadcom.
# SPDX-License-Identifier: Apache-2.0
"""
The formulas shipped with brewkit.

Importing this package adds them to ``brewkit.formula.formulas``.
"""
from __future__ import annotations

from . import awscli, openssl

__all__ = ["awscli", "openssl"]
