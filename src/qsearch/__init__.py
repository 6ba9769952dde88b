#!/usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
"""qsearch: local, incremental semantic search over a source tree."""

__version__ = "0.1.0"
