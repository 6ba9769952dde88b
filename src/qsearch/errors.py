#!/usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
"""Exception types shared across the indexing and query pipeline."""


class QsError(Exception):
    """Base class for all qsearch errors."""


class NotInRepositoryError(QsError):
    """No .qs directory was found in the given path or any parent."""


class ConfigError(QsError):
    """The configuration file is malformed or holds invalid values."""


class ScanError(QsError):
    """A file could not be admitted to the index.

    Carries the exclusion reason so the scanner can report it.
    """

    def __init__(self, path: str, reason: str, detail: str = ""):
        self.path = path
        self.reason = reason
        self.detail = detail
        super().__init__(f"{path}: {reason}" + (f" ({detail})" if detail else ""))


class ParseError(QsError):
    """The parser capability failed on a file."""


class EmbeddingError(QsError):
    """The embedding capability failed or timed out for a batch."""


class StoreError(QsError):
    """A vector store mutation failed."""


class ConfigMismatchError(QsError):
    """Persisted index was built with an incompatible model or dimension."""


class ManifestError(QsError):
    """The manifest database could not be read or written."""
