#!/usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
"""
Syntax-aware span detection backed by tree-sitter grammars.

The parser answers one question: given file content and a language tag, which
byte ranges are definitions worth embedding on their own? Grammar packages are
imported lazily, so a language whose wheel is not installed is simply
reported as unsupported and the caller falls back to fixed-size windows.
"""
import importlib
import logging
import threading
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Dict, FrozenSet, List, Optional, Tuple, Union

from tree_sitter import Language, Parser

from ..errors import ParseError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Span:
    start_byte: int
    end_byte: int
    kind: str


@dataclass
class Spans:
    spans: List[Span]


@dataclass
class Unsupported:
    reason: str


ParseResult = Union[Spans, Unsupported]


@dataclass(frozen=True)
class LanguageSpec:
    """How to load a grammar and which node types count as definitions."""

    tag: str
    module: str
    extensions: Tuple[str, ...]
    definition_types: FrozenSet[str]
    factory: str = "language"


_JS_DEFINITIONS = frozenset({
    "function_declaration",
    "generator_function_declaration",
    "class_declaration",
    "method_definition",
    "export_statement",
    "lexical_declaration",
    "interface_declaration",
    "type_alias_declaration",
    "enum_declaration",
})

LANGUAGES: Tuple[LanguageSpec, ...] = (
    LanguageSpec(
        "python", "tree_sitter_python", ("py", "pyi"),
        frozenset({"function_definition", "class_definition", "decorated_definition"}),
    ),
    LanguageSpec(
        "rust", "tree_sitter_rust", ("rs",),
        frozenset({
            "function_item", "impl_item", "struct_item", "enum_item", "trait_item",
            "mod_item", "const_item", "static_item", "type_item", "macro_definition",
        }),
    ),
    LanguageSpec("javascript", "tree_sitter_javascript", ("js", "jsx", "mjs", "cjs"), _JS_DEFINITIONS),
    LanguageSpec(
        "typescript", "tree_sitter_typescript", ("ts", "mts", "cts"), _JS_DEFINITIONS,
        factory="language_typescript",
    ),
    LanguageSpec("tsx", "tree_sitter_typescript", ("tsx",), _JS_DEFINITIONS, factory="language_tsx"),
    LanguageSpec(
        "go", "tree_sitter_go", ("go",),
        frozenset({
            "function_declaration", "method_declaration", "type_declaration",
            "const_declaration", "var_declaration",
        }),
    ),
    LanguageSpec(
        "java", "tree_sitter_java", ("java",),
        frozenset({
            "class_declaration", "interface_declaration", "enum_declaration",
            "method_declaration", "constructor_declaration",
        }),
    ),
    LanguageSpec(
        "c", "tree_sitter_c", ("c", "h"),
        frozenset({"function_definition", "struct_specifier", "enum_specifier"}),
    ),
    LanguageSpec(
        "cpp", "tree_sitter_cpp", ("cpp", "cc", "cxx", "hpp", "hxx", "hh"),
        frozenset({
            "function_definition", "struct_specifier", "enum_specifier",
            "class_specifier", "namespace_definition",
        }),
    ),
)

_BY_TAG: Dict[str, LanguageSpec] = {spec.tag: spec for spec in LANGUAGES}
_BY_EXTENSION: Dict[str, str] = {
    ext: spec.tag for spec in LANGUAGES for ext in spec.extensions
}


def language_for_path(path: str) -> Optional[str]:
    """Language tag for a file path, or None when no grammar covers it."""
    suffix = PurePosixPath(path).suffix.lower().lstrip(".")
    return _BY_EXTENSION.get(suffix)


def kind_label(node_type: str) -> str:
    """Map a grammar node type onto a short, language-neutral kind label."""
    if "method" in node_type or "constructor" in node_type:
        return "method"
    if "function" in node_type:
        return "function"
    if "class" in node_type:
        return "class"
    if "impl" in node_type:
        return "impl"
    if any(word in node_type for word in ("struct", "enum", "trait", "interface", "type")):
        return "type"
    if "mod_item" in node_type or "namespace" in node_type:
        return "module"
    if "macro" in node_type:
        return "macro"
    if any(word in node_type for word in ("const", "static", "var", "lexical")):
        return "declaration"
    return "block"


class TreeSitterParser:
    """Parser capability: ``(content, language) -> Spans | Unsupported``."""

    def __init__(self):
        self._languages: Dict[str, Optional[Language]] = {}
        self._lock = threading.Lock()

    def _load_language(self, tag: str) -> Optional[Language]:
        with self._lock:
            if tag in self._languages:
                return self._languages[tag]
            spec = _BY_TAG[tag]
            language = None
            try:
                module = importlib.import_module(spec.module)
                language = Language(getattr(module, spec.factory)())
            except ImportError:
                logger.info(f"Grammar package {spec.module} not installed; {tag} files use windows")
            self._languages[tag] = language
            return language

    def parse(self, content: bytes, language: Optional[str]) -> ParseResult:
        """Find definition spans in ``content``.

        Returns:
            Spans (possibly empty when the file has no definitions) or
            Unsupported when no grammar is available for the language.

        Raises:
            ParseError: when the grammar fails or the tree contains syntax errors.
        """
        if language is None or language not in _BY_TAG:
            return Unsupported(f"no grammar for language {language!r}")
        ts_language = self._load_language(language)
        if ts_language is None:
            return Unsupported(f"grammar for {language} is not installed")

        try:
            tree = Parser(ts_language).parse(content)
        except (ValueError, RuntimeError) as e:
            raise ParseError(f"tree-sitter failed on {language} source: {e}") from e

        root = tree.root_node
        if root.has_error:
            raise ParseError(f"syntax errors in {language} source")

        definitions = _BY_TAG[language].definition_types
        spans: List[Span] = []
        self._collect(root, definitions, spans)
        return Spans(spans)

    def _collect(self, node, definitions: FrozenSet[str], out: List[Span]) -> None:
        """Collect the outermost definition nodes below ``node``."""
        for child in node.named_children:
            if child.type in definitions:
                out.append(Span(child.start_byte, child.end_byte, self._kind_of(child)))
            else:
                self._collect(child, definitions, out)

    @staticmethod
    def _kind_of(node) -> str:
        if node.type == "decorated_definition":
            inner = node.child_by_field_name("definition")
            if inner is not None:
                return kind_label(inner.type)
        if node.type == "export_statement":
            inner = node.child_by_field_name("declaration")
            if inner is not None:
                return kind_label(inner.type)
        return kind_label(node.type)
