"""Structural clustering of candidate responses.

Two candidates that define the same functions with the same arities,
import the same modules and use mostly the same identifiers are treated as
"the same answer" for voting purposes, even when formatting, naming of
locals or comments differ. Clustering is a greedy single pass seeded from
the most central candidate first.
"""

from __future__ import annotations

import ast
import logging
import re
from collections.abc import Sequence
from typing import AbstractSet

from makercode.maker.types import (
    ClassShape,
    Cluster,
    ClusterMember,
    ExportShape,
    Feature,
    FunctionSignature,
    ImportShape,
    VariableShape,
)
from makercode.parsing import ParseError, PythonParser, SourceParser

logger = logging.getLogger(__name__)

DEFAULT_SIMILARITY_THRESHOLD = 0.7

# Weights of the five sub-scores when both candidates parse.
WEIGHTS = {
    "structure": 0.30,
    "functions": 0.25,
    "tokens": 0.20,
    "classes": 0.15,
    "imports": 0.10,
}

# Penalty applied when exactly one side has a syntax error.
ASYMMETRY_PENALTY = 0.1

_RAW_TOKEN_SPLIT = re.compile(r"[^A-Za-z0-9_]+")


# ── Feature extraction ───────────────────────────────────────────────────────


def _arity(args: ast.arguments) -> int:
    count = len(args.posonlyargs) + len(args.args) + len(args.kwonlyargs)
    if args.vararg is not None:
        count += 1
    if args.kwarg is not None:
        count += 1
    return count


def _target_names(target: ast.expr) -> list[str]:
    if isinstance(target, ast.Name):
        return [target.id]
    if isinstance(target, (ast.Tuple, ast.List)):
        names: list[str] = []
        for elt in target.elts:
            names.extend(_target_names(elt))
        return names
    if isinstance(target, ast.Starred):
        return _target_names(target.value)
    return []


class _FeatureVisitor(ast.NodeVisitor):
    """Collect structural features from one syntax tree.

    A fresh visitor is created for every call to :func:`extract_features`;
    nothing accumulated here outlives that call.
    """

    def __init__(self) -> None:
        self.functions: list[FunctionSignature] = []
        self.classes: list[ClassShape] = []
        self.imports: list[ImportShape] = []
        self.exports: list[ExportShape] = []
        self.variables: list[VariableShape] = []
        self.tokens: set[str] = set()

    def feature(self) -> Feature:
        return Feature(
            functions=tuple(self.functions),
            classes=tuple(self.classes),
            imports=tuple(self.imports),
            exports=tuple(self.exports),
            variables=tuple(self.variables),
            tokens=frozenset(self.tokens),
            syntax_valid=True,
        )

    def _visit_function(self, node: ast.FunctionDef | ast.AsyncFunctionDef) -> None:
        self.functions.append(
            FunctionSignature(
                name=node.name,
                arity=_arity(node.args),
                is_async=isinstance(node, ast.AsyncFunctionDef),
            )
        )
        self.tokens.add(node.name)
        self.generic_visit(node)

    def visit_FunctionDef(self, node: ast.FunctionDef) -> None:  # noqa: N802
        self._visit_function(node)

    def visit_AsyncFunctionDef(self, node: ast.AsyncFunctionDef) -> None:  # noqa: N802
        self._visit_function(node)

    def visit_Lambda(self, node: ast.Lambda) -> None:  # noqa: N802
        self.functions.append(FunctionSignature(name=None, arity=_arity(node.args), is_lambda=True))
        self.generic_visit(node)

    def visit_ClassDef(self, node: ast.ClassDef) -> None:  # noqa: N802
        methods = sum(
            1 for item in node.body if isinstance(item, (ast.FunctionDef, ast.AsyncFunctionDef))
        )
        self.classes.append(ClassShape(name=node.name, methods=methods))
        self.tokens.add(node.name)
        self.generic_visit(node)

    def visit_Import(self, node: ast.Import) -> None:  # noqa: N802
        for alias in node.names:
            self.imports.append(ImportShape(source=alias.name, specifiers=1))
            self.tokens.add(f'"{alias.name}"')
            self.tokens.add(alias.asname or alias.name.split(".")[0])

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:  # noqa: N802
        source = "." * node.level + (node.module or "")
        self.imports.append(ImportShape(source=source, specifiers=len(node.names)))
        self.tokens.add(f'"{source}"')
        for alias in node.names:
            self.tokens.add(alias.asname or alias.name)

    def visit_Assign(self, node: ast.Assign) -> None:  # noqa: N802
        for target in node.targets:
            for name in _target_names(target):
                self._record_variable(name, "assign", node.value)
        self.generic_visit(node)

    def visit_AnnAssign(self, node: ast.AnnAssign) -> None:  # noqa: N802
        for name in _target_names(node.target):
            self._record_variable(name, "annotated", node.value)
        self.generic_visit(node)

    def visit_NamedExpr(self, node: ast.NamedExpr) -> None:  # noqa: N802
        self._record_variable(node.target.id, "named", node.value)
        self.generic_visit(node)

    def _record_variable(self, name: str, kind: str, value: ast.expr | None) -> None:
        self.variables.append(VariableShape(name=name, kind=kind))
        if name == "__all__":
            declaration = type(value).__name__ if value is not None else None
            self.exports.append(ExportShape(kind="__all__", declaration=declaration))

    def visit_Name(self, node: ast.Name) -> None:  # noqa: N802
        self.tokens.add(node.id)

    def visit_arg(self, node: ast.arg) -> None:
        self.tokens.add(node.arg)
        self.generic_visit(node)

    def visit_Attribute(self, node: ast.Attribute) -> None:  # noqa: N802
        self.tokens.add(node.attr)
        self.generic_visit(node)

    def visit_keyword(self, node: ast.keyword) -> None:
        if node.arg:
            self.tokens.add(node.arg)
        self.generic_visit(node)

    def visit_Constant(self, node: ast.Constant) -> None:  # noqa: N802
        if isinstance(node.value, str):
            self.tokens.add(f'"{node.value}"')


def raw_tokens(code: str) -> frozenset[str]:
    """Fallback tokenisation for text that does not parse."""
    return frozenset(t for t in _RAW_TOKEN_SPLIT.split(code) if t)


# ── Similarity primitives ────────────────────────────────────────────────────


def jaccard(a: AbstractSet[str], b: AbstractSet[str]) -> float:
    """Intersection over union; two empty sets are identical."""
    if not a and not b:
        return 1.0
    return len(a & b) / len(a | b)


def _ratio(a: int, b: int) -> float:
    if a == 0 and b == 0:
        return 1.0
    return min(a, b) / max(a, b)


def structural_similarity(f1: Feature, f2: Feature) -> float:
    counts = list(zip(f1.counts, f2.counts))
    return sum(_ratio(a, b) for a, b in counts) / len(counts)


def function_similarity(
    funcs1: Sequence[FunctionSignature],
    funcs2: Sequence[FunctionSignature],
) -> float:
    """Greedy one-to-one matching on ``(arity, async)``."""
    if not funcs1 and not funcs2:
        return 1.0
    if not funcs1 or not funcs2:
        return 0.0

    used: set[int] = set()
    matches = 0
    for f1 in funcs1:
        for i, f2 in enumerate(funcs2):
            if i in used:
                continue
            if f1.arity == f2.arity and f1.is_async == f2.is_async:
                matches += 1
                used.add(i)
                break
    return matches / max(len(funcs1), len(funcs2))


def class_similarity(classes1: Sequence[ClassShape], classes2: Sequence[ClassShape]) -> float:
    """Best method-count ratio over all pairs, normalised by the larger class count."""
    if not classes1 and not classes2:
        return 1.0
    if not classes1 or not classes2:
        return 0.0

    best = max(_ratio(c1.methods, c2.methods) for c1 in classes1 for c2 in classes2)
    return best / max(len(classes1), len(classes2))


def import_similarity(imports1: Sequence[ImportShape], imports2: Sequence[ImportShape]) -> float:
    if not imports1 and not imports2:
        return 1.0
    if not imports1 or not imports2:
        return 0.0
    return jaccard({i.source for i in imports1}, {i.source for i in imports2})


def compare_features(f1: Feature, f2: Feature) -> float:
    if not f1.syntax_valid and not f2.syntax_valid:
        return jaccard(f1.tokens, f2.tokens)
    if f1.syntax_valid != f2.syntax_valid:
        return ASYMMETRY_PENALTY * jaccard(f1.tokens, f2.tokens)

    return (
        WEIGHTS["structure"] * structural_similarity(f1, f2)
        + WEIGHTS["functions"] * function_similarity(f1.functions, f2.functions)
        + WEIGHTS["tokens"] * jaccard(f1.tokens, f2.tokens)
        + WEIGHTS["classes"] * class_similarity(f1.classes, f2.classes)
        + WEIGHTS["imports"] * import_similarity(f1.imports, f2.imports)
    )


# ── Clusterer ────────────────────────────────────────────────────────────────


class StructuralClusterer:
    """Group candidate responses by structural similarity.

    Usage:
        clusterer = StructuralClusterer()
        clusters = clusterer.cluster(responses, threshold=0.7)
        best = clusterer.get_best_cluster(clusters)
    """

    def __init__(self, parser: SourceParser | None = None) -> None:
        self.parser = parser or PythonParser()

    def extract_features(self, code: str) -> Feature:
        try:
            tree = self.parser.parse(code, "module")
        except ParseError:
            return Feature(tokens=raw_tokens(code), syntax_valid=False)
        visitor = _FeatureVisitor()
        visitor.visit(tree)
        return visitor.feature()

    def calculate_similarity(self, code1: str, code2: str) -> float:
        if code1 == code2:
            return 1.0
        return compare_features(self.extract_features(code1), self.extract_features(code2))

    def similarity_matrix(self, responses: Sequence[str]) -> list[list[float]]:
        """Full symmetric pairwise similarity matrix with a unit diagonal."""
        features = [self.extract_features(r) for r in responses]
        n = len(responses)
        matrix = [[0.0] * n for _ in range(n)]
        for i in range(n):
            matrix[i][i] = 1.0
            for j in range(i + 1, n):
                if responses[i] == responses[j]:
                    sim = 1.0
                else:
                    sim = compare_features(features[i], features[j])
                matrix[i][j] = sim
                matrix[j][i] = sim
        return matrix

    def cluster(
        self,
        responses: Sequence[str],
        threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
    ) -> list[Cluster]:
        """Partition *responses* into clusters, largest first.

        Every response lands in exactly one cluster. Seeds are taken in order
        of descending average similarity to all responses (ties keep input
        order); each seed absorbs every still-unassigned response whose
        similarity to it reaches *threshold*.
        """
        if not responses:
            return []
        if len(responses) == 1:
            return [
                Cluster(
                    representative=responses[0],
                    members=[ClusterMember(content=responses[0], source_index=0, similarity=1.0)],
                    avg_similarity=1.0,
                )
            ]

        matrix = self.similarity_matrix(responses)
        n = len(responses)
        centrality = [sum(row) / n for row in matrix]
        seed_order = sorted(range(n), key=lambda i: centrality[i], reverse=True)

        assigned: set[int] = set()
        clusters: list[Cluster] = []
        for seed in seed_order:
            if seed in assigned:
                continue
            assigned.add(seed)
            members = [ClusterMember(content=responses[seed], source_index=seed, similarity=1.0)]

            for i in range(n):
                if i in assigned:
                    continue
                if matrix[seed][i] >= threshold:
                    members.append(
                        ClusterMember(
                            content=responses[i], source_index=i, similarity=matrix[seed][i]
                        )
                    )
                    assigned.add(i)

            clusters.append(
                Cluster(
                    representative=responses[seed],
                    members=members,
                    avg_similarity=sum(m.similarity for m in members) / len(members),
                )
            )

        clusters.sort(key=lambda c: c.size, reverse=True)
        logger.debug("Formed %d clusters from %d responses", len(clusters), n)
        return clusters

    @staticmethod
    def get_best_cluster(clusters: Sequence[Cluster]) -> Cluster | None:
        """Cluster with the highest ``size × avg_similarity`` (first on ties)."""
        if not clusters:
            return None
        return max(clusters, key=lambda c: c.size * c.avg_similarity)
