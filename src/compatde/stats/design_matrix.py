"""
Design matrices and contrasts for the per-gene linear models.

Two parameterizations are supported:

Cell-means (group) design, the default of the analysis:
    X = [group_1 | group_2 | ... | group_k]      (no intercept)
    Each coefficient is the mean log-expression of one experimental group
    (e.g. "compatible.pollinated.stage2"); contrasts are differences of
    group means written as expressions over the group names.

Additive factor design:
    X = [intercept | factor_1 dummies | factor_2 dummies | ...]
    Treatment coding with a reference level per factor.

Contrast expressions are parsed with Python's ast module and must be linear
in the level names:

    "C.P.s2 - C.U.s2"
    "(C.P.s1 + C.P.s2)/2 - (I.P.s1 + I.P.s2)/2"
"""

from __future__ import annotations

import ast
import re
import warnings
from dataclasses import dataclass
from typing import Mapping, Sequence

import numpy as np
import pandas as pd
from numpy.typing import NDArray


@dataclass(frozen=True)
class GroupDesign:
    """Design matrix with named columns.

    Attributes:
        X: Design matrix (n_samples, n_params), full column rank.
        col_names: Name of each column (group levels or factor dummies).
        groups: Group label per sample (cell-means design) or None.
    """

    X: NDArray[np.float64]
    col_names: list[str]
    groups: NDArray | None = None

    @property
    def n_params(self) -> int:
        return self.X.shape[1]

    @property
    def n_samples(self) -> int:
        return self.X.shape[0]

    @property
    def df_residual(self) -> int:
        return self.n_samples - self.n_params

    def to_frame(self, sample_ids: Sequence[str] | None = None) -> pd.DataFrame:
        return pd.DataFrame(self.X, columns=self.col_names, index=sample_ids)


def make_group_factor(
    metadata: pd.DataFrame,
    factors: Sequence[str],
    sep: str = ".",
) -> pd.Series:
    """
    Combine factor columns into one group label per sample.

    Args:
        metadata: Sample metadata (one row per sample)
        factors: Columns to combine, in label order
        sep: Separator between factor levels

    Returns:
        Series of labels like "compatible.pollinated.stage2", indexed like metadata

    Raises:
        ValueError: If a column is missing or a sample has no value
    """
    if len(factors) == 0:
        raise ValueError("At least one factor is required to define groups")

    missing_cols = [c for c in factors if c not in metadata.columns]
    if missing_cols:
        raise ValueError(
            f"Factor columns not found in metadata: {missing_cols}. "
            f"Available: {list(metadata.columns)}"
        )

    values = metadata[list(factors)]
    if values.isna().any().any():
        bad = values.index[values.isna().any(axis=1)].tolist()
        raise ValueError(f"Samples with missing factor values: {bad[:5]}")

    return values.astype(str).agg(sep.join, axis=1).rename("group")


def _check_rank(X: NDArray[np.float64], col_names: list[str]) -> None:
    n_samples, n_params = X.shape
    rank = np.linalg.matrix_rank(X)
    if rank < n_params:
        raise ValueError(
            f"Design matrix is rank-deficient: rank={rank}, n_params={n_params}. "
            f"Columns: {col_names}."
        )
    if n_samples - n_params < 1:
        raise ValueError(
            f"Insufficient residual df: {n_samples} samples - {n_params} params = "
            f"{n_samples - n_params}. Every group needs replicates."
        )


def build_group_design(
    groups: Sequence[str] | pd.Series,
    levels: Sequence[str] | None = None,
) -> GroupDesign:
    """
    Build a cell-means design matrix (one indicator column per group).

    Args:
        groups: Group label per sample
        levels: Column order. Defaults to order of first appearance.

    Returns:
        GroupDesign with one column per level

    Raises:
        ValueError: If a sample's group is not among the levels, a level has
            no samples, or the residual df is below one
    """
    groups = np.asarray(groups, dtype=object)

    if levels is None:
        levels = list(pd.unique(groups))
    else:
        levels = list(levels)
        unknown = sorted(set(groups) - set(levels))
        if unknown:
            raise ValueError(f"Samples belong to groups not in levels: {unknown}")

    empty = [lvl for lvl in levels if not np.any(groups == lvl)]
    if empty:
        raise ValueError(f"Groups with no samples: {empty}")

    X = np.column_stack([(groups == lvl).astype(np.float64) for lvl in levels])
    col_names = [str(lvl) for lvl in levels]
    _check_rank(X, col_names)

    return GroupDesign(X=X, col_names=col_names, groups=groups)


def build_factor_design(
    metadata: pd.DataFrame,
    factors: Sequence[str],
    reference_levels: Mapping[str, str] | None = None,
) -> GroupDesign:
    """
    Build an additive treatment-coded design: intercept + factor dummies.

    Args:
        metadata: Sample metadata
        factors: Factor columns entering the model
        reference_levels: factor -> reference level (default: first level
            in order of appearance)

    Returns:
        GroupDesign with columns "(Intercept)" and "<factor><level>"

    Raises:
        ValueError: On missing columns/values or a rank-deficient design
    """
    import statsmodels.api as sm

    reference_levels = dict(reference_levels or {})

    missing_cols = [c for c in factors if c not in metadata.columns]
    if missing_cols:
        raise ValueError(f"Factor columns not found in metadata: {missing_cols}")

    parts: list[pd.DataFrame] = []
    for factor in factors:
        series = metadata[factor]
        if series.isna().any():
            raise ValueError(f"Factor '{factor}' has missing values")
        levels = list(pd.unique(series.astype(str)))
        ref = reference_levels.get(factor, levels[0])
        if ref not in levels:
            raise ValueError(f"Reference level '{ref}' not found in factor '{factor}': {levels}")
        ordered = [ref] + [lvl for lvl in levels if lvl != ref]
        cat = pd.Categorical(series.astype(str), categories=ordered)
        dummies = pd.get_dummies(cat, prefix=factor, prefix_sep="", drop_first=True, dtype=float)
        dummies.index = metadata.index
        parts.append(dummies)

    X_df = pd.concat(parts, axis=1) if parts else pd.DataFrame(index=metadata.index)
    X_df = sm.add_constant(X_df, has_constant="add")
    col_names = ["(Intercept)"] + [str(c) for c in X_df.columns[1:]]
    X = X_df.to_numpy(dtype=np.float64)

    _check_rank(X, col_names)

    cond_number = np.linalg.cond(X)
    if cond_number > 30:
        warnings.warn(
            f"Design matrix condition number is high ({cond_number:.1f} > 30). "
            f"Near-collinearity may cause unstable estimates."
        )

    return GroupDesign(X=X, col_names=col_names, groups=None)


# =============================================================================
# Contrasts
# =============================================================================

def _linear_terms(node: ast.AST, names: Mapping[str, str]) -> tuple[dict[str, float], float]:
    """Reduce an expression tree to (coefficients per level, constant)."""
    if isinstance(node, ast.Expression):
        return _linear_terms(node.body, names)

    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)) \
            and not isinstance(node.value, bool):
        return {}, float(node.value)

    if isinstance(node, ast.Name):
        if node.id not in names:
            raise ValueError(f"Unknown level '{node.id}' in contrast")
        return {names[node.id]: 1.0}, 0.0

    if isinstance(node, ast.Attribute):
        # Dotted name left over after substitution
        raise ValueError(f"Unknown level '{ast.unparse(node)}' in contrast")

    if isinstance(node, ast.UnaryOp) and isinstance(node.op, (ast.USub, ast.UAdd)):
        coefs, const = _linear_terms(node.operand, names)
        if isinstance(node.op, ast.USub):
            return {k: -v for k, v in coefs.items()}, -const
        return coefs, const

    if isinstance(node, ast.BinOp):
        left, lconst = _linear_terms(node.left, names)
        right, rconst = _linear_terms(node.right, names)

        if isinstance(node.op, (ast.Add, ast.Sub)):
            sign = 1.0 if isinstance(node.op, ast.Add) else -1.0
            merged = dict(left)
            for k, v in right.items():
                merged[k] = merged.get(k, 0.0) + sign * v
            return merged, lconst + sign * rconst

        if isinstance(node.op, ast.Mult):
            if left and right:
                raise ValueError("Contrast is not linear: product of two levels")
            if left:
                return {k: v * rconst for k, v in left.items()}, lconst * rconst
            return {k: v * lconst for k, v in right.items()}, lconst * rconst

        if isinstance(node.op, ast.Div):
            if right:
                raise ValueError("Contrast is not linear: division by a level")
            if rconst == 0:
                raise ValueError("Division by zero in contrast")
            return {k: v / rconst for k, v in left.items()}, lconst / rconst

    raise ValueError(f"Unsupported syntax in contrast: {ast.dump(node)}")


def parse_contrast(expression: str, levels: Sequence[str]) -> NDArray[np.float64]:
    """
    Parse one contrast expression into a weight vector over levels.

    Level names may contain characters that are not valid in Python
    identifiers (dots, hyphens); they are substituted before parsing.

    Raises:
        ValueError: If the expression is empty, uses unknown names, is not
            linear, has a non-zero constant term or all-zero weights
    """
    if not expression or not expression.strip():
        raise ValueError("Empty contrast expression")

    placeholders: dict[str, str] = {}
    text = expression
    # Longest names first so "C.P.s1" is not eaten by "C.P"
    for i, level in sorted(enumerate(levels), key=lambda t: -len(t[1])):
        token = f"_lvl{i}_"
        pattern = r"(?<![\w.])" + re.escape(level) + r"(?![\w.])"
        text, n = re.subn(pattern, token, text)
        if n:
            placeholders[token] = level

    try:
        tree = ast.parse(text.strip(), mode="eval")
    except SyntaxError as e:
        raise ValueError(f"Cannot parse contrast '{expression}': {e.msg}") from e

    try:
        coefs, const = _linear_terms(tree, placeholders)
    except ValueError as e:
        raise ValueError(f"Invalid contrast '{expression}': {e}") from e

    if const != 0:
        raise ValueError(f"Contrast '{expression}' has a constant term")

    weights = np.array([coefs.get(level, 0.0) for level in levels], dtype=np.float64)
    if not np.any(weights != 0):
        raise ValueError(f"Contrast '{expression}' has all-zero weights")
    return weights


def make_contrasts(
    contrasts: Mapping[str, str] | Sequence[str],
    levels: Sequence[str],
) -> pd.DataFrame:
    """
    Build a contrast matrix from expressions over the design column names.

    Args:
        contrasts: {name: expression} or a list of expressions (each
            expression is also its name)
        levels: Design column names

    Returns:
        DataFrame (levels × contrasts) of weights

    Examples:
        >>> cm = make_contrasts(
        ...     {"pollination": "C.P - C.U", "incompat": "I.P - C.P"},
        ...     levels=["C.U", "C.P", "I.P"],
        ... )
        >>> cm["pollination"].tolist()
        [-1.0, 1.0, 0.0]
    """
    if isinstance(contrasts, Mapping):
        items = list(contrasts.items())
    else:
        items = [(expr, expr) for expr in contrasts]

    if not items:
        raise ValueError("At least one contrast is required")

    levels = [str(lvl) for lvl in levels]
    columns = {name: parse_contrast(expr, levels) for name, expr in items}
    return pd.DataFrame(columns, index=pd.Index(levels, name="Levels"))
