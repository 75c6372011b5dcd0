"""Design-based weighted means and cross-tabulations."""

from __future__ import annotations

from typing import Mapping

import numpy as np
import pandas as pd

from .design import BoundDesign
from .errors import ConfigurationError


def _domain_ratio(bound: BoundDesign, numerator: np.ndarray, domain: np.ndarray) -> tuple[float, float, float]:
    """Weighted ratio sum(w*y)/sum(w) over ``domain`` with its linearized standard error."""
    w = bound.weights * domain
    total_w = float(w.sum())
    if total_w <= 0:
        return np.nan, np.nan, total_w
    y = np.where(domain, numerator, 0.0)
    estimate = float((w * y).sum() / total_w)
    scores = w * (y - estimate) / total_w
    variance = float(bound.linearized_variance(scores)[0, 0])
    return estimate, float(np.sqrt(max(variance, 0.0))), total_w


def _as_list(by: str | list[str] | None) -> list[str]:
    if by is None:
        return []
    if isinstance(by, str):
        return [by]
    return list(by)


def _positions(bound: BoundDesign, index: pd.Index) -> np.ndarray:
    mask = np.zeros(len(bound), dtype=bool)
    mask[bound.df.index.get_indexer(index)] = True
    return mask


def weighted_grouped_mean(bound: BoundDesign, field: str, by: str | list[str] | None = None) -> pd.DataFrame:
    """Weighted mean of ``field`` for every observed combination of ``by`` levels."""
    by_cols = _as_list(by)
    bound.require(*by_cols)
    values = pd.to_numeric(bound.column(field), errors="coerce")
    valid = values.notna()
    if by_cols:
        valid &= bound.df[by_cols].notna().all(axis=1)
    y = values.fillna(0.0).to_numpy(dtype=float)

    rows: list[dict[str, object]] = []
    if not by_cols:
        domain = valid.to_numpy()
        mean, se, total_w = _domain_ratio(bound, y, domain)
        rows.append({"field": field, "n": int(domain.sum()), "weighted_n": total_w, "mean": mean, "std_error": se})
        return pd.DataFrame(rows)

    for key, group in bound.df.loc[valid].groupby(by_cols, sort=True):
        levels = key if isinstance(key, tuple) else (key,)
        domain = _positions(bound, group.index)
        mean, se, total_w = _domain_ratio(bound, y, domain)
        row: dict[str, object] = dict(zip(by_cols, levels))
        row.update({"field": field, "n": int(domain.sum()), "weighted_n": total_w, "mean": mean, "std_error": se})
        rows.append(row)
    return pd.DataFrame(rows, columns=[*by_cols, "field", "n", "weighted_n", "mean", "std_error"])


def grouped_means_table(bound: BoundDesign, fields: list[str], by: str | list[str] | None = None) -> pd.DataFrame:
    frames = [weighted_grouped_mean(bound, f, by) for f in fields]
    if not frames:
        return pd.DataFrame()
    return pd.concat(frames, ignore_index=True, sort=False)


def _where_mask(bound: BoundDesign, where: Mapping[str, object] | pd.Series | None) -> np.ndarray:
    if where is None:
        return np.ones(len(bound), dtype=bool)
    if isinstance(where, pd.Series):
        return where.reindex(bound.df.index).fillna(False).astype(bool).to_numpy()
    mask = pd.Series(True, index=bound.df.index)
    for col, value in where.items():
        mask &= bound.column(col) == value
    return mask.to_numpy()


def weighted_crosstab(
    bound: BoundDesign,
    row_field: str,
    col_field: str,
    where: Mapping[str, object] | pd.Series | None = None,
) -> pd.DataFrame:
    """Column-percentage weighted cross-tab of ``row_field`` by ``col_field``.

    ``where`` restricts the tabulation to a domain, given either as
    ``{field: value}`` equality conditions or a boolean Series. Rows with a
    missing row or column value are excluded from every denominator.
    """
    if row_field == col_field:
        raise ConfigurationError("Cross-tab row and column fields must differ.")
    row_vals = bound.column(row_field)
    col_vals = bound.column(col_field)
    base = (row_vals.notna() & col_vals.notna()).to_numpy() & _where_mask(bound, where)

    row_levels = sorted(row_vals[base].unique().tolist())
    col_levels = sorted(col_vals[base].unique().tolist())

    records: list[dict[str, object]] = []
    for col_level in col_levels:
        col_domain = base & (col_vals == col_level).to_numpy()
        for row_level in row_levels:
            indicator = (row_vals == row_level).to_numpy(dtype=float)
            share, se, _ = _domain_ratio(bound, indicator, col_domain)
            cell = col_domain & (indicator == 1.0)
            records.append(
                {
                    "row_field": row_field,
                    "row_level": row_level,
                    "col_field": col_field,
                    "col_level": col_level,
                    "n": int(cell.sum()),
                    "weighted_n": float(bound.weights[cell].sum()),
                    "col_pct": 100.0 * share,
                    "std_error": 100.0 * se,
                }
            )
    return pd.DataFrame(
        records,
        columns=["row_field", "row_level", "col_field", "col_level", "n", "weighted_n", "col_pct", "std_error"],
    )
