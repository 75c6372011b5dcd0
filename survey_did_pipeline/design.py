"""Survey design binding and Taylor-linearized variance.

The design is bound once to the cohort table; every weighted estimate reads
its weights, strata and PSUs through the bound design. Variance is the
stratified between-PSU variance of per-row score (influence) contributions:

    V = sum_h n_h / (n_h - 1) * sum_j (z_hj - zbar_h)(z_hj - zbar_h)'

where z_hj is the score total of PSU j in stratum h. Domain estimates pass
zero scores for rows outside the domain, which keeps the full PSU structure.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd
from scipy import stats

from .errors import ConfigurationError, DataIntegrityError, EstimationError

SINGLETON_POLICIES = ("certainty", "centered", "fail")


@dataclass(frozen=True)
class SurveyDesign:
    weight: str
    psu: str
    strata: str
    singleton: str = "certainty"

    def __post_init__(self) -> None:
        if self.singleton not in SINGLETON_POLICIES:
            raise ConfigurationError(
                f"Unknown singleton policy '{self.singleton}'; expected one of {SINGLETON_POLICIES}."
            )

    @classmethod
    def from_config(cls, config: dict) -> "SurveyDesign":
        design = config["design"]
        return cls(
            weight=design["weight"],
            psu=design["psu"],
            strata=design["strata"],
            singleton=design.get("singleton", "certainty"),
        )

    def bind(self, df: pd.DataFrame) -> "BoundDesign":
        return BoundDesign(df, self)


class BoundDesign:
    """A survey design attached to one table; read-only after construction."""

    def __init__(self, df: pd.DataFrame, design: SurveyDesign) -> None:
        missing = [c for c in (design.weight, design.psu, design.strata) if c not in df.columns]
        if missing:
            raise ConfigurationError(f"Survey design fields not in table: {', '.join(missing)}")
        if not df.index.is_unique:
            raise DataIntegrityError("Bound table index must be unique.")

        design_cols = df[[design.weight, design.psu, design.strata]]
        n_missing = int(design_cols.isna().any(axis=1).sum())
        if n_missing:
            raise DataIntegrityError(f"{n_missing} rows have missing weight, PSU or stratum values.")

        weights = pd.to_numeric(df[design.weight], errors="coerce").to_numpy(dtype=float)
        if np.isnan(weights).any():
            raise DataIntegrityError(f"Weight field {design.weight} has non-numeric values.")
        if (weights < 0).any():
            raise DataIntegrityError(f"Weight field {design.weight} has {int((weights < 0).sum())} negative values.")

        self.df = df
        self.design = design
        self.weights = weights
        self.strata = df[design.strata].to_numpy()
        self.psu = df[design.psu].to_numpy()

        psu_keys = pd.DataFrame({"stratum": self.strata, "psu": self.psu}).drop_duplicates()
        psu_per_stratum = psu_keys.groupby("stratum").size()
        self.n_strata = int(len(psu_per_stratum))
        self.n_psu = int(len(psu_keys))
        self.singleton_strata = sorted(psu_per_stratum.index[psu_per_stratum == 1].tolist())
        if self.singleton_strata:
            logging.info(
                "Survey design has %s singleton strata (policy=%s).",
                len(self.singleton_strata),
                design.singleton,
            )

    @property
    def design_df(self) -> int:
        return max(self.n_psu - self.n_strata, 1)

    def __len__(self) -> int:
        return len(self.df)

    def require(self, *names: str) -> None:
        missing = [n for n in names if n not in self.df.columns]
        if missing:
            raise ConfigurationError(f"Fields not in the bound table: {', '.join(missing)}")

    def column(self, name: str) -> pd.Series:
        self.require(name)
        return self.df[name]

    def linearized_variance(self, scores: np.ndarray) -> np.ndarray:
        """Variance matrix of the total of ``scores`` (n rows x k) under the design."""
        z = np.asarray(scores, dtype=float)
        if z.ndim == 1:
            z = z.reshape(-1, 1)
        if z.shape[0] != len(self.df):
            raise ValueError(f"Scores have {z.shape[0]} rows; bound table has {len(self.df)}.")

        totals = pd.DataFrame(z).groupby([self.strata, self.psu], sort=True).sum()
        stratum = pd.Series(totals.index.get_level_values(0))
        n_h = stratum.map(stratum.value_counts()).to_numpy(dtype=float)
        # Owned copies: to_numpy() may return a read-only view.
        psu_totals = np.array(totals.to_numpy(dtype=float), dtype=float, copy=True)
        dev = np.array((totals - totals.groupby(level=0).transform("mean")).to_numpy(dtype=float), copy=True)

        single = n_h == 1
        factor = np.ones_like(n_h)
        factor[~single] = n_h[~single] / (n_h[~single] - 1.0)
        if single.any():
            policy = self.design.singleton
            if policy == "fail":
                raise EstimationError(
                    f"{int(single.sum())} singleton strata and singleton policy 'fail'; variance is not identified."
                )
            if policy == "certainty":
                dev[single] = 0.0
            else:
                dev[single] = psu_totals[single] - psu_totals.mean(axis=0)

        return (dev * factor[:, None]).T @ dev


def t_inference(estimate: np.ndarray, std_error: np.ndarray, df: int, alpha: float = 0.05) -> dict[str, np.ndarray]:
    """t statistics, two-sided p-values and confidence limits on design degrees of freedom."""
    est = np.asarray(estimate, dtype=float)
    se = np.asarray(std_error, dtype=float)
    with np.errstate(divide="ignore", invalid="ignore"):
        t_stat = np.where(se > 0, est / se, np.nan)
    p_value = 2.0 * stats.t.sf(np.abs(t_stat), df)
    crit = stats.t.ppf(1.0 - alpha / 2.0, df)
    return {
        "t_stat": t_stat,
        "p_value": p_value,
        "ci_low": est - crit * se,
        "ci_high": est + crit * se,
    }
