"""Derived analysis variables: DiD/DDD terms, factor codes, positivity flags.

Every builder adds columns to the cohort table in place and returns it; no
builder removes or overwrites a source column. Missing inputs propagate as
missing outputs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

import numpy as np
import pandas as pd

from .errors import ConfigurationError


@dataclass
class DerivedData:
    df: pd.DataFrame
    treatment: str
    period: str
    did_term: str
    subgroup_terms: dict[str, list[str]] = field(default_factory=dict)
    encodings: dict[str, dict[object, int]] = field(default_factory=dict)
    positive_indicators: list[str] = field(default_factory=list)


def _require_columns(df: pd.DataFrame, cols: Iterable[str], context: str) -> None:
    missing = [c for c in cols if c not in df.columns]
    if missing:
        raise ConfigurationError(f"{context}: referenced columns not in cohort table: {', '.join(missing)}")


def _numeric(df: pd.DataFrame, col: str) -> pd.Series:
    return pd.to_numeric(df[col], errors="coerce").astype(float)


def add_indicator(
    df: pd.DataFrame,
    name: str,
    field: str,
    *,
    values: Iterable[object] | None = None,
    min_value: float | None = None,
) -> pd.DataFrame:
    """1/0 indicator from category membership or a lower threshold on ``field``."""
    _require_columns(df, [field], f"indicator {name}")
    if (values is None) == (min_value is None):
        raise ConfigurationError(f"indicator {name}: give exactly one of values or min_value.")
    src = df[field]
    if values is not None:
        flag = src.isin(list(values)).astype(float)
    else:
        flag = (_numeric(df, field) >= float(min_value)).astype(float)
    df[name] = flag.mask(src.isna())
    return df


def add_did_term(df: pd.DataFrame, treatment: str, period: str, name: str = "dd") -> pd.DataFrame:
    _require_columns(df, [treatment, period], "did term")
    df[name] = _numeric(df, treatment) * _numeric(df, period)
    return df


def subgroup_term_names(subgroup: str) -> list[str]:
    """Column names added for subgroup ``subgroup``: S_period, S_treatment, DDD_S."""
    return [f"{subgroup}_period", f"{subgroup}_treatment", f"DDD_{subgroup}"]


def add_subgroup_terms(df: pd.DataFrame, subgroup: str, treatment: str, period: str) -> list[str]:
    _require_columns(df, [subgroup, treatment, period], f"subgroup {subgroup}")
    s = _numeric(df, subgroup)
    t = _numeric(df, treatment)
    p = _numeric(df, period)
    period_name, treatment_name, ddd_name = subgroup_term_names(subgroup)
    df[period_name] = p * s
    df[treatment_name] = t * s
    df[ddd_name] = t * p * s
    return [period_name, treatment_name, ddd_name]


def _sorted_levels(values: Iterable[object]) -> list[object]:
    levels = list(values)
    try:
        return sorted(levels)
    except TypeError:
        # Mixed types (e.g. numbers and labels) sort by their text form.
        return sorted(levels, key=lambda v: (type(v).__name__, str(v)))


def encode_categoricals(df: pd.DataFrame, fields: Iterable[str]) -> dict[str, dict[object, int]]:
    """Add ``{field}_code`` columns; codes 1..k follow sorted distinct observed values."""
    fields = list(fields)
    _require_columns(df, fields, "categorical encoding")
    encodings: dict[str, dict[object, int]] = {}
    for col in fields:
        levels = _sorted_levels(df[col].dropna().unique().tolist())
        mapping = {level: code for code, level in enumerate(levels, start=1)}
        df[f"{col}_code"] = df[col].map(mapping).astype(float)
        encodings[col] = mapping
        logging.info("Encoded %s: %s levels", col, len(mapping))
    return encodings


def encoding_table(encodings: dict[str, dict[object, int]]) -> pd.DataFrame:
    rows = [
        {"field": col, "level": level, "code": code}
        for col, mapping in encodings.items()
        for level, code in mapping.items()
    ]
    return pd.DataFrame(rows, columns=["field", "level", "code"])


def add_positive_indicators(df: pd.DataFrame, fields: Iterable[str]) -> list[str]:
    """Add ``{field}_is_positive``: 1 if > 0, 0 if <= 0, missing if the field is missing."""
    fields = list(fields)
    _require_columns(df, fields, "positive indicators")
    names: list[str] = []
    for col in fields:
        values = _numeric(df, col)
        name = f"{col}_is_positive"
        df[name] = np.where(values.isna(), np.nan, (values > 0).astype(float))
        names.append(name)
    return names


def build_derived_variables(cohort: pd.DataFrame, config: dict) -> DerivedData:
    treatment_cfg = config["treatment"]
    period_cfg = config["period"]
    subgroup_cfg = config.get("subgroups", {})

    referenced = [treatment_cfg["field"], period_cfg["field"]]
    referenced += [cfg["field"] for cfg in subgroup_cfg.values()]
    referenced += list(config.get("categorical_fields", []))
    referenced += list(config.get("positive_indicator_fields", []))
    _require_columns(cohort, referenced, "derived variables")

    df = cohort
    treatment = treatment_cfg["name"]
    period = period_cfg["name"]
    add_indicator(
        df,
        treatment,
        treatment_cfg["field"],
        values=treatment_cfg.get("values"),
        min_value=treatment_cfg.get("min_value"),
    )
    add_indicator(
        df,
        period,
        period_cfg["field"],
        values=period_cfg.get("values"),
        min_value=period_cfg.get("min_value"),
    )
    did_term = str(config.get("did_term", "dd"))
    add_did_term(df, treatment, period, name=did_term)

    subgroup_terms: dict[str, list[str]] = {}
    for name, cfg in subgroup_cfg.items():
        add_indicator(df, name, cfg["field"], values=cfg.get("values"), min_value=cfg.get("min_value"))
        subgroup_terms[name] = add_subgroup_terms(df, name, treatment, period)

    encodings = encode_categoricals(df, config.get("categorical_fields", []))
    positives = add_positive_indicators(df, config.get("positive_indicator_fields", []))

    logging.info(
        "Derived variables: %s=%s*%s, %s subgroup(s), %s encoded field(s), %s positivity flag(s).",
        did_term,
        treatment,
        period,
        len(subgroup_terms),
        len(encodings),
        len(positives),
    )
    return DerivedData(
        df=df,
        treatment=treatment,
        period=period,
        did_term=did_term,
        subgroup_terms=subgroup_terms,
        encodings=encodings,
        positive_indicators=positives,
    )
