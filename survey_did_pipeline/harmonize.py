"""Per-year cohort identification and variable harmonization."""

from __future__ import annotations

import concurrent.futures
import logging
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
import pandas as pd

from .coding_schemes import qualifying_mask, scheme_for_year
from .errors import ConfigurationError, DataIntegrityError, MissingFieldError
from .io_utils import load_source_table


@dataclass
class YearSpec:
    year: int
    suffix: str
    scheme: dict
    rename_map: dict[str, str]
    optional_fields: list[str]
    condition_source: str
    person_source: str


@dataclass
class HarmonizedYear:
    year: int
    table: pd.DataFrame
    flow: dict[str, object]


@dataclass
class YearOutcome:
    year: int
    result: HarmonizedYear | None = None
    error: DataIntegrityError | None = None
    flow: dict[str, object] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.result is not None


def build_year_spec(year: int, config: dict) -> YearSpec:
    """Resolve the coding scheme, rename map and source files for one survey year."""
    year = int(year)
    suffix = f"{year % 100:02d}"
    canonical = [str(c) for c in config["canonical_fields"]]
    attached = set(config.get("attached_fields", ["year", "has_condition"]))
    optional = [str(c) for c in config.get("optional_fields_by_year", {}).get(year, [])]

    rename_map: dict[str, str] = {}
    for canon, template in config["rename_template"].items():
        if canon not in canonical:
            raise ConfigurationError(f"Rename template maps to unknown canonical field '{canon}'.")
        try:
            rename_map[canon] = str(template).format(yy=suffix, yyyy=year)
        except (KeyError, IndexError) as exc:
            raise ConfigurationError(f"Malformed rename template for '{canon}': {template!r}") from exc

    for rule in config.get("conditional_renames", []):
        try:
            canon = rule["canonical"]
            source = rule["before"] if year < int(rule["cutoff_year"]) else rule["from"]
        except KeyError as exc:
            raise ConfigurationError(f"Conditional rename rule is missing key {exc}: {rule}") from exc
        if canon not in canonical:
            raise ConfigurationError(f"Conditional rename maps to unknown canonical field '{canon}'.")
        rename_map[canon] = str(source).format(yy=suffix, yyyy=year)

    unmapped = [c for c in canonical if c not in attached and c not in rename_map and c not in optional]
    if unmapped:
        raise ConfigurationError(f"{year}: no source mapping for canonical fields: {', '.join(unmapped)}")

    sources = config["year_sources"].get(year)
    if not sources or "conditions" not in sources or "consolidated" not in sources:
        raise ConfigurationError(f"{year}: year_sources needs 'conditions' and 'consolidated' entries.")

    scheme = scheme_for_year(year, int(config["scheme_cutoff_year"]), config["coding_schemes"])
    return YearSpec(
        year=year,
        suffix=suffix,
        scheme=scheme,
        rename_map=rename_map,
        optional_fields=optional,
        condition_source=str(sources["conditions"]),
        person_source=str(sources["consolidated"]),
    )


def _normalize_ids(series: pd.Series, year: int) -> pd.Series:
    try:
        if pd.api.types.is_float_dtype(series):
            series = series.astype("Int64")
        return series.astype("string").str.strip()
    except (TypeError, ValueError) as exc:
        raise DataIntegrityError(
            f"{year}: identifier field {series.name} has values that are not person identifiers ({exc}).",
            year=year,
        ) from exc


def select_condition_flags(coding_df: pd.DataFrame, scheme: dict, year: int) -> pd.DataFrame:
    """One row per person with any code qualifying under ``scheme``."""
    id_field, code_field = scheme["id_field"], scheme["code_field"]
    if coding_df.empty:
        logging.warning("%s: condition-coding table is empty; year contributes zero rows.", year)
        return pd.DataFrame({"_pid": pd.Series(dtype="string"), "has_condition": pd.Series(dtype=bool)})

    missing = [c for c in (id_field, code_field) if c not in coding_df.columns]
    if missing:
        raise MissingFieldError(
            f"{year}: condition-coding table lacks {', '.join(missing)} required by the {scheme['scheme']} scheme.",
            year=year,
        )

    mask = qualifying_mask(coding_df[code_field], scheme)
    ids = _normalize_ids(coding_df.loc[mask, id_field], year).dropna().drop_duplicates()
    return pd.DataFrame({"_pid": ids.reset_index(drop=True), "has_condition": True})


def _apply_missing_codes(df: pd.DataFrame, codes: list, skip: set[str]) -> pd.DataFrame:
    if not codes:
        return df
    for col in df.columns:
        if col in skip or not pd.api.types.is_numeric_dtype(df[col]):
            continue
        df[col] = df[col].mask(df[col].isin(codes))
    return df


def _apply_value_recodes(df: pd.DataFrame, recodes: dict, year: int) -> pd.DataFrame:
    for col, rule in recodes.items():
        if col not in df.columns or year >= int(rule["cutoff_year"]):
            continue
        mapping = rule["map"]
        df[col] = df[col].map(lambda v: mapping.get(v, v) if pd.notna(v) else v)
    return df


def harmonize_year(
    coding_df: pd.DataFrame,
    person_df: pd.DataFrame,
    spec: YearSpec,
    config: dict,
) -> HarmonizedYear:
    """Build the condition-positive, canonically named table for one year."""
    canonical = [str(c) for c in config["canonical_fields"]]
    id_source = spec.rename_map["person_id"]

    flags = select_condition_flags(coding_df, spec.scheme, spec.year)

    if id_source not in person_df.columns:
        raise MissingFieldError(f"{spec.year}: person table lacks identifier field {id_source}.", year=spec.year)
    person = person_df.copy()
    person["_pid"] = _normalize_ids(person[id_source], spec.year)
    dup_mask = person["_pid"].duplicated(keep=False)
    if dup_mask.any():
        preview = ", ".join(sorted(set(person.loc[dup_mask, "_pid"].astype(str)))[:5])
        raise DataIntegrityError(
            f"{spec.year}: person table has {int(dup_mask.sum())} rows with duplicate identifiers ({preview}).",
            year=spec.year,
        )

    merged = person.merge(flags, on="_pid", how="inner", validate="one_to_one")

    missing = [
        f"{canon} <- {src}"
        for canon, src in spec.rename_map.items()
        if canon != "person_id" and src not in merged.columns and canon not in spec.optional_fields
    ]
    if missing:
        raise MissingFieldError(
            f"{spec.year}: required source fields absent: {', '.join(missing)}",
            year=spec.year,
        )

    out = pd.DataFrame(index=merged.index)
    for canon in canonical:
        if canon == "person_id":
            out[canon] = merged["_pid"]
        elif canon == "year":
            out[canon] = spec.year
        elif canon == "has_condition":
            out[canon] = True
        elif canon in spec.rename_map and spec.rename_map[canon] in merged.columns:
            out[canon] = merged[spec.rename_map[canon]]
        else:
            logging.info("%s: optional field %s not present; filled as missing.", spec.year, canon)
            out[canon] = np.nan

    skip = {"person_id", "year", "has_condition"}
    out = _apply_missing_codes(out, list(config.get("reserved_missing_codes", [])), skip)
    out = _apply_value_recodes(out, config.get("value_recodes", {}), spec.year)
    out = out[canonical].reset_index(drop=True)

    flow = {
        "year": spec.year,
        "scheme": spec.scheme["name"],
        "coding_rows": int(len(coding_df)),
        "condition_persons": int(len(flags)),
        "person_rows": int(len(person_df)),
        "retained_rows": int(len(out)),
        "status": "ok",
        "error": "",
    }
    logging.info(
        "%s: %s condition-positive persons, %s retained of %s person rows (%s).",
        spec.year,
        flow["condition_persons"],
        flow["retained_rows"],
        flow["person_rows"],
        spec.scheme["name"],
    )
    return HarmonizedYear(year=spec.year, table=out, flow=flow)


def harmonize_source_year(data_dir: Path, spec: YearSpec, config: dict) -> HarmonizedYear:
    try:
        coding_df = load_source_table(data_dir, spec.condition_source, job_name=f"conditions_{spec.year}")
        person_df = load_source_table(data_dir, spec.person_source, job_name=f"consolidated_{spec.year}")
    except FileNotFoundError as exc:
        raise DataIntegrityError(f"{spec.year}: missing required source table ({exc}).", year=spec.year) from exc
    except RuntimeError as exc:
        raise DataIntegrityError(f"{spec.year}: {exc}", year=spec.year) from exc
    return harmonize_year(coding_df, person_df, spec, config)


def _failed_flow(spec: YearSpec, exc: DataIntegrityError) -> dict[str, object]:
    return {
        "year": spec.year,
        "scheme": spec.scheme["name"],
        "coding_rows": np.nan,
        "condition_persons": np.nan,
        "person_rows": np.nan,
        "retained_rows": 0,
        "status": "failed",
        "error": f"{type(exc).__name__}: {exc}",
    }


def _harmonize_one(data_dir: Path, spec: YearSpec, config: dict) -> YearOutcome:
    try:
        result = harmonize_source_year(data_dir, spec, config)
    except DataIntegrityError as exc:
        logging.warning("%s: year excluded from cohort: %s", spec.year, exc)
        return YearOutcome(year=spec.year, error=exc, flow=_failed_flow(spec, exc))
    return YearOutcome(year=spec.year, result=result, flow=result.flow)


def harmonize_years(data_dir: Path, config: dict, years: list[int] | None = None) -> list[YearOutcome]:
    """Harmonize every configured year; one outcome per year, in increasing year order."""
    from .config import configured_years

    year_list = sorted(years) if years is not None else configured_years(config)
    specs = [build_year_spec(year, config) for year in year_list]
    max_workers = int(config.get("max_workers", 1))

    if max_workers <= 1 or len(specs) <= 1:
        return [_harmonize_one(Path(data_dir), spec, config) for spec in specs]

    outcomes: list[YearOutcome] = []
    with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
        future_to_year = {executor.submit(_harmonize_one, Path(data_dir), spec, config): spec.year for spec in specs}
        for future in concurrent.futures.as_completed(future_to_year):
            outcomes.append(future.result())
    return sorted(outcomes, key=lambda o: o.year)
