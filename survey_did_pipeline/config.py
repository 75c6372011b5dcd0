"""Configuration for the adult depression cohort survey DiD pipeline."""

from __future__ import annotations

import os
from pathlib import Path

from .coding_schemes import CODING_SCHEMES, SCHEME_CUTOFF_YEAR
from .errors import ConfigurationError

ASSUMPTIONS = [
    "Each survey year is an independent cross-section; person_id is not linked across years.",
    "Cohort membership is any qualifying condition-file code in the year (ICD-9-CM 296/311 before 2016, ICD-10-CM F32/F33 from 2016).",
    "Negative reserved codes (-1, -7, -8, -9, -10, -15) are inapplicable/refused/unknown and are treated as missing.",
    "Legacy RACETHNX categories are recoded to RACETHX coding; legacy 'other' (incl. non-Hispanic white) maps to RACETHX 5.",
    "Treatment is family income at or below 200% of the poverty line (POVCAT 1-3); post period starts in the policy year.",
    "Variance uses Taylor linearization over VARSTR/VARPSU; singleton strata follow the configured singleton policy.",
    "Subgroup and filtered estimates are domain estimates: rows outside the domain keep their place in the design.",
]

# Canonical field -> source field template; "{yy}" is the two-digit survey year.
RENAME_TEMPLATE = {
    "person_id": "DUPERSID",
    "age": "AGE{yy}X",
    "sex": "SEX",
    "region": "REGION{yy}",
    "inscov": "INSCOV{yy}",
    "povcat": "POVCAT{yy}",
    "totexp": "TOTEXP{yy}",
    "totslf": "TOTSLF{yy}",
    "obvexp": "OBVEXP{yy}",
    "optexp": "OPTEXP{yy}",
    "ertexp": "ERTEXP{yy}",
    "iptexp": "IPTEXP{yy}",
    "rxexp": "RXEXP{yy}",
    "perwt": "PERWT{yy}F",
    "varstr": "VARSTR",
    "varpsu": "VARPSU",
}

# Fields whose source name changes at a cutoff year.
CONDITIONAL_RENAMES = [
    {"canonical": "racethx", "cutoff_year": 2012, "before": "RACETHNX", "from": "RACETHX"},
    {"canonical": "diabdx", "cutoff_year": 2018, "before": "DIABDX", "from": "DIABDX_M18"},
]

# Fields whose coding changes at a cutoff year; values before the cutoff are mapped.
VALUE_RECODES = {
    "racethx": {"cutoff_year": 2012, "map": {1: 1, 2: 3, 3: 4, 4: 5}},
}

# Canonical fields a given year may legitimately lack (filled as missing).
OPTIONAL_FIELDS_BY_YEAR: dict[int, list[str]] = {}

CANONICAL_FIELDS = [
    "person_id",
    "year",
    "has_condition",
    "age",
    "sex",
    "racethx",
    "region",
    "inscov",
    "povcat",
    "diabdx",
    "totexp",
    "totslf",
    "obvexp",
    "optexp",
    "ertexp",
    "iptexp",
    "rxexp",
    "perwt",
    "varstr",
    "varpsu",
]

# Fields attached by the harmonizer rather than renamed from source.
ATTACHED_FIELDS = ["year", "has_condition"]

# Per-year source file stems: condition file, full-year consolidated file.
YEAR_SOURCES = {
    2011: {"conditions": "h146", "consolidated": "h147"},
    2012: {"conditions": "h154", "consolidated": "h155"},
    2013: {"conditions": "h162", "consolidated": "h163"},
    2014: {"conditions": "h170", "consolidated": "h171"},
    2015: {"conditions": "h180", "consolidated": "h181"},
    2016: {"conditions": "h190", "consolidated": "h192"},
    2017: {"conditions": "h199", "consolidated": "h201"},
    2018: {"conditions": "h207", "consolidated": "h209"},
    2019: {"conditions": "h214", "consolidated": "h216"},
    2020: {"conditions": "h222", "consolidated": "h224"},
}

CONFIG = {
    "data_dir": os.environ.get("SURVEY_DATA_DIR", "").strip(),
    "output_dir": os.environ.get(
        "SURVEY_OUTPUT_DIR",
        str(Path(__file__).resolve().parents[1] / "survey_outputs"),
    ),
    "max_workers": int(os.environ.get("SURVEY_MAX_WORKERS", "1")),
    "year_start": 2011,
    "year_end": 2020,
    "scheme_cutoff_year": SCHEME_CUTOFF_YEAR,
    "coding_schemes": CODING_SCHEMES,
    "canonical_fields": CANONICAL_FIELDS,
    "attached_fields": ATTACHED_FIELDS,
    "rename_template": RENAME_TEMPLATE,
    "conditional_renames": CONDITIONAL_RENAMES,
    "value_recodes": VALUE_RECODES,
    "optional_fields_by_year": OPTIONAL_FIELDS_BY_YEAR,
    "year_sources": YEAR_SOURCES,
    "reserved_missing_codes": [-1, -7, -8, -9, -10, -15],
    "cohort_file": "cohort.csv",
    # Derived variables.
    "policy_year": 2014,
    "treatment": {"name": "treated", "field": "povcat", "values": [1, 2, 3]},
    "period": {"name": "post", "field": "year", "min_value": 2014},
    "did_term": "dd",
    "subgroups": {
        "hispanic": {"field": "racethx", "values": [1]},
        "black": {"field": "racethx", "values": [3]},
        "asian": {"field": "racethx", "values": [4]},
    },
    "categorical_fields": ["sex", "region", "inscov"],
    "positive_indicator_fields": ["totexp", "totslf", "obvexp", "optexp", "ertexp", "iptexp", "rxexp"],
    # Survey design.
    "design": {"weight": "perwt", "psu": "varpsu", "strata": "varstr", "singleton": "certainty"},
    # Descriptives.
    "mean_fields": ["totexp", "totslf", "rxexp"],
    "crosstab": {"row": "inscov", "col": "treated", "where": {"post": 0}},
    # Models.
    "outcomes": ["totexp", "totslf", "obvexp", "ertexp", "iptexp", "rxexp"],
    "controls": ["age", "C(sex_code)", "C(region_code)"],
    "glm_family": "gamma",
    "glm_link": "log",
    "outcome_families": {},
    "binary_link": "probit",
    "exponentiate_glm": True,
    "include_subgroup_main_effect": True,
    "glm_maxiter": 100,
    "min_positive_rows": 10,
    "run_subgroup_models": True,
}

SINGLETON_POLICIES = ("certainty", "centered", "fail")

REQUIRED_KEYS = [
    "year_start",
    "year_end",
    "scheme_cutoff_year",
    "coding_schemes",
    "canonical_fields",
    "rename_template",
    "year_sources",
    "design",
    "outcomes",
    "controls",
]


def configured_years(config: dict) -> list[int]:
    return list(range(int(config["year_start"]), int(config["year_end"]) + 1))


def validate_config(config: dict | None = None) -> None:
    cfg = CONFIG if config is None else config
    missing = [key for key in REQUIRED_KEYS if key not in cfg]
    if missing:
        raise ConfigurationError(f"Missing required configuration keys: {', '.join(missing)}")

    years = configured_years(cfg)
    if not years:
        raise ConfigurationError("year_end precedes year_start; no survey years configured.")
    absent_sources = [y for y in years if y not in cfg["year_sources"]]
    if absent_sources:
        raise ConfigurationError(f"No source filenames configured for years: {absent_sources}")

    for key in ("legacy", "modern"):
        scheme = cfg["coding_schemes"].get(key)
        if not scheme or not scheme.get("prefixes") or not scheme.get("code_field"):
            raise ConfigurationError(f"Coding scheme '{key}' needs code_field and prefixes.")

    design = cfg["design"]
    for key in ("weight", "psu", "strata"):
        if not design.get(key):
            raise ConfigurationError(f"Survey design is missing the '{key}' field.")
    if design.get("singleton", "certainty") not in SINGLETON_POLICIES:
        raise ConfigurationError(
            f"Unknown singleton policy '{design.get('singleton')}'; expected one of {SINGLETON_POLICIES}."
        )

    if not cfg["outcomes"]:
        raise ConfigurationError("Outcome list is empty.")

    # Rename maps must be total for every configured year.
    from .harmonize import build_year_spec

    for year in years:
        build_year_spec(year, cfg)


def ensure_output_dir(config: dict | None = None) -> Path:
    cfg = CONFIG if config is None else config
    out_dir = Path(cfg["output_dir"]).resolve()
    out_dir.mkdir(parents=True, exist_ok=True)
    return out_dir
