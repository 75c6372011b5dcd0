"""
================================================================================
DIAGNOSIS CODING SCHEMES - Centralized Condition Code Definitions
================================================================================
Adult depression cohort, household medical expenditure survey, 2011-2020.

The survey's condition files carry ICD-9-CM codes through 2015 and ICD-10-CM
codes from 2016 on, each truncated to three characters and stored in a
differently named field. All condition selection must reference these
definitions -- no scattered hard-coded codes elsewhere in the codebase.

Scheme selection is exclusive per year: a year uses exactly one scheme, never
the union of both.
================================================================================
"""

from __future__ import annotations

import re

import pandas as pd

# ============================================================================
# LEGACY SCHEME (ICD-9-CM)
# ============================================================================

LEGACY_DEPRESSION = {
    'name': 'Depression (ICD-9-CM)',
    'scheme': 'legacy',
    'id_field': 'DUPERSID',
    'code_field': 'ICD9CODX',
    'prefixes': ('296', '311'),
    'description': '296.x episodic mood disorders, 311 depressive disorder NEC; condition files publish 3-digit codes',
}

# ============================================================================
# MODERN SCHEME (ICD-10-CM)
# ============================================================================

MODERN_DEPRESSION = {
    'name': 'Depression (ICD-10-CM)',
    'scheme': 'modern',
    'id_field': 'DUPERSID',
    'code_field': 'ICD10CDX',
    'prefixes': ('F32', 'F33'),
    'description': 'Major depressive disorder, single episode and recurrent',
}

CODING_SCHEMES = {
    'legacy': LEGACY_DEPRESSION,
    'modern': MODERN_DEPRESSION,
}

# First survey year coded under the modern scheme.
SCHEME_CUTOFF_YEAR = 2016

_CODE_CLEAN = re.compile(r"[\s.]")


def scheme_for_year(year: int, cutoff_year: int = SCHEME_CUTOFF_YEAR, schemes: dict | None = None) -> dict:
    """Return the coding scheme in force for ``year``."""
    table = schemes if schemes is not None else CODING_SCHEMES
    key = 'legacy' if int(year) < int(cutoff_year) else 'modern'
    return table[key]


def normalize_codes(codes: pd.Series) -> pd.Series:
    out = codes.astype("string").str.upper().str.replace(_CODE_CLEAN, "", regex=True)
    return out.where(out.str.len() > 0)


def qualifying_mask(codes: pd.Series, scheme: dict) -> pd.Series:
    """Boolean mask of codes matching any of the scheme's prefixes."""
    prefixes = tuple(str(p).upper() for p in scheme['prefixes'])
    normalized = normalize_codes(codes)
    return normalized.str.startswith(prefixes).fillna(False).astype(bool)
