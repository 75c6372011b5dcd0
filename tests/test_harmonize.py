"""Tests for per-year harmonization."""

import copy

import numpy as np
import pandas as pd
import pytest

from conftest import make_year_tables, person_id, write_source_tables
from survey_did_pipeline.coding_schemes import normalize_codes, qualifying_mask, scheme_for_year
from survey_did_pipeline.config import CANONICAL_FIELDS, CONFIG, YEAR_SOURCES
from survey_did_pipeline.errors import ConfigurationError, DataIntegrityError, MissingFieldError
from survey_did_pipeline.harmonize import (
    build_year_spec,
    harmonize_year,
    harmonize_years,
    select_condition_flags,
)


def _harmonize(year, coding_df=None, person_df=None, config=CONFIG):
    default_coding, default_person = make_year_tables(year)
    spec = build_year_spec(year, config)
    return harmonize_year(
        default_coding if coding_df is None else coding_df,
        default_person if person_df is None else person_df,
        spec,
        config,
    )


class TestCodingSchemes:
    def test_scheme_switches_at_cutoff(self):
        assert scheme_for_year(2015)["scheme"] == "legacy"
        assert scheme_for_year(2016)["scheme"] == "modern"

    def test_normalize_codes_strips_dots_and_case(self):
        codes = normalize_codes(pd.Series(["296.2", " f32.9 ", None, ""]))
        assert codes.iloc[0] == "2962"
        assert codes.iloc[1] == "F329"
        assert pd.isna(codes.iloc[2])
        assert pd.isna(codes.iloc[3])

    def test_qualifying_mask_uses_prefixes(self):
        scheme = scheme_for_year(2017)
        mask = qualifying_mask(pd.Series(["F32", "F339", "F34", "I10", None]), scheme)
        assert mask.tolist() == [True, True, False, False, False]


class TestYearSpec:
    def test_conditional_renames(self):
        assert build_year_spec(2011, CONFIG).rename_map["racethx"] == "RACETHNX"
        assert build_year_spec(2012, CONFIG).rename_map["racethx"] == "RACETHX"
        assert build_year_spec(2017, CONFIG).rename_map["diabdx"] == "DIABDX"
        assert build_year_spec(2018, CONFIG).rename_map["diabdx"] == "DIABDX_M18"

    def test_year_suffix_templates(self):
        spec = build_year_spec(2013, CONFIG)
        assert spec.rename_map["totexp"] == "TOTEXP13"
        assert spec.rename_map["perwt"] == "PERWT13F"
        assert spec.condition_source == "h162"

    def test_unknown_canonical_field_rejected(self):
        cfg = copy.deepcopy(CONFIG)
        cfg["rename_template"]["bmi"] = "BMINDX53"
        with pytest.raises(ConfigurationError):
            build_year_spec(2014, cfg)

    def test_unmapped_canonical_field_rejected(self):
        cfg = copy.deepcopy(CONFIG)
        del cfg["rename_template"]["rxexp"]
        with pytest.raises(ConfigurationError):
            build_year_spec(2014, cfg)

    def test_optional_field_may_be_unmapped(self):
        cfg = copy.deepcopy(CONFIG)
        del cfg["rename_template"]["optexp"]
        cfg["optional_fields_by_year"] = {2014: ["optexp"]}
        result = _harmonize(2014, config=cfg)
        assert result.table["optexp"].isna().all()


class TestHarmonizeYear:
    @pytest.mark.parametrize("year", [2011, 2013, 2016, 2018])
    def test_schema_exactness(self, year):
        result = _harmonize(year)
        assert list(result.table.columns) == CANONICAL_FIELDS

    def test_cohort_restriction(self):
        result = _harmonize(2014)
        table = result.table
        assert table["has_condition"].all()
        expected = {str(person_id(2014, i)) for i in range(60) if i % 3 != 0}
        assert set(table["person_id"]) == expected
        assert table["person_id"].is_unique
        assert (table["year"] == 2014).all()

    def test_legacy_code_matches_before_cutoff(self):
        coding = pd.DataFrame({"DUPERSID": [person_id(2015, 1)], "ICD9CODX": ["311"]})
        flags = select_condition_flags(coding, scheme_for_year(2015), 2015)
        assert flags["_pid"].tolist() == [str(person_id(2015, 1))]

    def test_legacy_code_not_matched_after_cutoff(self):
        pid_legacy, pid_modern = person_id(2016, 1), person_id(2016, 2)
        coding = pd.DataFrame(
            {
                "DUPERSID": [pid_legacy, pid_modern],
                "ICD9CODX": ["296", "401"],
                "ICD10CDX": ["I10", "F33"],
            }
        )
        flags = select_condition_flags(coding, scheme_for_year(2016), 2016)
        assert flags["_pid"].tolist() == [str(pid_modern)]

    def test_modern_field_holding_legacy_value_not_matched(self):
        coding = pd.DataFrame({"DUPERSID": [person_id(2017, 1)], "ICD10CDX": ["311"]})
        flags = select_condition_flags(coding, scheme_for_year(2017), 2017)
        assert flags.empty

    def test_reserved_missing_codes_become_missing(self):
        table = _harmonize(2014).table
        age = table.set_index("person_id")["age"]
        assert pd.isna(age[str(person_id(2014, 5))])
        assert not (table.select_dtypes("number") < 0).any().any()

    def test_legacy_race_recoded(self):
        coding, person = make_year_tables(2011)
        person["RACETHNX"] = 2
        table = _harmonize(2011, coding, person).table
        assert (table["racethx"] == 3).all()

    def test_modern_race_not_recoded(self):
        coding, person = make_year_tables(2013)
        person["RACETHX"] = 2
        table = _harmonize(2013, coding, person).table
        assert (table["racethx"] == 2).all()

    def test_missing_source_field(self):
        coding, person = make_year_tables(2014)
        person = person.drop(columns=["TOTEXP14"])
        with pytest.raises(MissingFieldError) as excinfo:
            _harmonize(2014, coding, person)
        assert excinfo.value.year == 2014
        assert "TOTEXP14" in str(excinfo.value)

    def test_missing_code_field(self):
        coding, person = make_year_tables(2016)
        coding = coding.rename(columns={"ICD10CDX": "ICD9CODX"})
        with pytest.raises(MissingFieldError):
            _harmonize(2016, coding, person)

    def test_duplicate_person_ids(self):
        coding, person = make_year_tables(2014)
        person = pd.concat([person, person.iloc[[1]]], ignore_index=True)
        with pytest.raises(DataIntegrityError):
            _harmonize(2014, coding, person)

    def test_fractional_person_ids_rejected(self):
        coding, person = make_year_tables(2014)
        person["DUPERSID"] = person["DUPERSID"].astype(float) + 0.5
        with pytest.raises(DataIntegrityError) as excinfo:
            _harmonize(2014, coding, person)
        assert excinfo.value.year == 2014

    def test_fractional_coding_ids_rejected(self):
        coding, person = make_year_tables(2014)
        coding["DUPERSID"] = coding["DUPERSID"].astype(float) + 0.5
        with pytest.raises(DataIntegrityError):
            select_condition_flags(coding, scheme_for_year(2014), 2014)

    def test_integral_float_ids_match_integer_ids(self):
        coding, person = make_year_tables(2014)
        person["DUPERSID"] = person["DUPERSID"].astype(float)
        result = _harmonize(2014, coding, person)
        assert result.flow["retained_rows"] == 40

    def test_empty_coding_table(self):
        _, person = make_year_tables(2014)
        result = _harmonize(2014, pd.DataFrame(), person)
        assert result.table.empty
        assert list(result.table.columns) == CANONICAL_FIELDS
        assert result.flow["retained_rows"] == 0

    def test_flow_counts(self):
        result = _harmonize(2014)
        assert result.flow["coding_rows"] == 100
        assert result.flow["condition_persons"] == 40
        assert result.flow["person_rows"] == 60
        assert result.flow["retained_rows"] == 40
        assert result.flow["status"] == "ok"


class TestHarmonizeYears:
    def test_parallel_matches_sequential(self, pipeline_config, source_dir):
        sequential = harmonize_years(source_dir, pipeline_config)
        parallel_cfg = dict(pipeline_config, max_workers=4)
        parallel = harmonize_years(source_dir, parallel_cfg)

        assert [o.year for o in parallel] == list(range(2011, 2019))
        for left, right in zip(sequential, parallel):
            pd.testing.assert_frame_equal(left.result.table, right.result.table)

    def test_missing_year_is_isolated(self, pipeline_config, tmp_path):
        data_dir = tmp_path / "partial"
        write_source_tables(data_dir, [2011, 2012, 2014])
        outcomes = harmonize_years(data_dir, pipeline_config, years=[2011, 2012, 2013, 2014])

        by_year = {o.year: o for o in outcomes}
        assert not by_year[2013].ok
        assert isinstance(by_year[2013].error, DataIntegrityError)
        assert by_year[2013].flow["status"] == "failed"
        assert all(by_year[y].ok for y in (2011, 2012, 2014))
        assert np.isnan(by_year[2013].flow["person_rows"])

    def test_malformed_identifiers_are_isolated(self, pipeline_config, tmp_path):
        data_dir = tmp_path / "malformed"
        write_source_tables(data_dir, [2012, 2013, 2014])
        person_path = data_dir / f"{YEAR_SOURCES[2013]['consolidated']}.csv"
        person = pd.read_csv(person_path)
        person["DUPERSID"] = person["DUPERSID"] + 0.5
        person.to_csv(person_path, index=False)

        outcomes = harmonize_years(data_dir, pipeline_config, years=[2012, 2013, 2014])
        by_year = {o.year: o for o in outcomes}
        assert isinstance(by_year[2013].error, DataIntegrityError)
        assert by_year[2013].flow["status"] == "failed"
        assert by_year[2012].ok and by_year[2014].ok
