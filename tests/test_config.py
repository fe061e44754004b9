"""Configuration: validation, rule selection, per-sheet layering, YAML loading."""

from __future__ import annotations

import pytest

from gridlint.core.errors import ConfigError
from gridlint.engine.config import DEFAULT_CONFIG_PATH, load_config, resolve_config
from gridlint.engine.executor import lint, run
from gridlint.rules.registry import REGISTRY

DEFAULT_ON = {rid for rid, spec in REGISTRY.items() if spec.default_enabled}


class TestValidation:
    def test_unknown_rule_id(self) -> None:
        with pytest.raises(ConfigError, match="XYZ999"):
            resolve_config({"global": {"enabled_rules": ["XYZ999"]}})

    def test_unknown_rule_fails_before_parsing(self) -> None:
        with pytest.raises(ConfigError):
            run(b"definitely not a workbook", {"global": {"disabled_rules": ["XYZ999"]}})

    def test_unknown_rule_fails_before_linting(self, make_model) -> None:
        mb = make_model()
        mb.sheet("Sheet1", {"A1": 1})
        with pytest.raises(ConfigError):
            lint(mb.build(), {"global": {"enabled_rules": ["XYZ999"]}})

    def test_all_is_not_allowed_in_disabled(self) -> None:
        with pytest.raises(ConfigError, match="ALL"):
            resolve_config({"global": {"disabled_rules": ["ALL"]}})

    def test_bool_is_not_an_int(self) -> None:
        with pytest.raises(ConfigError) as exc:
            resolve_config({"global": {"SM001": {"max_sheets": True}}})
        assert exc.value.key == "global.SM001.max_sheets"

    def test_below_minimum(self) -> None:
        with pytest.raises(ConfigError, match=">= 0"):
            resolve_config({"global": {"UX003": {"max_blank_rows": -1}}})

    def test_unknown_parameter(self) -> None:
        with pytest.raises(ConfigError, match="unknown parameter"):
            resolve_config({"global": {"SM001": {"max_sheet": 3}}})

    def test_parameters_for_a_rule_without_any(self) -> None:
        with pytest.raises(ConfigError, match="known: none"):
            resolve_config({"global": {"SM004": {"anything": 1}}})

    def test_unknown_top_level_key(self) -> None:
        with pytest.raises(ConfigError, match="top-level"):
            resolve_config({"rules": {}})

    def test_not_a_mapping(self) -> None:
        with pytest.raises(ConfigError):
            resolve_config(["ERR001"])

    def test_choice_outside_the_list(self) -> None:
        with pytest.raises(ConfigError, match="one of"):
            resolve_config({"global": {"SEC001": {"link_type": "ftp"}}})

    def test_sheet_section_is_validated(self) -> None:
        with pytest.raises(ConfigError) as exc:
            resolve_config({"sheets": {"Data": {"FORM006": {"max_depth": 0}}}})
        assert exc.value.key == "sheets.Data.FORM006.max_depth"

    def test_sheet_configured_twice(self) -> None:
        with pytest.raises(ConfigError, match="twice"):
            resolve_config({"sheets": {"Data": {}, "DATA": {}}})


class TestSelection:
    def test_defaults(self) -> None:
        cfg = resolve_config()
        assert set(cfg.enabled_rules()) == DEFAULT_ON
        assert "FORM003" not in DEFAULT_ON

    def test_empty_enabled_list_means_defaults(self) -> None:
        assert set(resolve_config({"global": {"enabled_rules": []}}).enabled_rules()) == DEFAULT_ON

    def test_explicit_list_restricts(self) -> None:
        cfg = resolve_config({"global": {"enabled_rules": ["ERR001", "sm004"]}})
        assert cfg.enabled_rules() == ["ERR001", "SM004"]

    def test_category_prefix_skips_opt_in_rules(self) -> None:
        cfg = resolve_config({"global": {"enabled_rules": ["FORM"]}})
        assert "FORM003" not in cfg.enabled_rules()
        assert "FORM001" in cfg.enabled_rules()
        assert all(r.startswith("FORM") for r in cfg.enabled_rules())

    def test_opt_in_by_id(self) -> None:
        assert resolve_config({"global": {"enabled_rules": ["FORM003"]}}).is_enabled("FORM003")

    def test_all_includes_opt_in(self) -> None:
        cfg = resolve_config({"global": {"enabled_rules": ["ALL"]}})
        assert set(cfg.enabled_rules()) == set(REGISTRY)

    def test_disabled_beats_enabled(self) -> None:
        cfg = resolve_config({"global": {"enabled_rules": ["ERR"], "disabled_rules": ["ERR002"]}})
        assert cfg.enabled_rules() == ["ERR001", "ERR003"]

    def test_disable_by_category(self) -> None:
        cfg = resolve_config({"global": {"disabled_rules": ["UX"]}})
        assert not any(r.startswith("UX") for r in cfg.enabled_rules())

    def test_disabling_a_category_covers_opt_in_rules(self) -> None:
        cfg = resolve_config({"global": {"enabled_rules": ["ALL"], "disabled_rules": ["FORM"]}})
        assert not cfg.is_enabled("FORM003")
        assert not any(r.startswith("FORM") for r in cfg.enabled_rules())

    def test_sheet_category_disable_covers_opt_in_rules(self) -> None:
        cfg = resolve_config({"global": {"enabled_rules": ["FORM003"]}, "sheets": {"Data": {"disabled_rules": ["form"]}}})
        assert not cfg.is_enabled("FORM003", "Data")
        assert cfg.is_enabled("FORM003", "Other")


class TestSheetLayers:
    def test_sheet_disable(self) -> None:
        cfg = resolve_config({"sheets": {"Summary": {"disabled_rules": ["SM004"]}}})
        assert not cfg.is_enabled("SM004", "Summary")
        assert cfg.is_enabled("SM004", "Data")
        assert cfg.is_enabled("SM004")

    def test_sheet_names_are_case_insensitive(self) -> None:
        cfg = resolve_config({"sheets": {"Summary": {"disabled_rules": ["SM004"]}}})
        assert not cfg.is_enabled("SM004", "SUMMARY")

    def test_sheet_can_enable_an_opt_in_rule(self) -> None:
        cfg = resolve_config({"sheets": {"Calc": {"enabled_rules": ["FORM003"]}}})
        assert cfg.is_enabled("FORM003", "Calc")
        assert not cfg.is_enabled("FORM003", "Other")
        assert cfg.is_enabled_anywhere("FORM003")

    def test_sheet_enable_overrides_global_disable(self) -> None:
        cfg = resolve_config({
            "global": {"disabled_rules": ["FORM008"]},
            "sheets": {"Inputs": {"enabled_rules": ["FORM008"]}},
        })
        assert cfg.is_enabled("FORM008", "Inputs")
        assert not cfg.is_enabled("FORM008", "Other")

    def test_sheet_enabled_list_does_not_restrict(self) -> None:
        cfg = resolve_config({"sheets": {"Calc": {"enabled_rules": ["FORM003"]}}})
        assert cfg.is_enabled("ERR001", "Calc")

    def test_params_layering(self) -> None:
        cfg = resolve_config({
            "global": {"FORM006": {"max_depth": 4}},
            "sheets": {"Deep": {"FORM006": {"max_depth": 8}}},
        })
        assert cfg.params("FORM006")["max_depth"] == 4
        assert cfg.params("FORM006", "Other")["max_depth"] == 4
        assert cfg.params("FORM006", "deep")["max_depth"] == 8
        assert cfg.params("FORM007")["max_depth"] == 5

    def test_params_are_read_only(self) -> None:
        params = resolve_config().params("SM001")
        with pytest.raises(TypeError):
            params["max_sheets"] = 1


class TestParameterTypes:
    def test_choices_are_lowercased(self) -> None:
        cfg = resolve_config({"global": {"SEC001": {"link_type": " URL "}}})
        assert cfg.params("SEC001")["link_type"] == "url"

    def test_number_list(self) -> None:
        cfg = resolve_config({"global": {"FORM008": {"ignore_values": [1, 0.5]}}})
        assert cfg.params("FORM008")["ignore_values"] == (1.0, 0.5)

    def test_int_accepted_for_float(self) -> None:
        cfg = resolve_config({"global": {"SEC001": {"timeout_seconds": 2}}})
        assert cfg.params("SEC001")["timeout_seconds"] == 2.0

    def test_str_list_rejects_numbers(self) -> None:
        with pytest.raises(ConfigError):
            resolve_config({"global": {"SM005": {"avoid_names": ["tmp", 3]}}})


class TestYaml:
    def test_bundled_file_matches_builtin_defaults(self) -> None:
        bundled = load_config()
        builtin = resolve_config()
        assert bundled.enabled_rules() == builtin.enabled_rules()
        for rule_id in REGISTRY:
            assert dict(bundled.params(rule_id)) == dict(builtin.params(rule_id))
        assert DEFAULT_CONFIG_PATH.is_file()

    def test_load_file(self, tmp_path) -> None:
        path = tmp_path / "rules.yaml"
        path.write_text(
            "global:\n"
            "  disabled_rules: [UX]\n"
            "sheets:\n"
            "  Summary:\n"
            "    FORM008:\n"
            "      ignore_integers: true\n",
            encoding="utf-8",
        )
        cfg = load_config(str(path))
        assert not cfg.is_enabled("UX001")
        assert cfg.params("FORM008", "Summary")["ignore_integers"] is True

    def test_empty_file_means_defaults(self, tmp_path) -> None:
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        assert set(load_config(str(path)).enabled_rules()) == DEFAULT_ON

    def test_invalid_yaml(self, tmp_path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("global: [unclosed\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="invalid YAML"):
            load_config(str(path))

    def test_missing_file(self, tmp_path) -> None:
        with pytest.raises(ConfigError, match="cannot read"):
            load_config(str(tmp_path / "nope.yaml"))
