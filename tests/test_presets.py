"""Tests for presets and interactive prompts."""

from callable_ci.presets import ALL_PRESETS, MUTATING_WORKFLOWS, preset_allows
from callable_ci.prompt import ask_input
from callable_ci.workflows import ALL_WORKFLOWS


class TestPresets:
    def test_presets_only_name_known_workflows(self):
        for preset in ALL_PRESETS.values():
            for name in preset:
                assert name in ALL_WORKFLOWS

    def test_minimal_leaves_out_mutating_workflows(self):
        for name in MUTATING_WORKFLOWS:
            assert not preset_allows(ALL_PRESETS["minimal"], name)
            assert preset_allows(ALL_PRESETS["recommended"], name)

    def test_full_enables_apply(self):
        assert ALL_PRESETS["full"]["terraform-rds"]["run_apply"] is True


class TestAskInput:
    def test_reasks_until_number(self, monkeypatch, capsys):
        answers = iter(["deep", "25"])
        monkeypatch.setattr("builtins.input", lambda prompt: next(answers))
        meta = ALL_WORKFLOWS["security-scan"]["optional_inputs"]["fetch_depth"]
        assert ask_input("fetch_depth", meta) == 25
        assert "expected number" in capsys.readouterr().out

    def test_empty_answer_keeps_default(self, monkeypatch):
        monkeypatch.setattr("builtins.input", lambda prompt: "")
        meta = ALL_WORKFLOWS["terraform-plan"]["optional_inputs"]["terraform_version"]
        assert ask_input("terraform_version", meta) == "1.7.5"

    def test_boolean(self, monkeypatch):
        monkeypatch.setattr("builtins.input", lambda prompt: "y")
        meta = ALL_WORKFLOWS["terraform-rds"]["optional_inputs"]["run_apply"]
        assert ask_input("run_apply", meta) is True
