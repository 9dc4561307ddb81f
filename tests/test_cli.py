"""Tests for the template command line tools."""

import json

from org_migrator.cli import main

from .conftest import build_template, step


class TestCli:

    def test_list_templates_json(self, capsys):
        assert main(["templates", "--json"]) == 0

        ids = sorted(t["id"] for t in json.loads(capsys.readouterr().out))
        assert ids == ["crm-accounts-contacts", "payroll-leave-rules", "payroll-pay-codes"]

    def test_list_by_category(self, capsys):
        assert main(["templates", "--category", "payroll"]) == 0

        out = capsys.readouterr().out
        assert "payroll-pay-codes" in out
        assert "crm-accounts-contacts" not in out

    def test_invalid_category(self, capsys):
        assert main(["templates", "--category", "finance"]) == 1

    def test_show_template(self, capsys):
        assert main(["show-template", "crm-accounts-contacts"]) == 0

        assert "re-running creates duplicates" in capsys.readouterr().out

    def test_unknown_template(self, capsys):
        assert main(["plan", "nope"]) == 1
        assert "Template not found" in capsys.readouterr().err

    def test_plan_lists_downstream_steps(self, capsys):
        assert main(["plan", "payroll-pay-codes"]) == 0

        out = capsys.readouterr().out
        assert "1. payCodeCategories" in out
        assert "If this step fails, skipped: payCodeMaster" in out

    def test_check_template(self, tmp_path, capsys):
        good = build_template([step("a", "Account", 1)], template_id="good")
        bad = build_template([step("a", "Account", 1, depends_on=["ghost"])], template_id="bad")
        (tmp_path / "good.json").write_text(json.dumps(good.to_dict()))
        (tmp_path / "bad.json").write_text(json.dumps(bad.to_dict()))

        assert main(["check-template", str(tmp_path / "good.json")]) == 0
        assert main(["check-template", str(tmp_path / "good.json"), str(tmp_path / "bad.json")]) == 1

        out = capsys.readouterr().out
        assert "OK   " in out
        assert "depends on unknown step 'ghost'" in out

    def test_no_command(self, capsys):
        assert main([]) == 1
