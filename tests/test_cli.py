import json

from typer.testing import CliRunner

from transaction_rules.cli import app

runner = CliRunner()

RULES = {
    "rules": [
        {
            "id": "groceries",
            "conditions": [{"field": "description", "comparator": "contains", "value": "albert"}],
            "actions": [{"kind": "set_category", "value": "Groceries"}],
        }
    ]
}


def _files(tmp_path, *, bad_rule: bool = False):
    csv_path = tmp_path / "export.csv"
    csv_path.write_text(
        "date,amount,description,account\n"
        "2024-01-01,-5.00,Albert Heijn 1,NL01\n"
        "2024-01-02,-6.00,Shell 2,NL01\n"
        "2024-01-03,oops,Shell 3,NL01\n",
        encoding="utf-8",
    )
    doc = json.loads(json.dumps(RULES))
    if bad_rule:
        doc["rules"].append(
            {"id": "broken", "conditions": [{"field": "date", "comparator": "contains", "value": "x"}]}
        )
    rules_path = tmp_path / "rules.json"
    rules_path.write_text(json.dumps(doc), encoding="utf-8")
    return csv_path, rules_path


def _json_payload(output: str) -> dict:
    return json.loads(output[output.index("{") : output.rindex("}") + 1])


def test_profiles_lists_builtins():
    result = runner.invoke(app, ["profiles"])
    assert result.exit_code == 0, result.output
    for name in ("generic", "rabobank", "ing_nl", "chase"):
        assert name in result.output


def test_check_rules(tmp_path):
    _, good = _files(tmp_path)
    ok = runner.invoke(app, ["check-rules", str(good)])
    assert ok.exit_code == 0, ok.output
    assert "groceries" in ok.output

    _, bad = _files(tmp_path, bad_rule=True)
    failed = runner.invoke(app, ["check-rules", str(bad)])
    assert failed.exit_code == 1
    assert "broken" in failed.output


def test_import_dry_run_json_summary(tmp_path):
    csv_path, rules_path = _files(tmp_path)
    result = runner.invoke(
        app, ["import", str(csv_path), "--rules", str(rules_path), "--dry-run", "--json"]
    )
    assert result.exit_code == 0, result.output
    summary = _json_payload(result.output)
    assert summary["status"] == "completed"
    assert summary["accepted_count"] == 2
    assert summary["malformed_count"] == 1
    assert summary["malformed_rows"][0]["row_number"] == 3
    assert summary["categorized_count"] == 1


def test_import_missing_file_exits_nonzero(tmp_path):
    result = runner.invoke(app, ["import", str(tmp_path / "absent.csv"), "--dry-run"])
    assert result.exit_code == 1
    assert "file not found" in result.output


def test_import_and_rerun_against_sqlite(tmp_path):
    csv_path, rules_path = _files(tmp_path)
    url = f"sqlite+pysqlite:///{tmp_path / 'cli.sqlite3'}"

    imported = runner.invoke(
        app, ["import", str(csv_path), "--database-url", url, "--create-schema", "--json"]
    )
    assert imported.exit_code == 0, imported.output
    assert _json_payload(imported.output)["committed_count"] == 2

    rerun = runner.invoke(app, ["rerun-rules", str(rules_path), "--database-url", url])
    assert rerun.exit_code == 0, rerun.output
    assert "updated" in rerun.output


def test_rerun_requires_database_url(tmp_path):
    _, rules_path = _files(tmp_path)
    result = runner.invoke(app, ["rerun-rules", str(rules_path)])
    assert result.exit_code == 1
    assert "DATABASE_URL" in result.output


def test_import_respects_env_database_url(tmp_path, monkeypatch):
    csv_path, _ = _files(tmp_path)
    url = f"sqlite+pysqlite:///{tmp_path / 'env.sqlite3'}"
    monkeypatch.setenv("DATABASE_URL", url)
    result = runner.invoke(app, ["import", str(csv_path), "--create-schema", "--json"])
    assert result.exit_code == 0, result.output
    assert _json_payload(result.output)["committed_count"] == 2
