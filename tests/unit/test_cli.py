"""Tests for the schemaform CLI."""

from __future__ import annotations

import json
import tomllib
from pathlib import Path

import pytest
from typer.testing import CliRunner

from schemaform.cli import app


@pytest.fixture
def cli_runner() -> CliRunner:
    """Create a CLI runner for testing."""
    return CliRunner()


@pytest.fixture
def product_path(fixtures_dir: Path) -> Path:
    return fixtures_dir / "schemas" / "product.json"


@pytest.fixture
def full_name_path(fixtures_dir: Path) -> Path:
    return fixtures_dir / "expressions" / "full_name.json"


class TestVersion:
    def test_version_flag(self, cli_runner: CliRunner) -> None:
        result = cli_runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert "schemaform" in result.stdout

    def test_source_checkout_reports_pyproject_version(self, cli_runner: CliRunner) -> None:
        pyproject = tomllib.loads((Path(__file__).parents[2] / "pyproject.toml").read_text())
        expected = pyproject["project"]["version"]
        result = cli_runner.invoke(app, ["--version"])
        assert result.stdout.strip() == f"schemaform {expected}"


class TestCheck:
    def test_valid_schema(self, cli_runner: CliRunner, product_path: Path) -> None:
        result = cli_runner.invoke(app, ["check", str(product_path)])
        assert result.exit_code == 0
        assert "Schema OK" in result.stdout
        assert "RULE_REFRESH_CACHE" in result.stdout

    def test_json_output(self, cli_runner: CliRunner, product_path: Path) -> None:
        result = cli_runner.invoke(app, ["check", str(product_path), "--json"])
        assert result.exit_code == 0
        assert '"valid": true' in result.stdout
        assert '"schema": "Product"' in result.stdout

    def test_cycle_fails(self, cli_runner: CliRunner, tmp_path: Path) -> None:
        schema = {
            "Fields": {
                "A": {"Formula": {"ExpressionTree": {"Type": "Identifier", "Name": "B"}}},
                "B": {"Formula": {"ExpressionTree": {"Type": "Identifier", "Name": "A"}}},
            }
        }
        path = tmp_path / "cycle.json"
        path.write_text(json.dumps(schema))
        result = cli_runner.invoke(app, ["check", str(path)])
        assert result.exit_code == 1
        assert "Circular dependency" in result.stdout

    def test_malformed_schema(self, cli_runner: CliRunner, tmp_path: Path) -> None:
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({"Fields": {"A": "oops"}}))
        result = cli_runner.invoke(app, ["check", str(path)])
        assert result.exit_code == 1
        assert "Invalid schema" in result.stdout

    def test_unreadable_file(self, cli_runner: CliRunner, tmp_path: Path) -> None:
        result = cli_runner.invoke(app, ["check", str(tmp_path / "missing.json")])
        assert result.exit_code == 1
        assert "Cannot read" in result.stdout


class TestPermissions:
    def test_buyer(self, cli_runner: CliRunner, product_path: Path) -> None:
        result = cli_runner.invoke(app, ["permissions", str(product_path), "--role", "buyer"])
        assert result.exit_code == 0
        assert "buyer" in result.stdout
        assert "Quantity" in result.stdout


class TestEval:
    def test_evaluates_tree(self, cli_runner: CliRunner, full_name_path: Path) -> None:
        context = json.dumps({"FirstName": "Ada", "LastName": "Lovelace"})
        result = cli_runner.invoke(app, ["eval", str(full_name_path), "--context", context])
        assert result.exit_code == 0
        assert '"Ada Lovelace"' in result.stdout

    def test_bad_context(self, cli_runner: CliRunner, full_name_path: Path) -> None:
        result = cli_runner.invoke(app, ["eval", str(full_name_path), "-c", "{nope"])
        assert result.exit_code == 1
        assert "Invalid --context JSON" in result.stdout

    def test_evaluation_error(self, cli_runner: CliRunner, tmp_path: Path) -> None:
        path = tmp_path / "tree.json"
        path.write_text(json.dumps({"Type": "CallExpression", "Callee": "MYSTERY", "Arguments": []}))
        result = cli_runner.invoke(app, ["eval", str(path)])
        assert result.exit_code == 1
        assert "Evaluation failed" in result.stdout


class TestDeps:
    def test_lists_fields(self, cli_runner: CliRunner, full_name_path: Path) -> None:
        result = cli_runner.invoke(app, ["deps", str(full_name_path)])
        assert result.exit_code == 0
        lines = result.stdout.splitlines()
        assert lines[-2:] == ["FirstName", "LastName"]

    def test_invalid_tree(self, cli_runner: CliRunner, tmp_path: Path) -> None:
        path = tmp_path / "tree.json"
        path.write_text(json.dumps({"Type": "Lambda"}))
        result = cli_runner.invoke(app, ["deps", str(path)])
        assert result.exit_code == 1
        assert "Invalid expression" in result.stdout
