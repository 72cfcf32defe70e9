"""Tests for the cellcarto CLI."""

import json

import pytest
from typer.testing import CliRunner

from cellcarto.cli import app


class TestCLI:
    """Test CLI functionality."""

    @pytest.fixture
    def runner(self):
        """Create CLI runner for testing."""
        return CliRunner()

    def test_version_command(self, runner):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert "cellcarto version" in result.stdout

    def test_info(self, runner, zarr_store_path):
        """info prints the session summary of a store."""
        result = runner.invoke(app, ["info", str(zarr_store_path)])
        assert result.exit_code == 0
        assert "Cellcarto Session" in result.stdout
        assert "10 cells × 4 genes" in result.stdout

    def test_info_with_config(self, runner, zarr_store_path, tmp_path):
        config_path = tmp_path / "config.json"
        config_path.write_text(json.dumps({"yield_delay": 0.0}))
        result = runner.invoke(
            app, ["info", str(zarr_store_path), "--config", str(config_path)]
        )
        assert result.exit_code == 0

    def test_info_invalid_config(self, runner, zarr_store_path, tmp_path):
        config_path = tmp_path / "config.json"
        config_path.write_text(json.dumps({"not_a_setting": 1}))
        result = runner.invoke(
            app, ["info", str(zarr_store_path), "-c", str(config_path)]
        )
        assert result.exit_code == 1
        assert "Invalid config" in result.stdout

    def test_missing_store(self, runner, tmp_path):
        result = runner.invoke(app, ["info", str(tmp_path / "missing.zarr")])
        assert result.exit_code == 1
        assert "Store not found" in result.stdout

    def test_unreadable_store(self, runner, tmp_path):
        """A directory that is not an AnnData store fails to open."""
        result = runner.invoke(app, ["info", str(tmp_path)])
        assert result.exit_code == 1
        assert "Failed to open store" in result.stdout

    def test_continuous_column(self, runner, zarr_store_path):
        result = runner.invoke(app, ["column", str(zarr_store_path), "total_counts"])
        assert result.exit_code == 0
        assert "total_counts (continuous)" in result.stdout
        assert "Range: [50, 500]" in result.stdout

    def test_categorical_column(self, runner, zarr_store_path):
        result = runner.invoke(app, ["column", str(zarr_store_path), "cell_type"])
        assert result.exit_code == 0
        assert "Distinct values: 3" in result.stdout
        assert "NK" in result.stdout

    def test_degraded_column(self, runner, zarr_store_path):
        """A column that cannot be read is reported as degraded, not fatal."""
        result = runner.invoke(app, ["column", str(zarr_store_path), "broken"])
        assert result.exit_code == 0
        assert "Distinct values: 0" in result.stdout
        assert "Degraded load" in result.stdout

    def test_unknown_column(self, runner, zarr_store_path):
        result = runner.invoke(app, ["column", str(zarr_store_path), "nope"])
        assert result.exit_code == 1
        assert "Unknown column: nope" in result.stdout

    def test_genes(self, runner, zarr_store_path):
        result = runner.invoke(app, ["genes", str(zarr_store_path), "cd"])
        assert result.exit_code == 0
        assert result.stdout.split() == ["CD3E", "CD4", "CD8A"]

    def test_genes_limit(self, runner, zarr_store_path):
        result = runner.invoke(app, ["genes", str(zarr_store_path), "cd", "-l", "1"])
        assert result.stdout.split() == ["CD3E"]

    def test_genes_no_match(self, runner, zarr_store_path):
        result = runner.invoke(app, ["genes", str(zarr_store_path), "zzz"])
        assert result.exit_code == 0
        assert "No genes matching 'zzz'" in result.stdout
