"""
Unit tests for the bulkde command line interface.
"""

import pandas as pd
import pytest
from typer.testing import CliRunner

from bulkde.cli import app

runner = CliRunner()


@pytest.fixture
def toy_files(temp_workspace, toy_count_matrix, toy_sample_metadata):
    counts_path = temp_workspace / "counts.tsv"
    metadata_path = temp_workspace / "metadata.tsv"
    toy_count_matrix.to_csv(counts_path, sep="\t")
    toy_sample_metadata.to_csv(metadata_path, sep="\t")
    return counts_path, metadata_path


@pytest.mark.unit
class TestCLI:
    """Test the typer commands."""

    def test_de_command_writes_table(self, toy_files, temp_workspace):
        counts_path, metadata_path = toy_files
        output = temp_workspace / "de.tsv"

        result = runner.invoke(
            app,
            [
                "de",
                str(counts_path),
                str(metadata_path),
                "--numerator",
                "B",
                "--reference",
                "A",
                "--output",
                str(output),
            ],
        )

        assert result.exit_code == 0, result.output
        table = pd.read_csv(output, sep="\t", index_col=0)
        assert len(table) == 6

    def test_alignment_error_exits_nonzero(self, toy_files, temp_workspace):
        counts_path, _ = toy_files
        metadata_path = temp_workspace / "short.tsv"
        pd.DataFrame({"condition": ["A", "B"]}, index=["s1", "s3"]).to_csv(
            metadata_path, sep="\t"
        )

        result = runner.invoke(
            app,
            [
                "de",
                str(counts_path),
                str(metadata_path),
                "--numerator",
                "B",
                "--reference",
                "A",
            ],
        )

        assert result.exit_code == 1
        assert "AlignmentError" in result.output

    def test_numerator_without_reference_is_rejected(self, toy_files):
        counts_path, metadata_path = toy_files

        result = runner.invoke(
            app, ["de", str(counts_path), str(metadata_path), "--numerator", "B"]
        )

        assert result.exit_code != 0

    def test_config_show_uses_environment(self, monkeypatch):
        monkeypatch.setenv("BULKDE_ALPHA", "0.01")

        result = runner.invoke(app, ["config-show"])

        assert result.exit_code == 0, result.output
        assert "0.01" in result.output

    def test_de_threshold_drops_low_count_genes(self, toy_files, temp_workspace):
        counts_path, metadata_path = toy_files
        output = temp_workspace / "de.tsv"

        result = runner.invoke(
            app,
            [
                "de",
                str(counts_path),
                str(metadata_path),
                "--numerator",
                "B",
                "--reference",
                "A",
                "--threshold",
                "30",
                "--output",
                str(output),
            ],
        )

        assert result.exit_code == 0, result.output
        table = pd.read_csv(output, sep="\t", index_col=0)
        assert "gene_c" not in table.index
        assert len(table) == 5

    def test_run_command_writes_results_dir(self, toy_files, temp_workspace):
        counts_path, metadata_path = toy_files
        results_dir = temp_workspace / "results"

        result = runner.invoke(
            app,
            [
                "run",
                str(counts_path),
                str(metadata_path),
                "--numerator",
                "B",
                "--reference",
                "A",
                "--results-dir",
                str(results_dir),
            ],
        )

        assert result.exit_code == 0, result.output
        assert (results_dir / "de_results.tsv").exists()
        assert not (results_dir / "ora_results.tsv").exists()
        assert "bulkde summary" in result.output
