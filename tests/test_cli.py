"""Tests for the command line interface."""

from __future__ import annotations

from pathlib import Path

from click.testing import CliRunner
from test_spec_loader import CLUSTER_YAML, INSTANCE_YAML

from compute_operator.cli import cli


class TestValidate:
    """Tests for the validate command."""

    def test_valid_cluster(self, tmp_path: Path) -> None:
        """Test a valid spec is reported with its type."""
        path = tmp_path / "cluster.yaml"
        path.write_text(CLUSTER_YAML)

        result = CliRunner().invoke(cli, ["validate", str(path)])

        assert result.exit_code == 0
        assert "is a valid ComputeCluster" in result.output

    def test_invalid_spec(self, tmp_path: Path) -> None:
        """Test validation errors exit non-zero."""
        path = tmp_path / "cluster.yaml"
        path.write_text(CLUSTER_YAML.replace("flavorId: flavor-1\n", ""))

        result = CliRunner().invoke(cli, ["validate", str(path)])

        assert result.exit_code == 1
        assert "flavorId" in result.output


class TestNames:
    """Tests for the names command."""

    def test_lists_server_names(self, tmp_path: Path) -> None:
        """Test each pool's deterministic server names are printed."""
        path = tmp_path / "cluster.yaml"
        path.write_text(CLUSTER_YAML)

        result = CliRunner().invoke(cli, ["names", str(path)])

        assert result.exit_code == 0
        assert result.output.splitlines() == [
            "default (3 replicas):",
            "  default-0",
            "  default-1",
            "  default-2",
        ]

    def test_instance_rejected(self, tmp_path: Path) -> None:
        """Test instance specs have no server names to show."""
        path = tmp_path / "vm.yaml"
        path.write_text(INSTANCE_YAML)

        result = CliRunner().invoke(cli, ["names", str(path)])

        assert result.exit_code == 1
        assert "not a ComputeCluster" in result.output


class TestVersion:
    """Tests for the version option."""

    def test_version(self) -> None:
        """Test the version is printed."""
        result = CliRunner().invoke(cli, ["--version"])

        assert result.exit_code == 0
        assert "0.1.0" in result.output
