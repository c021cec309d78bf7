"""
Tests for the command line interface.
"""

from unittest.mock import patch

import pytest

from reporag.cli import build_parser, main


@pytest.fixture
def cli_services(services, settings):
    with patch("reporag.cli.get_settings", return_value=settings), \
            patch("reporag.cli.build_services", return_value=services), \
            patch("reporag.cli.setup_logging"):
        yield services


class TestParser:
    """Tests for argument parsing."""

    def test_ingest_arguments(self):
        """Test repeated --ext flags are collected."""
        args = build_parser().parse_args([
            "ingest", "--url", "https://example.com/x.git", "--ext", "md", "--ext", "rst",
        ])

        assert args.command == "ingest"
        assert args.ext == ["md", "rst"]
        assert args.path == ""

    def test_command_required(self):
        """Test a subcommand must be given."""
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestCommands:
    """Tests for command execution."""

    def test_ingest_and_query(self, cli_services, capsys):
        """Test ingesting a repository and querying it."""
        assert main(["ingest", "--url", "https://example.com/acme/x.git", "--run-id", "ingestion-cli"]) == 0
        assert "Status: completed" in capsys.readouterr().out

        assert main(["query", "What is X?"]) == 0
        out = capsys.readouterr().out
        assert "X is a framework for building CRUD services." in out
        assert "Conversation: conversation-" in out

    def test_query_without_index(self, cli_services, capsys):
        """Test domain errors are printed and exit with status 1."""
        assert main(["query", "What is X?"]) == 1
        assert "No index available" in capsys.readouterr().err

    def test_runs(self, cli_services, capsys):
        """Test listing runs."""
        assert main(["runs"]) == 0
        assert "No ingestion runs." in capsys.readouterr().out

        main(["ingest", "--url", "https://example.com/acme/x.git", "--run-id", "ingestion-cli"])
        capsys.readouterr()
        assert main(["runs"]) == 0
        assert "ingestion-cli" in capsys.readouterr().out

    def test_cancel_unknown_run(self, cli_services, capsys):
        """Test cancelling an unknown run fails cleanly."""
        assert main(["cancel", "ingestion-missing"]) == 1
        assert "not found" in capsys.readouterr().err
