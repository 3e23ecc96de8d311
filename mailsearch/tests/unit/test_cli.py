"""
Tests for the mailsearch command-line interface.
"""
import json
from unittest.mock import MagicMock, patch

import pytest

from mailsearch import cli

OWNER = "42"


@pytest.fixture
def run_cli(test_settings, session_factory, fake_provider, capsys):
    """Run main() against the in-memory test database and return (exit code, parsed stdout)."""

    def _run(*argv):
        capsys.readouterr()
        with patch.object(cli, "load_dotenv"), \
                patch.object(cli, "get_settings", return_value=test_settings), \
                patch.object(cli, "init_db", return_value=session_factory), \
                patch("mailsearch.core.search.service.create_embedding_provider", return_value=fake_provider):
            code = cli.main(list(argv))
        out = capsys.readouterr().out
        return code, json.loads(out) if out.strip().startswith(("{", "[")) else out

    return _run


@pytest.fixture
def documents_file(tmp_path):
    path = tmp_path / "documents.json"
    path.write_text(json.dumps([
        {
            "id": "A",
            "subject": "Invoice #1",
            "senderName": "Billing",
            "senderEmail": "billing@x.com",
            "bodyText": "Please pay the invoice",
            "receivedAt": "2024-05-01T12:00:00",
            "status": "inbox",
        },
        {
            "id": "B",
            "subject": "Team lunch",
            "sender_email": "hr@x.com",
            "body_text": "Pizza on Friday",
            "received_at": "2024-04-30T12:00:00",
            "status": "archived",
        },
    ]))
    return path


class TestIndexCommand:

    def test_index_reports_counts_and_embeds(self, run_cli, documents_file):
        code, payload = run_cli("index", OWNER, str(documents_file))

        assert code == 0
        assert payload == {"indexed": 2, "failed": 0, "embedded": 2}

    def test_unreadable_file_fails(self, run_cli, tmp_path):
        code, _ = run_cli("index", OWNER, str(tmp_path / "missing.json"))

        assert code == 1

    def test_invalid_documents_fail(self, run_cli, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text(json.dumps([{"subject": "no id"}]))

        code, _ = run_cli("index", OWNER, str(path))

        assert code == 1


class TestSearchCommands:

    def test_lexical_search(self, run_cli, documents_file):
        run_cli("index", OWNER, str(documents_file))

        code, payload = run_cli("search", OWNER, "invoice")

        assert code == 0
        assert payload["total"] == 1
        assert payload["items"][0]["id"] == "A"
        assert payload["items"][0]["senderEmail"] == "billing@x.com"

    def test_lexical_search_with_filters(self, run_cli, documents_file):
        run_cli("index", OWNER, str(documents_file))

        code, payload = run_cli("search", OWNER, "", "--status", "archived", "--sort", "date_desc")

        assert code == 0
        assert [item["id"] for item in payload["items"]] == ["B"]

    def test_semantic_search(self, run_cli, documents_file):
        run_cli("index", OWNER, str(documents_file))

        code, payload = run_cli("semantic", OWNER, "Invoice #1 Please pay the invoice")

        assert code == 0
        assert payload["total"] == 2
        assert payload["items"][0]["id"] == "A"


class TestMaintenanceCommands:

    def test_status(self, run_cli, documents_file):
        run_cli("index", OWNER, str(documents_file))

        code, payload = run_cli("status", OWNER)

        assert code == 0
        assert payload["provider"] == "fake"
        assert payload["documents"] == 2
        assert payload["embeddings"] == 2

    def test_backfill_embeds_missing(self, run_cli, documents_file, fake_provider):
        fake_provider.available = False
        run_cli("index", OWNER, str(documents_file))
        fake_provider.available = True

        code, payload = run_cli("backfill", OWNER)

        assert code == 0
        assert payload == {"scheduled": 2, "embedded": 2}

    def test_init_db_creates_tables(self, run_cli):
        create_tables = MagicMock()
        with patch.object(cli, "create_tables", create_tables):
            code, out = run_cli("init-db")

        assert code == 0
        assert "Database initialized" in out
        create_tables.assert_called_once()

    def test_missing_command_exits(self, run_cli):
        with pytest.raises(SystemExit):
            run_cli()
