"""
tests/test_cli.py -- Tests for the operator command line (main.py).

The CLI builds its own AuthStore from settings.database_url, so each test
points get_settings() at a temp-file database.
"""

from __future__ import annotations

import io

import pytest

import main as cli
from auth.store import AuthStore

PASSWORD = "Correct#Horse1"


@pytest.fixture
def db_url(tmp_path, monkeypatch, settings_factory) -> str:
    url = f"sqlite:///{tmp_path / 'cli.db'}"
    monkeypatch.setattr(cli, "get_settings", lambda: settings_factory(database_url=url))
    return url


def _stdin(monkeypatch, text: str) -> None:
    monkeypatch.setattr("sys.stdin", io.StringIO(text))


class TestCreateAdmin:
    def test_creates_super_admin(self, db_url, monkeypatch, capsys) -> None:
        _stdin(monkeypatch, PASSWORD + "\n")
        assert cli.main(["create-admin", "Root@Example.com", "--password-stdin"]) == 0
        assert "Created super_admin root@example.com" in capsys.readouterr().out

        store = AuthStore(db_url)
        try:
            assert store.get_by_email("root@example.com").role.value == "super_admin"
        finally:
            store.close()

    def test_refused_when_accounts_exist(self, db_url, monkeypatch, capsys) -> None:
        _stdin(monkeypatch, PASSWORD + "\n")
        cli.main(["create-admin", "root@example.com", "--password-stdin"])
        _stdin(monkeypatch, PASSWORD + "\n")
        assert cli.main(["create-admin", "other@example.com", "--password-stdin"]) == 1
        assert "Accounts already exist" in capsys.readouterr().out

    def test_weak_password_lists_every_problem(self, db_url, monkeypatch, capsys) -> None:
        _stdin(monkeypatch, "weak\n")
        assert cli.main(["create-admin", "root@example.com", "--password-stdin"]) == 1
        out = capsys.readouterr().out
        assert "must be at least 8 characters" in out
        assert "must contain a digit" in out


class TestMaintenance:
    def test_purge(self, db_url, capsys) -> None:
        assert cli.main(["purge"]) == 0
        assert "Purged 0 expired session(s)" in capsys.readouterr().out

    def test_unknown_account_exits_nonzero(self, db_url) -> None:
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["unlock", "ghost@example.com"])
        assert exc_info.value.code == 1

    def test_unlock_and_revoke(self, db_url, monkeypatch, capsys) -> None:
        _stdin(monkeypatch, PASSWORD + "\n")
        cli.main(["create-admin", "root@example.com", "--password-stdin"])
        assert cli.main(["unlock", "root@example.com"]) == 0
        assert cli.main(["revoke-sessions", "root@example.com"]) == 0
        out = capsys.readouterr().out
        assert "Lockout cleared for root@example.com" in out
        assert "Revoked 0 session(s)" in out
