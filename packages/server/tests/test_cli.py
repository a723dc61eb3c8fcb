"""Tests for the admin command line (runs against a temporary SQLite file)."""

from __future__ import annotations

import re

import pytest
import structlog

from orgauth.cli import build_parser, main
from orgauth.core.config import get_settings
from orgauth.core.logging_config import configure_logging
from orgauth_shared.schemas.invites import INVITE_CODE_ALPHABET


@pytest.fixture
def db_url(tmp_path, monkeypatch):
    monkeypatch.setenv("ORGAUTH_BCRYPT_ROUNDS", "4")
    monkeypatch.setenv("ORGAUTH_LOG_FORMAT", "text")
    monkeypatch.setenv("ORGAUTH_LOG_LEVEL", "warning")
    get_settings.cache_clear()
    yield f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"
    get_settings.cache_clear()


def _result_line(out: str) -> str:
    return out.strip().splitlines()[-1]


def test_parser_requires_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_init_db(db_url, capsys, tmp_path):
    assert main(["--database-url", db_url, "init-db"]) == 0
    assert _result_line(capsys.readouterr().out) == "database ready"
    assert (tmp_path / "cli.db").exists()


def test_create_owner_then_issue_invite(db_url, capsys):
    assert main([
        "--database-url", db_url, "create-owner",
        "--email", "a@x.com", "--password", "password-1", "--name", "Ada", "--org", "Bakery",
    ]) == 0
    assert _result_line(capsys.readouterr().out).startswith("created ")

    assert main([
        "--database-url", db_url, "issue-invite",
        "--email", "a@x.com", "--password", "password-1", "--role", "viewer",
    ]) == 0
    line = _result_line(capsys.readouterr().out)
    code = line.split()[0]
    assert re.fullmatch(f"[{INVITE_CODE_ALPHABET}]{{6}}", code)


def test_bad_credentials_exit_1(db_url, capsys):
    assert main([
        "--database-url", db_url, "issue-invite",
        "--email", "nobody@x.com", "--password", "password-1",
    ]) == 1
    assert "Invalid email or password" in capsys.readouterr().err


def test_log_level_filters_by_name(capsys):
    try:
        configure_logging("WARNING", "json")
        log = structlog.get_logger()
        log.info("cli.hidden")
        log.warning("cli.shown")
        out = capsys.readouterr().out
    finally:
        structlog.reset_defaults()
    assert "cli.shown" in out
    assert "cli.hidden" not in out
