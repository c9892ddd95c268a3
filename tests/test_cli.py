"""Integration tests for main.py -- operator CLI.

Covers:
- keys: refuses without generation, generates with --generate, prints kid
- inspect: prints token_info JSON, non-zero exit for bad tokens
- create-user: creates once, refuses duplicates
- cleanup: prints sweep counts
- no sub-command prints help
"""

import json

import pytest

import main as cli
from auth.keys import TokenSigner
from auth.models import Principal
from auth.tokens import TokenIssuer
from core.config import Settings


@pytest.fixture
def settings(tmp_path, monkeypatch) -> Settings:
    s = Settings(
        _env_file=None,
        debug=False,
        keys_dir=str(tmp_path / "keys"),
        database_url=f"sqlite:///{tmp_path / 'auth.db'}",
        ttl_store_path=str(tmp_path / "ttl.db"),
        redis_url="",
    )
    monkeypatch.setattr(cli, "get_settings", lambda: s)
    return s


def test_keys_requires_generation(settings, capsys):
    assert cli.main(["keys"]) == 1
    assert "not found" in capsys.readouterr().out


def test_keys_generate(settings, capsys):
    assert cli.main(["keys", "--generate"]) == 0
    out = capsys.readouterr().out
    kid = TokenSigner.load_or_create(settings.keys_dir).key_id
    assert kid in out


def test_inspect(settings, capsys):
    signer = TokenSigner.load_or_create(settings.keys_dir, generate=True)
    token = TokenIssuer(signer, issuer=settings.token_issuer).issue(Principal(email="a@b.com", id=1))
    capsys.readouterr()
    assert cli.main(["inspect", token]) == 0
    info = json.loads(capsys.readouterr().out)
    assert info["username"] == "a@b.com"
    assert info["expired"] is False


def test_inspect_bad_token(settings, capsys):
    TokenSigner.load_or_create(settings.keys_dir, generate=True)
    capsys.readouterr()
    assert cli.main(["inspect", "garbage"]) == 1
    assert "error" in json.loads(capsys.readouterr().out)


def test_create_user_and_cleanup(settings, capsys):
    TokenSigner.load_or_create(settings.keys_dir, generate=True)
    assert cli.main(["create-user", "ops@example.com", "--password", "pw", "--role", "ROLE_ADMIN"]) == 0
    assert "ROLE_ADMIN" in capsys.readouterr().out
    assert cli.main(["create-user", "OPS@example.com", "--password", "pw"]) == 1
    assert "already exists" in capsys.readouterr().out
    assert cli.main(["cleanup"]) == 0
    assert "Refresh tokens removed: 0 expired, 0 revoked" in capsys.readouterr().out


def test_no_command_prints_help(settings, capsys):
    assert cli.main([]) == 0
    assert "usage" in capsys.readouterr().out.lower()
