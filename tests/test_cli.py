"""
tests/test_cli.py -- Tests for the administrator command line in main.py.

Each test points --db at a fresh SQLite file under tmp_path.
"""

from __future__ import annotations

import json

import pytest

from main import main
from tests.factories import new_ids


@pytest.fixture
def db(tmp_path) -> list[str]:
    return ["--db", f"sqlite:///{tmp_path / 'mdm.db'}", "--actor", "carol"]


def test_create_and_list(db, capsys):
    full_id, short_id = new_ids()
    assert main(db + ["create-device", full_id, short_id, "--notes", "Lab PC"]) == 0
    assert "PENDING_ENROLLMENT" in capsys.readouterr().out

    assert main(db + ["list-devices", "--json"]) == 0
    [row] = json.loads(capsys.readouterr().out)
    assert row["full_id"] == full_id
    assert row["created_by"] == "carol"
    assert row["notes"] == "Lab PC"
    assert "token_hash" not in row


def test_list_empty(db, capsys):
    assert main(db + ["list-devices"]) == 0
    assert "No devices." in capsys.readouterr().out


def test_duplicate_reports_error(db, capsys):
    full_id, short_id = new_ids()
    main(db + ["create-device", full_id, short_id])
    assert main(db + ["create-device", full_id, short_id]) == 1
    assert "[!]" in capsys.readouterr().err


def test_invalid_transition_reports_error(db, capsys):
    full_id, short_id = new_ids()
    main(db + ["create-device", full_id, short_id])
    capsys.readouterr()
    assert main(db + ["suspend", full_id]) == 1
    assert "[!]" in capsys.readouterr().err


def test_block_then_filter(db, capsys):
    full_id, short_id = new_ids()
    main(db + ["create-device", full_id, short_id])
    assert main(db + ["block", full_id, "--reason", "stolen"]) == 0
    assert "BLOCKED" in capsys.readouterr().out
    assert main(db + ["list-devices", "--status", "BLOCKED"]) == 0
    assert full_id in capsys.readouterr().out


def test_delete_and_unknown(db, capsys):
    full_id, short_id = new_ids()
    main(db + ["create-device", full_id, short_id])
    assert main(db + ["delete-device", full_id]) == 0
    assert main(db + ["delete-device", full_id]) == 1
    assert "[!]" in capsys.readouterr().err


def test_expire_commands(db, capsys):
    assert main(db + ["expire-commands"]) == 0
    assert "Expired 0 command(s)" in capsys.readouterr().out


def test_unknown_subcommand_exits(db):
    with pytest.raises(SystemExit):
        main(db + ["explode"])
