import pytest

import main
from errors import ValidationError


def test_parser_refresh_targets_are_exclusive():
    parser = main.build_parser()

    args = parser.parse_args(['--db', 'x.db', 'refresh', '--group', 'team'])
    assert args.db == 'x.db'
    assert args.group == 'team'
    assert not args.all

    with pytest.raises(SystemExit):
        parser.parse_args(['refresh', '--all', '--feed', 'abc'])


def test_scope_from_group_or_current_user(monkeypatch):
    parser = main.build_parser()

    assert main._scope_args(parser.parse_args(['list', '--group', 'team'])) == {'group_id': 'team'}

    monkeypatch.setattr(main.config, 'CURRENT_USER_ID', 'alice')
    assert main._scope_args(parser.parse_args(['list'])) == {'user_id': 'alice'}

    monkeypatch.setattr(main.config, 'CURRENT_USER_ID', None)
    with pytest.raises(ValidationError):
        main._scope_args(parser.parse_args(['list']))


@pytest.mark.asyncio
async def test_commands_against_empty_database(tmp_path, capsys):
    parser = main.build_parser()
    db_path = str(tmp_path / "cli.db")

    assert await main.run_command(parser.parse_args(['--db', db_path, 'list', '--group', 'team'])) == 0
    assert await main.run_command(parser.parse_args(['--db', db_path, 'refresh', '--all'])) == 0
    assert await main.run_command(parser.parse_args(['--db', db_path, 'migrate-ids'])) == 0

    out = capsys.readouterr().out
    assert "No feeds registered" in out
    assert "No feeds to update" in out
    assert "Migrated 0, skipped 0 of 0 items" in out
