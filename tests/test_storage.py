"""Tests for saving received files and the command-line interface."""

import pytest
from click.testing import CliRunner

from peerdrop.cli import cli, format_size
from peerdrop.file.storage import safe_file_name, save_received_file


@pytest.mark.parametrize('name,expected', [
    ('report.pdf', 'report.pdf'),
    ('../../etc/passwd', 'passwd'),
    ('C:\\Users\\me\\notes.txt', 'notes.txt'),
    ('.hidden', 'hidden'),
    ('', 'received.bin'),
    ('..', 'received.bin'),
])
def test_safe_file_name(name, expected):
    assert safe_file_name(name) == expected


@pytest.mark.asyncio
async def test_save_avoids_collisions(tmp_path):
    directory = tmp_path / 'downloads'

    first = await save_received_file(b'one', 'report.pdf', directory)
    second = await save_received_file(b'two', 'report.pdf', directory)

    assert first.name == 'report.pdf'
    assert second.name == 'report (1).pdf'
    assert first.read_bytes() == b'one'
    assert second.read_bytes() == b'two'
    assert not list(directory.glob('*.part'))


@pytest.mark.asyncio
async def test_save_keeps_peer_name_inside_directory(tmp_path):
    path = await save_received_file(b'x', '../escape.txt', tmp_path / 'in')

    assert path.parent == tmp_path / 'in'


def test_format_size():
    assert format_size(512) == "512.0 B"
    assert format_size(10_000) == "9.8 KB"
    assert format_size(5 * 1024 * 1024) == "5.0 MB"


class TestCli:
    """Command-line argument handling that needs no network."""

    def test_help_lists_commands(self):
        result = CliRunner().invoke(cli, ['--help'])

        assert result.exit_code == 0
        for command in ('serve', 'init', 'send', 'receive'):
            assert command in result.output

    def test_invalid_relay_address(self):
        result = CliRunner().invoke(cli, ['--relay', 'no-port', 'init'])

        assert result.exit_code != 0
        assert 'host:port' in result.output

    def test_send_requires_existing_file(self, tmp_path):
        result = CliRunner().invoke(cli, ['send', str(tmp_path / 'missing.bin')])

        assert result.exit_code != 0

    def test_init_reports_unreachable_service(self):
        result = CliRunner().invoke(cli, ['--signaling-url', 'ws://127.0.0.1:9/ws', 'init'])

        assert result.exit_code == 1
