import errno
import io

import pytest

import nvram
from nvram import NVRAMImage, Signature, make_partition, encode_config
from nvram_tool import DEFAULT_NVRAM_SIZE, main, of_nvram_size, read_nvram, resolve_of_node


@pytest.fixture
def nvram_file(tmp_path):
    path = tmp_path / 'nvram'
    path.write_bytes(
        make_partition(Signature.SP, 'ibm,es-logs', b'\x00\x00\x00\x00') +
        make_partition(Signature.System, 'common', encode_config(['foo=bar', 'baz=qux']), blocks=4) +
        make_partition(Signature.OF, 'of-config', encode_config(['foo=of']), blocks=2) +
        make_partition(Signature.Free, 'wwwwwwwwwwww', blocks=4)
    )
    return path


def run(path, *args):
    return main(['--nvram-file', str(path)] + list(args))


def test_no_arguments_prints_help(capsys):
    assert main([]) == 1
    assert '--print-config' in capsys.readouterr().out


def test_partitions(nvram_file, capsys):
    assert run(nvram_file, '--partitions') == 0
    lines = capsys.readouterr().out.splitlines()
    assert lines[0] == ' # Sig Chk  Len  Name'
    assert lines[2].endswith('0004 common')
    assert len(lines) == 5


def test_print_config_var(nvram_file, capsys):
    assert run(nvram_file, '--print-config=foo') == 0
    assert capsys.readouterr().out.splitlines() == ['bar', 'of']

    assert run(nvram_file, '--print-config=foo', '-p', 'of-config') == 0
    assert capsys.readouterr().out.splitlines() == ['of']


def test_print_config_partition(nvram_file, capsys):
    assert run(nvram_file, '--print-config', '-p', 'common') == 0
    assert capsys.readouterr().out.splitlines() == [
        '"common" Partition',
        '-' * 21,
        'foo=bar',
        'baz=qux',
        '',
    ]


def test_print_config_all(nvram_file, capsys):
    assert run(nvram_file, '--print-config') == 0
    out = capsys.readouterr().out
    assert '"common" Partition' in out
    assert '"of-config" Partition' in out


def test_print_config_missing(nvram_file, capsys, caplog):
    assert run(nvram_file, '--print-config=nope') == 1
    assert 'config var nope not found' in caplog.text
    assert run(nvram_file, '--print-config', '-p', 'ibm,setupcfg') == 1


def test_update_config(nvram_file, capsys):
    before = nvram_file.read_bytes()
    assert run(nvram_file, '--update-config', 'baz=changed', '--print-config=baz') == 0
    assert capsys.readouterr().out.splitlines() == ['changed']

    after = nvram_file.read_bytes()
    assert len(after) == len(before)
    assert after[:32] == before[:32]
    assert after[96:] == before[96:]
    image = NVRAMImage(after)
    assert image.config('common').items() == [('foo', b'bar'), ('baz', b'changed')]
    assert image.find(name='common').checksum_valid


def test_update_config_missing_entry(nvram_file, caplog):
    before = nvram_file.read_bytes()
    assert run(nvram_file, '--update-config', 'nope=1', '-p', 'common') == 1
    assert nvram_file.read_bytes() == before
    assert 'config var nope does not exist' in caplog.text


def test_write_error_does_not_stop_others(nvram_file, monkeypatch, capsys, caplog):
    def fail(f, update):
        raise OSError(errno.EIO, 'Input/output error')
    monkeypatch.setattr(nvram, 'write_partition', fail)

    before = nvram_file.read_bytes()
    assert run(nvram_file, '--update-config', 'baz=changed', '--print-event-scan') == 1
    assert 'Input/output error' in caplog.text
    assert 'Number of Logs: 0' in capsys.readouterr().out
    assert nvram_file.read_bytes() == before


def test_dump(nvram_file, capsys):
    assert run(nvram_file, '--dump', 'of-config') == 0
    lines = capsys.readouterr().out.splitlines()
    assert len(lines) == 2
    assert lines[0].startswith('0x00000000  50')


def test_failing_action_does_not_stop_others(nvram_file, capsys):
    assert run(nvram_file, '--print-vpd', '--print-event-scan') == 1
    assert 'Number of Logs: 0' in capsys.readouterr().out


def test_missing_file(tmp_path, caplog):
    assert run(tmp_path / 'missing', '--partitions') == 1
    assert 'cannot open' in caplog.text


def test_read_nvram_pads_short_read(caplog):
    assert read_nvram(io.BytesIO(b'\x01' * 32), 64) == bytearray(b'\x01' * 32 + b'\x00' * 32)
    assert 'expected 64 bytes, but only read 32!' in caplog.text


def test_read_nvram_default_size_trusts_device():
    assert len(read_nvram(io.BytesIO(b'\x01' * 100), DEFAULT_NVRAM_SIZE)) == 100


def test_of_nvram_size(tmp_path):
    (tmp_path / 'nvram').mkdir()
    (tmp_path / 'nvram' / '#bytes').write_bytes(b'\x00\x00\x10\x00')
    assert of_nvram_size(str(tmp_path)) == 0x1000


def test_of_nvram_size_through_alias(tmp_path):
    (tmp_path / 'aliases').mkdir()
    (tmp_path / 'aliases' / 'nvram').write_bytes(b'/pci/nvram\x00')
    node = tmp_path / 'pci@80000000' / 'nvram@7'
    node.mkdir(parents=True)
    (node / '#bytes').write_bytes(b'\x00\x00\x20\x00')
    assert of_nvram_size(str(tmp_path)) == 0x2000


def test_of_nvram_size_default(tmp_path, caplog):
    assert of_nvram_size(str(tmp_path)) == DEFAULT_NVRAM_SIZE
    assert 'Could not determine nvram size' in caplog.text


def test_resolve_of_node(tmp_path):
    (tmp_path / 'foo@0').mkdir()
    (tmp_path / 'bar@1').mkdir()
    (tmp_path / 'bar@2').mkdir()
    assert resolve_of_node(str(tmp_path), 'foo@0') == 'foo@0'
    assert resolve_of_node(str(tmp_path), 'foo') == 'foo@0'
    assert resolve_of_node(str(tmp_path), '@0') == 'foo@0'
    assert resolve_of_node(str(tmp_path), 'bar') is None
    assert resolve_of_node(str(tmp_path), 'baz') is None
