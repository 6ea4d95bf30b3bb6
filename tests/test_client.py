from __future__ import annotations

import os

import pytest

from ltftp import (
    ProtocolError,
    RemoteError,
    TFTPError,
    TransportError,
    pack_ack,
    pack_dat,
    unpack_rq,
)
from ltftp_client import TFTPCmdShell, client_get_file, client_put_file, main
from ltftp_server import serve_request
from ltftp_transfer import Session


@pytest.fixture
def server(link, tmp_path):
    """Runs one server transfer on the remote end of the link."""
    root = tmp_path / "root"
    root.mkdir()
    session = Session(link.remote, tag="lsrv", timeout=link.session.timeout)
    future = link.start(serve_request, session, str(root))
    return root, future


def test_put_then_get(link, server, tmp_path):
    root, future = server
    content = os.urandom(1500)
    local = tmp_path / "local.bin"
    local.write_bytes(content)

    result = client_put_file(link.session, str(local), "remote.bin")
    assert (result.blocks, result.nbytes) == (3, 1500)
    assert future.result(timeout=5) is True
    assert (root / "remote.bin").read_bytes() == content

    copy = tmp_path / "copy.bin"
    future = link.start(serve_request, Session(link.remote, tag="lsrv", timeout=5.0), str(root))
    result = client_get_file(link.session, "remote.bin", str(copy))
    assert result.nbytes == 1500
    assert future.result(timeout=5) is True
    assert copy.read_bytes() == content


def test_get_missing_file(link, server, tmp_path):
    _, future = server
    with pytest.raises(RemoteError) as excinfo:
        client_get_file(link.session, "missing.txt", str(tmp_path / "missing.txt"))
    assert excinfo.value.error_code == TFTPError.FILE_NOT_FOUND.code
    assert future.result(timeout=5) is False


def test_put_outside_root(link, server, tmp_path):
    _, future = server
    local = tmp_path / "local.bin"
    local.write_bytes(b"x")

    with pytest.raises(RemoteError) as excinfo:
        client_put_file(link.session, str(local), "../escape.bin")
    assert excinfo.value.error_code == TFTPError.ACCESS_VIOLATION.code
    assert future.result(timeout=5) is False
    assert not (tmp_path / "escape.bin").exists()


def test_put_requires_ack_zero(link, tmp_path):
    local = tmp_path / "local.bin"
    local.write_bytes(b"x")
    future = link.start(client_put_file, link.session, str(local), "remote.bin")

    assert unpack_rq(link.recv()) == ("remote.bin", "octet")
    link.reply(pack_ack(3))
    with pytest.raises(ProtocolError, match="#0"):
        future.result(timeout=5)


def test_put_requires_ack(link, tmp_path):
    local = tmp_path / "local.bin"
    local.write_bytes(b"x")
    future = link.start(client_put_file, link.session, str(local), "remote.bin")

    link.recv()
    link.reply(pack_dat(1, b""))
    with pytest.raises(ProtocolError):
        future.result(timeout=5)


def test_put_missing_local_file(link, tmp_path):
    with pytest.raises(FileNotFoundError):
        client_put_file(link.session, str(tmp_path / "nope.bin"), "remote.bin")
    link.assert_silent()


def test_shell_put_and_get(link, server, tmp_path, monkeypatch):
    root, future = server
    monkeypatch.chdir(tmp_path)
    (tmp_path / "notes.txt").write_bytes(b"some notes")
    shell = TFTPCmdShell(link.session, link.remote.getsockname())

    assert shell.onecmd("put notes.txt") is None
    assert future.result(timeout=5) is True
    assert (root / "notes.txt").read_bytes() == b"some notes"

    future = link.start(serve_request, Session(link.remote, tag="lsrv", timeout=5.0), str(root))
    (root / "notes.txt").write_bytes(b"newer notes")
    assert shell.run_operation(client_get_file, "notes.txt") is True
    assert future.result(timeout=5) is True
    assert (tmp_path / "notes.txt").read_bytes() == b"newer notes"


def test_shell_reports_failures_and_continues(link, server, tmp_path, monkeypatch):
    _, future = server
    monkeypatch.chdir(tmp_path)
    shell = TFTPCmdShell(link.session, link.remote.getsockname())

    assert shell.run_operation(client_get_file, "missing.txt") is False
    assert future.result(timeout=5) is False
    assert shell.postcmd(None, "get missing.txt") is False


def test_shell_stops_when_session_dies(link):
    shell = TFTPCmdShell(link.session, link.remote.getsockname())

    def broken(session):
        session.alive = False
        raise TransportError("Failed to send data")

    assert shell.run_operation(broken) is False
    assert shell.postcmd(None, "put x") is True


def test_shell_commands(link, capsys):
    shell = TFTPCmdShell(link.session, link.remote.getsockname())

    shell.onecmd("bogus")
    assert "put file" in capsys.readouterr().out
    shell.onecmd("put")
    assert "Usage" in capsys.readouterr().out
    assert shell.onecmd("exit") is True
    assert shell.onecmd("q") is True
    link.assert_silent()


@pytest.fixture
def operations(monkeypatch):
    """Records the transfers the command line asks the shell for."""
    calls = []

    def record(shell, operation, *args):
        calls.append((operation, *args))
        return True

    monkeypatch.setattr(TFTPCmdShell, "run_operation", record)
    return calls


def test_main_get_name_with_spaces(operations):
    main(["127.0.0.1", "6969", "-c", "get", "boot image.bin"])
    assert operations == [(client_get_file, "boot image.bin", "boot image.bin")]


def test_main_put_name_with_spaces(operations, tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "boot image.bin").write_bytes(b"x")

    main(["127.0.0.1", "6969", "-c", "put", "boot image.bin"])
    assert operations == [(client_put_file, "boot image.bin", "boot image.bin")]


def test_main_put_missing_file(operations, tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)

    main(["127.0.0.1", "6969", "-c", "put", "nope.bin"])
    assert operations == []
    assert "File not found" in capsys.readouterr().out
