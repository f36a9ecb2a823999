# Copyright 2024 Wolfgang Hoschek AT mac DOT com
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#
"""Unit tests for the 'zfs send | ssh zfs receive' pipeline; the ssh subprocess is mocked, except in TestTransferPipe,
which runs shell stand-ins for zfs and ssh over a real OS pipe."""

from __future__ import (
    annotations,
)
import logging
import os
import shlex
import signal
import subprocess
import tempfile
import unittest
from subprocess import (
    PIPE,
)
from typing import (
    Any,
)
from unittest.mock import (
    MagicMock,
    call,
    patch,
)

from flux_main.transfer import (
    TransferSpec,
    identity_kwargs,
    recv_cmd,
    transfer,
    validate_transfer_config,
)
from flux_main.utils import (
    DIE_STATUS,
)
from flux_main.zfs_backend import (
    SNAPSHOT_KIND,
    Dataset,
    ZfsBackend,
)
from flux_tests.fakes import (
    FakeBackend,
)


#############################################################################
def suite() -> unittest.TestSuite:
    test_cases = [
        TestRecvCmd,
        TestIdentity,
        TestTransfer,
        TestTransferPipe,
    ]
    return unittest.TestSuite(unittest.TestLoader().loadTestsFromTestCase(test_case) for test_case in test_cases)


def make_spec(backend: FakeBackend, incremental: bool = False, **kwargs: Any) -> TransferSpec:
    backend.add_dataset("tank/data")
    predecessor = backend.add_snapshot("tank/data@a", 100) if incremental else None
    snapshot = backend.add_snapshot("tank/data@b", 200)
    params: dict[str, Any] = {"target": "backup.example.com", "destination": "backup/data", "uid": None, "gid": None}
    params.update(kwargs)
    return TransferSpec(snapshot=snapshot, predecessor=predecessor, **params)  # type: ignore[arg-type]


#############################################################################
class TestRecvCmd(unittest.TestCase):

    def test_recv_cmd(self) -> None:
        spec = make_spec(FakeBackend())
        self.assertEqual(
            ["ssh", "-oBatchMode=yes", "-x", "-T", "backup.example.com", "zfs", "receive", "backup/data"], recv_cmd(spec)
        )

    def test_recv_cmd_with_options_quotes_remote_args(self) -> None:
        spec = make_spec(
            FakeBackend(),
            destination="backup/my data",
            ssh_program="/usr/bin/ssh",
            ssh_port=2222,
            ssh_extra_opts=("-oConnectTimeout=10",),
            zfs_program="/sbin/zfs",
            zfs_recv_program_opts=("-u",),
        )
        expected = ["/usr/bin/ssh", "-oBatchMode=yes", "-x", "-T", "-oConnectTimeout=10", "-p", "2222"]
        expected += ["backup.example.com", "/sbin/zfs", "receive", "-u", "'backup/my data'"]
        self.assertEqual(expected, recv_cmd(spec))

    def test_is_incremental(self) -> None:
        self.assertFalse(make_spec(FakeBackend()).is_incremental)
        self.assertTrue(make_spec(FakeBackend(), incremental=True).is_incremental)

    def test_validate_transfer_config(self) -> None:
        validate_transfer_config("", "")
        validate_transfer_config("", "backup/data")
        validate_transfer_config("host", "backup/data")
        with self.assertRaises(SystemExit) as cm:
            validate_transfer_config("host", "")
        self.assertEqual(DIE_STATUS, cm.exception.code)


#############################################################################
class TestIdentity(unittest.TestCase):

    @patch("os.getegid", return_value=1000)
    @patch("os.geteuid", return_value=1000)
    def test_same_identity_needs_no_switch(self, _euid: MagicMock, _egid: MagicMock) -> None:
        self.assertEqual({}, identity_kwargs(None, None))
        self.assertEqual({}, identity_kwargs(1000, 1000))

    @patch("os.getegid", return_value=0)
    @patch("os.geteuid", return_value=0)
    def test_root_switches_identity_and_drops_groups(self, _euid: MagicMock, _egid: MagicMock) -> None:
        self.assertEqual({"user": 1001, "group": 1002, "extra_groups": []}, identity_kwargs(1001, 1002))
        self.assertEqual({"user": 1001, "extra_groups": []}, identity_kwargs(1001, None))
        self.assertEqual({"group": 1002, "extra_groups": []}, identity_kwargs(None, 1002))

    @patch("os.getegid", return_value=1000)
    @patch("os.geteuid", return_value=1000)
    def test_unprivileged_switch_keeps_groups(self, _euid: MagicMock, _egid: MagicMock) -> None:
        self.assertEqual({"user": 0}, identity_kwargs(0, 1000))


#############################################################################
class TestTransfer(unittest.TestCase):

    def setUp(self) -> None:
        self.log = MagicMock(spec=logging.Logger)
        self.backend = FakeBackend()
        self.events = MagicMock()  # records the order of pipe writes, pipe close and wait
        self.proc = MagicMock()
        self.proc.stdin = self.events.stdin
        self.proc.wait = self.events.wait
        self.proc.wait.return_value = 0
        self.proc.poll.return_value = None

    def run_transfer(self, spec: TransferSpec) -> MagicMock:
        with patch("subprocess.Popen", return_value=self.proc) as mock_popen:
            transfer(spec, log=self.log)
        return mock_popen

    def assert_closed_before_wait(self) -> None:
        calls = self.events.mock_calls
        self.assertIn(call.stdin.close(), calls)
        self.assertLess(calls.index(call.stdin.close()), calls.index(call.wait()))

    def test_full_send(self) -> None:
        spec = make_spec(self.backend)
        mock_popen = self.run_transfer(spec)
        mock_popen.assert_called_once_with(recv_cmd(spec), stdin=PIPE, stdout=None, stderr=None)
        self.assertEqual([("send", "tank/data@b")], [c for c in self.backend.calls if c[0].endswith("send")])
        self.events.stdin.write.assert_called_once_with(self.backend.payload)
        self.assert_closed_before_wait()

    def test_incremental_send(self) -> None:
        spec = make_spec(self.backend, incremental=True)
        self.run_transfer(spec)
        self.assertEqual(
            [("incremental_send", "tank/data@a", "tank/data@b")], [c for c in self.backend.calls if c[0].endswith("send")]
        )
        self.assert_closed_before_wait()
        self.log.info.assert_any_call(
            "Sending %s (%s) to %s:%s", "tank/data@b", "incremental from tank/data@a", "backup.example.com", "backup/data"
        )

    def test_identity_is_passed_to_popen(self) -> None:
        spec = make_spec(self.backend, uid=1001, gid=1002)
        with patch("os.geteuid", return_value=0), patch("os.getegid", return_value=0):
            mock_popen = self.run_transfer(spec)
        kwargs = mock_popen.call_args[1]
        self.assertEqual(1001, kwargs["user"])
        self.assertEqual(1002, kwargs["group"])
        self.assertEqual([], kwargs["extra_groups"])

    def test_nonzero_ssh_exit_raises(self) -> None:
        self.proc.wait.return_value = 255
        spec = make_spec(self.backend)
        with self.assertRaises(subprocess.CalledProcessError) as cm:
            self.run_transfer(spec)
        self.assertEqual(255, cm.exception.returncode)
        self.assertEqual(recv_cmd(spec), cm.exception.cmd)
        self.assert_closed_before_wait()

    def test_send_failure_is_raised_after_wait(self) -> None:
        self.backend.fail_send = True
        with self.assertRaises(subprocess.CalledProcessError) as cm:
            self.run_transfer(make_spec(self.backend))
        self.assertEqual(["zfs", "send", "tank/data@b"], cm.exception.cmd)
        self.assert_closed_before_wait()
        self.events.stdin.write.assert_not_called()
        self.log.error.assert_called_once()

    def test_interrupt_terminates_ssh(self) -> None:
        spec = make_spec(self.backend)
        spec.snapshot.send = MagicMock(side_effect=KeyboardInterrupt)  # type: ignore[method-assign]
        with self.assertRaises(KeyboardInterrupt):
            self.run_transfer(spec)
        self.proc.send_signal.assert_called_once_with(signal.SIGTERM)
        self.assert_closed_before_wait()

    def test_spawn_failure_propagates(self) -> None:
        with patch("subprocess.Popen", side_effect=PermissionError("cannot switch identity")):
            with self.assertRaises(OSError):
                transfer(make_spec(self.backend), log=self.log)
        self.assertEqual([], [c for c in self.backend.calls if c[0].endswith("send")])

    def test_missing_destination_fails_before_spawn(self) -> None:
        with patch("subprocess.Popen") as mock_popen:
            with self.assertRaises(SystemExit):
                transfer(make_spec(self.backend, destination=""), log=self.log)
        mock_popen.assert_not_called()

    def test_interrupt_while_waiting_terminates_ssh(self) -> None:
        self.proc.wait.side_effect = [KeyboardInterrupt, 0]
        with self.assertRaises(KeyboardInterrupt):
            self.run_transfer(make_spec(self.backend))
        self.proc.send_signal.assert_called_once_with(signal.SIGTERM)
        self.assertEqual(2, self.proc.wait.call_count)
        self.assert_closed_before_wait()


#############################################################################
@unittest.skipIf(os.name != "posix", "requires /bin/sh")
class TestTransferPipe(unittest.TestCase):
    """Streams through a real OS pipe into an ssh stand-in that reads stdin until EOF, so a pipe that is not closed before
    the wait would hang the test."""

    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)
        self.log = MagicMock(spec=logging.Logger)

    def path(self, name: str) -> str:
        return os.path.join(self.tmpdir.name, name)

    def write_script(self, name: str, body: str) -> str:
        path: str = self.path(name)
        with open(path, "w", encoding="utf-8") as fd:
            fd.write("#!/bin/sh\n" + body + "\n")
        os.chmod(path, 0o755)
        return path

    def read(self, name: str) -> bytes:
        with open(self.path(name), "rb") as fd:
            return fd.read()

    def make_spec(self, zfs_body: str, ssh_exit_code: int = 0, incremental: bool = False) -> TransferSpec:
        zfs_program: str = self.write_script("zfs", zfs_body)
        received, args = shlex.quote(self.path("received")), shlex.quote(self.path("args"))
        ssh_program: str = self.write_script("ssh", f'echo "$@" > {args}\ncat > {received}\nexit {ssh_exit_code}')
        backend = ZfsBackend(self.log, zfs_program=zfs_program)
        predecessor = Dataset(backend, "tank/data@a", SNAPSHOT_KIND) if incremental else None
        snapshot = Dataset(backend, "tank/data@b", SNAPSHOT_KIND)
        return TransferSpec(
            target="backup.example.com",
            destination="backup/data",
            uid=None,
            gid=None,
            snapshot=snapshot,
            predecessor=predecessor,
            ssh_program=ssh_program,
        )

    def test_full_send(self) -> None:
        transfer(self.make_spec("printf 'stream %s' \"$*\""), log=self.log)
        self.assertEqual(b"stream send tank/data@b", self.read("received"))
        self.assertEqual(b"-oBatchMode=yes -x -T backup.example.com zfs receive backup/data\n", self.read("args"))

    def test_incremental_send(self) -> None:
        transfer(self.make_spec("printf 'stream %s' \"$*\"", incremental=True), log=self.log)
        self.assertEqual(b"stream send -i tank/data@a tank/data@b", self.read("received"))

    def test_stream_larger_than_pipe_buffer(self) -> None:
        transfer(self.make_spec("head -c 1048576 /dev/zero"), log=self.log)
        self.assertEqual(1048576, len(self.read("received")))

    def test_ssh_failure(self) -> None:
        spec = self.make_spec("printf 'stream'", ssh_exit_code=255)
        with self.assertRaises(subprocess.CalledProcessError) as cm:
            transfer(spec, log=self.log)
        self.assertEqual(255, cm.exception.returncode)
        self.assertEqual(b"stream", self.read("received"))

    def test_send_failure(self) -> None:
        spec = self.make_spec("echo 'cannot send' >&2; exit 1")
        with self.assertRaises(subprocess.CalledProcessError) as cm:
            transfer(spec, log=self.log)
        self.assertEqual(1, cm.exception.returncode)
        self.assertEqual([self.path("zfs"), "send", "tank/data@b"], cm.exception.cmd)
        self.assertEqual(b"", self.read("received"))  # ssh saw EOF and exited cleanly
