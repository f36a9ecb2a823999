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
"""Transfer pipeline; streams a full or incremental 'zfs send' into 'ssh <target> zfs receive <destination>'.

The ssh subprocess runs under the numeric uid/gid given in the TransferSpec so that the local-to-remote leg does not inherit
the (typically root) identity of flux itself. Its stdout and stderr are inherited from flux, so ssh and 'zfs receive'
progress and error messages surface immediately. The local 'zfs send' child writes directly into the stdin pipe of ssh;
the pipe blocks the sender whenever ssh reads slower than zfs sends.

The write end of the pipe is closed on every exit path before waiting for ssh, because 'zfs receive' only terminates once it
sees end-of-stream. A failing 'zfs send' does not kill ssh; the subsequent wait observes its own termination, and the send
error is raised afterwards. There are no retries here; callers decide whether to retry a dataset.
"""

from __future__ import (
    annotations,
)
import logging
import os
import shlex
import subprocess
from dataclasses import (
    dataclass,
)
from logging import (
    Logger,
)
from subprocess import (
    PIPE,
)
from typing import (
    IO,
    TYPE_CHECKING,
    Any,
    Final,
)

from flux_main.utils import (
    LOG_DEBUG,
    die,
    terminate_process,
    xfinally,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from flux_main.zfs_backend import (
        Dataset,
    )

# constants:
# disable interactive password prompts and X11 forwarding and pseudo-terminal allocation:
SSH_DEFAULT_OPTS: Final[tuple[str, ...]] = ("-oBatchMode=yes", "-x", "-T")

_log: Final[Logger] = logging.getLogger(__name__)


#############################################################################
@dataclass(frozen=True)
class TransferSpec:
    """Parameters for one transfer attempt; a missing predecessor means that the snapshot is sent in full."""

    target: str  # ssh host, optionally user@host
    destination: str  # dataset on the receiving host
    uid: int | None  # None means the identity of the current process
    gid: int | None
    snapshot: Dataset
    predecessor: Dataset | None = None
    ssh_program: str = "ssh"
    ssh_port: int | None = None
    ssh_extra_opts: tuple[str, ...] = ()
    zfs_program: str = "zfs"
    zfs_recv_program_opts: tuple[str, ...] = ()

    @property
    def is_incremental(self) -> bool:
        return self.predecessor is not None


def validate_transfer_config(target: str, destination: str) -> None:
    """A remote target requires a destination; raises SystemExit before anything is spawned otherwise."""
    if target and not destination:
        die(f"No destination dataset specified for remote target: {target}")


def validate_identity_support() -> None:
    """Running the ssh leg as another identity requires OS level user switching; refuses to silently ignore it."""
    if os.name != "posix" or not hasattr(os, "setuid") or not hasattr(os, "setgid"):
        die(f"Running the transfer under a numeric uid/gid is not supported on this platform: {os.name}")


def recv_cmd(spec: TransferSpec) -> list[str]:
    """Returns the local ssh command that runs 'zfs receive' on the target host.

    ssh concatenates its argv into a single remote shell string, so the remote command arguments are pre-quoted.
    """
    remote_cmd: list[str] = [spec.zfs_program, "receive"] + list(spec.zfs_recv_program_opts) + [spec.destination]
    port: list[str] = ["-p", str(spec.ssh_port)] if spec.ssh_port is not None else []
    ssh_cmd: list[str] = [spec.ssh_program] + list(SSH_DEFAULT_OPTS) + list(spec.ssh_extra_opts) + port + [spec.target]
    return ssh_cmd + [shlex.quote(arg) for arg in remote_cmd]


def identity_kwargs(uid: int | None, gid: int | None) -> dict[str, Any]:
    """Returns the subprocess.Popen() arguments that switch the child to the given uid and gid.

    Only a differing identity is requested, so that an unprivileged caller may still pass its own uid/gid. When switching
    away from root, the supplementary groups of root are dropped as well.
    """
    kwargs: dict[str, Any] = {}
    if gid is not None and gid != os.getegid():
        kwargs["group"] = gid
    if uid is not None and uid != os.geteuid():
        kwargs["user"] = uid
    if kwargs and os.geteuid() == 0:
        kwargs["extra_groups"] = []
    return kwargs


def transfer(spec: TransferSpec, log: Logger | None = None) -> None:
    """Streams spec.snapshot to spec.target; raises CalledProcessError if 'zfs send' or ssh fail, and OSError if ssh cannot
    be spawned."""
    log = _log if log is None else log
    validate_transfer_config(spec.target, spec.destination)
    if spec.uid is not None or spec.gid is not None:
        validate_identity_support()
    cmd: list[str] = recv_cmd(spec)
    send_cmd: list[str] = spec.snapshot.backend.send_cmd(spec.snapshot, spec.predecessor)
    mode: str = f"incremental from {spec.predecessor.name}" if spec.predecessor is not None else "full"
    log.info("Sending %s (%s) to %s:%s", spec.snapshot.name, mode, spec.target, spec.destination)
    log.log(LOG_DEBUG, "Executing: %s | %s [uid: %s, gid: %s]", shlex.join(send_cmd), " ".join(cmd), spec.uid, spec.gid)

    identity: dict[str, Any] = identity_kwargs(spec.uid, spec.gid)
    proc: subprocess.Popen = subprocess.Popen(cmd, stdin=PIPE, stdout=None, stderr=None, **identity)
    pipe: IO[bytes] | None = proc.stdin
    assert pipe is not None
    send_error: BaseException | None = None
    try:
        with xfinally(pipe.close):  # EOF lets 'zfs receive' terminate
            try:
                if spec.is_incremental:
                    assert spec.predecessor is not None
                    spec.snapshot.incremental_send(spec.predecessor, pipe)
                else:
                    spec.snapshot.send(pipe)
            except (subprocess.CalledProcessError, OSError) as e:
                send_error = e
        returncode: int = proc.wait()
    except BaseException:  # e.g. KeyboardInterrupt; don't leave the ssh child behind
        terminate_process(proc)
        proc.wait()
        raise
    if send_error is not None:
        log.error("Cannot send %s to %s (ssh exit status: %s): %s", spec.snapshot.name, spec.target, returncode, send_error)
        raise send_error
    if returncode != 0:
        raise subprocess.CalledProcessError(returncode, cmd)
    log.info("Sent %s to %s:%s", spec.snapshot.name, spec.target, spec.destination)
