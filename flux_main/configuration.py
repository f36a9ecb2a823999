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
"""Configuration subsystem; All CLI option/parameter values are reachable from the "Params" class.

All validation happens here, once, before any dataset is touched, so that configuration errors never leave partial side
effects behind.
"""

from __future__ import (
    annotations,
)
import argparse
import re
from datetime import (
    timedelta,
)
from logging import (
    Logger,
)
from typing import (
    Final,
)

from flux_main.argparse_cli import (
    PURGE_CMD,
    PURGE_OLDER_THAN_DEFAULT,
    SNAPSHOT_CMD,
)
from flux_main.catalog import (
    CREATION_SOURCE_PROPERTY,
)
from flux_main.transfer import (
    TransferSpec,
    validate_identity_support,
    validate_transfer_config,
)
from flux_main.utils import (
    die,
    validate_dataset_name,
)
from flux_main.zfs_backend import (
    Dataset,
)


#############################################################################
class LogParams:
    """Option values for logging."""

    def __init__(self, args: argparse.Namespace) -> None:
        """Reads from ArgumentParser via args."""
        # immutable variables:
        if args.quiet:
            log_level: str = "ERROR"
        elif args.verbose >= 2:
            log_level = "TRACE"
        elif args.verbose >= 1 or args.debug:
            log_level = "DEBUG"
        else:
            log_level = "INFO"
        self.log_level: Final[str] = log_level
        self.quiet: Final[bool] = args.quiet
        self.log_file: Final[str | None] = args.log_file
        self.log_syslog_address: Final[str | None] = args.log_syslog_address
        self.log_syslog_socktype: Final[str] = args.log_syslog_socktype
        self.log_syslog_facility: Final[int] = args.log_syslog_facility
        self.log_syslog_prefix: Final[str] = args.log_syslog_prefix
        self.log_syslog_level: Final[str] = args.log_syslog_level

    def __repr__(self) -> str:
        return str(self.__dict__)


#############################################################################
class Params:
    """All parsed CLI options combined into a single bundle; simplifies passing around numerous settings and defaults."""

    def __init__(self, args: argparse.Namespace, sys_argv: list[str], log_params: LogParams, log: Logger) -> None:
        """Reads from ArgumentParser via args."""
        # immutable variables:
        assert args is not None
        assert isinstance(sys_argv, list)
        assert log_params is not None
        assert log is not None
        self.args: Final[argparse.Namespace] = args
        self.sys_argv: Final[list[str]] = sys_argv
        self.log_params: Final[LogParams] = log_params
        self.log: Final[Logger] = log
        self.one_or_more_whitespace_regex: Final[re.Pattern[str]] = re.compile(r"\s+")

        self.command: Final[str] = args.command
        if self.command not in (SNAPSHOT_CMD, PURGE_CMD):
            die(f"Unknown command: {self.command}")
        self.datasets: Final[list[str]] = list(args.datasets)
        for dataset in self.datasets:
            validate_dataset_name(dataset, "DATASET")
            if "@" in dataset or "#" in dataset:
                die(f"DATASET must be a filesystem or volume, not a snapshot or bookmark: {dataset}")
        if len(set(self.datasets)) != len(self.datasets):
            die(f"DATASET must not be specified more than once: {' '.join(self.datasets)}")
        self.skip_on_error: Final[str] = args.skip_on_error
        self.zfs_program: Final[str] = self.validate_arg_str(args.zfs_program)
        self.creation_source: Final[str] = getattr(args, "creation_source", CREATION_SOURCE_PROPERTY)

        # purge:
        self.older_than: Final[timedelta] = getattr(args, "older_than", PURGE_OLDER_THAN_DEFAULT)
        self.dry_run: Final[bool] = bool(getattr(args, "dry", False))

        # snapshot:
        self.target: Final[str] = getattr(args, "send", "")
        self.destination: Final[str] = getattr(args, "dest", "")
        self.uid: Final[int | None] = getattr(args, "uid", None)
        self.gid: Final[int | None] = getattr(args, "gid", None)
        self.initial: Final[bool] = bool(getattr(args, "init", False))
        self.ssh_program: Final[str] = self.validate_arg_str(getattr(args, "ssh_program", "ssh"))
        self.ssh_port: Final[int | None] = getattr(args, "ssh_port", None)
        self.ssh_extra_opts: Final[list[str]] = self.split_args(getattr(args, "ssh_extra_opts", ""))
        self.zfs_send_program_opts: Final[list[str]] = self.split_args(getattr(args, "zfs_send_program_opts", ""))
        self.zfs_recv_program_opts: Final[list[str]] = self.split_args(getattr(args, "zfs_recv_program_opts", ""))
        self.validate()

    def validate(self) -> None:
        """Rejects inconsistent option combinations; warns about options that have no effect."""
        if self.command == SNAPSHOT_CMD:
            validate_transfer_config(self.target, self.destination)
            if self.target:
                validate_dataset_name(self.destination, "--dest")
                if self.uid is not None or self.gid is not None:
                    validate_identity_support()
            elif self.destination:
                self.log.warning("%s", "--dest has no effect without --send")
            if self.ssh_port is not None and not 0 < self.ssh_port < 65536:
                die(f"--ssh-port must be in range [1, 65535], but got: {self.ssh_port}")
        if self.older_than <= timedelta(0):
            die(f"--older-than must be positive, but got: {self.older_than}")

    @property
    def is_sending(self) -> bool:
        return self.command == SNAPSHOT_CMD and bool(self.target)

    def transfer_spec(self, snapshot: Dataset, predecessor: Dataset | None) -> TransferSpec:
        """Returns the TransferSpec for sending ``snapshot`` per the CLI options."""
        return TransferSpec(
            target=self.target,
            destination=self.destination,
            uid=self.uid,
            gid=self.gid,
            snapshot=snapshot,
            predecessor=predecessor,
            ssh_program=self.ssh_program,
            ssh_port=self.ssh_port,
            ssh_extra_opts=tuple(self.ssh_extra_opts),
            zfs_program=self.zfs_program,
            zfs_recv_program_opts=tuple(self.zfs_recv_program_opts),
        )

    def split_args(self, text: str) -> list[str]:
        """Splits option string on runs of one or more whitespace into an option list."""
        text = text.strip()
        opts: list[str] = self.one_or_more_whitespace_regex.split(text) if text else []
        self._validate_quoting(opts)
        return opts

    def validate_arg_str(self, opt: str, allow_spaces: bool = False) -> str:
        """Returns validated option string, raising if missing or illegal."""
        if opt is None:
            die("Option must not be missing")
        if any(char.isspace() and (char != " " or not allow_spaces) for char in opt):
            die(f"Option must not contain a whitespace character{' other than space' if allow_spaces else ''}: {opt}")
        self._validate_quoting([opt])
        return opt

    @staticmethod
    def _validate_quoting(opts: list[str]) -> None:
        """Raises an error if any option contains a quote or shell metacharacter."""
        for opt in opts:
            if "'" in opt or '"' in opt or "$" in opt or "`" in opt:
                die(f"Option must not contain a single quote or double quote or dollar or backtick character: {opt}")
