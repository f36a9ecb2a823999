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
"""
* Overview of the flux codebase:
* Docs and definition of input data are in argparse_cli.py; parsed values end up in the "Params" class of configuration.py.
* Control flow starts in main(), below, which kicks off a "Job".
* A Job runs one task per dataset via run_tasks(), strictly one dataset after another.
* The 'snapshot' command is in snapshot_dataset(): snapshot_chain.py creates the new snapshot and resolves its
  predecessor, then transfer.py streams 'zfs send' into 'ssh <target> zfs receive <dest>'.
* The 'purge' command is in purge_dataset(), which delegates to the retention policy in retention.py.
* The order of snapshots is defined by catalog.py; all 'zfs' commands are run by zfs_backend.py.
"""

from __future__ import (
    annotations,
)
import argparse
import os
import subprocess
import sys
from datetime import (
    datetime,
)
from logging import (
    Logger,
)
from typing import (
    Any,
    Callable,
)

from flux_main.argparse_cli import (
    PURGE_CMD,
    SNAPSHOT_CMD,
    argument_parser,
)
from flux_main.catalog import (
    SnapshotEntry,
)
from flux_main.configuration import (
    LogParams,
    Params,
)
from flux_main.loggers import (
    get_logger,
    get_simple_logger,
    reset_logger,
)
from flux_main.retention import (
    PurgeReport,
    purge,
)
from flux_main.snapshot_chain import (
    create_and_resolve,
    snapshot_label,
)
from flux_main.transfer import (
    transfer,
)
from flux_main.utils import (
    DIE_STATUS,
    LOG_TRACE,
    PROG_NAME,
    current_datetime,
    xfinally,
)
from flux_main.zfs_backend import (
    Dataset,
    ZfsBackend,
)


#############################################################################
def main() -> None:
    """API for command line clients."""
    try:
        run_main(argument_parser().parse_args(), sys.argv)
    except subprocess.CalledProcessError as e:
        sys.exit(e.returncode)


def run_main(args: argparse.Namespace, sys_argv: list[str] | None = None, log: Logger | None = None) -> None:
    """API for Python clients; visible for testing; may become a public API eventually."""
    Job().run_main(args, sys_argv, log)


#############################################################################
class Job:
    """Executes one flux run, processing each dataset of the command line as a separate task."""

    def __init__(self) -> None:
        self.params: Params
        self.backend: ZfsBackend
        self.now: datetime
        self.all_exceptions: list[str] = []
        self.all_exceptions_count: int = 0
        self.max_exceptions_to_summarize: int = 10000
        self.first_exception: BaseException | None = None
        self.num_snapshots_created: int = 0
        self.num_snapshots_sent: int = 0
        self.num_snapshots_destroyed: int = 0

        self.backend_factory: Callable[[Params], Any] | None = None  # for testing only
        self.now_fn: Callable[[], datetime] | None = None  # for testing only

    def run_main(self, args: argparse.Namespace, sys_argv: list[str] | None = None, log: Logger | None = None) -> None:
        """Sets up logging, validates the CLI arguments, and executes the command on each dataset."""
        owns_log: bool = log is None
        try:
            log_params = LogParams(args)
            log = get_logger(log_params=log_params, log=log)
        except BaseException as e:
            get_simple_logger(PROG_NAME).error("Log init: %s", e, exc_info=False if isinstance(e, SystemExit) else True)
            raise
        assert log is not None
        # runs reset_logger() on exit, without masking exception raised in body of `with` block
        with xfinally(lambda: reset_logger(log) if owns_log else None):

            def log_error_on_exit(error: Any, status_code: Any, exc_info: bool = False) -> None:
                log.error("%s%s", f"Exiting {PROG_NAME} with status code {status_code}. Cause: ", error, exc_info=exc_info)

            try:
                log.info("CLI arguments: %s %s", " ".join(sys_argv or []), f"[euid: {os.geteuid()}]")
                log.log(LOG_TRACE, "Parsed CLI arguments: %s", args)
                self.params = p = Params(args, sys_argv or [], log_params, log)
                self.backend = self.new_backend(p)
                self.now = current_datetime() if self.now_fn is None else self.now_fn()
                self.run_tasks()
            except subprocess.CalledProcessError as e:
                log_error_on_exit(e, e.returncode)
                raise
            except SystemExit as e:
                log_error_on_exit(e, e.code)
                raise
            except (OSError, UnicodeDecodeError) as e:
                log_error_on_exit(e, DIE_STATUS)
                raise SystemExit(DIE_STATUS) from e
            except BaseException as e:
                log_error_on_exit(e, DIE_STATUS, exc_info=True)
                raise SystemExit(DIE_STATUS) from e
            log.info("Success. Goodbye!")
            sys.stderr.flush()

    def new_backend(self, p: Params) -> ZfsBackend:
        """Returns the adapter that runs 'zfs' commands for this job."""
        if self.backend_factory is not None:
            return self.backend_factory(p)
        return ZfsBackend(p.log, zfs_program=p.zfs_program, zfs_send_program_opts=p.zfs_send_program_opts)

    def run_tasks(self) -> None:
        """Runs the command on each dataset, one after another, applying the --skip-on-error policy."""
        p, log = self.params, self.params.log
        self.all_exceptions = []
        self.all_exceptions_count = 0
        self.first_exception = None
        for dataset_name in p.datasets:
            task_description: str = f"{p.command} {dataset_name}"
            if len(p.datasets) > 1:
                log.info("Starting task: %s", task_description + " ...")
            try:
                self.run_task(dataset_name)
            except (subprocess.CalledProcessError, SystemExit, OSError, UnicodeDecodeError) as e:
                if p.skip_on_error == "fail":
                    raise
                log.error("%s", e)
                self.append_exception(e, "task", task_description)
        self.print_stats()
        error_count = self.all_exceptions_count
        if error_count > 0:
            msgs = "\n".join([f"{i + 1}/{error_count}: {e}" for i, e in enumerate(self.all_exceptions)])
            log.error("%s", f"Tolerated {error_count} errors. Error Summary: \n{msgs}")
            assert self.first_exception is not None
            raise self.first_exception

    def append_exception(self, e: BaseException, task_name: str, task_description: str) -> None:
        """Records and logs an exception that was encountered while running a task."""
        self.first_exception = self.first_exception or e
        if len(self.all_exceptions) < self.max_exceptions_to_summarize:  # cap max memory consumption
            self.all_exceptions.append(str(e))
        self.all_exceptions_count += 1
        self.params.log.error(f"#{self.all_exceptions_count}: Done with %s: %s", task_name, task_description)

    def run_task(self, dataset_name: str) -> None:
        """Runs the command of this job on a single dataset."""
        dataset: Dataset = self.backend.get_dataset(dataset_name)
        if self.params.command == SNAPSHOT_CMD:
            self.snapshot_dataset(dataset)
        else:
            assert self.params.command == PURGE_CMD
            self.purge_dataset(dataset)

    def snapshot_dataset(self, dataset: Dataset) -> None:
        """Creates a new snapshot of the dataset and, if requested, sends it to the ssh target."""
        p = self.params
        label: str = snapshot_label(self.now)
        snapshot, predecessor = create_and_resolve(
            dataset, label, initial=p.initial, creation_source=p.creation_source, log=p.log
        )
        self.num_snapshots_created += 1
        if p.is_sending:
            pred: SnapshotEntry | None = predecessor
            transfer(p.transfer_spec(snapshot, pred.dataset if pred is not None else None), log=p.log)
            self.num_snapshots_sent += 1

    def purge_dataset(self, dataset: Dataset) -> None:
        """Destroys the snapshots of the dataset that are older than --older-than; a failed destroy is recorded as an error
        of the run, without aborting the batch, regardless of --skip-on-error."""
        p = self.params
        report: PurgeReport = purge(
            dataset, p.older_than, dry_run=p.dry_run, creation_source=p.creation_source, log=p.log, now_fn=lambda: self.now
        )
        self.num_snapshots_destroyed += len(report.destroyed)
        p.log.info("Purge: %s", report.summary())
        if report.num_errors > 0:
            names: str = ", ".join(entry.qualified_name for entry, _ in report.failed)
            e = SystemExit(f"Cannot destroy {report.num_errors} snapshots of {dataset.name}: {names}")
            e.code = DIE_STATUS
            p.log.error("%s", e)
            self.append_exception(e, "task", f"{p.command} {dataset.name}")

    def print_stats(self) -> None:
        """Logs how many snapshots were created, sent and destroyed by this job."""
        p = self.params
        if p.command == SNAPSHOT_CMD:
            msg = f"Created {self.num_snapshots_created} snapshots"
            if p.is_sending:
                msg += f", sent {self.num_snapshots_sent} snapshots to {p.target}:{p.destination}"
        elif p.dry_run:
            msg = "Dry run; destroyed no snapshots"
        else:
            msg = f"Destroyed {self.num_snapshots_destroyed} snapshots"
        p.log.info("%s", msg + ".")


#############################################################################
if __name__ == "__main__":
    main()
