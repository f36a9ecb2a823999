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
"""Various small tools for use in tests; Everything in this module relies only on the Python standard library."""

from __future__ import (
    annotations,
)
import contextlib
import inspect
import io
import logging
import types
import unittest
from collections.abc import (
    Iterator,
)
from typing import (
    Callable,
)


@contextlib.contextmanager
def suppress_output() -> Iterator[None]:
    """Silence stdout/stderr and temporarily disable logging to keep test output clean."""
    with contextlib.redirect_stdout(io.StringIO()), contextlib.redirect_stderr(io.StringIO()):
        old_disable = logging.root.manager.disable
        try:
            logging.disable(logging.CRITICAL)
            yield
        finally:
            logging.disable(old_disable)


@contextlib.contextmanager
def capture_stdout() -> Iterator[io.StringIO]:
    """Capture stdout output for later inspection within a test."""
    buf = io.StringIO()
    with contextlib.redirect_stdout(buf):
        yield buf


#############################################################################
class TestSuiteCompleteness(unittest.TestCase):
    """Verifies each test module's suite() includes all locally defined test classes to avoid accidentally orphaned tests."""

    def __init__(
        self,
        method_name: str = "runTest",
        modules: list[types.ModuleType] | None = None,
        class_predicate: Callable[[type[unittest.TestCase]], bool] | None = None,
    ) -> None:
        super().__init__(method_name)
        self.modules = modules or []
        self.class_predicate = class_predicate or (lambda _cls: False)

    def test_all_modules_have_a_complete_suite(self) -> None:
        failures: list[str] = []
        for module in self.modules:
            local_classes: set[str] = set()
            for _, obj in inspect.getmembers(module, inspect.isclass):
                if issubclass(obj, unittest.TestCase) and obj.__module__ == module.__name__ and self.class_predicate(obj):
                    local_classes.add(obj.__name__)

            # flatten nested suites
            included_classes: set[str] = set()
            stack: list[unittest.TestSuite] = [module.suite()]
            while stack:
                suite = stack.pop()
                for testcase in suite:
                    if isinstance(testcase, unittest.TestSuite):
                        stack.append(testcase)
                    else:
                        included_classes.add(testcase.__class__.__name__)

            missing_classes = sorted(local_classes.difference(included_classes))
            if missing_classes:
                location = getattr(module, "__file__", module.__name__)
                failures.append(f"- {module.__name__} ({location}): missing from suite(): {', '.join(missing_classes)}.")
        if failures:
            self.fail("Found test classes not included in their module suite():\n" + "\n".join(failures))
