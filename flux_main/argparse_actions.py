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
"""Custom argparse actions used by the 'flux' CLI; These helpers validate durations, numeric identities and names early, so
that configuration errors surface before any snapshot is created or destroyed."""

from __future__ import (
    annotations,
)
import argparse
from datetime import (
    timedelta,
)
from typing import (
    Any,
    Final,
    final,
)

from flux_main.utils import (
    parse_duration_to_milliseconds,
)

# constants:
MAX_NUMERIC_ID: Final[int] = 2**32 - 1  # uid_t and gid_t are 32 bit unsigned


#############################################################################
@final
class NonEmptyStringAction(argparse.Action):
    """Argparse action rejecting empty string values."""

    def __call__(
        self, parser: argparse.ArgumentParser, namespace: argparse.Namespace, values: Any, option_string: str | None = None
    ) -> None:
        """Strip whitespace and reject empty values."""
        values = values.strip()
        if values == "":
            parser.error(f"{option_string}: Empty string is not valid")
        setattr(namespace, self.dest, values)


#############################################################################
@final
class DurationAction(argparse.Action):
    """Parses a human readable duration such as '7d', '36 hours' or '2weeks' into a positive timedelta."""

    def __call__(
        self, parser: argparse.ArgumentParser, namespace: argparse.Namespace, values: Any, option_string: str | None = None
    ) -> None:
        """Rejects malformed and zero durations."""
        try:
            millis: int = parse_duration_to_milliseconds(values)
        except ValueError as e:
            parser.error(f"{option_string}: {e}. Examples: 7d, 36hours, 2weeks")
        if millis <= 0:
            parser.error(f"{option_string}: Duration must be positive: {values}")
        setattr(namespace, self.dest, timedelta(milliseconds=millis))


#############################################################################
@final
class NumericIdAction(argparse.Action):
    """Validates a numeric uid or gid; valid range: [0, 2**32 - 1]."""

    def __call__(
        self, parser: argparse.ArgumentParser, namespace: argparse.Namespace, values: Any, option_string: str | None = None
    ) -> None:
        """Rejects negative and oversized ids."""
        if not 0 <= values <= MAX_NUMERIC_ID:
            parser.error(f"{option_string}: valid range: [0, {MAX_NUMERIC_ID}], but got: {values}")
        setattr(namespace, self.dest, values)


#############################################################################
@final
class FileNameAction(argparse.Action):
    """Ensures file paths lack weird whitespace."""

    def __call__(
        self, parser: argparse.ArgumentParser, namespace: argparse.Namespace, values: Any, option_string: str | None = None
    ) -> None:
        """Rejects empty paths and paths containing whitespace other than space."""
        values = values.strip()
        if values == "":
            parser.error(f"{option_string}: Empty string is not valid")
        if any(char.isspace() and char != " " for char in values):
            parser.error(f"{option_string}: Invalid file name '{values}': must not contain whitespace other than space.")
        setattr(namespace, self.dest, values)
