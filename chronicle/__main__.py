# Chronicle
# Copyright (C) 2024 The Chronicle developers
#
# This program is free software; you can redistribute it and/or
# modify it under the terms of the GNU General Public License
# as published by the Free Software Foundation; version 3
# of the License or (at your option) any later version of
# the License.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program; if not, write to the Free Software
# Foundation, Inc., 51 Franklin Street, Fifth Floor, Boston,
# MA  02110-1301, USA.

"""Chronicle command-line handling."""

import argparse
import logging
import sys

from dateutil.parser import isoparse

from . import __version__
from .config import EngineConfig
from .engine import CalendarEngine
from .freebusy import freebusy_component
from .icalendar import parse_calendar
from .operations import PutResource
from .participants import unit_name

DEFAULT_USER = "mailto:chronicle@localhost"


def load_engine(paths, config, user=None):
    """Load calendar files into a new engine.

    Every series is stored in the collection of its organizer, or of
    ``user`` if it has none.
    """
    engine = CalendarEngine(config)
    owners = []
    for path in paths:
        with open(path, "rb") as f:
            payload = parse_calendar(f.read(), config.get_timezone())
        owner = payload.master.organizer or user or DEFAULT_USER
        engine.mutate(owner, unit_name(payload.uid), PutResource(payload))
        owners.append(owner)
    return (engine, owners)


def add_time_range_arguments(parser):
    parser.add_argument(
        "--start", type=isoparse, required=True, help="Start of the time range."
    )
    parser.add_argument(
        "--end", type=isoparse, required=True, help="End of the time range."
    )


def expand(args, config):
    (engine, owners) = load_engine([args.file], config, args.user)
    collection = args.user or owners[0]
    for occurrence in engine.materialize(collection, args.start, args.end):
        print(
            "%s\t%s\t%s%s"
            % (
                occurrence.start.isoformat(),
                occurrence.end.isoformat() if occurrence.end else "",
                occurrence.summary or "",
                " (modified)" if occurrence.overridden else "",
            )
        )
    return 0


def freebusy(args, config):
    (engine, unused_owners) = load_engine(args.files, config, args.user)
    periods = engine.free_busy(args.user, args.start, args.end)
    cal = freebusy_component(periods, args.start, args.end, organizer=args.user)
    sys.stdout.write(cal.to_ical().decode("utf-8"))
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser()

    parser.add_argument(
        "--version",
        action="version",
        version="%(prog)s " + ".".join(map(str, __version__)),
    )
    parser.add_argument(
        "--config", type=argparse.FileType("r"), help="Path to configuration file."
    )
    parser.add_argument(
        "--timezone", type=str, help="Timezone for floating times and all-day events."
    )

    subparsers = parser.add_subparsers(help="Subcommands", dest="subcommand")
    expand_parser = subparsers.add_parser(
        "expand", help="Print the occurrences of a recurring event"
    )
    expand_parser.add_argument("file", help="iCalendar file.")
    expand_parser.add_argument(
        "--user", type=str, help="Calendar user whose view to print."
    )
    add_time_range_arguments(expand_parser)

    freebusy_parser = subparsers.add_parser(
        "freebusy", help="Print free/busy information for a calendar user"
    )
    freebusy_parser.add_argument("files", nargs="+", help="iCalendar files.")
    freebusy_parser.add_argument(
        "--user", type=str, required=True, help="Calendar user address."
    )
    add_time_range_arguments(freebusy_parser)

    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO)

    if args.config is not None:
        config = EngineConfig.from_file(args.config)
    else:
        config = EngineConfig()
    if args.timezone is not None:
        config.set_timezone(args.timezone)

    if args.subcommand == "expand":
        return expand(args, config)
    elif args.subcommand == "freebusy":
        return freebusy(args, config)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
