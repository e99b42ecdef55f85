#!/usr/bin/env python3

import sys
import argparse
import logging
from pathlib import Path
from typing import List, Optional

from cli_common import require_input, setup_logging
from extract_pack import kcap_reader
from kcap_format import DEFAULT_PASSWORD, KcapError

__version__ = "1.0.0"


def list_files(pak: kcap_reader) -> None:
    print(f"found {len(pak)} files:")
    for i, entry in enumerate(pak):
        flag = "E" if entry.encrypted else "-"
        print(f"  {i:>5} {flag} {entry.name:<40} {entry.offset:>8x} {entry.size:>8}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="list a KCAP .Pack archive or dump one entry to stdout",
    )
    parser.add_argument("input", type=Path, help="input pack file")
    parser.add_argument("name", nargs="?", help="entry name (or #index) to write to stdout")
    parser.add_argument(
        "-p", "--password", default=DEFAULT_PASSWORD,
        help=f"pack password (default: {DEFAULT_PASSWORD})",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="verbose output")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    if not require_input(args.input, "input pack"):
        return 1

    try:
        with kcap_reader.open(args.input, args.password) as pak:
            if args.name is None:
                list_files(pak)
                return 0

            if args.name.startswith("#"):
                index = int(args.name[1:])
            else:
                index = pak.find(args.name)
                if index is None:
                    logging.error(f"file '{args.name}' not found")
                    return 1

            sys.stdout.buffer.write(pak.read_entry(index))
            return 0

    except (KcapError, ValueError, OSError) as e:
        logging.error(f"{args.input}: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
