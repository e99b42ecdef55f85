#!/usr/bin/env python3

import sys
import argparse
import logging
from functools import partial
from pathlib import Path
from dataclasses import dataclass
from typing import BinaryIO, Callable, List, Optional

from cli_common import may_write, require_input, setup_logging
from kcap_format import (
    DEFAULT_PASSWORD,
    HEADER_SIZE,
    TABLE_ENTRY_SIZE,
    KcapError,
    pack_header,
    pack_record,
)
from kcap_keytable import create_key_table, xor_crypt

__version__ = "1.0.0"

log = logging.getLogger(__name__)


@dataclass
class pending_entry:
    name: str
    size: int
    source: Callable[[], bytes]
    offset: int = 0


def _read_file(path: Path, size: int) -> bytes:
    with open(path, "rb") as f:
        data = f.read()
    if len(data) != size:
        raise OSError(f"{path} changed size while packing ({size} -> {len(data)})")
    return data


class kcap_packer:
    def __init__(self):
        self.entries: List[pending_entry] = []

    def add(self, source_path: Path, name: str) -> None:
        """queue a file from disk under a logical pack name"""
        source_path = Path(source_path)
        size = source_path.stat().st_size
        # fail now rather than halfway through writing
        with open(source_path, "rb"):
            pass
        self.entries.append(pending_entry(name, size, partial(_read_file, source_path, size)))
        log.debug(f"added {source_path} as {name} ({size} bytes)")

    def add_bytes(self, name: str, data: bytes) -> None:
        data = bytes(data)
        self.entries.append(pending_entry(name, len(data), lambda: data))

    def add_directory(self, dir_path: Path, base_path: Optional[Path] = None) -> int:
        """recursively add directory contents, return number of files added"""
        dir_path = Path(dir_path)
        if base_path is None:
            base_path = dir_path

        added = 0
        for item in sorted(dir_path.iterdir()):
            if item.is_file():
                rel_path = item.relative_to(base_path)
                # the engine stores windows separators
                self.add(item, "\\".join(rel_path.parts))
                added += 1
            elif item.is_dir():
                added += self.add_directory(item, base_path)
        return added

    def calc_offset(self) -> None:
        """sort by size (stable) and lay payloads out right after the directory"""
        self.entries.sort(key=lambda e: e.size)

        current_offset = HEADER_SIZE + len(self.entries) * TABLE_ENTRY_SIZE
        for entry in self.entries:
            entry.offset = current_offset
            current_offset += entry.size

    def write_to(self, output: BinaryIO, password: Optional[str] = None) -> None:
        self.calc_offset()
        key_table = create_key_table(password) if password is not None else None
        encrypted = key_table is not None

        output.write(pack_header(len(self.entries)))
        for entry in self.entries:
            output.write(pack_record(entry.name, entry.offset, entry.size, encrypted))

        for i, entry in enumerate(self.entries):
            data = entry.source()
            if key_table is not None:
                data = xor_crypt(data, key_table)
            output.write(data)

            if (i + 1) % 100 == 0:
                log.info(f"packed {i + 1}/{len(self.entries)} files")

    def write(self, output_path: Path, password: Optional[str] = None) -> None:
        """write the pack file, encrypting every payload when password is given"""
        with open(output_path, "wb") as f:
            self.write_to(f, password)


def default_output_path(input_dir: Path) -> Path:
    input_dir = input_dir.resolve()
    return input_dir.parent / f"{input_dir.name}.Pack"


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="pack a directory into a KCAP .Pack archive",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
examples:
  %(prog)s Data                          # write Data.Pack next to Data/
  %(prog)s Data -o mod.Pack --force      # overwrite mod.Pack
  %(prog)s Data --no-encrypt             # store payloads in the clear
        """,
    )
    parser.add_argument("input", type=Path, help="input directory")
    parser.add_argument("-o", "--output", type=Path, help="output pack file")
    pw = parser.add_mutually_exclusive_group()
    pw.add_argument(
        "-p", "--password", default=DEFAULT_PASSWORD,
        help=f"pack password (default: {DEFAULT_PASSWORD})",
    )
    pw.add_argument("--no-encrypt", action="store_true", help="do not encrypt payloads")
    parser.add_argument("--force", action="store_true", help="overwrite existing files")
    parser.add_argument("-v", "--verbose", action="store_true", help="verbose output")
    parser.add_argument("-q", "--quiet", action="store_true", help="errors only")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    args = parser.parse_args(argv)
    setup_logging(args.verbose, args.quiet)

    if not require_input(args.input, "input directory", is_dir=True):
        return 1

    output_path = args.output or default_output_path(args.input)
    if not may_write(output_path, args.force):
        return 1

    packer = kcap_packer()
    password = None if args.no_encrypt else args.password

    try:
        log.info(f"scanning {args.input}")
        if not packer.add_directory(args.input):
            logging.error("no files to pack")
            return 1

        log.info(f"packing {len(packer.entries)} files to {output_path}")
        packer.write(output_path, password)
    except KcapError as e:
        logging.error(f"{output_path}: {e}")
        return 1
    except OSError as e:
        logging.error(f"i/o error: {e}")
        return 1
    except KeyboardInterrupt:
        logging.error("interrupted by user")
        return 130

    file_size = output_path.stat().st_size
    log.info(f"created {output_path} ({file_size:,} bytes)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
