#!/usr/bin/env python3

import sys
import argparse
import logging
from pathlib import Path, PureWindowsPath
from typing import BinaryIO, Iterator, List, Optional

from cli_common import require_input, setup_logging
from kcap_format import (
    DEFAULT_PASSWORD,
    HEADER_SIZE,
    MAGIC_NUMBER,
    TABLE_ENTRY_SIZE,
    FormatError,
    KcapError,
    OutOfRangeError,
    kcap_entry,
    check_magic,
    unpack_count,
    unpack_record,
)
from kcap_keytable import create_key_table, xor_crypt

__version__ = "1.0.0"

log = logging.getLogger(__name__)


class kcap_reader:
    """
    directory is parsed eagerly on open, payloads are read on request.
    a reader without a password hands back stored bytes as they are.
    """

    def __init__(self, file_obj: BinaryIO, password: Optional[str] = DEFAULT_PASSWORD):
        self.file_obj = file_obj
        self.key_table = create_key_table(password) if password is not None else None
        self.entries: List[kcap_entry] = []
        self.file_size = 0
        self._owns_file = False
        self._load()

    @classmethod
    def open(cls, path, password: Optional[str] = DEFAULT_PASSWORD) -> "kcap_reader":
        file_obj = open(path, "rb")
        try:
            reader = cls(file_obj, password)
        except BaseException:
            file_obj.close()
            raise
        reader._owns_file = True
        return reader

    def close(self) -> None:
        if self._owns_file:
            self.file_obj.close()

    def __enter__(self) -> "kcap_reader":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[kcap_entry]:
        return iter(self.entries)

    def _load(self) -> None:
        self.file_obj.seek(0, 2)
        self.file_size = self.file_obj.tell()
        self.file_obj.seek(0, 0)

        check_magic(self.file_obj.read(len(MAGIC_NUMBER)))
        count = unpack_count(self.file_obj.read(HEADER_SIZE - len(MAGIC_NUMBER)))

        for i in range(count):
            entry_data = self.file_obj.read(TABLE_ENTRY_SIZE)
            if len(entry_data) != TABLE_ENTRY_SIZE:
                raise FormatError(f"truncated directory at entry {i} of {count}")
            self.entries.append(unpack_record(entry_data))

        log.debug(f"loaded directory with {count} entries")

    def find(self, name: str) -> Optional[int]:
        """index of the first entry called name, or None"""
        for i, entry in enumerate(self.entries):
            if entry.name == name:
                return i
        return None

    def read_raw(self, index: int) -> bytes:
        """stored payload bytes of entry index, without decryption"""
        if not 0 <= index < len(self.entries):
            raise OutOfRangeError(
                f"entry index {index} out of range (archive has {len(self.entries)})"
            )

        entry = self.entries[index]
        if entry.end > self.file_size:
            raise FormatError(
                f"entry {index} '{entry.name}' range {entry.offset:#x}+{entry.size} "
                f"past end of file ({self.file_size})"
            )
        self.file_obj.seek(entry.offset, 0)
        data = self.file_obj.read(entry.size)
        if len(data) != entry.size:
            raise FormatError(
                f"truncated read for entry {index} '{entry.name}' "
                f"at offset {entry.offset:#x} ({len(data)} of {entry.size} bytes)"
            )
        return data

    def read_entry(self, index: int) -> bytes:
        data = self.read_raw(index)
        if self.entries[index].encrypted and self.key_table is not None:
            return xor_crypt(data, self.key_table)
        return data

    def read_to(self, index: int, output: BinaryIO) -> int:
        data = self.read_entry(index)
        output.write(data)
        return len(data)

    def extract_all(self, output_dir: Path) -> int:
        """extract every entry under output_dir, return number written"""
        root = output_dir.resolve()
        extracted = 0

        for i, entry in enumerate(self.entries):
            output_path = safe_output_path(root, entry.name)
            output_path.parent.mkdir(parents=True, exist_ok=True)

            log.debug(f"extracting {entry.name} -> {output_path}")
            with open(output_path, "wb") as fout:
                self.read_to(i, fout)
            extracted += 1

            if extracted % 100 == 0:
                log.info(f"extracted {extracted}/{len(self.entries)} files")

        return extracted


def safe_output_path(root: Path, name: str) -> Path:
    """map a pack name (backslash separated) to a path below root"""
    parts = PureWindowsPath(name).parts
    if not parts or PureWindowsPath(name).anchor or ".." in parts:
        raise FormatError(f"refusing to extract entry with unsafe name {name!r}")
    return root.joinpath(*parts)


def default_output_dir(pak_path: Path) -> Path:
    return pak_path.parent / pak_path.stem


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="unpack a KCAP .Pack archive into a directory",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
examples:
  %(prog)s Data.Pack                     # extract to ./Data
  %(prog)s Data.Pack -o out              # extract to out/
  %(prog)s Data.Pack -p OtherPass        # use a different password
        """,
    )
    parser.add_argument("input", type=Path, help="input pack file")
    parser.add_argument("-o", "--output", type=Path, help="output directory")
    pw = parser.add_mutually_exclusive_group()
    pw.add_argument(
        "-p", "--password", default=DEFAULT_PASSWORD,
        help=f"pack password (default: {DEFAULT_PASSWORD})",
    )
    pw.add_argument(
        "--no-password", action="store_true",
        help="write stored payloads without decrypting",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="verbose output")
    parser.add_argument("-q", "--quiet", action="store_true", help="errors only")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    args = parser.parse_args(argv)
    setup_logging(args.verbose, args.quiet)

    if not require_input(args.input, "input pack"):
        return 1

    output_dir = args.output or default_output_dir(args.input)
    password = None if args.no_password else args.password

    try:
        with kcap_reader.open(args.input, password) as pak:
            log.info(f"unpacking {args.input} to {output_dir}/ ({len(pak)} files)")
            output_dir.mkdir(parents=True, exist_ok=True)
            pak.extract_all(output_dir)
    except KcapError as e:
        logging.error(f"{args.input}: {e}")
        return 1
    except OSError as e:
        logging.error(f"i/o error: {e}")
        return 1
    except KeyboardInterrupt:
        logging.error("interrupted by user")
        return 130

    log.info("extraction completed successfully")
    return 0


if __name__ == "__main__":
    sys.exit(main())
