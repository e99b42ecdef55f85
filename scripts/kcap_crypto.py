#!/usr/bin/env python3
"""
KCAP pack crypto utility
- dump the 64kb key table derived from a password
- decrypt / encrypt a standalone payload blob
- inspect a pack header and directory
- roundtrip verification of every encrypted entry

key table:
  password shorter than 8 chars -> "Selene.Default.Password"
  seed = crc32(cp932 password) as int32, mt19937 variant (signed shifts)
  table[i] = password[i % len] ^ ((rand() >> 16) & 0xff), 0x10000 bytes
payload:
  byte i of an entry is xored with table[i % 0x10000]
"""
import sys
import argparse
import logging
from pathlib import Path
from typing import List, Optional

from cli_common import may_write, require_input, setup_logging
from extract_pack import kcap_reader
from kcap_format import DEFAULT_PASSWORD, HEADER_SIZE, TABLE_ENTRY_SIZE, KcapError
from kcap_keytable import KEY_TABLE_SIZE, create_key_table, xor_crypt

__version__ = "1.0.0"

STYLES = {
    'title': '\033[1m',
    'ok': '\033[92m',
    'warn': '\033[93m',
    'enc': '\033[96m',
}
RESET = '\033[0m'

# None follows stdout.isatty(), main() pins it for --no-color
use_color = None


def paint(text, style):
    enabled = use_color if use_color is not None else sys.stdout.isatty()
    return f"{STYLES[style]}{text}{RESET}" if enabled else text


def key_dump(table: bytes, start=0, width=16):
    """rows of key bytes, labelled with their position in the 64kb table"""
    rows = []
    for i in range(0, len(table), width):
        row = table[i:i + width]
        rows.append(f"{start + i:04x}  " + ' '.join(f'{b:02x}' for b in row))
    return '\n'.join(rows)


def dump_key(password, output_path=None, fmt='hex', start=0, length=None, force=False):
    if not 0 <= start < KEY_TABLE_SIZE:
        logging.error(f"start {start:#x} outside key table (0..{KEY_TABLE_SIZE - 1:#x})")
        return False
    table = create_key_table(password)
    end = KEY_TABLE_SIZE if length is None else min(start + length, KEY_TABLE_SIZE)
    part = table[start:end]
    logging.debug(f"key table {start:#06x}..{end:#06x}, head {part[:16].hex()}")

    if output_path:
        if not may_write(output_path, force):
            return False
        with open(output_path, 'wb') as f:
            f.write(part)
        logging.info(f"{len(part)} key bytes written to '{output_path}'")
    elif fmt == 'hex':
        print(part.hex())
    elif fmt == 'hexdump':
        print(key_dump(part, start))
    elif fmt == 'raw':
        sys.stdout.buffer.write(part)
    return True


def crypt_file(file_path, output_path, password, force=False):
    """xor a standalone payload with the key table, works both ways"""
    if not require_input(file_path, "input file"):
        return False
    if not may_write(output_path, force):
        return False
    with open(file_path, 'rb') as f:
        data = f.read()
    out = xor_crypt(data, create_key_table(password))
    with open(output_path, 'wb') as f:
        f.write(out)
    logging.info(f"transformed {len(out)} bytes to '{output_path}'")
    return True


def info_pack(file_path, password, verbose=False):
    if not require_input(file_path, "input pack"):
        return False
    file_size = Path(file_path).stat().st_size
    with kcap_reader.open(file_path, password) as pak:
        entries = pak.entries
        directory_end = HEADER_SIZE + len(entries) * TABLE_ENTRY_SIZE
        payload_total = sum(e.size for e in entries)
        encrypted = sum(1 for e in entries if e.encrypted)

        print(paint(f"file: {file_path}", 'title'))
        print(f"size: {file_size} bytes ({file_size:,})")
        print(f"entries: {len(entries)}")
        print(f"directory: 0x{HEADER_SIZE:x}..0x{directory_end:x}")
        print(f"payload bytes: {payload_total:,}")
        enc_style = 'enc' if encrypted else 'ok'
        print(f"encrypted entries: {paint(f'{encrypted}/{len(entries)}', enc_style)}")

        overruns = [e for e in entries if e.end > file_size]
        if overruns:
            print(paint(f"entries past end of file: {len(overruns)}", 'warn'))

        if verbose:
            for i, e in enumerate(entries):
                print(f"  {i:>5} {e.name:<40} off=0x{e.offset:08x} size={e.size:<8} "
                      f"crc=0x{e.checksum:08x} {'enc' if e.encrypted else 'raw'}")
    return True


def roundtrip_verify(file_path, password, verbose=False):
    """decrypt then re-encrypt every entry, compare with the stored bytes"""
    if not require_input(file_path, "input pack"):
        return False
    table = create_key_table(password)
    mismatches = 0
    with kcap_reader.open(file_path, password) as pak:
        for i, entry in enumerate(pak):
            stored = pak.read_raw(i)
            plain = pak.read_entry(i)
            rebuilt = xor_crypt(plain, table) if entry.encrypted else plain
            if rebuilt != stored:
                mismatches += 1
                logging.warning(f"roundtrip mismatch in entry {i} '{entry.name}'")
            elif verbose:
                logging.debug(f"entry {i} '{entry.name}' ok")
        total = len(pak)
    if mismatches:
        logging.warning(f"roundtrip: {mismatches}/{total} entries differ")
        return False
    print(paint(f"roundtrip: {total} entries identical (ok)", 'ok'))
    return True


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description='KCAP pack crypto utility',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
examples:
  %(prog)s key                                 # key table for {DEFAULT_PASSWORD}, hex
  %(prog)s key -p "" -n 16 -f hexdump          # first row of the fallback table
  %(prog)s key -s 0x100 -n 32 -f hexdump     # two rows from position 0x100
  %(prog)s decrypt blob.bin -o plain.bin       # decrypt one stored payload
  %(prog)s encrypt plain.bin -o blob.bin       # encrypt it back
  %(prog)s info Data.Pack -v                   # header and directory listing
  %(prog)s roundtrip Data.Pack                 # verify decrypt→encrypt matches

version: {__version__}
        """
    )
    parser.add_argument('--version', action='version', version=f'kcap-crypto {__version__}')
    parser.add_argument('-v', '--verbose', action='store_true', help='verbose output')
    parser.add_argument('-q', '--quiet', action='store_true', help='quiet mode (errors only)')
    parser.add_argument('--no-color', action='store_true', help='disable colored output')
    parser.add_argument('-p', '--password', default=DEFAULT_PASSWORD,
                        help=f'pack password (default: {DEFAULT_PASSWORD})')

    subparsers = parser.add_subparsers(dest='command', help='commands')

    key_p = subparsers.add_parser('key', help='dump key table')
    key_p.add_argument('-o', '--output', help='output key file')
    key_p.add_argument('-f', '--format', choices=['hex', 'hexdump', 'raw'], default='hex', help='output format')
    key_p.add_argument('-s', '--start', type=lambda s: int(s, 0), default=0, help='first table position (e.g. 0x100)')
    key_p.add_argument('-n', '--length', type=int, help='only dump N bytes')
    key_p.add_argument('--force', action='store_true', help='overwrite existing files')

    for name, help_text in (('decrypt', 'decrypt a stored payload'), ('encrypt', 'encrypt a plain payload')):
        crypt_p = subparsers.add_parser(name, help=help_text)
        crypt_p.add_argument('input', help='input file')
        crypt_p.add_argument('-o', '--output', required=True, help='output file')
        crypt_p.add_argument('--force', action='store_true', help='overwrite existing files')

    info_p = subparsers.add_parser('info', help='display pack information')
    info_p.add_argument('input', help='input pack file')

    rt_p = subparsers.add_parser('roundtrip', help='verify decrypt→encrypt reproduces stored entries')
    rt_p.add_argument('input', help='input pack file')

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    global use_color
    if args.no_color:
        use_color = False

    if args.quiet and args.verbose:
        logging.error("cannot use both --quiet and --verbose")
        return 1
    setup_logging(args.verbose, args.quiet)

    try:
        if args.command == 'key':
            ok = dump_key(args.password, args.output, args.format, args.start, args.length, args.force)
        elif args.command in ('decrypt', 'encrypt'):
            ok = crypt_file(args.input, args.output, args.password, args.force)
        elif args.command == 'info':
            ok = info_pack(args.input, args.password, args.verbose)
        elif args.command == 'roundtrip':
            ok = roundtrip_verify(args.input, args.password, args.verbose)
        else:
            parser.print_help()
            return 1
    except (KcapError, OSError) as e:
        logging.error(f"{e}")
        return 1
    except KeyboardInterrupt:
        logging.error("interrupted by user")
        return 130
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
