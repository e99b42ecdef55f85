"""helpers shared by the pack command line tools"""

import logging
from pathlib import Path


def setup_logging(verbose: bool = False, quiet: bool = False):
    """Configure logging output."""
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    else:
        level = logging.INFO
    format_str = "%(levelname)s: %(message)s" if not verbose else "%(asctime)s %(levelname)s: %(message)s"
    logging.basicConfig(level=level, format=format_str)


def require_input(path, label: str, is_dir: bool = False) -> bool:
    """log and return False unless path is an existing file (or directory)"""
    p = Path(path)
    kind = "directory" if is_dir else "file"
    if not p.exists():
        logging.error(f"{label} '{path}' does not exist")
    elif p.is_dir() != is_dir:
        logging.error(f"{label} '{path}' is not a {kind}")
    else:
        return True
    return False


def may_write(path, force: bool = False) -> bool:
    """False if path exists and force is off"""
    if not Path(path).exists():
        return True
    if not force:
        logging.error(f"output '{path}' exists (use --force to overwrite)")
        return False
    logging.warning(f"overwriting '{path}'")
    return True
