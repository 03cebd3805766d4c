#!/usr/bin/env python3
"""
artifact_size.py

Helpers to predict how much storage a pending artifact upload will need.

- `expand_paths()` resolves glob patterns into concrete paths.
- `existing_paths()` drops paths that do not exist.
- `simulate_compressed_size()` zips a path into a throw-away archive and returns its size.
- `parse_size()` / `format_size()` convert between "1.5GB" style strings and bytes.
"""

import glob
import logging
import os
import re
import tempfile
import zipfile
from typing import Iterable, List, Optional

logger = logging.getLogger(__name__)

GLOB_CHARS = re.compile(r"[*?[\]{}]")
BRACE_REGEX = re.compile(r"\{([^{}]*)\}")
SIZE_REGEX = re.compile(r"^\s*(?P<value>[-+]?\d*\.?\d+)\s*(?P<unit>[kmgtp]?i?b)?\s*$", re.IGNORECASE)

UNITS = {
    "b": 1,
    "kb": 1 << 10,
    "mb": 1 << 20,
    "gb": 1 << 30,
    "tb": 1 << 40,
    "pb": 1 << 50,
}


def parse_size(value: Optional[str]) -> Optional[int]:
    """
    Parse a human readable size into bytes.

    Units are binary multiples and case-insensitive ("1kb" == "1KiB" == 1024).
    A number without unit is taken as bytes.

    Args:
        value: Size string, e.g. "512", "100mb", "1.5 GB".

    Returns:
        The size in bytes, or None if the value is empty or cannot be parsed.
    """
    if value is None:
        return None

    m = SIZE_REGEX.match(str(value))
    if not m:
        return None

    unit = (m.group("unit") or "b").lower().replace("ib", "b")
    return int(float(m.group("value")) * UNITS[unit])


def format_size(value: int) -> str:
    """Format bytes as the largest fitting unit, e.g. 1572864 -> "1.5MB"."""
    magnitude = abs(value)
    for unit in ("pb", "tb", "gb", "mb", "kb"):
        if magnitude >= UNITS[unit]:
            number = f"{value / UNITS[unit]:.2f}".rstrip("0").rstrip(".")
            return f"{number}{unit.upper()}"
    return f"{value}B"


def is_glob_pattern(path: str) -> bool:
    return bool(GLOB_CHARS.search(path))


def _expand_braces(pattern: str) -> List[str]:
    """
    "dist/{a,b}/*.whl" -> ["dist/a/*.whl", "dist/b/*.whl"]
    """
    m = BRACE_REGEX.search(pattern)
    if not m:
        return [pattern]

    head, tail = pattern[: m.start()], pattern[m.end():]
    result: List[str] = []
    for alternative in m.group(1).split(","):
        result.extend(_expand_braces(f"{head}{alternative}{tail}"))
    return result


def _resolve_glob(pattern: str) -> List[str]:
    found: List[str] = []
    try:
        for p in _expand_braces(pattern):
            found.extend(
                os.path.abspath(match) for match in sorted(glob.glob(p, recursive=True))
            )
    except (OSError, re.error) as exc:
        logger.warning("Glob pattern '%s' failed with error: %s", pattern, exc)
        return []
    return found


def expand_paths(patterns: Iterable[str]) -> List[str]:
    """
    Expand user supplied path patterns into a de-duplicated list of paths.

    Glob patterns are resolved against the file system (absolute results, hidden
    entries are not matched). Plain paths are passed through unchanged, whether
    they exist or not. Duplicates are removed case-insensitively; the first
    occurrence wins.

    Args:
        patterns: Paths or glob patterns, in input order.

    Returns:
        The expanded paths in input order.
    """
    expanded: List[str] = []
    for pattern in patterns:
        if is_glob_pattern(pattern):
            expanded.extend(_resolve_glob(pattern))
        else:
            expanded.append(pattern)

    seen = set()
    unique: List[str] = []
    for path in expanded:
        key = path.lower()
        if key in seen:
            continue
        seen.add(key)
        unique.append(path)
    return unique


def existing_paths(paths: Iterable[str]) -> List[str]:
    valid: List[str] = []
    for path in paths:
        logger.info("Checking artifact path existence: '%s'", path)
        if os.path.exists(path):
            valid.append(path)
            continue
        logger.warning("Path does not exist and will be ignored: '%s'", path)
    return valid


def _write_archive(source: str, destination: str, compression_level: int) -> None:
    if compression_level == 0:
        zf = zipfile.ZipFile(destination, "w", compression=zipfile.ZIP_STORED)
    else:
        zf = zipfile.ZipFile(
            destination,
            "w",
            compression=zipfile.ZIP_DEFLATED,
            compresslevel=compression_level,
        )

    with zf:
        if os.path.isdir(source):
            for root, dirs, files in os.walk(source, followlinks=True):
                dirs.sort()
                for file in sorted(files):
                    full = os.path.join(root, file)
                    try:
                        zf.write(full, arcname=os.path.relpath(full, source))
                    except FileNotFoundError:
                        # dangling symlink or file removed while walking
                        logger.warning(
                            "ENOENT warning during artifact zip creation. No such file or directory: '%s'",
                            full,
                        )
        elif os.path.exists(source):
            zf.write(source, arcname=os.path.basename(source))


def simulate_compressed_size(path: str, compression_level: int) -> int:
    """
    Zip `path` into a temporary archive and return the archive size in bytes.

    The archive is removed again before returning; a failure to remove it is
    only logged.

    Args:
        path: File or directory to archive. Directories are stored relative to
            themselves, files under their base name.
        compression_level: 0 (store) to 9 (best compression).

    Returns:
        Size of the zip archive in bytes.

    Raises:
        ValueError: If `compression_level` is outside 0..9.
    """
    if not 0 <= compression_level <= 9:
        raise ValueError("compression level must be between 0 and 9")

    fd, zip_path = tempfile.mkstemp(prefix="size_simulate_", suffix=".zip")
    os.close(fd)
    try:
        _write_archive(path, zip_path, compression_level)
        size = os.stat(zip_path).st_size
        logger.info("Archived '%s' for size simulation, size: %s", path, format_size(size))
        return size
    finally:
        try:
            os.unlink(zip_path)
        except OSError:
            logger.warning("Failed to delete simulated zip file: '%s'", zip_path)


def simulate_pending_size(patterns: Iterable[str], compression_level: int) -> int:
    """Sum of the simulated archive sizes over all existing expanded paths."""
    valid = existing_paths(expand_paths(patterns))
    return sum(simulate_compressed_size(p, compression_level) for p in valid)
