"""Name list I/O.

Input and output are plain text, one DNS name per line.
"""

import logging
from pathlib import Path
from typing import Iterable, List

logger = logging.getLogger(__name__)


def read_names(path: Path) -> List[str]:
    """Read non-empty, non-comment lines, stripped and lowercased.

    Returns an empty list if the file doesn't exist or can't be read.
    """
    path = Path(path)

    if not path.exists():
        logger.warning(f"Name list {path} does not exist")
        return []

    try:
        with open(path, 'r') as f:
            return [line.strip().lower() for line in f
                    if line.strip() and not line.startswith('#')]
    except (OSError, UnicodeDecodeError) as e:
        logger.warning(f"Failed to read name list {path}: {e}")
        return []


def write_names(path: Path, names: Iterable[str]) -> int:
    """Write names one per line. Returns how many were written."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    count = 0
    with open(path, 'w') as f:
        for name in names:
            f.write(f"{name}\n")
            count += 1
    logger.debug(f"Wrote {count} names to {path}")
    return count
