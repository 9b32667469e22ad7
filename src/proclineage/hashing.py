"""File content digests for process executables."""

import hashlib
import logging
import os

from proclineage.models import UNAVAILABLE

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


def hash_file(path: str | None, algorithm: str = "sha256") -> str:
    """
    Return the hex digest of the file at ``path``.

    Returns ``UNAVAILABLE`` instead of raising when the path is empty or
    missing, is not a regular file, or cannot be read.
    """
    if not path or path == UNAVAILABLE:
        return UNAVAILABLE
    if not os.path.isfile(path):
        return UNAVAILABLE

    try:
        digest = hashlib.new(algorithm)
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
                digest.update(chunk)
    except (OSError, ValueError) as e:
        # Permission denied, file replaced by a directory, locked, or I/O error
        logger.debug("Hash unavailable for %s: %s", path, e)
        return UNAVAILABLE

    return digest.hexdigest()
