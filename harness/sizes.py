"""
Payload size tokens and idempotent payload file materialization
"""

import logging
import os
import re

logger = logging.getLogger(__name__)

SIZE_PATTERN = re.compile(r"^(\d+)([KM])$")
SIZE_MULTIPLIERS = {"K": 1024, "M": 1024 * 1024}
WRITE_CHUNK = 1024 * 1024


def parse_size(token: str) -> int:
    """'10K' -> 10240, '1M' -> 1048576. Any other form raises ValueError."""
    match = SIZE_PATTERN.match(token)
    if not match:
        raise ValueError(f"invalid size token {token!r} (expected <integer>K or <integer>M)")
    return int(match.group(1)) * SIZE_MULTIPLIERS[match.group(2)]


def payload_path(send_dir: str, size: str) -> str:
    return os.path.join(send_dir, f"send_size{size}.bin")


class SizeResolver:
    """
    Create payload files of exact sizes, skipping files that are already right.

    A failed write degrades to an empty placeholder so one bad grid cell does
    not stop the sweep; the client trial then reports whatever the transfer
    of that placeholder yields.
    """

    def __init__(self, send_dir: str):
        self.send_dir = send_dir
        self.writes = 0

    def resolve(self, size: str) -> str:
        """Materialize the payload for a size token and return its path"""
        os.makedirs(self.send_dir, exist_ok=True)
        path = payload_path(self.send_dir, size)
        self.materialize(path, size)
        return path

    def materialize(self, path: str, size: str) -> int:
        expected = parse_size(size)

        if os.path.isfile(path):
            actual = os.path.getsize(path)
            if actual == expected:
                return actual
            logger.info(
                f"Existing file {path} has size {actual} (expected {expected}) - recreating"
            )
            os.remove(path)

        logger.info(f"Creating {path} ({expected} bytes)")
        try:
            self._write_zeros(path, expected)
        except OSError as e:
            logger.error(f"Writing {path} failed: {e}; creating empty placeholder")
            self._write_placeholder(path)
        return os.path.getsize(path) if os.path.exists(path) else 0

    def _write_zeros(self, path: str, count: int):
        self.writes += 1
        chunk = bytes(min(WRITE_CHUNK, count))
        remaining = count
        with open(path, "wb") as f:
            while remaining > 0:
                n = min(remaining, len(chunk))
                f.write(chunk[:n])
                remaining -= n
            f.flush()
            os.fsync(f.fileno())

    def _write_placeholder(self, path: str):
        try:
            if os.path.exists(path):
                os.remove(path)
            with open(path, "wb") as f:
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            logger.error(f"Placeholder for {path} failed too: {e}")
