"""SHA-256 verification utilities for object integrity checking."""

import hashlib
from pathlib import Path
import logging


def hash_existing(file_path: Path, chunk_size: int = 64 * 1024):
    """Return a sha256 object primed with the current content of file_path.

    Used to resume a partial transfer without losing the running digest.

    Raises:
        FileNotFoundError: If file doesn't exist
        OSError: If file read fails
    """
    sha256_hash = hashlib.sha256()
    with open(file_path, "rb") as f:
        while chunk := f.read(chunk_size):
            sha256_hash.update(chunk)
    return sha256_hash


def compute_sha256(file_path: Path, chunk_size: int = 64 * 1024) -> str:
    """Compute the hex SHA-256 digest of a file."""
    logger = logging.getLogger("update_agent.verification")
    try:
        result = hash_existing(file_path, chunk_size).hexdigest()
    except OSError as e:
        logger.error(f"Failed to read file {file_path}: {e}")
        raise
    logger.debug(f"Computed SHA-256 for {Path(file_path).name}: {result}")
    return result


def verify_sha256(file_path: Path, expected_sha256: str) -> bool:
    """Verify file SHA-256 digest matches expected value.

    Args:
        file_path: Path to file to verify
        expected_sha256: Expected digest (64-char hex string)

    Returns:
        True if digest matches, False otherwise

    Raises:
        FileNotFoundError: If file doesn't exist
        ValueError: If expected_sha256 format is invalid
    """
    logger = logging.getLogger("update_agent.verification")

    if not isinstance(expected_sha256, str) or len(expected_sha256) != 64:
        raise ValueError(
            f"Invalid SHA-256 format: {expected_sha256} (must be 64-char hex)"
        )

    expected_sha256 = expected_sha256.lower()
    actual_sha256 = compute_sha256(file_path)

    match = actual_sha256 == expected_sha256
    if match:
        logger.info(f"SHA-256 verification passed for {file_path.name}")
    else:
        logger.error(
            f"SHA-256 mismatch for {file_path.name}: "
            f"expected {expected_sha256}, got {actual_sha256}"
        )

    return match
