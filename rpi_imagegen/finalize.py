"""Image finalization.

This module handles:
- Compressing the raw image with zstd
- Writing the root credential file (mode 0600)
- Generating the build manifest
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from rpi_imagegen.host import CommandError, CommandRunner, run_command
from rpi_imagegen.types import ImagegenError

logger = logging.getLogger(__name__)

ROOT_PASSWORD_FILE = "root_password.txt"

ZSTD_LEVEL = 19

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB


class CompressionError(ImagegenError):
    """Raised when compression fails; the raw image is left in place."""

    def __init__(self, message: str, code: str = "compression_error") -> None:
        super().__init__(message, code=code)


class ManifestError(ImagegenError):
    """Raised when the manifest cannot be written."""

    def __init__(self, message: str, code: str = "manifest_error") -> None:
        super().__init__(message, code=code)


def compute_file_hash(file_path: Path, chunk_size: int = HASH_CHUNK_SIZE) -> str:
    """Compute SHA-256 hash of a file."""
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def compress_image(
    raw_image: Path,
    *,
    keep_raw: bool = False,
    runner: CommandRunner = run_command,
) -> Path:
    """Compress the raw image to ``<raw_image>.zst`` using all cores.

    Args:
        raw_image: Unmounted, detached raw image.
        keep_raw: Keep the uncompressed image next to the archive.
        runner: Host command runner.

    Returns:
        Path of the compressed image.

    Raises:
        CompressionError: If zstd fails. The raw image is kept and any
            partial output removed.
    """
    compressed = raw_image.with_name(raw_image.name + ".zst")
    logger.info("Compressing %s", raw_image.name)

    try:
        runner(
            ["zstd", "-T0", f"-{ZSTD_LEVEL}", "-f", str(raw_image), "-o", str(compressed)]
        )
    except CommandError as e:
        compressed.unlink(missing_ok=True)
        raise CompressionError(f"Failed to compress {raw_image}: {e.message}") from e

    if not keep_raw:
        try:
            raw_image.unlink()
        except OSError as e:
            raise CompressionError(
                f"Cannot remove raw image {raw_image}: {e}", code="remove_raw"
            ) from e
    logger.info("Compressed image: %s", compressed)
    return compressed


def write_root_credential(path: Path, password: str) -> Path:
    """Write the root password to a file readable only by its owner (0600)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.unlink(missing_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(password + "\n")
    os.chmod(path, 0o600)
    logger.info("Root password saved to %s", path)
    return path


def manifest_path_for(artifact: Path) -> Path:
    name = artifact.name
    for suffix in (".zst", ".img"):
        name = name.removesuffix(suffix)
    return artifact.with_name(f"{name}.manifest.json")


def build_manifest(
    artifact: Path,
    *,
    rpi_model: int,
    hostname: str,
    build_date: str,
    short_sha: str,
    stages_run: list[str],
    stages_skipped: dict[str, str],
) -> dict[str, Any]:
    """Describe a finished artifact."""
    return {
        "artifact": artifact.name,
        "size_bytes": artifact.stat().st_size,
        "sha256": compute_file_hash(artifact),
        "rpi_model": rpi_model,
        "hostname": hostname,
        "build_date": build_date,
        "source_revision": short_sha,
        "stages_run": stages_run,
        "stages_skipped": stages_skipped,
        "generated_at": datetime.now(timezone.utc).isoformat(),
    }


def write_manifest(artifact: Path, **fields: Any) -> Path:
    """Write ``<image>.manifest.json`` next to the artifact.

    Args:
        artifact: The compressed image.
        **fields: Keyword arguments of :func:`build_manifest`.

    Returns:
        Path to the manifest file.

    Raises:
        ManifestError: If the artifact cannot be read or the manifest
            cannot be written.
    """
    path = manifest_path_for(artifact)
    try:
        manifest = build_manifest(artifact, **fields)
        with path.open("w", encoding="utf-8") as f:
            json.dump(manifest, f, indent=2)
            f.write("\n")
    except OSError as e:
        raise ManifestError(f"Cannot write manifest {path}: {e}") from e
    logger.info("Wrote manifest %s", path)
    return path


__all__ = [
    "CompressionError",
    "ManifestError",
    "ROOT_PASSWORD_FILE",
    "build_manifest",
    "compress_image",
    "compute_file_hash",
    "manifest_path_for",
    "write_manifest",
    "write_root_credential",
]
