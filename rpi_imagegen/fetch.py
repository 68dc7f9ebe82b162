"""Base archive fetch module.

This module handles:
- Downloading the Arch Linux ARM base archive and its MD5 digest file
- Verifying the digest before anything else touches the archive
- Bounded retries for transient network failures
- Fetching SSH public keys for authorized_keys
"""

from __future__ import annotations

import hashlib
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

import httpx

from rpi_imagegen.types import ImagegenError

logger = logging.getLogger(__name__)

# Chunk size for downloads (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB

# Timeout for small text files (seconds)
TEXT_TIMEOUT = 30


class DownloadError(ImagegenError):
    """Raised when a download fails after all attempts."""

    def __init__(
        self, message: str, code: str = "download_error", status_code: int | None = None
    ) -> None:
        super().__init__(message, code=code)
        self.status_code = status_code


class ChecksumMismatchError(ImagegenError):
    """Raised when the archive digest does not match its digest file."""

    def __init__(self, message: str, code: str = "checksum_mismatch") -> None:
        super().__init__(message, code=code)


@dataclass
class RetryPolicy:
    """Bounded retry settings.

    Attributes:
        attempts: Total attempts, including the first.
        timeout: Per-request timeout in seconds.
        wait: Pause between attempts in seconds.
    """

    attempts: int = 5
    timeout: float = 60
    wait: float = 10


@dataclass
class DownloadResult:
    """Result of a verified archive download."""

    archive_path: Path
    checksum: str
    size_bytes: int


def parse_md5_file(content: str, filename: str | None = None) -> str:
    """Extract the digest from an md5sum-style file.

    Args:
        content: File content ('<hex>  <name>' lines or a bare digest).
        filename: Name to look up; the first entry is used if None or if
            the file holds a single entry.

    Returns:
        Lowercase hex digest.

    Raises:
        ChecksumMismatchError: If no digest can be found.
    """
    entries: list[tuple[str, str]] = []
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split(maxsplit=1)
        digest = parts[0].lower()
        name = parts[1].lstrip("*").strip() if len(parts) == 2 else ""
        if len(digest) != 32 or any(c not in "0123456789abcdef" for c in digest):
            continue
        entries.append((digest, name))

    if not entries:
        raise ChecksumMismatchError("No MD5 digest found in digest file", code="invalid_digest")

    if filename is not None and len(entries) > 1:
        for digest, name in entries:
            if Path(name).name == filename:
                return digest
        raise ChecksumMismatchError(
            f"No MD5 digest for {filename} in digest file", code="invalid_digest"
        )
    return entries[0][0]


def _is_retryable(error: DownloadError) -> bool:
    if error.code in ("timeout", "network_error"):
        return True
    return error.code == "http_error" and (error.status_code or 0) >= 500


def _with_retries(
    action: Callable[[], object],
    url: str,
    policy: RetryPolicy,
    sleep: Callable[[float], None],
):
    for attempt in range(1, policy.attempts + 1):
        try:
            return action()
        except DownloadError as e:
            if attempt == policy.attempts or not _is_retryable(e):
                raise
            logger.warning(
                "Attempt %d/%d for %s failed: %s; retrying in %ss",
                attempt,
                policy.attempts,
                url,
                e.message,
                policy.wait,
            )
            sleep(policy.wait)
    raise AssertionError("unreachable")


def _http_error(url: str, e: httpx.HTTPStatusError) -> DownloadError:
    return DownloadError(
        f"HTTP error downloading {url}: {e.response.status_code} {e.response.reason_phrase}",
        code="http_error",
        status_code=e.response.status_code,
    )


def download_file(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    timeout: float = 60,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> DownloadResult:
    """Stream a file to disk, computing its MD5 on the way.

    Args:
        client: HTTPX client instance.
        url: URL to download from.
        dest_path: Destination path for the downloaded file.
        timeout: Request timeout in seconds.
        chunk_size: Size of chunks to download.

    Returns:
        DownloadResult with path, checksum, and size.

    Raises:
        DownloadError: If the download fails.
    """
    logger.info("Downloading %s", url)

    try:
        with client.stream("GET", url, timeout=timeout, follow_redirects=True) as response:
            response.raise_for_status()

            total_bytes = 0
            md5 = hashlib.md5()
            dest_path.parent.mkdir(parents=True, exist_ok=True)

            with dest_path.open("wb") as f:
                for chunk in response.iter_bytes(chunk_size):
                    f.write(chunk)
                    md5.update(chunk)
                    total_bytes += len(chunk)

    except httpx.HTTPStatusError as e:
        dest_path.unlink(missing_ok=True)
        raise _http_error(url, e) from e
    except httpx.TimeoutException as e:
        dest_path.unlink(missing_ok=True)
        raise DownloadError(f"Timeout downloading {url}", code="timeout") from e
    except httpx.RequestError as e:
        dest_path.unlink(missing_ok=True)
        raise DownloadError(
            f"Network error downloading {url}: {e}", code="network_error"
        ) from e

    logger.info("Downloaded %s (%d bytes)", dest_path.name, total_bytes)
    return DownloadResult(
        archive_path=dest_path,
        checksum=md5.hexdigest(),
        size_bytes=total_bytes,
    )


def fetch_text(client: httpx.Client, url: str, timeout: float = TEXT_TIMEOUT) -> str:
    """Fetch a small text resource.

    Raises:
        DownloadError: If the request fails.
    """
    logger.debug("Fetching %s", url)

    try:
        response = client.get(url, timeout=timeout, follow_redirects=True)
        response.raise_for_status()
        return response.text
    except httpx.HTTPStatusError as e:
        raise _http_error(url, e) from e
    except httpx.TimeoutException as e:
        raise DownloadError(f"Timeout fetching {url}", code="timeout") from e
    except httpx.RequestError as e:
        raise DownloadError(f"Network error fetching {url}: {e}", code="network_error") from e


def fetch_base_archive(
    client: httpx.Client,
    archive_url: str,
    md5_url: str,
    dest_dir: Path,
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> DownloadResult:
    """Download the base archive and verify it against its MD5 file.

    Args:
        client: HTTPX client instance.
        archive_url: URL of the base filesystem archive.
        md5_url: URL of its md5sum file.
        dest_dir: Directory to store both files in.
        policy: Retry settings.
        sleep: Wait function between attempts.

    Returns:
        DownloadResult of the verified archive.

    Raises:
        DownloadError: If either file cannot be fetched.
        ChecksumMismatchError: If the digest does not match. The archive is
            deleted.
    """
    policy = policy or RetryPolicy()
    archive_name = archive_url.rsplit("/", 1)[-1]
    archive_path = dest_dir / archive_name
    md5_path = dest_dir / md5_url.rsplit("/", 1)[-1]

    md5_content = _with_retries(
        lambda: fetch_text(client, md5_url, timeout=policy.timeout),
        md5_url,
        policy,
        sleep,
    )
    md5_path.write_text(md5_content, encoding="utf-8")
    expected = parse_md5_file(md5_content, archive_name)

    result = _with_retries(
        lambda: download_file(client, archive_url, archive_path, timeout=policy.timeout),
        archive_url,
        policy,
        sleep,
    )

    if result.checksum != expected:
        archive_path.unlink(missing_ok=True)
        raise ChecksumMismatchError(
            f"Checksum mismatch for {archive_name}: "
            f"expected {expected}, got {result.checksum}"
        )

    logger.info("Verified %s (md5 %s)", archive_name, result.checksum)
    return result


def fetch_ssh_keys(client: httpx.Client, urls: Sequence[str]) -> list[str]:
    """Collect public keys from every URL that responds.

    A failing URL is logged and skipped.

    Returns:
        Key lines in URL order, without blank lines.
    """
    keys: list[str] = []
    for url in urls:
        try:
            content = fetch_text(client, url)
        except DownloadError as e:
            logger.warning("Failed to fetch SSH keys from %s: %s", url, e.message)
            continue
        found = [line.strip() for line in content.splitlines() if line.strip()]
        logger.info("Fetched %d SSH key(s) from %s", len(found), url)
        keys.extend(found)
    return keys


__all__ = [
    "ChecksumMismatchError",
    "DownloadError",
    "DownloadResult",
    "RetryPolicy",
    "download_file",
    "fetch_base_archive",
    "fetch_ssh_keys",
    "fetch_text",
    "parse_md5_file",
]
