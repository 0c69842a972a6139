"""
Mirror-aware streaming downloads.

Artifacts (runtime archives, model weights) are published on more than one
mirror. The downloader probes every mirror with a HEAD request, tries them
fastest-first, streams to a `.part` file next to the destination and renames
it into place only when the transfer is complete.
"""

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

import requests

from ..exceptions import DownloadCancelled, DownloadError
from ..progress import DownloadProgress, ProgressChannel

logger = logging.getLogger(__name__)

# ============================================================================
# DOWNLOAD CONSTANTS
# ============================================================================

PROBE_TIMEOUT = 8.0        # seconds per HEAD request
CONNECT_TIMEOUT = 10.0
READ_TIMEOUT = 60.0
CHUNK_SIZE = 256 * 1024
PROGRESS_INTERVAL = 0.2    # seconds between published progress samples
SPEED_WINDOW = 1.0         # seconds between speed recomputations
USER_AGENT = "enginekit/0.1"


def _dedupe(urls: Sequence[str]) -> List[str]:
    seen = set()
    ordered = []
    for url in urls:
        url = (url or "").strip()
        if url and url not in seen:
            seen.add(url)
            ordered.append(url)
    return ordered


class Downloader:
    """
    Streams files from an ordered list of mirrors with cooperative cancellation.

    One Downloader is shared by the runtime and model provisioners so a single
    cancel() aborts whichever transfer is in flight.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        progress: Optional[ProgressChannel] = None,
        probe_timeout: float = PROBE_TIMEOUT,
        chunk_size: int = CHUNK_SIZE,
    ):
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", USER_AGENT)
        self.progress = progress or ProgressChannel()
        self.probe_timeout = probe_timeout
        self.chunk_size = chunk_size
        self._cancel = threading.Event()

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """
        Best-effort abort of the transfer currently in flight.

        The flag stays set, so a download started afterwards is refused
        until reset_cancel() is called.
        """
        self._cancel.set()

    def reset_cancel(self) -> None:
        """Clear a previous cancel() before starting new work."""
        self._cancel.clear()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # ------------------------------------------------------------------
    # Mirror selection
    # ------------------------------------------------------------------

    def _probe(self, url: str) -> Tuple[str, Optional[float]]:
        started = time.monotonic()
        try:
            response = self.session.head(url, allow_redirects=True, timeout=self.probe_timeout)
        except requests.RequestException as e:
            logger.debug("Mirror probe failed for %s: %s", url, e)
            return url, None
        # Some CDNs reject HEAD but serve GET fine
        if response.status_code < 400 or response.status_code == 405:
            return url, time.monotonic() - started
        logger.debug("Mirror probe for %s returned HTTP %s", url, response.status_code)
        return url, None

    def order_mirrors(self, urls: Sequence[str]) -> List[str]:
        """
        Order mirrors fastest-first.

        Every mirror is probed concurrently. Responsive mirrors come first,
        sorted by round-trip time; unresponsive ones keep their original
        relative order at the end so they still get a chance.

        Args:
            urls: Candidate URLs in priority order

        Returns:
            The same URLs, reordered
        """
        candidates = _dedupe(urls)
        if len(candidates) <= 1:
            return candidates

        with ThreadPoolExecutor(max_workers=len(candidates)) as pool:
            results = list(pool.map(self._probe, candidates))

        reachable = sorted((r for r in results if r[1] is not None), key=lambda r: r[1])
        unreachable = [url for url, elapsed in results if elapsed is None]
        ordered = [url for url, _ in reachable] + unreachable
        logger.debug("Mirror order: %s", ordered)
        return ordered

    # ------------------------------------------------------------------
    # Transfer
    # ------------------------------------------------------------------

    def download(
        self,
        urls: Sequence[str],
        dest: Path,
        label: str,
        validate: Optional[Callable[[Path], None]] = None,
        probe: bool = True,
    ) -> Path:
        """
        Download the first mirror that delivers a complete file.

        Args:
            urls: Mirror URLs in priority order
            dest: Final destination path
            label: Progress label shown to the user
            validate: Optional check run on the finished `.part` file; it
                should raise to reject the content
            probe: Reorder mirrors by HEAD latency before downloading

        Returns:
            Path to the downloaded file

        Raises:
            DownloadCancelled: If cancel() was called before or during the transfer
            DownloadError: If every mirror failed
        """
        mirrors = self.order_mirrors(urls) if probe else _dedupe(urls)
        if not mirrors:
            raise DownloadError(f"No download URL configured for {label}", urls=urls, label=label)

        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        part = dest.with_name(dest.name + ".part")
        errors = []

        for url in mirrors:
            if self.cancelled:
                break
            logger.info("Downloading %s from %s", label, url)
            try:
                self._fetch(url, part, label)
                if validate is not None:
                    validate(part)
                os.replace(part, dest)
                return dest
            except DownloadCancelled:
                part.unlink(missing_ok=True)
                raise
            except Exception as e:
                part.unlink(missing_ok=True)
                logger.warning("Download of %s from %s failed: %s", label, url, e)
                errors.append(f"{url}: {e}")

        part.unlink(missing_ok=True)
        if self.cancelled:
            raise DownloadCancelled(f"Download of {label} cancelled")
        raise DownloadError(
            f"Failed to download {label}: " + " | ".join(errors),
            urls=mirrors,
            label=label,
        )

    def _fetch(self, url: str, part: Path, label: str) -> None:
        with self.session.get(url, stream=True, timeout=(CONNECT_TIMEOUT, READ_TIMEOUT)) as response:
            response.raise_for_status()
            total = response.headers.get("Content-Length")
            total = int(total) if total and total.isdigit() else None

            written = 0
            speed = None
            last_emit = 0.0
            window_start = time.monotonic()
            window_bytes = 0
            self.progress.publish(DownloadProgress(written_bytes=0, total_bytes=total, label=label))

            with open(part, "wb") as fh:
                for chunk in response.iter_content(chunk_size=self.chunk_size):
                    if self.cancelled:
                        raise DownloadCancelled(f"Download of {label} cancelled")
                    if not chunk:
                        continue
                    fh.write(chunk)
                    written += len(chunk)
                    window_bytes += len(chunk)

                    now = time.monotonic()
                    if now - window_start >= SPEED_WINDOW:
                        speed = window_bytes / (now - window_start)
                        window_start = now
                        window_bytes = 0
                    if now - last_emit >= PROGRESS_INTERVAL:
                        last_emit = now
                        self.progress.publish(DownloadProgress(
                            written_bytes=written,
                            total_bytes=total,
                            label=label,
                            speed_bytes_per_sec=speed,
                        ))

            if total is not None and written < total:
                raise DownloadError(f"Incomplete download: {written} of {total} bytes", urls=[url], label=label)

            self.progress.publish(DownloadProgress(
                written_bytes=written,
                total_bytes=total if total is not None else written,
                label=label,
                speed_bytes_per_sec=speed,
            ))
