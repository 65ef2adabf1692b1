"""
Instagram reel downloader backed by the yt-dlp command line tool.

Fetches the audio track only, which is all transcription needs and keeps
uploads under the transcription size limit.
"""

import asyncio
import logging
import re
import shutil
import time
from pathlib import Path
from typing import Optional

from ..core.errors import DownloadError

logger = logging.getLogger(__name__)

PROVIDER = "yt-dlp"
DEFAULT_TIMEOUT_SECONDS = 60

_REEL_ID_PATTERNS = (
    re.compile(r"instagram\.com/reels?/([A-Za-z0-9_-]+)"),
    re.compile(r"instagram\.com/p/([A-Za-z0-9_-]+)"),
)


def extract_reel_id(url: str) -> Optional[str]:
    """Reel or post id from an Instagram URL, None if the URL has none."""
    for pattern in _REEL_ID_PATTERNS:
        match = pattern.search(url)
        if match:
            return match.group(1)
    return None


class YtDlpDownloader:
    """Downloads reel audio into a temporary directory.

    The caller owns the returned file and must delete it.
    """

    def __init__(
        self,
        temp_dir: Path,
        binary: str = "yt-dlp",
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.temp_dir = Path(temp_dir)
        self.binary = binary
        self.timeout = timeout

    def _command(self, url: str, output_template: Path) -> list:
        return [
            self.binary,
            "--no-playlist",
            "--quiet",
            "-f", "bestaudio[ext=m4a]/bestaudio",
            "-o", str(output_template),
            url,
        ]

    async def fetch(self, remote_url: str) -> Path:
        """Download the reel's audio track.

        Raises:
            DownloadError: Invalid URL, missing binary, timeout, non-zero exit
                or no output file
        """
        reel_id = extract_reel_id(remote_url or "")
        if reel_id is None:
            raise DownloadError(f"Not an Instagram reel URL: {remote_url}", provider=PROVIDER)
        if shutil.which(self.binary) is None:
            raise DownloadError(f"{self.binary} is not installed", provider=PROVIDER)

        self.temp_dir.mkdir(parents=True, exist_ok=True)
        base_name = f"reel-{reel_id}-{int(time.time() * 1000)}"
        output_template = self.temp_dir / f"{base_name}.%(ext)s"

        logger.info("Downloading audio for reel %s", reel_id)
        proc = await asyncio.create_subprocess_exec(
            *self._command(remote_url, output_template),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            self._remove_partial(base_name)
            raise DownloadError(f"Download timed out after {self.timeout}s", provider=PROVIDER)

        if proc.returncode != 0:
            self._remove_partial(base_name)
            message = stderr.decode("utf-8", "ignore").strip() or f"exit code {proc.returncode}"
            raise DownloadError(f"yt-dlp failed: {message}", provider=PROVIDER)

        outputs = sorted(self.temp_dir.glob(f"{base_name}.*"))
        if not outputs:
            raise DownloadError("yt-dlp produced no output file", provider=PROVIDER)
        logger.info("Downloaded %s", outputs[0].name)
        return outputs[0]

    def _remove_partial(self, base_name: str) -> None:
        for path in self.temp_dir.glob(f"{base_name}.*"):
            try:
                path.unlink()
            except OSError:
                logger.warning("Could not remove partial download %s", path)
