"""
Archive extraction backend used by the tool installer.

Wraps ``firmkit.core.filesystem.extract_archive`` (``tarfile``/``zipfile``
in-process, external 7-Zip for ``.7z``) behind the ArchiveExtractor
interface so the installer can be tested with a fake.
"""

import logging
import time
from pathlib import Path
from typing import Optional

from firmkit.core.cancellation import CancellationToken, ensure_token
from firmkit.core.filesystem import extract_archive
from firmkit.core.interfaces import ArchiveExtractor

logger = logging.getLogger(__name__)


class LocalArchiveExtractor(ArchiveExtractor):
    """Extracts archives on the local filesystem."""

    def extract(
        self,
        archive_path: Path,
        destination: Path,
        archive_format: str,
        cancel: Optional[CancellationToken] = None,
    ) -> None:
        cancel = ensure_token(cancel)
        cancel.raise_if_cancelled()

        logger.info(f"Extracting {archive_path.name} to {destination}")
        start = time.time()
        extract_archive(
            archive_path, destination, archive_format=archive_format, cancel=cancel
        )
        logger.debug(f"Extraction finished in {time.time() - start:.2f}s")

        cancel.raise_if_cancelled()


__all__ = ["LocalArchiveExtractor"]
