"""Durable write backends for capture bundles.

This module provides the abstract artifact store the orchestrator writes
bundle files through, and a local filesystem implementation.
"""

import hashlib
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional, Union

import aiofiles
import aiofiles.os

from ..errors import StorageWriteError


logger = logging.getLogger(__name__)


class ArtifactRef:
    """Reference to a stored artifact with metadata."""

    def __init__(
        self,
        path: str,
        checksum: str,
        size_bytes: int,
        content_type: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ):
        self.path = path
        self.checksum = checksum
        self.size_bytes = size_bytes
        self.content_type = content_type
        self.metadata = metadata or {}

    def __repr__(self) -> str:
        return f"ArtifactRef(path={self.path!r}, size_bytes={self.size_bytes})"


class ArtifactStore(ABC):
    """Abstract base class for artifact storage backends."""

    @abstractmethod
    async def put(
        self,
        content: Union[bytes, str],
        path: str,
        content_type: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> ArtifactRef:
        """Store artifact content and return reference.

        Args:
            content: Content to store (text is encoded as UTF-8)
            path: Relative storage path of the artifact
            content_type: MIME content type
            metadata: Additional metadata kept on the reference

        Returns:
            ArtifactRef with storage details

        Raises:
            StorageWriteError: If this artifact could not be written
        """

    @abstractmethod
    async def delete(self, path: str) -> bool:
        """Delete artifact from storage.

        Returns:
            True if deleted successfully, False if not found
        """

    @abstractmethod
    async def exists(self, path: str) -> bool:
        """Check if artifact exists in storage."""

    def _calculate_checksum(self, content: bytes) -> str:
        """Calculate SHA-256 checksum of content."""
        return hashlib.sha256(content).hexdigest()

    def _read_content(self, content: Union[bytes, str]) -> bytes:
        if isinstance(content, bytes):
            return content
        if isinstance(content, str):
            return content.encode('utf-8')
        raise ValueError(f"Unsupported content type: {type(content)}")


class LocalArtifactStore(ArtifactStore):
    """Local filesystem artifact storage backend."""

    def __init__(self, base_path: Union[str, Path] = "."):
        """Initialize local storage.

        Args:
            base_path: Directory bundle paths are resolved against
        """
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        relative = Path(path)
        if relative.is_absolute() or '..' in relative.parts:
            raise StorageWriteError(f"Refusing to write outside the store: {path}")
        return self.base_path / relative

    async def put(
        self,
        content: Union[bytes, str],
        path: str,
        content_type: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> ArtifactRef:
        """Store artifact in local filesystem."""
        file_path = self._resolve(path)
        try:
            content_bytes = self._read_content(content)
            await aiofiles.os.makedirs(file_path.parent, exist_ok=True)
            async with aiofiles.open(file_path, 'wb') as f:
                await f.write(content_bytes)
        except (OSError, ValueError) as e:
            raise StorageWriteError(f"Failed to write {path}: {e}") from e

        logger.debug(f"Stored {path} ({len(content_bytes)} bytes)")
        return ArtifactRef(
            path=path,
            checksum=self._calculate_checksum(content_bytes),
            size_bytes=len(content_bytes),
            content_type=content_type,
            metadata=metadata
        )

    async def delete(self, path: str) -> bool:
        file_path = self._resolve(path)
        if not await aiofiles.os.path.exists(file_path):
            return False
        await aiofiles.os.remove(file_path)
        return True

    async def exists(self, path: str) -> bool:
        return await aiofiles.os.path.exists(self._resolve(path))
