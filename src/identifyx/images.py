"""Scoped handles for uploaded images.

An uploaded image is registered under a random token and served at
``/images/{token}``, to the session that uploaded it only, until that
session revokes it. Revoking is idempotent.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

IMAGE_ROUTE_PREFIX = "/images"


@dataclass(frozen=True)
class ImageHandle:
    """An uploaded image together with its decoded pixels."""

    token: str
    filename: str
    content_type: str
    data: bytes = field(repr=False)
    pixels: NDArray[np.uint8] = field(repr=False, compare=False)

    @property
    def url(self) -> str:
        return f"{IMAGE_ROUTE_PREFIX}/{self.token}"


class ImageStore:
    """Registry of live image handles."""

    def __init__(self) -> None:
        self._handles: dict[str, ImageHandle] = {}

    def acquire(self, filename: str, content_type: str, data: bytes, pixels: NDArray[np.uint8]) -> ImageHandle:
        handle = ImageHandle(
            token=secrets.token_urlsafe(16),
            filename=filename,
            content_type=content_type,
            data=data,
            pixels=pixels,
        )
        self._handles[handle.token] = handle
        logger.debug("Acquired image handle %s for %s", handle.token, filename)
        return handle

    def revoke(self, handle: ImageHandle | None) -> None:
        if handle is None:
            return
        if self._handles.pop(handle.token, None) is not None:
            logger.debug("Revoked image handle %s", handle.token)

    def __len__(self) -> int:
        return len(self._handles)

    def __contains__(self, token: object) -> bool:
        return token in self._handles
