"""
Camera permission sources.

The session controller asks a :class:`CameraPermission` whether it may use
the camera.  On phones this is an OS prompt whose answer may arrive later
and on another thread; on a desktop or a Raspberry Pi there is no prompt,
so :class:`StaticPermission` answers immediately.
"""

from __future__ import annotations

import logging
from enum import Enum, auto
from typing import Callable

logger = logging.getLogger(__name__)


class PermissionStatus(Enum):
    AUTHORIZED     = auto()
    NOT_DETERMINED = auto()   # never asked; request() will prompt
    DENIED         = auto()   # denied or restricted


class CameraPermission:
    """Interface for querying and requesting camera access."""

    def status(self) -> PermissionStatus:
        raise NotImplementedError

    def request(self, callback: Callable[[bool], None]) -> None:
        """
        Ask for access.  *callback* receives the answer, possibly later and
        from another thread.
        """
        raise NotImplementedError


class StaticPermission(CameraPermission):
    """
    Permission with a fixed answer.

    Parameters
    ----------
    initial:
        Status reported before any request.
    grant_on_request:
        Answer given to :meth:`request` when the status is
        ``NOT_DETERMINED``.
    """

    def __init__(
        self,
        initial: PermissionStatus = PermissionStatus.AUTHORIZED,
        grant_on_request: bool = True,
    ) -> None:
        self._status = initial
        self.grant_on_request = grant_on_request

    def status(self) -> PermissionStatus:
        return self._status

    def request(self, callback: Callable[[bool], None]) -> None:
        if self._status is PermissionStatus.NOT_DETERMINED:
            self._status = (
                PermissionStatus.AUTHORIZED if self.grant_on_request
                else PermissionStatus.DENIED
            )
            logger.info("Camera permission %s", self._status.name.lower())
        callback(self._status is PermissionStatus.AUTHORIZED)
