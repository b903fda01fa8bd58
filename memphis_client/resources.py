"""
Factory and station handles returned by ``Memphis.factory`` and ``Memphis.station``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from memphis_client import control_plane

if TYPE_CHECKING:
    from memphis_client.connection import Memphis

logger = logging.getLogger(__name__)


class Factory:
    """A logical namespace grouping stations."""

    def __init__(self, connection: "Memphis", name: str):
        self.connection = connection
        self.name = name.lower()

    async def destroy(self) -> None:
        """Remove the factory from the control plane."""
        await self.connection.request(
            control_plane.REMOVE_FACTORY,
            {"factory_name": self.name},
        )
        logger.info("Factory destroyed", extra={"factory": self.name})

    def __repr__(self) -> str:
        return f"Factory(name={self.name!r})"


class Station:
    """A named persistent message stream."""

    def __init__(self, connection: "Memphis", name: str):
        self.connection = connection
        self.name = name.lower()

    async def destroy(self) -> None:
        """Remove the station from the control plane."""
        await self.connection.request(
            control_plane.REMOVE_STATION,
            {"station_name": self.name},
        )
        logger.info("Station destroyed", extra={"station": self.name})

    def __repr__(self) -> str:
        return f"Station(name={self.name!r})"
