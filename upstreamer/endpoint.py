"""An endpoint: a named authority reachable through a transport."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from upstreamer.protocol import UTransport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Endpoint:
    """Combination of an authority name and the transport that reaches it."""

    name: str
    authority: str
    transport: UTransport

    def __post_init__(self) -> None:
        logger.debug("Endpoint:new(): Creating Endpoint from: (%r)", self.authority)