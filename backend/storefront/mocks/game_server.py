"""
Mock Game Server

In-process stand-in for the game server's store resource, used when no game
server token is configured and by the test suite.

Mock Behavior:
- online_identities=None treats every valid identity as connected
- A set restricts delivery to the listed identities; everyone else is offline
- Every delivery command is recorded in `deliveries`
- Kicking a player removes them from the online set
"""
import logging
from typing import Any, Dict, List, Optional, Set

from ..clients.game_server import (
    BoundaryDelivery,
    GameServerBoundary,
    PlayerInfo,
    ServerStatus,
    validate_identifier,
)

logger = logging.getLogger(__name__)


class MockGameServer(GameServerBoundary):
    """Deterministic game server double."""

    def __init__(self, online_identities: Optional[Set[str]] = None, max_players: int = 32):
        self.online_identities = online_identities
        self.max_players = max_players
        self.deliveries: List[Dict[str, Any]] = []
        self.messages: List[Dict[str, str]] = []

    def _connected(self, identifier: str) -> bool:
        if not validate_identifier(identifier):
            return False
        return self.online_identities is None or identifier in self.online_identities

    async def get_status(self) -> ServerStatus:
        players = 0 if self.online_identities is None else len(self.online_identities)
        return ServerStatus(
            online=True,
            players=players,
            max_players=self.max_players,
            version="mock",
            resources=["store"],
        )

    async def is_online(self, identifier: str) -> Optional[PlayerInfo]:
        if not self._connected(identifier):
            return None
        return PlayerInfo(identifier=identifier, name=identifier.split(":", 1)[1])

    async def deliver(
        self,
        identifier: str,
        grant_type: str,
        payload: Dict[str, Any],
        transaction_id: Optional[str] = None
    ) -> BoundaryDelivery:
        online = self._connected(identifier)
        self.deliveries.append({
            "identifier": identifier,
            "type": grant_type,
            "data": payload,
            "transaction_id": transaction_id,
            "delivered": online,
        })

        if not online:
            logger.info(f"[mock] Delivery to {identifier} deferred, player offline")
            return BoundaryDelivery(success=False, recipient_online=False, message="Player offline")

        logger.info(f"[mock] Delivered {grant_type} to {identifier}")
        return BoundaryDelivery(success=True, recipient_online=True, message="Delivered")

    async def kick(self, identifier: str, reason: str = "Kicked by admin") -> bool:
        if not self._connected(identifier):
            return False
        if self.online_identities is not None:
            self.online_identities.discard(identifier)
        logger.info(f"[mock] Kicked {identifier}: {reason}")
        return True

    async def send_message(self, identifier: str, text: str) -> bool:
        if not self._connected(identifier):
            return False
        self.messages.append({"identifier": identifier, "message": text})
        return True
