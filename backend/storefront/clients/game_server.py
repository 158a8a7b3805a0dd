"""
Game Server Client

HTTP boundary to the game server's store resource. The server is reachable
only while it runs, and deliveries succeed only while the recipient is
connected, so every call is bounded by a timeout and transport failures are
raised as DeliveryTransient / DeliveryPermanent for the coordinator to
classify.

Endpoints (store resource):
- GET  /store/status
- GET  /store/player/{identifier}/online
- POST /store/deliver
- POST /store/player/{identifier}/kick
- POST /store/player/{identifier}/message
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from ..exceptions import DeliveryPermanent, DeliveryTransient, StoreError

logger = logging.getLogger(__name__)


VALID_IDENTIFIER_PREFIXES = ("steam", "license", "discord", "fivem", "live", "xbl")


def validate_identifier(identifier: str) -> bool:
    """Check the provider:opaque-id format against the allowed providers."""
    if not identifier or ":" not in identifier:
        return False
    prefix, _, opaque = identifier.partition(":")
    return prefix in VALID_IDENTIFIER_PREFIXES and bool(opaque)


@dataclass
class ServerStatus:
    """Game server status snapshot."""
    online: bool
    players: int = 0
    max_players: int = 0
    version: str = "unknown"
    resources: List[str] = field(default_factory=list)


@dataclass
class PlayerInfo:
    """Connected player as reported by the game server."""
    identifier: str
    id: Optional[int] = None
    name: Optional[str] = None
    ping: Optional[int] = None


@dataclass
class BoundaryDelivery:
    """Raw answer to a delivery command."""
    success: bool
    recipient_online: Optional[bool] = None
    message: str = ""


class GameServerBoundary(ABC):
    """Operations the store needs from the game server."""

    @abstractmethod
    async def get_status(self) -> ServerStatus:
        pass

    @abstractmethod
    async def is_online(self, identifier: str) -> Optional[PlayerInfo]:
        """Connected player info, or None when offline/unknown."""
        pass

    @abstractmethod
    async def deliver(
        self,
        identifier: str,
        grant_type: str,
        payload: Dict[str, Any],
        transaction_id: Optional[str] = None
    ) -> BoundaryDelivery:
        """
        Push a grant to a player.

        Raises:
            DeliveryTransient: server unreachable or timed out
            DeliveryPermanent: server rejected the request (auth, missing resource)
        """
        pass

    @abstractmethod
    async def kick(self, identifier: str, reason: str) -> bool:
        pass

    @abstractmethod
    async def send_message(self, identifier: str, text: str) -> bool:
        pass

    async def close(self) -> None:
        pass


class GameServerClient(GameServerBoundary):
    """httpx implementation of the game server boundary."""

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout_seconds,
            transport=transport,
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
                "User-Agent": "Storefront-API/1.0"
            }
        )
        logger.info(f"Game server client initialized: {base_url}")

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        try:
            response = await self._client.request(
                method,
                endpoint,
                json=data if method != "GET" else None
            )
            response.raise_for_status()
            return response.json()
        except httpx.ConnectError as e:
            raise DeliveryTransient(
                "Game server is offline or unreachable",
                {"endpoint": endpoint, "error": str(e)}
            )
        except httpx.TimeoutException:
            raise DeliveryTransient("Game server request timed out", {"endpoint": endpoint})
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status == 401:
                raise DeliveryPermanent("Invalid game server token", {"endpoint": endpoint})
            if status == 404:
                raise DeliveryPermanent(
                    "Game server endpoint not found - ensure the store resource is running",
                    {"endpoint": endpoint}
                )
            raise DeliveryTransient(f"Game server error: HTTP {status}", {"endpoint": endpoint})
        except (httpx.HTTPError, ValueError) as e:
            raise DeliveryTransient(f"Game server error: {e}", {"endpoint": endpoint})

    async def get_status(self) -> ServerStatus:
        try:
            response = await self._request("GET", "/store/status")
        except StoreError as e:
            logger.error(f"Failed to get game server status: {e.message}")
            return ServerStatus(online=False)

        return ServerStatus(
            online=bool(response.get("online", True)),
            players=response.get("players", 0),
            max_players=response.get("maxPlayers", 32),
            version=response.get("version", "unknown"),
            resources=response.get("resources", []),
        )

    async def is_online(self, identifier: str) -> Optional[PlayerInfo]:
        try:
            response = await self._request("GET", f"/store/player/{quote(identifier, safe='')}/online")
        except StoreError as e:
            logger.error(f"Failed to check player online status for {identifier}: {e.message}")
            return None

        if not response.get("online"):
            return None

        return PlayerInfo(
            identifier=response.get("identifier", identifier),
            id=response.get("id"),
            name=response.get("name"),
            ping=response.get("ping"),
        )

    async def deliver(
        self,
        identifier: str,
        grant_type: str,
        payload: Dict[str, Any],
        transaction_id: Optional[str] = None
    ) -> BoundaryDelivery:
        response = await self._request("POST", "/store/deliver", {
            "identifier": identifier,
            "type": grant_type,
            "data": payload,
            "transactionId": transaction_id,
        })

        return BoundaryDelivery(
            success=bool(response.get("success")),
            recipient_online=response.get("playerOnline"),
            message=response.get("message", ""),
        )

    async def kick(self, identifier: str, reason: str = "Kicked by admin") -> bool:
        try:
            response = await self._request(
                "POST", f"/store/player/{quote(identifier, safe='')}/kick", {"reason": reason}
            )
        except StoreError as e:
            logger.error(f"Failed to kick player {identifier}: {e.message}")
            return False
        return bool(response.get("success", False))

    async def send_message(self, identifier: str, text: str) -> bool:
        try:
            response = await self._request(
                "POST", f"/store/player/{quote(identifier, safe='')}/message", {"message": text}
            )
        except StoreError as e:
            logger.error(f"Failed to send message to player {identifier}: {e.message}")
            return False
        return bool(response.get("success", False))
