"""
Game Server API Endpoints

Operator access to the game server: status, presence, direct delivery,
kicks and in-game messages.
"""
from dataclasses import asdict
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from typing import Any, Dict, Optional
import logging

from ..clients.game_server import GameServerBoundary, validate_identifier
from ..dependencies import get_fulfillment, get_game_server, get_ledger
from ..exceptions import InvalidIdentifier, UnknownUser
from ..models.catalog import ProductType, parse_payload
from ..services.fulfillment import FulfillmentEngine
from ..services.ledger import Ledger

logger = logging.getLogger(__name__)

router = APIRouter()


class DirectDeliveryRequest(BaseModel):
    identifier: str
    grant_type: ProductType
    grant_data: Dict[str, Any] = Field(default_factory=dict)
    transaction_id: Optional[str] = None
    granted_by: Optional[int] = None


class KickRequest(BaseModel):
    reason: str = "Kicked by admin"


class MessageRequest(BaseModel):
    message: str = Field(min_length=1, max_length=500)


def _require_identifier(identifier: str) -> None:
    if not validate_identifier(identifier):
        raise InvalidIdentifier("Invalid game identifier format", {"identifier": identifier})


@router.get("/server/status")
async def server_status_endpoint(
    game_server: GameServerBoundary = Depends(get_game_server)
) -> Dict[str, Any]:
    status = await game_server.get_status()
    return {
        "success": True,
        "server": {
            "online": status.online,
            "players": status.players,
            "max_players": status.max_players,
            "version": status.version,
            "resources": status.resources,
        },
    }


@router.get("/server/player/{identifier}/online")
async def player_online_endpoint(
    identifier: str,
    game_server: GameServerBoundary = Depends(get_game_server)
) -> Dict[str, Any]:
    _require_identifier(identifier)
    player = await game_server.is_online(identifier)
    return {
        "success": True,
        "identifier": identifier,
        "online": player is not None,
        "player": asdict(player) if player else None,
    }


@router.post("/server/deliver")
async def direct_delivery_endpoint(
    request: DirectDeliveryRequest,
    fulfillment: FulfillmentEngine = Depends(get_fulfillment),
    ledger: Ledger = Depends(get_ledger)
) -> Dict[str, Any]:
    """
    Grant and deliver to a player by game identity, with bounded retry.

    A grant that still cannot be delivered is marked failed; operators
    re-deliver it through /admin/grants/{id}/deliver.
    """
    _require_identifier(request.identifier)

    user = await ledger.get_user_by_game_identifier(request.identifier)
    if user is None:
        raise UnknownUser(
            "No user found with the specified game identifier",
            {"identifier": request.identifier}
        )

    payload = parse_payload(request.grant_type, request.grant_data)
    grant = await fulfillment.issue_grant(
        user.id,
        payload,
        granted_by=request.granted_by,
        transaction_id=request.transaction_id,
        with_retry=True,
    )

    if grant.status == "pending":
        await ledger.update_grant_status(
            grant.id, "failed", actor=f"admin:{request.granted_by}",
            details={"reason": "direct delivery attempts exhausted"}
        )

    await ledger.log_activity(
        f"admin:{request.granted_by}", "manual_delivery", "grant", grant.id, user.id,
        {"identifier": request.identifier, "grant_type": request.grant_type}
    )

    delivered = grant.status == "delivered"
    return {
        "success": True,
        "message": "Delivered" if delivered else "Delivery failed, player offline or server unreachable",
        "delivery": {
            "grant_id": grant.id,
            "delivered": delivered,
            "identifier": request.identifier,
            "grant_type": request.grant_type,
        },
    }


@router.post("/server/player/{identifier}/kick")
async def kick_player_endpoint(
    identifier: str,
    request: KickRequest,
    game_server: GameServerBoundary = Depends(get_game_server),
    ledger: Ledger = Depends(get_ledger)
) -> Dict[str, Any]:
    _require_identifier(identifier)
    kicked = await game_server.kick(identifier, request.reason)
    if kicked:
        await ledger.log_activity(
            "admin", "player_kicked", "player", identifier, None, {"reason": request.reason}
        )
    return {
        "success": kicked,
        "message": "Player kicked successfully" if kicked else "Failed to kick player (may be offline)",
    }


@router.post("/server/player/{identifier}/message")
async def player_message_endpoint(
    identifier: str,
    request: MessageRequest,
    game_server: GameServerBoundary = Depends(get_game_server)
) -> Dict[str, Any]:
    _require_identifier(identifier)
    sent = await game_server.send_message(identifier, request.message)
    return {
        "success": sent,
        "message": "Message sent successfully" if sent else "Failed to send message (player may be offline)",
    }
