"""
PIX Payment Provider Client

Creates PIX charges, polls their status and cancels them through the
provider's cob API. Authentication is OAuth client credentials; the access
token is cached until shortly before it expires.

Provider statuses normalize to pending / approved / cancelled.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import httpx

from ..db.models import utcnow
from ..exceptions import PaymentProviderError

logger = logging.getLogger(__name__)


PIX_STATUS_MAP = {
    "CONCLUIDA": "approved",
    "REMOVIDA_PELO_USUARIO_RECEBEDOR": "cancelled",
    "REMOVIDA_PELO_PSP": "cancelled",
}


def normalize_pix_status(raw_status: Optional[str]) -> str:
    """Map a provider status to pending / approved / cancelled."""
    return PIX_STATUS_MAP.get((raw_status or "").upper(), "pending")


def format_amount(amount_cents: int) -> str:
    """Centavos to the provider's decimal string, e.g. 2000 -> "20.00"."""
    return f"{amount_cents // 100}.{amount_cents % 100:02d}"


def parse_amount(value: Any) -> Optional[int]:
    if value in (None, ""):
        return None
    reais, _, cents = str(value).partition(".")
    return int(reais) * 100 + int((cents + "00")[:2])


@dataclass
class ChargeInfo:
    """A created charge."""
    payment_id: str
    qr_code: str
    expires_at: datetime
    amount_cents: int
    status: str = "pending"


@dataclass
class ChargeStatus:
    """Current state of a charge."""
    status: str
    paid_at: Optional[datetime] = None
    amount_cents: Optional[int] = None


class PaymentProvider(ABC):
    """Operations the store needs from the payment provider."""

    @abstractmethod
    async def create_charge(
        self,
        amount_cents: int,
        description: str,
        external_ref: str,
        customer: Optional[Dict[str, str]] = None
    ) -> ChargeInfo:
        """
        Raises:
            PaymentProviderError: if the charge could not be created
        """
        pass

    @abstractmethod
    async def get_charge_status(self, payment_id: str) -> ChargeStatus:
        """
        Raises:
            PaymentProviderError: if the status could not be fetched
        """
        pass

    @abstractmethod
    async def cancel_charge(self, payment_id: str) -> bool:
        pass

    async def close(self) -> None:
        pass


class PixClient(PaymentProvider):
    """httpx implementation against the provider's PIX cob API."""

    def __init__(
        self,
        base_url: str,
        client_id: str,
        client_secret: str,
        pix_key: str,
        timeout_seconds: float = 15.0,
        charge_ttl_seconds: int = 900,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self._client_id = client_id
        self._client_secret = client_secret
        self._pix_key = pix_key
        self._charge_ttl_seconds = charge_ttl_seconds
        self._access_token: Optional[str] = None
        self._token_expires_at: Optional[datetime] = None
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout_seconds,
            transport=transport,
            headers={"Content-Type": "application/json"}
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _get_access_token(self) -> str:
        if self._access_token and self._token_expires_at and self._token_expires_at > utcnow():
            return self._access_token

        try:
            response = await self._client.post(
                "/oauth/token",
                json={"grant_type": "client_credentials"},
                auth=(self._client_id, self._client_secret)
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            logger.error(f"Failed to get payment provider access token: {e}")
            raise PaymentProviderError("Failed to authenticate with payment provider")

        self._access_token = data["access_token"]
        # Refresh a minute early
        self._token_expires_at = utcnow() + timedelta(seconds=max(int(data.get("expires_in", 3600)) - 60, 0))
        return self._access_token

    async def _authorized(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        token = await self._get_access_token()
        response = await self._client.request(
            method, url, headers={"Authorization": f"Bearer {token}"}, **kwargs
        )
        response.raise_for_status()
        return response.json()

    async def create_charge(
        self,
        amount_cents: int,
        description: str,
        external_ref: str,
        customer: Optional[Dict[str, str]] = None
    ) -> ChargeInfo:
        payload: Dict[str, Any] = {
            "calendario": {"expiracao": self._charge_ttl_seconds},
            "valor": {"original": format_amount(amount_cents)},
            "chave": self._pix_key,
            "solicitacaoPagador": description,
            "infoAdicionais": [{"nome": "External ID", "valor": external_ref}],
        }
        if customer and customer.get("cpf"):
            payload["devedor"] = {"nome": customer.get("name", ""), "cpf": customer["cpf"]}

        try:
            charge = await self._authorized("POST", "/v2/cob", json=payload)
            qr = await self._authorized("GET", f"/v2/loc/{charge['loc']['id']}/qrcode")
        except (httpx.HTTPError, KeyError) as e:
            logger.error(f"Failed to create PIX charge for {external_ref}: {e}")
            raise PaymentProviderError("Failed to create PIX payment", {"external_ref": external_ref})

        return ChargeInfo(
            payment_id=charge["txid"],
            qr_code=qr.get("qrcode", ""),
            expires_at=utcnow() + timedelta(seconds=self._charge_ttl_seconds),
            amount_cents=amount_cents,
        )

    async def get_charge_status(self, payment_id: str) -> ChargeStatus:
        try:
            charge = await self._authorized("GET", f"/v2/cob/{payment_id}")
        except httpx.HTTPError as e:
            logger.error(f"Failed to get payment status for {payment_id}: {e}")
            raise PaymentProviderError("Failed to get payment status", {"payment_id": payment_id})

        paid_at = None
        pix_entries = charge.get("pix") or []
        if pix_entries and pix_entries[0].get("horario"):
            paid_at = datetime.fromisoformat(pix_entries[0]["horario"].replace("Z", "+00:00")).replace(tzinfo=None)

        return ChargeStatus(
            status=normalize_pix_status(charge.get("status")),
            paid_at=paid_at,
            amount_cents=parse_amount((charge.get("valor") or {}).get("original")),
        )

    async def cancel_charge(self, payment_id: str) -> bool:
        try:
            await self._authorized(
                "PATCH", f"/v2/cob/{payment_id}", json={"status": "REMOVIDA_PELO_USUARIO_RECEBEDOR"}
            )
        except (httpx.HTTPError, PaymentProviderError) as e:
            logger.error(f"Failed to cancel payment {payment_id}: {e}")
            return False
        return True
