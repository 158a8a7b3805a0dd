"""
Mock PIX Payment Provider

Stands in for the PIX provider when no client credentials are configured.
Charges start pending and only change through set_status(), which the test
suite and local demos use to simulate a payer settling or abandoning a charge.
"""
import hashlib
import logging
import secrets
from datetime import timedelta
from typing import Dict, Optional

from ..clients.payment_provider import ChargeInfo, ChargeStatus, PaymentProvider
from ..db.models import utcnow

logger = logging.getLogger(__name__)


class MockPixProvider(PaymentProvider):
    """In-memory charge book keyed by mock payment id."""

    def __init__(self, charge_ttl_seconds: int = 900):
        self._charge_ttl_seconds = charge_ttl_seconds
        self._charges: Dict[str, ChargeStatus] = {}

    async def create_charge(
        self,
        amount_cents: int,
        description: str,
        external_ref: str,
        customer: Optional[Dict[str, str]] = None
    ) -> ChargeInfo:
        payment_id = f"mock_{secrets.token_hex(8)}"
        self._charges[payment_id] = ChargeStatus(status="pending", amount_cents=amount_cents)

        # EMV-like payload so clients can render a QR code
        digest = hashlib.sha256(f"{payment_id}:{amount_cents}".encode()).hexdigest()[:4].upper()
        qr_code = (
            f"00020126580014BR.GOV.BCB.PIX0136{payment_id}"
            f"5204000053039865406{amount_cents / 100:.2f}5802BR6304{digest}"
        )

        logger.info(f"[mock] Created PIX charge {payment_id} for {external_ref}: {amount_cents} cents")
        return ChargeInfo(
            payment_id=payment_id,
            qr_code=qr_code,
            expires_at=utcnow() + timedelta(seconds=self._charge_ttl_seconds),
            amount_cents=amount_cents,
        )

    async def get_charge_status(self, payment_id: str) -> ChargeStatus:
        return self._charges.get(payment_id, ChargeStatus(status="pending"))

    async def cancel_charge(self, payment_id: str) -> bool:
        charge = self._charges.get(payment_id)
        if charge is None or charge.status != "pending":
            return False
        charge.status = "cancelled"
        return True

    def set_status(self, payment_id: str, status: str) -> None:
        """Simulate the payer settling ("approved") or the charge being removed."""
        charge = self._charges.setdefault(payment_id, ChargeStatus(status="pending"))
        charge.status = status
        if status == "approved":
            charge.paid_at = utcnow()
