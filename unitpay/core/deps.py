from collections.abc import AsyncGenerator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from unitpay.db.session import async_session_factory
from unitpay.services.bridge import VerificationBridge
from unitpay.services.chain.escrow_adapter import EscrowAdapter, get_escrow_adapter
from unitpay.services.connections import ConnectionManager
from unitpay.services.paypal.client import PayPalClient

_paypal_client: PayPalClient | None = None


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields an async database session.

    The session is automatically closed when the request finishes.
    """
    async with async_session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


def get_escrow() -> EscrowAdapter | None:
    """The escrow adapter, or None when no chain is configured."""
    return get_escrow_adapter()


def get_paypal() -> PayPalClient:
    global _paypal_client
    if _paypal_client is None:
        _paypal_client = PayPalClient()
    return _paypal_client


def get_bridge(
    paypal: PayPalClient = Depends(get_paypal),
    escrow: EscrowAdapter | None = Depends(get_escrow),
) -> VerificationBridge:
    return VerificationBridge(paypal, escrow)


def get_connections(request: Request) -> ConnectionManager:
    return request.app.state.connections
