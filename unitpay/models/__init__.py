from unitpay.models.liquidity_provider import LiquidityProvider
from unitpay.models.payment_intent import PaymentIntent

__all__ = [
    "LiquidityProvider",
    "PaymentIntent",
]
