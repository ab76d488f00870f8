"""Strict verification of captured PayPal orders and the oracle wire format.

Identity checks are exact, case-insensitive equality. There is no partial
or "relaxed" matching: a funds-release gate either matches or fails closed.
"""

import logging
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from eth_abi import decode, encode
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from unitpay.core.errors import ValidationError, VerificationMismatch

logger = logging.getLogger(__name__)

ORACLE_RESPONSE_TYPES = ["string", "string", "uint256", "string"]
ORACLE_ARG_FIELDS = ("payment_id", "order_id", "merchant_email", "amount", "lp_email")
COMPLETED = "COMPLETED"

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass(frozen=True)
class CaptureDetails:
    order_id: str
    capture_id: str | None
    status: str
    payer_email: str | None
    payee_email: str | None
    amount: Decimal | None
    currency: str | None

    def as_proof(self) -> dict:
        return {
            "order_id": self.order_id,
            "capture_id": self.capture_id,
            "capture_status": self.status,
            "payer_email": self.payer_email,
            "payee_email": self.payee_email,
            "captured_amount": str(self.amount) if self.amount is not None else None,
            "captured_currency": self.currency,
        }


def _same_identity(left: str | None, right: str | None) -> bool:
    if not left or not right:
        return False
    return left.strip().lower() == right.strip().lower()


def extract_capture(order: dict) -> CaptureDetails:
    """Pull the identifiers that matter out of a v2 order representation."""
    units = order.get("purchase_units") or [{}]
    unit = units[0]
    captures = (unit.get("payments") or {}).get("captures") or []
    capture = captures[0] if captures else {}
    amount_info = capture.get("amount") or unit.get("amount") or {}

    amount = None
    if amount_info.get("value") is not None:
        try:
            amount = Decimal(str(amount_info["value"]))
        except InvalidOperation:
            amount = None

    return CaptureDetails(
        order_id=order.get("id", ""),
        capture_id=capture.get("id"),
        status=capture.get("status") or order.get("status") or "",
        payer_email=(order.get("payer") or {}).get("email_address"),
        payee_email=(unit.get("payee") or {}).get("email_address"),
        amount=amount,
        currency=amount_info.get("currency_code"),
    )


def verify_capture(
    capture: CaptureDetails,
    *,
    merchant_email: str,
    payer_email: str | None,
    amount: Decimal,
    currency: str | None = None,
) -> None:
    """Raise VerificationMismatch unless every check passes."""
    mismatches: dict[str, dict] = {}
    if capture.status != COMPLETED:
        mismatches["status"] = {"expected": COMPLETED, "actual": capture.status}
    if not _same_identity(capture.payee_email, merchant_email):
        mismatches["merchant_email"] = {"expected": merchant_email, "actual": capture.payee_email}
    if not _same_identity(capture.payer_email, payer_email):
        mismatches["payer_email"] = {"expected": payer_email, "actual": capture.payer_email}
    if capture.amount is None or capture.amount != Decimal(amount):
        mismatches["amount"] = {
            "expected": str(amount),
            "actual": str(capture.amount) if capture.amount is not None else None,
        }
    if currency and capture.currency and capture.currency.upper() != currency.upper():
        mismatches["currency"] = {"expected": currency, "actual": capture.currency}

    if mismatches:
        logger.warning(
            "Capture %s failed verification on %s", capture.order_id, ", ".join(sorted(mismatches)),
        )
        raise VerificationMismatch(
            f"Captured order {capture.order_id} does not match the intent: "
            + ", ".join(sorted(mismatches)),
            {"order_id": capture.order_id, "mismatches": mismatches},
        )


# ---------------------------------------------------------------------------
# Oracle boundary
# ---------------------------------------------------------------------------


class OracleVerificationRequest(BaseModel):
    """The single accepted shape of an oracle verification request."""

    model_config = ConfigDict(extra="forbid", frozen=True, str_strip_whitespace=True)

    payment_id: str = Field(min_length=1, max_length=24)
    order_id: str = Field(min_length=1, max_length=64)
    merchant_email: str = Field(min_length=3, max_length=255)
    amount: Decimal = Field(gt=0)
    lp_email: str = Field(min_length=3, max_length=255)

    @field_validator("merchant_email", "lp_email")
    @classmethod
    def _email(cls, value: str) -> str:
        if not _EMAIL_RE.match(value):
            raise ValueError("not an email address")
        return value.lower()

    @classmethod
    def parse(cls, payload: dict) -> "OracleVerificationRequest":
        try:
            return cls.model_validate(payload)
        except PydanticValidationError as exc:
            raise ValidationError(
                "Malformed oracle request",
                {"errors": exc.errors(include_url=False, include_context=False)},
            )

    @classmethod
    def from_args(cls, args: list[str]) -> "OracleVerificationRequest":
        """Parse the positional args the on-chain request carries."""
        if not isinstance(args, list) or len(args) != len(ORACLE_ARG_FIELDS):
            raise ValidationError(
                f"Oracle args must be a list of {len(ORACLE_ARG_FIELDS)} strings",
                {"expected": list(ORACLE_ARG_FIELDS)},
            )
        return cls.parse(dict(zip(ORACLE_ARG_FIELDS, args)))

    def to_args(self) -> list[str]:
        return [str(getattr(self, name)) for name in ORACLE_ARG_FIELDS]


@dataclass(frozen=True)
class OracleVerificationResult:
    payer_email: str
    merchant_email: str
    amount_cents: int
    status: str

    def encode(self) -> bytes:
        return encode(
            ORACLE_RESPONSE_TYPES,
            [self.payer_email, self.merchant_email, self.amount_cents, self.status],
        )


def to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).to_integral_value())


def decode_oracle_response(data: bytes) -> OracleVerificationResult:
    try:
        payer, merchant, cents, status = decode(ORACLE_RESPONSE_TYPES, data)
    except Exception as exc:
        raise ValidationError(f"Undecodable oracle response: {exc}") from exc
    return OracleVerificationResult(payer, merchant, int(cents), status)


def verify_order(request: OracleVerificationRequest, order: dict) -> OracleVerificationResult:
    """Apply the strict checks to ``order`` and build the oracle answer."""
    capture = extract_capture(order)
    if capture.order_id and capture.order_id != request.order_id:
        raise VerificationMismatch(
            f"Order id mismatch: requested {request.order_id}, got {capture.order_id}",
            {"order_id": request.order_id},
        )
    verify_capture(
        capture,
        merchant_email=request.merchant_email,
        payer_email=request.lp_email,
        amount=request.amount,
    )
    return OracleVerificationResult(
        payer_email=(capture.payer_email or "").lower(),
        merchant_email=(capture.payee_email or "").lower(),
        amount_cents=to_cents(capture.amount or Decimal("0")),
        status=capture.status,
    )
