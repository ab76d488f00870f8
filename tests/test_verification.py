"""Tests for strict capture verification and the oracle wire format."""

from decimal import Decimal

import pytest

from unitpay.core.errors import ValidationError, VerificationMismatch
from unitpay.services.paypal.verification import (
    OracleVerificationRequest,
    OracleVerificationResult,
    decode_oracle_response,
    extract_capture,
    to_cents,
    verify_capture,
    verify_order,
)

from helpers import LP_A_EMAIL, MERCHANT, completed_order


def check(order: dict, **overrides) -> None:
    expected = {"merchant_email": MERCHANT, "payer_email": LP_A_EMAIL, "amount": Decimal("100"), "currency": "USD"}
    expected.update(overrides)
    verify_capture(extract_capture(order), **expected)


class TestExtractCapture:
    def test_reads_capture_fields(self):
        capture = extract_capture(completed_order("ORDER-5", amount="12.34"))
        assert capture.order_id == "ORDER-5"
        assert capture.capture_id == "CAP-ORDER-5"
        assert capture.status == "COMPLETED"
        assert capture.amount == Decimal("12.34")
        assert capture.payee_email == MERCHANT
        assert capture.payer_email == LP_A_EMAIL

    def test_uncaptured_order_falls_back_to_unit_amount(self):
        order = {
            "id": "ORDER-6",
            "status": "APPROVED",
            "purchase_units": [{"amount": {"currency_code": "USD", "value": "5.00"}}],
        }
        capture = extract_capture(order)
        assert capture.capture_id is None
        assert capture.status == "APPROVED"
        assert capture.amount == Decimal("5.00")

    def test_as_proof(self):
        proof = extract_capture(completed_order()).as_proof()
        assert proof["captured_amount"] == "100.00"
        assert proof["capture_status"] == "COMPLETED"


class TestVerifyCapture:
    def test_exact_match_passes(self):
        check(completed_order())

    def test_identity_is_case_insensitive(self):
        check(completed_order(payee=MERCHANT.upper(), payer=f"  {LP_A_EMAIL.upper()} "))

    def test_amount_must_match_exactly(self):
        with pytest.raises(VerificationMismatch) as exc_info:
            check(completed_order(amount="99.99"))
        assert set(exc_info.value.details["mismatches"]) == {"amount"}

    def test_no_partial_email_match(self):
        with pytest.raises(VerificationMismatch) as exc_info:
            check(completed_order(payee="merchant@shop.example.evil"))
        assert "merchant_email" in exc_info.value.details["mismatches"]

    def test_missing_payer_fails_closed(self):
        order = completed_order()
        del order["payer"]
        with pytest.raises(VerificationMismatch):
            check(order)

    def test_pending_capture(self):
        with pytest.raises(VerificationMismatch) as exc_info:
            check(completed_order(status="PENDING"))
        assert exc_info.value.details["mismatches"]["status"]["actual"] == "PENDING"

    def test_currency_mismatch(self):
        with pytest.raises(VerificationMismatch):
            check(completed_order(currency="EUR"))

    def test_reports_every_mismatch(self):
        with pytest.raises(VerificationMismatch) as exc_info:
            check(completed_order(payee="x@y.example", payer="p@q.example", amount="1.00"))
        assert set(exc_info.value.details["mismatches"]) == {"merchant_email", "payer_email", "amount"}


class TestOracleRequest:
    ARGS = ["UPabc", "ORDER-1", MERCHANT, "100.00", LP_A_EMAIL]

    def test_from_args_roundtrip(self):
        request = OracleVerificationRequest.from_args(self.ARGS)
        assert request.amount == Decimal("100.00")
        assert request.to_args() == self.ARGS

    def test_wrong_arity(self):
        with pytest.raises(ValidationError):
            OracleVerificationRequest.from_args(self.ARGS[:4])

    def test_unknown_field_rejected(self):
        payload = dict(zip(("payment_id", "order_id", "merchant_email", "amount", "lp_email"), self.ARGS))
        payload["mode"] = "relaxed"
        with pytest.raises(ValidationError) as exc_info:
            OracleVerificationRequest.parse(payload)
        assert exc_info.value.details["errors"]

    def test_bad_email_rejected(self):
        args = list(self.ARGS)
        args[2] = "not-an-email"
        with pytest.raises(ValidationError):
            OracleVerificationRequest.from_args(args)


class TestVerifyOrder:
    def test_builds_result(self):
        request = OracleVerificationRequest.from_args(["UPabc", "ORDER-1", MERCHANT, "100", LP_A_EMAIL])
        result = verify_order(request, completed_order("ORDER-1"))
        assert result == OracleVerificationResult(LP_A_EMAIL, MERCHANT, 10000, "COMPLETED")

    def test_order_id_must_match(self):
        request = OracleVerificationRequest.from_args(["UPabc", "ORDER-1", MERCHANT, "100", LP_A_EMAIL])
        with pytest.raises(VerificationMismatch):
            verify_order(request, completed_order("ORDER-2"))

    def test_encoded_response_decodes(self):
        result = OracleVerificationResult(LP_A_EMAIL, MERCHANT, 10000, "COMPLETED")
        assert decode_oracle_response(result.encode()) == result

    def test_garbage_response(self):
        with pytest.raises(ValidationError):
            decode_oracle_response(b"\x01\x02")


@pytest.mark.parametrize(
    "amount, cents",
    [("100", 10000), ("0.01", 1), ("12.345", 1234), ("12.355", 1236)],
)
def test_to_cents(amount, cents):
    assert to_cents(Decimal(amount)) == cents
