"""ABI fragments for the escrow contract and the ERC-20 settlement token."""


def _fn(name: str, inputs: list[tuple[str, str]], outputs: list[tuple[str, str]] | None = None,
        mutability: str = "nonpayable") -> dict:
    return {
        "type": "function",
        "name": name,
        "stateMutability": mutability,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": n, "type": t} for n, t in (outputs or [])],
    }


def _event(name: str, inputs: list[tuple[str, str, bool]]) -> dict:
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [{"name": n, "type": t, "indexed": i} for n, t, i in inputs],
    }


PAYMENT_RECORD_FIELDS: list[tuple[str, str]] = [
    ("user", "address"),
    ("lp", "address"),
    ("token", "address"),
    ("amount", "uint256"),
    ("timestamp", "uint256"),
    ("lockTime", "uint256"),
    ("releaseTime", "uint256"),
    ("platformFee", "uint256"),
    ("paymentIdStr", "string"),
    ("network", "string"),
    ("paymentType", "uint8"),
    ("escrowStatus", "uint8"),
    ("isDisputed", "bool"),
]

ESCROW_ABI: list[dict] = [
    _fn(
        "lockPayment",
        [("lp", "address"), ("token", "address"), ("amount", "uint256"),
         ("network", "string"), ("paymentId", "string")],
        [("", "bool")],
    ),
    _fn("submitOrderId", [("paymentId", "string"), ("paypalOrderId", "string")]),
    _fn("confirmPayment", [("paymentId", "string")]),
    _fn("withdrawPayment", [("paymentId", "string")]),
    _fn("refundPayment", [("paymentId", "string")]),
    _fn("cancelExpiredPayment", [("paymentId", "string")]),
    _fn("getPaymentByPaymentId", [("paymentId", "string")], PAYMENT_RECORD_FIELDS, "view"),
    _fn("verificationStatus", [("paymentId", "string")], [("", "uint8")], "view"),
    _fn("lpPaypalEmail", [("lp", "address")], [("", "string")], "view"),
    _event(
        "PaymentLocked",
        [("paymentId", "string", False), ("user", "address", True), ("lp", "address", True),
         ("amount", "uint256", False), ("platformFee", "uint256", False)],
    ),
    _event("OrderVerified", [("paymentId", "string", False)]),
    _event("PaymentConfirmed", [("paymentId", "string", False), ("isAuto", "bool", False)]),
    _event(
        "PaymentReleased",
        [("paymentId", "string", False), ("lp", "address", False),
         ("amount", "uint256", False), ("platformFee", "uint256", False)],
    ),
]

ERC20_ABI: list[dict] = [
    _fn("allowance", [("owner", "address"), ("spender", "address")], [("", "uint256")], "view"),
    _fn("approve", [("spender", "address"), ("amount", "uint256")], [("", "bool")]),
    _fn("decimals", [], [("", "uint8")], "view"),
]

ESCROW_EVENTS = ("PaymentLocked", "OrderVerified", "PaymentConfirmed", "PaymentReleased")
