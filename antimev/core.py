"""
Transactions, blocks and receipts of the host chain.
"""
import time
import msgpack
from typing import Optional
from .crypto import (
    generate_hash,
    public_key_to_address,
    sign,
    verify_signature,
)

TRANSFER = "TRANSFER"
TRANSFER_FROM = "TRANSFER_FROM"
APPROVE = "APPROVE"

TX_TYPES = (TRANSFER, TRANSFER_FROM, APPROVE)

REQUIRED_FIELDS = {
    TRANSFER: ('token', 'to', 'amount'),
    TRANSFER_FROM: ('token', 'from', 'to', 'amount'),
    APPROVE: ('token', 'spender', 'amount'),
}


def _encode_amount(data: dict) -> dict:
    # Amounts of an 18-decimal token overflow msgpack's 64-bit ints
    amount = data.get('amount')
    if isinstance(amount, int) and not isinstance(amount, bool):
        return {**data, 'amount': str(amount)}
    return data


class Transaction:
    def __init__(self,
                 sender_public_key: str,
                 tx_type: str,
                 data: dict,
                 nonce: int,
                 signature: Optional[bytes] = None,
                 timestamp: Optional[float] = None,
                 chain_id: Optional[int] = 1):
        self.sender_public_key = sender_public_key
        self.tx_type = tx_type
        self.data = data
        self.nonce = nonce
        self.timestamp = timestamp or time.time()
        self.signature = signature
        self.chain_id = chain_id

    @classmethod
    def from_dict(cls, data: dict):
        signature = data.get("signature")
        if isinstance(signature, str):
            signature = bytes.fromhex(signature)
        return cls(
            sender_public_key=data["sender_public_key"],
            tx_type=data["tx_type"],
            data=data["data"],
            nonce=data["nonce"],
            signature=signature,
            timestamp=data.get("timestamp"),
            chain_id=data.get("chain_id"),
        )

    def to_dict(self, include_signature=True):
        data = {
            "sender_public_key": self.sender_public_key,
            "tx_type": self.tx_type,
            "data": self.data,
            "nonce": self.nonce,
            "timestamp": self.timestamp,
            "chain_id": self.chain_id,
        }
        if include_signature and self.signature:
            data["signature"] = self.signature
        return data

    def get_signing_data(self) -> bytes:
        """Returns the canonical byte representation for signing."""
        payload = self.to_dict(include_signature=False)
        payload["data"] = _encode_amount(self.data)
        return msgpack.packb(payload, use_bin_type=True)

    def sign(self, private_key):
        self.signature = sign(private_key, self.get_signing_data())

    def verify_signature(self):
        if not self.signature:
            return False
        return verify_signature(
            self.sender_public_key,
            self.signature,
            self.get_signing_data()
        )

    @property
    def id(self) -> bytes:
        """The unique hash identifier of the transaction."""
        return generate_hash(self.get_signing_data())

    @property
    def sender(self) -> bytes:
        return public_key_to_address(self.sender_public_key)

    def validate_basic(self) -> tuple[bool, str]:
        """
        Stateless checks: type, required fields, amount, signature.
        Returns (is_valid, error_message)
        """
        if self.tx_type not in TX_TYPES:
            return False, f"Unknown transaction type: {self.tx_type}"

        missing = [f for f in REQUIRED_FIELDS[self.tx_type] if f not in self.data]
        if missing:
            return False, f"{self.tx_type} requires {', '.join(missing)}"

        amount = self.data['amount']
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
            return False, "Amount must be a non-negative integer"

        if not self.verify_signature():
            return False, "Invalid signature"

        return True, ""


class Block:
    """A sealed block: height, parent link and the ids of included transactions."""

    def __init__(self, height: int, parent_hash: bytes, timestamp: float,
                 tx_ids: Optional[list] = None):
        self.height = height
        self.parent_hash = parent_hash
        self.timestamp = timestamp
        self.tx_ids = tx_ids or []

    def to_dict(self) -> dict:
        return {
            "height": self.height,
            "parent_hash": self.parent_hash,
            "timestamp": self.timestamp,
            "tx_ids": self.tx_ids,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Block':
        return cls(
            height=data["height"],
            parent_hash=data["parent_hash"],
            timestamp=data["timestamp"],
            tx_ids=list(data.get("tx_ids", [])),
        )

    @property
    def hash(self) -> bytes:
        return generate_hash(msgpack.packb(self.to_dict(), use_bin_type=True))

    def __repr__(self) -> str:
        return f"Block(height={self.height}, txs={len(self.tx_ids)}, hash={self.hash.hex()[:8]})"


class Receipt:
    """Outcome of executing one transaction."""

    SUCCESS = "success"
    FAILED = "failed"

    def __init__(self, tx_id: bytes, block_number: int, status: str,
                 reason: Optional[str] = None, error: Optional[str] = None,
                 events: Optional[list] = None):
        self.tx_id = tx_id
        self.block_number = block_number
        self.status = status
        self.reason = reason
        self.error = error
        self.events = events or []

    @property
    def success(self) -> bool:
        return self.status == self.SUCCESS

    def to_dict(self) -> dict:
        return {
            "tx_id": self.tx_id,
            "block_number": self.block_number,
            "status": self.status,
            "reason": self.reason,
            "error": self.error,
            "events": self.events,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Receipt':
        return cls(**data)

    def __repr__(self) -> str:
        if self.success:
            return f"Receipt({self.tx_id.hex()[:8]}, block={self.block_number}, success)"
        return (f"Receipt({self.tx_id.hex()[:8]}, block={self.block_number}, "
                f"failed: {self.reason})")
