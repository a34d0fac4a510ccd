"""
Hashing, keys and addresses.
"""
from Crypto.Hash import keccak
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives import serialization
from cryptography.exceptions import InvalidSignature

ADDRESS_LENGTH = 20
ZERO_ADDRESS = b'\x00' * ADDRESS_LENGTH


def generate_hash(data: bytes) -> bytes:
    """Generates a Keccak-256 hash."""
    return keccak.new(digest_bits=256, data=data).digest()


def generate_key_pair() -> tuple[ec.EllipticCurvePrivateKey, ec.EllipticCurvePublicKey]:
    """Generates an ECDSA private/public key pair (SECP256k1)."""
    private_key = ec.generate_private_key(ec.SECP256K1())
    return private_key, private_key.public_key()


def serialize_public_key(public_key: ec.EllipticCurvePublicKey) -> str:
    """Serializes a public key object into PEM format (string)."""
    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    ).decode('utf-8')


def deserialize_public_key(pem_data: str) -> ec.EllipticCurvePublicKey:
    return serialization.load_pem_public_key(pem_data.encode('utf-8'))


def public_key_to_address(public_key_pem: str) -> bytes:
    """Last 20 bytes of the keccak hash of the uncompressed public point."""
    public_key = deserialize_public_key(public_key_pem)
    point = public_key.public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.UncompressedPoint
    )
    return generate_hash(point[1:])[-ADDRESS_LENGTH:]


def derive_contract_address(owner: bytes, nonce: int) -> bytes:
    return generate_hash(owner + nonce.to_bytes(8, 'big'))[-ADDRESS_LENGTH:]


def is_valid_address(address) -> bool:
    return isinstance(address, bytes) and len(address) == ADDRESS_LENGTH


def parse_address(value: str) -> bytes:
    """Parse a hex address, with or without 0x prefix."""
    if value.startswith(('0x', '0X')):
        value = value[2:]
    address = bytes.fromhex(value)
    if len(address) != ADDRESS_LENGTH:
        raise ValueError(f"Address must be {ADDRESS_LENGTH} bytes, got {len(address)}")
    return address


def sign(private_key: ec.EllipticCurvePrivateKey, data: bytes) -> bytes:
    """Signs byte data using ECDSA with SHA256."""
    return private_key.sign(data, ec.ECDSA(hashes.SHA256()))


def verify_signature(public_key_pem: str, signature: bytes, data: bytes) -> bool:
    """Verifies an ECDSA/SHA256 signature."""
    try:
        public_key = deserialize_public_key(public_key_pem)
        public_key.verify(signature, data, ec.ECDSA(hashes.SHA256()))
        return True
    except InvalidSignature:
        return False
