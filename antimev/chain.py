"""
Host execution environment for the token ledger.

Supplies what the token consumes but does not own: a monotonically increasing
block number, strictly sequential transaction execution, and all-or-nothing
state commits. Signed transactions are executed one at a time into the open
block; ``mine`` seals it and advances the block number.
"""
import logging
import time
from typing import Optional

import msgpack

from antimev.context import ExecutionContext
from antimev.core import Block, Receipt, Transaction, TRANSFER, TRANSFER_FROM, APPROVE
from antimev.crypto import derive_contract_address, parse_address
from antimev.db import DB, MemoryDB
from antimev.errors import CooldownViolation, InvalidAddress, ValidationError
from antimev.state import StateStore
from antimev.token import META_PREFIX, AntiMEVToken
from .monitoring import Monitor

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

GENESIS_PARENT_HASH = b'\x00' * 32

HEAD_KEY = b'head'
PENDING_KEY = b'pending'
NONCE_PREFIX = b'NONCE:'
RECEIPT_PREFIX = b'receipt:'


class Blockchain:
    def __init__(self, db_path: str = None, db=None, chain_id: int = 1,
                 monitoring_host: str = "127.0.0.1", monitoring_port: int = 9090,
                 start_monitoring: bool = False):
        if db is not None:
            self.db = db
        elif db_path:
            self.db = DB(db_path)
        else:
            raise ValueError("Either db_path or a DB object must be provided.")

        self.chain_id = chain_id
        self.state = StateStore(self.db)
        self.total_transactions = 0

        if not self.db.exists(HEAD_KEY):
            genesis = Block(height=0, parent_hash=GENESIS_PARENT_HASH, timestamp=time.time())
            self._store_block(genesis)
            logger.info(f"Created genesis block {genesis.hash.hex()[:8]}")
        self.head_hash = self.db.get(HEAD_KEY)
        self._head_height = self.get_latest_block().height

        raw_pending = self.db.get(PENDING_KEY)
        self.pending_tx_ids: list[bytes] = msgpack.unpackb(raw_pending, raw=False) if raw_pending else []

        # Every deployed token leaves exactly one metadata record
        self.tokens: dict[bytes, AntiMEVToken] = {}
        for key, _ in self.db.iterator(prefix=META_PREFIX):
            address = key[len(META_PREFIX):]
            self.tokens[address] = AntiMEVToken.load(self.state, address)
        if self.tokens:
            logger.info(f"Loaded {len(self.tokens)} deployed token(s)")

        self.monitor = Monitor(self, host=monitoring_host, port=monitoring_port)
        if start_monitoring:
            self.monitor.start_server()

    @classmethod
    def from_config(cls, config) -> 'Blockchain':
        """Build a chain from a Config; no database path means an in-memory chain."""
        database = config.database
        if database.path:
            db = DB(database.path,
                    write_buffer_size=database.write_buffer_size,
                    max_open_files=database.max_open_files,
                    compression=database.compression)
        else:
            db = MemoryDB()
        return cls(
            db=db,
            chain_id=config.chain.chain_id,
            monitoring_host=config.monitoring.host,
            monitoring_port=config.monitoring.port,
            start_monitoring=config.monitoring.enabled,
        )

    # ==========================================================================
    # BLOCKS
    # ==========================================================================

    @property
    def block_number(self) -> int:
        """Number of the open block that incoming transactions execute in."""
        return self._head_height + 1

    def _store_block(self, block: Block):
        block_hash = block.hash
        with self.db.write_batch() as batch:
            batch.put(b'block:' + block_hash, msgpack.packb(block.to_dict(), use_bin_type=True))
            batch.put(b'height:' + str(block.height).encode(), block_hash)
            batch.put(HEAD_KEY, block_hash)
            batch.put(PENDING_KEY, msgpack.packb([], use_bin_type=True))

    def get_block(self, block_hash: bytes) -> Block | None:
        raw = self.db.get(b'block:' + block_hash)
        if raw is None:
            return None
        return Block.from_dict(msgpack.unpackb(raw, raw=False))

    def get_block_by_height(self, height: int) -> Block | None:
        block_hash = self.db.get(b'height:' + str(height).encode())
        if block_hash:
            return self.get_block(block_hash)
        return None

    def get_latest_block(self) -> Block:
        return self.get_block(self.head_hash)

    def mine(self, count: int = 1) -> Block:
        """Seal the open block (and ``count - 1`` empty ones). Returns the last sealed block."""
        if count < 1:
            raise ValueError("count must be >= 1")
        block = None
        for _ in range(count):
            block = Block(
                height=self.block_number,
                parent_hash=self.head_hash,
                timestamp=time.time(),
                tx_ids=self.pending_tx_ids,
            )
            self._store_block(block)
            self.head_hash = block.hash
            self._head_height = block.height
            self.pending_tx_ids = []
            logger.info(f"Block {block.height} sealed with {len(block.tx_ids)} transactions")
        self.monitor.update()
        return block

    def validate_chain(self) -> bool:
        """Walk from head to genesis checking hash links and heights."""
        block = self.get_latest_block()
        while block.height > 0:
            parent = self.get_block(block.parent_hash)
            if parent is None:
                logger.error(f"Missing parent block: {block.parent_hash.hex()}")
                return False
            if parent.height != block.height - 1:
                logger.error(f"Height gap at block {block.height}")
                return False
            block = parent
        if block.parent_hash != GENESIS_PARENT_HASH:
            logger.error("Malformed genesis block")
            return False
        return True

    # ==========================================================================
    # ACCOUNTS & TOKENS
    # ==========================================================================

    def get_nonce(self, address: bytes) -> int:
        return self.state.get_obj(NONCE_PREFIX + address, 0)

    def _set_nonce(self, address: bytes, nonce: int):
        self.state.set_obj(NONCE_PREFIX + address, nonce)

    def context(self, sender: bytes) -> ExecutionContext:
        """Execution context for a direct call by ``sender`` in the open block."""
        return ExecutionContext(caller=sender, block_number=self.block_number, state=self.state)

    def deploy(self, token: AntiMEVToken, owner: bytes, initial_supply: int = 0) -> bytes:
        """Assign the token an address and mint the supply to ``owner``."""
        if token.address is not None:
            raise ValidationError(f"Token already deployed at {token.address.hex()}")
        nonce = self.get_nonce(owner)
        address = derive_contract_address(owner, nonce)
        token.address = address
        try:
            with self.state.transaction():
                token.initialize(self.context(owner), initial_supply)
                self._set_nonce(owner, nonce + 1)
        except Exception:
            token.address = None
            raise
        self.tokens[address] = token
        logger.info(f"Deployed {token} by {owner.hex()[:8]}")
        return address

    def get_token(self, address: bytes) -> AntiMEVToken:
        token = self.tokens.get(address)
        if token is None:
            raise ValidationError(f"Unknown token {address.hex()}")
        return token

    # ==========================================================================
    # TRANSACTION PROCESSING
    # ==========================================================================

    def submit(self, tx: Transaction) -> Receipt:
        """
        Execute a signed transaction in the open block.

        Signature, chain id and nonce failures are rejected before execution and
        the transaction is not included. Once the nonce is accepted it is bumped
        and stays bumped; any ValidationError raised by the call discards every
        other mutation and is reported in the receipt.
        """
        start = time.time()
        tx_id = tx.id
        block_number = self.block_number

        try:
            self._validate_transaction(tx)
        except ValidationError as e:
            logger.warning(f"Transaction {tx_id.hex()[:8]} rejected: {e}")
            self.monitor.record_tx(Receipt.FAILED, e.reason, time.time() - start)
            return Receipt(tx_id, block_number, Receipt.FAILED, reason=e.reason, error=str(e))

        sender = tx.sender
        self._set_nonce(sender, tx.nonce + 1)
        ctx = self.context(sender)
        try:
            with self.state.transaction():
                self._dispatch(tx, ctx)
            receipt = Receipt(tx_id, block_number, Receipt.SUCCESS,
                              events=[event.to_dict() for event in ctx.events])
            for event in ctx.events:
                if event.name == 'DirectionRecorded':
                    self.monitor.record_transfer(event.args['direction'])
        except ValidationError as e:
            logger.warning(f"Transaction {tx_id.hex()[:8]} failed: {e}")
            if isinstance(e, CooldownViolation):
                self.monitor.record_cooldown_rejection()
            receipt = Receipt(tx_id, block_number, Receipt.FAILED, reason=e.reason, error=str(e))

        self.pending_tx_ids.append(tx_id)
        with self.db.write_batch() as batch:
            batch.put(PENDING_KEY, msgpack.packb(self.pending_tx_ids, use_bin_type=True))
            batch.put(RECEIPT_PREFIX + tx_id, msgpack.packb(receipt.to_dict(), use_bin_type=True))
        self.total_transactions += 1
        self.monitor.record_tx(receipt.status, receipt.reason, time.time() - start)
        return receipt

    def _validate_transaction(self, tx: Transaction):
        ok, error = tx.validate_basic()
        if not ok:
            raise ValidationError(error)
        if tx.chain_id != self.chain_id:
            raise ValidationError(f"Wrong chain ID. Expected {self.chain_id}, got {tx.chain_id}")
        expected = self.get_nonce(tx.sender)
        if tx.nonce != expected:
            raise ValidationError(f"Invalid nonce. Expected {expected}, got {tx.nonce}")

    def _dispatch(self, tx: Transaction, ctx: ExecutionContext):
        data = tx.data
        token = self.get_token(_address(data['token']))

        if tx.tx_type == TRANSFER:
            token.transfer(ctx, _address(data['to']), data['amount'])
        elif tx.tx_type == TRANSFER_FROM:
            token.transfer_from(ctx, _address(data['from']), _address(data['to']), data['amount'])
        elif tx.tx_type == APPROVE:
            token.approve(ctx, _address(data['spender']), data['amount'])
        else:
            raise ValidationError(f"Unknown transaction type: {tx.tx_type}")

    def get_receipt(self, tx_id: bytes) -> Optional[Receipt]:
        raw = self.db.get(RECEIPT_PREFIX + tx_id)
        if raw is None:
            return None
        return Receipt.from_dict(msgpack.unpackb(raw, raw=False))

    def close(self):
        self.monitor.stop_server()
        self.db.close()


def _address(value: str) -> bytes:
    if not isinstance(value, str):
        raise InvalidAddress(f"Address must be a hex string, got {value!r}")
    try:
        return parse_address(value)
    except ValueError as e:
        raise InvalidAddress(f"Invalid address {value!r}: {e}") from e
