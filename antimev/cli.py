"""
Command line tools.

    antimev init-config config.json --pool 0x... --cooldown 3
    antimev replay scenario.json [--config config.json]

A scenario is a JSON file naming accounts by alias and listing steps that are
executed as signed transactions against a fresh chain:

    {
      "accounts": ["owner", "attacker", "victim", "pool"],
      "owner": "owner",
      "pool": "pool",
      "cooldown_blocks": 3,
      "initial_supply": 10000,
      "steps": [
        {"op": "transfer", "signer": "owner", "to": "attacker", "amount": 1000},
        {"op": "transfer", "signer": "attacker", "to": "pool", "amount": 100},
        {"op": "approve", "signer": "pool", "spender": "attacker", "amount": 100},
        {"op": "transfer_from", "signer": "attacker", "from": "pool", "to": "attacker", "amount": 100},
        {"op": "mine", "count": 3}
      ]
    }
"""
import argparse
import json
import logging
import sys

from antimev.chain import Blockchain
from antimev.config import Config
from antimev.core import Transaction, TRANSFER, TRANSFER_FROM, APPROVE
from antimev.crypto import generate_key_pair, public_key_to_address, serialize_public_key
from antimev.errors import ConfigurationError
from antimev.token import AntiMEVToken

logger = logging.getLogger(__name__)

TX_OPS = {
    'transfer': TRANSFER,
    'transfer_from': TRANSFER_FROM,
    'approve': APPROVE,
}


class Account:
    """A scenario participant with its own signing key."""

    def __init__(self, alias: str):
        self.alias = alias
        self.private_key, public_key = generate_key_pair()
        self.public_pem = serialize_public_key(public_key)
        self.address = public_key_to_address(self.public_pem)


def init_config(path: str, pool: str = None, cooldown: int = None) -> Config:
    config = Config.default()
    if pool is not None:
        config.token.pool_address = pool
    if cooldown is not None:
        config.token.cooldown_blocks = cooldown
    config.validate()
    config.to_file(path)
    return config


def replay_scenario(scenario: dict, config: Config) -> list[dict]:
    """
    Run a scenario and return one result row per step.

    Rows carry the block number, the step, and for transactions the receipt
    status and failure reason.
    """
    accounts = {alias: Account(alias) for alias in scenario['accounts']}

    def resolve(alias):
        if alias not in accounts:
            raise ConfigurationError(f"Unknown account alias {alias!r}")
        return accounts[alias]

    pool = resolve(scenario['pool'])
    owner = resolve(scenario.get('owner', scenario['accounts'][0]))

    config.token.pool_address = pool.address.hex()
    if 'cooldown_blocks' in scenario:
        config.token.cooldown_blocks = scenario['cooldown_blocks']
    if 'initial_supply' in scenario:
        config.token.initial_supply = scenario['initial_supply']
    config.validate()

    chain = Blockchain.from_config(config)
    try:
        token = AntiMEVToken.from_config(config.token)
        token_address = chain.deploy(token, owner.address, config.token.initial_supply)

        results = []
        for step in scenario['steps']:
            op = step['op']
            if op == 'mine':
                block = chain.mine(step.get('count', 1))
                results.append({'op': op, 'block': block.height})
                continue
            if op not in TX_OPS:
                raise ConfigurationError(f"Unknown step op {op!r}")

            signer = resolve(step['signer'])
            data = {'token': token_address.hex(), 'amount': step['amount']}
            if op == 'approve':
                data['spender'] = resolve(step['spender']).address.hex()
            else:
                data['to'] = resolve(step['to']).address.hex()
            if op == 'transfer_from':
                data['from'] = resolve(step['from']).address.hex()

            tx = Transaction(
                sender_public_key=signer.public_pem,
                tx_type=TX_OPS[op],
                data=data,
                nonce=chain.get_nonce(signer.address),
                chain_id=chain.chain_id,
            )
            tx.sign(signer.private_key)
            receipt = chain.submit(tx)
            results.append({
                'op': op,
                'signer': signer.alias,
                'block': receipt.block_number,
                'status': receipt.status,
                'reason': receipt.reason,
            })

        state = token.direction_state(chain.state)
        results.append({
            'op': 'final_state',
            'block': chain.block_number,
            'last_direction': state.last_direction.value,
            'last_direction_block': state.last_direction_block,
            'balances': {
                alias: token.balance_of(chain.state, account.address)
                for alias, account in accounts.items()
            },
        })
        return results
    finally:
        chain.close()


def _format_row(row: dict) -> str:
    if row['op'] == 'mine':
        return f"[block {row['block']}] sealed"
    if row['op'] == 'final_state':
        return (f"[block {row['block']}] last direction {row['last_direction']} "
                f"at block {row['last_direction_block']}; balances {row['balances']}")
    outcome = row['status'] if row['reason'] is None else f"{row['status']} ({row['reason']})"
    return f"[block {row['block']}] {row['signer']} {row['op']}: {outcome}"


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="antimev", description="Anti-sandwich token ledger tools")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init-config", help="Write a configuration file")
    init_parser.add_argument("path")
    init_parser.add_argument("--pool", required=True, help="Pool address (hex)")
    init_parser.add_argument("--cooldown", type=int, default=None, help="Cooldown window in blocks")

    replay_parser = subparsers.add_parser("replay", help="Replay a JSON scenario")
    replay_parser.add_argument("scenario")
    replay_parser.add_argument("--config", default=None, help="Configuration file")
    replay_parser.add_argument("--json", action="store_true", help="Print results as JSON")

    args = parser.parse_args(argv)

    try:
        if args.command == "init-config":
            init_config(args.path, pool=args.pool, cooldown=args.cooldown)
            print(f"Configuration written to {args.path}")
            return 0

        config = Config.from_file(args.config) if args.config else Config.default()
        config.logging.apply()
        with open(args.scenario, 'r') as f:
            scenario = json.load(f)
        results = replay_scenario(scenario, config)
    except KeyError as e:
        print(f"Error: scenario is missing {e}", file=sys.stderr)
        return 2
    except (ConfigurationError, json.JSONDecodeError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    if args.json:
        print(json.dumps(results, indent=2))
    else:
        for row in results:
            print(_format_row(row))
    return 0


if __name__ == "__main__":
    sys.exit(main())
