#!/usr/bin/env python3
# clients/cli/veilpay_cli.py
# CLI for the shielded pool client: deposit, spend, authorize, and state checks.

from __future__ import annotations
import argparse
import asyncio
import json
import os
import sys
from typing import Any, Awaitable, Callable, Optional

from solders.pubkey import Pubkey

from services.api.config import ClientConfig, ConfigError
from services.api.health_checks import comprehensive_health_check
from services.api.logging_config import configure_logging
from services.api.prover import make_prover
from services.api.relayer import RelayerClient
from services.api.rpc import LedgerRpc
from services.crypto_core.commitments import parse_view_key, serialize_view_key
from services.database.kv import open_store
from services.database.txlog import TransactionLog
from services.protocol.errors import InsufficientFunds, VeilPayError
from services.protocol.flow_steps import StepEvent, StepStatus
from services.protocol.flows import VeilPayClient
from services.protocol.wallet import KeypairWallet


# ======== Color accents (no deps) ========
class C:
    OK   = "\033[92m"
    WARN = "\033[93m"
    ERR  = "\033[91m"
    DIM  = "\033[2m"
    BOLD = "\033[1m"
    RST  = "\033[0m"


def _short(pk: str) -> str:
    return f"{pk[:4]}…{pk[-5:]}" if pk and len(pk) > 10 else pk


DEFAULT_KEYFILE = os.getenv("VEILPAY_KEYFILE", os.path.expanduser("~/.config/solana/id.json"))


def print_step(event: StepEvent) -> None:
    color = {StepStatus.RUNNING: C.DIM, StepStatus.SUCCESS: C.OK, StepStatus.ERROR: C.ERR}.get(event.status, "")
    suffix = f" ({event.message})" if event.message else ""
    print(f"{color}[{event.flow}] {event.step.value}: {event.status.value}{suffix}{C.RST}")


# ======== Commands ========
async def cmd_deposit(client: VeilPayClient, args) -> Any:
    res = await client.deposit(args.mint, args.amount)
    return {"signature": res.signature, "leaf_index": res.note.leaf_index, "root": hex(res.new_root)}


async def cmd_withdraw(client: VeilPayClient, args) -> Any:
    to = Pubkey.from_string(args.to) if args.to else None
    res = await client.withdraw(args.mint, args.amount, recipient=to)
    return _spend_summary(res)


async def cmd_send(client: VeilPayClient, args) -> Any:
    res = await client.external_transfer(args.mint, args.amount, Pubkey.from_string(args.to))
    return _spend_summary(res)


async def cmd_transfer(client: VeilPayClient, args) -> Any:
    res = await client.internal_transfer(args.mint, args.amount, parse_view_key(args.view_key))
    out = _spend_summary(res)
    out["recipient_leaf_index"] = res.recipient_leaf_index
    out["recipient_ciphertext"] = res.recipient_ciphertext.hex() if res.recipient_ciphertext else None
    return out


async def cmd_authorize(client: VeilPayClient, args) -> Any:
    res = await client.create_authorization(
        args.mint, args.amount, parse_view_key(args.payee_view_key), Pubkey.from_string(args.payee)
    )
    return {
        "signature": res.signature,
        "intent_hash": res.intent_hash_hex,
        "relayer_id": res.relayer_id,
        "expiry_slot": res.expiry_slot,
    }


async def cmd_settle(client: VeilPayClient, args) -> Any:
    return _spend_summary(await client.settle_authorization(args.mint, args.intent_hash))


async def cmd_balance(client: VeilPayClient, args) -> Any:
    notes = client.notes(args.mint).list_spendable()
    return {"balance": sum(n.amount for n in notes), "notes": [{"id": n.id, "amount": n.amount} for n in notes]}


async def cmd_reconcile(client: VeilPayClient, args) -> Any:
    return {"dropped": await client.reconcile(args.mint)}


async def cmd_rescan(client: VeilPayClient, args) -> Any:
    recovered = await client.rescan(args.mint, max_signatures=args.max_signatures)
    return {
        "recovered": recovered,
        "identity_leaf": await client.identity.rescan_from_chain(args.max_signatures),
        "balance": client.balance(args.mint),
    }


async def cmd_register(client: VeilPayClient, args) -> Any:
    return {"identity_root": hex(await client.register())}


async def cmd_view_key(client: VeilPayClient, args) -> Any:
    return {"owner": client.wallet.address, "view_key": serialize_view_key(client.view_keypair().pubkey)}


def _spend_summary(res) -> dict:
    return {
        "signature": res.signature,
        "relayer_mode": res.relayer_mode,
        "amount": res.amount,
        "fee_amount": res.fee_amount,
        "spent": res.spent_note_ids,
        "change": res.change.amount if res.change else 0,
        "root": hex(res.new_root),
    }


# ======== Wiring ========
async def run(cfg: ClientConfig, keyfile: str, handler: Callable[[VeilPayClient, Any], Awaitable[Any]], args) -> Any:
    wallet = KeypairWallet.from_keyfile(keyfile)
    store = open_store(cfg.data_dir, cfg.store_backend)
    txlog = TransactionLog(cfg.data_dir / "veilpay_txlog.db")
    try:
        async with LedgerRpc(cfg.rpc_url, timeout=cfg.http_timeout_sec) as rpc:
            client = VeilPayClient(
                cfg,
                wallet,
                store,
                rpc,
                RelayerClient(cfg.relayer_url, timeout=cfg.http_timeout_sec),
                make_prover(cfg),
                txlog=txlog,
                observers=[print_step],
            )
            print(f"{C.DIM}Owner {_short(wallet.address)} · program {_short(cfg.program_id)} · relayer {cfg.relayer_mode}{C.RST}")
            return await handler(client, args)
    finally:
        txlog.close()
        close = getattr(store, "close", None)
        if close:
            close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="veilpay", description="Shielded pool client")
    parser.add_argument("--keyfile", default=DEFAULT_KEYFILE, help="Wallet keypair JSON (64-byte array or base58)")
    parser.add_argument("--log-level", default=None, help="DEBUG | INFO | WARNING")
    sub = parser.add_subparsers(dest="command", required=True)

    def with_mint(p: argparse.ArgumentParser) -> argparse.ArgumentParser:
        p.add_argument("--mint", required=True, help="Asset mint (base58)")
        return p

    p = with_mint(sub.add_parser("deposit", help="Shield tokens into the pool"))
    p.add_argument("amount", type=int, help="Amount in base units")
    p.set_defaults(handler=cmd_deposit)

    p = with_mint(sub.add_parser("withdraw", help="Unshield to a token account"))
    p.add_argument("amount", type=int)
    p.add_argument("--to", default=None, help="Recipient owner (default: the wallet)")
    p.set_defaults(handler=cmd_withdraw)

    p = with_mint(sub.add_parser("send", help="External transfer to another owner's token account"))
    p.add_argument("amount", type=int)
    p.add_argument("--to", required=True, help="Recipient owner")
    p.set_defaults(handler=cmd_send)

    p = with_mint(sub.add_parser("transfer", help="Internal transfer to a view key"))
    p.add_argument("amount", type=int)
    p.add_argument("--view-key", required=True, help="Recipient view key <x-hex>:<y-hex>")
    p.set_defaults(handler=cmd_transfer)

    p = with_mint(sub.add_parser("authorize", help="Create a claimable payment authorization"))
    p.add_argument("amount", type=int)
    p.add_argument("--payee", required=True, help="Payee owner")
    p.add_argument("--payee-view-key", required=True, help="Payee view key <x-hex>:<y-hex>")
    p.set_defaults(handler=cmd_authorize)

    p = with_mint(sub.add_parser("settle", help="Settle a stored authorization"))
    p.add_argument("intent_hash", help="Intent hash (hex)")
    p.set_defaults(handler=cmd_settle)

    p = with_mint(sub.add_parser("balance", help="Spendable notes and balance"))
    p.set_defaults(handler=cmd_balance)

    p = with_mint(sub.add_parser("reconcile", help="Check the local tree against the chain"))
    p.set_defaults(handler=cmd_reconcile)

    p = with_mint(sub.add_parser("rescan", help="Rebuild notes and identity from the program's history"))
    p.add_argument("--max-signatures", type=int, default=None, help="Only read this many recent transactions")
    p.set_defaults(handler=cmd_rescan)

    sub.add_parser("register", help="Register the wallet's identity commitment").set_defaults(handler=cmd_register)
    sub.add_parser("view-key", help="Print the wallet's view key").set_defaults(handler=cmd_view_key)
    sub.add_parser("health", help="Check RPC, relayer and prover").set_defaults(handler=None)
    return parser


def main(argv: Optional[list] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)
    try:
        cfg = ClientConfig.from_env()
        if args.command == "health":
            result = asyncio.run(comprehensive_health_check(cfg))
        else:
            result = asyncio.run(run(cfg, args.keyfile, args.handler, args))
    except InsufficientFunds as e:
        print(f"{C.WARN}{e}{C.RST}", file=sys.stderr)
        return 3
    except (VeilPayError, ConfigError) as e:
        print(f"{C.ERR}{type(e).__name__}: {e}{C.RST}", file=sys.stderr)
        return 1
    except (ValueError, KeyError) as e:
        # malformed command-line input
        print(f"{C.ERR}{type(e).__name__}: {e}{C.RST}", file=sys.stderr)
        return 1
    print(json.dumps(result, indent=2))
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nInterrupted by user."); sys.exit(130)
