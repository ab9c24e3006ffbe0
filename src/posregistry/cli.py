#!/usr/bin/env python3
"""
posregistry CLI — Run the registry and produce signed test traffic.

Commands:
    serve              - Run the API server (uvicorn)
    keygen             - Generate an owner wallet keypair and DID
    sign-registration  - Sign a registration intent with an owner key
    sign-webhook       - HMAC-sign a settlement notification body
    score              - Show the reputation delta for an outcome/amount
"""

import argparse
import json
import sys
from typing import Optional


def _output(data: dict, args: argparse.Namespace):
    print(json.dumps(data, indent=2, default=str))


def _load_signing_key(keyfile: str):
    import base58
    from nacl.signing import SigningKey

    with open(keyfile) as f:
        data = json.load(f)
    return SigningKey(base58.b58decode(data["private_key"]))


# ─── Commands ──────────────────────────────────────────────────────

def cmd_serve(args):
    """Run the API server."""
    import uvicorn

    from posregistry.api import create_app
    from posregistry.config import load_config

    config = load_config()
    uvicorn.run(create_app(config), host=args.host, port=args.port or config.port)


def cmd_keygen(args):
    """Generate a wallet keypair and print the matching DID."""
    import base58

    from posregistry.signature import generate_wallet

    sk, address = generate_wallet()
    result = {
        "did": f"did:sol:{args.cluster}:{address}",
        "public_key": address,
        "private_key": base58.b58encode(sk.encode()).decode(),
    }
    if args.output:
        with open(args.output, "w") as f:
            json.dump(result, f, indent=2)
        result = {k: v for k, v in result.items() if k != "private_key"}
        result["keyfile"] = args.output
    _output(result, args)
    return result


def cmd_sign_registration(args):
    """Produce message + signature fields for POST /api/agents."""
    from posregistry.signature import build_registration_message, sign_message

    sk = _load_signing_key(args.keyfile)
    message = args.message or build_registration_message(args.did, args.name)
    result = {"did": args.did, "message": message, "signature": sign_message(sk, message)}
    _output(result, args)
    return result


def cmd_sign_webhook(args):
    """Sign a settlement notification body for POST /api/reputation/update."""
    from posregistry.webhook import SIGNATURE_HEADER, sign_webhook_payload

    payload = json.loads(args.payload)
    result = {"header": SIGNATURE_HEADER, "signature": sign_webhook_payload(payload, args.secret)}
    _output(result, args)
    return result


def cmd_score(args):
    """Reputation delta for an outcome and amount."""
    from posregistry.scoring import derive_delta

    result = {"outcome": args.outcome, "amount": args.amount,
              "delta": derive_delta(args.outcome, args.amount)}
    _output(result, args)
    return result


# ─── Parser ────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="posregistry",
        description="Proof-of-service agent registry",
    )
    sub = parser.add_subparsers(dest="command", help="Available commands")

    p = sub.add_parser("serve", help="Run the API server")
    p.add_argument("--host", default="0.0.0.0")
    p.add_argument("--port", type=int, default=0, help="Defaults to $PORT or 3001")

    p = sub.add_parser("keygen", help="Generate an owner wallet keypair")
    p.add_argument("-c", "--cluster", default="devnet")
    p.add_argument("-o", "--output", help="Write keyfile (includes private key)")

    p = sub.add_parser("sign-registration", help="Sign a registration intent")
    p.add_argument("did", help="Agent DID")
    p.add_argument("name", help="Agent display name")
    p.add_argument("-k", "--keyfile", required=True, help="Owner keyfile from keygen")
    p.add_argument("-m", "--message", help="Sign this exact message instead")

    p = sub.add_parser("sign-webhook", help="HMAC-sign a settlement notification")
    p.add_argument("payload", help="JSON body")
    p.add_argument("-s", "--secret", required=True, help="X402_WEBHOOK_SECRET")

    p = sub.add_parser("score", help="Reputation delta for an outcome")
    p.add_argument("outcome", help="success | partial | failed")
    p.add_argument("amount", help="Claimed payment amount")

    return parser


def main(argv: Optional[list[str]] = None) -> Optional[dict]:
    """CLI entry point. Returns result dict for testing."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    commands = {
        "serve": cmd_serve,
        "keygen": cmd_keygen,
        "sign-registration": cmd_sign_registration,
        "sign-webhook": cmd_sign_webhook,
        "score": cmd_score,
    }

    try:
        return commands[args.command](args)
    except FileNotFoundError as e:
        print(f"❌ File not found: {e}", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"❌ Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
