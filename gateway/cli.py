from __future__ import annotations
import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import List

from .config import ConfigError, configure_logging, load_env_file, load_settings
from .dispatcher import GenerationDispatcher, GenerationRequest, Subject, build_dispatcher
from .providers.types import IMAGE


def cmd_providers(dispatcher: GenerationDispatcher) -> int:
    chains = dispatcher.registry.describe()
    for kind, names in chains.items():
        print(f"{kind}: {', '.join(names) if names else '(none configured)'}")
    return 0


async def _ask(dispatcher: GenerationDispatcher, message: str, mode: str | None, subject: Subject):
    return await dispatcher.handle(GenerationRequest(message, mode), subject)


def cmd_ask(
    dispatcher: GenerationDispatcher,
    message: str,
    *,
    mode: str | None,
    subject: Subject,
    out: Path | None,
) -> int:
    result = asyncio.run(_ask(dispatcher, message, mode, subject))
    body = result.to_response()
    if result.ok and result.mode == IMAGE and out is not None:
        out.write_bytes(result.payload)
        body["imageUrl"] = str(out)
    elif result.ok and result.mode == IMAGE and body.get("imageUrl", "").startswith("data:"):
        body["imageUrl"] = body["imageUrl"][:64] + "..."
    print(json.dumps(body, ensure_ascii=False, indent=2))
    return 0 if result.ok else 1


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="gateway-cli", description="Generative AI gateway CLI")
    p.add_argument("command", choices=["providers", "ask"], help="CLI command")
    p.add_argument("message", nargs="?", default=None, help="Message or image description (for ask)")
    p.add_argument("--mode", dest="mode", choices=["text", "image"], default=None, help="Skip intent classification")
    p.add_argument("--subject", dest="subject", default="cli", help="Subject id used for quota tracking")
    p.add_argument("--tier", dest="tier", default="free", help="Plan tier: free, silver, gold, admin")
    p.add_argument("--out", dest="out", default=None, help="Write generated image bytes to this file")
    p.add_argument("--config", dest="config", default=None, help="JSON config file (default: configs/gateway.json)")
    return p


def main(argv: List[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    parser = build_parser()
    args = parser.parse_args(argv)
    load_env_file()
    try:
        settings = load_settings(config_path=args.config)
        configure_logging(settings.log_level)
        dispatcher = build_dispatcher(settings)
    except ConfigError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2
    if args.command == "providers":
        return cmd_providers(dispatcher)
    if args.command == "ask":
        if not args.message:
            print("message is required for ask", file=sys.stderr)
            return 2
        return cmd_ask(
            dispatcher,
            args.message,
            mode=args.mode,
            subject=Subject(args.subject, args.tier),
            out=Path(args.out) if args.out else None,
        )
    parser.print_help()
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
