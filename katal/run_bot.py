import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from .config import Settings
from .errors import ConfigError
from .node import BotContext, KatalBot

"""
run_bot.py — single entry point for the bot.

Quick examples:
  katal-bot
  katal-bot --unlock-code hunter2 --save-dir /srv/katal
  katal-bot --relay wss://nos.lol --relay wss://relay.damus.io --log-level DEBUG

Everything can also come from the environment or a .env file (see
katal/config.py for the variable names).
"""

log = logging.getLogger("katal")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="katal-bot", description="Relay-network DM bot for a remote download manager.")
    p.add_argument("--privkey", help="bot identity secret (64-hex or nsec); overrides BOT_PRIVKEY/NSEC")
    p.add_argument("--unlock-code", dest="unlock_code", help="unlock code; overrides UNLOCKCODE")
    p.add_argument("--web-port", dest="web_port", type=int, help="status/dashboard port")
    p.add_argument("--server-port", dest="server_port", type=int, help="file server port")
    p.add_argument("--save-dir", dest="save_dir", type=Path, help="managed storage root")
    p.add_argument("--aria2-url", dest="aria2_url", help="aria2 JSON-RPC endpoint")
    p.add_argument("--relay", dest="relays", action="append", help="relay URI (repeatable)")
    p.add_argument("--log-level", dest="log_level", help="DEBUG, INFO, WARNING...")
    p.add_argument("--env-file", dest="env_file", default=".env", help="dotenv file to load first")
    return p.parse_args(argv)


def load_settings(args: argparse.Namespace) -> Settings:
    load_dotenv(args.env_file)
    return Settings.from_env(
        privkey=args.privkey,
        unlock_code=args.unlock_code,
        web_port=args.web_port,
        server_port=args.server_port,
        save_dir=args.save_dir,
        aria2_url=args.aria2_url,
        relays=args.relays,
        log_level=args.log_level.upper() if args.log_level else None,
    )


async def run_bot(settings: Settings) -> None:
    bot = KatalBot(BotContext.build(settings))
    await bot.run()


def main(argv: Optional[List[str]] = None) -> int:
    """Parse, configure, run. Bad configuration exits 1 before any network I/O."""
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    try:
        settings = load_settings(args)
    except ConfigError as exc:
        log.error("%s", exc)
        return 1
    logging.getLogger().setLevel(settings.log_level)

    log.info("Katal Bot starting up...")
    settings.log_summary()
    asyncio.run(run_bot(settings))
    return 0


if __name__ == "__main__":
    sys.exit(main())
