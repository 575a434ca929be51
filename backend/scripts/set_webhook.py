from __future__ import annotations

import argparse
import os
import pathlib
import sys

_HERE = pathlib.Path(__file__).resolve()
_BACKEND_ROOT = _HERE.parents[1]
sys.path.insert(0, str(_BACKEND_ROOT))
sys.path.insert(0, "/app")
sys.path.insert(0, os.getcwd())

from coursebot.core.config import settings
from coursebot.services.bot import register_commands
from coursebot.services.channel import TelegramChannel


def main() -> None:
    parser = argparse.ArgumentParser(description="Point the Telegram webhook at this deployment and register commands")
    parser.add_argument("public_url", help="e.g. https://bot.example.com")
    args = parser.parse_args()

    channel = TelegramChannel.from_settings()
    url = args.public_url.rstrip("/") + "/telegram/webhook"
    channel.set_webhook(url, secret_token=settings.telegram_webhook_secret)
    register_commands(channel)
    print(f"webhook set: {url}")


if __name__ == "__main__":
    main()
