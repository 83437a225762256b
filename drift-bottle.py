#!/usr/bin/env python

import configparser
import json
import os
import sys

from aiohttp import web
from telegram.ext import Application, CommandHandler

from driftbottle.config import load_config
from driftbottle.handlers import help_command, post_init, post_shutdown, start_command, webapp_command
from driftbottle.profiles import load_profiles, save_profiles
from driftbottle.web_api import create_web_app
from driftbottle.web_auth import explain, redact_token


def check_init_data(config) -> int:
    """Print a breakdown of the initData in $TG_INIT_DATA. Returns the exit code."""
    init_data = os.getenv("TG_INIT_DATA", "")
    if not init_data:
        print("Set TG_INIT_DATA to the initData string to check.")
        return 1
    report = explain(
        init_data, config.telegram_token,
        max_age_seconds=config.max_age_seconds, include_expected_hash=True,
    )
    print(json.dumps(report, indent=2, ensure_ascii=False))
    return 0 if report["result"] == "valid" else 1


def run_api_only(config) -> None:
    """Serve the HTTP API without polling Telegram."""
    profiles = load_profiles(config.profiles_path)
    save_fn = lambda: save_profiles(config.profiles_path, profiles)
    app = create_web_app(config, profiles, save_fn=save_fn)
    port = config.api_port or 8080
    print(f"HTTP API starting on {config.api_host}:{port} (bot {redact_token(config.telegram_token)})")
    web.run_app(app, host=config.api_host, port=port, print=None)


def main():
    import argparse

    parser = argparse.ArgumentParser(description="Drift Bottle Telegram bot and Mini App API")
    parser.add_argument("-c", "--config", type=str, default="config.ini", help="Path to config file")
    parser.add_argument("--api-only", action="store_true", help="Serve the HTTP API without the bot")
    parser.add_argument(
        "--check-init-data", action="store_true",
        help="Verify the initData in $TG_INIT_DATA and print the breakdown",
    )
    args = parser.parse_args()

    config_file = configparser.ConfigParser()
    config_file.read(args.config)
    config = load_config(config_file)

    if args.check_init_data:
        sys.exit(check_init_data(config))

    if args.api_only:
        run_api_only(config)
        return

    if not config.telegram_token:
        print(f"No bot token: set bot_token in {args.config} or TELEGRAM_BOT_TOKEN.")
        sys.exit(1)

    app = (
        Application.builder()
        .token(config.telegram_token)
        .post_init(post_init)
        .post_shutdown(post_shutdown)
        .build()
    )
    app.bot_data["config"] = config

    app.add_handler(CommandHandler("start", start_command))
    app.add_handler(CommandHandler("help", help_command))
    app.add_handler(CommandHandler("webapp", webapp_command))

    print(f"Bot started ({redact_token(config.telegram_token)})...")
    app.run_polling()


if __name__ == "__main__":
    main()
