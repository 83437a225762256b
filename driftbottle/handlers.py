from telegram import InlineKeyboardButton, InlineKeyboardMarkup, MenuButtonWebApp, Update, WebAppInfo
from telegram.ext import ContextTypes

from .config import Config
from .profiles import load_profiles, save_profiles


HELP_TEXT = """Drift Bottle

Throw a message in a bottle, pick one up from the sea, and chat with
whoever wrote it. Everything happens in the Mini App.

Commands:
/webapp - Open the Mini App
/help - Show this message"""

WEBAPP_BUTTON_TEXT = "Open Drift Bottle"


def webapp_keyboard(config: Config) -> InlineKeyboardMarkup | None:
    """Inline keyboard with a single Mini App button, if a webapp URL is configured."""
    if not config.webapp_url:
        return None
    button = InlineKeyboardButton(WEBAPP_BUTTON_TEXT, web_app=WebAppInfo(url=config.webapp_url))
    return InlineKeyboardMarkup([[button]])


async def start_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /start command."""
    config: Config = context.bot_data["config"]
    await update.message.reply_text(HELP_TEXT, reply_markup=webapp_keyboard(config))


async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /help command."""
    await update.message.reply_text(HELP_TEXT)


async def webapp_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /webapp command: open the Mini App."""
    config: Config = context.bot_data["config"]
    keyboard = webapp_keyboard(config)
    if keyboard is None:
        await update.message.reply_text("Mini App is not configured.")
        return
    await update.message.reply_text("Tap to open Drift Bottle:", reply_markup=keyboard)


async def start_api(config: Config, profiles: dict, bot=None):
    """Start the HTTP API on the running event loop and return its runner."""
    from aiohttp import web as aio_web
    from .web_api import create_web_app

    save_fn = lambda: save_profiles(config.profiles_path, profiles)
    web_app = create_web_app(config, profiles, save_fn=save_fn, bot=bot)
    runner = aio_web.AppRunner(web_app)
    await runner.setup()
    site = aio_web.TCPSite(runner, config.api_host, config.api_port)
    await site.start()
    print(f"HTTP API started on {config.api_host}:{config.api_port}")
    return runner


async def post_init(app) -> None:
    """Point the menu button at the Mini App, notify, and start the HTTP API if configured."""
    config: Config = app.bot_data["config"]

    if config.webapp_url:
        menu_button = MenuButtonWebApp(text="Drift Bottle", web_app=WebAppInfo(url=config.webapp_url))
        await app.bot.set_chat_menu_button(menu_button=menu_button)

    if config.notify_chat_id:
        try:
            await app.bot.send_message(config.notify_chat_id, "Drift Bottle is online!")
        except Exception as e:
            print(f"Startup notification failed: {e}")

    if config.api_port > 0:
        profiles = app.bot_data.setdefault("profiles", load_profiles(config.profiles_path))
        app.bot_data["_api_runner"] = await start_api(config, profiles, bot=app.bot)


async def post_shutdown(app) -> None:
    """Clean up the HTTP API server."""
    runner = app.bot_data.get("_api_runner")
    if runner:
        await runner.cleanup()
