"""
Kindred - Main Entry Point
Loads settings and the character, wires the agent to Discord and starts the dashboard.
"""

import asyncio
import logging
import os
import sys

# Suppress verbose logging from libraries
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
    datefmt='%H:%M:%S'
)
logging.getLogger('discord').setLevel(logging.WARNING)
logging.getLogger('discord.http').setLevel(logging.WARNING)
logging.getLogger('discord.gateway').setLevel(logging.WARNING)
logging.getLogger('httpx').setLevel(logging.WARNING)
logging.getLogger('httpcore').setLevel(logging.WARNING)
logging.getLogger('openai').setLevel(logging.WARNING)
logging.getLogger('werkzeug').setLevel(logging.ERROR)

import constants
import logger as log
from bot_instance import BotInstance
from character import CharacterManager
from config import DATA_DIR, DEFAULT_CHARACTER, DISCORD_TOKEN, RUNTIME_CONFIG_FILE, load_settings
from dashboard import DashboardHub, start_dashboard
from memory import MemoryStore
from prometheus_metrics import metrics_manager
from providers import ProviderDispatcher, build_providers
from runtime_config import RuntimeConfig


async def run_bot() -> int:
    settings = load_settings()
    if settings.debug_mode:
        log.set_level(log.VERBOSE)
        logging.getLogger('providers').setLevel(logging.DEBUG)

    character = CharacterManager().get(DEFAULT_CHARACTER)
    if character is None:
        log.error(f"No character found (looked for '{DEFAULT_CHARACTER}')")
        return 1
    log.ok(f"Loaded character: {character.name} ({character.bot_role})")

    token = character.token or DISCORD_TOKEN
    if not token:
        log.error("DISCORD_TOKEN not set!")
        return 1

    hub = DashboardHub()
    log.set_activity_sink(hub.log_activity)

    store = MemoryStore(settings.data_dir)
    store.ensure_community_dirs(c.id for c in settings.allowed_servers)
    runtime = RuntimeConfig(RUNTIME_CONFIG_FILE)

    providers = build_providers(settings)
    if settings.primary_ai not in providers:
        log.error(f"Primary AI '{settings.primary_ai}' is not configured")
        return 1
    dispatcher = ProviderDispatcher(providers, settings.primary_ai, settings.fallback_enabled, settings.fallback_order)

    bot = BotInstance(token, settings, character, store, dispatcher, runtime, hub)

    metrics_manager.start_metrics_server()
    try:
        start_dashboard(
            hub,
            host=os.getenv('DASHBOARD_HOST', constants.DASHBOARD_DEFAULT_HOST),
            port=int(os.getenv('DASHBOARD_PORT', constants.DASHBOARD_DEFAULT_PORT)),
        )
        log.online(f"Dashboard running at http://localhost:{os.getenv('DASHBOARD_PORT', constants.DASHBOARD_DEFAULT_PORT)}")
    except OSError as e:
        log.warn(f"Dashboard failed to start: {e}")

    log.startup(f"Starting {character.name} (data: {os.path.abspath(settings.data_dir)}, runtime: {DATA_DIR})")
    try:
        await bot.start()
    finally:
        log.info("Shutting down...")
        await bot.close()
    return 0


# --- Entry Point ---

def main():
    try:
        sys.exit(asyncio.run(run_bot()))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
