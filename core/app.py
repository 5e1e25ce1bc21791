import asyncio
import os
import signal
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from core.runtime import SensesRuntime
from services.discord.navigation import JumpLinkNavigator
from services.notifications.base import NotificationSink
from services.notifications.log_sink import LogNotificationSink
from services.notifications.webhook import DiscordWebhookSink
from services.pool import ProviderRegistry, build_providers
from shared.config.senses import SensesConfig, load_senses_config
from shared.logging.logger import get_logger
from shared.storage.paths import get_data_root
from shared.storage.persistence import build_store

log = get_logger("core.app")

ROOT = Path(__file__).resolve().parents[1]


# ----------------------------------------------------------------------
# WIRING
# ----------------------------------------------------------------------

def build_sink(config: SensesConfig) -> NotificationSink:
    webhook_url = os.getenv(config.discord.webhook_env)
    if webhook_url:
        log.info("Notices delivered to Discord webhook")
        return DiscordWebhookSink(webhook_url)
    log.info("Notices delivered to runtime log")
    return LogNotificationSink()


def build_runtime(
    config: SensesConfig,
    *,
    sink: Optional[NotificationSink] = None,
) -> SensesRuntime:
    store = build_store(config.storage.backend, get_data_root(config.storage.root))

    registry = ProviderRegistry(timeout_seconds=config.allocator.provider_timeout_seconds)
    for provider in build_providers(config.providers, base_dir=ROOT):
        registry.register(provider)
    log.info(f"Registered {len(registry.providers())} pool provider(s)")

    return SensesRuntime(
        config=config,
        store=store,
        registry=registry,
        sink=sink or build_sink(config),
        navigator=JumpLinkNavigator(),
    )


async def main(stop_event: asyncio.Event, config_path: Optional[Path] = None):
    # --------------------------------------------------
    # ENV + CONFIG
    # --------------------------------------------------
    load_dotenv()
    log.info("Environment variables loaded")
    log.info("Shadow Senses booting")

    config = load_senses_config(path=config_path)

    # --------------------------------------------------
    # CORE SYSTEMS
    # --------------------------------------------------
    runtime = build_runtime(config)
    await runtime.start()

    # --------------------------------------------------
    # DISCORD INGESTION (OPTIONAL)
    # --------------------------------------------------
    discord_client = None
    discord_task: Optional[asyncio.Task] = None

    if config.discord.enabled:
        # Imported lazily: discord.py is only needed when ingestion is on
        from services.discord.client import DiscordSensesClient

        try:
            discord_client = DiscordSensesClient(
                runtime,
                token_env=config.discord.token_env,
                operator_id_env=config.discord.operator_id_env,
            )
            discord_task = asyncio.create_task(discord_client.run())
            log.info("Discord ingestion started")
        except RuntimeError as e:
            log.warning(f"Discord ingestion disabled: {e}")
    else:
        log.info("Discord ingestion disabled by senses.json")

    # --------------------------------------------------
    # BLOCK UNTIL SHUTDOWN SIGNAL
    # --------------------------------------------------
    await stop_event.wait()

    log.info("Shutdown initiated")

    # --------------------------------------------------
    # ORDERLY SHUTDOWN: INGESTION FIRST, THEN FINAL FLUSH
    # --------------------------------------------------
    if discord_client is not None:
        try:
            await discord_client.shutdown()
        except Exception as e:
            log.warning(f"Discord shutdown error ignored: {e}")

    if discord_task is not None and not discord_task.done():
        discord_task.cancel()
        await asyncio.gather(discord_task, return_exceptions=True)

    try:
        await runtime.stop()
    except Exception as e:
        log.warning(f"Runtime shutdown error ignored: {e}")

    log.info("Shadow Senses stopped")


# ----------------------------------------------------------------------
# SIGNAL HANDLING (WINDOWS-SAFE)
# ----------------------------------------------------------------------

def _install_signal_handlers(
    loop: asyncio.AbstractEventLoop,
    stop_event: asyncio.Event,
):
    """
    Windows-safe Ctrl+C handler.
    Uses signal.signal + asyncio.Event to unwind cleanly.
    """

    def _handler(signum, frame):
        try:
            loop.call_soon_threadsafe(stop_event.set)
        except Exception:
            stop_event.set()

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except Exception:
        pass


# ----------------------------------------------------------------------
# ENTRYPOINT
# ----------------------------------------------------------------------

def run():
    stop_event = asyncio.Event()

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    _install_signal_handlers(loop, stop_event)

    try:
        loop.run_until_complete(main(stop_event))

    except KeyboardInterrupt:
        log.info("KeyboardInterrupt received, shutdown initiated")
        try:
            stop_event.set()
            loop.run_until_complete(asyncio.sleep(0))
        except Exception:
            pass

    finally:
        # --------------------------------------------------
        # CANCEL REMAINING TASKS (CLEANLY)
        # --------------------------------------------------
        pending = [t for t in asyncio.all_tasks(loop) if not t.done()]
        for task in pending:
            task.cancel()

        if pending:
            try:
                loop.run_until_complete(
                    asyncio.gather(*pending, return_exceptions=True)
                )
            except Exception:
                pass

        # --------------------------------------------------
        # FINAL LOOP CLEANUP
        # --------------------------------------------------
        try:
            loop.run_until_complete(loop.shutdown_asyncgens())
        except Exception:
            pass

        asyncio.set_event_loop(None)
        loop.close()


if __name__ == "__main__":
    run()
    sys.exit(0)
