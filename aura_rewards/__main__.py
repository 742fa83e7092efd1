"""Entry point: Telegram bot, Mini App API and the activity flush thread in one process."""
import asyncio
import json
import logging
import sys
import threading
import traceback

from werkzeug.serving import make_server

from aura_rewards.api import create_app
from aura_rewards.bot import TelegramBot
from aura_rewards.config import SENSITIVE_FIELDS, settings
from aura_rewards.db import db
from aura_rewards.runtime import build_services

# Setup logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)
logger = logging.getLogger(__name__)


def run() -> None:
    """
    Start every component, block on the bot until interrupted, then flush
    buffered activity and release the database.
    """
    services = None
    web_server = None

    try:
        db.init()
        logger.info("Database connection pool initialized.")

        logger.info("Aura rewards bot starting")
        logger.info("Settings (sensitive fields excluded):")
        logger.info(json.dumps(settings.model_dump(exclude=SENSITIVE_FIELDS), indent=2))

        services = build_services(settings, db)
        services.buffer.start()

        web_server = make_server(settings.WEB_HOST, settings.WEB_PORT, create_app(services), threaded=True)
        threading.Thread(target=web_server.serve_forever, name="mini-app-api", daemon=True).start()
        logger.info(f"Mini App API listening on {settings.WEB_HOST}:{settings.WEB_PORT}")

        if not settings.TELEGRAM_BOT_TOKEN:
            raise RuntimeError("TELEGRAM_BOT_TOKEN is not set")
        asyncio.run(TelegramBot(services, settings.TELEGRAM_BOT_TOKEN).serve())

    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down.")
    except Exception as e:
        logger.critical(f"CRITICAL: Unhandled error: {str(e)}")
        logger.critical(traceback.format_exc())
        raise
    finally:
        if web_server:
            web_server.shutdown()
        if services:
            try:
                services.buffer.stop()
            except Exception as flush_err:
                logger.error(f"Final activity flush failed: {flush_err}")
        if db.initialized:
            logger.info("Disposing database connection pool...")
            db.dispose()
        logger.info("Aura rewards bot stopped.")


if __name__ == "__main__":
    run()
