import os
from aiohttp import web
import logging
from logging.config import dictConfig
import json

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging():
    """Configure logging from LOGGING_CONFIG_FILE, else at LOG_LEVEL (DEBUG)."""
    logging_config_file = os.getenv("LOGGING_CONFIG_FILE", "")

    if len(logging_config_file) > 0:
        with open(logging_config_file) as fl:
            dictConfig(json.load(fl))
        return

    logging.basicConfig(format=LOG_FORMAT)
    logging.getLogger().setLevel(os.getenv("LOG_LEVEL", "DEBUG").upper())
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


def invoke():
    configure_logging()

    from social.atlas.app.config import Settings
    from social.atlas.app.server import start_web_server

    settings = Settings()  # type: ignore
    web.run_app(start_web_server(settings), port=settings.http_port)


if __name__ == "__main__":
    invoke()
