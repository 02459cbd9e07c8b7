import logging

from embedrelay.config import Settings, configure_logging
from embedrelay.server import create_app

settings = Settings.from_env()
configure_logging(settings.log_level)
logger = logging.getLogger(__name__)

app = create_app(settings)

if __name__ == '__main__':
    logger.info("Stream relay started!")
    app.run(host=settings.host, port=settings.port, debug=False, threaded=True)
