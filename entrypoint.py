import uvicorn
from constants import LOG_FILE, LOG_LEVEL, SERVER_HOST, SERVER_PORT
from logging_config import get_logger, setup_logging

setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)


def main():
    from app import app

    logger.info(f"Starting teamroom presence server on {SERVER_HOST}:{SERVER_PORT} "
                f"(log level {LOG_LEVEL})")
    # Connection sessions and the fallback presence table are per process
    uvicorn.run(app, host=SERVER_HOST, port=SERVER_PORT, workers=1)


if __name__ == "__main__":
    main()
