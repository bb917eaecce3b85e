"""Run the Chatline server: ``python -m chatline``."""
import uvicorn

from chatline.config import get_config


def main() -> None:
    config = get_config()
    uvicorn.run(
        "chatline.main:app",
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level.lower(),
    )


if __name__ == "__main__":
    main()
