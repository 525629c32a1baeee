import logging

from nicegui import ui

from src.core.config import config_manager
from src.ui.scan import scan_page


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    # Chatty third-party loggers
    logging.getLogger("urllib3").setLevel(logging.WARNING)


@ui.page('/')
def index():
    scan_page()


if __name__ in {"__main__", "__mp_main__"}:
    configure_logging(config_manager.get_log_level())
    ui.run(
        title='标签智能扫描',
        port=config_manager.get_port(),
        reload=False,
        show=False,
        # Phone browsers only expose the camera over HTTPS (or localhost).
        ssl_certfile=config_manager.get("SSL_CERTFILE", None),
        ssl_keyfile=config_manager.get("SSL_KEYFILE", None),
    )
