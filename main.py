import os

from mailgenius.config import load_settings
from mailgenius.server import configure_logging, serve

# Configure logging level from environment before anything logs
configure_logging(os.getenv("MG_LOG_LEVEL", "INFO"))


if __name__ == "__main__":
    settings = load_settings()
    if settings.get("log_level"):
        configure_logging(str(settings["log_level"]))
    serve(settings)
