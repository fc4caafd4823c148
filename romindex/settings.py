"""Django settings for the romindex project."""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "romindex-insecure-dev-key")

DEBUG = os.environ.get("DJANGO_DEBUG", "").lower() in ("1", "true", "yes")

ALLOWED_HOSTS = []

INSTALLED_APPS = [
    "library",
]

# The library is stored as JSON documents, no database is used
DATABASES = {}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

USE_TZ = True

# -----------------------------------------------------------------------------
# Library
# -----------------------------------------------------------------------------

# Folder holding library.json and library-config.json
LIBRARY_DATA_DIR = os.environ.get(
    "ROMINDEX_DATA_DIR", os.path.join(os.path.expanduser("~"), ".romindex")
)

# Folder for ROMs extracted from archives (default: <LIBRARY_DATA_DIR>/rom-cache)
ROM_CACHE_DIR = os.environ.get("ROMINDEX_CACHE_DIR", "")

# Number of files hashed or extracted concurrently during a scan
SCAN_BATCH_SIZE = int(os.environ.get("ROMINDEX_SCAN_BATCH_SIZE", "4"))

# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------

LOG_LEVEL = os.environ.get("ROMINDEX_LOG_LEVEL", "INFO")

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "[{asctime}] [{levelname}] [{name}] {message}",
            "style": "{",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
    },
    "loggers": {
        "library": {
            "handlers": ["console"],
            "level": LOG_LEVEL,
            "propagate": False,
        },
    },
}
