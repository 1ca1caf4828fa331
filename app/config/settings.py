#!/usr/bin/env python
#
"""
Django settings for the listmail service.

Everything that differs between deployments is read from the environment
with a default that is suitable for local development and the test suite.
"""
# system imports
#
import os
import socket
from pathlib import Path

# 3rd party imports
#
import redis

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "insecure-listmail-dev-key")
DEBUG = os.environ.get("DEBUG", "false").lower() in ("1", "true", "yes")
ALLOWED_HOSTS = os.environ.get("ALLOWED_HOSTS", "localhost").split(",")

SITE_NAME = os.environ.get("SITE_NAME", "lists.mail.localhost")

INSTALLED_APPS = [
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "huey.contrib.djhuey",
    "listmail.apps.ListmailConfig",
]

DATABASES = {
    "default": {
        "ENGINE": os.environ.get(
            "DATABASE_ENGINE", "django.db.backends.sqlite3"
        ),
        "NAME": os.environ.get("DATABASE_NAME", str(BASE_DIR / "db.sqlite3")),
        "USER": os.environ.get("DATABASE_USER", ""),
        "PASSWORD": os.environ.get("DATABASE_PASSWORD", ""),
        "HOST": os.environ.get("DATABASE_HOST", ""),
        "PORT": os.environ.get("DATABASE_PORT", ""),
    }
}
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LANGUAGE_CODE = "en-us"
TIME_ZONE = os.environ.get("TIME_ZONE", "UTC")
USE_I18N = True
USE_TZ = True

########################################################################
#
# Redis and huey. huey uses db 1, everything else (the DNS cache) uses db 2.
#
REDIS_SERVER = os.environ.get("REDIS_SERVER", "localhost")

HUEY = {
    "huey_class": "huey.RedisHuey",
    "name": "listmail",
    "immediate": False,
    "connection": {
        "connection_pool": redis.ConnectionPool(
            host=REDIS_SERVER, port=6379, db=1
        ),
    },
    "consumer": {
        "workers": int(os.environ.get("HUEY_WORKERS", "4")),
        "worker_type": "thread",
    },
}

########################################################################
#
# Sentry reporting for the SMTP daemon
#
SENTRY_DSN = os.environ.get("SENTRY_DSN")
SENTRY_TRACES_SAMPLE_RATE = float(
    os.environ.get("SENTRY_TRACES_SAMPLE_RATE", "0.1")
)
SENTRY_PROFILES_SAMPLE_RATE = float(
    os.environ.get("SENTRY_PROFILES_SAMPLE_RATE", "0.1")
)

########################################################################
#
# Mailing list ingestion
#
# The recipient domain for lists owned by users and the one for lists owned
# by organizations. Mail to any other domain is rejected.
#
LISTMAIL_USER_DOMAIN = os.environ.get(
    "LISTMAIL_USER_DOMAIN", "lists.mail.localhost"
)
LISTMAIL_ORG_DOMAIN = os.environ.get(
    "LISTMAIL_ORG_DOMAIN", "org.lists.mail.localhost"
)

# The authserv-id used in the Authentication-Results header and the `by`
# clause of the Received header we add.
#
LISTMAIL_AUTH_DOMAIN = os.environ.get(
    "LISTMAIL_AUTH_DOMAIN", "lists.mail.localhost"
)
LISTMAIL_INSTANCE = os.environ.get("LISTMAIL_INSTANCE", socket.gethostname())

LISTMAIL_MAX_MSG_SIZE = int(
    os.environ.get("LISTMAIL_MAX_MSG_SIZE", str(2 * 1024 * 1024))
)

# Timeouts are in seconds.
#
LISTMAIL_DATA_TIMEOUT = float(os.environ.get("LISTMAIL_DATA_TIMEOUT", "30"))
LISTMAIL_DNS_TIMEOUT = float(os.environ.get("LISTMAIL_DNS_TIMEOUT", "5"))
LISTMAIL_MARK_TIMEOUT = float(os.environ.get("LISTMAIL_MARK_TIMEOUT", "5"))
LISTMAIL_DNS_CACHE_TTL = int(os.environ.get("LISTMAIL_DNS_CACHE_TTL", "60"))

# Messages that are still not marked processed this many seconds after they
# were recorded get their delivery event published again by the periodic
# reconciliation task.
#
LISTMAIL_RECONCILE_AFTER = int(
    os.environ.get("LISTMAIL_RECONCILE_AFTER", "600")
)

LISTMAIL_MESSAGE_STORE_DIR = Path(
    os.environ.get(
        "LISTMAIL_MESSAGE_STORE_DIR", str(BASE_DIR / "message_store")
    )
)

########################################################################
#
LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "{asctime} {levelname} {name}: {message}",
            "style": "{",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": "WARNING",
    },
    "loggers": {
        "listmail": {
            "handlers": ["console"],
            "level": os.environ.get("LISTMAIL_LOG_LEVEL", "INFO"),
            "propagate": False,
        },
        "huey": {
            "handlers": ["console"],
            "level": "INFO",
            "propagate": False,
        },
    },
}
