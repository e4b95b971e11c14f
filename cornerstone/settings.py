import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent

# ---------------------------------
#   .env
# ---------------------------------
# On charge le .env à la racine du projet (s'il existe)
env_path = BASE_DIR / ".env"
if env_path.exists():
    load_dotenv(env_path)

# ---------------------------------
#   Sécurité et Debug
# ---------------------------------
SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "change-me-in-development-only")

DEBUG = os.getenv("DJANGO_DEBUG", "True") == "True"

# ex: "127.0.0.1 localhost cornerstonebriques.com"
_raw_hosts = os.getenv("DJANGO_ALLOWED_HOSTS", "")
if _raw_hosts.strip():
    ALLOWED_HOSTS = _raw_hosts.split()
else:
    ALLOWED_HOSTS = ["127.0.0.1", "localhost", "testserver"]

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "core.apps.CoreConfig",
    "offline.apps.OfflineConfig",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.locale.LocaleMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "cornerstone.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [BASE_DIR / "templates"],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.debug",
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
                "django.template.context_processors.i18n",
            ],
        },
    },
]

WSGI_APPLICATION = "cornerstone.wsgi.application"

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": BASE_DIR / "db.sqlite3",
    }
}

LANGUAGE_CODE = "fr"

LANGUAGES = [
    ("fr", "Français"),
    ("en", "English"),
]

LOCALE_PATHS = [
    BASE_DIR / "locale",
]

TIME_ZONE = "Africa/Lome"
USE_I18N = True
USE_TZ = True

# -----------------------------
#   Static
# -----------------------------
STATIC_URL = "static/"
STATIC_ROOT = BASE_DIR / "staticfiles"

LOGIN_URL = "/admin/login/"
LOGIN_REDIRECT_URL = "/"
LOGOUT_REDIRECT_URL = "/"

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# -----------------------------
#   Stockage local
# -----------------------------
# "database" → table core_localentry, "memory" → dict du processus
LOCAL_STORAGE_BACKEND = os.getenv("LOCAL_STORAGE_BACKEND", "database")
LOCAL_STORAGE_NAMESPACE = os.getenv("LOCAL_STORAGE_NAMESPACE", "cornerstone_")

# -----------------------------
#   Mode hors ligne / synchronisation
# -----------------------------
# "local" → collections locales, "rest" → backend distant (PostgREST)
OFFLINE_BACKEND = os.getenv("OFFLINE_BACKEND", "local")

REMOTE_BACKEND_URL = os.getenv("REMOTE_BACKEND_URL", "")
REMOTE_BACKEND_API_KEY = os.getenv("REMOTE_BACKEND_API_KEY", "")
REMOTE_BACKEND_TIMEOUT = float(os.getenv("REMOTE_BACKEND_TIMEOUT", "10"))

# Vide → pas de sonde, on se fie à OFFLINE_ASSUME_ONLINE au démarrage
CONNECTIVITY_PROBE_URL = os.getenv("CONNECTIVITY_PROBE_URL", "")
CONNECTIVITY_PROBE_TIMEOUT = float(os.getenv("CONNECTIVITY_PROBE_TIMEOUT", "3"))
CONNECTIVITY_POLL_INTERVAL = float(os.getenv("CONNECTIVITY_POLL_INTERVAL", "30"))
OFFLINE_ASSUME_ONLINE = os.getenv("OFFLINE_ASSUME_ONLINE", "True") == "True"

# -----------------------------
#   Logging
# -----------------------------
LOG_LEVEL = os.getenv("DJANGO_LOG_LEVEL", "INFO")

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "simple": {
            "format": "{asctime} {levelname} {name}: {message}",
            "style": "{",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "simple",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": "WARNING",
    },
    "loggers": {
        "core": {
            "handlers": ["console"],
            "level": LOG_LEVEL,
            "propagate": False,
        },
        "offline": {
            "handlers": ["console"],
            "level": LOG_LEVEL,
            "propagate": False,
        },
    },
}
