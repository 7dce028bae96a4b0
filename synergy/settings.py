# synergy/settings.py
"""
Django settings for the synergy dataset gateway.

Everything deployment specific comes from the environment (a local .env
file is loaded first).
"""
import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent

load_dotenv(BASE_DIR / '.env')


def env_int(name, default):
    return int(os.getenv(name, default))


def env_bool(name, default=False):
    return os.getenv(name, str(default)).lower() in ('1', 'true', 'yes')


SECRET_KEY = os.getenv('DJANGO_SECRET_KEY', 'django-insecure-local-development-key')
DEBUG = env_bool('DJANGO_DEBUG', False)
ALLOWED_HOSTS = [h for h in os.getenv('DJANGO_ALLOWED_HOSTS', 'localhost,127.0.0.1,testserver').split(',') if h]

INSTALLED_APPS = [
    'django.contrib.contenttypes',
    'django.contrib.auth',
    'rest_framework',
    'principals',
    'datasets',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.middleware.common.CommonMiddleware',
]

ROOT_URLCONF = 'synergy.urls'
WSGI_APPLICATION = 'synergy.wsgi.application'

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': os.getenv('DATABASE_PATH', str(BASE_DIR / 'db.sqlite3')),
    }
}

CACHES = {
    'default': {
        'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
        'LOCATION': 'synergy',
    }
}

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'
USE_TZ = True
TIME_ZONE = 'UTC'

REST_FRAMEWORK = {
    'DEFAULT_AUTHENTICATION_CLASSES': [],
    'DEFAULT_PERMISSION_CLASSES': [],
    'UNAUTHENTICATED_USER': None,
    'EXCEPTION_HANDLER': 'datasets.exceptions.envelope_exception_handler',
}

# Registry networks
RPC_URL = os.getenv('RPC_URL', 'http://127.0.0.1:8545')
REGISTRY_ADDRESS = os.getenv('REGISTRY_ADDRESS', '')
GATEWAY_SIGNING_KEY = os.getenv('GATEWAY_SIGNING_KEY')
CONFIRMATIONS = env_int('CONFIRMATIONS', 2)
DEFAULT_NETWORK_ID = env_int('DEFAULT_NETWORK_ID', 1337)
REGISTRY_WRITES_PER_MINUTE = env_int('REGISTRY_WRITES_PER_MINUTE', 30)

NETWORKS = {
    # local ledger kept in this database
    1337: {'backend': os.getenv('REGISTRY_BACKEND', 'ledger'), 'rpc_url': RPC_URL,
           'registry_address': REGISTRY_ADDRESS, 'confirmations': 0},
    # sepolia
    11155111: {'backend': 'contract', 'rpc_url': RPC_URL, 'registry_address': REGISTRY_ADDRESS},
}

# Content store
CONTENT_STORE_BACKEND = os.getenv('CONTENT_STORE_BACKEND', 'gateway')
CONTENT_GATEWAY_URL = os.getenv('CONTENT_GATEWAY_URL', 'http://127.0.0.1:5001')
CONTENT_GATEWAY_TOKEN = os.getenv('CONTENT_GATEWAY_TOKEN')
CONTENT_STORE_MAX_ATTEMPTS = env_int('CONTENT_STORE_MAX_ATTEMPTS', 5)
CONTENT_STORE_BACKOFF_SECONDS = float(os.getenv('CONTENT_STORE_BACKOFF_SECONDS', '0.5'))

# Request handling
REPLAY_WINDOW_SECONDS = env_int('REPLAY_WINDOW_SECONDS', 120)
REQUEST_DEADLINE_SECONDS = float(os.getenv('REQUEST_DEADLINE_SECONDS', '60'))
ENVELOPE_MAX_ATTEMPTS = env_int('ENVELOPE_MAX_ATTEMPTS', 3)

LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'standard': {
            'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'standard',
        },
    },
    'loggers': {
        'datasets': {'handlers': ['console'], 'level': LOG_LEVEL},
        'principals': {'handlers': ['console'], 'level': LOG_LEVEL},
    },
}
