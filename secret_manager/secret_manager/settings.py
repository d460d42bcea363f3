"""
Django settings for secret_manager project.

Values are read from the environment so the same module serves development,
tests and production deployments.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def _env_bool(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY', 'insecure-development-key')

DEBUG = _env_bool('DJANGO_DEBUG', False)

ALLOWED_HOSTS = [host for host in os.environ.get('DJANGO_ALLOWED_HOSTS', 'localhost,127.0.0.1').split(',') if host]

TRUSTED_PROXY_IPS = [ip for ip in os.environ.get('TRUSTED_PROXY_IPS', '').split(',') if ip]

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django_prometheus',
    'accounts',
    'core',
    'secret_store',
]

MIDDLEWARE = [
    'django_prometheus.middleware.PrometheusBeforeMiddleware',
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'core.middleware.LoggingMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
    'django_prometheus.middleware.PrometheusAfterMiddleware',
]

ROOT_URLCONF = 'secret_manager.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

DATABASES = {
    'default': {
        'ENGINE': os.environ.get('DB_ENGINE', 'django_prometheus.db.backends.sqlite3'),
        'NAME': os.environ.get('DB_NAME', str(BASE_DIR / 'db.sqlite3')),
        'USER': os.environ.get('DB_USER', ''),
        'PASSWORD': os.environ.get('DB_PASSWORD', ''),
        'HOST': os.environ.get('DB_HOST', ''),
        'PORT': os.environ.get('DB_PORT', ''),
    }
}

AUTH_USER_MODEL = 'accounts.CustomUser'

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

STATIC_URL = 'static/'

# Secret store engine
SECRET_STORE_REPOSITORY_BACKEND = os.environ.get('SECRET_STORE_REPOSITORY_BACKEND', 'django')
SECRET_STORE_SERIALIZE_WRITES = _env_bool('SECRET_STORE_SERIALIZE_WRITES', True)
SECRET_STORE_DEFAULT_CHANNEL = os.environ.get('SECRET_STORE_DEFAULT_CHANNEL', 'cli')

LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'filters': {
        'user_context': {
            '()': 'core.middleware.UserIdFilter',
        },
    },
    'formatters': {
        'json': {
            '()': 'core.logging_formatters.StructuredJSONFormatter',
        },
        'verbose': {
            'format': '{asctime} {levelname} {name} [user={user_id} ip={ip}] {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'filters': ['user_context'],
            'formatter': 'json' if _env_bool('LOG_JSON', False) else 'verbose',
        },
    },
    'loggers': {
        'secret_store': {'handlers': ['console'], 'level': LOG_LEVEL, 'propagate': False},
        'core': {'handlers': ['console'], 'level': LOG_LEVEL, 'propagate': False},
        'accounts': {'handlers': ['console'], 'level': LOG_LEVEL, 'propagate': False},
        'alerts': {'handlers': ['console'], 'level': 'ERROR', 'propagate': False},
        'django.security': {'handlers': ['console'], 'level': 'WARNING', 'propagate': False},
    },
}
