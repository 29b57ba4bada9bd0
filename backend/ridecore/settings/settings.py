"""
Base Django settings for the ridecore project.

Environment-specific modules (prod.py, test.py) star-import this file
and override what they need.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent.parent
load_dotenv(os.path.join(BASE_DIR, '..', '.env'))

SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "django-insecure-ridecore-dev-key")
DEBUG = os.getenv("DJANGO_DEBUG", "True") == "True"
ALLOWED_HOSTS = os.getenv("ALLOWED_HOSTS", "*").split(',')


INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',

    # Third party
    'rest_framework',
    'rest_framework_simplejwt',
    'corsheaders',
    'channels',

    # Local apps
    'accounts',
    'drivers',
    'rides',
]

MIDDLEWARE = [
    'corsheaders.middleware.CorsMiddleware',
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'ridecore.urls'

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

ASGI_APPLICATION = 'ridecore.asgi.application'

if os.getenv("DB_ENGINE"):
    DATABASES = {
        'default': {
            'ENGINE': os.getenv("DB_ENGINE"),
            'NAME': os.getenv("DB_NAME", "ridecore"),
            'USER': os.getenv("DB_USER", ""),
            'PASSWORD': os.getenv("DB_PASSWORD", ""),
            'HOST': os.getenv("DB_HOST", "localhost"),
            'PORT': os.getenv("DB_PORT", ""),
        }
    }
else:
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': BASE_DIR / 'db.sqlite3',
        }
    }

AUTH_USER_MODEL = 'accounts.User'
DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

AUTH_PASSWORD_VALIDATORS = [
    {'NAME': 'django.contrib.auth.password_validation.UserAttributeSimilarityValidator'},
    {'NAME': 'django.contrib.auth.password_validation.MinimumLengthValidator'},
]

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

STATIC_URL = 'static/'
MEDIA_URL = '/media/'
MEDIA_ROOT = BASE_DIR / 'media'


# ===================== REST framework / JWT =====================

REST_FRAMEWORK = {
    'DEFAULT_AUTHENTICATION_CLASSES': (
        'rest_framework_simplejwt.authentication.JWTAuthentication',
    ),
    'DEFAULT_PERMISSION_CLASSES': (
        'rest_framework.permissions.IsAuthenticated',
    ),
    'EXCEPTION_HANDLER': 'common.exceptions.ride_exception_handler',
}

SIMPLE_JWT = {
    'AUTH_HEADER_TYPES': ('Bearer',),
    'USER_ID_FIELD': 'id',
    'USER_ID_CLAIM': 'user_id',
}

CORS_ALLOW_ALL_ORIGINS = True


# ===================== Channels / Celery =====================

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

CHANNEL_LAYERS = {
    "default": {
        "BACKEND": "channels.layers.InMemoryChannelLayer",
    }
}

CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", REDIS_URL)
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", REDIS_URL)
CELERY_TASK_SERIALIZER = 'json'
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TIMEZONE = TIME_ZONE


# ===================== Dispatch =====================

MATCHING_BATCH_SIZE = 3
MATCHING_MAX_RADIUS_METERS = 16000
MATCHING_MAX_ATTEMPTS = 8
MATCHING_RETRY_BASE_SECONDS = 5
MATCHING_RETRY_MAX_SECONDS = 60
RIDE_OFFER_TTL_SECONDS = 60
RIDE_OFFER_RECHECK_BUFFER_SECONDS = 5
RIDE_SEARCH_TIMEOUT_SECONDS = 300
DISPATCH_SCHEDULER_CLASS = 'services.matching.scheduler.CeleryDispatchScheduler'


# ===================== Driver presence / lifecycle guards =====================

DRIVER_HEARTBEAT_TIMEOUT_SECONDS = 120
DRIVER_LOCATION_MAX_AGE_SECONDS = 60
START_RADIUS_METERS = 200
COMPLETE_RADIUS_METERS = 200
RIDE_HISTORY_DEFAULT_LIMIT = 10
RIDE_HISTORY_MAX_LIMIT = 50


# ===================== Payments =====================

PAYMENT_GATEWAY_CLASS = 'services.payments.gateway.StripeGateway'
PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "usd")
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
RIDER_PLATFORM_FEE_CENTS = 150
DRIVER_PLATFORM_FEE_CENTS = 150
REVENUE_SPLIT_ENABLED = os.getenv("REVENUE_SPLIT_ENABLED", "False") == "True"


# ===================== Janitor =====================

JANITOR_INTERVAL_SECONDS = 120
JANITOR_BATCH_SIZE = 50
PAYMENT_AUTH_TIMEOUT_SECONDS = 600
DRIVER_START_TIMEOUT_SECONDS = 600
TRANSFER_GRACE_SECONDS = 120
PAYMENT_RELEASE_GRACE_SECONDS = 120

CELERY_BEAT_SCHEDULE = {
    'janitor-sweep': {
        'task': 'rides.tasks.run_janitor_task',
        'schedule': float(JANITOR_INTERVAL_SECONDS),
    },
}


# ===================== Logging =====================

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '%(asctime)s %(levelname)s %(name)s: %(message)s',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': LOG_LEVEL,
    },
    'loggers': {
        'django': {
            'handlers': ['console'],
            'level': 'WARNING',
            'propagate': False,
        },
    },
}
