"""
Django settings for PAP Dispatch.
Motor de despacho e negociação de entregas

Configuration for:
- PostgreSQL (shipment documents as JSON columns)
- Redis/Celery (decision-window timers, dispatch sweep)
- Django Channels (courier/client realtime updates)
- JWT Authentication (mobile API)
"""

from pathlib import Path
from decouple import config, Csv
from datetime import timedelta

# ===========================================
# BASE CONFIGURATION
# ===========================================
BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = config('SECRET_KEY', default='dev-secret-key-change-in-production')
DEBUG = config('DEBUG', default=True, cast=bool)
ALLOWED_HOSTS = config('ALLOWED_HOSTS', default='localhost,127.0.0.1,0.0.0.0', cast=Csv())

# ===========================================
# APPLICATION DEFINITION
# ===========================================
INSTALLED_APPS = [
    # Django Core
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',

    'channels',  # Django Channels for real-time

    'django.contrib.staticfiles',

    # Third Party
    'rest_framework',
    'rest_framework_simplejwt',
    'corsheaders',
    'django_filters',
    'drf_spectacular',

    # PAP Apps
    'core.apps.CoreConfig',
    'shipments.apps.ShipmentsConfig',
]


MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'corsheaders.middleware.CorsMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'pap_core.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.debug',
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

ASGI_APPLICATION = 'pap_core.asgi.application'

# ===========================================
# DATABASE - PostgreSQL (SQLite for local development)
# ===========================================
DB_ENGINE = config('DB_ENGINE', default='django.db.backends.sqlite3')

if DB_ENGINE == 'django.db.backends.sqlite3':
    DATABASES = {
        'default': {
            'ENGINE': DB_ENGINE,
            'NAME': config('DB_NAME', default=str(BASE_DIR / 'db.sqlite3')),
        }
    }
else:
    DATABASES = {
        'default': {
            'ENGINE': DB_ENGINE,
            'NAME': config('DB_NAME', default='pap_db'),
            'USER': config('DB_USER', default='pap_user'),
            'PASSWORD': config('DB_PASSWORD', default='pap_secret'),
            'HOST': config('DB_HOST', default='db'),
            'PORT': config('DB_PORT', default='5432'),
        }
    }

# ===========================================
# CUSTOM USER MODEL
# ===========================================
AUTH_USER_MODEL = 'core.User'

# ===========================================
# PASSWORD VALIDATION
# ===========================================
AUTH_PASSWORD_VALIDATORS = [
    {'NAME': 'django.contrib.auth.password_validation.UserAttributeSimilarityValidator'},
    {'NAME': 'django.contrib.auth.password_validation.MinimumLengthValidator'},
    {'NAME': 'django.contrib.auth.password_validation.CommonPasswordValidator'},
    {'NAME': 'django.contrib.auth.password_validation.NumericPasswordValidator'},
]

# ===========================================
# INTERNATIONALIZATION (Brasil)
# ===========================================
LANGUAGE_CODE = 'pt-br'
TIME_ZONE = 'America/Sao_Paulo'
USE_I18N = True
USE_TZ = True

# ===========================================
# STATIC FILES
# ===========================================
STATIC_URL = 'static/'
STATIC_ROOT = BASE_DIR / 'staticfiles'

# ===========================================
# DEFAULT PRIMARY KEY
# ===========================================
DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# ===========================================
# DJANGO CHANNELS (WebSocket Real-time)
# ===========================================
REDIS_URL = config('REDIS_URL', default='redis://redis:6379/0')

if config('USE_REDIS_CHANNEL_LAYER', default=False, cast=bool):
    CHANNEL_LAYERS = {
        'default': {
            'BACKEND': 'channels_redis.core.RedisChannelLayer',
            'CONFIG': {
                'hosts': [config('CHANNEL_REDIS_URL', default='redis://redis:6379/1')],
                'capacity': 1500,
                'expiry': 10,
            },
        },
    }
else:
    CHANNEL_LAYERS = {
        'default': {
            'BACKEND': 'channels.layers.InMemoryChannelLayer',
        },
    }

# ===========================================
# DJANGO REST FRAMEWORK
# ===========================================
REST_FRAMEWORK = {
    'DEFAULT_AUTHENTICATION_CLASSES': [
        'rest_framework_simplejwt.authentication.JWTAuthentication',
        'rest_framework.authentication.SessionAuthentication',
    ],
    'DEFAULT_PERMISSION_CLASSES': [
        'rest_framework.permissions.IsAuthenticated',
    ],
    'DEFAULT_FILTER_BACKENDS': [
        'django_filters.rest_framework.DjangoFilterBackend',
        'rest_framework.filters.OrderingFilter',
    ],
    'DEFAULT_PAGINATION_CLASS': 'rest_framework.pagination.PageNumberPagination',
    'PAGE_SIZE': 20,
    'DEFAULT_SCHEMA_CLASS': 'drf_spectacular.openapi.AutoSchema',
}

# ===========================================
# API DOCUMENTATION (drf-spectacular)
# ===========================================
SPECTACULAR_SETTINGS = {
    'TITLE': 'PAP Dispatch API',
    'DESCRIPTION': 'API de despacho, aceite e negociação de envios',
    'VERSION': '1.0.0',
    'SERVE_INCLUDE_SCHEMA': False,
}

# ===========================================
# JWT CONFIGURATION
# ===========================================
SIMPLE_JWT = {
    'ACCESS_TOKEN_LIFETIME': timedelta(hours=12),
    'REFRESH_TOKEN_LIFETIME': timedelta(days=7),
    'ROTATE_REFRESH_TOKENS': True,
    'AUTH_HEADER_TYPES': ('Bearer',),
}

# ===========================================
# CORS (Cross-Origin Resource Sharing)
# ===========================================
CORS_ALLOW_ALL_ORIGINS = DEBUG
CORS_ALLOWED_ORIGINS = config(
    'CORS_ALLOWED_ORIGINS',
    default='http://localhost:8081,http://127.0.0.1:8081',
    cast=Csv()
)
CORS_ALLOW_CREDENTIALS = True

# ===========================================
# CELERY CONFIGURATION
# ===========================================
CELERY_BROKER_URL = config('CELERY_BROKER_URL', default=REDIS_URL)
CELERY_RESULT_BACKEND = config('CELERY_RESULT_BACKEND', default=REDIS_URL)
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TASK_SERIALIZER = 'json'
CELERY_RESULT_SERIALIZER = 'json'
CELERY_TIMEZONE = TIME_ZONE

# Celery Beat Schedule (Periodic Tasks)
CELERY_BEAT_SCHEDULE = {
    # Offer dispatchable shipments to couriers and expire overdue windows
    'dispatch-sweep': {
        'task': 'shipments.tasks.run_dispatch_sweep',
        'schedule': config('DISPATCH_SWEEP_INTERVAL_SECONDS', default=15, cast=int),
    },
    # Return shipments whose counter-offer expired to normal dispatch
    'expire-stale-offers': {
        'task': 'shipments.tasks.expire_stale_offers',
        'schedule': 300.0,
    },
}

# ===========================================
# EXTERNAL SERVICES
# ===========================================

# OSRM Routing Service
OSRM_BASE_URL = config('OSRM_BASE_URL', default='https://router.project-osrm.org')

# Nominatim Geocoding
NOMINATIM_BASE_URL = config('NOMINATIM_BASE_URL', default='https://nominatim.openstreetmap.org')

ROUTING_USER_AGENT = config('ROUTING_USER_AGENT', default='PAP-Dispatch/1.0 (contact: dev@pap.local)')
ROUTING_TIMEOUT_SECONDS = config('ROUTING_TIMEOUT_SECONDS', default=5, cast=float)
ROUTING_MINUTES_PER_KM = config('ROUTING_MINUTES_PER_KM', default=3, cast=float)
ROUTING_MIN_DURATION_MIN = config('ROUTING_MIN_DURATION_MIN', default=15, cast=int)

# ===========================================
# BUSINESS RULES - PRICING ENGINE
# ===========================================
PRICING_MIN_PRICE = config('PRICING_MIN_PRICE', default='5.00')                  # R$
PRICING_MIN_DISTANCE_KM = config('PRICING_MIN_DISTANCE_KM', default='0.5')       # km covered by min price
PRICING_PRICE_PER_KM = config('PRICING_PRICE_PER_KM', default='3.50')            # R$/km after threshold
PRICING_HEAVY_THRESHOLD_KG = config('PRICING_HEAVY_THRESHOLD_KG', default='5')   # kg
PRICING_HEAVY_SURCHARGE = config('PRICING_HEAVY_SURCHARGE', default='0.20')      # +20%
PRICING_FRAGILE_SURCHARGE = config('PRICING_FRAGILE_SURCHARGE', default='0.15')  # +15%
PRICING_CURRENCY = config('PRICING_CURRENCY', default='BRL')

# ===========================================
# BUSINESS RULES - DISPATCH ENGINE
# ===========================================
DISPATCH_DECISION_WINDOW_SECONDS = config('DISPATCH_DECISION_WINDOW_SECONDS', default=30, cast=int)
DISPATCH_REJECTION_THRESHOLD = config('DISPATCH_REJECTION_THRESHOLD', default=3, cast=int)
DISPATCH_MAX_NOTIFICATIONS = config('DISPATCH_MAX_NOTIFICATIONS', default=3, cast=int)
DISPATCH_NOTIFICATION_COOLDOWN_SECONDS = config('DISPATCH_NOTIFICATION_COOLDOWN_SECONDS', default=30, cast=int)
DISPATCH_GEOFENCE_RADIUS_M = config('DISPATCH_GEOFENCE_RADIUS_M', default=100, cast=float)
DISPATCH_OFFER_TTL_HOURS = config('DISPATCH_OFFER_TTL_HOURS', default=24, cast=int)
DISPATCH_SWEEP_BATCH_SIZE = config('DISPATCH_SWEEP_BATCH_SIZE', default=20, cast=int)
DISPATCH_COMMIT_RETRIES = config('DISPATCH_COMMIT_RETRIES', default=5, cast=int)

# ===========================================
# LOGGING CONFIGURATION
# ===========================================
LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{levelname} {asctime} {module} {process:d} {thread:d} {message}',
            'style': '{',
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
        'level': 'INFO',
    },
    'loggers': {
        'django': {
            'handlers': ['console'],
            'level': config('DJANGO_LOG_LEVEL', default='INFO'),
            'propagate': False,
        },
        'shipments': {
            'handlers': ['console'],
            'level': config('DISPATCH_LOG_LEVEL', default='INFO'),
            'propagate': False,
        },
        'celery': {
            'handlers': ['console'],
            'level': 'INFO',
            'propagate': False,
        },
    },
}
