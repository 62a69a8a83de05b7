"""
With these settings, tests run faster.
"""

from .base import *  # noqa: F403
from .base import LOGGING
from .base import TEMPLATES
from .base import env

# GENERAL
# ------------------------------------------------------------------------------
# https://docs.djangoproject.com/en/dev/ref/settings/#secret-key
SECRET_KEY = env(
    "DJANGO_SECRET_KEY",
    default="gq7b3NBj0d0yUYqkOQ8kqfWbNqWcR1hFQ2sV6Xl9pTz4mKcEaJrLu5HiDoGwxSnv",
)
# https://docs.djangoproject.com/en/dev/ref/settings/#test-runner
TEST_RUNNER = "django.test.runner.DiscoverRunner"

# DATABASES
# ------------------------------------------------------------------------------
DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": ":memory:",
    },
}

# PASSWORDS
# ------------------------------------------------------------------------------
# https://docs.djangoproject.com/en/dev/ref/settings/#password-hashers
PASSWORD_HASHERS = ["django.contrib.auth.hashers.MD5PasswordHasher"]

# DEBUGGING FOR TEMPLATES
# ------------------------------------------------------------------------------
TEMPLATES[0]["OPTIONS"]["debug"] = True  # type: ignore[index]

# Your stuff...
# ------------------------------------------------------------------------------
BCHAT_NODE_NAME = "TEST"
BCHAT_RELAY_RECONNECT_DELAY = 0.01

# LOGGING
# ------------------------------------------------------------------------------
# Let pytest's caplog (on the root logger) see the app's records.
LOGGING["loggers"]["bchat"].update(handlers=[], propagate=True)
