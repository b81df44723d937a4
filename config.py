"""
Application configuration.

Values are read from environment variables, optionally loaded from a ``.env``
file next to this module. ``app.py`` picks the class named by ``APP_CONFIG``
(default ``config.Config``).
"""
import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent

load_dotenv(BASE_DIR / '.env')


def _default_database_uri():
    db_path = BASE_DIR / 'instance' / 'rental_admin.db'
    return f"sqlite:///{db_path.as_posix()}"


class Config:
    SECRET_KEY = os.getenv('SECRET_KEY', 'change-me')

    # Database settings
    SQLALCHEMY_DATABASE_URI = os.getenv('DATABASE_URL', _default_database_uri())
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

    # Page bridge asset version; clients reload when it changes
    ASSET_VERSION = os.getenv('ASSET_VERSION', '1')

    SHOP_NAME = os.getenv('SHOP_NAME', 'Rental Shop')

    # Balance sheet folds the period's net profit into this account
    RETAINED_EARNINGS_ACCOUNT = os.getenv('RETAINED_EARNINGS_ACCOUNT', "Owner's Equity")

    # Vehicle.current_location labels written by the rental workflow
    RENTED_LOCATION = 'With customer'
    RETURNED_LOCATION = 'With shop'

    CHART_HISTORY_DAYS = int(os.getenv('CHART_HISTORY_DAYS', '30'))

    # Seeded administrator account
    ADMIN_NAME = os.getenv('ADMIN_NAME', 'Admin')
    ADMIN_EMAIL = os.getenv('ADMIN_EMAIL', 'admin@test.com')
    ADMIN_PASSWORD = os.getenv('ADMIN_PASSWORD', 'password123')


class TestingConfig(Config):
    TESTING = True
    WTF_CSRF_ENABLED = False
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    LOG_LEVEL = 'DEBUG'
