import os

from dotenv import load_dotenv

load_dotenv()


def _flag(name, default='false'):
    return os.getenv(name, default).strip().lower() in {'1', 'true', 'yes', 'on'}


class Config:
    MYSQL_USER = os.getenv('MYSQL_USER', 'root')
    MYSQL_PASSWORD = os.getenv('MYSQL_PASSWORD', 'root123')
    MYSQL_HOST = os.getenv('MYSQL_HOST', 'localhost')
    MYSQL_DB = os.getenv('MYSQL_DB', 'promoter_db')
    MYSQL_PORT = int(os.getenv('MYSQL_PORT', 3306))
    MYSQL_CONNECT_TIMEOUT = int(os.getenv('MYSQL_CONNECT_TIMEOUT', 10))
    MYSQL_POOL_SIZE = int(os.getenv('MYSQL_POOL_SIZE', 5))
    MYSQL_SSL_MODE = os.getenv('MYSQL_SSL_MODE')
    MYSQL_SSL_CA = os.getenv('MYSQL_SSL_CA')
    PORT = int(os.getenv('PORT', 3000))
    CORS_ORIGINS = os.getenv('CORS_ORIGINS', '*')
    JWT_SECRET_KEY = os.getenv('JWT_SECRET_KEY', 'your_jwt_secret_key')
    JWT_EXPIRES_MINUTES = int(os.getenv('JWT_EXPIRES_MINUTES', 60))
    REQUIRE_AUTH = _flag('REQUIRE_AUTH')
    RECONCILE_POLICY = os.getenv('RECONCILE_POLICY', 'atomic')
    STATUS_REMOVED = int(os.getenv('STATUS_REMOVED', 1))
    STATUS_RETURNED_OUTSIDE_ORDER = int(os.getenv('STATUS_RETURNED_OUTSIDE_ORDER', 9))
    ITEMS_LOOKUP_PROCEDURE = os.getenv('ITEMS_LOOKUP_PROCEDURE', 'sp_returnItensPedido')
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
