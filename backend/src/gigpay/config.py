"""
Configuration module for Lambda handlers.
Loads all environment variables needed by the escrow backend.
"""
import os


class Config:
    """Centralized configuration from environment variables."""

    # AWS Region
    AWS_REGION = os.environ.get('AWS_REGION', 'us-east-1')

    # Logging
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    # DynamoDB Tables
    APPLICATIONS_TABLE = os.environ.get('APPLICATIONS_TABLE', 'applications')
    GIGS_TABLE = os.environ.get('GIGS_TABLE', 'gigs')
    USERS_TABLE = os.environ.get('USERS_TABLE', 'users')
    PAYMENT_HISTORY_TABLE = os.environ.get('PAYMENT_HISTORY_TABLE', 'paymentHistory')
    PAYMENT_INTENTS_TABLE = os.environ.get('PAYMENT_INTENTS_TABLE', 'paymentIntents')
    FEE_CONFIGS_TABLE = os.environ.get('FEE_CONFIGS_TABLE', 'feeConfigs')
    PLATFORM_CONFIG_TABLE = os.environ.get('PLATFORM_CONFIG_TABLE', 'platformConfig')

    # Global secondary indexes
    GIG_INDEX = os.environ.get('GIG_INDEX', 'GigIndex')
    STATUS_INDEX = os.environ.get('STATUS_INDEX', 'StatusIndex')
    TRANSACTION_INDEX = os.environ.get('TRANSACTION_INDEX', 'TransactionIndex')
    USER_INDEX = os.environ.get('USER_INDEX', 'UserIndex')

    # Local transaction retry (optimistic concurrency)
    TXN_MAX_ATTEMPTS = int(os.environ.get('TXN_MAX_ATTEMPTS', '3'))
    TXN_BACKOFF_SECONDS = float(os.environ.get('TXN_BACKOFF_SECONDS', '0.05'))

    # TradeSafe escrow provider
    TRADESAFE_CLIENT_ID = os.environ.get('TRADESAFE_CLIENT_ID', '')
    TRADESAFE_CLIENT_SECRET = os.environ.get('TRADESAFE_CLIENT_SECRET', '')
    TRADESAFE_ENVIRONMENT = os.environ.get('TRADESAFE_ENVIRONMENT', 'sandbox')
    # Request-level timeout, clamped to 10-30 seconds
    TRADESAFE_TIMEOUT_SECONDS = min(max(float(os.environ.get('TRADESAFE_TIMEOUT_SECONDS', '15')), 10.0), 30.0)

    # Fallbacks when no fee / platform configuration is stored
    DEFAULT_COMMISSION_PERCENT = os.environ.get('DEFAULT_COMMISSION_PERCENT', '10')
    DEFAULT_AUTO_RELEASE_DAYS = int(os.environ.get('DEFAULT_AUTO_RELEASE_DAYS', '7'))

    # Scheduled sweep authorization (API Gateway invocations only)
    CRON_SECRET = os.environ.get('CRON_SECRET', '')


config = Config()
