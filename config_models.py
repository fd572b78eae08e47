from dataclasses import dataclass


@dataclass
class AppConfig:
    name: str
    env: str
    client_url: str
    enable_email_verification: bool
    enable_trial_periods: bool


@dataclass
class AuthConfig:
    jwt_secret: str
    jwt_refresh_secret: str
    access_ttl_seconds: int
    refresh_ttl_days: int
    password_hash_method: str
    max_failed_logins: int
    lockout_minutes: int


@dataclass
class StripeConfig:
    secret_key: str
    webhook_secret: str
    timeout_seconds: int
    webhook_tolerance: int


@dataclass
class EmailConfig:
    enabled: bool
    smtp_host: str
    smtp_port: int
    smtp_user: str
    smtp_password: str
    sender: str


@dataclass
class SecurityConfig:
    rate_limit_default: str
    rate_limit_auth: str
    rate_limit_webhook: str


@dataclass
class Settings:
    app: AppConfig
    auth: AuthConfig
    stripe: StripeConfig
    email: EmailConfig
    security: SecurityConfig
    database_uri: str
