"""
Application Configuration Module

Centralizes all configuration using environment variables with Pydantic Settings.
Supports three modes:
    - DEVELOPMENT: In-memory data service and mock audio (no credentials needed)
    - STAGING: Supabase project with test data, real audio output
    - PRODUCTION: Live Supabase project, real audio output

The ENV_MODE variable controls which services are instantiated throughout
the pipeline, so the same session code runs against the mock backend in
tests and against the hosted data service in the admin console.

Usage:
    from order_tracking.core.config import get_settings

    settings = get_settings()
    if settings.is_development:
        # Mock data service + mock audio
    else:
        # Supabase + sounddevice

Version: 1.0.0
"""

import logging
import sys
from enum import Enum
from typing import Optional
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EnvironmentMode(str, Enum):
    """
    Application environment modes.

    Attributes:
        DEVELOPMENT: Local testing with mock services
        PRODUCTION: Live environment with the hosted data service
        STAGING: Pre-production testing against a staging project
    """
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    STAGING = "staging"


class AlertPermission(str, Enum):
    """Platform alert permission, as granted by the operator."""
    GRANTED = "granted"
    DENIED = "denied"
    DEFAULT = "default"


class Settings(BaseSettings):
    """
    Pipeline settings loaded from environment variables.

    All settings can be overridden via environment variables or .env file.
    The Supabase keys should NEVER be committed to version control.

    Attributes:
        env_mode: Current environment (development/production/staging)
        debug: Enable verbose logging and error details

        # Data service
        supabase_url: Project URL (https://<ref>.supabase.co)
        supabase_anon_key: Public anon key used for REST and Realtime

        # Change feed
        poll_interval_seconds: Safety-net poll period
        reconnect_delay_seconds: Fixed delay before re-subscribing

        # Alerts
        bell_interval_seconds: Repeat period of the synthesized bell
        alert_clip_path: Pre-built alert clip (WAV); bell tone if unset

        # Background agent
        agent_sync_interval_seconds: Period of CHECK_NOTIFICATIONS requests
        agent_cache_name: Versioned shell cache name
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # ENVIRONMENT
    # ==========================================================================

    env_mode: EnvironmentMode = Field(
        default=EnvironmentMode.DEVELOPMENT,
        description="Application environment mode"
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode with verbose logging"
    )

    # ==========================================================================
    # APPLICATION
    # ==========================================================================

    app_name: str = Field(
        default="Order Notification Console",
        description="Application display name"
    )
    app_version: str = Field(
        default="1.0.0",
        description="Application version"
    )
    api_host: str = Field(
        default="0.0.0.0",
        description="API server host"
    )
    api_port: int = Field(
        default=8001,
        description="API server port"
    )
    app_base_url: str = Field(
        default="http://localhost:8001",
        description="Base URL the background agent caches the shell from"
    )

    # ==========================================================================
    # DATA SERVICE (SUPABASE)
    # ==========================================================================

    supabase_url: Optional[str] = Field(
        default=None,
        description="Supabase project URL"
    )
    supabase_anon_key: Optional[str] = Field(
        default=None,
        description="Supabase anon (public) API key"
    )
    orders_table: str = Field(
        default="orders",
        description="Orders record set"
    )
    notifications_table: str = Field(
        default="order_notifications",
        description="Notifications record set"
    )
    request_timeout_seconds: float = Field(
        default=10.0,
        description="Timeout for data service REST calls"
    )
    mock_failure_rate: float = Field(
        default=0.0,
        ge=0.0,
        le=1.0,
        description="Simulated connectivity failure rate of the mock data service"
    )
    mock_latency_seconds: float = Field(
        default=0.1,
        ge=0.0,
        description="Upper bound of the simulated latency of the mock data service"
    )

    # ==========================================================================
    # CHANGE FEED
    # ==========================================================================

    poll_interval_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Safety-net poll period, always running"
    )
    reconnect_delay_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Fixed delay before a reconnect attempt"
    )
    reconnect_max_attempts: Optional[int] = Field(
        default=None,
        description="Cap on consecutive reconnect attempts (None = unlimited)"
    )
    realtime_join_timeout_seconds: float = Field(
        default=10.0,
        description="Time allowed for the channel join reply"
    )
    realtime_heartbeat_seconds: float = Field(
        default=30.0,
        description="Realtime socket heartbeat period"
    )
    unread_fetch_limit: int = Field(
        default=10,
        ge=1,
        description="Maximum unread notifications fetched per poll"
    )
    audit_missing_notifications: bool = Field(
        default=True,
        description="Log recent orders that have no notification row"
    )
    audit_window_hours: int = Field(
        default=24,
        description="Look-back window for the missing-notification audit"
    )

    # ==========================================================================
    # ALERTS
    # ==========================================================================

    sound_enabled: bool = Field(
        default=True,
        description="Initial sound setting for new alert sessions"
    )
    alert_clip_path: Optional[str] = Field(
        default=None,
        description="WAV clip looped while alerting (bell tone if unset)"
    )
    alert_volume: float = Field(
        default=0.8,
        ge=0.0,
        le=1.0,
        description="Playback volume"
    )
    bell_interval_seconds: float = Field(
        default=2.0,
        gt=0,
        description="Repeat period of the synthesized bell"
    )
    sample_rate: int = Field(
        default=44100,
        description="Sample rate for synthesized audio"
    )

    # ==========================================================================
    # BACKGROUND AGENT
    # ==========================================================================

    background_agent_enabled: bool = Field(
        default=True,
        description="Register the background delivery agent"
    )
    agent_sync_interval_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Period of CHECK_NOTIFICATIONS requests to foreground clients"
    )
    agent_cache_name: str = Field(
        default="order-dashboard-v1",
        description="Versioned name of the shell resource cache"
    )
    agent_shell_urls: str = Field(
        default="/,/health",
        description="Comma-separated shell resources cached on install"
    )
    alert_permission: AlertPermission = Field(
        default=AlertPermission.GRANTED,
        description="Result of a platform alert permission request"
    )
    alert_icon: str = Field(
        default="/favicon.ico",
        description="Icon shown on platform alerts"
    )

    # ==========================================================================
    # FILE STORAGE
    # ==========================================================================

    data_directory: str = Field(
        default="data",
        description="Directory for locally persisted state"
    )
    identity_filename: str = Field(
        default="client_identity.json",
        description="Anonymous client identity file"
    )
    identity_lock_timeout: float = Field(
        default=5.0,
        description="Seconds to wait for the identity file lock"
    )

    # ==========================================================================
    # VALIDATORS
    # ==========================================================================

    @field_validator("env_mode", mode="before")
    @classmethod
    def validate_env_mode(cls, v: str) -> EnvironmentMode:
        """Convert string to EnvironmentMode enum."""
        if isinstance(v, EnvironmentMode):
            return v
        try:
            return EnvironmentMode(v.lower())
        except ValueError:
            valid = [e.value for e in EnvironmentMode]
            raise ValueError(f"Invalid env_mode. Must be one of: {valid}")

    @field_validator("supabase_url")
    @classmethod
    def strip_trailing_slash(cls, v: Optional[str]) -> Optional[str]:
        return v.rstrip("/") if v else v

    # ==========================================================================
    # COMPUTED PROPERTIES
    # ==========================================================================

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.env_mode == EnvironmentMode.DEVELOPMENT

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.env_mode == EnvironmentMode.PRODUCTION

    @property
    def is_staging(self) -> bool:
        """Check if running in staging mode."""
        return self.env_mode == EnvironmentMode.STAGING

    @property
    def use_real_services(self) -> bool:
        """Check if real external services should be used."""
        return self.env_mode in (EnvironmentMode.PRODUCTION, EnvironmentMode.STAGING)

    @property
    def agent_shell_urls_list(self) -> list[str]:
        """Get the shell URLs as a list."""
        return [u.strip() for u in self.agent_shell_urls.split(",") if u.strip()]

    @property
    def identity_path(self) -> Path:
        """Full path of the client identity file."""
        return Path(self.data_directory) / self.identity_filename

    @property
    def realtime_url(self) -> Optional[str]:
        """Realtime websocket endpoint derived from the project URL."""
        if not self.supabase_url:
            return None
        ws_base = self.supabase_url.replace("https://", "wss://", 1).replace("http://", "ws://", 1)
        return f"{ws_base}/realtime/v1/websocket?apikey={self.supabase_anon_key}&vsn=1.0.0"

    # ==========================================================================
    # VALIDATION METHODS
    # ==========================================================================

    def validate_production_config(self) -> list[str]:
        """
        Validate that all required production settings are configured.

        Returns:
            List of missing configuration keys (empty if all present)
        """
        missing = []

        if self.use_real_services:
            if not self.supabase_url:
                missing.append("SUPABASE_URL")
            if not self.supabase_anon_key:
                missing.append("SUPABASE_ANON_KEY")

        return missing


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.

    Settings are loaded once per process; tests build their own
    ``Settings(...)`` instances and inject them instead.

    Returns:
        Settings: Configured application settings

    Example:
        >>> settings = get_settings()
        >>> print(settings.env_mode)
        EnvironmentMode.DEVELOPMENT
    """
    return Settings()


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================

def setup_logging(level: int = logging.INFO) -> logging.Logger:
    """
    Configure application-wide logging.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)

    Returns:
        Configured package logger
    """
    settings = get_settings()

    if settings.debug:
        level = logging.DEBUG

    log_format = "%(asctime)s │ %(levelname)-8s │ %(name)-25s │ %(message)s"
    date_format = "%Y-%m-%d %H:%M:%S"

    logging.basicConfig(
        level=level,
        format=log_format,
        datefmt=date_format,
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)

    return logging.getLogger("order_tracking")
