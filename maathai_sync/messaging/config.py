"""
Configuration management for the sync engine.

This module handles backend endpoints, timeouts, reconnection policy and
size limits, with validation and environment variable overrides.
"""

import os

from pydantic import BaseModel, Field, field_validator


class SyncConfig(BaseModel):
    """Configuration model for the conversation sync engine."""

    # Backend
    supabase_url: str = Field(
        default="",
        description="Base URL of the Supabase project"
    )

    supabase_anon_key: str = Field(
        default="",
        description="Public anon key sent as the apikey header"
    )

    # Timeouts
    request_timeout_seconds: float = Field(
        default=15.0,
        description="Timeout for gateway requests in seconds"
    )

    idle_timeout_seconds: float = Field(
        default=45.0,
        description="Realtime channel silence after which it is treated as dropped"
    )

    heartbeat_interval_seconds: float = Field(
        default=25.0,
        description="Interval between realtime heartbeats"
    )

    # Reconnection
    reconnect_base_delay: float = Field(
        default=1.0,
        description="Initial reconnect delay in seconds"
    )

    reconnect_max_delay: float = Field(
        default=30.0,
        description="Upper bound for reconnect delay in seconds"
    )

    reconnect_backoff_factor: float = Field(
        default=2.0,
        description="Exponential backoff factor between reconnect attempts"
    )

    reconnect_stable_seconds: float = Field(
        default=60.0,
        description="Sustained connection time after which backoff resets"
    )

    # Paging and limits
    page_size: int = Field(
        default=50,
        description="Messages fetched per history page"
    )

    notification_page_size: int = Field(
        default=20,
        description="Notifications fetched on reload"
    )

    max_message_length: int = Field(
        default=5000,
        description="Maximum allowed message length in characters"
    )

    max_attachment_bytes: int = Field(
        default=10 * 1024 * 1024,
        description="Maximum size of a single attachment"
    )

    # Media
    cloudinary_cloud_name: str = Field(
        default="",
        description="Cloudinary cloud name used for media uploads"
    )

    cloudinary_upload_preset: str = Field(
        default="maathai_discussions",
        description="Unsigned upload preset"
    )

    media_folder: str = Field(
        default="messages",
        description="Folder that message attachments are uploaded into"
    )

    # Logging
    log_message_content: bool = Field(
        default=False,
        description="Whether to log message content (privacy consideration)"
    )

    @field_validator('request_timeout_seconds', 'idle_timeout_seconds', 'heartbeat_interval_seconds')
    @classmethod
    def validate_timeouts(cls, v):
        if v <= 0:
            raise ValueError("timeouts must be positive")
        if v > 300:
            raise ValueError("timeouts cannot exceed 300 seconds")
        return v

    @field_validator('reconnect_base_delay', 'reconnect_max_delay', 'reconnect_stable_seconds')
    @classmethod
    def validate_delays(cls, v):
        if v <= 0:
            raise ValueError("reconnect delays must be positive")
        return v

    @field_validator('reconnect_backoff_factor')
    @classmethod
    def validate_backoff_factor(cls, v):
        if v < 1.0:
            raise ValueError("reconnect_backoff_factor must be at least 1.0")
        return v

    @field_validator('page_size', 'notification_page_size')
    @classmethod
    def validate_page_size(cls, v):
        if v <= 0:
            raise ValueError("page sizes must be positive")
        if v > 1000:
            raise ValueError("page sizes cannot exceed 1000")
        return v

    @field_validator('max_message_length', 'max_attachment_bytes')
    @classmethod
    def validate_limits(cls, v):
        if v <= 0:
            raise ValueError("size limits must be positive")
        return v

    @property
    def rest_url(self) -> str:
        return f"{self.supabase_url.rstrip('/')}/rest/v1"

    @property
    def realtime_url(self) -> str:
        base = self.supabase_url.rstrip('/')
        if base.startswith("https://"):
            base = "wss://" + base[len("https://"):]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://"):]
        return f"{base}/realtime/v1/websocket"

    def is_backend_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_anon_key)


def _as_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config() -> SyncConfig:
    """
    Load configuration from environment variables or defaults.

    Environment variables supported:
    - SUPABASE_URL / SUPABASE_ANON_KEY: Backend endpoint and key
    - SYNC_REQUEST_TIMEOUT: Gateway request timeout in seconds
    - SYNC_IDLE_TIMEOUT: Realtime silence window in seconds
    - SYNC_HEARTBEAT_INTERVAL: Realtime heartbeat interval in seconds
    - SYNC_RECONNECT_BASE_DELAY / SYNC_RECONNECT_MAX_DELAY: Backoff bounds
    - SYNC_RECONNECT_STABLE_SECONDS: Connected time before backoff resets
    - SYNC_PAGE_SIZE: History page size
    - SYNC_MAX_MESSAGE_LENGTH: Maximum message length
    - SYNC_MAX_ATTACHMENT_BYTES: Maximum attachment size
    - CLOUDINARY_CLOUD_NAME / CLOUDINARY_UPLOAD_PRESET: Media host settings
    - SYNC_LOG_CONTENT: Log message content (true/false)

    Returns:
        SyncConfig: Configured settings instance
    """
    config_data = {}

    if url := os.getenv('SUPABASE_URL'):
        config_data['supabase_url'] = url

    if anon_key := os.getenv('SUPABASE_ANON_KEY'):
        config_data['supabase_anon_key'] = anon_key

    if timeout := os.getenv('SYNC_REQUEST_TIMEOUT'):
        config_data['request_timeout_seconds'] = float(timeout)

    if idle := os.getenv('SYNC_IDLE_TIMEOUT'):
        config_data['idle_timeout_seconds'] = float(idle)

    if heartbeat := os.getenv('SYNC_HEARTBEAT_INTERVAL'):
        config_data['heartbeat_interval_seconds'] = float(heartbeat)

    if base_delay := os.getenv('SYNC_RECONNECT_BASE_DELAY'):
        config_data['reconnect_base_delay'] = float(base_delay)

    if max_delay := os.getenv('SYNC_RECONNECT_MAX_DELAY'):
        config_data['reconnect_max_delay'] = float(max_delay)

    if stable := os.getenv('SYNC_RECONNECT_STABLE_SECONDS'):
        config_data['reconnect_stable_seconds'] = float(stable)

    if page_size := os.getenv('SYNC_PAGE_SIZE'):
        config_data['page_size'] = int(page_size)

    if max_length := os.getenv('SYNC_MAX_MESSAGE_LENGTH'):
        config_data['max_message_length'] = int(max_length)

    if max_bytes := os.getenv('SYNC_MAX_ATTACHMENT_BYTES'):
        config_data['max_attachment_bytes'] = int(max_bytes)

    if cloud_name := os.getenv('CLOUDINARY_CLOUD_NAME'):
        config_data['cloudinary_cloud_name'] = cloud_name

    if preset := os.getenv('CLOUDINARY_UPLOAD_PRESET'):
        config_data['cloudinary_upload_preset'] = preset

    if log_content := os.getenv('SYNC_LOG_CONTENT'):
        config_data['log_message_content'] = _as_bool(log_content)

    return SyncConfig(**config_data)


# Global configuration instance
config = load_config()
