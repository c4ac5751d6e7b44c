"""
Unit tests for sync configuration.

Tests the SyncConfig model, validation, derived URLs and environment
variable loading.
"""

import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from maathai_sync.messaging.config import SyncConfig, load_config


class TestSyncConfig:
    """Test the SyncConfig model and validation."""

    def test_default_config_values(self):
        config = SyncConfig()

        assert config.request_timeout_seconds == 15
        assert config.idle_timeout_seconds == 45
        assert config.reconnect_base_delay == 1
        assert config.reconnect_max_delay == 30
        assert config.reconnect_stable_seconds == 60
        assert config.page_size == 50
        assert config.max_message_length == 5000
        assert config.max_attachment_bytes == 10 * 1024 * 1024
        assert config.cloudinary_upload_preset == "maathai_discussions"
        assert config.log_message_content is False
        assert config.is_backend_configured() is False

    def test_timeout_validation(self):
        SyncConfig(request_timeout_seconds=0.5)
        SyncConfig(idle_timeout_seconds=300)

        with pytest.raises(ValidationError, match="timeouts must be positive"):
            SyncConfig(request_timeout_seconds=0)

        with pytest.raises(ValidationError, match="timeouts cannot exceed 300 seconds"):
            SyncConfig(idle_timeout_seconds=301)

    def test_reconnect_validation(self):
        with pytest.raises(ValidationError, match="reconnect delays must be positive"):
            SyncConfig(reconnect_base_delay=-1)

        with pytest.raises(ValidationError, match="at least 1.0"):
            SyncConfig(reconnect_backoff_factor=0.5)

    def test_page_size_validation(self):
        with pytest.raises(ValidationError, match="page sizes must be positive"):
            SyncConfig(page_size=0)

        with pytest.raises(ValidationError, match="page sizes cannot exceed 1000"):
            SyncConfig(notification_page_size=5000)

    def test_limit_validation(self):
        with pytest.raises(ValidationError, match="size limits must be positive"):
            SyncConfig(max_message_length=0)

    def test_derived_urls(self):
        config = SyncConfig(supabase_url="https://abc.supabase.co/", supabase_anon_key="anon")

        assert config.rest_url == "https://abc.supabase.co/rest/v1"
        assert config.realtime_url == "wss://abc.supabase.co/realtime/v1/websocket"
        assert config.is_backend_configured() is True

    def test_local_realtime_url(self):
        config = SyncConfig(supabase_url="http://localhost:54321")
        assert config.realtime_url == "ws://localhost:54321/realtime/v1/websocket"


class TestLoadConfig:
    """Test the load_config function and environment variable handling."""

    def test_load_config_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            config = load_config()

            assert config.supabase_url == ""
            assert config.page_size == 50

    def test_load_config_with_env_vars(self):
        env_vars = {
            'SUPABASE_URL': 'https://abc.supabase.co',
            'SUPABASE_ANON_KEY': 'anon-key',
            'SYNC_REQUEST_TIMEOUT': '10',
            'SYNC_IDLE_TIMEOUT': '30',
            'SYNC_HEARTBEAT_INTERVAL': '20',
            'SYNC_RECONNECT_BASE_DELAY': '0.5',
            'SYNC_RECONNECT_MAX_DELAY': '10',
            'SYNC_RECONNECT_STABLE_SECONDS': '120',
            'SYNC_PAGE_SIZE': '25',
            'SYNC_MAX_MESSAGE_LENGTH': '2000',
            'SYNC_MAX_ATTACHMENT_BYTES': '1024',
            'CLOUDINARY_CLOUD_NAME': 'maathai',
            'CLOUDINARY_UPLOAD_PRESET': 'chat',
            'SYNC_LOG_CONTENT': 'true',
        }

        with patch.dict(os.environ, env_vars, clear=True):
            config = load_config()

            assert config.supabase_url == 'https://abc.supabase.co'
            assert config.supabase_anon_key == 'anon-key'
            assert config.request_timeout_seconds == 10
            assert config.idle_timeout_seconds == 30
            assert config.heartbeat_interval_seconds == 20
            assert config.reconnect_base_delay == 0.5
            assert config.reconnect_max_delay == 10
            assert config.reconnect_stable_seconds == 120
            assert config.page_size == 25
            assert config.max_message_length == 2000
            assert config.max_attachment_bytes == 1024
            assert config.cloudinary_cloud_name == 'maathai'
            assert config.cloudinary_upload_preset == 'chat'
            assert config.log_message_content is True

    def test_load_config_boolean_parsing(self):
        for true_val in ['true', 'True', '1', 'yes', 'on']:
            with patch.dict(os.environ, {'SYNC_LOG_CONTENT': true_val}, clear=True):
                assert load_config().log_message_content is True

        for false_val in ['false', 'FALSE', 'no', 'off', '0']:
            with patch.dict(os.environ, {'SYNC_LOG_CONTENT': false_val}, clear=True):
                assert load_config().log_message_content is False

    def test_load_config_invalid_env_vars(self):
        with patch.dict(os.environ, {'SYNC_PAGE_SIZE': 'invalid'}, clear=True):
            with pytest.raises(ValueError):
                load_config()

        with patch.dict(os.environ, {'SYNC_IDLE_TIMEOUT': '-5'}, clear=True):
            with pytest.raises(ValidationError):
                load_config()
