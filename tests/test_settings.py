"""Configuration settings behaviour tests."""

from __future__ import annotations

import pytest

from chooseamovie.config import Settings


def test_queue_defaults() -> None:
    """Default queue tuning should match the rating screen expectations."""

    settings = Settings(_env_file=None)

    assert settings.queue_low_watermark == 10
    assert settings.queue_target_size == 80
    assert settings.queue_max_pages_per_refill == 5
    assert settings.queue_max_seen == 300
    assert settings.certification_country == "US"


def test_blank_tmdb_credentials_are_treated_as_missing() -> None:
    settings = Settings(_env_file=None, TMDB_READ_TOKEN="   ", TMDB_API_KEY="")

    assert settings.tmdb_read_token is None
    assert settings.tmdb_api_key is None
    assert settings.tmdb_configured is False


def test_either_tmdb_credential_configures_the_client() -> None:
    assert Settings(_env_file=None, TMDB_API_KEY="key").tmdb_configured is True
    assert Settings(_env_file=None, TMDB_READ_TOKEN="token").tmdb_configured is True


def test_certification_country_is_upper_cased() -> None:
    settings = Settings(_env_file=None, TMDB_CERTIFICATION_COUNTRY=" gb ")

    assert settings.certification_country == "GB"


def test_target_size_must_cover_low_watermark() -> None:
    """A refill target below the watermark would never satisfy the queue."""

    with pytest.raises(ValueError, match="QUEUE_TARGET_SIZE"):
        Settings(_env_file=None, QUEUE_LOW_WATERMARK=20, QUEUE_TARGET_SIZE=10)
