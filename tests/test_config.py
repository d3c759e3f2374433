"""Tests for settings loading."""

import pytest
from pydantic import ValidationError

from clickmatch.config import Settings
from clickmatch.core.types import ConfidenceTier


def test_sync_min_tier_from_env(monkeypatch):
    monkeypatch.setenv("CM_SYNC_MIN_TIER", "PROBABILISTIC")
    assert Settings().sync_min_tier == ConfidenceTier.PROBABILISTIC


def test_unknown_sync_min_tier_rejected_at_load(monkeypatch):
    monkeypatch.setenv("CM_SYNC_MIN_TIER", "BEST")
    with pytest.raises(ValidationError):
        Settings()
