"""Tests for the scheduler entry point."""

import json

import pytest

from clickmatch import jobs
from clickmatch.core.errors import StoreUnavailableError


def test_parser_requires_a_job():
    with pytest.raises(SystemExit):
        jobs.build_parser().parse_args([])


def test_parser_defaults():
    args = jobs.build_parser().parse_args(["sync"])
    assert args.job == "sync"
    assert args.max_size is None


def test_match_job_prints_summary(monkeypatch, capsys):
    seen = {}

    async def fake_run_match(limit):
        seen["limit"] = limit
        return {"total": 2, "errors": 0}

    monkeypatch.setattr(jobs, "run_match", fake_run_match)
    assert jobs.main(["match", "--limit", "25"]) == jobs.EXIT_OK
    assert seen["limit"] == 25
    assert json.loads(capsys.readouterr().out) == {"job": "match", "total": 2, "errors": 0}


def test_sync_job_store_unavailable(monkeypatch):
    async def failing_sync(max_size):
        raise StoreUnavailableError("connection refused")

    monkeypatch.setattr(jobs, "run_sync", failing_sync)
    assert jobs.main(["sync", "--max-size", "10"]) == jobs.EXIT_STORE_UNAVAILABLE


def test_rejects_non_positive_sizes():
    assert jobs.main(["sync", "--max-size", "0"]) == 1
    assert jobs.main(["match", "--limit", "0"]) == 1
