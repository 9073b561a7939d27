"""Tests for queue payload handling."""

import json

from controller.src.worker import decode_job

def test_decode_job():
    payload = json.dumps({
        "run_id": "run-1",
        "build_number": 4,
        "config": {"steps": []},
        "repo_info": {"branch": "main"},
        "queued_at": "2024-01-01T00:00:00",
    })
    job = decode_job(payload)
    assert job["run_id"] == "run-1"
    assert job["build_number"] == 4

def test_decode_job_drops_invalid_json():
    assert decode_job("{not json") is None

def test_decode_job_drops_incomplete_request():
    assert decode_job(json.dumps({"run_id": "run-1"})) is None

def test_decode_job_drops_non_object():
    assert decode_job(json.dumps(["run-1"])) is None
