"""Tests for paced batch execution."""

import pytest

from reqgate.batch import HttpBatch, apply_options


class TestHttpBatch:
    def test_paces_calls_by_interval_over_requests(self, make_pipeline, transport, clock):
        batch = HttpBatch(make_pipeline(), sleep=clock.sleep).rate_limit(4, 2)
        results = batch.execute(
            [{"url": "https://a.example.com/1"}, {"url": "https://a.example.com/2"}, {"url": "https://a.example.com/3"}]
        )
        assert clock.slept == [0.5, 0.5]
        assert [r["success"] for r in results] == [True, True, True]
        assert [c["url"] for c in transport.calls] == [
            "https://a.example.com/1",
            "https://a.example.com/2",
            "https://a.example.com/3",
        ]

    def test_failures_are_captured_per_request(self, make_pipeline, transport, clock):
        transport.reply(200).fail("boom")
        results = HttpBatch(make_pipeline(), sleep=clock.sleep).execute(
            [
                {"method": "POST", "url": "https://a.example.com/ok", "data": {"x": 1}},
                {"url": "https://a.example.com/bad"},
                {"method": "HEAD", "url": "https://a.example.com/head"},
            ]
        )
        assert results[0]["success"] is True and results[0]["status"] == 200
        assert results[1] == {"success": False, "error": "boom", "request": {"url": "https://a.example.com/bad"}}
        assert results[2]["success"] is False
        assert "Invalid HTTP method" in results[2]["error"]

    def test_per_request_options(self, make_pipeline, transport, clock):
        batch = HttpBatch(make_pipeline(), sleep=clock.sleep).with_options({"with_cache": 60})
        results = batch.execute(
            [
                {"url": "https://a.example.com/x"},
                {"url": "https://a.example.com/x"},
                {"url": "https://a.example.com/x", "options": {"timeout": 3}},
            ]
        )
        assert [r["from_cache"] for r in results] == [False, True, True]
        assert len(transport.calls) == 1

    def test_invalid_pacing(self, make_pipeline):
        with pytest.raises(ValueError):
            HttpBatch(make_pipeline()).rate_limit(0, 60)

    def test_unknown_option(self, make_pipeline):
        with pytest.raises(ValueError, match="Unknown request option"):
            apply_options(make_pipeline(), {"guzzle": True})
